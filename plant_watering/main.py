"""
Plant Watering Remote - Main Application

Entry point for the remote irrigation dashboard. Connects to the MQTT
broker, shows soil moisture per zone and sends watering commands.

Usage:
    python -m plant_watering.main                    # Run the dashboard
    python -m plant_watering.main --simulate         # Run against a simulated controller
    python -m plant_watering.main --water 1          # Water zone 1 and exit
    python -m plant_watering.main --test-connection  # Test the broker connection
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import yaml

from plant_watering import topics
from plant_watering.broker.connection import ConfigError, broker_config_from_dict, qos_from_dict
from plant_watering.dashboard import ReconnectPolicy, WateringDashboard
from plant_watering.sync import ChannelState, SyncChannel


class WateringApp:
    """Wires configuration, logging, the channel and the dashboard together."""

    def __init__(
        self,
        config_path: str,
        simulate: bool = False,
        log_level: str = "INFO",
        watering_duration_ms: Optional[int] = None
    ):
        """
        Initialize the application.

        Args:
            config_path: Path to config.yaml
            simulate: Enable simulation mode
            log_level: Logging level
            watering_duration_ms: Override the configured watering duration

        Raises:
            ConfigError: if the configuration is unusable
        """
        self.project_root = Path(config_path).parent.parent
        self.running = False

        # Load configuration
        with open(config_path, 'r') as f:
            self.config = yaml.safe_load(f) or {}

        self.simulate = simulate or self.config.get('simulation', {}).get('enabled', False)

        # Setup logging
        self._setup_logging(log_level)

        # Initialize components
        self.broker_config = broker_config_from_dict(self.config, self.project_root)
        self.broker_config.validate(simulate=self.simulate)

        app_config = self.config.get('app', {})
        if watering_duration_ms is None:
            watering_duration_ms = int(app_config.get('watering_duration_ms', 20000))
        self.status_wait_seconds = float(app_config.get('status_wait_seconds', 3))

        self.channel = SyncChannel(
            self.broker_config,
            simulate=self.simulate,
            qos=qos_from_dict(self.config)
        )
        self.dashboard = WateringDashboard(
            self.channel,
            watering_duration_ms=watering_duration_ms,
            auto_refresh_seconds=float(app_config.get('auto_refresh_seconds', 15)),
            reconnect=ReconnectPolicy(
                min_seconds=self.broker_config.reconnect_min_seconds,
                max_seconds=self.broker_config.reconnect_max_seconds,
                max_attempts=self.broker_config.reconnect_max_attempts
            )
        )

        self._changed = threading.Event()
        self._inbound = threading.Event()
        self._last_state: Optional[ChannelState] = None
        self.channel.subscribe(self._on_state)

        self.logger.info(f"Plant Watering app initialized (simulate={self.simulate})")

    def _setup_logging(self, log_level: str) -> None:
        """Configure logging with file and console handlers."""
        log_config = self.config.get('logging', {})

        # Create logger
        self.logger = logging.getLogger('plant_watering')
        self.logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        if self.logger.handlers:
            return
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

        # Console handler
        if log_config.get('console', {}).get('enabled', True):
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        # File handler
        if log_config.get('file', {}).get('enabled', True):
            log_path = Path(self.project_root) / log_config.get('file', {}).get('path', 'logs/plant_watering.log')
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_path,
                maxBytes=log_config.get('file', {}).get('max_bytes', 10485760),
                backupCount=log_config.get('file', {}).get('backup_count', 5)
            )
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

    def _on_state(self, state: ChannelState) -> None:
        previous, self._last_state = self._last_state, state
        if previous is not None and (
            previous.moisture != state.moisture or previous.watering != state.watering
        ):
            self._inbound.set()
        self._changed.set()

    def _wait_connected(self) -> bool:
        self.dashboard.connect()
        return self.dashboard.connected_event.wait(self.broker_config.connect_timeout_seconds + 5)

    def handle_command(self, line: str) -> bool:
        """
        Apply one line typed at the dashboard prompt.

        Commands: water N, stop N, refresh, connect, disconnect, quit.

        Returns:
            False when the user asked to quit
        """
        parts = line.strip().lower().split()
        if not parts:
            return True
        name, args = parts[0], parts[1:]

        if name in ("q", "quit", "exit"):
            return False
        if name in ("w", "water", "s", "stop") and len(args) == 1:
            try:
                zone = zone_number(args[0])
            except argparse.ArgumentTypeError as e:
                self.dashboard.last_notice = str(e)
            else:
                if name.startswith("w"):
                    self.dashboard.water(zone)
                else:
                    self.dashboard.stop(zone)
        elif name in ("r", "refresh"):
            if not self.dashboard.refresh():
                self.dashboard.last_notice = "Not connected"
        elif name == "connect":
            self.dashboard.connect()
        elif name == "disconnect":
            self.dashboard.disconnect()
        else:
            self.dashboard.last_notice = "Commands: water N, stop N, refresh, connect, disconnect, quit"
        self._changed.set()
        return True

    def _read_commands(self) -> None:
        for line in sys.stdin:
            if not self.handle_command(line):
                break
        self.running = False

    def run(self, duration: Optional[int] = None, interactive: bool = True) -> None:
        """
        Run the dashboard loop.

        Args:
            duration: Optional duration in seconds (None = run indefinitely)
            interactive: Read commands from stdin
        """
        self.running = True
        start_time = time.time()
        self.dashboard.connect()

        if interactive:
            threading.Thread(target=self._read_commands, name="dashboard-input", daemon=True).start()

        try:
            while self.running:
                if duration and (time.time() - start_time) >= duration:
                    self.logger.info(f"Duration limit ({duration}s) reached")
                    break

                self.dashboard.tick()
                if self._changed.wait(0.5):
                    self._changed.clear()
                    print(self.dashboard.render())
                    print()

        except KeyboardInterrupt:
            self.logger.info("Received keyboard interrupt")
        finally:
            self.stop()

    def run_command(self, action: str, zone: int) -> bool:
        """
        Connect, send a single water or stop command and disconnect.

        Args:
            action: "water" or "stop"
            zone: Zone index (0-2)

        Returns:
            True if the command was sent
        """
        try:
            if not self._wait_connected():
                print(f"✗ {self.dashboard.status_text}")
                return False

            # Wait for the refresh reply so the zone checks see current status
            self._inbound.wait(self.status_wait_seconds)

            if action == "water":
                sent = self.dashboard.water(zone)
            else:
                sent = self.dashboard.stop(zone)
            print(("✓ " if sent else "✗ ") + (self.dashboard.last_notice or ""))
            return sent
        finally:
            self.stop()

    def stop(self) -> None:
        """Stop the loop and disconnect."""
        self.running = False
        metrics = self.channel.get_metrics()
        self.dashboard.disconnect()
        self.logger.info("Plant Watering app stopped")
        if metrics:
            self.logger.info(f"Publishing metrics: {metrics}")

    def test_connection(self) -> bool:
        """Test the broker connection."""
        try:
            return self._wait_connected()
        finally:
            self.stop()


def setup_signal_handlers(app: WateringApp) -> None:
    """Setup signal handlers for graceful shutdown."""
    def signal_handler(signum, frame):
        print("\nShutdown signal received...")
        app.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def zone_number(value: str) -> int:
    """Parse a 1-based zone number from the command line into a zone index."""
    try:
        zone = int(value) - 1
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid zone: {value}")
    if zone not in topics.ZONES:
        raise argparse.ArgumentTypeError(f"zone must be between 1 and {len(topics.ZONES)}")
    return zone


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Plant Watering Remote',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m plant_watering.main                       Run the dashboard
  python -m plant_watering.main --simulate            Run against a simulated controller
  python -m plant_watering.main --water 2             Water zone 2 for the configured duration
  python -m plant_watering.main --stop 2              Stop watering zone 2
  python -m plant_watering.main --test-connection     Test the broker connection
        """
    )

    parser.add_argument(
        '--simulate', '-s',
        action='store_true',
        help='Run against a simulated controller (no broker required)'
    )

    parser.add_argument(
        '--duration', '-d',
        type=int,
        default=None,
        help='Run the dashboard for the given number of seconds (default: indefinite)'
    )

    parser.add_argument(
        '--test-connection', '-t',
        action='store_true',
        help='Test the broker connection and exit'
    )

    command = parser.add_mutually_exclusive_group()
    command.add_argument(
        '--water', '-w',
        type=zone_number,
        metavar='ZONE',
        help='Water a zone (1-3) and exit'
    )
    command.add_argument(
        '--stop',
        type=zone_number,
        metavar='ZONE',
        help='Stop watering a zone (1-3) and exit'
    )

    parser.add_argument(
        '--watering-duration',
        type=int,
        default=None,
        metavar='MS',
        help='Watering duration in milliseconds (default: from config)'
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default=None,
        help='Path to config.yaml'
    )

    parser.add_argument(
        '--log-level', '-l',
        type=str,
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)'
    )
    return parser


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Determine paths
    project_root = Path(__file__).parent.parent
    config_path = args.config or str(project_root / 'config' / 'config.yaml')

    if not os.path.exists(config_path):
        print(f"Error: Configuration file not found: {config_path}")
        sys.exit(1)

    try:
        app = WateringApp(
            config_path=config_path,
            simulate=args.simulate,
            log_level=args.log_level,
            watering_duration_ms=args.watering_duration
        )
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    setup_signal_handlers(app)

    if args.test_connection:
        print("Testing MQTT broker connection...")
        if app.test_connection():
            print("✓ MQTT broker connection successful!")
            sys.exit(0)
        else:
            print("✗ MQTT broker connection failed!")
            sys.exit(1)

    if args.water is not None:
        sys.exit(0 if app.run_command("water", args.water) else 1)

    if args.stop is not None:
        sys.exit(0 if app.run_command("stop", args.stop) else 1)

    print("Starting Plant Watering Remote...")
    print(f"  Broker: {app.broker_config.endpoint}:{app.broker_config.port}")
    print(f"  Simulation Mode: {app.simulate}")
    print(f"  Watering Duration: {app.dashboard.watering_duration_ms} ms")
    print()
    print("Press Ctrl+C to stop...")
    print()

    app.run(duration=args.duration)


if __name__ == "__main__":
    main()
