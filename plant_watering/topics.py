"""MQTT topics shared by the app and the irrigation controller firmware."""

# Inbound
SOIL_DATA = "data/soil"
WATERING_STATUS = "status/watering"

# Outbound
CONTROL_WATERING = "control/watering"
CONTROL_STOP = "control/stop"
CONTROL_REFRESH = "control/refresh"

SUBSCRIPTIONS = (SOIL_DATA, WATERING_STATUS)

REFRESH_PAYLOAD = "refresh"

ZONES = (0, 1, 2)
MOISTURE_MIN = 0
MOISTURE_MAX = 4095
