"""
Plant Watering Remote

Remote soil-moisture monitoring and three-zone irrigation control
over a cloud MQTT broker.
"""

__version__ = "1.0.0"
__author__ = "Plant Watering Team"
