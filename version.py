"""
Application version and metadata.
"""

APP_NAME    = "MQTT Monitor"
__version__ = "2.0.0"
LICENSE     = "MIT"
DESCRIPTION = "A lightweight desktop tool for observing and publishing to an MQTT broker."
