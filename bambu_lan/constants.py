"""Constants used across the bambu-lan package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "bambu-lan"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

# Both the broker and the FTPS server accept this fixed user with the
# printer's LAN access code as password.
PRINTER_USERNAME = "bblp"

DEFAULT_MQTT_PORT = 8883
DEFAULT_FTP_PORT = 990
IMPLICIT_FTPS_PORT = 990

REPORT_TOPIC_TEMPLATE = "device/{serial}/report"
REQUEST_TOPIC_TEMPLATE = "device/{serial}/request"

CONNECT_TIMEOUT_SECONDS = 10.0
RESPONSE_TIMEOUT_SECONDS = 30.0
DISCONNECT_TIMEOUT_SECONDS = 3.0
POLL_INTERVAL_SECONDS = 0.25

FTP_CONNECT_TIMEOUT_SECONDS = 15.0
FTP_DOWNLOAD_TIMEOUT_SECONDS = 30.0

MESSAGE_BUFFER_SIZE = 100
PARSE_FAILURE_HISTORY = 10

MIN_SPEED_PERCENT = 50
MAX_SPEED_PERCENT = 166
MIN_FAN_PERCENT = 0
MAX_FAN_PERCENT = 100
FAN_DEVICE_MAX = 255

RETRY_MAX_RETRIES = 3
RETRY_INITIAL_DELAY_SECONDS = 1.0
RETRY_MAX_DELAY_SECONDS = 10.0
RETRY_BACKOFF_MULTIPLIER = 2.0

SDCARD_ROOT = "/sdcard/"
FILE_URL_PREFIX = "file:///"
PLATE_GCODE_PATH = "Metadata/plate_1.gcode"

CAMERA_HTTP_PORT = 6000
