"""
TestKit Wire Constants

Fixed values of the TestKit line protocol and default tuning parameters.
Defaults can be overridden through the configuration file (see
models/config_schema.py); components receive them through their config
dataclasses, never by reading this module at runtime.
"""

# ============================================================================
# Framing
# ============================================================================

LINE_TERMINATOR = "\r\n"
TARGET_SEPARATOR = ":"
VALUE_SEPARATOR = "="
CHECKSUM_SEPARATOR = "#"
COMMENT_PREFIX = "*"

# Longest line accepted without a terminator (bytes)
MAX_LINE_LENGTH = 1024

# Characters that may only appear as separators
RESERVED_CHARACTERS = (":", "=", "#", "\r", "\n")

# ============================================================================
# Message types
# ============================================================================

MSG_PING = "ping"
MSG_DEFAULTS = "defaults"
MSG_CONFIGURED = "configured"
MSG_PINS_UP = "pins_up"
MSG_PINS_DOWN = "pins_down"
MSG_MEASURE_PINS = "meas_pins"
MSG_MEASURE_POWER = "meas_pwr"
MSG_LEDS = "leds"
MSG_BUTTON = "btn"
MSG_BOOTLOADER = "ioda_bootloader"
MSG_RESTART = "ioda_restart"
MSG_FULL_ID = "fullid"
MSG_FIRMWARE = "firmware"

REPLY_OK = "ok"

# ============================================================================
# LEDs
# ============================================================================

LED_COUNT = 6
LED_ERROR_INDEX = 5

# ============================================================================
# Defaults (seconds unless noted)
# ============================================================================

DEFAULT_BAUDRATE = 115200
DEFAULT_WRITE_DELAY = 0.025

DEFAULT_SCAN_TIMEOUT = 8.5
DEFAULT_PROBE_DELAY = 1.5

DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_REQUEST_RETRIES = 3

DEFAULT_PING_TIMEOUT = 2.0

DEFAULTS_TIMEOUT = 10.0
PROPERTY_TIMEOUT = 10.0
PROPERTY_MISMATCH_ATTEMPTS = 2

PIN_STEP_TIMEOUT = 5.0
POWER_STEP_TIMEOUT = 20.0
TEST_STEP_RETRIES = 2

BUTTON_DEBOUNCE = 5.0

# Mass storage file names used for binary upload
FIRMWARE_FILENAME = "main.bin"
BOOTLOADER_MARKER_FILENAME = "BOOTLOAD.TXT"
