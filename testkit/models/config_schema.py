"""
Schema and Validation for the TestKit Host Configuration

The configuration file (JSON or YAML) tunes the serial link, the port scan,
request timeouts, reconnection and logging. Every section is optional;
missing values come from create_default_config().
"""

from typing import Dict, Any, List, Tuple
import logging

from ..constants import (
    BUTTON_DEBOUNCE,
    DEFAULTS_TIMEOUT,
    DEFAULT_BAUDRATE,
    DEFAULT_PING_TIMEOUT,
    DEFAULT_PROBE_DELAY,
    DEFAULT_REQUEST_RETRIES,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SCAN_TIMEOUT,
    DEFAULT_WRITE_DELAY,
    PIN_STEP_TIMEOUT,
    POWER_STEP_TIMEOUT,
    PROPERTY_MISMATCH_ATTEMPTS,
    PROPERTY_TIMEOUT,
    TEST_STEP_RETRIES,
)

logger = logging.getLogger(__name__)


LOGGER_LEVELS = ["none", "error", "warn", "warning", "info", "debug", "trace"]

# Section -> field -> (type, minimum, maximum)
TESTKIT_CONFIG_SCHEMA = {
    "serial": {
        "baudRate": ("integer", 300, 4000000),
        "rtscts": ("boolean", None, None),
        "crc": ("boolean", None, None),
        "writeDelay": ("number", 0, 1),
    },
    "scan": {
        "timeout": ("number", 0.1, 300),
        "probeDelay": ("number", 0, 60),
    },
    "timeouts": {
        "request": ("number", 0.01, 600),
        "retries": ("integer", 0, 100),
        "ping": ("number", 0.01, 600),
        "pingRetries": ("integer", 0, 100),
        "blinkErrorPeriod": ("number", 0.01, 60),
        "defaults": ("number", 0.01, 600),
        "property": ("number", 0.01, 600),
        "propertyRetries": ("integer", 0, 100),
        "mismatchAttempts": ("integer", 1, 100),
        "pinStep": ("number", 0.01, 600),
        "powerStep": ("number", 0.01, 600),
        "stepRetries": ("integer", 0, 100),
    },
    "recovery": {
        "autoReconnect": ("boolean", None, None),
        "maxAttempts": ("integer", 0, None),
        "initialDelay": ("number", 0, 3600),
        "maxDelay": ("number", 0, 3600),
        "backoffMultiplier": ("number", 1, 10),
        "buttonDebounce": ("number", 0, 600),
        "healthCheck": ("boolean", None, None),
        "healthCheckInterval": ("number", 0.1, 3600),
    },
    "logging": {
        "level": ("string", None, None),
        "dir": ("string", None, None),
        "maxSizeMb": ("integer", 1, 1024),
        "backupCount": ("integer", 0, 100),
    },
    "device": {
        "storagePath": ("string", None, None),
    },
}


class ConfigValidator:
    """Configuration validator for the TestKit host"""

    @staticmethod
    def validate_type(value: Any, expected_type: str, path: str) -> Tuple[bool, str]:
        """Validate value type"""
        type_map = {
            "string": str,
            "integer": int,
            "number": (int, float),
            "boolean": bool,
            "array": list,
            "object": dict
        }

        expected_py_type = type_map.get(expected_type)
        # bool is an int subclass; reject it for numeric fields
        if expected_type in ("integer", "number") and isinstance(value, bool):
            return False, f"{path}: expected {expected_type}, got bool"
        if not isinstance(value, expected_py_type):
            return False, f"{path}: expected {expected_type}, got {type(value).__name__}"
        return True, ""

    @staticmethod
    def validate_range(value: float, minimum: float = None, maximum: float = None, path: str = "") -> Tuple[bool, str]:
        """Validate numeric value range"""
        if minimum is not None and value < minimum:
            return False, f"{path}: value {value} is less than minimum {minimum}"
        if maximum is not None and value > maximum:
            return False, f"{path}: value {value} is greater than maximum {maximum}"
        return True, ""

    @staticmethod
    def validate_enum(value: str, allowed_values: List[str], path: str) -> Tuple[bool, str]:
        """Validate enumeration value"""
        if value not in allowed_values:
            return False, f"{path}: '{value}' is not one of {allowed_values}"
        return True, ""

    @staticmethod
    def validate_config(config: Dict[str, Any]) -> Tuple[bool, List[str]]:
        """
        Validate full configuration

        Returns:
            Tuple[bool, List[str]]: (is_valid, list_of_errors)
        """
        errors = []

        if not isinstance(config, dict):
            return False, ["Configuration root must be an object"]

        for section, fields in TESTKIT_CONFIG_SCHEMA.items():
            values = config.get(section)
            if values is None:
                continue
            if not isinstance(values, dict):
                errors.append(f"Field '{section}' must be an object")
                continue

            for name, value in values.items():
                path = f"{section}.{name}"
                if name not in fields:
                    errors.append(f"{path}: unknown field")
                    continue
                if value is None:
                    continue

                expected_type, minimum, maximum = fields[name]
                ok, error = ConfigValidator.validate_type(value, expected_type, path)
                if not ok:
                    errors.append(error)
                    continue
                if expected_type in ("integer", "number"):
                    ok, error = ConfigValidator.validate_range(value, minimum, maximum, path)
                    if not ok:
                        errors.append(error)

        logging_section = config.get("logging")
        if isinstance(logging_section, dict) and isinstance(logging_section.get("level"), str):
            ok, error = ConfigValidator.validate_enum(
                logging_section["level"].lower(), LOGGER_LEVELS, "logging.level"
            )
            if not ok:
                errors.append(error)

        recovery = config.get("recovery")
        if isinstance(recovery, dict):
            initial = recovery.get("initialDelay")
            maximum = recovery.get("maxDelay")
            if isinstance(initial, (int, float)) and isinstance(maximum, (int, float)) and initial > maximum:
                errors.append("recovery.initialDelay cannot be greater than recovery.maxDelay")

        errors.extend(ConfigValidator._validate_loggers(config.get("loggers")))

        is_valid = len(errors) == 0
        return is_valid, errors

    @staticmethod
    def _validate_loggers(loggers: Any) -> List[str]:
        errors = []
        if loggers is None:
            return errors
        if not isinstance(loggers, dict):
            return ["Field 'loggers' must be an object"]

        for name, settings in loggers.items():
            path = f"loggers[{name}]"
            if not isinstance(settings, dict):
                errors.append(f"{path}: expected object, got {type(settings).__name__}")
                continue
            level = settings.get("level")
            if level is None:
                errors.append(f"{path}.level is required")
                continue
            ok, error = ConfigValidator.validate_type(level, "string", f"{path}.level")
            if not ok:
                errors.append(error)
                continue
            ok, error = ConfigValidator.validate_enum(level.lower(), LOGGER_LEVELS, f"{path}.level")
            if not ok:
                errors.append(error)
        return errors

    @staticmethod
    def format_validation_errors(errors: List[str]) -> str:
        """Format validation errors for user display"""
        if not errors:
            return ""

        error_msg = "Configuration validation failed:\n\n"
        for i, error in enumerate(errors, 1):
            error_msg += f"{i}. {error}\n"

        return error_msg


def create_default_config() -> Dict[str, Any]:
    """Create the default host configuration.

    Returns:
        Complete configuration dictionary with every section filled.
    """
    return {
        "version": "1.0",
        "serial": {
            "baudRate": DEFAULT_BAUDRATE,
            "rtscts": True,
            "crc": True,
            "writeDelay": DEFAULT_WRITE_DELAY,
        },
        "scan": {
            "timeout": DEFAULT_SCAN_TIMEOUT,
            "probeDelay": DEFAULT_PROBE_DELAY,
        },
        "timeouts": {
            "request": DEFAULT_REQUEST_TIMEOUT,
            "retries": DEFAULT_REQUEST_RETRIES,
            "ping": DEFAULT_PING_TIMEOUT,
            "pingRetries": DEFAULT_REQUEST_RETRIES,
            "blinkErrorPeriod": 1.0,
            "defaults": DEFAULTS_TIMEOUT,
            "property": PROPERTY_TIMEOUT,
            "propertyRetries": DEFAULT_REQUEST_RETRIES,
            "mismatchAttempts": PROPERTY_MISMATCH_ATTEMPTS,
            "pinStep": PIN_STEP_TIMEOUT,
            "powerStep": POWER_STEP_TIMEOUT,
            "stepRetries": TEST_STEP_RETRIES,
        },
        "recovery": {
            "autoReconnect": True,
            "maxAttempts": 0,
            "initialDelay": 1.0,
            "maxDelay": 30.0,
            "backoffMultiplier": 1.5,
            "buttonDebounce": BUTTON_DEBOUNCE,
            "healthCheck": False,
            "healthCheckInterval": 10.0,
        },
        "logging": {
            "level": "info",
            "dir": None,
            "maxSizeMb": 10,
            "backupCount": 5,
        },
        "device": {
            "storagePath": None,
        },
        "loggers": {},
    }
