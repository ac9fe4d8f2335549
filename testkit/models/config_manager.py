"""
TestKit Host Configuration Manager

Loads the host configuration (JSON or YAML), validates it and hands out the
settings structs of the individual components.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

import yaml

from ..communication.framed_link import LinkConfig
from ..communication.port_scanner import ScanConfig
from ..controllers.connection_recovery import RecoveryConfig
from ..controllers.device_session import SessionConfig
from ..device.configurator import ConfiguratorConfig
from ..device.measurements import Expectations
from ..device.tester import TesterConfig
from ..utils.logger import apply_logger_levels
from .config_schema import ConfigValidator, create_default_config

logger = logging.getLogger(__name__)


YAML_SUFFIXES = (".yaml", ".yml")


def read_document(path: Path) -> Any:
    """Parse a JSON or YAML file, chosen by suffix."""
    with open(path, 'r', encoding='utf-8') as f:
        if path.suffix.lower() in YAML_SUFFIXES:
            return yaml.safe_load(f)
        return json.load(f)


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge override into a copy of base."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class ConfigManager:
    """Manages TestKit host configuration files (JSON or YAML)"""

    def __init__(self):
        self.config: Dict[str, Any] = create_default_config()
        self.current_file: Optional[Path] = None

    def get_config(self) -> Dict[str, Any]:
        """Get current configuration"""
        return self.config

    def get(self, section: str) -> Any:
        """Get one top-level section, or None"""
        return self.config.get(section)

    def load_from_file(self, filepath: str) -> Tuple[bool, Optional[str]]:
        """
        Load configuration from a JSON or YAML file with validation

        Args:
            filepath: Path to configuration file

        Returns:
            Tuple[bool, Optional[str]]: (success, error_message)
        """
        path = Path(filepath)

        if not path.exists():
            error_msg = f"Configuration file not found: {filepath}"
            logger.error(error_msg)
            return False, error_msg

        try:
            loaded_config = read_document(path)
        except json.JSONDecodeError as e:
            error_msg = (
                f"Invalid JSON format in configuration file:\n\n"
                f"Line {e.lineno}, Column {e.colno}:\n{e.msg}"
            )
            logger.error(f"JSON decode error: {e}")
            return False, error_msg
        except yaml.YAMLError as e:
            error_msg = f"Invalid YAML format in configuration file:\n\n{e}"
            logger.error(f"YAML decode error: {e}")
            return False, error_msg
        except OSError as e:
            error_msg = f"Failed to read configuration: {e}"
            logger.error(error_msg)
            return False, error_msg

        ok, error_msg = self.load_from_dict(loaded_config or {})
        if ok:
            self.current_file = path
            logger.info(f"Loaded and validated configuration from: {filepath}")
        return ok, error_msg

    def load_from_dict(self, config_dict: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        """
        Validate a configuration dictionary and merge it over the defaults.

        Returns:
            Tuple[bool, Optional[str]]: (success, error_message)
        """
        is_valid, validation_errors = ConfigValidator.validate_config(config_dict)
        if not is_valid:
            error_msg = ConfigValidator.format_validation_errors(validation_errors)
            logger.error(error_msg)
            return False, error_msg

        self.config = merge_config(create_default_config(), config_dict)
        self.current_file = None
        return True, None

    def save_to_file(self, filepath: Optional[str] = None) -> bool:
        """
        Save configuration to a JSON or YAML file

        Args:
            filepath: Path to save to (uses current_file if None)

        Returns:
            True if saved successfully, False otherwise
        """
        if filepath:
            path = Path(filepath)
        elif self.current_file:
            path = self.current_file
        else:
            logger.error("No filepath specified")
            return False

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                if path.suffix.lower() in YAML_SUFFIXES:
                    yaml.safe_dump(self.config, f, sort_keys=False)
                else:
                    json.dump(self.config, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            return False

        self.current_file = path
        logger.info(f"Saved configuration to: {path}")
        return True

    # ========== Component settings ==========

    def link_config(self) -> LinkConfig:
        serial = self.config["serial"]
        return LinkConfig(
            baud_rate=serial["baudRate"],
            flow_control=serial["rtscts"],
            crc_enabled=serial["crc"],
            write_delay=serial["writeDelay"],
        )

    def scan_config(self) -> ScanConfig:
        scan = self.config["scan"]
        return ScanConfig(timeout=scan["timeout"], probe_delay=scan["probeDelay"])

    def session_config(self) -> SessionConfig:
        timeouts = self.config["timeouts"]
        return SessionConfig(
            default_timeout=timeouts["request"],
            default_retries=timeouts["retries"],
            ping_timeout=timeouts["ping"],
            ping_retries=timeouts["pingRetries"],
            blink_error_period=timeouts["blinkErrorPeriod"],
        )

    def configurator_config(self) -> ConfiguratorConfig:
        timeouts = self.config["timeouts"]
        return ConfiguratorConfig(
            defaults_timeout=timeouts["defaults"],
            property_timeout=timeouts["property"],
            property_retries=timeouts["propertyRetries"],
            mismatch_attempts=timeouts["mismatchAttempts"],
        )

    def tester_config(self) -> TesterConfig:
        timeouts = self.config["timeouts"]
        return TesterConfig(
            pin_timeout=timeouts["pinStep"],
            power_timeout=timeouts["powerStep"],
            retries=timeouts["stepRetries"],
        )

    def recovery_config(self) -> RecoveryConfig:
        recovery = self.config["recovery"]
        return RecoveryConfig(
            auto_reconnect=recovery["autoReconnect"],
            max_attempts=recovery["maxAttempts"],
            initial_delay=recovery["initialDelay"],
            max_delay=recovery["maxDelay"],
            backoff_multiplier=recovery["backoffMultiplier"],
            button_debounce=recovery["buttonDebounce"],
            health_check_enabled=recovery["healthCheck"],
            health_check_interval=recovery["healthCheckInterval"],
        )

    def storage_path(self) -> Optional[str]:
        return self.config["device"]["storagePath"]

    def configure_loggers(self) -> None:
        """Apply the levels of the 'loggers' section."""
        loggers = self.config.get("loggers") or {}
        apply_logger_levels(loggers)
        if loggers:
            logger.debug(f"Configured loggers: {sorted(loggers)}")

    # ========== Operation inputs ==========

    @staticmethod
    def load_expectations(filepath: str) -> Expectations:
        """
        Load a test expectation table.

        Raises:
            OSError: If the file cannot be read
            ValueError: If the file is not a valid expectation table
        """
        path = Path(filepath)
        try:
            data = read_document(path)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ValueError(f"Invalid expectation file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Expectation file {path} must contain an object")
        expectations = Expectations.from_dict(data)
        logger.info(f"Loaded expectations from: {path}")
        return expectations

    @staticmethod
    def load_properties(filepath: str) -> Dict[str, Any]:
        """
        Load a property map for configuration.

        Raises:
            OSError: If the file cannot be read
            ValueError: If the file does not contain a flat object
        """
        path = Path(filepath)
        try:
            data = read_document(path)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ValueError(f"Invalid property file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Property file {path} must contain an object")
        for key, value in data.items():
            if isinstance(value, (dict, list)):
                raise ValueError(f"Property '{key}' must be a scalar value")
        logger.info(f"Loaded {len(data)} properties from: {path}")
        return data
