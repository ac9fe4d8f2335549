"""
Configuration Tests
Tests for schema validation, file loading and component settings
"""

import json

import pytest
import yaml

from testkit.models.config_manager import ConfigManager, merge_config
from testkit.models.config_schema import ConfigValidator, create_default_config
from testkit.device.measurements import PinPhase, PowerSource


@pytest.fixture
def manager():
    return ConfigManager()


def write_json(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


class TestValidator:
    """Test ConfigValidator."""

    def test_default_config_is_valid(self):
        ok, errors = ConfigValidator.validate_config(create_default_config())
        assert ok, errors

    def test_empty_config_is_valid(self):
        assert ConfigValidator.validate_config({}) == (True, [])

    def test_root_must_be_object(self):
        ok, errors = ConfigValidator.validate_config([])
        assert not ok

    def test_wrong_type(self):
        ok, errors = ConfigValidator.validate_config({"serial": {"baudRate": "fast"}})
        assert not ok
        assert errors == ["serial.baudRate: expected integer, got str"]

    def test_bool_is_not_a_number(self):
        ok, errors = ConfigValidator.validate_config({"timeouts": {"request": True}})
        assert not ok

    def test_out_of_range(self):
        ok, errors = ConfigValidator.validate_config({"timeouts": {"retries": -1}})
        assert not ok
        assert "less than minimum" in errors[0]

    def test_unknown_field(self):
        ok, errors = ConfigValidator.validate_config({"scan": {"speed": 1}})
        assert errors == ["scan.speed: unknown field"]

    def test_section_must_be_object(self):
        ok, errors = ConfigValidator.validate_config({"serial": 115200})
        assert errors == ["Field 'serial' must be an object"]

    def test_delays_consistent(self):
        ok, errors = ConfigValidator.validate_config(
            {"recovery": {"initialDelay": 10, "maxDelay": 5}}
        )
        assert not ok

    def test_logging_level(self):
        assert ConfigValidator.validate_config({"logging": {"level": "TRACE"}})[0]
        assert not ConfigValidator.validate_config({"logging": {"level": "loud"}})[0]

    def test_loggers(self):
        ok, errors = ConfigValidator.validate_config({
            "loggers": {
                "testkit.communication": {"level": "debug"},
                "testkit.device": {"level": "verbose"},
                "testkit.models": {},
                "testkit.utils": "info",
            }
        })
        assert not ok
        assert len(errors) == 3

    def test_format_errors(self):
        text = ConfigValidator.format_validation_errors(["a", "b"])
        assert "1. a" in text
        assert "2. b" in text
        assert ConfigValidator.format_validation_errors([]) == ""


class TestMerge:
    """Test deep merging."""

    def test_nested(self):
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        merged = merge_config(base, {"a": {"y": 3}})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1}
        assert base["a"]["y"] == 2


class TestLoad:
    """Test loading configuration files."""

    def test_json(self, manager, tmp_path):
        path = write_json(tmp_path / "host.json", {"serial": {"crc": False}})

        ok, error = manager.load_from_file(path)

        assert ok, error
        assert manager.config["serial"]["crc"] is False
        # Untouched values keep their defaults
        assert manager.config["serial"]["baudRate"] == 115200
        assert str(manager.current_file) == path

    def test_yaml(self, manager, tmp_path):
        path = tmp_path / "host.yaml"
        path.write_text(yaml.safe_dump({"scan": {"timeout": 3.0}}), encoding="utf-8")

        ok, error = manager.load_from_file(str(path))

        assert ok, error
        assert manager.get("scan")["timeout"] == 3.0

    def test_empty_yaml(self, manager, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("", encoding="utf-8")
        assert manager.load_from_file(str(path)) == (True, None)

    def test_missing_file(self, manager, tmp_path):
        ok, error = manager.load_from_file(str(tmp_path / "missing.json"))
        assert not ok
        assert "not found" in error

    def test_invalid_json(self, manager, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")

        ok, error = manager.load_from_file(str(path))

        assert not ok
        assert "Invalid JSON" in error

    def test_invalid_yaml(self, manager, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("a: [1, 2", encoding="utf-8")

        ok, error = manager.load_from_file(str(path))

        assert not ok
        assert "Invalid YAML" in error

    def test_validation_failure_keeps_previous(self, manager, tmp_path):
        path = write_json(tmp_path / "bad.json", {"serial": {"baudRate": 1}})

        ok, error = manager.load_from_file(path)

        assert not ok
        assert "serial.baudRate" in error
        assert manager.config == create_default_config()

    def test_save_and_reload(self, manager, tmp_path):
        manager.load_from_dict({"timeouts": {"request": 1.5}})
        path = tmp_path / "out" / "saved.yaml"

        assert manager.save_to_file(str(path))

        other = ConfigManager()
        assert other.load_from_file(str(path)) == (True, None)
        assert other.config["timeouts"]["request"] == 1.5

    def test_save_without_path(self, manager):
        assert not manager.save_to_file()


class TestComponentSettings:
    """Test settings structs built from the configuration."""

    def test_defaults(self, manager):
        link = manager.link_config()
        assert link.baud_rate == 115200
        assert link.flow_control
        assert link.crc_enabled
        assert link.write_delay == 0.025

        scan = manager.scan_config()
        assert scan.timeout == 8.5
        assert scan.probe_delay == 1.5

        assert manager.storage_path() is None

    def test_overrides(self, manager):
        ok, _ = manager.load_from_dict({
            "serial": {"rtscts": False},
            "timeouts": {"request": 2.0, "pinStep": 1.0, "mismatchAttempts": 4},
            "recovery": {"autoReconnect": False, "healthCheck": True},
            "device": {"storagePath": "/media/DEVICE"},
        })
        assert ok

        assert not manager.link_config().flow_control
        assert manager.session_config().default_timeout == 2.0
        assert manager.tester_config().pin_timeout == 1.0
        assert manager.configurator_config().mismatch_attempts == 4
        recovery = manager.recovery_config()
        assert not recovery.auto_reconnect
        assert recovery.health_check_enabled
        assert manager.storage_path() == "/media/DEVICE"

    def test_configure_loggers(self, manager):
        import logging

        name = "testkit.tests.configured"
        manager.load_from_dict({"loggers": {name: {"level": "error"}}})
        manager.configure_loggers()

        assert logging.getLogger(name).level == logging.ERROR


class TestOperationInputs:
    """Test expectation and property files."""

    def test_load_expectations(self, tmp_path):
        path = write_json(tmp_path / "exp.json", {
            "pins": {"up": {"x": "11"}},
            "power": {"usb_pwr": {"vbus": {"min": 4.5}}},
        })

        table = ConfigManager.load_expectations(path)

        assert table.pins[PinPhase.UP]["x"] == (1, 1)
        assert table.power[PowerSource.USB]["vbus"].min == 4.5

    def test_load_expectations_yaml(self, tmp_path):
        path = tmp_path / "exp.yaml"
        path.write_text("pins:\n  down:\n    z: '000'\n", encoding="utf-8")

        table = ConfigManager.load_expectations(str(path))
        assert table.pins[PinPhase.DOWN]["z"] == (0, 0, 0)

    def test_load_expectations_not_object(self, tmp_path):
        path = write_json(tmp_path / "exp.json", [1, 2])
        with pytest.raises(ValueError):
            ConfigManager.load_expectations(path)

    def test_load_properties(self, tmp_path):
        path = write_json(tmp_path / "props.json", {"mqtt_host": "broker", "tls": True})
        assert ConfigManager.load_properties(path) == {"mqtt_host": "broker", "tls": True}

    def test_nested_property_rejected(self, tmp_path):
        path = write_json(tmp_path / "props.json", {"mqtt": {"host": "broker"}})
        with pytest.raises(ValueError, match="mqtt"):
            ConfigManager.load_properties(path)

    def test_broken_property_file(self, tmp_path):
        path = tmp_path / "props.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(ValueError):
            ConfigManager.load_properties(str(path))

    def test_missing_property_file(self, tmp_path):
        with pytest.raises(OSError):
            ConfigManager.load_properties(str(tmp_path / "none.json"))
