"""
Configurator Tests
Tests for the property configuration sequence against the simulator
"""

import asyncio

import pytest
from unittest.mock import Mock

from testkit.device.configurator import (
    ConfigurationError,
    ConfigurationState,
    Configurator,
    ConfiguratorConfig,
    Property,
    PropertyMismatchError,
    normalize_value,
)


FAST = ConfiguratorConfig(
    defaults_timeout=0.05,
    property_timeout=0.05,
    property_retries=0,
)


@pytest.fixture
def configurator(session):
    return Configurator(session, FAST)


class TestProperty:
    """Test property values."""

    @pytest.mark.parametrize("value, wire", [
        (True, "1"),
        (False, "0"),
        (1883, "1883"),
        (0.5, "0.5"),
        ("broker", "broker"),
    ])
    def test_normalize(self, value, wire):
        assert normalize_value(value) == wire

    def test_to_message(self):
        assert Property.from_value("dhcp", True).to_message().encode() == "DUT:dhcp=1"


class TestQueue:
    """Test queue building."""

    def test_order_and_sentinel(self, configurator):
        queue = configurator.build_queue({"b": 2, "a": 1})
        assert [p.key for p in queue] == ["b", "a", "configured"]
        assert queue[-1] == Property("configured", "1")

    def test_excluded_and_missing_values(self, configurator):
        queue = configurator.build_queue({"configured": 0, "skip": None, "keep": ""})
        assert [p.key for p in queue] == ["keep", "configured"]

    def test_empty_map_still_sends_sentinel(self, configurator):
        assert configurator.build_queue({}) == [Property("configured", "1")]


class TestConfigure:
    """Test a full configuration run."""

    @pytest.mark.asyncio
    async def test_success(self, configurator, simulator):
        await configurator.configure({"mqtt_host": "broker", "mqtt_port": 1883, "tls": True})

        assert simulator.received == [
            "DUT:defaults",
            "DUT:mqtt_host=broker",
            "DUT:mqtt_port=1883",
            "DUT:tls=1",
            "DUT:configured=1",
        ]
        assert simulator.state.properties == {
            "mqtt_host": "broker", "mqtt_port": "1883", "tls": "1", "configured": "1",
        }
        assert configurator.state == ConfigurationState.DONE

    @pytest.mark.asyncio
    async def test_state_callbacks(self, configurator):
        callback = Mock()
        configurator.add_state_callback(callback)

        await configurator.configure({"a": 1})

        states = [c.args[0] for c in callback.call_args_list]
        assert states == [
            ConfigurationState.SETTING_DEFAULTS,
            ConfigurationState.APPLYING_PROPERTY,
            ConfigurationState.APPLYING_PROPERTY,
            ConfigurationState.DONE,
        ]
        assert callback.call_args_list[1].args[1] == Property("a", "1")

    @pytest.mark.asyncio
    async def test_defaults_not_answered(self, configurator, simulator):
        simulator.state.silent_types.add("defaults")

        with pytest.raises(ConfigurationError, match="defaults"):
            await configurator.configure({"a": 1})

        # Defaults are not resent and no property goes out
        assert simulator.received == ["DUT:defaults"]
        assert configurator.state == ConfigurationState.FAILED

    @pytest.mark.asyncio
    async def test_defaults_empty_reply(self, configurator, simulator):
        simulator.state.empty_replies.add("defaults")
        with pytest.raises(ConfigurationError):
            await configurator.configure({"a": 1})

    @pytest.mark.asyncio
    async def test_mismatch_recovered(self, configurator, simulator):
        simulator.state.mismatches["a"] = 1

        await configurator.configure({"a": "x"})

        assert simulator.received.count("DUT:a=x") == 2
        assert simulator.state.properties["a"] == "x"

    @pytest.mark.asyncio
    async def test_mismatch_aborts(self, configurator, simulator):
        simulator.state.mismatches["a"] = 5

        with pytest.raises(PropertyMismatchError) as info:
            await configurator.configure({"a": "x", "b": "y"})

        assert info.value.key == "a"
        assert info.value.expected == "x"
        assert info.value.received == "x_x"
        assert "'a'" in str(info.value)
        # Nothing after the failing property is sent
        assert "DUT:b=y" not in simulator.received
        assert "DUT:configured=1" not in simulator.received
        assert configurator.state == ConfigurationState.FAILED

    @pytest.mark.asyncio
    async def test_later_mismatch_keeps_earlier_properties(self, configurator, simulator):
        simulator.state.mismatches["b"] = 2

        with pytest.raises(PropertyMismatchError) as info:
            await configurator.configure({"a": "1", "b": "2"})

        assert info.value.key == "b"
        assert simulator.received.count("DUT:a=1") == 1
        assert simulator.received.count("DUT:b=2") == 2
        assert "DUT:configured=1" not in simulator.received
        assert simulator.state.properties == {"a": "1"}

    @pytest.mark.asyncio
    async def test_empty_value_aborts(self, configurator, simulator):
        with pytest.raises(ConfigurationError, match="'keep'"):
            await configurator.configure({"keep": ""})
        assert simulator.received == ["DUT:defaults"]

    @pytest.mark.asyncio
    async def test_echo_lost_to_checksum_is_resent(self, session, simulator):
        """A corrupted echo is dropped by the link; the request resend recovers."""
        configurator = Configurator(session, ConfiguratorConfig(
            defaults_timeout=0.05, property_timeout=0.05, property_retries=1,
        ))

        def corrupt_next_echo(state, prop):
            if prop is not None and prop.key == "a":
                simulator.state.corrupt_replies = 1

        configurator.add_state_callback(corrupt_next_echo)
        await configurator.configure({"a": "x"})

        assert simulator.received.count("DUT:a=x") == 2
        assert session.link.stats.checksum_errors == 1
        assert configurator.state == ConfigurationState.DONE

    @pytest.mark.asyncio
    async def test_property_timeout(self, configurator, simulator):
        simulator.state.silent_types.add("b")

        with pytest.raises(ConfigurationError, match="'b'"):
            await configurator.configure({"a": 1, "b": 2, "c": 3})

        assert "DUT:c=3" not in simulator.received

    @pytest.mark.asyncio
    async def test_flushes_after_run(self, configurator, transport):
        await configurator.configure({})
        assert transport.flush_count == 1

    @pytest.mark.asyncio
    async def test_encoding_error_aborts(self, configurator):
        with pytest.raises(ConfigurationError):
            await configurator.configure({"url": "http://host"})


class TestBeginConfiguration:
    """Test the callback wrapper."""

    @pytest.mark.asyncio
    async def test_success_callback(self, configurator):
        callback = Mock()
        await configurator.begin_configuration({"a": 1}, callback)
        callback.assert_called_once_with(None)

    @pytest.mark.asyncio
    async def test_failure_callback(self, configurator, simulator):
        simulator.state.silent_types.add("defaults")
        callback = Mock()

        task = configurator.begin_configuration({"a": 1}, callback)
        await asyncio.wait_for(task, timeout=1.0)

        error = callback.call_args.args[0]
        assert isinstance(error, ConfigurationError)
