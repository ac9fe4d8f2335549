"""
DeviceSession Tests
Tests for dispatch, subscriptions, LEDs and closure against the simulator
"""

import asyncio

import pytest
from unittest.mock import Mock

from testkit.communication.protocol import Message, Target
from testkit.communication.transport_base import SessionClosedError, TimeoutError
from testkit.controllers.device_session import LedState, SessionEvent


class TestLedState:
    """Test LED pattern bookkeeping."""

    def test_initially_off(self):
        assert LedState().to_wire() == "000000"

    def test_set_and_clear(self):
        leds = LedState()
        leds.set(0, True)
        leds.set(5, True)
        assert leds.to_wire() == "100001"
        leds.clear()
        assert leds.to_wire() == "000000"


class TestRequests:
    """Test request/response through the session."""

    @pytest.mark.asyncio
    async def test_ping(self, session):
        assert await session.ping() == "ok"

    @pytest.mark.asyncio
    async def test_request_value(self, session, simulator):
        simulator.state.full_id = "FEEDBEEF"
        reply = await session.request(Message(Target.DEVICE, "fullid"))
        assert reply == "FEEDBEEF"

    @pytest.mark.asyncio
    async def test_request_timeout(self, session, simulator):
        simulator.state.silent_types.add("fullid")
        with pytest.raises(TimeoutError):
            await session.request(Message(Target.DEVICE, "fullid"), timeout=0.02, max_retries=1)
        assert simulator.received.count("DUT:fullid") == 2

    @pytest.mark.asyncio
    async def test_corrupted_reply_is_retried(self, session, simulator):
        """A reply with a broken checksum is dropped; the resend gets through."""
        simulator.state.corrupt_replies = 1
        reply = await session.request(Message(Target.CONTROLLER, "ping"), timeout=0.05, max_retries=2)
        assert reply == "ok"
        assert session.link.stats.checksum_errors == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests(self, session):
        ping, full_id = await asyncio.gather(
            session.request(Message(Target.CONTROLLER, "ping")),
            session.request(Message(Target.DEVICE, "fullid")),
        )
        assert ping == "ok"
        assert full_id == "0123456789ABCDEF"

    @pytest.mark.asyncio
    async def test_send_plain(self, session, simulator):
        await session.send_plain("ATE:leds=110000")
        await session.send_plain(Message(Target.CONTROLLER, "leds", "001100"))
        assert simulator.received == ["ATE:leds=110000", "ATE:leds=001100"]
        assert session.tracker.pending_count == 0


class TestDispatch:
    """Test routing of received frames."""

    @pytest.mark.asyncio
    async def test_button(self, session, simulator, transport):
        callback = Mock()
        session.subscribe(SessionEvent.BUTTON, callback)

        transport.deliver(simulator.press_button())
        await asyncio.sleep(0.01)

        callback.assert_called_once_with("1")

    @pytest.mark.asyncio
    async def test_unsolicited_message(self, session, simulator, transport):
        callback = Mock()
        session.subscribe(SessionEvent.MESSAGE, callback)

        transport.deliver(simulator.frame("DUT:status=booted"))
        await asyncio.sleep(0.01)

        callback.assert_called_once_with("DUT:status=booted")

    @pytest.mark.asyncio
    async def test_free_form_text(self, session, simulator, transport):
        callback = Mock()
        session.subscribe(SessionEvent.MESSAGE, callback)

        transport.deliver(simulator.frame("bootloader v2.1 ready"))
        await asyncio.sleep(0.01)

        callback.assert_called_once_with("bootloader v2.1 ready")

    @pytest.mark.asyncio
    async def test_unsubscribe(self, session, simulator, transport):
        callback = Mock()
        sub_id = session.subscribe(SessionEvent.BUTTON, callback)
        session.unsubscribe(sub_id)

        transport.deliver(simulator.press_button())
        await asyncio.sleep(0.01)

        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_dispatch(self, session, simulator, transport):
        failing = Mock(side_effect=RuntimeError("boom"))
        other = Mock()
        session.subscribe(SessionEvent.BUTTON, failing)
        session.subscribe(SessionEvent.BUTTON, other)

        transport.deliver(simulator.press_button("2"))
        await asyncio.sleep(0.01)

        other.assert_called_once_with("2")
        assert await session.ping() == "ok"


class TestClosure:
    """Test behaviour when the link goes away."""

    @pytest.mark.asyncio
    async def test_pending_requests_fail(self, session, simulator, transport):
        simulator.state.silent_types.add("fullid")
        future = session.send(Message(Target.DEVICE, "fullid"), timeout=5.0)
        await asyncio.sleep(0.01)

        transport.simulate_disconnect()

        with pytest.raises(SessionClosedError):
            await future

    @pytest.mark.asyncio
    async def test_closed_event_once(self, session, transport):
        callback = Mock()
        session.subscribe(SessionEvent.CLOSED, callback)

        transport.simulate_disconnect()
        await asyncio.sleep(0.01)
        await session.close()

        callback.assert_called_once_with(None)
        assert session.is_closed

    @pytest.mark.asyncio
    async def test_send_after_close(self, session):
        await session.close()

        with pytest.raises(SessionClosedError):
            session.send(Message(Target.CONTROLLER, "ping"))
        with pytest.raises(SessionClosedError):
            await session.send_plain("ATE:ping")
        with pytest.raises(SessionClosedError):
            await session.start()


class TestLeds:
    """Test LED helpers."""

    @pytest.mark.asyncio
    async def test_led_high_low(self, session, simulator):
        await session.led_high(0)
        assert simulator.state.leds == "100000"
        await session.led_high(2)
        assert simulator.state.leds == "101000"
        await session.led_low(0)
        assert simulator.state.leds == "001000"

    @pytest.mark.asyncio
    async def test_led_out_of_range(self, session, simulator):
        await session.led_change(True, 6)
        await session.led_change(True, -1)
        assert simulator.received == []

    @pytest.mark.asyncio
    async def test_blink_keeps_stored_pattern(self, session, simulator):
        await session.led_high(1)
        simulator.received.clear()

        await session.blink(2, 0)

        assert simulator.received == [
            "ATE:leds=111111", "ATE:leds=000000",
            "ATE:leds=111111", "ATE:leds=000000",
        ]
        assert session.leds.to_wire() == "010000"

    @pytest.mark.asyncio
    async def test_blink_error_and_reset(self, session, simulator):
        session.blink_error()
        assert session.is_blinking_error
        await asyncio.sleep(0.05)

        assert "ATE:leds=000001" in simulator.received

        await session.reset_leds()
        assert not session.is_blinking_error
        assert simulator.received[-1] == "ATE:leds=000000"
        assert session.leds.to_wire() == "000000"

    @pytest.mark.asyncio
    async def test_blink_error_stops_on_close(self, session, transport):
        session.blink_error()
        await asyncio.sleep(0.01)

        transport.simulate_disconnect()
        await asyncio.sleep(0.05)

        assert not session.is_blinking_error
