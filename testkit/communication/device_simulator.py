"""
TestKit Device Simulator
Simulates a TestKit fixture (tester board + device under test) for testing
without hardware.

Implements:
- Discovery ping, LED pattern, button presses
- Property configuration echo (with injectable mismatches)
- Pin and power measurements
- Bootloader / restart / full id exchanges
- Fault injection: silent message types, dropped replies, corrupted checksums
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ..constants import (
    CHECKSUM_SEPARATOR,
    LED_COUNT,
    LINE_TERMINATOR,
    MSG_BOOTLOADER,
    MSG_BUTTON,
    MSG_DEFAULTS,
    MSG_FIRMWARE,
    MSG_FULL_ID,
    MSG_LEDS,
    MSG_MEASURE_PINS,
    MSG_MEASURE_POWER,
    MSG_PING,
    MSG_PINS_DOWN,
    MSG_PINS_UP,
    MSG_RESTART,
    REPLY_OK,
)
from .protocol import (
    ChecksumError,
    Message,
    ProtocolError,
    Target,
    add_checksum,
    decode_message,
    strip_checksum,
)
from .transport_base import MockTransport

logger = logging.getLogger(__name__)


# Device reply order of power sources
POWER_REPLY_ORDER = ("usb_pwr", "ext_pwr", "poe_pas", "poe_act")


@dataclass
class SimulatorState:
    """Complete simulator state."""
    crc_enabled: bool = True
    full_id: str = "0123456789ABCDEF"
    bare_pin_acks: bool = False  # answer pin commands with "DUT:ok"

    # Outputs
    leds: str = "0" * LED_COUNT
    pins: Optional[str] = None  # "up", "down" or None

    # Configuration store
    properties: Dict[str, str] = field(default_factory=dict)

    # Measurements
    pins_up: Dict[str, str] = field(default_factory=lambda: {axis: "1" * 32 for axis in "XYZ"})
    pins_down: Dict[str, str] = field(default_factory=lambda: {axis: "0" * 32 for axis in "XYZ"})
    power: Dict[str, Dict[str, float]] = field(default_factory=lambda: {
        source: {"vbus": 5.0, "v3": 3.3, "curr": 0.12} for source in POWER_REPLY_ORDER
    })

    # Fault injection
    silent_types: Set[str] = field(default_factory=set)
    dropped_replies: Dict[str, int] = field(default_factory=dict)  # type -> replies to drop
    mismatches: Dict[str, int] = field(default_factory=dict)  # key -> wrong echoes left
    corrupt_replies: int = 0
    empty_replies: Set[str] = field(default_factory=set)


class TestKitSimulator:
    """
    TestKit fixture simulator.

    Consumes written lines and produces the lines a real fixture would
    answer with.
    """

    __test__ = False

    def __init__(self, state: Optional[SimulatorState] = None):
        self.state = state or SimulatorState()
        self.received: List[str] = []

    def process_line(self, raw: str) -> List[str]:
        """
        Handle one written line.

        Args:
            raw: Line without terminator, possibly with checksum

        Returns:
            Wire lines (checksum added when enabled) to send back
        """
        line = raw
        if self.state.crc_enabled:
            try:
                line = strip_checksum(raw)
            except ChecksumError as e:
                logger.warning(f"Simulator ignored line: {e}")
                return []

        self.received.append(line)

        try:
            message = decode_message(line)
        except ProtocolError:
            return []

        if message.type in self.state.silent_types:
            return []

        remaining = self.state.dropped_replies.get(message.type, 0)
        if remaining > 0:
            self.state.dropped_replies[message.type] = remaining - 1
            return []

        reply = self._handle_message(message)
        if reply is None:
            return []

        if message.type in self.state.empty_replies:
            reply = f"{message.target.value}:{message.type}"

        return [self._frame(reply)]

    def press_button(self, value: str = "1") -> str:
        """Wire line of a button press notification."""
        return self._frame(f"{Target.CONTROLLER.value}:{MSG_BUTTON}={value}")

    def frame(self, line: str) -> str:
        """Add checksum (when enabled) to an arbitrary line."""
        return self._frame(line)

    def _frame(self, line: str) -> str:
        if self.state.crc_enabled:
            return add_checksum(line)
        return line

    def _reply(self, message: Message, value: str) -> str:
        return f"{message.target.value}:{message.type}={value}"

    def _handle_message(self, message: Message) -> Optional[str]:
        if message.target == Target.CONTROLLER:
            return self._handle_controller(message)
        return self._handle_device(message)

    def _handle_controller(self, message: Message) -> Optional[str]:
        if message.type == MSG_PING:
            return self._reply(message, REPLY_OK)
        if message.type == MSG_LEDS:
            if message.value and len(message.value) == LED_COUNT:
                self.state.leds = message.value
            return None
        if message.type in (MSG_BOOTLOADER, MSG_RESTART):
            return self._reply(message, REPLY_OK)
        if message.type == MSG_MEASURE_PINS:
            return self._reply(message, self._pin_reply())
        if message.type == MSG_MEASURE_POWER:
            return self._reply(message, self._power_reply())
        return None

    def _handle_device(self, message: Message) -> Optional[str]:
        if message.type in (MSG_PING, MSG_BOOTLOADER):
            return self._reply(message, REPLY_OK)
        if message.type == MSG_DEFAULTS:
            self.state.properties.clear()
            return self._reply(message, REPLY_OK)
        if message.type in (MSG_PINS_UP, MSG_PINS_DOWN):
            self.state.pins = "up" if message.type == MSG_PINS_UP else "down"
            if self.state.bare_pin_acks:
                return f"{message.target.value}:{REPLY_OK}"
            return self._reply(message, REPLY_OK)
        if message.type == MSG_FULL_ID:
            return self._reply(message, self.state.full_id)
        if message.type == MSG_FIRMWARE:
            return self._reply(message, REPLY_OK)
        if message.value is None:
            return None

        # Property set: echo the stored value
        value = message.value
        remaining = self.state.mismatches.get(message.type, 0)
        if remaining > 0:
            self.state.mismatches[message.type] = remaining - 1
            value = value + "_x"
        else:
            self.state.properties[message.type] = value
        return self._reply(message, value)

    def _pin_reply(self) -> str:
        bits = self.state.pins_down if self.state.pins == "down" else self.state.pins_up
        return ";".join(f"{axis}:{bits.get(axis, '')}" for axis in "XYZ")

    def _power_reply(self) -> str:
        parts = []
        for source in POWER_REPLY_ORDER:
            values = self.state.power.get(source, {})
            for name in ("vbus", "v3", "curr"):
                value = values.get(name)
                parts.append(f"{name}={'' if value is None else value}")
        return ";".join(parts) + ";"


class SimulatedTransport(MockTransport):
    """
    MockTransport wired to a TestKitSimulator.

    Replies are delivered asynchronously after `response_delay` seconds,
    the way a real port hands data to the read loop.
    """

    def __init__(
        self,
        simulator: Optional[TestKitSimulator] = None,
        response_delay: float = 0.0,
        fail_connect: bool = False,
    ):
        super().__init__(fail_connect=fail_connect)
        self.simulator = simulator or TestKitSimulator()
        self.response_delay = response_delay

    async def send(self, data: bytes) -> None:
        await super().send(data)
        for raw in data.decode("utf-8").split(LINE_TERMINATOR):
            if not raw:
                continue
            for reply in self.simulator.process_line(raw):
                if self.simulator.state.corrupt_replies > 0:
                    self.simulator.state.corrupt_replies -= 1
                    reply = _corrupt(reply)
                self.deliver(reply)

    def deliver(self, line: str) -> None:
        """Schedule one wire line for reception."""
        loop = asyncio.get_running_loop()
        payload = (line + LINE_TERMINATOR).encode("utf-8")
        loop.call_later(self.response_delay, self._deliver_now, payload)

    def _deliver_now(self, payload: bytes) -> None:
        if self.is_connected:
            self._on_data_received(payload)


def _corrupt(line: str) -> str:
    index = line.rfind(CHECKSUM_SEPARATOR)
    if index < 0:
        return line + CHECKSUM_SEPARATOR + "00"
    body, crc = line[:index], line[index + 1:]
    return f"{body}{CHECKSUM_SEPARATOR}{'00' if crc != '00' else 'FF'}"
