"""
TestKit Device Session

Owns one open FramedLink and turns it into a request/response channel:
- a receive loop dispatches every frame to the RequestTracker, to button
  subscribers or to free-form message subscribers
- LED helpers for the fixture's six status LEDs
- closure of the link fails every pending request and notifies subscribers

Usage:
    session = DeviceSession(link)
    await session.start()
    session.subscribe(SessionEvent.BUTTON, on_button)
    reply = await session.request(Message(Target.DEVICE, "fullid"))
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..communication.framed_link import FramedLink
from ..communication.protocol import Message, ProtocolError, Target, decode_message
from ..communication.transport_base import ConnectionError, SessionClosedError
from ..constants import (
    DEFAULT_PING_TIMEOUT,
    DEFAULT_REQUEST_RETRIES,
    DEFAULT_REQUEST_TIMEOUT,
    LED_COUNT,
    LED_ERROR_INDEX,
    MSG_BUTTON,
    MSG_LEDS,
    MSG_PING,
)
from .request_tracker import PendingRequest, RequestTracker

logger = logging.getLogger(__name__)


class SessionEvent(Enum):
    """Events published by a session."""
    BUTTON = auto()    # payload: button value (str or None)
    MESSAGE = auto()   # payload: unsolicited frame text
    CLOSED = auto()    # payload: None


@dataclass
class SessionConfig:
    """Request defaults of a session."""
    default_timeout: float = DEFAULT_REQUEST_TIMEOUT
    default_retries: int = DEFAULT_REQUEST_RETRIES
    ping_timeout: float = DEFAULT_PING_TIMEOUT
    ping_retries: int = DEFAULT_REQUEST_RETRIES
    blink_error_period: float = 1.0


@dataclass
class LedState:
    """On/off state of the fixture LEDs, index 0 first."""
    leds: List[bool] = field(default_factory=lambda: [False] * LED_COUNT)

    def set(self, index: int, on: bool) -> None:
        self.leds[index] = on

    def clear(self) -> None:
        self.leds = [False] * LED_COUNT

    def to_wire(self) -> str:
        return "".join("1" if on else "0" for on in self.leds)


class DeviceSession:
    """
    Request/response session over one TestKit link.

    All public coroutines must run on the loop that started the session.
    """

    def __init__(self, link: FramedLink, config: Optional[SessionConfig] = None):
        self._link = link
        self._config = config or SessionConfig()
        self._tracker = RequestTracker(
            self._link.write,
            on_repeat=self._on_repeat,
            on_timeout=self._on_timeout,
        )

        self._subscribers: Dict[int, Tuple[SessionEvent, Callable[[Any], None]]] = {}
        self._next_subscription_id = 1

        self._leds = LedState()
        self._blink_error_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closed = False

        self._link.add_closed_callback(self._on_link_closed)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def link(self) -> FramedLink:
        return self._link

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def tracker(self) -> RequestTracker:
        return self._tracker

    @property
    def leds(self) -> LedState:
        return self._leds

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_blinking_error(self) -> bool:
        return self._blink_error_task is not None and not self._blink_error_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start dispatching received frames."""
        if self._closed:
            raise SessionClosedError(f"Session on {self._link.port} is closed")
        if self._receive_task is None:
            self._receive_task = asyncio.create_task(
                self._receive_loop(), name=f"session-{self._link.port}"
            )
            logger.info(f"Session started on {self._link.port}")

    async def close(self) -> None:
        """Close the link and tear the session down. Safe to call repeatedly."""
        await self._link.close()
        # The closed callback has run by now; make sure teardown happened
        self._on_link_closed(self._link)

        if self._receive_task is not None and self._receive_task is not asyncio.current_task():
            self._receive_task.cancel()
            await asyncio.gather(self._receive_task, return_exceptions=True)
        self._receive_task = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, event: SessionEvent, callback: Callable[[Any], None]) -> int:
        """
        Subscribe a callback to a session event.

        Returns:
            Subscription ID for unsubscribing
        """
        sub_id = self._next_subscription_id
        self._next_subscription_id += 1
        self._subscribers[sub_id] = (event, callback)
        logger.debug(f"Added subscription {sub_id} for {event.name}")
        return sub_id

    def unsubscribe(self, subscription_id: int) -> None:
        """Unsubscribe a callback by its subscription ID."""
        if subscription_id in self._subscribers:
            del self._subscribers[subscription_id]
            logger.debug(f"Removed subscription {subscription_id}")

    def _emit(self, event: SessionEvent, payload: Any = None) -> None:
        for sub_id, (sub_event, callback) in list(self._subscribers.items()):
            if sub_event != event:
                continue
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Error in {event.name} subscription {sub_id}: {e}")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def send(
        self,
        message: Message,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        delay: float = 0.0,
    ) -> asyncio.Future:
        """
        Send a request and return the future of its response value.

        Raises:
            SessionClosedError: If the session is closed
        """
        if self._closed:
            raise SessionClosedError(f"Session on {self._link.port} is closed")
        return self._tracker.track(
            message,
            timeout=self._config.default_timeout if timeout is None else timeout,
            max_retries=self._config.default_retries if max_retries is None else max_retries,
            delay=delay,
        )

    async def request(
        self,
        message: Message,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        delay: float = 0.0,
    ) -> str:
        """Send a request and wait for its response value."""
        return await self.send(message, timeout=timeout, max_retries=max_retries, delay=delay)

    async def send_plain(self, line: Union[str, Message]) -> None:
        """
        Write a line without tracking a response.

        Raises:
            SessionClosedError: If the session is closed
        """
        if self._closed:
            raise SessionClosedError(f"Session on {self._link.port} is closed")
        if isinstance(line, Message):
            line = line.encode()
        await self._link.write(line)

    async def ping(self) -> str:
        """Ping the fixture controller."""
        logger.debug("Sending ping")
        return await self.request(
            Message(Target.CONTROLLER, MSG_PING),
            timeout=self._config.ping_timeout,
            max_retries=self._config.ping_retries,
        )

    async def flush(self) -> None:
        """Discard received input."""
        logger.debug(f"Flushing {self._link.port}")
        await self._link.flush()

    # ------------------------------------------------------------------
    # LEDs
    # ------------------------------------------------------------------

    async def led_high(self, index: int) -> None:
        await self.led_change(True, index)

    async def led_low(self, index: int) -> None:
        await self.led_change(False, index)

    async def led_change(self, on: bool, index: int) -> None:
        """Switch one LED and write the whole pattern."""
        if not 0 <= index < LED_COUNT:
            logger.warning(
                f"LED index {index} out of range, allowed values are 0 to {LED_COUNT - 1}"
            )
            return
        self._leds.set(index, on)
        await self._write_leds(self._leds.to_wire())

    async def blink(self, count: int, delay: float) -> None:
        """Flash all LEDs count times; the stored pattern is not changed."""
        for _ in range(count):
            await self._write_leds("1" * LED_COUNT)
            await asyncio.sleep(delay)
            await self._write_leds("0" * LED_COUNT)
            await asyncio.sleep(delay)

    def blink_error(self) -> None:
        """Start blinking the error LED in the background until reset_leds()."""
        if self.is_blinking_error or self._closed:
            return
        logger.info("Fault state: blinking error LED")
        self._blink_error_task = asyncio.create_task(self._blink_error_loop())

    async def reset_leds(self) -> None:
        """Stop error blinking and switch every LED off."""
        await self._stop_blink_error()
        self._leds.clear()
        await self.send_plain(Message(Target.CONTROLLER, MSG_LEDS, self._leds.to_wire()))

    async def _write_leds(self, pattern: str) -> None:
        await self.send_plain(Message(Target.CONTROLLER, MSG_LEDS, pattern))

    async def _blink_error_loop(self) -> None:
        half = self._config.blink_error_period / 2
        try:
            while not self._closed:
                await self.led_high(LED_ERROR_INDEX)
                await asyncio.sleep(half)
                await self.led_low(LED_ERROR_INDEX)
                await asyncio.sleep(half)
        except ConnectionError as e:
            logger.debug(f"Error LED blinking stopped: {e}")

    async def _stop_blink_error(self) -> None:
        task, self._blink_error_task = self._blink_error_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Receive path
    # ------------------------------------------------------------------

    async def _receive_loop(self) -> None:
        async for line in self._link.lines():
            self._dispatch(line)
        self._on_link_closed(self._link)

    def _dispatch(self, line: str) -> None:
        try:
            message = decode_message(line)
        except ProtocolError:
            logger.debug(f"Free-form message: {line}")
            self._emit(SessionEvent.MESSAGE, line)
            return

        if message.type == MSG_BUTTON:
            logger.info(f"Button pressed ({message.target.value}, value={message.value})")
            self._emit(SessionEvent.BUTTON, message.value)
            return

        if not self._tracker.resolve(message.target, message.type, message.value):
            logger.debug(f"Unsolicited message: {line}")
            self._emit(SessionEvent.MESSAGE, line)

    def _on_repeat(self, request: PendingRequest) -> None:
        logger.debug(f"Repeating {request.description}")

    def _on_timeout(self, request: PendingRequest) -> None:
        logger.debug(f"Gave up on {request.description}")

    def _on_link_closed(self, link: FramedLink) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info(f"Session on {link.port} closed")

        rejected = self._tracker.reject_all(
            SessionClosedError(f"Session on {link.port} closed")
        )
        if rejected:
            logger.warning(f"{rejected} pending request(s) failed on session close")

        task, self._blink_error_task = self._blink_error_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        self._link.remove_closed_callback(self._on_link_closed)
        self._emit(SessionEvent.CLOSED)
