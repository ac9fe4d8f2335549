"""
Connection Recovery Machine for the TestKit

A state machine that keeps a TestKit connected:
- scans for the fixture with PortScanner until one answers
- wraps the found link in a DeviceSession and a TesterKitDevice
- rescans with exponential backoff whenever the session closes
- optional health monitoring via ping
- debounced hardware button presses trigger a device check
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Any, Callable, Dict, Optional, Set, Tuple

from ..communication.port_scanner import PortScanner
from ..communication.transport_base import ConnectionError, TransportError
from ..constants import BUTTON_DEBOUNCE
from ..device.testkit_device import TesterKitDevice
from ..utils.error_handler import ErrorHandler
from .device_session import DeviceSession, SessionConfig, SessionEvent

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection state machine states."""
    DISCONNECTED = auto()    # Not connected, not trying
    SCANNING = auto()        # Looking for the TestKit
    CONNECTED = auto()       # Session open
    RECONNECTING = auto()    # Lost the session, waiting to rescan
    SUSPENDED = auto()       # User-initiated stop, no auto-reconnect


class RecoveryEvent(Enum):
    """Events published to subscribers."""
    CONNECTED = auto()         # payload: TesterKitDevice
    DISCONNECTED = auto()      # payload: None
    CONNECTION_ERROR = auto()  # payload: error message
    BUTTON = auto()            # payload: button value


@dataclass
class RecoveryConfig:
    """Configuration for connection recovery behavior."""
    # Reconnection settings
    auto_reconnect: bool = True
    max_attempts: int = 0  # 0 = unlimited
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    backoff_multiplier: float = 1.5  # Exponential backoff factor

    # Greeting blink after connecting
    greeting_blinks: int = 5
    greeting_blink_delay: float = 0.15

    button_debounce: float = BUTTON_DEBOUNCE

    # Health check settings
    health_check_enabled: bool = False
    health_check_interval: float = 10.0  # seconds
    max_consecutive_failures: int = 3  # Close the session after N failures


@dataclass
class ConnectionStats:
    """Statistics about connection state."""
    state: ConnectionState = ConnectionState.DISCONNECTED
    port: Optional[str] = None
    connected_since: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    scan_attempts: int = 0
    total_reconnects: int = 0
    last_health_check: Optional[datetime] = None
    consecutive_health_failures: int = 0


class ConnectionRecoveryMachine:
    """
    State machine for managing the TestKit connection lifecycle.

    States:
        DISCONNECTED -> SCANNING -> CONNECTED
        CONNECTED -> RECONNECTING -> SCANNING -> CONNECTED
        any -> SUSPENDED (stop)

    Usage:
        recovery = ConnectionRecoveryMachine(PortScanner(scan_config, link_config))
        recovery.subscribe(RecoveryEvent.CONNECTED, on_device)
        await recovery.start()
        ...
        await recovery.stop()
    """

    def __init__(
        self,
        scanner: PortScanner,
        session_config: Optional[SessionConfig] = None,
        config: Optional[RecoveryConfig] = None,
        device_factory: Optional[Callable[[DeviceSession], TesterKitDevice]] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        """
        Initialize the recovery machine.

        Args:
            scanner: Finds the TestKit port
            session_config: Settings of every created session
            config: Recovery behavior
            device_factory: Builds the device wrapper for a new session
            error_handler: Records scan failures and device errors across reconnects
        """
        self._scanner = scanner
        self._session_config = session_config
        self._config = config or RecoveryConfig()
        self._error_handler = error_handler or ErrorHandler()
        self._device_factory = device_factory or self._create_device

        self._state = ConnectionState.DISCONNECTED
        self._stats = ConnectionStats()

        self._session: Optional[DeviceSession] = None
        self._device: Optional[TesterKitDevice] = None

        self._connect_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._last_button: Optional[float] = None

        self._subscribers: Dict[int, Tuple[RecoveryEvent, Callable[[Any], None]]] = {}
        self._next_subscription_id = 1

        # Callbacks
        self.on_state_changed: Optional[Callable[[ConnectionState, ConnectionState], None]] = None

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def session(self) -> Optional[DeviceSession]:
        return self._session

    @property
    def device(self) -> Optional[TesterKitDevice]:
        return self._device

    @property
    def error_handler(self) -> ErrorHandler:
        return self._error_handler

    @property
    def stats(self) -> ConnectionStats:
        """Get a copy of the connection statistics."""
        return ConnectionStats(**vars(self._stats))

    # ========================================================================
    # Subscriptions
    # ========================================================================

    def subscribe(self, event: RecoveryEvent, callback: Callable[[Any], None]) -> int:
        """Subscribe a callback to an event; returns the subscription ID."""
        sub_id = self._next_subscription_id
        self._next_subscription_id += 1
        self._subscribers[sub_id] = (event, callback)
        return sub_id

    def unsubscribe(self, subscription_id: int) -> None:
        self._subscribers.pop(subscription_id, None)

    def _emit(self, event: RecoveryEvent, payload: Any = None) -> None:
        for sub_id, (sub_event, callback) in list(self._subscribers.items()):
            if sub_event != event:
                continue
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Error in {event.name} subscription {sub_id}: {e}")

    # ========================================================================
    # Public API - State Transitions
    # ========================================================================

    async def start(self) -> bool:
        """
        Start looking for the TestKit.

        Returns:
            True if scanning started
        """
        if self._state in (ConnectionState.CONNECTED, ConnectionState.SCANNING,
                           ConnectionState.RECONNECTING):
            logger.warning(f"Cannot start: already in state {self._state.name}")
            return False

        self._stats.scan_attempts = 0
        self._set_state(ConnectionState.SCANNING)
        self._connect_task = asyncio.create_task(self._connect_loop(wait_first=False))
        return True

    async def stop(self) -> None:
        """Stop scanning and close the session (user-initiated)."""
        old_session = self._session
        self._set_state(ConnectionState.SUSPENDED)

        for task in (self._connect_task, self._health_task, *self._background):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        pending = [
            t for t in (self._connect_task, self._health_task, *self._background)
            if t is not None and t is not asyncio.current_task()
        ]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._connect_task = None
        self._health_task = None
        self._background.clear()

        await self._close_session()
        if old_session is not None:
            self._stats.disconnected_at = datetime.now()
            self._emit(RecoveryEvent.DISCONNECTED)

    async def wait_connected(self, timeout: Optional[float] = None) -> TesterKitDevice:
        """Wait until a device is bound (for scripts and tests)."""
        async def poll() -> TesterKitDevice:
            while self._device is None or self._state != ConnectionState.CONNECTED:
                await asyncio.sleep(0.01)
            return self._device

        return await asyncio.wait_for(poll(), timeout=timeout)

    # ========================================================================
    # Internal - Scanning
    # ========================================================================

    async def _connect_loop(self, wait_first: bool) -> None:
        """Scan until the TestKit answers, with exponential backoff."""
        delay = self._config.initial_delay

        while True:
            if wait_first:
                logger.info(f"Rescanning in {delay:.1f}s")
                await asyncio.sleep(delay)
                delay = min(delay * self._config.backoff_multiplier, self._config.max_delay)
            wait_first = True

            self._stats.scan_attempts += 1
            attempt = self._stats.scan_attempts
            max_attempts = self._config.max_attempts
            if max_attempts > 0 and attempt > max_attempts:
                logger.warning(f"Max scan attempts ({max_attempts}) exhausted")
                self._set_state(ConnectionState.DISCONNECTED)
                self._emit(RecoveryEvent.CONNECTION_ERROR, "scan attempts exhausted")
                return

            self._set_state(ConnectionState.SCANNING)
            logger.info(f"Scan attempt {attempt}/{max_attempts or 'unlimited'}")

            try:
                link = await self._scanner.discover()
            except TransportError as e:
                self._error_handler.handle_exception(e, f"Scan attempt {attempt} failed: {e}")
                self._emit(RecoveryEvent.CONNECTION_ERROR, str(e))
                continue

            try:
                await self._bind(link)
            except TransportError as e:
                self._error_handler.handle_exception(e, f"Cannot start session on {link.port}: {e}")
                await link.close()
                self._emit(RecoveryEvent.CONNECTION_ERROR, str(e))
                continue
            return

    def _create_device(self, session: DeviceSession) -> TesterKitDevice:
        return TesterKitDevice(session, error_handler=self._error_handler)

    async def _bind(self, link) -> None:
        session = DeviceSession(link, self._session_config)
        await session.start()
        session.subscribe(SessionEvent.CLOSED, self._on_session_closed)
        session.subscribe(SessionEvent.BUTTON, self._on_button)

        self._session = session
        self._device = self._device_factory(session)
        self._last_button = None

        reconnected = self._stats.connected_since is not None
        self._stats.port = link.port
        self._stats.connected_since = datetime.now()
        self._stats.consecutive_health_failures = 0
        if reconnected:
            self._stats.total_reconnects += 1

        self._set_state(ConnectionState.CONNECTED)
        self._emit(RecoveryEvent.CONNECTED, self._device)

        if self._config.greeting_blinks > 0:
            self._spawn(session.blink(self._config.greeting_blinks, self._config.greeting_blink_delay))
        if self._config.health_check_enabled:
            self._health_task = asyncio.create_task(self._health_check_loop(session))

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        self._device = None
        if session is not None:
            await session.close()

    def _on_session_closed(self, _payload: Any) -> None:
        if self._state != ConnectionState.CONNECTED:
            logger.debug(f"Session close ignored in state {self._state.name}")
            return

        logger.warning("TestKit session closed")
        self._stats.disconnected_at = datetime.now()
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

        if self._config.auto_reconnect:
            self._set_state(ConnectionState.RECONNECTING)
        else:
            self._set_state(ConnectionState.DISCONNECTED)
        self._emit(RecoveryEvent.DISCONNECTED)

        if self._config.auto_reconnect:
            self._stats.scan_attempts = 0
            self._connect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        await self._close_session()
        await self._connect_loop(wait_first=True)

    # ========================================================================
    # Internal - Button
    # ========================================================================

    def _on_button(self, value: Optional[str]) -> None:
        now = asyncio.get_running_loop().time()
        if self._last_button is not None and now - self._last_button < self._config.button_debounce:
            logger.debug("Button press ignored (debounce)")
            return
        self._last_button = now

        self._emit(RecoveryEvent.BUTTON, value)
        if self._device is not None:
            self._spawn(self._device.check_device())

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(self._guard(coro))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _guard(self, coro) -> None:
        try:
            await coro
        except ConnectionError as e:
            logger.debug(f"Background operation stopped: {e}")

    # ========================================================================
    # Internal - Health Monitoring
    # ========================================================================

    async def _health_check_loop(self, session: DeviceSession) -> None:
        """Periodic ping; closes the session after repeated failures."""
        while self._state == ConnectionState.CONNECTED and not session.is_closed:
            await asyncio.sleep(self._config.health_check_interval)
            if session is not self._session or session.is_closed:
                break

            try:
                await session.ping()
                self._stats.consecutive_health_failures = 0
            except TransportError as e:
                self._stats.consecutive_health_failures += 1
                failures = self._stats.consecutive_health_failures
                logger.warning(
                    f"Health check failed ({failures}/{self._config.max_consecutive_failures}): {e}"
                )
                if failures >= self._config.max_consecutive_failures:
                    logger.error("Max consecutive health check failures, closing session")
                    self._health_task = None
                    await session.close()
                    break
            finally:
                self._stats.last_health_check = datetime.now()

        logger.debug("Health check loop ended")

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._stats.state = new_state
        logger.info(f"Connection state: {old_state.name} -> {new_state.name}")

        if self.on_state_changed:
            try:
                self.on_state_changed(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")
