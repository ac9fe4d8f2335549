"""
TestKit Transport Base Interface

This module defines the abstract base class for all transport implementations
and the error taxonomy shared by the communication stack. Transport classes
handle the low-level byte exchange with the TestKit.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, Callable
import asyncio


class TransportError(Exception):
    """Base exception for transport errors."""
    pass


class ConnectionError(TransportError):
    """Port open / enumerate failure."""
    pass


class LinkClosedError(ConnectionError):
    """Write attempted on a closed link."""
    pass


class SessionClosedError(ConnectionError):
    """Operation attempted after the session's link went away."""
    pass


class NoDeviceError(TransportError):
    """Port scan found no TestKit."""
    pass


class TimeoutError(TransportError):
    """A request exhausted its retries without a response."""
    pass


class EmptyResponseError(TransportError):
    """The matched response carried no value."""
    pass


class TransportState(Enum):
    """Transport connection state."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


@dataclass
class TransportInfo:
    """Information about a transport endpoint."""
    port: str
    description: str
    hardware_id: str = ""
    manufacturer: str = ""


class TransportBase(ABC):
    """
    Abstract base class for transport implementations.

    All transports deliver received bytes through the data callback and
    report connection loss through the state callback.
    """

    def __init__(self):
        self._state = TransportState.DISCONNECTED
        self._state_callback: Optional[Callable[[TransportState], None]] = None
        self._data_callback: Optional[Callable[[bytes], None]] = None

    @property
    def state(self) -> TransportState:
        """Get current transport state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if transport is connected."""
        return self._state == TransportState.CONNECTED

    def set_state_callback(self, callback: Optional[Callable[[TransportState], None]]) -> None:
        """
        Set callback for state changes.

        Args:
            callback: Function to call when state changes, or None to clear
        """
        self._state_callback = callback

    def set_data_callback(self, callback: Optional[Callable[[bytes], None]]) -> None:
        """
        Set callback for received data.

        Args:
            callback: Function to call when data is received, or None to clear
        """
        self._data_callback = callback

    def _set_state(self, new_state: TransportState) -> None:
        """
        Update transport state and notify callback.

        Args:
            new_state: New transport state
        """
        if self._state != new_state:
            self._state = new_state
            if self._state_callback:
                self._state_callback(new_state)

    def _on_data_received(self, data: bytes) -> None:
        """
        Handle received data and notify callback.

        Args:
            data: Received data bytes
        """
        if self._data_callback:
            self._data_callback(data)

    @staticmethod
    @abstractmethod
    def list_ports() -> list[TransportInfo]:
        """
        List available ports for this transport type.

        Returns:
            List of TransportInfo objects describing available ports

        Raises:
            ConnectionError: If ports cannot be enumerated
        """
        pass

    @abstractmethod
    async def connect(self, port: str, **kwargs) -> None:
        """
        Connect to the specified port.

        Args:
            port: Port identifier (e.g., "COM3" or "/dev/ttyUSB0")
            **kwargs: Transport-specific connection parameters

        Raises:
            ConnectionError: If connection fails
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """
        Disconnect from the current port.

        This method should be safe to call even if not connected.
        """
        pass

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """
        Send data to the connected device.

        Raises:
            ConnectionError: If not connected
            TransportError: If send fails
        """
        pass

    @abstractmethod
    async def flush_input(self) -> None:
        """Discard any received but unprocessed data."""
        pass

    @abstractmethod
    def get_port_info(self) -> Optional[TransportInfo]:
        """
        Get information about the currently connected port.

        Returns:
            TransportInfo for current port, or None if not connected
        """
        pass


class MockTransport(TransportBase):
    """
    Mock transport for testing purposes.

    Records every write and lets tests inject received bytes or
    simulate the port disappearing.
    """

    def __init__(self, fail_connect: bool = False):
        super().__init__()
        self._tx_log: list[bytes] = []
        self._connected_port: Optional[str] = None
        self._connect_kwargs: dict = {}
        self._auto_response: Optional[Callable[[bytes], Optional[bytes]]] = None
        self._fail_connect = fail_connect
        self.flush_count = 0

    def set_auto_response(self, handler: Optional[Callable[[bytes], Optional[bytes]]]) -> None:
        """
        Set auto-response handler for testing.

        Args:
            handler: Function that receives sent data and returns response, or None
        """
        self._auto_response = handler

    def inject_data(self, data: bytes) -> None:
        """Feed bytes as if the device had sent them."""
        self._on_data_received(data)

    def inject_line(self, line: str) -> None:
        """Feed one CRLF-terminated line."""
        self.inject_data((line + "\r\n").encode("ascii"))

    def simulate_disconnect(self) -> None:
        """Drop the connection from the device side."""
        self._connected_port = None
        self._set_state(TransportState.DISCONNECTED)

    def get_tx_log(self) -> list[bytes]:
        """Get log of all transmitted data."""
        return self._tx_log.copy()

    def get_tx_lines(self) -> list[str]:
        """Get transmitted data decoded as lines without terminators."""
        return [data.decode("ascii").rstrip("\r\n") for data in self._tx_log]

    def clear_tx_log(self) -> None:
        """Clear the transmission log."""
        self._tx_log.clear()

    @property
    def connect_kwargs(self) -> dict:
        """Keyword arguments of the last connect() call."""
        return dict(self._connect_kwargs)

    @staticmethod
    def list_ports() -> list[TransportInfo]:
        """List mock ports."""
        return [
            TransportInfo(port="MOCK1", description="Mock TestKit 1", hardware_id="MOCK_001"),
            TransportInfo(port="MOCK2", description="Mock TestKit 2", hardware_id="MOCK_002"),
        ]

    async def connect(self, port: str, **kwargs) -> None:
        """Connect to mock port."""
        self._set_state(TransportState.CONNECTING)
        await asyncio.sleep(0)
        if self._fail_connect:
            self._set_state(TransportState.ERROR)
            raise ConnectionError(f"Failed to connect to {port}: port busy")
        self._connected_port = port
        self._connect_kwargs = kwargs
        self._set_state(TransportState.CONNECTED)

    async def disconnect(self) -> None:
        """Disconnect from mock port."""
        self._connected_port = None
        self._set_state(TransportState.DISCONNECTED)

    async def send(self, data: bytes) -> None:
        """Send data (logs to tx_log)."""
        if not self.is_connected:
            raise ConnectionError("Not connected")
        self._tx_log.append(data)

        if self._auto_response:
            response = self._auto_response(data)
            if response:
                self._on_data_received(response)

    async def flush_input(self) -> None:
        """Nothing is buffered in the mock."""
        self.flush_count += 1

    def get_port_info(self) -> Optional[TransportInfo]:
        """Get current port info."""
        if not self._connected_port:
            return None
        return TransportInfo(
            port=self._connected_port,
            description=f"Mock Port {self._connected_port}",
        )
