"""
TestKit USB Serial Transport Implementation

This module implements the serial transport used to reach the TestKit.
It uses pyserial for port enumeration and pyserial-asyncio for async I/O.
"""

import asyncio
from typing import Optional
import logging

import serial
import serial.tools.list_ports
from serial_asyncio import open_serial_connection

from ..constants import DEFAULT_BAUDRATE
from .transport_base import (
    TransportBase,
    TransportInfo,
    TransportState,
    TransportError,
    ConnectionError,
)


logger = logging.getLogger(__name__)


READ_BUFFER_SIZE = 4096


class SerialTransport(TransportBase):
    """
    USB Serial transport for TestKit communication.

    A background task reads from the port and hands every chunk to the
    data callback. An empty read or a read error ends the task and moves
    the transport out of CONNECTED, which upper layers treat as closure.
    """

    def __init__(self):
        super().__init__()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._port_info: Optional[TransportInfo] = None
        self._read_task: Optional[asyncio.Task] = None

    @staticmethod
    def list_ports() -> list[TransportInfo]:
        """
        List available serial ports.

        Raises:
            ConnectionError: If the operating system refuses enumeration
        """
        try:
            found = serial.tools.list_ports.comports()
        except Exception as e:
            raise ConnectionError(f"Failed to enumerate serial ports: {e}") from e

        ports = [
            TransportInfo(
                port=port.device,
                description=port.description or "",
                hardware_id=port.hwid or "",
                manufacturer=port.manufacturer or "",
            )
            for port in found
        ]
        ports.sort(key=lambda p: p.port)
        return ports

    async def connect(
        self,
        port: str,
        baudrate: int = DEFAULT_BAUDRATE,
        rtscts: bool = True,
        **kwargs
    ) -> None:
        """
        Connect to the specified serial port.

        Args:
            port: Serial port name (e.g., "COM3" or "/dev/ttyUSB0")
            baudrate: Baud rate (default 115200)
            rtscts: Hardware flow control
            **kwargs: Additional serial settings

        Raises:
            ConnectionError: If the port is busy or unavailable
        """
        if self.is_connected:
            await self.disconnect()

        self._set_state(TransportState.CONNECTING)

        try:
            self._reader, self._writer = await open_serial_connection(
                url=port,
                baudrate=baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=rtscts,
                **kwargs
            )
        except Exception as e:
            self._set_state(TransportState.ERROR)
            raise ConnectionError(f"Failed to connect to {port}: {e}") from e

        self._port_info = TransportInfo(port=port, description="")
        self._set_state(TransportState.CONNECTED)
        self._read_task = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to {port} at {baudrate} baud (rtscts={rtscts})")

    async def disconnect(self) -> None:
        """Disconnect from the serial port."""
        if self._read_task:
            if self._read_task is not asyncio.current_task():
                self._read_task.cancel()
                try:
                    await self._read_task
                except asyncio.CancelledError:
                    pass
            self._read_task = None

        if self._writer:
            try:
                self._writer.close()
                await self._writer.wait_closed()
            except Exception as e:
                logger.warning(f"Error closing serial port: {e}")
            self._writer = None
            self._reader = None

        if self._port_info:
            logger.info(f"Disconnected from {self._port_info.port}")
        self._port_info = None
        self._set_state(TransportState.DISCONNECTED)

    async def send(self, data: bytes) -> None:
        """
        Send data to the connected device.

        Raises:
            ConnectionError: If not connected
            TransportError: If send fails
        """
        if not self.is_connected or not self._writer:
            raise ConnectionError("Not connected")

        try:
            self._writer.write(data)
            await self._writer.drain()
            logger.debug(f"Sent {len(data)} bytes")
        except Exception as e:
            self._set_state(TransportState.ERROR)
            raise TransportError(f"Send failed: {e}") from e

    async def flush_input(self) -> None:
        """Drop bytes already read by the stream but not yet delivered."""
        if self._writer:
            transport = self._writer.transport
            serial_instance = getattr(transport, "serial", None)
            if serial_instance is not None:
                serial_instance.reset_input_buffer()

    def get_port_info(self) -> Optional[TransportInfo]:
        """Get information about the connected port."""
        return self._port_info

    async def _read_loop(self) -> None:
        """Background task to read from serial port."""
        while self.is_connected and self._reader:
            try:
                data = await self._reader.read(READ_BUFFER_SIZE)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Read error: {e}")
                self._set_state(TransportState.ERROR)
                break

            if not data:
                # Empty read usually means disconnection
                logger.warning("Empty read, possible disconnection")
                self._set_state(TransportState.DISCONNECTED)
                break

            logger.debug(f"Received {len(data)} bytes")
            self._on_data_received(data)
