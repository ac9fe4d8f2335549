"""
TestKit Framed Link

Line-oriented connection on top of a transport:
- splits received bytes into CRLF/LF terminated lines
- filters comment lines ('*' prefix)
- verifies and strips the XOR checksum trailer; broken frames are dropped
- drops unterminated input longer than MAX_LINE_LENGTH
- paces writes so the fixture's small input buffer is not overrun
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

from ..constants import (
    COMMENT_PREFIX,
    DEFAULT_BAUDRATE,
    DEFAULT_WRITE_DELAY,
    LINE_TERMINATOR,
    MAX_LINE_LENGTH,
)
from .protocol import ChecksumError, add_checksum, strip_checksum
from .serial_transport import SerialTransport
from .transport_base import (
    LinkClosedError,
    TimeoutError,
    TransportBase,
    TransportState,
)

logger = logging.getLogger(__name__)


@dataclass
class LinkConfig:
    """Serial link settings."""
    baud_rate: int = DEFAULT_BAUDRATE
    flow_control: bool = True
    crc_enabled: bool = True
    write_delay: float = DEFAULT_WRITE_DELAY  # seconds before each physical write


@dataclass
class LinkStats:
    """Link statistics."""
    frames_received: int = 0
    checksum_errors: int = 0
    comments: int = 0
    lines_written: int = 0
    overruns: int = 0


class FramedLink:
    """
    One line-framed connection to a serial port.

    Usage:
        link = FramedLink("/dev/ttyUSB0", LinkConfig(crc_enabled=True))
        await link.open()
        await link.write("ATE:ping")
        async for frame in link.lines():
            print(frame)  # "ATE:ping=ok"
    """

    def __init__(
        self,
        port: str,
        config: Optional[LinkConfig] = None,
        transport: Optional[TransportBase] = None,
    ):
        self._port = port
        self._config = config or LinkConfig()
        self._transport = transport or SerialTransport()

        self._rx_buffer = bytearray()
        self._frames: asyncio.Queue = asyncio.Queue()
        self._stats = LinkStats()

        self._opened = False
        self._closed = False
        self._released = False
        self._close_task: Optional[asyncio.Task] = None
        self._closed_callbacks: List[Callable[["FramedLink"], None]] = []

    @property
    def port(self) -> str:
        return self._port

    @property
    def config(self) -> LinkConfig:
        return self._config

    @property
    def stats(self) -> LinkStats:
        return self._stats

    @property
    def is_open(self) -> bool:
        """True between a successful open() and closure."""
        return self._opened and not self._closed

    def add_closed_callback(self, callback: Callable[["FramedLink"], None]) -> None:
        """Register a callback fired once when the link closes for any reason."""
        self._closed_callbacks.append(callback)

    def remove_closed_callback(self, callback: Callable[["FramedLink"], None]) -> None:
        if callback in self._closed_callbacks:
            self._closed_callbacks.remove(callback)

    async def open(self) -> None:
        """
        Open the underlying port.

        Raises:
            ConnectionError: If the port is busy or unavailable
        """
        if self._closed:
            raise LinkClosedError(f"Link on {self._port} was closed and cannot be reopened")

        self._transport.set_data_callback(self._on_data_received)
        self._transport.set_state_callback(self._on_transport_state)

        await self._transport.connect(
            self._port,
            baudrate=self._config.baud_rate,
            rtscts=self._config.flow_control,
        )
        self._opened = True
        logger.info(f"Link opened on {self._port} (crc={self._config.crc_enabled})")

    async def write(self, line: str) -> None:
        """
        Write one line; checksum and terminator are appended here.

        Raises:
            LinkClosedError: If the link is closed
        """
        if not self.is_open:
            raise LinkClosedError(f"Link on {self._port} is closed")

        await asyncio.sleep(self._config.write_delay)

        # The link may have been closed while waiting
        if not self.is_open:
            raise LinkClosedError(f"Link on {self._port} is closed")

        if self._config.crc_enabled:
            line = add_checksum(line)

        logger.debug(f"{self._port} <- {line}")
        await self._transport.send((line + LINE_TERMINATOR).encode("utf-8"))
        self._stats.lines_written += 1

    async def read_line(self, timeout: Optional[float] = None) -> str:
        """
        Wait for the next valid frame.

        Raises:
            TimeoutError: If no frame arrives within timeout
            LinkClosedError: If the link closes while waiting
        """
        try:
            frame = await asyncio.wait_for(self._frames.get(), timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"No frame from {self._port} within {timeout}s")

        if frame is None:
            self._frames.put_nowait(None)
            raise LinkClosedError(f"Link on {self._port} is closed")
        return frame

    async def lines(self) -> AsyncIterator[str]:
        """
        Iterate over received frames until the link closes.

        Frames are consumed once; a frame read here is not seen by
        read_line() and vice versa.
        """
        while True:
            frame = await self._frames.get()
            if frame is None:
                self._frames.put_nowait(None)
                return
            yield frame

    async def flush(self) -> None:
        """Discard pending input (buffered frames and partial lines)."""
        self._rx_buffer.clear()
        dropped = 0
        while not self._frames.empty():
            if self._frames.get_nowait() is None:
                self._frames.put_nowait(None)
                break
            dropped += 1
        if dropped:
            logger.debug(f"Flushed {dropped} frames on {self._port}")
        if self.is_open:
            await self._transport.flush_input()

    async def close(self) -> None:
        """Close the link and release the port. Safe to call repeatedly."""
        if not self._closed:
            self._mark_closed()

        if not self._released:
            self._released = True
            self._transport.set_data_callback(None)
            await self._transport.disconnect()

    def _mark_closed(self) -> None:
        self._closed = True
        self._frames.put_nowait(None)
        logger.info(f"Link on {self._port} closed")
        for callback in list(self._closed_callbacks):
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Link closed callback error: {e}")

    def _on_transport_state(self, state: TransportState) -> None:
        if state in (TransportState.DISCONNECTED, TransportState.ERROR) and self.is_open:
            logger.warning(f"Transport on {self._port} lost ({state.name})")
            self._mark_closed()
            self._close_task = asyncio.get_running_loop().create_task(self.close())

    def _on_data_received(self, data: bytes) -> None:
        self._rx_buffer.extend(data)
        while True:
            index = self._rx_buffer.find(b"\n")
            if index < 0:
                break
            raw = bytes(self._rx_buffer[:index])
            del self._rx_buffer[:index + 1]
            self._handle_line(raw.decode("utf-8", errors="replace").strip())

        if len(self._rx_buffer) > MAX_LINE_LENGTH:
            self._stats.overruns += 1
            logger.warning(
                f"{self._port} dropped {len(self._rx_buffer)} bytes without line terminator"
            )
            self._rx_buffer.clear()

    def _handle_line(self, line: str) -> None:
        if not line or self._closed:
            return

        if line.startswith(COMMENT_PREFIX):
            self._stats.comments += 1
            logger.debug(f"{self._port} comment: {line}")
            return

        if self._config.crc_enabled:
            try:
                line = strip_checksum(line)
            except ChecksumError as e:
                self._stats.checksum_errors += 1
                logger.warning(f"{self._port} dropped frame: {e}")
                return

        self._stats.frames_received += 1
        logger.debug(f"{self._port} -> {line}")
        self._frames.put_nowait(line)
