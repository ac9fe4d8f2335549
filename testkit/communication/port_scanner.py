"""
TestKit Port Scanner

Finds the serial port the TestKit is attached to: every candidate port is
opened concurrently and probed with a ping; the first port answering with
the expected reply wins and every other link is closed before returning.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ..constants import (
    DEFAULT_PROBE_DELAY,
    DEFAULT_SCAN_TIMEOUT,
    MSG_PING,
    REPLY_OK,
)
from .framed_link import FramedLink, LinkConfig
from .protocol import Message, Target
from .serial_transport import SerialTransport
from .transport_base import (
    NoDeviceError,
    TransportBase,
    TransportError,
)

logger = logging.getLogger(__name__)


def _default_probe() -> Message:
    return Message(Target.CONTROLLER, MSG_PING)


@dataclass
class ScanConfig:
    """Port scan settings."""
    timeout: float = DEFAULT_SCAN_TIMEOUT      # seconds for the whole scan
    probe_delay: float = DEFAULT_PROBE_DELAY   # seconds between open and probe
    probe: Message = field(default_factory=_default_probe)
    expected_reply: Optional[str] = None       # derived from probe when None

    @property
    def reply(self) -> str:
        if self.expected_reply is not None:
            return self.expected_reply
        return Message(self.probe.target, self.probe.type, REPLY_OK).encode()


class PortScanner:
    """
    Probe candidate ports and bind to the one that answers.

    Usage:
        scanner = PortScanner(ScanConfig(), LinkConfig())
        link = await scanner.discover()   # raises NoDeviceError
    """

    def __init__(
        self,
        config: Optional[ScanConfig] = None,
        link_config: Optional[LinkConfig] = None,
        transport_factory: Optional[Callable[[str], TransportBase]] = None,
        list_ports: Optional[Callable[[], List[str]]] = None,
    ):
        """
        Args:
            config: Scan tuning
            link_config: Settings for every link opened during the scan
            transport_factory: Builds the transport for a port (tests inject mocks)
            list_ports: Enumerates candidate port names
        """
        self._config = config or ScanConfig()
        self._link_config = link_config or LinkConfig()
        self._transport_factory = transport_factory or (lambda port: SerialTransport())
        self._list_ports = list_ports or (lambda: [info.port for info in SerialTransport.list_ports()])

    async def discover(self, candidate_ports: Optional[Sequence[str]] = None) -> FramedLink:
        """
        Scan ports and return the link of the first one that answers the probe.

        Args:
            candidate_ports: Ports to probe; enumerates the system when None

        Returns:
            Open FramedLink bound to the TestKit

        Raises:
            ConnectionError: If ports cannot be enumerated
            NoDeviceError: If no port answers within the scan timeout
        """
        if candidate_ports is None:
            candidate_ports = self._list_ports()
        ports = list(dict.fromkeys(candidate_ports))

        logger.info(f"Scanning serial ports: {ports}")
        if not ports:
            raise NoDeviceError("No serial ports available")

        links: Dict[str, FramedLink] = {
            port: FramedLink(port, self._link_config, self._transport_factory(port))
            for port in ports
        }
        tasks = {
            asyncio.create_task(self._probe(link), name=f"probe-{port}"): link
            for port, link in links.items()
        }

        winner: Optional[FramedLink] = None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.timeout
        pending = set(tasks)

        try:
            while pending and winner is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task.cancelled() or task.exception() is not None:
                        continue
                    if task.result() and winner is None:
                        winner = tasks[task]
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

            for link in links.values():
                if link is not winner:
                    await link.close()

        if winner is None:
            raise NoDeviceError(
                f"No TestKit answered on {len(ports)} port(s) within {self._config.timeout}s"
            )

        logger.info(f"Found TestKit on {winner.port}")
        return winner

    async def _probe(self, link: FramedLink) -> bool:
        """Open one port, send the probe and wait for the expected reply."""
        try:
            await link.open()
        except TransportError as e:
            logger.warning(f"Cannot open {link.port}: {e}")
            return False

        await asyncio.sleep(self._config.probe_delay)
        await link.flush()

        try:
            logger.debug(f"Probing {link.port}")
            await link.write(self._config.probe.encode())
            async for frame in link.lines():
                if frame == self._config.reply:
                    return True
                logger.debug(f"{link.port} ignored during probe: {frame}")
        except TransportError as e:
            logger.warning(f"Probe on {link.port} failed: {e}")
        return False
