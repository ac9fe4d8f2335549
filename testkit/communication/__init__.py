"""
TestKit Communication Package

Modules:
    protocol: Line protocol (TARGET:TYPE[=VALUE][#CRC])
    transport_base: Abstract transport interface and error taxonomy
    serial_transport: USB Serial transport implementation
    framed_link: Line framing and checksum handling over a transport
    port_scanner: Concurrent discovery of the TestKit port
    device_simulator: In-memory TestKit for tests and dry runs

Example usage:
    from testkit.communication import PortScanner, ScanConfig, LinkConfig

    scanner = PortScanner(ScanConfig(), LinkConfig())
    link = await scanner.discover()

    async for line in link.lines():
        print(line)
"""

from .protocol import (
    Target,
    Message,
    ProtocolError,
    ChecksumError,
    encode_message,
    decode_message,
    add_checksum,
    strip_checksum,
)
from .transport_base import (
    TransportBase,
    TransportError,
    ConnectionError,
    LinkClosedError,
    SessionClosedError,
    NoDeviceError,
    TimeoutError,
    EmptyResponseError,
    MockTransport,
)
from .serial_transport import SerialTransport
from .framed_link import FramedLink, LinkConfig
from .port_scanner import PortScanner, ScanConfig
from .device_simulator import TestKitSimulator, SimulatedTransport

__all__ = [
    # Protocol
    "Target",
    "Message",
    "ProtocolError",
    "ChecksumError",
    "encode_message",
    "decode_message",
    "add_checksum",
    "strip_checksum",
    # Transport
    "TransportBase",
    "TransportError",
    "ConnectionError",
    "LinkClosedError",
    "SessionClosedError",
    "NoDeviceError",
    "TimeoutError",
    "EmptyResponseError",
    "MockTransport",
    "SerialTransport",
    # Link
    "FramedLink",
    "LinkConfig",
    "PortScanner",
    "ScanConfig",
    # Simulator
    "TestKitSimulator",
    "SimulatedTransport",
]
