"""
TestKit Line Protocol Implementation

Frame Format (one line, CRLF terminated):
┌────────┬───┬──────┬──────────┬─────────┐
│ TARGET │ : │ TYPE │ [=VALUE] │ [#CRC]  │
│ 2-4 A-Z│   │      │          │ 2 hex   │
└────────┴───┴──────┴──────────┴─────────┘

- TARGET: sender / recipient id, "ATE" (tester fixture) or "DUT" (device)
- TYPE: message type, e.g. ping, defaults, meas_pins
- VALUE: optional payload; replies may carry structured values such as
  "X:0101...;Y:...;Z:..." so decoding takes everything after the first '='
- CRC: XOR of every character before '#', two uppercase hex digits.
  Present only when the link has CRC enabled.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..constants import (
    CHECKSUM_SEPARATOR,
    RESERVED_CHARACTERS,
    TARGET_SEPARATOR,
    VALUE_SEPARATOR,
)


class Target(Enum):
    """Message endpoints."""

    CONTROLLER = "ATE"
    DEVICE = "DUT"


class ProtocolError(Exception):
    """Protocol-related errors."""
    pass


class ChecksumError(ProtocolError):
    """Frame checksum is missing or does not match."""
    pass


TARGET_PATTERN = re.compile(r"^([A-Z]{2,4}):")


@dataclass(frozen=True)
class Message:
    """One protocol message."""

    target: Target
    type: str
    value: Optional[str] = None

    @property
    def key(self) -> tuple[Target, str]:
        """Correlation key used to match a response to its request."""
        return self.target, self.type

    def encode(self) -> str:
        """Serialize to TARGET:TYPE[=VALUE] (without checksum)."""
        return encode_message(self)

    def __str__(self) -> str:
        return encode_message(self)


def xor_checksum(data: str) -> str:
    """
    Calculate the line checksum.

    Args:
        data: Text the checksum covers

    Returns:
        Two uppercase hex digits
    """
    crc = 0
    for char in data:
        crc ^= ord(char)
    return f"{crc & 0xFF:02X}"


def add_checksum(line: str) -> str:
    """Append '#<checksum>' to a line."""
    return f"{line}{CHECKSUM_SEPARATOR}{xor_checksum(line)}"


def strip_checksum(line: str) -> str:
    """
    Verify and remove the checksum trailer.

    Args:
        line: Received line including '#<checksum>'

    Returns:
        Line without the trailer

    Raises:
        ChecksumError: If the trailer is missing or the checksum differs
    """
    index = line.rfind(CHECKSUM_SEPARATOR)
    if index < 0:
        raise ChecksumError(f"Missing checksum: {line!r}")

    body = line[:index]
    received = line[index + 1:].upper()
    calculated = xor_checksum(body)

    if received != calculated:
        raise ChecksumError(
            f"Checksum mismatch: received {received!r}, calculated {calculated!r} for {body!r}"
        )
    return body


def _check_field(name: str, text: str) -> None:
    for char in RESERVED_CHARACTERS:
        if char in text:
            raise ProtocolError(f"Message {name} {text!r} contains reserved character {char!r}")


def encode_message(message: Message) -> str:
    """
    Encode a message to its wire form.

    A value is either None (no '=') or non-empty; "TYPE=" would decode
    back as a message without value.

    Raises:
        ProtocolError: If type or value contain separator characters,
            or either is empty
    """
    if not message.type:
        raise ProtocolError("Message type cannot be empty")
    _check_field("type", message.type)

    line = f"{message.target.value}{TARGET_SEPARATOR}{message.type}"
    if message.value is not None:
        if not message.value:
            raise ProtocolError(f"Message {message.type!r} has an empty value, use None")
        _check_field("value", message.value)
        line += f"{VALUE_SEPARATOR}{message.value}"
    return line


def get_message_sender(line: str) -> Optional[str]:
    """Extract the raw target prefix, or None if the line has none."""
    match = TARGET_PATTERN.match(line)
    return match.group(1) if match else None


def decode_message(line: str) -> Message:
    """
    Decode a line (checksum already removed) into a Message.

    An empty value after '=' decodes to None.

    Raises:
        ProtocolError: If the line has no valid target prefix or type
    """
    sender = get_message_sender(line)
    if sender is None:
        raise ProtocolError(f"Line has no target prefix: {line!r}")

    try:
        target = Target(sender)
    except ValueError:
        raise ProtocolError(f"Unknown target: {sender!r}")

    rest = line[len(sender) + 1:]
    if VALUE_SEPARATOR in rest:
        msg_type, value = rest.split(VALUE_SEPARATOR, 1)
    else:
        msg_type, value = rest, None

    if not msg_type:
        raise ProtocolError(f"Line has no message type: {line!r}")

    return Message(target=target, type=msg_type, value=value or None)
