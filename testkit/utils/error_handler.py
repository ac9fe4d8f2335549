"""
Error Handling

Classifies exceptions of the communication and device layers, logs them,
and turns them into the reply payloads handed to callers of TesterKitDevice.
"""

from typing import Optional, Dict, Any, List
from enum import Enum, auto
from dataclasses import dataclass, field
from datetime import datetime
import traceback
import logging

from ..communication.protocol import ChecksumError, ProtocolError
from ..communication.transport_base import (
    ConnectionError,
    EmptyResponseError,
    NoDeviceError,
    SessionClosedError,
    TimeoutError,
    TransportError,
)

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = auto()      # Development info
    INFO = auto()       # User info
    WARNING = auto()    # Recoverable issue
    ERROR = auto()      # Operation failed
    CRITICAL = auto()   # Application may be unstable


class ErrorCategory(Enum):
    """Error categories for filtering and handling."""
    CONNECTION = "connection"   # Port open, scan, link loss
    TIMEOUT = "timeout"         # Request exhausted its retries
    PROTOCOL = "protocol"       # Malformed or corrupted frames
    DEVICE = "device"           # Device refused or misbehaved
    CONFIG = "config"           # Configuration files, validation
    FILE = "file"               # File operations
    INTERNAL = "internal"       # Programming errors
    UNKNOWN = "unknown"


@dataclass
class ErrorInfo:
    """Container for error information."""
    message: str
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    exception: Optional[Exception] = None
    details: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = ""
    recoverable: bool = True
    user_action: str = ""  # Suggested action for user

    def __str__(self):
        return f"[{self.severity.name}] {self.category.value}: {self.message}"


def describe_error(exception: BaseException) -> ErrorInfo:
    """Classify an exception into an ErrorInfo."""
    # Imported here, the device package depends on this module
    from ..device.configurator import ConfigurationError
    from ..device.testkit_device import DeviceError

    name = exception.__class__.__name__
    info = ErrorInfo(message=str(exception) or name, exception=exception, source=name)

    if isinstance(exception, NoDeviceError):
        info.category = ErrorCategory.CONNECTION
        info.severity = ErrorSeverity.WARNING
        info.user_action = "Check that the TestKit is plugged in"
    elif isinstance(exception, SessionClosedError):
        info.category = ErrorCategory.CONNECTION
        info.user_action = "Wait for the TestKit to reconnect"
    elif isinstance(exception, ConnectionError):
        info.category = ErrorCategory.CONNECTION
        info.user_action = "Check the serial port permissions and cable"
    elif isinstance(exception, (TimeoutError, EmptyResponseError)):
        info.category = ErrorCategory.TIMEOUT
        info.user_action = "Check that the device is inserted in the TestKit"
    elif isinstance(exception, ChecksumError):
        info.category = ErrorCategory.PROTOCOL
        info.severity = ErrorSeverity.WARNING
    elif isinstance(exception, (ProtocolError, TransportError)):
        info.category = ErrorCategory.PROTOCOL
    elif isinstance(exception, ConfigurationError):
        info.category = ErrorCategory.DEVICE
        info.user_action = "Retry the configuration"
    elif isinstance(exception, DeviceError):
        info.category = ErrorCategory.DEVICE
    elif isinstance(exception, OSError):
        info.category = ErrorCategory.FILE
        info.user_action = "Check that the device storage is mounted"
    elif isinstance(exception, ValueError):
        info.category = ErrorCategory.CONFIG
    else:
        info.category = ErrorCategory.INTERNAL
        info.severity = ErrorSeverity.CRITICAL
        info.recoverable = False

    return info


def error_string(error: Any) -> str:
    """Render an error as '<Name>: <message>'; plain strings pass through."""
    if isinstance(error, BaseException):
        return f"{error.__class__.__name__}: {error}"
    return str(error)


def error_reply(error: Any, **extra) -> Dict[str, Any]:
    """Build an error reply payload."""
    reply = {"status": "error", "error": error_string(error)}
    reply.update(extra)
    return reply


def success_reply(**extra) -> Dict[str, Any]:
    """Build a success reply payload."""
    reply: Dict[str, Any] = {"status": "success"}
    reply.update(extra)
    return reply


class ErrorHandler:
    """
    Error recorder for one TestKit.

    Logs every handled exception at its severity and keeps the most recent
    ones, so a reconnect does not lose what went wrong before it.
    """

    def __init__(self, max_history: int = 100):
        self._max_history = max_history
        self._error_history: List[ErrorInfo] = []

    @property
    def last_error(self) -> Optional[ErrorInfo]:
        """Most recently handled error."""
        return self._error_history[-1] if self._error_history else None

    def handle_exception(self, exception: Exception, message: str = "") -> ErrorInfo:
        """
        Classify, log and record an exception.

        Args:
            exception: The exception that occurred
            message: Custom message (uses exception message if not provided)

        Returns:
            The recorded ErrorInfo
        """
        error = describe_error(exception)
        if message:
            error.message = message
        if exception.__traceback__ is not None:
            error.details = "".join(traceback.format_exception(
                type(exception), exception, exception.__traceback__
            ))

        self._error_history.append(error)
        while len(self._error_history) > self._max_history:
            self._error_history.pop(0)
        self._log_error(error)
        return error

    def get_history(self, limit: Optional[int] = None) -> List[ErrorInfo]:
        """Recorded errors, oldest first; the last `limit` when given."""
        if limit:
            return self._error_history[-limit:]
        return list(self._error_history)

    def _log_error(self, error: ErrorInfo):
        log_message = f"[{error.category.value}] {error.message}"
        if error.details:
            log_message += f"\nDetails: {error.details}"

        if error.severity == ErrorSeverity.DEBUG:
            logger.debug(log_message)
        elif error.severity == ErrorSeverity.INFO:
            logger.info(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            logger.warning(log_message)
        elif error.severity == ErrorSeverity.ERROR:
            logger.error(log_message)
        elif error.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message)
