"""
Request-Response Correlation Tracker

Provides request-response matching for TestKit communication:
- Tracks pending requests by (target, type) key
- FIFO matching within a key: the oldest pending request answers first
- Per-request timeout with resend on expiry until retries run out
- asyncio Future per request

The line protocol carries no sequence number, so a response is correlated
only by its target and message type.

Usage:
    tracker = RequestTracker(link.write)

    future = tracker.track(Message(Target.CONTROLLER, "ping"), timeout=2.0, max_retries=3)

    # In the receive loop:
    if not tracker.resolve(msg.target, msg.type, msg.value):
        handle_unsolicited(msg)

    value = await future   # "ok"
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..communication.protocol import Message, Target
from ..communication.transport_base import EmptyResponseError, TimeoutError
from ..constants import DEFAULT_REQUEST_RETRIES, DEFAULT_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)


class RequestState(Enum):
    """State of a tracked request."""
    QUEUED = "queued"        # Waiting for its send delay
    PENDING = "pending"      # Sent, waiting for a response
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(eq=False)
class PendingRequest:
    """Represents a request being tracked for response."""
    message: Message
    future: asyncio.Future
    timeout: float = DEFAULT_REQUEST_TIMEOUT
    retries_remaining: int = DEFAULT_REQUEST_RETRIES
    delay: float = 0.0
    state: RequestState = RequestState.QUEUED
    attempts: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def key(self) -> Tuple[Target, str]:
        return self.message.key

    @property
    def is_active(self) -> bool:
        return self.state in (RequestState.QUEUED, RequestState.PENDING)

    @property
    def elapsed_seconds(self) -> float:
        return (datetime.now() - self.created_at).total_seconds()

    @property
    def description(self) -> str:
        return self.message.encode()


class RequestTracker:
    """Single-loop request-response correlation tracker.

    All methods run on the event loop that owns the session; no locking is
    needed because the pending list is only touched from that loop.

    Features:
    - (target, type) correlation, FIFO within a key
    - Per-request timeout and resend
    - Cancellation through the returned future
    - Statistics tracking
    """

    def __init__(
        self,
        write_fn: Callable[[str], Awaitable[None]],
        on_repeat: Optional[Callable[[PendingRequest], None]] = None,
        on_timeout: Optional[Callable[[PendingRequest], None]] = None,
    ):
        """Initialize RequestTracker.

        Args:
            write_fn: Coroutine function writing one line to the link
            on_repeat: Called each time a request is resent
            on_timeout: Called when a request exhausts its retries
        """
        self._write_fn = write_fn
        self.on_repeat = on_repeat
        self.on_timeout = on_timeout

        # Submission ordered; matching scans from the front
        self._pending: List[PendingRequest] = []
        # History of finished requests (for debugging)
        self._completed: List[PendingRequest] = []
        self._max_history = 50
        # Writes in flight
        self._send_tasks: Set[asyncio.Task] = set()

        self._stats = {
            'requests_created': 0,
            'requests_completed': 0,
            'requests_timeout': 0,
            'requests_retried': 0,
            'requests_error': 0,
            'requests_cancelled': 0,
        }

    def track(
        self,
        message: Message,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_retries: int = DEFAULT_REQUEST_RETRIES,
        delay: float = 0.0,
    ) -> asyncio.Future:
        """Send a message and track its response.

        Args:
            message: Request to send
            timeout: Seconds to wait for a response after each send
            max_retries: Number of resends after the first send
            delay: Seconds to defer the first send

        Returns:
            Future resolved with the response value. It fails with
            TimeoutError after max_retries resends without a response,
            EmptyResponseError if the response has no value, or with the
            write error if the link refuses the line.
        """
        loop = asyncio.get_running_loop()
        request = PendingRequest(
            message=message,
            future=loop.create_future(),
            timeout=timeout,
            retries_remaining=max(0, max_retries),
            delay=delay,
        )
        request.future.add_done_callback(lambda _: self._on_future_done(request))

        self._pending.append(request)
        self._stats['requests_created'] += 1
        logger.debug(
            f"Tracking {request.description} timeout={timeout}s retries={max_retries} delay={delay}s"
        )

        if delay > 0:
            request.timer = loop.call_later(delay, self._start_send, request)
        else:
            self._start_send(request)

        return request.future

    def resolve(self, target: Target, msg_type: str, value: Optional[str]) -> bool:
        """Complete the oldest sent request matching (target, type).

        Args:
            target: Sender of the response
            msg_type: Message type of the response
            value: Response value; None or empty fails the request

        Returns:
            True if a pending request matched, False for unsolicited messages
        """
        request = self._find((target, msg_type))
        if request is None:
            return False

        if value:
            request.state = RequestState.COMPLETED
            self._stats['requests_completed'] += 1
            logger.debug(f"Completed {request.description} -> {value!r} in {request.elapsed_seconds:.3f}s")
            self._finish(request)
            request.future.set_result(value)
        else:
            request.state = RequestState.ERROR
            self._stats['requests_error'] += 1
            logger.debug(f"Empty response for {request.description}")
            self._finish(request)
            request.future.set_exception(
                EmptyResponseError(f"Response to {request.description} was empty")
            )
        return True

    def cancel(self, future: asyncio.Future) -> bool:
        """Stop waiting for a request.

        Returns:
            True if the future belonged to an active request
        """
        for request in self._pending:
            if request.future is future and request.is_active:
                future.cancel()
                return True
        return False

    def reject_all(self, error: Exception) -> int:
        """Fail every active request with the given error.

        Returns:
            Number of requests rejected
        """
        requests = [r for r in self._pending if r.is_active]
        for request in requests:
            request.state = RequestState.ERROR
            self._stats['requests_error'] += 1
            self._finish(request)
            if not request.future.done():
                request.future.set_exception(error)
        if requests:
            logger.debug(f"Rejected {len(requests)} pending requests: {error}")
        return len(requests)

    @property
    def pending_count(self) -> int:
        """Number of active requests."""
        return sum(1 for r in self._pending if r.is_active)

    def pending_keys(self) -> List[Tuple[Target, str]]:
        """Keys of active requests in submission order."""
        return [r.key for r in self._pending if r.is_active]

    def get_stats(self) -> Dict[str, int]:
        """Get request statistics."""
        stats = self._stats.copy()
        stats['pending'] = self.pending_count
        return stats

    def _find(self, key: Tuple[Target, str]) -> Optional[PendingRequest]:
        for request in self._pending:
            if request.key == key and request.state == RequestState.PENDING:
                return request
        return None

    def _start_send(self, request: PendingRequest) -> None:
        request.timer = None
        if not request.is_active:
            return
        # Mark as sent before writing so a fast reply can match
        request.state = RequestState.PENDING
        self._spawn_send(request)

    def _spawn_send(self, request: PendingRequest) -> None:
        task = asyncio.ensure_future(self._send(request))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _send(self, request: PendingRequest) -> None:
        request.attempts += 1
        try:
            await self._write_fn(request.message.encode())
        except Exception as e:
            if request.is_active:
                logger.warning(f"Sending {request.description} failed: {e}")
                request.state = RequestState.ERROR
                self._stats['requests_error'] += 1
                self._finish(request)
                request.future.set_exception(e)
            return

        if request.is_active:
            loop = asyncio.get_running_loop()
            request.timer = loop.call_later(request.timeout, self._on_timer, request)

    def _on_timer(self, request: PendingRequest) -> None:
        request.timer = None
        if not request.is_active:
            return

        if request.retries_remaining > 0:
            request.retries_remaining -= 1
            self._stats['requests_retried'] += 1
            logger.info(
                f"No response to {request.description}, resending "
                f"({request.retries_remaining} retries left)"
            )
            if self.on_repeat:
                try:
                    self.on_repeat(request)
                except Exception as e:
                    logger.error(f"Repeat callback error: {e}")
            self._spawn_send(request)
            return

        request.state = RequestState.TIMEOUT
        self._stats['requests_timeout'] += 1
        logger.warning(
            f"Request {request.description} timed out after {request.attempts} attempt(s)"
        )
        self._finish(request)
        request.future.set_exception(
            TimeoutError(f"No response to {request.description} after {request.attempts} attempt(s)")
        )
        if self.on_timeout:
            try:
                self.on_timeout(request)
            except Exception as e:
                logger.error(f"Timeout callback error: {e}")

    def _on_future_done(self, request: PendingRequest) -> None:
        if request.future.cancelled() and request.is_active:
            request.state = RequestState.CANCELLED
            self._stats['requests_cancelled'] += 1
            logger.debug(f"Cancelled {request.description}")
            self._finish(request)

    def _finish(self, request: PendingRequest) -> None:
        if request.timer is not None:
            request.timer.cancel()
            request.timer = None
        if request in self._pending:
            self._pending.remove(request)
        self._completed.append(request)
        if len(self._completed) > self._max_history:
            self._completed.pop(0)
