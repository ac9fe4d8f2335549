"""
Controllers Package

Request/response correlation and the session over a discovered link.
"""

from .request_tracker import RequestTracker, RequestState, PendingRequest
from .device_session import DeviceSession, SessionConfig, SessionEvent, LedState

__all__ = [
    'RequestTracker',
    'RequestState',
    'PendingRequest',
    'DeviceSession',
    'SessionConfig',
    'SessionEvent',
    'LedState',
]
