"""
Utils Package

Logging setup and error classification.
"""

from .error_handler import (
    ErrorHandler,
    ErrorInfo,
    ErrorSeverity,
    ErrorCategory,
    describe_error,
    error_reply,
    success_reply,
)
from .logger import setup_logger

__all__ = [
    'ErrorHandler',
    'ErrorInfo',
    'ErrorSeverity',
    'ErrorCategory',
    'describe_error',
    'error_reply',
    'success_reply',
    'setup_logger',
]
