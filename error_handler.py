"""
Error Handler
=============
Error taxonomy for actuator commands and the classification rules used to
decide which failures are transport noise and which are real answers.

Policy:
- Commands are never retried (actuation is not idempotent)
- Status reads that fail in transport are absorbed by the confirmation loop
- Only a single terminal verdict reaches the UI
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger("error_handler")


class ActuationError(Exception):
    """Base class for all command/confirmation errors."""
    pass


class UnknownDeviceError(ActuationError):
    """Raised when a device id is not registered."""
    pass


class CommandInFlightError(ActuationError):
    """Raised when a command is submitted while another one is still running."""
    pass


class DispatchError(ActuationError):
    """Raised when a command could not be handed to the actuator."""
    pass


class DispatchRejected(DispatchError):
    """The command API explicitly refused the action (e.g. device offline)."""
    pass


class DispatchUnreachable(DispatchError):
    """Transport failure while issuing the command."""
    pass


class StatusReadFailed(ActuationError):
    """A single status read failed in transport or returned garbage."""
    pass


class ErrorHandler:
    """
    Centralised error classification for gateway operations.

    Features:
    - Error classification (transient transport vs permanent)
    - Statistics tracking per error type and per context
    """

    # Exception types that always mean "transport problem"
    TRANSIENT_TYPES = (
        StatusReadFailed,
        DispatchUnreachable,
        aiohttp.ClientError,
        asyncio.TimeoutError,
        OSError,
    )

    # Message fragments that indicate a transport problem
    TRANSIENT_ERRORS = {
        'TIMEOUT',
        'TIMED OUT',
        'CONNECTION',
        'UNREACHABLE',
        'SERVICE UNAVAILABLE',
        'BAD GATEWAY',
        'GATEWAY TIMEOUT',
    }

    # Message fragments that should never be treated as noise
    PERMANENT_ERRORS = {
        'NOT FOUND',
        'UNKNOWN DEVICE',
        'INVALID',
        'FORBIDDEN',
        'UNAUTHORIZED',
    }

    def __init__(self):
        self.stats = {
            'total_errors': 0,
            'transient_errors': 0,
            'permanent_errors': 0,
            'errors_by_type': {},
            'errors_by_context': {},
        }

    def is_transient(self, error: Exception) -> bool:
        """
        Determine if an error is a transient transport failure.

        Args:
            error: The exception

        Returns:
            True if error is transient
        """
        if isinstance(error, self.TRANSIENT_TYPES):
            return True

        error_str = str(error).upper()

        for pattern in self.PERMANENT_ERRORS:
            if pattern in error_str:
                return False

        for pattern in self.TRANSIENT_ERRORS:
            if pattern in error_str:
                return True

        # Default to non-transient so real bugs surface
        return False

    def record_error(self, error: Exception, context: Optional[str] = None) -> bool:
        """Record error in statistics. Returns the transient classification."""
        transient = self.is_transient(error)
        error_type = type(error).__name__

        self.stats['total_errors'] += 1
        if transient:
            self.stats['transient_errors'] += 1
        else:
            self.stats['permanent_errors'] += 1

        self.stats['errors_by_type'][error_type] = \
            self.stats['errors_by_type'].get(error_type, 0) + 1

        if context:
            self.stats['errors_by_context'][context] = \
                self.stats['errors_by_context'].get(context, 0) + 1

        return transient

    def reset(self):
        self.__init__()

    def get_stats(self) -> Dict[str, Any]:
        """Get error handling statistics."""
        total = self.stats['total_errors']
        transient_rate = (self.stats['transient_errors'] / total) * 100 if total else 0

        return {
            **self.stats,
            'transient_rate': transient_rate,
        }


# Global error handler instance
_error_handler = ErrorHandler()


def get_error_handler() -> ErrorHandler:
    return _error_handler


def get_error_stats() -> Dict[str, Any]:
    """Get global error handling statistics."""
    return _error_handler.get_stats()
