"""
shared/exceptions.py
Domain error taxonomy. Every operation raises one of these at its boundary;
main.py maps them to HTTP responses.
"""

from typing import Optional


class SevaError(Exception):
    """Base class for all engine errors."""

    code = "SEVA_ERROR"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(SevaError):
    """Malformed service or booking input. Never retried automatically."""

    code = "VALIDATION_ERROR"


class EligibilityError(SevaError):
    """Party size, identity attribute or booking-type rule violated."""

    code = "ELIGIBILITY_ERROR"


class CapacityExceededError(SevaError):
    """Slot is full, closed, or the walk-in reserve is protected."""

    code = "CAPACITY_EXCEEDED"


class ConcurrentModificationError(SevaError):
    """Slot version changed since the caller read it. Safe to retry with a fresh read."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(
        self,
        message: str,
        *,
        expected_version: Optional[int] = None,
        current_version: Optional[int] = None,
        **context,
    ):
        super().__init__(
            message, expected_version=expected_version, current_version=current_version, **context
        )
        self.expected_version = expected_version
        self.current_version = current_version


class InvalidStateError(SevaError):
    """Illegal state transition attempted."""

    code = "INVALID_STATE"


class SettlementLockedError(SevaError):
    """Mutation attempted on a booking whose counter shift is locked."""

    code = "SETTLEMENT_LOCKED"


class NotFoundError(SevaError):
    code = "NOT_FOUND"
