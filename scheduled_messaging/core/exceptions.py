"""
Error taxonomy for the scheduling pipeline.

Structural errors (validation, illegal transitions, missing records) surface to
the caller immediately. Provider and persistence errors are transient and are
absorbed by the dispatch worker into retry transitions.
"""

from typing import Optional, List


class SchedulingError(Exception):
    """Base class for all scheduling errors."""


class ValidationError(SchedulingError):
    """Malformed recipients or content, rejected before persistence."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(SchedulingError):
    """Scheduled message does not exist."""

    def __init__(self, message_id):
        super().__init__(f"Scheduled message not found: {message_id}")
        self.message_id = message_id


class InvalidStateError(SchedulingError):
    """Illegal lifecycle transition attempt."""

    def __init__(self, message_id, current_status, attempted: str):
        current = getattr(current_status, "value", current_status)
        super().__init__(
            f"Cannot {attempted} scheduled message {message_id} in status '{current}'"
        )
        self.message_id = message_id
        self.current_status = current_status
        self.attempted = attempted


class PersistenceError(SchedulingError):
    """Store transiently unreachable; the record keeps its current state."""


class RetryExhaustedError(SchedulingError):
    """Delivery attempts exhausted; recorded as the terminal failed state."""

    def __init__(self, attempts: int, last_error: str):
        super().__init__(f"Delivery failed after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class ProviderError(SchedulingError):
    """Base class for delivery backend errors."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ProviderTransientError(ProviderError):
    """Timeout, network error, 5xx or 429 from a backend."""

    def __init__(self, message: str, provider: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class ProviderRejectedError(ProviderError):
    """Backend refused the request (4xx or explicit failure response)."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, provider)
        self.status_code = status_code


class ProviderUnavailableError(ProviderError):
    """Every configured backend is exhausted for one send attempt."""

    def __init__(self, message: str, attempts: Optional[List[str]] = None):
        super().__init__(message)
        self.attempts = attempts or []
