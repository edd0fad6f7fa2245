"""Reveal and alert error taxonomy.

Every reveal failure is a RevealError subclass carrying a stable ``code`` and
its HTTP mapping. Callers must be able to tell a rate-limit failure (never
retried automatically) from a generic failure (safe to retry).
"""

from __future__ import annotations

from typing import Optional


class RevealError(Exception):
    """Base class for reveal failures.

    HTTP mapping: 500 Internal Server Error with code='reveal_failed'
    """

    code: str = "reveal_failed"
    status_code: int = 500
    retryable: bool = False
    default_message: str = "Failed to reveal value"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class RevealFailedError(RevealError):
    """Network or server failure. Safe to retry."""

    retryable = True


class AuthenticationRequiredError(RevealError):
    """HTTP mapping: 401 Unauthorized"""

    code = "authentication_required"
    status_code = 401
    default_message = "Authentication required"


class AccessDeniedError(RevealError):
    """Raised when an agent asks for a lead not assigned to them, or the identity is inactive.

    HTTP mapping: 403 Forbidden
    """

    code = "access_denied"
    status_code = 403
    default_message = "Access denied: lead not assigned to you"


class LeadNotFoundError(RevealError):
    """HTTP mapping: 404 Not Found"""

    code = "lead_not_found"
    status_code = 404
    default_message = "Lead not found"


class InvalidFieldError(RevealError):
    """HTTP mapping: 400 Bad Request"""

    code = "invalid_field"
    status_code = 400
    default_message = "Invalid field requested. Must be email or phone."


class RateLimitExceededError(RevealError):
    """Raised when the per-user reveal quota for the rolling window is spent.

    HTTP mapping: 429 Too Many Requests with a Retry-After header.
    Never retried automatically.
    """

    code = "rate_limit_exceeded"
    status_code = 429

    def __init__(self, retry_after_seconds: int, limit: int) -> None:
        self.retry_after_seconds = max(int(retry_after_seconds), 1)
        self.limit = limit
        super().__init__(
            f"Rate limit exceeded: maximum {limit} reveals per window. "
            f"Try again in {self.retry_after_seconds}s."
        )


class AlertDispatchError(Exception):
    """Raised by an AlertDispatcher when the notification channel rejects a send."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
