"""
Error taxonomy for abuse mitigation.

Every error maps to an HTTP status so request-boundary callers can translate
it directly. Components below the boundary (ban managers, usage manager,
event logger) catch these and return result objects instead of raising.
"""

from typing import Optional


class GuardError(Exception):
    """Base class for all abuse-guard errors."""
    status_code: int = 500
    public_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(GuardError):
    """Bad input shape."""
    status_code = 400
    public_message = "Invalid input"


class UnauthorizedError(GuardError):
    """No session or an invalid one."""
    status_code = 401
    public_message = "Authentication required"


class ForbiddenError(GuardError):
    """Banned subject or insufficient trust level."""
    status_code = 403
    public_message = "Access forbidden"


class ConflictError(GuardError):
    """State transition not allowed (double ban, double unban)."""
    status_code = 409
    public_message = "Conflicting state"


class RateLimitedError(GuardError):
    """Too many requests; carries the number of seconds to wait."""
    status_code = 429
    public_message = "Too many requests"

    def __init__(self, message: Optional[str] = None, retry_after: int = 1, limit_type: Optional[str] = None):
        super().__init__(message)
        self.retry_after = retry_after
        self.limit_type = limit_type


class StoreError(GuardError):
    """Persistence failure.

    The original cause is kept on ``__cause__`` for logging, but the message
    seen by callers is always the generic public one.
    """
    status_code = 500
    public_message = "Storage error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(self.public_message)
        self.detail = detail
