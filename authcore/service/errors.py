from __future__ import annotations

from datetime import datetime
from typing import Optional

# External message shared by every credential failure so callers cannot tell
# a wrong password from a wrong second factor.
INVALID_CREDENTIALS_MESSAGE = "invalid credentials"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` and an HTTP ``status_code``.
    ``retryable`` marks failures a client may safely retry after backing off.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown account or wrong password."""

    def __init__(self, message: str = INVALID_CREDENTIALS_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class MFAInvalid(AuthenticationError):
    """Wrong TOTP or backup code. Externally identical to InvalidCredentials."""

    def __init__(self, message: str = INVALID_CREDENTIALS_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class MFARequired(AuthenticationError):
    """Password accepted but a second factor must be supplied."""
    error_code = "mfa_required"

    def __init__(self, message: str = "mfa code required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalid(AuthenticationError):
    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenSuperseded(AuthenticationError):
    """Token was issued before the most recent password change."""

    def __init__(
        self, message: str = "password changed; please log in again", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class SessionReplay(AuthenticationError):
    """A rotated-out refresh token was presented again."""
    error_code = "session_replay"

    def __init__(self, message: str = "refresh token reuse detected", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotFound(AuthenticationError):
    def __init__(self, message: str = "session not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLocked(ServiceError):
    """Too many failed logins; the account is locked until ``locked_until`` (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime, message: str = "account locked") -> None:
        super().__init__(message, detail={"locked_until": locked_until.isoformat()})
        self.locked_until = locked_until


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class RateLimited(RateLimitedError):
    """Policy window exhausted; ``retry_after`` is in whole seconds."""
    retryable = True

    def __init__(self, retry_after: int, message: str = "too many requests") -> None:
        retry_after = max(1, int(retry_after))
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class ResetCodeInvalid(ValidationError):
    error_code = "reset_code_invalid"

    def __init__(self, message: str = "invalid reset code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ResetCodeExpired(ValidationError):
    error_code = "reset_code_expired"

    def __init__(self, message: str = "reset code expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class StoreUnavailable(ServiceError):
    """A backing store timed out or is unreachable (503); the outcome is unknown."""
    status_code = 503
    error_code = "unavailable"
    retryable = True

    def __init__(self, message: str = "service temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "INVALID_CREDENTIALS_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "MFAInvalid",
    "MFARequired",
    "TokenExpired",
    "TokenInvalid",
    "TokenSuperseded",
    "SessionReplay",
    "SessionNotFound",
    "ForbiddenError",
    "ConflictError",
    "AccountLocked",
    "RateLimitedError",
    "RateLimited",
    "ResetCodeInvalid",
    "ResetCodeExpired",
    "StoreUnavailable",
]
