from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable upper-case
    ``error_code`` that clients can branch on.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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
    error_code = "VALIDATION_ERROR"


class InvalidCredentialsError(ServiceError):
    """Login failed; deliberately silent about which part was wrong (401)."""
    status_code = 401
    error_code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenFailure(str, Enum):
    MALFORMED = "MALFORMED"
    EXPIRED = "EXPIRED"
    BAD_SIGNATURE = "BAD_SIGNATURE"


class InvalidTokenError(ServiceError):
    """Token could not be decoded or verified (401). Never retried."""
    status_code = 401
    error_code = "INVALID_TOKEN"

    def __init__(self, reason: TokenFailure, message: Optional[str] = None) -> None:
        super().__init__(
            message or "Invalid or expired token", detail={"reason": reason.value}
        )
        self.reason = reason


class SessionRevokedError(ServiceError):
    """Session is missing or revoked (401)."""
    status_code = 401
    error_code = "SESSION_REVOKED"

    def __init__(self, message: str = "Session has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenReuseDetectedError(ServiceError):
    """A rotated-away refresh token was presented again (403)."""
    status_code = 403
    error_code = "TOKEN_REUSE_DETECTED"

    def __init__(
        self, message: str = "Refresh token reuse detected; session revoked", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(
        self, message: str = "Too many requests", *, retry_after: int = 1, **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class StoreUnavailableError(ServiceError):
    """Credential store unreachable; authentication cannot be decided (503)."""
    status_code = 503
    error_code = "STORE_UNAVAILABLE"

    def __init__(
        self, message: str = "Authentication store unavailable", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class OtpVerificationError(ServiceError):
    """One-time code missing, expired or wrong (400)."""
    status_code = 400
    error_code = "OTP_VERIFICATION_FAILED"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "TokenFailure",
    "InvalidTokenError",
    "SessionRevokedError",
    "TokenReuseDetectedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "StoreUnavailableError",
    "OtpVerificationError",
    "ServerError",
]
