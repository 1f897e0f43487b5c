from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - csrf_rejected (403)
    - not_found (404)
    - rate_limited (429)
    - locked (429)
    - store_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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
    """Request or identity-transform output failed validation (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``kind`` is kept for server-side logs only; callers always see the same
    generic unauthorized outcome.
    """
    status_code = 401
    error_code = "unauthorized"
    kind = "invalid"


class AuthMissingError(AuthenticationError):
    """No credential was presented."""
    kind = "missing"


class AuthInvalidError(AuthenticationError):
    """Bad signature, expired, wrong type or malformed token."""
    kind = "invalid"


class AuthRevokedError(AuthenticationError):
    """Token version mismatch or explicitly revoked refresh token."""
    kind = "revoked"


class AuthorizationError(ServiceError):
    """Caller holds none of the required roles (403)."""
    status_code = 403
    error_code = "forbidden"


class CsrfRejectedError(ServiceError):
    """Anti-forgery token missing or mismatched (403)."""
    status_code = 403
    error_code = "csrf_rejected"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after_seconds": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class LockedError(RateLimitedError):
    """Credential checks for this key are locked out (429)."""
    error_code = "locked"


class StoreUnavailableError(ServiceError):
    """Backing store failed or timed out (503)."""
    status_code = 503
    error_code = "store_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthMissingError",
    "AuthInvalidError",
    "AuthRevokedError",
    "AuthorizationError",
    "CsrfRejectedError",
    "NotFoundError",
    "RateLimitedError",
    "LockedError",
    "StoreUnavailableError",
]
