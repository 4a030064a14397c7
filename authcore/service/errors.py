from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for authentication-core exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``.
    The HTTP adapter renders only those two plus ``message``; anything placed
    in ``detail`` is for logs and callers inside the process.
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


class InvalidCredentials(ServiceError):
    """Unknown email, wrong password or inactive account (401).

    The three causes are deliberately indistinguishable to the caller.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Credentials are not valid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ServiceError):
    """Too many failed logins inside the tracking window (429)."""
    status_code = 429
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "Account temporarily locked due to failed attempts",
        *,
        retry_after: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TwoFactorRequired(ServiceError):
    """Password accepted but the account needs a one-time code (401)."""
    status_code = 401
    error_code = "two_factor_required"

    def __init__(self, message: str = "Two-factor code required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorMisconfigured(ServiceError):
    """2FA flagged as enabled but no secret is stored (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "2FA not properly configured", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTwoFactorCode(ServiceError):
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Invalid two-factor code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorNotInitialized(ServiceError):
    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str = "2FA not initialized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorAlreadyEnabled(ServiceError):
    status_code = 409
    error_code = "conflict"

    def __init__(self, message: str = "2FA already enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshToken(ServiceError):
    """Refresh token missing, revoked, expired, superseded or mismatched (401).

    ``reason`` is logged but never rendered to clients.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self, message: str = "Invalid refresh token", *, reason: str = "unknown", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class MalformedToken(ServiceError):
    """Opaque token is not exactly ``<id>.<secret>`` (400)."""
    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str = "Malformed token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(ServiceError):
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredToken(ServiceError):
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFound(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class DuplicateEmail(ServiceError):
    status_code = 409
    error_code = "conflict"

    def __init__(self, message: str = "Email already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InternalError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "InvalidCredentials",
    "AccountLocked",
    "TwoFactorRequired",
    "TwoFactorMisconfigured",
    "InvalidTwoFactorCode",
    "TwoFactorNotInitialized",
    "TwoFactorAlreadyEnabled",
    "InvalidRefreshToken",
    "MalformedToken",
    "InvalidToken",
    "InvalidOrExpiredToken",
    "NotFound",
    "DuplicateEmail",
    "InternalError",
]
