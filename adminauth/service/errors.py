from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Root of every failure the auth core reports to its callers.

    Subclasses pin the HTTP ``status_code``, a stable ``error_code`` that
    clients branch on, and the ``default_message`` used when none is given.
    ``detail`` carries structured context and is rendered into the error
    envelope, so it must never hold credential material.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Request could not be processed"

    def __init__(
        self, message: Optional[str] = None, *, detail: Optional[Dict[str, Any]] = None
    ) -> None:
        self.message = message or self.default_message
        self.detail: Dict[str, Any] = dict(detail or {})
        super().__init__(self.message)


class ValidationError(ServiceError):
    default_message = "Invalid request"


class WeakPassword(ValidationError):
    default_message = "Password does not meet requirements"


class InvalidCode(ValidationError):
    error_code = "invalid_code"
    default_message = "Invalid verification code"


class AuthenticationError(ServiceError):
    """401 family. Messages stay generic so failures reveal nothing extra."""

    status_code = 401
    error_code = "unauthorized"
    default_message = "Authentication required"


class InvalidCredentials(AuthenticationError):
    # unknown login key and wrong password must stay indistinguishable
    error_code = "invalid_credentials"
    default_message = "Invalid credentials"


class InvalidMFA(AuthenticationError):
    error_code = "invalid_mfa"
    default_message = "Invalid TOTP token or backup code"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        requires_totp: bool = True,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, detail={**(detail or {}), "requires_totp": requires_totp})
        self.requires_totp = requires_totp


class InvalidToken(AuthenticationError):
    error_code = "invalid_token"
    default_message = "Invalid or expired token"


class PrincipalInactive(AuthenticationError):
    error_code = "principal_inactive"
    default_message = "Account is not active"


class SessionExpired(AuthenticationError):
    error_code = "session_expired"
    default_message = "Session expired"


class TokenReplayed(AuthenticationError):
    error_code = "token_replayed"
    default_message = "Token has been revoked"


class AccountLocked(ServiceError):
    status_code = 423
    error_code = "account_locked"
    default_message = "Account is temporarily locked"

    def __init__(
        self,
        unlock_at: datetime,
        message: Optional[str] = None,
        *,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, detail={**(detail or {}), "unlock_at": unlock_at.isoformat()})
        self.unlock_at = unlock_at


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    default_message = "Forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "Not found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"
    default_message = "Conflicting state"


class AlreadyEnabled(ConflictError):
    error_code = "already_enabled"
    default_message = "TOTP is already enabled"


class StoreUnavailable(ServiceError):
    """Credential store or session cache could not serve the request."""

    status_code = 503
    error_code = "store_unavailable"
    default_message = "Authentication backend unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPassword",
    "InvalidCode",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidMFA",
    "InvalidToken",
    "PrincipalInactive",
    "SessionExpired",
    "TokenReplayed",
    "AccountLocked",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AlreadyEnabled",
    "StoreUnavailable",
]
