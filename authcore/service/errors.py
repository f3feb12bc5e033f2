from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients switch on:

    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - totp_required (403)
    - totp_invalid (403)
    - not_found (404)
    - conflict (409)
    - precondition_failed (412)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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


class InvalidTime(ValidationError):
    """Reference time supplied to key generation is not a usable timestamp."""
    default_message = "invalid reference time"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "unauthorized"


class CredentialsInvalid(AuthenticationError):
    """Primary credential (username + password) did not match."""
    default_message = "incorrect username or password"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class TotpRequired(ForbiddenError):
    """Second factor is enabled but no one-time code was presented."""
    error_code = "totp_required"
    default_message = "TOTP required"


class TotpInvalid(ForbiddenError):
    """One-time code or recovery code was rejected.

    The message never says which part of the check failed.
    """
    error_code = "totp_invalid"
    default_message = "TOTP invalid"


class TokenInvalid(ForbiddenError):
    """Presented token cannot be accepted.

    Forged, expired and revoked tokens share one external message so callers
    cannot tell them apart. ``reason`` keeps the real cause for logs.
    """
    default_message = "token has expired or was forged"
    reason: str = "invalid"


class TokenForged(TokenInvalid):
    reason = "forged"


class TokenExpired(TokenInvalid):
    reason = "expired"


class TokenRevoked(TokenInvalid):
    reason = "revoked"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class AccountNotFound(NotFoundError):
    default_message = "account not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class MfaAlreadyEnabled(ConflictError):
    default_message = "MFA already enabled"


class PreconditionFailed(ServiceError):
    """Operation is not allowed in the current state (412)."""
    status_code = 412
    error_code = "precondition_failed"
    default_message = "precondition failed"


class MfaDisabled(PreconditionFailed):
    default_message = "MFA disabled"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


class StoreUnavailable(ServerError):
    """Credential store could not be reached or timed out.

    ``detail`` carries the operation and account for operators; it never
    carries secrets, codes or tokens.
    """
    default_message = "credential store unavailable"

    def __init__(self, operation: str, username: Optional[str] = None) -> None:
        detail = {"operation": operation}
        if username is not None:
            detail["username"] = username
        super().__init__(detail=detail)
        self.operation = operation
        self.username = username


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidTime",
    "AuthenticationError",
    "CredentialsInvalid",
    "ForbiddenError",
    "TotpRequired",
    "TotpInvalid",
    "TokenInvalid",
    "TokenForged",
    "TokenExpired",
    "TokenRevoked",
    "NotFoundError",
    "AccountNotFound",
    "ConflictError",
    "MfaAlreadyEnabled",
    "PreconditionFailed",
    "MfaDisabled",
    "ServerError",
    "StoreUnavailable",
]
