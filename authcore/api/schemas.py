from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "totp_required",
    "totp_invalid",
    "not_found",
    "conflict",
    "precondition_failed",
    "server_error",
})

MAX_USERNAME_LENGTH = 254
MAX_TOKEN_LENGTH = 4096


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _validate_username(value: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError("username must not be empty")
    if any(ch.isspace() or ch == ":" for ch in normalized):
        raise ValueError("username must not contain whitespace or ':'")
    return normalized


class _UsernameModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., min_length=1, max_length=MAX_USERNAME_LENGTH)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)


class RegisterRequest(_UsernameModel):
    password: str = Field(..., min_length=1, max_length=1024)


class RegisterResponse(BaseModel):
    username: str


class LoginRequest(_UsernameModel):
    password: str = Field(..., max_length=1024)
    # falls back to the configured default audience
    audience: Optional[str] = Field(default=None, min_length=1, max_length=256)
    totp: Optional[str] = Field(default=None, max_length=64)


class LoginResponse(BaseModel):
    jwt: str
    username: str
    audience: str


class TokenRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    audience: str = Field(..., min_length=1, max_length=256)


class VerifyResponse(BaseModel):
    username: str
    audience: str
    issued_at: int
    expires_at: int
    claims: Dict[str, Any] = Field(default_factory=dict)


class LogoutResponse(BaseModel):
    success: bool


class GenerateKeyRequest(_UsernameModel):
    # epoch milliseconds; checked by the MFA service so bad values map to InvalidTime
    time: Any = None


class GenerateKeyResponse(BaseModel):
    secret: str
    uri: str
    skew: int


class AttachRequest(_UsernameModel):
    secret: str = Field(..., min_length=16, max_length=128)
    totp: str = Field(..., min_length=1, max_length=64)


class AttachResponse(BaseModel):
    enabled: bool
    recoveryCodes: List[str]


class TotpRequest(_UsernameModel):
    totp: str = Field(..., min_length=1, max_length=64)


class MFAVerifyResponse(BaseModel):
    valid: bool


class RegenerateResponse(BaseModel):
    regenerated: bool
    recoveryCodes: List[str]


class DetachResponse(BaseModel):
    enabled: bool


class MFAStatusRequest(_UsernameModel):
    pass


class MFAStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether MFA is currently enabled")
    status: str = Field(..., description="disabled, pending or enabled")
