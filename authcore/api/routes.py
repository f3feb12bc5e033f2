from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header

from authcore.api.schemas import (
    AttachRequest,
    AttachResponse,
    DetachResponse,
    Envelope,
    GenerateKeyRequest,
    GenerateKeyResponse,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MFAStatusRequest,
    MFAStatusResponse,
    MFAVerifyResponse,
    RegenerateResponse,
    RegisterRequest,
    RegisterResponse,
    TokenRequest,
    TotpRequest,
    VerifyResponse,
)
from authcore.service.runtime import get_runtime
from authcore.storage.models import MFAStatus

router = APIRouter(prefix="/v1")


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account with a password credential.

    Raises:
        409: If the username is already taken
    """
    runtime = get_runtime()
    account = await runtime.auth.register(body.username, body.password)
    return Envelope(status="ok", data=RegisterResponse(username=account.username))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    x_auth_totp: Optional[str] = Header(None, alias="X-Auth-TOTP"),
):
    """Exchange a password (and one-time code when MFA is on) for a token.

    The one-time code may be sent as the ``totp`` field or the ``X-Auth-TOTP``
    header; the body field wins when both are present.

    Raises:
        401: If the username or password is wrong
        403: If a one-time code is missing or rejected
    """
    runtime = get_runtime()
    audience = body.audience or runtime.settings.default_audience
    token = await runtime.auth.login(
        body.username,
        body.password,
        audience,
        totp=body.totp,
        header_totp=x_auth_totp,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(jwt=token, username=body.username, audience=audience),
    )


@router.post("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_token(body: TokenRequest):
    runtime = get_runtime()
    verified = await runtime.tokens.verify(body.token, body.audience)
    return Envelope(
        status="ok",
        data=VerifyResponse(
            username=verified.username,
            audience=verified.audience,
            issued_at=verified.issued_at,
            expires_at=verified.expires_at,
            claims=verified.claims,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: TokenRequest):
    """Revoke one token. Logging out twice with the same token succeeds."""
    runtime = get_runtime()
    success = await runtime.auth.logout(body.token, body.audience)
    return Envelope(status="ok", data=LogoutResponse(success=success))


@router.post("/mfa/generate-key", response_model=Envelope, tags=["mfa"])
async def mfa_generate_key(body: GenerateKeyRequest):
    """Create a candidate TOTP secret and its ``otpauth://`` URI.

    ``time`` is the client clock in epoch milliseconds; ``skew`` in the
    response is the client clock minus the server clock.
    """
    runtime = get_runtime()
    material = await runtime.mfa.generate_key(body.username, body.time)
    return Envelope(
        status="ok",
        data=GenerateKeyResponse(secret=material.secret, uri=material.uri, skew=material.skew),
    )


@router.post("/mfa/attach", response_model=Envelope, tags=["mfa"])
async def mfa_attach(body: AttachRequest):
    runtime = get_runtime()
    codes = await runtime.mfa.attach(body.username, body.secret, body.totp)
    return Envelope(status="ok", data=AttachResponse(enabled=True, recoveryCodes=codes))


@router.post("/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(body: TotpRequest):
    """Check a TOTP code or spend one recovery code."""
    runtime = get_runtime()
    valid = await runtime.mfa.verify(body.username, body.totp)
    return Envelope(status="ok", data=MFAVerifyResponse(valid=valid))


@router.post("/mfa/regenerate-codes", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_codes(body: TotpRequest):
    runtime = get_runtime()
    codes = await runtime.mfa.regenerate_codes(body.username, body.totp)
    return Envelope(status="ok", data=RegenerateResponse(regenerated=True, recoveryCodes=codes))


@router.post("/mfa/detach", response_model=Envelope, tags=["mfa"])
async def mfa_detach(body: TotpRequest):
    runtime = get_runtime()
    await runtime.mfa.detach(body.username, body.totp)
    return Envelope(status="ok", data=DetachResponse(enabled=False))


@router.post("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(body: MFAStatusRequest):
    runtime = get_runtime()
    state = await runtime.mfa.status(body.username)
    return Envelope(
        status="ok",
        data=MFAStatusResponse(
            enabled=state.status is MFAStatus.ENABLED,
            status=state.status.value,
        ),
    )
