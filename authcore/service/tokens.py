from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from authcore.logging import get_logger
from authcore.service.errors import TokenExpired, TokenForged, TokenRevoked
from authcore.storage.common import CredentialStore
from authcore.storage.models import TokenRecord

logger = get_logger(__name__)


@dataclass
class VerifiedToken:
    username: str
    audience: str
    token_id: str
    issued_at: int
    expires_at: int
    claims: Dict[str, Any] = field(default_factory=dict)


class TokenPool:
    """Issues HS256 session tokens and tracks them in per-audience pools.

    A token is accepted only while its signature and expiry check out and its
    ``jti`` is still registered in the pool for ``(username, audience)``.
    Logging out removes one ``jti``; other sessions stay valid.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        secret: str,
        issuer: str,
        ttl_seconds: int,
    ) -> None:
        self.store = store
        self._secret = secret.encode()
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds

    def _now(self) -> int:
        return int(time.time())

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, audience: str) -> dict[str, Any]:
        """Check structure, signature, issuer, audience and expiry. No I/O."""
        if not isinstance(token, str):
            raise TokenForged()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenForged() from None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError, RecursionError):
            raise TokenForged() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenForged()

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            raise TokenForged()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, RecursionError):
            raise TokenForged() from None
        if not isinstance(payload, dict):
            raise TokenForged()
        if payload.get("iss") != self.issuer or payload.get("aud") != audience:
            raise TokenForged()
        if not isinstance(payload.get("sub"), str) or not isinstance(payload.get("jti"), str):
            raise TokenForged()
        if not isinstance(payload.get("claims", {}), dict):
            raise TokenForged()
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenForged()
        if exp <= self._now():
            raise TokenExpired()
        return payload

    async def issue(
        self, username: str, audience: str, claims: Optional[Dict[str, Any]] = None
    ) -> str:
        """Mint a token and register its id in the pool.

        The token is only returned once the pool write succeeded; a store
        failure raises ``StoreUnavailable`` and the signed value is discarded.
        """
        now = self._now()
        expires_at = now + self.ttl_seconds
        token_id = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "sub": username,
            "aud": audience,
            "iat": now,
            "exp": expires_at,
            "jti": token_id,
            "claims": dict(claims or {}),
        }
        token = self._encode_jwt(payload)
        await self.store.add_token(
            TokenRecord(
                username=username,
                audience=audience,
                token_id=token_id,
                expires_at=expires_at,
            ),
            now=now,
        )
        logger.info("token_issued", username=username, audience=audience, expires_at=expires_at)
        return token

    async def verify(self, token: str, audience: str) -> VerifiedToken:
        try:
            payload = self._decode_jwt(token, audience)
        except (TokenForged, TokenExpired) as exc:
            logger.info("token_rejected", audience=audience, reason=exc.reason)
            raise
        username = payload["sub"]
        token_id = payload["jti"]
        if not await self.store.has_token(username, audience, token_id, now=self._now()):
            logger.info(
                "token_rejected", username=username, audience=audience, reason=TokenRevoked.reason
            )
            raise TokenRevoked()
        return VerifiedToken(
            username=username,
            audience=audience,
            token_id=token_id,
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(payload["exp"]),
            claims=payload.get("claims") or {},
        )

    async def revoke(self, token: str, audience: str) -> bool:
        """Drop one token from its pool. Already-revoked tokens still succeed."""
        try:
            payload = self._decode_jwt(token, audience)
        except (TokenForged, TokenExpired) as exc:
            logger.info("token_revoke_rejected", audience=audience, reason=exc.reason)
            raise
        removed = await self.store.remove_token(payload["sub"], audience, payload["jti"])
        logger.info(
            "token_revoked", username=payload["sub"], audience=audience, removed=removed
        )
        return True
