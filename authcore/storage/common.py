"""Shared pieces of the credential store backends.

Both the Redis and the in-memory store implement :class:`CredentialStore`
and keep MFA secrets encrypted with :class:`SecretCipher`.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from enum import Enum
from typing import Optional, Protocol, Sequence

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger
from authcore.storage.models import Account, MFAState, TokenRecord

logger = get_logger(__name__)


class Transition(str, Enum):
    """Outcome of a compare-and-swap on the MFA record."""

    APPLIED = "applied"
    # account already has an active second factor
    CONFLICT = "conflict"
    # account is not in the state the transition starts from
    PRECONDITION = "precondition"
    # secret changed between the caller's read and the write
    STALE = "stale"


class CredentialStore(Protocol):
    async def create_account(
        self, username: str, password_hash: str, password_algo: str
    ) -> Account: ...

    async def get_account(self, username: str) -> Optional[Account]: ...

    async def add_token(self, record: TokenRecord, *, now: int) -> None: ...

    async def has_token(
        self, username: str, audience: str, token_id: str, *, now: int
    ) -> bool: ...

    async def remove_token(self, username: str, audience: str, token_id: str) -> bool: ...

    async def get_mfa_state(self, username: str) -> MFAState: ...

    async def set_pending_secret(
        self, username: str, secret: str, ttl_seconds: int
    ) -> Transition: ...

    async def enable_mfa(
        self, username: str, secret: str, recovery_codes: Sequence[str]
    ) -> Transition: ...

    async def replace_recovery_codes(
        self, username: str, secret: str, recovery_codes: Sequence[str]
    ) -> Transition: ...

    async def disable_mfa(self, username: str, secret: str) -> Transition: ...

    async def consume_recovery_code(self, username: str, code: str) -> bool: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


class SecretCipher:
    """Fernet encryption plus a keyed fingerprint for MFA secrets.

    The fingerprint lets the store compare secrets without decrypting them.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA cipher requires key material")
        digest = hashlib.sha256(key_material.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))
        self._fingerprint_key = hashlib.sha256(b"mfa-fingerprint:" + digest).digest()

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> Optional[str]:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return None

    def fingerprint(self, secret: str) -> str:
        return hmac.new(self._fingerprint_key, secret.encode(), hashlib.sha256).hexdigest()


def account_key(prefix: str, username: str) -> str:
    return f"{prefix}:account:{username}"


def mfa_key(prefix: str, username: str) -> str:
    return f"{prefix}:mfa:{username}"


def pending_key(prefix: str, username: str) -> str:
    return f"{prefix}:mfa-pending:{username}"


def recovery_key(prefix: str, username: str) -> str:
    return f"{prefix}:recovery:{username}"


def token_pool_key(prefix: str, username: str, audience: str) -> str:
    return f"{prefix}:tokens:{username}:{audience}"
