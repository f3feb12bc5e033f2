from __future__ import annotations

from typing import Any, Dict, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authcore.logging import get_logger
from authcore.service.errors import ConflictError, CredentialsInvalid, TotpRequired
from authcore.service.mfa import MFAManager
from authcore.service.tokens import TokenPool
from authcore.storage.common import CredentialStore
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Account, MFAStatus

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordVerifier:
    """argon2id hashing for primary credentials."""

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, account: Account, password: str) -> bool:
        if account.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", username=account.username, algo=account.password_algo
            )
            return False
        try:
            return self._hasher.verify(account.password_hash, password)
        except (InvalidHash, VerificationError):
            return False


def select_one_time_code(
    totp: Optional[str], header_totp: Optional[str]
) -> Optional[str]:
    """Body parameter first, then the ``X-Auth-TOTP`` header."""
    for candidate in (totp, header_totp):
        if candidate and candidate.strip():
            return candidate.strip()
    return None


class AuthService:
    """Login orchestration: password, then second factor, then token."""

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenPool,
        mfa: MFAManager,
        *,
        passwords: Optional[PasswordVerifier] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.mfa = mfa
        self.passwords = passwords or PasswordVerifier()

    async def register(self, username: str, password: str) -> Account:
        password_hash, algo = self.passwords.hash(password)
        try:
            account = await self.store.create_account(username, password_hash, algo)
        except ConstraintViolation as exc:
            raise ConflictError("account already exists", detail=exc.detail) from exc
        logger.info("account_registered", username=username)
        return account

    async def login(
        self,
        username: str,
        password: str,
        audience: str,
        *,
        totp: Optional[str] = None,
        header_totp: Optional[str] = None,
        claims: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Return a signed token for ``audience``.

        Callers without the password never reach the second-factor check, so
        TOTP guesses are only possible after a correct password.
        """
        account = await self.store.get_account(username)
        if not account or not self.passwords.verify(account, password):
            logger.info("login_rejected", username=username, audience=audience, reason="credentials")
            raise CredentialsInvalid()

        state = await self.store.get_mfa_state(username)
        if state.status is MFAStatus.ENABLED:
            code = select_one_time_code(totp, header_totp)
            if code is None:
                logger.info("login_rejected", username=username, audience=audience, reason="totp_missing")
                raise TotpRequired()
            await self.mfa.verify(username, code)

        token = await self.tokens.issue(username, audience, claims)
        logger.info(
            "login_succeeded",
            username=username,
            audience=audience,
            mfa=state.status is MFAStatus.ENABLED,
        )
        return token

    async def logout(self, token: str, audience: str) -> bool:
        return await self.tokens.revoke(token, audience)
