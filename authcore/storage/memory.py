from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from authcore.logging import get_logger
from authcore.storage.common import SecretCipher, Transition
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Account, MFAState, TokenRecord


class MemoryStore:
    """In-process credential store for tests and local development.

    No method awaits while holding the lock, so each call is atomic with
    respect to other coroutines and threads.
    """

    def __init__(self, *, cipher: SecretCipher) -> None:
        self.logger = get_logger(__name__)
        self.cipher = cipher
        self.accounts: Dict[str, Account] = {}
        # username -> (encrypted secret, fingerprint)
        self.mfa_secrets: Dict[str, Tuple[str, str]] = {}
        # username -> (encrypted secret, fingerprint, expires_at)
        self.pending_secrets: Dict[str, Tuple[str, str, float]] = {}
        self.recovery_codes: Dict[str, List[str]] = {}
        # (username, audience) -> {token_id: expires_at}
        self.token_pools: Dict[Tuple[str, str], Dict[str, int]] = {}
        self._data_lock = threading.RLock()

    async def create_account(
        self, username: str, password_hash: str, password_algo: str
    ) -> Account:
        with self._data_lock:
            if username in self.accounts:
                raise ConstraintViolation("account already exists", {"username": username})
            account = Account(
                username=username,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=datetime.now(timezone.utc),
            )
            self.accounts[username] = account
            return account

    async def get_account(self, username: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(username)

    async def add_token(self, record: TokenRecord, *, now: int) -> None:
        with self._data_lock:
            pool = self.token_pools.setdefault((record.username, record.audience), {})
            for token_id in [tid for tid, exp in pool.items() if exp <= now]:
                pool.pop(token_id, None)
            pool[record.token_id] = record.expires_at

    async def has_token(
        self, username: str, audience: str, token_id: str, *, now: int
    ) -> bool:
        with self._data_lock:
            expires_at = self.token_pools.get((username, audience), {}).get(token_id)
            return expires_at is not None and expires_at > now

    async def remove_token(self, username: str, audience: str, token_id: str) -> bool:
        with self._data_lock:
            pool = self.token_pools.get((username, audience))
            if not pool:
                return False
            return pool.pop(token_id, None) is not None

    def _live_pending(self, username: str) -> Optional[Tuple[str, str, float]]:
        pending = self.pending_secrets.get(username)
        if pending and pending[2] <= time.time():
            self.pending_secrets.pop(username, None)
            return None
        return pending

    async def get_mfa_state(self, username: str) -> MFAState:
        with self._data_lock:
            active = self.mfa_secrets.get(username)
            if active:
                return MFAState.enabled(
                    self.cipher.decrypt(active[0]),
                    tuple(self.recovery_codes.get(username, ())),
                )
            pending = self._live_pending(username)
            if pending:
                secret = self.cipher.decrypt(pending[0])
                if secret:
                    return MFAState.pending(secret)
            return MFAState.disabled()

    async def set_pending_secret(
        self, username: str, secret: str, ttl_seconds: int
    ) -> Transition:
        with self._data_lock:
            if username in self.mfa_secrets:
                return Transition.CONFLICT
            self.pending_secrets[username] = (
                self.cipher.encrypt(secret),
                self.cipher.fingerprint(secret),
                time.time() + ttl_seconds,
            )
            return Transition.APPLIED

    async def enable_mfa(
        self, username: str, secret: str, recovery_codes: Sequence[str]
    ) -> Transition:
        fingerprint = self.cipher.fingerprint(secret)
        with self._data_lock:
            if username in self.mfa_secrets:
                return Transition.CONFLICT
            pending = self._live_pending(username)
            if not pending or pending[1] != fingerprint:
                return Transition.PRECONDITION
            self.pending_secrets.pop(username, None)
            self.mfa_secrets[username] = (self.cipher.encrypt(secret), fingerprint)
            self.recovery_codes[username] = list(recovery_codes)
            return Transition.APPLIED

    def _check_active(self, username: str, secret: str) -> Transition:
        active = self.mfa_secrets.get(username)
        if not active:
            return Transition.PRECONDITION
        if active[1] != self.cipher.fingerprint(secret):
            return Transition.STALE
        return Transition.APPLIED

    async def replace_recovery_codes(
        self, username: str, secret: str, recovery_codes: Sequence[str]
    ) -> Transition:
        with self._data_lock:
            outcome = self._check_active(username, secret)
            if outcome is Transition.APPLIED:
                self.recovery_codes[username] = list(recovery_codes)
            return outcome

    async def disable_mfa(self, username: str, secret: str) -> Transition:
        with self._data_lock:
            outcome = self._check_active(username, secret)
            if outcome is Transition.APPLIED:
                self.mfa_secrets.pop(username, None)
                self.recovery_codes.pop(username, None)
            return outcome

    async def consume_recovery_code(self, username: str, code: str) -> bool:
        with self._data_lock:
            codes = self.recovery_codes.get(username)
            if not codes or code not in codes:
                return False
            codes.remove(code)
            return True

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None
