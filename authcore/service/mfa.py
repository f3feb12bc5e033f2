from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, List

from authcore.logging import get_logger
from authcore.service import totp
from authcore.service.errors import (
    AccountNotFound,
    InvalidTime,
    MfaAlreadyEnabled,
    MfaDisabled,
    TotpInvalid,
)
from authcore.storage.common import CredentialStore, Transition
from authcore.storage.models import MFAState, MFAStatus

logger = get_logger(__name__)


@dataclass
class KeyMaterial:
    secret: str
    uri: str
    skew: int


def parse_reference_time(value: Any) -> float:
    """Epoch milliseconds from an int, float or numeric string."""
    if isinstance(value, bool) or value is None:
        raise InvalidTime()
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            raise InvalidTime() from None
    if not isinstance(value, (int, float)):
        raise InvalidTime()
    if not math.isfinite(value) or value < 0:
        raise InvalidTime()
    return float(value)


class MFAManager:
    """TOTP second factor: DISABLED -> PENDING -> ENABLED -> DISABLED.

    Every transition out of ENABLED needs a live TOTP. Recovery codes are
    accepted by :meth:`verify` only, and each one works once.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        issuer: str,
        interval: int = 30,
        digits: int = 6,
        window: int = 1,
        recovery_code_count: int = 10,
        pending_ttl_seconds: int = 600,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.interval = interval
        self.digits = digits
        self.window = window
        self.recovery_code_count = recovery_code_count
        self.pending_ttl_seconds = pending_ttl_seconds

    def _now(self) -> float:
        return time.time()

    def _totp_matches(self, secret: str | None, code: str | None) -> bool:
        if not secret or not code:
            return False
        return totp.verify_totp(
            secret,
            code,
            window=self.window,
            interval=self.interval,
            digits=self.digits,
            now=self._now(),
        )

    async def _load_state(self, username: str) -> MFAState:
        if not await self.store.get_account(username):
            raise AccountNotFound()
        return await self.store.get_mfa_state(username)

    async def _active_state(self, username: str) -> MFAState:
        state = await self._load_state(username)
        if state.status is MFAStatus.ENABLED:
            return state
        if state.status in (MFAStatus.DISABLED, MFAStatus.PENDING):
            raise MfaDisabled()
        raise AssertionError(f"unhandled MFA status {state.status!r}")

    async def status(self, username: str) -> MFAState:
        return await self._load_state(username)

    async def generate_key(self, username: str, reference_time: Any) -> KeyMaterial:
        """Create a candidate secret for ``username``.

        A second call before attach replaces the candidate; an unattached
        candidate expires after ``pending_ttl_seconds``.
        """
        reference_ms = parse_reference_time(reference_time)
        state = await self._load_state(username)
        if state.status is MFAStatus.ENABLED:
            raise MfaAlreadyEnabled()

        secret = totp.generate_secret()
        outcome = await self.store.set_pending_secret(
            username, secret, self.pending_ttl_seconds
        )
        if outcome is Transition.CONFLICT:
            raise MfaAlreadyEnabled()

        skew = int(round(reference_ms - self._now() * 1000))
        logger.info("mfa_key_generated", username=username, skew_ms=skew)
        return KeyMaterial(
            secret=secret,
            uri=totp.provisioning_uri(
                secret,
                username,
                issuer=self.issuer,
                interval=self.interval,
                digits=self.digits,
            ),
            skew=skew,
        )

    async def attach(self, username: str, secret: str, code: str) -> List[str]:
        """Activate the candidate secret and return fresh recovery codes."""
        state = await self._load_state(username)
        if state.status is MFAStatus.ENABLED:
            raise MfaAlreadyEnabled()

        if not self._totp_matches(secret, code):
            logger.info("mfa_attach_rejected", username=username, reason="totp_mismatch")
            raise TotpInvalid()

        recovery_codes = totp.generate_recovery_codes(self.recovery_code_count)
        outcome = await self.store.enable_mfa(username, secret, recovery_codes)
        if outcome is Transition.CONFLICT:
            raise MfaAlreadyEnabled()
        if outcome is not Transition.APPLIED:
            # no live candidate, or the candidate is a different secret
            logger.info("mfa_attach_rejected", username=username, reason="candidate_mismatch")
            raise TotpInvalid()
        logger.info("mfa_attached", username=username)
        return recovery_codes

    async def verify(self, username: str, code: str) -> bool:
        """Accept a current TOTP or burn one recovery code."""
        state = await self._active_state(username)
        if self._totp_matches(state.secret, code):
            return True

        if code and await self.store.consume_recovery_code(
            username, totp.normalize_recovery_code(code)
        ):
            logger.info("mfa_recovery_code_consumed", username=username)
            return True

        logger.info("mfa_verify_rejected", username=username)
        raise TotpInvalid()

    async def regenerate_codes(self, username: str, code: str) -> List[str]:
        state = await self._active_state(username)
        if not self._totp_matches(state.secret, code):
            raise TotpInvalid()

        recovery_codes = totp.generate_recovery_codes(self.recovery_code_count)
        outcome = await self.store.replace_recovery_codes(username, state.secret, recovery_codes)
        if outcome is Transition.PRECONDITION:
            raise MfaDisabled()
        if outcome is not Transition.APPLIED:
            raise TotpInvalid()
        logger.info("mfa_recovery_codes_regenerated", username=username)
        return recovery_codes

    async def detach(self, username: str, code: str) -> None:
        state = await self._active_state(username)
        if not self._totp_matches(state.secret, code):
            raise TotpInvalid()

        outcome = await self.store.disable_mfa(username, state.secret)
        if outcome is Transition.PRECONDITION:
            raise MfaDisabled()
        if outcome is not Transition.APPLIED:
            raise TotpInvalid()
        logger.info("mfa_detached", username=username)
