from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    username: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=_utcnow)


class MFAStatus(str, Enum):
    """Second-factor lifecycle of one account."""

    DISABLED = "disabled"
    PENDING = "pending"
    ENABLED = "enabled"


@dataclass(frozen=True)
class MFAState:
    """Snapshot of an account's second factor.

    DISABLED carries no secret, PENDING carries the candidate secret awaiting
    attach, ENABLED carries the active secret and the remaining recovery codes.
    """

    status: MFAStatus
    secret: Optional[str] = None
    recovery_codes: Tuple[str, ...] = ()

    @classmethod
    def disabled(cls) -> "MFAState":
        return cls(status=MFAStatus.DISABLED)

    @classmethod
    def pending(cls, secret: str) -> "MFAState":
        return cls(status=MFAStatus.PENDING, secret=secret)

    @classmethod
    def enabled(cls, secret: str, recovery_codes: Tuple[str, ...]) -> "MFAState":
        return cls(status=MFAStatus.ENABLED, secret=secret, recovery_codes=tuple(recovery_codes))

    @property
    def is_enabled(self) -> bool:
        return self.status is MFAStatus.ENABLED


@dataclass(frozen=True)
class TokenRecord:
    """Pool entry registered for an issued token."""

    username: str
    audience: str
    token_id: str
    expires_at: int
