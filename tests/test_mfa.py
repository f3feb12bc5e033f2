"""Unit tests for the MFA state machine.

Covers:
- Key generation and reference-time parsing
- Attach with the candidate secret
- Verification by TOTP and single-use recovery codes
- Recovery code regeneration
- Detach
"""

import asyncio
import time

import pyotp
import pytest

from authcore.service.errors import (
    AccountNotFound,
    InvalidTime,
    MfaAlreadyEnabled,
    MfaDisabled,
    TotpInvalid,
)
from authcore.service.mfa import MFAManager, parse_reference_time
from authcore.storage.models import MFAStatus


@pytest.fixture
def account(memory_store):
    asyncio.run(memory_store.create_account("alice", "hash", "argon2id"))
    return "alice"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _wrong_code(secret: str) -> str:
    """A six-digit code outside the accepted window for `secret`."""
    generator = pyotp.TOTP(secret)
    now = time.time()
    accepted = {generator.at(now + offset * 30) for offset in (-1, 0, 1)}
    return next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)


async def _enable(mfa_manager, username):
    material = await mfa_manager.generate_key(username, _now_ms())
    codes = await mfa_manager.attach(username, material.secret, pyotp.TOTP(material.secret).now())
    return material.secret, codes


class TestParseReferenceTime:
    @pytest.mark.parametrize("value,expected", [(0, 0.0), (1700000000000, 1700000000000.0), ("1500.5", 1500.5)])
    def test_accepts_numbers_and_numeric_strings(self, value, expected):
        assert parse_reference_time(value) == expected

    @pytest.mark.parametrize("value", ["bubble", "", None, True, -1, float("nan"), float("inf"), [1]])
    def test_rejects_non_timestamps(self, value):
        with pytest.raises(InvalidTime):
            parse_reference_time(value)


class TestGenerateKey:
    async def test_returns_secret_uri_and_skew(self, mfa_manager, account):
        material = await mfa_manager.generate_key(account, _now_ms() + 5000)

        assert len(material.secret) == 32
        assert material.uri.startswith("otpauth://totp/authcore-test:alice?")
        assert f"secret={material.secret}" in material.uri
        assert 3000 < material.skew < 7000

    async def test_moves_account_to_pending(self, mfa_manager, account):
        material = await mfa_manager.generate_key(account, _now_ms())
        state = await mfa_manager.status(account)

        assert state.status is MFAStatus.PENDING
        assert state.secret == material.secret

    async def test_invalid_time(self, mfa_manager, account):
        with pytest.raises(InvalidTime):
            await mfa_manager.generate_key(account, "bubble")

    async def test_unknown_account(self, mfa_manager):
        with pytest.raises(AccountNotFound):
            await mfa_manager.generate_key("nobody", _now_ms())

    async def test_rejected_when_enabled(self, mfa_manager, account):
        await _enable(mfa_manager, account)
        with pytest.raises(MfaAlreadyEnabled):
            await mfa_manager.generate_key(account, _now_ms())


class TestAttach:
    async def test_attach_enables_and_returns_codes(self, mfa_manager, account):
        secret, codes = await _enable(mfa_manager, account)
        state = await mfa_manager.status(account)

        assert state.status is MFAStatus.ENABLED
        assert state.secret == secret
        assert len(codes) == 10
        assert list(state.recovery_codes) == codes

    async def test_wrong_code_leaves_account_pending(self, mfa_manager, account):
        material = await mfa_manager.generate_key(account, _now_ms())
        with pytest.raises(TotpInvalid):
            await mfa_manager.attach(account, material.secret, _wrong_code(material.secret))

        state = await mfa_manager.status(account)
        assert state.status is MFAStatus.PENDING

    async def test_secret_must_match_candidate(self, mfa_manager, account):
        await mfa_manager.generate_key(account, _now_ms())
        foreign = pyotp.random_base32(32)
        with pytest.raises(TotpInvalid):
            await mfa_manager.attach(account, foreign, pyotp.TOTP(foreign).now())

    async def test_regenerated_key_replaces_candidate(self, mfa_manager, account):
        first = await mfa_manager.generate_key(account, _now_ms())
        second = await mfa_manager.generate_key(account, _now_ms())

        with pytest.raises(TotpInvalid):
            await mfa_manager.attach(account, first.secret, pyotp.TOTP(first.secret).now())
        codes = await mfa_manager.attach(account, second.secret, pyotp.TOTP(second.secret).now())
        assert len(codes) == 10

    async def test_expired_candidate_cannot_be_attached(self, memory_store, account):
        manager = MFAManager(memory_store, issuer="authcore-test", pending_ttl_seconds=0)
        material = await manager.generate_key(account, _now_ms())
        with pytest.raises(TotpInvalid):
            await manager.attach(account, material.secret, pyotp.TOTP(material.secret).now())

    async def test_attach_twice_conflicts(self, mfa_manager, account):
        secret, _ = await _enable(mfa_manager, account)
        with pytest.raises(MfaAlreadyEnabled):
            await mfa_manager.attach(account, secret, pyotp.TOTP(secret).now())


class TestVerify:
    async def test_accepts_current_totp(self, mfa_manager, account):
        secret, _ = await _enable(mfa_manager, account)
        assert await mfa_manager.verify(account, pyotp.TOTP(secret).now()) is True

    async def test_rejects_wrong_code(self, mfa_manager, account):
        await _enable(mfa_manager, account)
        with pytest.raises(TotpInvalid):
            await mfa_manager.verify(account, "not-a-code")

    @pytest.mark.parametrize("code", ["١٢٣٤٥٦", "²²²²²²", "ａｂｃｄｅ-ｆｇｈｉｊ"])
    async def test_rejects_non_ascii_codes(self, mfa_manager, account, code):
        await _enable(mfa_manager, account)
        with pytest.raises(TotpInvalid):
            await mfa_manager.verify(account, code)

    async def test_attach_rejects_non_ascii_digits(self, mfa_manager, account):
        material = await mfa_manager.generate_key(account, _now_ms())
        with pytest.raises(TotpInvalid):
            await mfa_manager.attach(account, material.secret, "١٢٣٤٥٦")
        assert (await mfa_manager.status(account)).status is MFAStatus.PENDING

    async def test_recovery_code_is_single_use(self, mfa_manager, account):
        _, codes = await _enable(mfa_manager, account)

        assert await mfa_manager.verify(account, codes[0]) is True
        with pytest.raises(TotpInvalid):
            await mfa_manager.verify(account, codes[0])

        state = await mfa_manager.status(account)
        assert codes[0] not in state.recovery_codes
        assert len(state.recovery_codes) == 9

    async def test_recovery_code_is_case_insensitive(self, mfa_manager, account):
        _, codes = await _enable(mfa_manager, account)
        assert await mfa_manager.verify(account, codes[1].upper()) is True

    async def test_concurrent_use_of_one_recovery_code(self, mfa_manager, account):
        _, codes = await _enable(mfa_manager, account)

        results = await asyncio.gather(
            mfa_manager.verify(account, codes[0]),
            mfa_manager.verify(account, codes[0]),
            return_exceptions=True,
        )

        assert results.count(True) == 1
        assert sum(isinstance(r, TotpInvalid) for r in results) == 1

    async def test_disabled_account(self, mfa_manager, account):
        with pytest.raises(MfaDisabled):
            await mfa_manager.verify(account, "123456")

    async def test_pending_account(self, mfa_manager, account):
        material = await mfa_manager.generate_key(account, _now_ms())
        with pytest.raises(MfaDisabled):
            await mfa_manager.verify(account, pyotp.TOTP(material.secret).now())


class TestRegenerateCodes:
    async def test_replaces_all_codes(self, mfa_manager, account):
        secret, old_codes = await _enable(mfa_manager, account)

        new_codes = await mfa_manager.regenerate_codes(account, pyotp.TOTP(secret).now())

        assert len(new_codes) == 10
        assert not set(new_codes) & set(old_codes)
        with pytest.raises(TotpInvalid):
            await mfa_manager.verify(account, old_codes[0])
        assert await mfa_manager.verify(account, new_codes[0]) is True

    async def test_recovery_code_does_not_authorize_regeneration(self, mfa_manager, account):
        _, codes = await _enable(mfa_manager, account)
        with pytest.raises(TotpInvalid):
            await mfa_manager.regenerate_codes(account, codes[0])

    async def test_requires_enabled(self, mfa_manager, account):
        with pytest.raises(MfaDisabled):
            await mfa_manager.regenerate_codes(account, "123456")


class TestDetach:
    async def test_detach_disables(self, mfa_manager, account):
        secret, _ = await _enable(mfa_manager, account)

        await mfa_manager.detach(account, pyotp.TOTP(secret).now())

        state = await mfa_manager.status(account)
        assert state.status is MFAStatus.DISABLED
        assert state.secret is None
        assert state.recovery_codes == ()

    async def test_detach_requires_valid_totp(self, mfa_manager, account):
        _, codes = await _enable(mfa_manager, account)
        with pytest.raises(TotpInvalid):
            await mfa_manager.detach(account, codes[0])

        state = await mfa_manager.status(account)
        assert state.status is MFAStatus.ENABLED

    async def test_detach_when_disabled(self, mfa_manager, account):
        with pytest.raises(MfaDisabled):
            await mfa_manager.detach(account, "123456")

    async def test_can_reenable_after_detach(self, mfa_manager, account):
        secret, _ = await _enable(mfa_manager, account)
        await mfa_manager.detach(account, pyotp.TOTP(secret).now())

        new_secret, codes = await _enable(mfa_manager, account)
        assert new_secret != secret
        assert len(codes) == 10
