"""Tests for TOTP enrollment, verification and backup codes."""

import pytest

from bastion.config import LockoutPolicy, MfaPolicy
from bastion.service.errors import FailureKind, ValidationError
from bastion.service.lockout import LockoutGuard
from bastion.service.mfa import MfaProvider
from bastion.storage.memory import MemoryStore

USER_ID = "user-1"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mfa(store, clock):
    lockout = LockoutGuard(store, LockoutPolicy(), clock=clock)
    return MfaProvider(
        store,
        MfaPolicy(),
        lockout,
        encryption_key="unit-test-encryption-key-0123456789",
        clock=clock,
    )


def _secret(enrollment):
    return enrollment.manual_entry_key.replace(" ", "")


async def _enroll(mfa, clock):
    enrollment = await mfa.setup(USER_ID, "alice@example.com")
    code = mfa.totp_code(_secret(enrollment), clock.now.timestamp())
    outcome = await mfa.verify_setup(USER_ID, code)
    assert outcome.ok
    return enrollment


class TestTotpAlgorithm:
    def test_rfc6238_sha1_vectors(self, store, clock):
        lockout = LockoutGuard(store, LockoutPolicy(), clock=clock)
        provider = MfaProvider(
            store, MfaPolicy(totp_digits=8), lockout, encryption_key="k" * 32, clock=clock
        )
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert provider.totp_code(secret, 59) == "94287082"
        assert provider.totp_code(secret, 1111111109) == "07081804"
        assert provider.totp_code(secret, 1234567890) == "89005924"


class TestEnrollment:
    async def test_setup_returns_uri_and_codes(self, mfa):
        enrollment = await mfa.setup(USER_ID, "alice@example.com")
        assert enrollment.provisioning_uri.startswith("otpauth://totp/Robotics%20Control%3Aalice%40example.com?")
        assert "issuer=Robotics%20Control" in enrollment.provisioning_uri
        assert len(enrollment.backup_codes) == 8
        assert len(set(enrollment.backup_codes)) == 8
        assert not await mfa.is_enabled(USER_ID)

    async def test_secret_stored_encrypted(self, mfa, store):
        enrollment = await mfa.setup(USER_ID, "alice@example.com")
        raw = await store.get("mfa_secret:" + USER_ID)
        assert _secret(enrollment) not in raw["secret"]
        assert all(c["code_hash"] not in enrollment.backup_codes for c in raw["backup_codes"])

    async def test_verify_setup_enables(self, mfa, clock):
        await _enroll(mfa, clock)
        assert await mfa.is_enabled(USER_ID)
        status = await mfa.status(USER_ID)
        assert status["enabled"] is True
        assert status["backup_codes_remaining"] == 8

    async def test_wrong_setup_code(self, mfa):
        await mfa.setup(USER_ID, "alice@example.com")
        outcome = await mfa.verify_setup(USER_ID, "ABCDEF")
        assert outcome.failure == FailureKind.MFA
        assert not await mfa.is_enabled(USER_ID)

    async def test_setup_refused_once_enabled(self, mfa, clock):
        await _enroll(mfa, clock)
        with pytest.raises(ValidationError):
            await mfa.setup(USER_ID, "alice@example.com")

    async def test_verify_setup_without_setup(self, mfa):
        outcome = await mfa.verify_setup(USER_ID, "123456")
        assert outcome.failure == FailureKind.VALIDATION


class TestVerification:
    async def test_codes_within_window_accepted(self, mfa, clock):
        secret = _secret(await _enroll(mfa, clock))
        clock.advance(minutes=5)
        now = clock.now.timestamp()

        early = await mfa.verify(USER_ID, mfa.totp_code(secret, now - 60))
        assert early.ok
        assert early.value.method == "totp"
        late = await mfa.verify(USER_ID, mfa.totp_code(secret, now + 60))
        assert late.ok

    async def test_code_outside_window_rejected(self, mfa, clock):
        secret = _secret(await _enroll(mfa, clock))
        clock.advance(minutes=5)
        outcome = await mfa.verify(USER_ID, mfa.totp_code(secret, clock.now.timestamp() + 90))
        assert outcome.failure == FailureKind.MFA

    async def test_replayed_code_rejected(self, mfa, clock):
        secret = _secret(await _enroll(mfa, clock))
        clock.advance(seconds=30)
        code = mfa.totp_code(secret, clock.now.timestamp())
        assert (await mfa.verify(USER_ID, code)).ok
        assert (await mfa.verify(USER_ID, code)).failure == FailureKind.MFA

    async def test_backup_code_works_exactly_once(self, mfa, clock):
        enrollment = await _enroll(mfa, clock)
        code = enrollment.backup_codes[0]

        first = await mfa.verify(USER_ID, code)
        assert first.ok
        assert first.value.method == "backup_code"
        assert first.value.backup_codes_remaining == 7
        assert (await mfa.verify(USER_ID, code)).failure == FailureKind.MFA

    async def test_backup_code_input_is_normalized(self, mfa, clock):
        enrollment = await _enroll(mfa, clock)
        code = enrollment.backup_codes[1]
        formatted = f"{code[:4]}-{code[4:]}".lower()
        assert (await mfa.verify(USER_ID, formatted)).ok

    async def test_codes_regenerated_when_running_low(self, mfa, clock):
        enrollment = await _enroll(mfa, clock)
        codes = enrollment.backup_codes
        for code in codes[:5]:
            result = await mfa.verify(USER_ID, code)
            assert result.value.regenerated_codes == []

        sixth = await mfa.verify(USER_ID, codes[5])
        assert len(sixth.value.regenerated_codes) == 8
        assert sixth.value.backup_codes_remaining == 8
        # The old batch is gone
        assert (await mfa.verify(USER_ID, codes[6])).failure == FailureKind.MFA
        assert (await mfa.verify(USER_ID, sixth.value.regenerated_codes[0])).ok

    async def test_repeated_failures_lock_mfa(self, mfa, clock):
        secret = _secret(await _enroll(mfa, clock))
        for _ in range(4):
            outcome = await mfa.verify(USER_ID, "ZZZZZZZZ")
            assert not outcome.detail["locked"]
        assert (await mfa.verify(USER_ID, "ZZZZZZZZ")).detail["locked"]

        clock.advance(seconds=30)
        outcome = await mfa.verify(USER_ID, mfa.totp_code(secret, clock.now.timestamp()))
        assert outcome.failure == FailureKind.LOCKOUT

    async def test_count_enabled(self, mfa, clock):
        assert await mfa.count_enabled() == 0
        await _enroll(mfa, clock)
        assert await mfa.count_enabled() == 1
