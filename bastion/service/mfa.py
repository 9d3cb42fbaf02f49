from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

from cryptography.fernet import Fernet, InvalidToken

from bastion.config import MfaPolicy
from bastion.logging import get_logger
from bastion.service.errors import FailureKind, Outcome, ValidationError
from bastion.service.lockout import LockoutGuard, mfa_identifier
from bastion.storage.common import KeyedStore
from bastion.storage.models import BackupCode, MfaSecret, utcnow

logger = get_logger(__name__)

_KEY_PREFIX = "mfa_secret:"
_DIGESTS = {"SHA1": hashlib.sha1, "SHA256": hashlib.sha256, "SHA512": hashlib.sha512}


@dataclass
class MfaEnrollment:
    """Returned once from setup; the raw values are never retrievable again."""

    provisioning_uri: str
    manual_entry_key: str
    backup_codes: List[str]


@dataclass
class MfaVerification:
    method: str
    backup_codes_remaining: Optional[int] = None
    regenerated_codes: List[str] = field(default_factory=list)


def _normalize_code(code: str) -> str:
    return "".join(ch for ch in (code or "") if ch.isalnum()).upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(_normalize_code(code).encode()).hexdigest()


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class MfaProvider:
    """TOTP secrets and single-use backup codes.

    Shared secrets are stored encrypted with Fernet; backup codes only as
    sha256 digests.
    """

    def __init__(
        self,
        store: KeyedStore,
        policy: MfaPolicy,
        lockout: LockoutGuard,
        *,
        encryption_key: str,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.lockout = lockout
        self._clock = clock or utcnow
        self._cipher = Fernet(derive_cipher_key(encryption_key))
        self._digest = _DIGESTS[policy.totp_algorithm]

    def _encrypt(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt(self, token: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.error("mfa_secret_decrypt_failed")
            return None

    def totp_code(self, secret: str, timestamp: float) -> str:
        """Code for the time step containing ``timestamp`` (RFC 6238)."""
        return self._code_for_step(secret, int(timestamp // self.policy.totp_interval))

    def _code_for_step(self, secret: str, step: int) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return ""
        digest = hmac.new(key, step.to_bytes(8, "big"), self._digest).digest()
        offset = digest[-1] & 0x0F
        digits = self.policy.totp_digits
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
        return str(code_int).zfill(digits)

    def _match_totp(self, secret: str, code: str) -> Optional[int]:
        if not code.isdigit() or len(code) != self.policy.totp_digits:
            return None
        current = int(self._clock().timestamp() // self.policy.totp_interval)
        window = self.policy.totp_window
        for step in range(current - window, current + window + 1):
            generated = self._code_for_step(secret, step)
            if generated and hmac.compare_digest(generated, code):
                return step
        return None

    def _new_backup_codes(self, now: datetime) -> Tuple[List[str], List[BackupCode]]:
        raw = [secrets.token_hex(4).upper() for _ in range(self.policy.backup_code_count)]
        return raw, [BackupCode(code_hash=hash_backup_code(c), created_at=now) for c in raw]

    def _provisioning_uri(self, secret: str, account: str) -> str:
        issuer = self.policy.issuer
        label = quote(f"{issuer}:{account}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": self.policy.totp_algorithm,
                "digits": self.policy.totp_digits,
                "period": self.policy.totp_interval,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    async def _load(self, user_id: str) -> Optional[MfaSecret]:
        raw = await self.store.get(_KEY_PREFIX + user_id)
        return MfaSecret.from_record(raw) if raw else None

    async def setup(self, user_id: str, account_name: str) -> MfaEnrollment:
        existing = await self._load(user_id)
        if existing and existing.enabled:
            raise ValidationError("MFA is already enabled", ["MFA is already enabled"])

        now = self._clock()
        secret = base64.b32encode(os.urandom(20)).decode().rstrip("=")
        raw_codes, hashed_codes = self._new_backup_codes(now)
        record = MfaSecret(
            user_id=user_id,
            secret=self._encrypt(secret),
            enabled=False,
            backup_codes=hashed_codes,
            created_at=now,
        )
        await self.store.put(_KEY_PREFIX + user_id, record.to_record())
        logger.info("mfa_setup_started", user_id=user_id)
        return MfaEnrollment(
            provisioning_uri=self._provisioning_uri(secret, account_name),
            manual_entry_key=" ".join(secret[i : i + 4] for i in range(0, len(secret), 4)),
            backup_codes=raw_codes,
        )

    async def verify_setup(self, user_id: str, code: str) -> Outcome[MfaSecret]:
        identifier = mfa_identifier(user_id)
        if await self.lockout.is_locked(identifier):
            return Outcome.fail(FailureKind.LOCKOUT, "mfa locked", user_id=user_id)
        record = await self._load(user_id)
        if record is None:
            return Outcome.fail(FailureKind.VALIDATION, "MFA setup not started")
        if record.enabled:
            return Outcome.fail(FailureKind.VALIDATION, "MFA is already enabled")
        secret = self._decrypt(record.secret)
        step = self._match_totp(secret, _normalize_code(code)) if secret else None
        if step is None:
            await self.lockout.record_failure(identifier)
            logger.warning("mfa_setup_verification_failed", user_id=user_id)
            return Outcome.fail(FailureKind.MFA, "invalid verification code")

        now = self._clock()

        def enable(current: Optional[dict]) -> Optional[dict]:
            if current is None:
                return None
            latest = MfaSecret.from_record(current)
            latest.enabled = True
            latest.verified_at = now
            latest.last_totp_step = step
            return latest.to_record()

        updated = await self.store.update(_KEY_PREFIX + user_id, enable)
        if updated is None:
            return Outcome.fail(FailureKind.VALIDATION, "MFA setup not started")
        await self.lockout.record_success(identifier)
        logger.info("mfa_enabled", user_id=user_id)
        return Outcome.success(MfaSecret.from_record(updated))

    async def verify(self, user_id: str, code: str) -> Outcome[MfaVerification]:
        """Check a TOTP code first, then fall back to unused backup codes."""
        identifier = mfa_identifier(user_id)
        if await self.lockout.is_locked(identifier):
            logger.warning("mfa_locked_out", user_id=user_id)
            return Outcome.fail(FailureKind.LOCKOUT, "mfa locked", user_id=user_id)
        record = await self._load(user_id)
        if record is None or not record.enabled:
            return Outcome.fail(FailureKind.MFA, "MFA not enabled")

        normalized = _normalize_code(code)
        secret = self._decrypt(record.secret)
        step = self._match_totp(secret, normalized) if secret else None
        if step is not None and await self._accept_step(user_id, step):
            await self.lockout.record_success(identifier)
            logger.info("mfa_verified", user_id=user_id, method="totp")
            return Outcome.success(MfaVerification(method="totp"))

        if step is None and normalized:
            verification = await self._consume_backup_code(user_id, normalized)
            if verification is not None:
                await self.lockout.record_success(identifier)
                logger.info(
                    "mfa_verified",
                    user_id=user_id,
                    method="backup_code",
                    remaining=verification.backup_codes_remaining,
                    regenerated=bool(verification.regenerated_codes),
                )
                return Outcome.success(verification)

        failure = await self.lockout.record_failure(identifier)
        logger.warning("mfa_verification_failed", user_id=user_id, replay=step is not None)
        return Outcome.fail(FailureKind.MFA, "invalid code", locked=failure.locked)

    async def _accept_step(self, user_id: str, step: int) -> bool:
        """Record the step as used; a step at or before the last one is a replay."""
        accepted = {"ok": False}

        def advance(current: Optional[dict]) -> Optional[dict]:
            accepted["ok"] = False
            if current is None:
                return None
            latest = MfaSecret.from_record(current)
            if latest.last_totp_step is not None and step <= latest.last_totp_step:
                return current
            latest.last_totp_step = step
            accepted["ok"] = True
            return latest.to_record()

        await self.store.update(_KEY_PREFIX + user_id, advance)
        return accepted["ok"]

    async def _consume_backup_code(self, user_id: str, code: str) -> Optional[MfaVerification]:
        candidate = hash_backup_code(code)
        now = self._clock()
        result: Dict[str, MfaVerification] = {}

        def consume(current: Optional[dict]) -> Optional[dict]:
            result.clear()
            if current is None:
                return None
            latest = MfaSecret.from_record(current)
            matched = next(
                (
                    bc
                    for bc in latest.backup_codes
                    if not bc.used and hmac.compare_digest(bc.code_hash, candidate)
                ),
                None,
            )
            if matched is None:
                return current
            matched.used = True
            matched.used_at = now
            regenerated: List[str] = []
            if latest.unused_backup_codes <= self.policy.backup_regen_threshold:
                regenerated, latest.backup_codes = self._new_backup_codes(now)
            result["value"] = MfaVerification(
                method="backup_code",
                backup_codes_remaining=latest.unused_backup_codes,
                regenerated_codes=regenerated,
            )
            return latest.to_record()

        await self.store.update(_KEY_PREFIX + user_id, consume)
        return result.get("value")

    async def is_enabled(self, user_id: str) -> bool:
        record = await self._load(user_id)
        return bool(record and record.enabled)

    async def status(self, user_id: str) -> dict:
        record = await self._load(user_id)
        if record is None:
            return {"enabled": False, "configured": False, "backup_codes_remaining": 0}
        return {
            "enabled": record.enabled,
            "configured": True,
            "backup_codes_remaining": record.unused_backup_codes,
            "verified_at": record.verified_at.isoformat() if record.verified_at else None,
        }

    async def count_enabled(self) -> int:
        records = await self.store.list_prefix(_KEY_PREFIX)
        return sum(1 for _, raw in records if raw.get("enabled"))
