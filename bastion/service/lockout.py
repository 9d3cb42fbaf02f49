from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from bastion.config import LockoutPolicy, LockoutTier
from bastion.logging import get_logger
from bastion.storage.common import KeyedStore
from bastion.storage.models import LockoutRecord, RequestContext, utcnow

logger = get_logger(__name__)

ACCOUNT_PREFIX = "account:"
ADDRESS_PREFIX = "ip:"
MFA_PREFIX = "mfa:"
_KEY_PREFIX = "lockout:"


def account_identifier(email: str) -> str:
    return ACCOUNT_PREFIX + email.strip().lower()


def address_identifier(address: str) -> str:
    return ADDRESS_PREFIX + address


def mfa_identifier(user_id: str) -> str:
    return MFA_PREFIX + user_id


@dataclass
class FailureResult:
    identifier: str
    failures: int
    locked: bool
    lock_until: Optional[datetime] = None
    newly_locked: bool = False


@dataclass
class LockoutStatus:
    identifier: str
    locked: bool
    failures: int
    remaining_attempts: int
    captcha_required: bool
    lock_until: Optional[datetime] = None


class LockoutGuard:
    """Windowed failure tracking with progressive locks.

    Every change to a record goes through the store's atomic ``update`` so
    concurrent failures for one identifier are never lost.
    """

    def __init__(
        self,
        store: KeyedStore,
        policy: LockoutPolicy,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self._clock = clock or utcnow

    def _tier(self, identifier: str) -> LockoutTier:
        if identifier.startswith(ADDRESS_PREFIX):
            return self.policy.address
        return self.policy.account

    def _release_if_expired(self, record: LockoutRecord, now: datetime) -> bool:
        if record.lock_until is not None and now >= record.lock_until:
            record.released_at = record.lock_until
            record.lock_until = None
            return True
        return False

    def _prune(self, record: LockoutRecord, tier: LockoutTier, now: datetime) -> None:
        window = timedelta(seconds=tier.window_seconds)
        record.failures = [ts for ts in record.failures if now - ts < window]

    def _disposable(self, record: LockoutRecord, now: datetime) -> bool:
        if record.lock_until is not None or record.failures:
            return False
        if record.released_at is None:
            return True
        # Keep the release time while a repeat offense would still escalate
        return (now - record.released_at).total_seconds() > self.policy.rapid_reoffense_seconds

    async def record_failure(
        self, identifier: str, context: Optional[RequestContext] = None
    ) -> FailureResult:
        now = self._clock()
        tier = self._tier(identifier)
        result: Dict[str, FailureResult] = {}

        def mutate(current: Optional[dict]) -> dict:
            record = (
                LockoutRecord.from_record(current)
                if current
                else LockoutRecord(identifier=identifier)
            )
            self._release_if_expired(record, now)
            if record.lock_until is not None:
                result["value"] = FailureResult(
                    identifier, len(record.failures), True, record.lock_until
                )
                return record.to_record()

            self._prune(record, tier, now)
            record.failures.append(now)
            count = len(record.failures)
            if count < tier.max_attempts:
                result["value"] = FailureResult(identifier, count, False)
                return record.to_record()

            rapid = (
                record.released_at is not None
                and (now - record.released_at).total_seconds()
                <= self.policy.rapid_reoffense_seconds
            )
            record.consecutive_lockouts = record.consecutive_lockouts + 1 if rapid else 0
            seconds = min(
                tier.base_lock_seconds * tier.multiplier ** record.consecutive_lockouts,
                tier.max_lock_seconds,
            )
            record.lock_until = now + timedelta(seconds=seconds)
            record.failures = []
            result["value"] = FailureResult(
                identifier, count, True, record.lock_until, newly_locked=True
            )
            return record.to_record()

        await self.store.update(_KEY_PREFIX + identifier, mutate)
        outcome = result["value"]
        if outcome.newly_locked:
            logger.warning(
                "lockout_applied",
                identifier=identifier,
                lock_until=outcome.lock_until.isoformat(),
                failures=outcome.failures,
                origin_address=context.origin_address if context else None,
            )
        else:
            logger.info(
                "authentication_failure_recorded",
                identifier=identifier,
                failures=outcome.failures,
                locked=outcome.locked,
            )
        return outcome

    async def is_locked(self, identifier: str) -> bool:
        """True while ``now < lock_until``; an expired lock is cleared here."""
        now = self._clock()
        record_raw = await self.store.get(_KEY_PREFIX + identifier)
        if not record_raw:
            return False
        record = LockoutRecord.from_record(record_raw)
        if record.lock_until is None:
            return False
        if now < record.lock_until:
            return True

        def release(current: Optional[dict]) -> Optional[dict]:
            if not current:
                return None
            latest = LockoutRecord.from_record(current)
            if self._release_if_expired(latest, now):
                logger.info("lockout_released", identifier=identifier)
            return latest.to_record()

        await self.store.update(_KEY_PREFIX + identifier, release)
        return False

    async def record_success(self, identifier: str) -> None:
        """Reset the failure counter after a successful authentication."""
        now = self._clock()

        def reset(current: Optional[dict]) -> Optional[dict]:
            if not current:
                return None
            record = LockoutRecord.from_record(current)
            self._release_if_expired(record, now)
            record.failures = []
            if self._disposable(record, now):
                return None
            return record.to_record()

        await self.store.update(_KEY_PREFIX + identifier, reset)

    async def status(self, identifier: str) -> LockoutStatus:
        now = self._clock()
        tier = self._tier(identifier)
        raw = await self.store.get(_KEY_PREFIX + identifier)
        record = LockoutRecord.from_record(raw) if raw else LockoutRecord(identifier=identifier)
        self._release_if_expired(record, now)
        self._prune(record, tier, now)
        failures = len(record.failures)
        return LockoutStatus(
            identifier=identifier,
            locked=record.lock_until is not None,
            failures=failures,
            remaining_attempts=max(0, tier.max_attempts - failures),
            captcha_required=failures >= self.policy.captcha_threshold,
            lock_until=record.lock_until,
        )

    async def prune(self) -> int:
        """Drop aged-out failures and delete records with nothing left to track."""
        now = self._clock()
        removed = 0
        for key, _ in await self.store.list_prefix(_KEY_PREFIX):
            identifier = key[len(_KEY_PREFIX):]
            tier = self._tier(identifier)
            deleted = False

            def compact(current: Optional[dict]) -> Optional[dict]:
                nonlocal deleted
                deleted = False
                if not current:
                    return None
                record = LockoutRecord.from_record(current)
                self._release_if_expired(record, now)
                self._prune(record, tier, now)
                if self._disposable(record, now):
                    deleted = True
                    return None
                return record.to_record()

            await self.store.update(key, compact)
            if deleted:
                removed += 1
        if removed:
            logger.debug("lockout_records_pruned", removed=removed)
        return removed

    async def locked_counts(self) -> Dict[str, int]:
        """Currently locked identifiers grouped by class, for metrics."""
        now = self._clock()
        counts = {"account": 0, "address": 0, "mfa": 0}
        for key, raw in await self.store.list_prefix(_KEY_PREFIX):
            record = LockoutRecord.from_record(raw)
            if record.lock_until is None or now >= record.lock_until:
                continue
            identifier = key[len(_KEY_PREFIX):]
            if identifier.startswith(ADDRESS_PREFIX):
                counts["address"] += 1
            elif identifier.startswith(MFA_PREFIX):
                counts["mfa"] += 1
            else:
                counts["account"] += 1
        return counts
