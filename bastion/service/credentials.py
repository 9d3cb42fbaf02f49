from __future__ import annotations

import asyncio
import re
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from bastion.config import HashingPolicy, PasswordPolicy
from bastion.logging import get_logger
from bastion.service.errors import FailureKind, Outcome, ValidationError
from bastion.service.passwords import PasswordPolicyEvaluator, PasswordReport
from bastion.storage.common import KeyedStore
from bastion.storage.errors import ConstraintViolation
from bastion.storage.models import Role, User, utcnow

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_USER_KEY = "user:"
_EMAIL_KEY = "user_email:"


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class RegistrationProfile:
    email: str
    name: str
    role: str = Role.USER.value
    birth_date: Optional[str] = None


class CredentialStore:
    """User identities and password hashes.

    argon2id hashing and verification run on a bounded thread pool so a burst
    of logins cannot stall the event loop.
    """

    def __init__(
        self,
        store: KeyedStore,
        password_policy: PasswordPolicy,
        hashing_policy: HashingPolicy,
        *,
        roles: Iterable[str] = tuple(r.value for r in Role),
        evaluator: Optional[PasswordPolicyEvaluator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = password_policy
        self.roles = frozenset(roles)
        self.evaluator = evaluator or PasswordPolicyEvaluator.from_policy(password_policy)
        self._clock = clock or utcnow
        self._hasher = PasswordHasher(
            time_cost=hashing_policy.time_cost,
            memory_cost=hashing_policy.memory_cost,
            parallelism=hashing_policy.parallelism,
            type=Type.ID,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=hashing_policy.workers, thread_name_prefix="argon2"
        )
        self._dummy_hash: Optional[str] = None

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    def _check(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    async def hash_password(self, password: str) -> str:
        return await self._run(self._hasher.hash, password)

    async def check_password(self, stored_hash: str, password: str) -> bool:
        return await self._run(self._check, stored_hash, password)

    async def _dummy(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = await self.hash_password(uuid.uuid4().hex)
        return self._dummy_hash

    def _profile_violations(self, profile: RegistrationProfile) -> List[str]:
        violations: List[str] = []
        email = normalize_email(profile.email or "")
        if not _EMAIL_PATTERN.match(email) or len(email) > 254:
            violations.append("Valid email address is required")
        name = (profile.name or "").strip()
        if not 2 <= len(name) <= 100:
            violations.append("Name must be between 2 and 100 characters")
        if profile.role not in self.roles:
            violations.append("Invalid role specified")
        if profile.birth_date:
            try:
                date.fromisoformat(profile.birth_date)
            except ValueError:
                violations.append("Birth date must be an ISO date (YYYY-MM-DD)")
        return violations

    async def evaluate_password(
        self, password: str, user: Optional[User] = None, *, profile: Optional[RegistrationProfile] = None
    ) -> PasswordReport:
        """Run the full policy, including reuse against the user's history."""
        subject_name = user.name if user else (profile.name if profile else None)
        subject_email = user.email if user else (profile.email if profile else None)
        subject_birth = user.birth_date if user else (profile.birth_date if profile else None)
        report = self.evaluator.evaluate(
            password, name=subject_name, email=subject_email, birth_date=subject_birth
        )
        if user is not None and self.policy.history_size > 0:
            recent = [user.password_hash] + user.password_history[: self.policy.history_size - 1]
            for previous in recent:
                if previous and await self.check_password(previous, password):
                    report.errors.append(
                        f"Password cannot be one of your last {self.policy.history_size} passwords"
                    )
                    break
        return report

    async def register(self, profile: RegistrationProfile, raw_password: str) -> dict:
        violations = self._profile_violations(profile)
        report = await self.evaluate_password(raw_password, profile=profile)
        violations.extend(report.errors)
        if violations:
            logger.info("registration_rejected", violation_count=len(violations))
            raise ValidationError("registration rejected", violations)

        email = normalize_email(profile.email)
        now = self._clock()
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            name=profile.name.strip(),
            role=profile.role,
            password_hash=await self.hash_password(raw_password),
            password_changed_at=now,
            created_at=now,
            birth_date=profile.birth_date,
        )
        # The email index doubles as the uniqueness constraint
        await self.store.create(_EMAIL_KEY + email, {"user_id": user.id})
        try:
            await self.store.create(_USER_KEY + user.id, user.to_record())
        except ConstraintViolation:
            await self.store.delete(_EMAIL_KEY + email)
            raise
        logger.info("user_registered", user_id=user.id, role=user.role)
        return user.to_profile()

    async def get_user(self, user_id: str) -> Optional[User]:
        raw = await self.store.get(_USER_KEY + user_id)
        return User.from_record(raw) if raw else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        index = await self.store.get(_EMAIL_KEY + normalize_email(email))
        if not index:
            return None
        return await self.get_user(index["user_id"])

    async def verify(self, email: str, raw_password: str) -> Outcome[User]:
        user = await self.get_user_by_email(email)
        if user is None:
            # Same hashing cost as a real mismatch keeps timing uniform
            await self.check_password(await self._dummy(), raw_password)
            return Outcome.fail(FailureKind.AUTHENTICATION, "unknown account")

        matched = await self.check_password(user.password_hash, raw_password)
        if user.locked_until is not None and self._clock() < user.locked_until:
            return Outcome.fail(FailureKind.LOCKOUT, "account locked", user_id=user.id)
        if not user.is_active:
            return Outcome.fail(FailureKind.AUTHENTICATION, "account inactive", user_id=user.id)
        if not matched:
            return Outcome.fail(FailureKind.AUTHENTICATION, "password mismatch", user_id=user.id)

        if self._hasher.check_needs_rehash(user.password_hash):
            new_hash = await self.hash_password(raw_password)
            await self._mutate_user(user.id, lambda u: setattr(u, "password_hash", new_hash))
            logger.info("password_rehashed", user_id=user.id)
        return Outcome.success(user)

    async def update_password(self, user_id: str, new_password: str) -> None:
        user = await self.get_user(user_id)
        if user is None:
            raise ValidationError("unknown user", ["User does not exist"])
        report = await self.evaluate_password(new_password, user)
        if not report.valid:
            logger.info("password_change_rejected", user_id=user_id, violation_count=len(report.errors))
            raise ValidationError("password rejected", report.errors)

        new_hash = await self.hash_password(new_password)
        now = self._clock()
        keep = self.policy.history_size

        def apply(target: User) -> None:
            history = [target.password_hash] + target.password_history
            target.password_history = [h for h in history if h][:keep]
            target.password_hash = new_hash
            target.password_changed_at = now

        await self._mutate_user(user_id, apply)
        logger.info("password_changed", user_id=user_id)

    def password_expired(self, user: User) -> bool:
        if self.policy.max_age_days <= 0:
            return False
        return self._clock() - user.password_changed_at > timedelta(days=self.policy.max_age_days)

    async def _mutate_user(self, user_id: str, apply: Callable[[User], None]) -> Optional[User]:
        def mutate(current: Optional[dict]) -> Optional[dict]:
            if current is None:
                return None
            target = User.from_record(current)
            apply(target)
            return target.to_record()

        raw = await self.store.update(_USER_KEY + user_id, mutate)
        return User.from_record(raw) if raw else None

    async def deactivate(self, user_id: str) -> Optional[User]:
        user = await self._mutate_user(user_id, lambda u: setattr(u, "is_active", False))
        if user:
            logger.info("user_deactivated", user_id=user_id)
        return user

    async def set_role(self, user_id: str, role: str) -> Optional[User]:
        if role not in self.roles:
            raise ValidationError("invalid role", ["Invalid role specified"])
        user = await self._mutate_user(user_id, lambda u: setattr(u, "role", role))
        if user:
            logger.info("user_role_changed", user_id=user_id, role=role)
        return user

    async def record_login(
        self,
        user_id: str,
        *,
        success: bool,
        failed_attempts: int = 0,
        locked_until: Optional[datetime] = None,
    ) -> None:
        """Mirror the lockout outcome of a login attempt onto the user record."""
        now = self._clock()

        def apply(target: User) -> None:
            if success:
                target.failed_attempts = 0
                target.locked_until = None
                target.last_login_at = now
            else:
                target.failed_attempts = failed_attempts
                target.locked_until = locked_until

        await self._mutate_user(user_id, apply)

    async def update_session_ids(
        self, user_id: str, *, add: Iterable[str] = (), remove: Iterable[str] = ()
    ) -> None:
        added = list(add)
        removed = set(remove)

        def apply(target: User) -> None:
            kept = [sid for sid in target.session_ids if sid not in removed]
            target.session_ids = kept + [sid for sid in added if sid not in kept]

        await self._mutate_user(user_id, apply)

    async def count_users(self) -> int:
        return len(await self.store.list_prefix(_USER_KEY))
