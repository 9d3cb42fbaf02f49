"""Password composition policy and strength scoring.

Checks here are pure and synchronous; anything that needs a stored hash
(reuse against history) lives in the credential store.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional

from bastion.config import PasswordPolicy
from bastion.logging import get_logger

logger = get_logger(__name__)

COMMON_PASSWORDS: FrozenSet[str] = frozenset(
    {
        "password", "123456", "qwerty", "abc123", "admin", "letmein", "welcome",
        "monkey", "dragon", "master", "password123", "admin123", "user123",
        "test123", "12345678", "1234567890", "password1", "password12",
    }
)


def sha1_upper(password: str) -> str:
    return hashlib.sha1(password.encode("utf-8")).hexdigest().upper()


BREACHED_SHA1: FrozenSet[str] = frozenset(
    sha1_upper(sample)
    for sample in (
        "PASSWORD", "123456", "QWERTY", "ABC123", "ADMIN",
        "LETMEIN", "WELCOME", "MONKEY", "DRAGON", "MASTER",
    )
)

_REPEATED = re.compile(r"(.)\1{2,}")
_SEQUENTIAL = re.compile(r"123|abc|qwe|asd|zxc", re.IGNORECASE)


@dataclass
class PasswordStrength:
    score: int
    feedback: str
    percentage: int


@dataclass
class PasswordReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    strength: Optional[PasswordStrength] = None

    @property
    def valid(self) -> bool:
        return not self.errors


def _load_list(path: str) -> List[str]:
    text = Path(path).read_text()
    stripped = text.lstrip()
    if stripped.startswith("["):
        return [str(item) for item in json.loads(stripped)]
    return [line.strip() for line in text.splitlines() if line.strip()]


class PasswordPolicyEvaluator:
    def __init__(
        self,
        policy: PasswordPolicy,
        *,
        common_passwords: Optional[Iterable[str]] = None,
        breached_hashes: Optional[Iterable[str]] = None,
    ) -> None:
        self.policy = policy
        self.common_passwords = frozenset(
            p.lower() for p in (common_passwords if common_passwords is not None else COMMON_PASSWORDS)
        )
        self.breached_hashes = frozenset(
            h.upper() for h in (breached_hashes if breached_hashes is not None else BREACHED_SHA1)
        )

    @classmethod
    def from_policy(cls, policy: PasswordPolicy) -> "PasswordPolicyEvaluator":
        """Build an evaluator, loading deny lists from the configured files."""
        common = _load_list(policy.common_passwords_file) if policy.common_passwords_file else None
        breached = _load_list(policy.breached_hashes_file) if policy.breached_hashes_file else None
        evaluator = cls(policy, common_passwords=common, breached_hashes=breached)
        logger.info(
            "password_policy_loaded",
            common_passwords=len(evaluator.common_passwords),
            breached_hashes=len(evaluator.breached_hashes),
        )
        return evaluator

    def is_common(self, password: str) -> bool:
        return password.lower() in self.common_passwords

    def is_breached(self, password: str) -> bool:
        return sha1_upper(password) in self.breached_hashes

    def personal_info(
        self,
        password: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        birth_date: Optional[str] = None,
    ) -> List[str]:
        lowered = password.lower()
        found: List[str] = []
        parts = [p for p in (name or "").lower().split() if len(p) >= 3]
        if parts and parts[0] in lowered:
            found.append("first name")
        if len(parts) > 1 and parts[-1] in lowered:
            found.append("last name")
        if email:
            local = email.split("@", 1)[0].lower()
            if len(local) >= 3 and local in lowered:
                found.append("email address")
        if birth_date:
            try:
                year = str(date.fromisoformat(birth_date).year)
            except ValueError:
                year = None
            if year and year in lowered:
                found.append("birth year")
        return found

    def strength(self, password: str) -> PasswordStrength:
        score = 0
        score += sum(1 for threshold in (12, 16, 20) if len(password) >= threshold)
        if re.search(r"[a-z]", password):
            score += 1
        if re.search(r"[A-Z]", password):
            score += 1
        if re.search(r"\d", password):
            score += 1
        if any(ch in self.policy.special_chars for ch in password):
            score += 1
        if password and len(set(password)) >= len(password) * 0.8:
            score += 1
        if _REPEATED.search(password):
            score -= 1
        if _SEQUENTIAL.search(password):
            score -= 1
        score = max(0, score)

        if score < 2:
            feedback = "Very weak password"
        elif score < 4:
            feedback = "Weak password"
        elif score < 6:
            feedback = "Fair password"
        elif score < 8:
            feedback = "Good password"
        else:
            feedback = "Strong password"
        return PasswordStrength(score=score, feedback=feedback, percentage=round(score * 10))

    def evaluate(
        self,
        password: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        birth_date: Optional[str] = None,
    ) -> PasswordReport:
        """Check every composition rule and collect all violations."""
        policy = self.policy
        report = PasswordReport()
        errors = report.errors

        if len(password) < policy.min_length:
            errors.append(f"Password must be at least {policy.min_length} characters long")
        if len(password) > policy.max_length:
            errors.append(f"Password must not exceed {policy.max_length} characters")
        if policy.require_uppercase and not re.search(r"[A-Z]", password):
            errors.append("Password must contain at least one uppercase letter")
        if policy.require_lowercase and not re.search(r"[a-z]", password):
            errors.append("Password must contain at least one lowercase letter")
        if policy.require_digit and not re.search(r"\d", password):
            errors.append("Password must contain at least one number")
        if policy.require_special and not any(ch in policy.special_chars for ch in password):
            errors.append("Password must contain at least one special character")
        if len(set(password)) < policy.min_unique_chars:
            errors.append(
                f"Password must contain at least {policy.min_unique_chars} unique characters"
            )
        if self.is_common(password):
            errors.append("Password is too common, please choose a more unique password")
        if self.is_breached(password):
            errors.append(
                "Password has been found in data breaches, please choose a different password"
            )
        if policy.prevent_personal_info:
            found = self.personal_info(password, name=name, email=email, birth_date=birth_date)
            if found:
                errors.append(f"Password contains personal information: {', '.join(found)}")

        report.strength = self.strength(password)
        if report.strength.score < 3:
            report.warnings.append("Password is weak, consider making it stronger")
        return report
