from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP status_code and a stable error_code:
    - VALIDATION_ERROR (400)
    - UNAUTHORIZED (401)
    - FORBIDDEN (403)
    - LOCKED (429)
    - SERVICE_UNAVAILABLE (503)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed or policy-violating input (400).

    ``violations`` lists every rule that failed, not only the first.
    """

    status_code = 400
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, violations: Optional[List[str]] = None, **kwargs) -> None:
        self.violations = list(violations or [])
        detail = kwargs.pop("detail", None) or {}
        if self.violations:
            detail = {**detail, "violations": self.violations}
        super().__init__(message, detail=detail, **kwargs)


class AuthenticationError(ServiceError):
    """Bad credential, or expired/invalid token or session (401)."""

    status_code = 401
    error_code = "UNAUTHORIZED"


class LockoutError(AuthenticationError):
    """Identifier is currently locked (429)."""

    status_code = 429
    error_code = "LOCKED"


class MfaError(AuthenticationError):
    """Invalid one-time code or backup code (401)."""


class IntegrityError(AuthenticationError):
    """Signature or revocation-set check failed (401)."""


class AuthorizationError(ServiceError):
    """Authenticated but not allowed (403)."""

    status_code = 403
    error_code = "FORBIDDEN"


class ServiceUnavailableError(ServiceError):
    """Backing store unreachable for this request (503)."""

    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


class FailureKind(str, Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    LOCKOUT = "lockout"
    MFA = "mfa"
    MFA_REQUIRED = "mfa_required"
    AUTHORIZATION = "authorization"
    INTEGRITY = "integrity"


_ERROR_FOR_KIND: Dict[FailureKind, type[ServiceError]] = {
    FailureKind.VALIDATION: ValidationError,
    FailureKind.AUTHENTICATION: AuthenticationError,
    FailureKind.LOCKOUT: LockoutError,
    FailureKind.MFA: MfaError,
    FailureKind.MFA_REQUIRED: MfaError,
    FailureKind.AUTHORIZATION: AuthorizationError,
    FailureKind.INTEGRITY: IntegrityError,
}

_CODE_FOR_KIND: Dict[FailureKind, str] = {FailureKind.MFA_REQUIRED: "MFA_REQUIRED"}


@dataclass
class Outcome(Generic[T]):
    """Result of one verification step.

    Expected failures (wrong password, expired session, bad code) travel as
    values; ``unwrap`` converts them to the matching ``ServiceError`` at a
    boundary that prefers exceptions.
    """

    value: Optional[T] = None
    failure: Optional[FailureKind] = None
    reason: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T, **detail: Any) -> "Outcome[T]":
        return cls(value=value, detail=detail)

    @classmethod
    def fail(cls, kind: FailureKind, reason: str, **detail: Any) -> "Outcome[T]":
        return cls(failure=kind, reason=reason, detail=detail)

    def unwrap(self) -> T:
        if self.failure is None:
            return self.value  # type: ignore[return-value]
        error_cls = _ERROR_FOR_KIND[self.failure]
        raise error_cls(
            self.reason or self.failure.value,
            detail=self.detail or None,
            error_code=_CODE_FOR_KIND.get(self.failure),
        )


__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "FailureKind",
    "IntegrityError",
    "LockoutError",
    "MfaError",
    "Outcome",
    "ServiceError",
    "ServiceUnavailableError",
    "ValidationError",
]
