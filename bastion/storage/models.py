from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    GUEST = "GUEST"
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _load_dt(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class GeoPoint:
    latitude: float
    longitude: float

    def to_record(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_record(cls, data: Optional[dict]) -> Optional["GeoPoint"]:
        if not data:
            return None
        return cls(latitude=float(data["latitude"]), longitude=float(data["longitude"]))


@dataclass
class RequestContext:
    """Client signals observed on one request."""

    origin_address: Optional[str] = None
    user_agent: Optional[str] = None
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None
    platform: Optional[str] = None
    timezone: Optional[str] = None
    screen: Optional[str] = None
    geolocation: Optional[GeoPoint] = None


@dataclass
class User:
    id: str
    email: str
    name: str
    role: str = Role.USER.value
    password_hash: str = ""
    password_changed_at: datetime = field(default_factory=utcnow)
    password_history: List[str] = field(default_factory=list)
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    session_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    birth_date: Optional[str] = None

    def to_profile(self) -> dict:
        """Redacted view safe to return to callers."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": _dump_dt(self.created_at),
            "last_login_at": _dump_dt(self.last_login_at),
        }

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "password_hash": self.password_hash,
            "password_changed_at": _dump_dt(self.password_changed_at),
            "password_history": list(self.password_history),
            "is_active": self.is_active,
            "failed_attempts": self.failed_attempts,
            "locked_until": _dump_dt(self.locked_until),
            "session_ids": list(self.session_ids),
            "created_at": _dump_dt(self.created_at),
            "last_login_at": _dump_dt(self.last_login_at),
            "birth_date": self.birth_date,
        }

    @classmethod
    def from_record(cls, data: dict) -> "User":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            role=data.get("role", Role.USER.value),
            password_hash=data.get("password_hash", ""),
            password_changed_at=_load_dt(data.get("password_changed_at")) or utcnow(),
            password_history=list(data.get("password_history", [])),
            is_active=bool(data.get("is_active", True)),
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=_load_dt(data.get("locked_until")),
            session_ids=list(data.get("session_ids", [])),
            created_at=_load_dt(data.get("created_at")) or utcnow(),
            last_login_at=_load_dt(data.get("last_login_at")),
            birth_date=data.get("birth_date"),
        )


@dataclass
class RefreshToken:
    token_hash: str
    issued_at: datetime
    expires_at: datetime

    def to_record(self) -> dict:
        return {
            "token_hash": self.token_hash,
            "issued_at": _dump_dt(self.issued_at),
            "expires_at": _dump_dt(self.expires_at),
        }

    @classmethod
    def from_record(cls, data: dict) -> "RefreshToken":
        return cls(
            token_hash=data["token_hash"],
            issued_at=_load_dt(data["issued_at"]),
            expires_at=_load_dt(data["expires_at"]),
        )


@dataclass
class Session:
    id: str
    user_id: str
    role: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    idle_expires_at: datetime
    fingerprint: str
    handle: str = ""
    origin_address: Optional[str] = None
    user_agent: Optional[str] = None
    geolocation: Optional[GeoPoint] = None
    anomaly_score: int = 0
    anomaly_reasons: List[str] = field(default_factory=list)
    rotation_count: int = 0
    last_rotated_at: Optional[datetime] = None
    refresh_tokens: List[RefreshToken] = field(default_factory=list)
    last_refresh_at: Optional[datetime] = None
    recent_requests: List[float] = field(default_factory=list)
    requires_reauth: bool = False
    state: SessionState = SessionState.CREATED
    ended_reason: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.state == SessionState.ACTIVE

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role": self.role,
            "created_at": _dump_dt(self.created_at),
            "last_activity_at": _dump_dt(self.last_activity_at),
            "expires_at": _dump_dt(self.expires_at),
            "idle_expires_at": _dump_dt(self.idle_expires_at),
            "fingerprint": self.fingerprint,
            "handle": self.handle,
            "origin_address": self.origin_address,
            "user_agent": self.user_agent,
            "geolocation": self.geolocation.to_record() if self.geolocation else None,
            "anomaly_score": self.anomaly_score,
            "anomaly_reasons": list(self.anomaly_reasons),
            "rotation_count": self.rotation_count,
            "last_rotated_at": _dump_dt(self.last_rotated_at),
            "refresh_tokens": [t.to_record() for t in self.refresh_tokens],
            "last_refresh_at": _dump_dt(self.last_refresh_at),
            "recent_requests": list(self.recent_requests),
            "requires_reauth": self.requires_reauth,
            "state": self.state.value,
            "ended_reason": self.ended_reason,
        }

    @classmethod
    def from_record(cls, data: dict) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            role=data.get("role", Role.USER.value),
            created_at=_load_dt(data["created_at"]),
            last_activity_at=_load_dt(data["last_activity_at"]),
            expires_at=_load_dt(data["expires_at"]),
            idle_expires_at=_load_dt(data["idle_expires_at"]),
            fingerprint=data.get("fingerprint", ""),
            handle=data.get("handle", ""),
            origin_address=data.get("origin_address"),
            user_agent=data.get("user_agent"),
            geolocation=GeoPoint.from_record(data.get("geolocation")),
            anomaly_score=int(data.get("anomaly_score", 0)),
            anomaly_reasons=list(data.get("anomaly_reasons", [])),
            rotation_count=int(data.get("rotation_count", 0)),
            last_rotated_at=_load_dt(data.get("last_rotated_at")),
            refresh_tokens=[RefreshToken.from_record(t) for t in data.get("refresh_tokens", [])],
            last_refresh_at=_load_dt(data.get("last_refresh_at")),
            recent_requests=[float(ts) for ts in data.get("recent_requests", [])],
            requires_reauth=bool(data.get("requires_reauth", False)),
            state=SessionState(data.get("state", SessionState.ACTIVE.value)),
            ended_reason=data.get("ended_reason"),
        )


@dataclass
class BackupCode:
    code_hash: str
    created_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None

    def to_record(self) -> dict:
        return {
            "code_hash": self.code_hash,
            "created_at": _dump_dt(self.created_at),
            "used": self.used,
            "used_at": _dump_dt(self.used_at),
        }

    @classmethod
    def from_record(cls, data: dict) -> "BackupCode":
        return cls(
            code_hash=data["code_hash"],
            created_at=_load_dt(data["created_at"]),
            used=bool(data.get("used", False)),
            used_at=_load_dt(data.get("used_at")),
        )


@dataclass
class MfaSecret:
    user_id: str
    secret: str  # Fernet token wrapping the base32 shared secret
    enabled: bool = False
    backup_codes: List[BackupCode] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    last_totp_step: Optional[int] = None

    @property
    def unused_backup_codes(self) -> int:
        return sum(1 for code in self.backup_codes if not code.used)

    def to_record(self) -> dict:
        return {
            "user_id": self.user_id,
            "secret": self.secret,
            "enabled": self.enabled,
            "backup_codes": [c.to_record() for c in self.backup_codes],
            "created_at": _dump_dt(self.created_at),
            "verified_at": _dump_dt(self.verified_at),
            "last_totp_step": self.last_totp_step,
        }

    @classmethod
    def from_record(cls, data: dict) -> "MfaSecret":
        return cls(
            user_id=data["user_id"],
            secret=data["secret"],
            enabled=bool(data.get("enabled", False)),
            backup_codes=[BackupCode.from_record(c) for c in data.get("backup_codes", [])],
            created_at=_load_dt(data.get("created_at")) or utcnow(),
            verified_at=_load_dt(data.get("verified_at")),
            last_totp_step=data.get("last_totp_step"),
        )


@dataclass
class LockoutRecord:
    identifier: str
    failures: List[datetime] = field(default_factory=list)
    lock_until: Optional[datetime] = None
    consecutive_lockouts: int = 0
    released_at: Optional[datetime] = None

    def to_record(self) -> dict:
        return {
            "identifier": self.identifier,
            "failures": [_dump_dt(ts) for ts in self.failures],
            "lock_until": _dump_dt(self.lock_until),
            "consecutive_lockouts": self.consecutive_lockouts,
            "released_at": _dump_dt(self.released_at),
        }

    @classmethod
    def from_record(cls, data: dict) -> "LockoutRecord":
        return cls(
            identifier=data["identifier"],
            failures=[_load_dt(ts) for ts in data.get("failures", [])],
            lock_until=_load_dt(data.get("lock_until")),
            consecutive_lockouts=int(data.get("consecutive_lockouts", 0)),
            released_at=_load_dt(data.get("released_at")),
        )


@dataclass
class DeviceRecord:
    fingerprint: str
    first_seen: datetime
    last_seen: datetime
    use_count: int = 1
    trusted: bool = False

    def to_record(self) -> dict:
        return {
            "fingerprint": self.fingerprint,
            "handle": self.handle,
            "first_seen": _dump_dt(self.first_seen),
            "last_seen": _dump_dt(self.last_seen),
            "use_count": self.use_count,
            "trusted": self.trusted,
        }

    @classmethod
    def from_record(cls, data: dict) -> "DeviceRecord":
        return cls(
            fingerprint=data["fingerprint"],
            first_seen=_load_dt(data["first_seen"]),
            last_seen=_load_dt(data["last_seen"]),
            use_count=int(data.get("use_count", 1)),
            trusted=bool(data.get("trusted", False)),
        )


@dataclass
class Principal:
    id: Optional[str]
    role: str
    permissions: List[str] = field(default_factory=list)
    authenticated: bool = False
    session_id: Optional[str] = None
    auth_method: Optional[str] = None
    requires_reauth: bool = False
    anomaly_score: int = 0
    anomaly_reasons: List[str] = field(default_factory=list)
    session_rotated: bool = False
    refresh_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "permissions": list(self.permissions),
            "authenticated": self.authenticated,
            "session_id": self.session_id,
            "auth_method": self.auth_method,
            "requires_reauth": self.requires_reauth,
            "anomaly_score": self.anomaly_score,
            "anomaly_reasons": list(self.anomaly_reasons),
        }
