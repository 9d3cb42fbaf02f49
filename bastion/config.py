from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bastion.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SPECIAL_CHARS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>?"


class StoreBackend(str, Enum):
    """Keyed store implementations available to the runtime."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def policy_field(model: type, prefix: str, **kwargs):
    """Nested policy whose leaf variables are read as ``<prefix><LEAF_ENV>``."""
    factory = kwargs.pop("default_factory", model)
    return Field(default_factory=factory, json_schema_extra={"env_prefix": prefix}, **kwargs)


def _collect_env(model_cls: type[BaseModel], prefix: str, values: dict) -> dict:
    merged: dict[str, Any] = {}
    for name, field in model_cls.model_fields.items():
        extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
        nested_prefix = extra.get("env_prefix")
        if nested_prefix is not None:
            nested = _collect_env(field.annotation, prefix + nested_prefix, values)
            if nested:
                default = field.get_default(call_default_factory=True)
                merged[name] = {**default.model_dump(), **nested}
            continue
        env_key = extra.get("env")
        if not env_key:
            continue
        env_name = prefix + env_key
        if env_name in values and values[env_name] is not None:
            merged[name] = values[env_name]
    return merged


class PasswordPolicy(BaseModel):
    """Composition, reuse and age rules applied on registration and change."""

    min_length: int = env_field(12, "MIN_LENGTH", ge=1)
    max_length: int = env_field(128, "MAX_LENGTH", ge=1)
    require_uppercase: bool = env_field(True, "REQUIRE_UPPERCASE")
    require_lowercase: bool = env_field(True, "REQUIRE_LOWERCASE")
    require_digit: bool = env_field(True, "REQUIRE_DIGIT")
    require_special: bool = env_field(True, "REQUIRE_SPECIAL")
    special_chars: str = env_field(DEFAULT_SPECIAL_CHARS, "SPECIAL_CHARS", min_length=1)
    min_unique_chars: int = env_field(8, "MIN_UNIQUE_CHARS", ge=0)
    history_size: int = env_field(12, "HISTORY_SIZE", ge=0)
    max_age_days: int = env_field(90, "MAX_AGE_DAYS", ge=0)
    prevent_personal_info: bool = env_field(True, "PREVENT_PERSONAL_INFO")
    common_passwords_file: Optional[str] = env_field(None, "COMMON_LIST")
    breached_hashes_file: Optional[str] = env_field(None, "BREACHED_LIST")

    @model_validator(mode="after")
    def _check_bounds(self) -> "PasswordPolicy":
        if self.min_length > self.max_length:
            raise ValueError("password min_length must not exceed max_length")
        if self.min_unique_chars > self.max_length:
            raise ValueError("password min_unique_chars must not exceed max_length")
        return self


class HashingPolicy(BaseModel):
    """argon2id cost parameters and the size of the hashing worker pool."""

    time_cost: int = env_field(3, "TIME_COST", ge=1)
    memory_cost: int = env_field(65536, "MEMORY_COST", ge=8)
    parallelism: int = env_field(4, "PARALLELISM", ge=1)
    workers: int = env_field(4, "WORKERS", ge=1)


class LockoutTier(BaseModel):
    max_attempts: int = env_field(5, "MAX_ATTEMPTS", ge=1)
    window_seconds: int = env_field(24 * 3600, "WINDOW_SECONDS", ge=1)
    base_lock_seconds: int = env_field(30 * 60, "LOCK_SECONDS", ge=1)
    multiplier: float = env_field(2.0, "MULTIPLIER", ge=1.0)
    max_lock_seconds: int = env_field(24 * 3600, "MAX_LOCK_SECONDS", ge=1)

    @model_validator(mode="after")
    def _check_cap(self) -> "LockoutTier":
        if self.base_lock_seconds > self.max_lock_seconds:
            raise ValueError("lockout base duration must not exceed the maximum")
        return self


def _address_tier() -> LockoutTier:
    return LockoutTier(
        max_attempts=50,
        window_seconds=3600,
        base_lock_seconds=3600,
        multiplier=1.0,
        max_lock_seconds=3600,
    )


class LockoutPolicy(BaseModel):
    """Thresholds per identifier class.

    Accounts (and ``mfa:`` identifiers) share the account tier; origin
    addresses get a higher threshold with a shorter window.
    """

    account: LockoutTier = policy_field(LockoutTier, "ACCOUNT_")
    address: LockoutTier = policy_field(LockoutTier, "ADDRESS_", default_factory=_address_tier)
    rapid_reoffense_seconds: int = env_field(3600, "RAPID_REOFFENSE_SECONDS", ge=0)
    captcha_threshold: int = env_field(3, "CAPTCHA_THRESHOLD", ge=1)


class SessionPolicy(BaseModel):
    max_concurrent: int = env_field(3, "MAX_CONCURRENT", ge=1)
    idle_timeout_seconds: int = env_field(30 * 60, "IDLE_TIMEOUT_SECONDS", ge=1)
    absolute_timeout_seconds: int = env_field(8 * 3600, "ABSOLUTE_TIMEOUT_SECONDS", ge=1)
    rotation_interval_seconds: int = env_field(4 * 3600, "ROTATION_INTERVAL_SECONDS", ge=1)
    rotation_grace_seconds: int = env_field(30, "ROTATION_GRACE_SECONDS", ge=0)
    refresh_threshold_seconds: int = env_field(15 * 60, "REFRESH_THRESHOLD_SECONDS", ge=1)
    refresh_tokens_kept: int = env_field(3, "REFRESH_TOKENS_KEPT", ge=1)
    cookie_name: str = env_field("session_id", "COOKIE_NAME", min_length=1)
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    @model_validator(mode="after")
    def _check_timeouts(self) -> "SessionPolicy":
        if self.idle_timeout_seconds > self.absolute_timeout_seconds:
            raise ValueError("session idle timeout must not exceed the absolute timeout")
        return self


class MfaPolicy(BaseModel):
    issuer: str = env_field("Robotics Control", "ISSUER", min_length=1)
    totp_window: int = env_field(2, "TOTP_WINDOW", ge=0, le=10)
    totp_interval: int = env_field(30, "TOTP_INTERVAL", ge=1)
    totp_digits: int = env_field(6, "TOTP_DIGITS", ge=6, le=8)
    totp_algorithm: str = env_field("SHA1", "TOTP_ALGORITHM")
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT", ge=1)
    backup_regen_threshold: int = env_field(2, "BACKUP_REGEN_THRESHOLD", ge=0)
    encryption_key: Optional[str] = env_field(None, "ENCRYPTION_KEY")

    @field_validator("totp_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in {"SHA1", "SHA256", "SHA512"}:
            raise ValueError("totp_algorithm must be one of SHA1, SHA256, SHA512")
        return normalized

    @model_validator(mode="after")
    def _check_regen(self) -> "MfaPolicy":
        if self.backup_regen_threshold >= self.backup_code_count:
            raise ValueError("backup_regen_threshold must be below backup_code_count")
        return self


class TokenPolicy(BaseModel):
    lifetime_seconds: int = env_field(24 * 3600, "LIFETIME_SECONDS", ge=1)
    issuer: str = env_field("robotics-control-ltd", "ISSUER", min_length=1)
    audience: str = env_field("robotics-control-api", "AUDIENCE", min_length=1)
    leeway_seconds: int = env_field(120, "LEEWAY_SECONDS", ge=0)


class AnomalyPolicy(BaseModel):
    threshold: int = env_field(30, "THRESHOLD", ge=1)
    address_change_points: int = env_field(30, "ADDRESS_CHANGE_POINTS", ge=0)
    user_agent_change_points: int = env_field(20, "USER_AGENT_CHANGE_POINTS", ge=0)
    geo_distance_km: float = env_field(1000.0, "GEO_DISTANCE_KM", gt=0)
    geo_distance_points: int = env_field(40, "GEO_DISTANCE_POINTS", ge=0)
    rate_window_seconds: int = env_field(300, "RATE_WINDOW_SECONDS", ge=1)
    rate_limit: int = env_field(50, "RATE_LIMIT", ge=1)
    rate_points: int = env_field(25, "RATE_POINTS", ge=0)
    device_history_size: int = env_field(10, "DEVICE_HISTORY_SIZE", ge=1)


class ProtectedRoute(BaseModel):
    pattern: str
    roles: List[str]


def _default_role_permissions() -> Dict[str, List[str]]:
    return {
        "GUEST": ["read:public", "submit:contact", "view:products"],
        "USER": ["read:public", "submit:contact", "view:products", "read:user", "create:order"],
        "ADMIN": ["read:*", "write:*", "delete:non-critical", "manage:users", "view:security"],
        "SUPER_ADMIN": ["*"],
    }


def _default_protected_routes() -> List[ProtectedRoute]:
    admins = ["ADMIN", "SUPER_ADMIN"]
    return [
        ProtectedRoute(pattern="/api/security/*", roles=admins),
        ProtectedRoute(pattern="/api/admin/*", roles=admins),
        ProtectedRoute(pattern="/api/reports/*", roles=admins),
        ProtectedRoute(pattern="/api/users/*", roles=admins),
        ProtectedRoute(pattern="/api/config/*", roles=["SUPER_ADMIN"]),
        ProtectedRoute(pattern="/api/vulnerability/*", roles=admins),
    ]


def _default_permission_map() -> Dict[str, str]:
    return {
        "GET /api/security": "view:security",
        "POST /api/security": "manage:security",
        "GET /api/admin": "view:admin",
        "POST /api/admin": "manage:admin",
        "GET /api/reports": "view:reports",
        "DELETE /api/*": "delete:resource",
        "GET /api/public/*": "read:public",
        "POST /api/contact": "submit:contact",
        "GET /api/products*": "view:products",
        "GET /v1/admin/security/*": "view:security",
    }


class AccessPolicy(BaseModel):
    """Role grants and route rules for the authorization engine.

    ``default_allow`` keeps the legacy fail-open behavior available for
    deployments that rely on it; new deployments deny unmatched routes.
    """

    role_permissions: Dict[str, List[str]] = Field(default_factory=_default_role_permissions)
    protected_routes: List[ProtectedRoute] = Field(default_factory=_default_protected_routes)
    permission_map: Dict[str, str] = Field(default_factory=_default_permission_map)
    public_routes: List[str] = Field(
        default_factory=lambda: ["/", "/healthz", "/v1/auth/login", "/v1/auth/register"]
    )
    authenticated_routes: List[str] = Field(
        default_factory=lambda: ["/v1/me", "/v1/auth/*"]
    )
    default_allow: bool = env_field(False, "DEFAULT_ALLOW")
    guest_role: str = env_field("GUEST", "GUEST_ROLE")

    @model_validator(mode="after")
    def _check_roles(self) -> "AccessPolicy":
        known = set(self.role_permissions)
        if self.guest_role not in known:
            raise ValueError(f"guest role {self.guest_role!r} has no permission set")
        for route in self.protected_routes:
            unknown = set(route.roles) - known
            if unknown:
                raise ValueError(
                    f"protected route {route.pattern!r} names unknown roles: {sorted(unknown)}"
                )
        for key in self.permission_map:
            method, sep, path = key.partition(" ")
            if not sep or not method.isupper() or not path.startswith("/"):
                raise ValueError(f"permission map key {key!r} must look like 'METHOD /path'")
        return self


class Settings(BaseModel):
    """Runtime settings, validated once when the application starts."""

    state_dir: str = env_field("/var/lib/bastion", "STATE_DIR")
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_namespace: str = env_field("bastion", "REDIS_NAMESPACE")
    persist_memory_store: bool = env_field(False, "PERSIST_MEMORY_STORE")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    maintenance_interval_seconds: int = env_field(300, "MAINTENANCE_INTERVAL_SECONDS", ge=1)
    maintenance_enabled: bool = env_field(True, "MAINTENANCE_ENABLED")
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET")
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")
    cors_allow_origins: List[str] = Field(default_factory=list)

    password: PasswordPolicy = policy_field(PasswordPolicy, "PASSWORD_")
    hashing: HashingPolicy = policy_field(HashingPolicy, "ARGON2_")
    lockout: LockoutPolicy = policy_field(LockoutPolicy, "LOCKOUT_")
    session: SessionPolicy = policy_field(SessionPolicy, "SESSION_")
    mfa: MfaPolicy = policy_field(MfaPolicy, "MFA_")
    token: TokenPolicy = policy_field(TokenPolicy, "TOKEN_")
    anomaly: AnomalyPolicy = policy_field(AnomalyPolicy, "ANOMALY_")
    access: AccessPolicy = policy_field(AccessPolicy, "AUTHZ_")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        values: dict[str, Any] = dict(dotenv_values(env_file))
        values.update(os.environ)
        return cls(**_collect_env(cls, "", values))

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        self.jwt_secret = _load_or_create_secret(Path(self.state_dir))
        return self


def _load_or_create_secret(state_dir: Path) -> str:
    # Persist a generated secret so issued tokens survive restarts
    secret_path = state_dir / ".jwt_secret"
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, 0o700)
    except PermissionError:
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= 32:
                return persisted

    generated = secrets.token_urlsafe(64)
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
    return generated
