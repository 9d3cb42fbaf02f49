from __future__ import annotations

from datetime import date
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from bastion.storage.models import utcnow

_VALID_ERROR_CODES = frozenset(
    {
        "VALIDATION_ERROR",
        "UNAUTHORIZED",
        "FORBIDDEN",
        "NOT_FOUND",
        "CONFLICT",
        "LOCKED",
        "MFA_REQUIRED",
        "SERVICE_UNAVAILABLE",
        "SERVER_ERROR",
    }
)


class ErrorBody(BaseModel):
    """Error payload with a stable upper-case code."""

    code: str
    message: str
    details: Optional[Any] = None
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)
    name: str = Field(..., max_length=200)
    birth_date: Optional[str] = None

    @field_validator("birth_date")
    @classmethod
    def _validate_birth_date(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        date.fromisoformat(value)
        return value


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)
    mfa_code: Optional[str] = Field(default=None, max_length=16)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)


class MfaVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class LoginResponse(BaseModel):
    user: dict
    access_token: str
    token_type: str = "bearer"
    expires_at: str
    session_id: str
    session_expires_at: str
    password_change_required: bool = False
    backup_codes_remaining: Optional[int] = None
    regenerated_backup_codes: List[str] = Field(default_factory=list)


class MfaSetupResponse(BaseModel):
    provisioning_uri: str
    manual_entry_key: str
    backup_codes: List[str]
