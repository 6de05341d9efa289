"""
API request and response models for the Minimarket auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Input policy lives here, at the boundary: emails are normalized to lower case,
passwords must be 8-128 characters with upper, lower and digit, and passcodes
are exactly six digits. Violations are 422 before any service code runs.
"""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import SessionRecord, User, to_ts

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSCODE_PATTERN = r"^\d{6}$"


class RoleEnum(str, Enum):
    vendedor = "vendedor"
    almacenero = "almacenero"
    administrador = "administrador"
    auditor = "auditor"


class PasscodeTypeEnum(str, Enum):
    register = "register"
    reset = "reset"


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def _validate_email(value: str) -> str:
    value = value.strip().lower()
    if len(value) > 255 or not _EMAIL_PATTERN.match(value):
        raise ValueError("Please provide a valid email address")
    return value


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain at least one lowercase letter")
    if not re.search(r"\d", value):
        raise ValueError("password must contain at least one digit")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    The password is not strength-checked here: accounts created before a
    policy change must still be able to log in.
    """

    email: str
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class SendVerificationRequest(BaseModel):
    email: str
    type: PasscodeTypeEnum

    @field_validator("email")
    @classmethod
    def _validate_send_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    email: str
    password: str
    passcode: str = Field(pattern=PASSCODE_PATTERN)
    full_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ResetPasswordRequest(BaseModel):
    email: str
    passcode: str = Field(pattern=PASSCODE_PATTERN)
    password: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. All fields optional."""

    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None
    full_name: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    full_name: Optional[str] = None
    is_active: bool
    oauth_provider: Optional[str] = None
    failed_attempts: int = 0
    lockout_until: Optional[str] = None
    created_at: str = ""
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            full_name=user.full_name,
            is_active=user.is_active,
            oauth_provider=user.oauth_provider,
            failed_attempts=user.failed_attempts,
            lockout_until=to_ts(user.lockout_until),
            created_at=to_ts(user.created_at) or "",
            last_login=to_ts(user.last_login),
        )


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str
    role: str
    is_admin: bool
    full_name: Optional[str] = None
    oauth_provider: Optional[str] = None


class LoginResponse(BaseModel):
    """Returned by login, refresh and register.

    The refresh secret is deliberately absent: it only travels in its
    httpOnly cookie.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: str = ""
    updated_at: Optional[str] = None
    current: bool = False

    @classmethod
    def from_record(cls, record: SessionRecord, current_session_id: Optional[int] = None) -> "SessionResponse":
        return cls(
            id=record.id,
            ip=record.ip,
            user_agent=record.user_agent,
            created_at=to_ts(record.created_at) or "",
            updated_at=to_ts(record.updated_at),
            current=record.id == current_session_id,
        )


class StepOutcomeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    step: str
    ok: bool
    error: Optional[str] = None


class PasswordChangeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    failed_steps: list[StepOutcomeResponse] = Field(default_factory=list)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str | dict] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
