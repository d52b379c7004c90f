"""
API request and response models for authcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuthEvent, PublicAccount, Role
from auth.passwords import MAX_PASSWORD_BYTES, password_fits

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: the store lower-cases and exact-matches, so the only job
# here is rejecting obvious garbage before it reaches a query.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt caps input at 72 UTF-8 bytes. max_length counts characters, so
# multi-byte passwords also go through _check_password_bytes.
PASSWORD_MIN = 8
PASSWORD_MAX = MAX_PASSWORD_BYTES


def _check_password_bytes(value: str) -> str:
    if not password_fits(value):
        raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320, pattern=EMAIL_PATTERN)
    # No min_length on login: old accounts may predate the current policy.
    password: str = Field(min_length=1, max_length=255)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=256)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=256)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320, pattern=EMAIL_PATTERN)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)

    @field_validator("new_password")
    @classmethod
    def new_password_bytes(cls, value: str) -> str:
        return _check_password_bytes(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)

    @field_validator("new_password")
    @classmethod
    def new_password_bytes(cls, value: str) -> str:
        return _check_password_bytes(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public account fields. The password hash has no field here by construction."""

    model_config = ConfigDict(frozen=True)

    id: str
    uuid: str
    email: str
    name: str
    role: Role
    is_active: bool
    last_login: Optional[datetime] = None

    @classmethod
    def from_public(cls, account: PublicAccount) -> "AccountResponse":
        return cls(
            id=account.id,
            uuid=account.uuid,
            email=account.email,
            name=account.name,
            role=account.role,
            is_active=account.is_active,
            last_login=account.last_login,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    account: AccountResponse


class MessageResponse(BaseModel):
    message: str


class AuthEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    event: str
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    detail: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_event(cls, auth_event: AuthEvent) -> "AuthEventResponse":
        return cls(
            id=auth_event.id,
            event=auth_event.event.value,
            source_ip=auth_event.source_ip,
            user_agent=auth_event.user_agent,
            detail=auth_event.detail,
            created_at=auth_event.created_at,
        )


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope: {"error": {"code", "message", "detail"}}."""

    error: ErrorDetail
