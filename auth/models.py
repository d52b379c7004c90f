"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own
persistence, ledgers and services do the work.

Timestamps are timezone-aware UTC datetimes everywhere in the domain layer.
Stores convert to and from their own representation.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of account roles, most privileged first."""

    admin = "admin"
    head = "head"
    user = "user"


# Lower rank = more privilege. Used by ordered role checks.
ROLE_RANK: dict[Role, int] = {Role.admin: 1, Role.head: 2, Role.user: 3}


class RevocationReason(str, Enum):
    expired = "expired"
    rotated = "rotated"
    logout = "logout"
    explicit = "explicit"
    reuse_detected = "reuse_detected"


class AuthEventType(str, Enum):
    login_success = "login_success"
    login_failed = "login_failed"
    login_locked = "login_locked"
    login_inactive = "login_inactive"
    refresh = "refresh"
    refresh_reuse_detected = "refresh_reuse_detected"
    logout = "logout"
    password_reset_requested = "password_reset_requested"
    password_reset = "password_reset"
    password_changed = "password_changed"


@dataclass
class Account:
    """A user account as persisted by the credential store.

    id is the store's opaque stable identifier; uuid is the externally
    visible one. email is always stored lower-cased so lookups are
    case-insensitive. password_hash never leaves the auth package --
    callers outside it receive a PublicAccount.
    """

    email: str
    name: str
    password_hash: str
    role: Role = Role.user
    id: str | None = None
    uuid: str | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    last_failed_login: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class PublicAccount:
    """Account fields that are safe to hand to the transport layer."""

    id: str
    uuid: str
    email: str
    name: str
    role: Role
    is_active: bool
    last_login: datetime | None = None


@dataclass
class RefreshToken:
    """A long-lived rotating credential.

    token_hash is the natural key: HMAC-SHA256 of the raw token value. The raw
    value is only set on the instance returned by the ledger at issuance and is
    never persisted. replaced_by_hash links to the successor issued when this
    token was rotated, forming an append-only chain per login session.
    """

    token_hash: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: datetime | None = None
    revocation_reason: RevocationReason | None = None
    replaced_by_hash: str | None = None
    created_by_ip: str | None = None
    revoked_by_ip: str | None = None
    value: str | None = field(default=None, repr=False, compare=False)


@dataclass
class PasswordResetToken:
    """A single-use, short-lived credential authorizing one password change."""

    token_hash: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: datetime | None = None
    created_by_ip: str | None = None
    value: str | None = field(default=None, repr=False, compare=False)

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    account_id: str
    email: str
    role: Role
    issued_at: datetime
    expires_at: datetime


@dataclass
class AuthEvent:
    """One row of the authentication activity log."""

    event: AuthEventType
    account_id: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None
    detail: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair
    account: PublicAccount
