"""
auth/store.py -- Credential Store: repository protocol + SQLAlchemy Core implementation.

Pattern: Repository + Data Mapper.
CredentialStore is the capability set the auth core depends on;
SqlCredentialStore implements it on SQLAlchemy Core, and
auth/memory.py implements it in-process for tests and tooling.
The _row_to_* functions are the mappers. Service code never touches SQL.

Atomicity:
  Every state transition that must not race is a single conditional UPDATE
  whose rowcount tells the caller whether it won:
    - record_login_failure: restart-or-increment in one statement
    - reserve_login_attempt: the same, but only while the account is unlocked
    - rotate_refresh_token: revoke-if-not-revoked + insert successor, one transaction
    - revoke_refresh_token: revoke-if-not-revoked
    - consume_reset_token:  consume-if-not-consumed
  There is no read-then-write pair on any of these paths.

Storage format:
  Timestamps are fixed-width UTC ISO 8601 strings (always with microseconds
  and +00:00), so plain string comparison in SQL orders them correctly.
  Token rows are keyed by HMAC fingerprints; raw token values never reach
  this module.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import DuplicateAccount
from auth.models import (
    Account,
    AuthEvent,
    AuthEventType,
    PasswordResetToken,
    RefreshToken,
    RevocationReason,
    Role,
)

logger = logging.getLogger("authcore.auth.store")

# Fields update_account() accepts. Anything else is a caller bug.
_MUTABLE_ACCOUNT_FIELDS = frozenset({"email", "name", "password_hash", "role", "is_active"})


# ---------------------------------------------------------------------------
# Repository protocol
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    """Persistence capabilities the auth core needs. See module docstring for atomicity rules."""

    # accounts
    def insert_account(self, account: Account) -> Account: ...

    def find_account_by_id(self, account_id: str) -> Account | None: ...

    def find_account_by_email(self, email: str) -> Account | None: ...

    def update_account(self, account_id: str, **fields) -> bool: ...

    def record_login_failure(self, account_id: str, now: datetime, window_start: datetime) -> int: ...

    def reserve_login_attempt(
        self, account_id: str, now: datetime, window_start: datetime, threshold: int
    ) -> int | None: ...

    def record_login_success(self, account_id: str, now: datetime) -> None: ...

    # refresh tokens
    def insert_refresh_token(self, token: RefreshToken) -> None: ...

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None: ...

    def rotate_refresh_token(
        self, presented_hash: str, successor: RefreshToken, now: datetime, ip: str | None = None
    ) -> bool: ...

    def revoke_refresh_token(
        self, token_hash: str, reason: RevocationReason, now: datetime, ip: str | None = None
    ) -> bool: ...

    def revoke_refresh_tokens_for_account(
        self, account_id: str, reason: RevocationReason, now: datetime, ip: str | None = None
    ) -> int: ...

    # reset tokens
    def insert_reset_token(self, token: PasswordResetToken) -> None: ...

    def get_reset_token(self, token_hash: str) -> PasswordResetToken | None: ...

    def consume_reset_token(self, token_hash: str, now: datetime) -> bool: ...

    def invalidate_reset_tokens_for_account(self, account_id: str, now: datetime) -> int: ...

    # housekeeping + activity log
    def purge_expired_tokens(self, now: datetime) -> int: ...

    def insert_event(self, auth_event: AuthEvent) -> int: ...

    def list_events(self, account_id: str, limit: int = 50) -> list[AuthEvent]: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("uuid", String(36), nullable=False, unique=True),
    Column("email", String(320), nullable=False, unique=True),  # always lower-cased
    Column("name", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(16), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("last_failed_login", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("account_id", String(32), nullable=False),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("revocation_reason", String(32)),
    Column("replaced_by_hash", String(64)),
    Column("created_by_ip", String(64)),
    Column("revoked_by_ip", String(64)),
    Index("ix_refresh_tokens_account", "account_id"),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("account_id", String(32), nullable=False),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
    Column("created_by_ip", String(64)),
    Index("ix_reset_tokens_account", "account_id"),
)

_auth_events = Table(
    "auth_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(32)),
    Column("event", String(40), nullable=False),
    Column("source_ip", String(64)),
    Column("user_agent", Text),
    Column("detail", Text),
    Column("created_at", String(32), nullable=False),
    Index("ix_auth_events_account", "account_id"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers proceed while a writer holds the lock.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SqlCredentialStore:
    """SQLAlchemy Core implementation of CredentialStore.

    Usage:
        store = SqlCredentialStore("sqlite:///authcore.db")
        account = store.insert_account(Account(email="a@x.com", name="A", password_hash=hash_password("pw")))
        store.find_account_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def insert_account(self, account: Account) -> Account:
        """Insert a new account and return it with id, uuid and timestamps assigned.

        Raises DuplicateAccount if the (lower-cased) email is already registered.
        """
        now = _now()
        stored = Account(
            id=uuid.uuid4().hex,
            uuid=account.uuid or str(uuid.uuid4()),
            email=account.email.strip().lower(),
            name=account.name,
            password_hash=account.password_hash,
            role=Role(account.role),
            is_active=account.is_active,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _accounts.insert().values(
                        id=stored.id,
                        uuid=stored.uuid,
                        email=stored.email,
                        name=stored.name,
                        password_hash=stored.password_hash,
                        role=stored.role.value,
                        is_active=1 if stored.is_active else 0,
                        failed_login_attempts=0,
                        created_at=_to_iso(now),
                        updated_at=_to_iso(now),
                    )
                )
                conn.commit()
        except IntegrityError:
            raise DuplicateAccount("An account with this email already exists.") from None
        return stored

    def find_account_by_id(self, account_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_account_by_email(self, email: str) -> Account | None:
        """Case-insensitive lookup. Emails are stored lower-cased, so normalize the input."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email.strip().lower())).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_account(self, account_id: str, **fields) -> bool:
        """Update mutable fields on an existing account.

        Accepted fields: email, name, password_hash, role, is_active.
        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - _MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        fields["updated_at"] = _to_iso(_now())
        try:
            with self.engine.connect() as conn:
                result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
                conn.commit()
        except IntegrityError:
            raise DuplicateAccount("An account with this email already exists.") from None
        return result.rowcount > 0

    def record_login_failure(self, account_id: str, now: datetime, window_start: datetime) -> int:
        """Atomically count a failed login and return the new counter value.

        A previous failure at or before window_start is stale: the counter
        restarts at 1 instead of accumulating. Both branches run inside one
        UPDATE, so concurrent failures cannot lose increments. Returns 0 if the
        account does not exist.
        """
        c = _accounts.c
        stale = or_(c.last_failed_login.is_(None), c.last_failed_login <= _to_iso(window_start))
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(c.id == account_id)
                .values(
                    failed_login_attempts=case((stale, 1), else_=c.failed_login_attempts + 1),
                    last_failed_login=_to_iso(now),
                )
            )
            if result.rowcount == 0:
                conn.commit()
                return 0
            count = conn.execute(select(c.failed_login_attempts).where(c.id == account_id)).scalar_one()
            conn.commit()
        return count

    def reserve_login_attempt(
        self, account_id: str, now: datetime, window_start: datetime, threshold: int
    ) -> int | None:
        """Count a login attempt as a failure before its password is compared.

        Matches only while the account is not locked (counter below threshold,
        or last failure stale), so at most `threshold` attempts per window ever
        reach a compare however many arrive at once. Returns the new counter
        value, or None when the account is locked or does not exist. A
        successful compare undoes the reservation via record_login_success().
        """
        c = _accounts.c
        stale = or_(c.last_failed_login.is_(None), c.last_failed_login <= _to_iso(window_start))
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(c.id == account_id)
                .where(or_(stale, c.failed_login_attempts < threshold))
                .values(
                    failed_login_attempts=case((stale, 1), else_=c.failed_login_attempts + 1),
                    last_failed_login=_to_iso(now),
                )
            )
            if result.rowcount == 0:
                conn.commit()
                return None
            count = conn.execute(select(c.failed_login_attempts).where(c.id == account_id)).scalar_one()
            conn.commit()
        return count

    def record_login_success(self, account_id: str, now: datetime) -> None:
        """Reset the failure counter, clear the window marker, stamp last_login."""
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(failed_login_attempts=0, last_failed_login=None, last_login=_to_iso(now))
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def insert_refresh_token(self, token: RefreshToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(_refresh_tokens.insert().values(**_refresh_values(token)))
            conn.commit()

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def rotate_refresh_token(
        self, presented_hash: str, successor: RefreshToken, now: datetime, ip: str | None = None
    ) -> bool:
        """Revoke the presented token (reason=rotated), link and insert its successor.

        One transaction: the conditional UPDATE only matches a non-revoked row,
        and the successor is inserted only if it matched. Returns False when
        another request already revoked the presented token.
        """
        c = _refresh_tokens.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((c.token_hash == presented_hash) & (c.revoked == 0))
                .values(
                    revoked=1,
                    revoked_at=_to_iso(now),
                    revocation_reason=RevocationReason.rotated.value,
                    replaced_by_hash=successor.token_hash,
                    revoked_by_ip=ip,
                )
            )
            if result.rowcount == 0:
                conn.rollback()
                return False
            conn.execute(_refresh_tokens.insert().values(**_refresh_values(successor)))
            conn.commit()
        return True

    def revoke_refresh_token(
        self, token_hash: str, reason: RevocationReason, now: datetime, ip: str | None = None
    ) -> bool:
        """Revoke one token if it is not already revoked. Returns True if this call revoked it."""
        c = _refresh_tokens.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((c.token_hash == token_hash) & (c.revoked == 0))
                .values(revoked=1, revoked_at=_to_iso(now), revocation_reason=reason.value, revoked_by_ip=ip)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_refresh_tokens_for_account(
        self, account_id: str, reason: RevocationReason, now: datetime, ip: str | None = None
    ) -> int:
        """Revoke every live refresh token the account owns. Returns the number revoked."""
        c = _refresh_tokens.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((c.account_id == account_id) & (c.revoked == 0))
                .values(revoked=1, revoked_at=_to_iso(now), revocation_reason=reason.value, revoked_by_ip=ip)
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def insert_reset_token(self, token: PasswordResetToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _reset_tokens.insert().values(
                    token_hash=token.token_hash,
                    account_id=token.account_id,
                    issued_at=_to_iso(token.issued_at),
                    expires_at=_to_iso(token.expires_at),
                    consumed_at=_to_iso(token.consumed_at),
                    created_by_ip=token.created_by_ip,
                )
            )
            conn.commit()

    def get_reset_token(self, token_hash: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_reset(row) if row is not None else None

    def consume_reset_token(self, token_hash: str, now: datetime) -> bool:
        """Mark the token consumed if nobody has yet. Returns True if this call consumed it."""
        c = _reset_tokens.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where((c.token_hash == token_hash) & c.consumed_at.is_(None))
                .values(consumed_at=_to_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def invalidate_reset_tokens_for_account(self, account_id: str, now: datetime) -> int:
        """Consume every outstanding reset token for the account. Returns the number invalidated."""
        c = _reset_tokens.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where((c.account_id == account_id) & c.consumed_at.is_(None))
                .values(consumed_at=_to_iso(now))
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired_tokens(self, now: datetime) -> int:
        """Physically delete refresh and reset tokens past their expiry.

        Revoked-but-unexpired refresh tokens are kept on purpose: reuse
        detection needs them to find the chain a replayed token belongs to.
        """
        cutoff = _to_iso(now)
        with self.engine.connect() as conn:
            refresh = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < cutoff))
            reset = conn.execute(_reset_tokens.delete().where(_reset_tokens.c.expires_at < cutoff))
            conn.commit()
        return refresh.rowcount + reset.rowcount

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def insert_event(self, auth_event: AuthEvent) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _auth_events.insert().values(
                    account_id=auth_event.account_id,
                    event=auth_event.event.value,
                    source_ip=auth_event.source_ip,
                    user_agent=auth_event.user_agent,
                    detail=auth_event.detail,
                    created_at=_to_iso(auth_event.created_at or _now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_events(self, account_id: str, limit: int = 50) -> list[AuthEvent]:
        """Return the account's most recent activity, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _auth_events.select()
                .where(_auth_events.c.account_id == account_id)
                .order_by(_auth_events.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            logger.exception("Credential store health check failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _refresh_values(token: RefreshToken) -> dict:
    return {
        "token_hash": token.token_hash,
        "account_id": token.account_id,
        "issued_at": _to_iso(token.issued_at),
        "expires_at": _to_iso(token.expires_at),
        "revoked": 1 if token.revoked else 0,
        "revoked_at": _to_iso(token.revoked_at),
        "revocation_reason": token.revocation_reason.value if token.revocation_reason else None,
        "replaced_by_hash": token.replaced_by_hash,
        "created_by_ip": token.created_by_ip,
        "revoked_by_ip": token.revoked_by_ip,
    }


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        uuid=row.uuid,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=Role(row.role),
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts,
        last_failed_login=_from_iso(row.last_failed_login),
        last_login=_from_iso(row.last_login),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_refresh(row) -> RefreshToken:
    return RefreshToken(
        token_hash=row.token_hash,
        account_id=row.account_id,
        issued_at=_from_iso(row.issued_at),
        expires_at=_from_iso(row.expires_at),
        revoked=bool(row.revoked),
        revoked_at=_from_iso(row.revoked_at),
        revocation_reason=RevocationReason(row.revocation_reason) if row.revocation_reason else None,
        replaced_by_hash=row.replaced_by_hash,
        created_by_ip=row.created_by_ip,
        revoked_by_ip=row.revoked_by_ip,
    )


def _row_to_reset(row) -> PasswordResetToken:
    return PasswordResetToken(
        token_hash=row.token_hash,
        account_id=row.account_id,
        issued_at=_from_iso(row.issued_at),
        expires_at=_from_iso(row.expires_at),
        consumed_at=_from_iso(row.consumed_at),
        created_by_ip=row.created_by_ip,
    )


def _row_to_event(row) -> AuthEvent:
    return AuthEvent(
        id=row.id,
        account_id=row.account_id,
        event=AuthEventType(row.event),
        source_ip=row.source_ip,
        user_agent=row.user_agent,
        detail=row.detail,
        created_at=_from_iso(row.created_at),
    )
