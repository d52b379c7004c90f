"""
auth/memory.py -- In-process CredentialStore for tests and local tooling.

Every method runs under one re-entrant lock, which gives the same
per-operation atomicity SqlCredentialStore gets from conditional UPDATEs.
Records are copied on the way in and out so callers can never mutate stored
state by accident.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone

from auth.errors import DuplicateAccount
from auth.models import Account, AuthEvent, PasswordResetToken, RefreshToken, RevocationReason, Role

_MUTABLE_ACCOUNT_FIELDS = frozenset({"email", "name", "password_hash", "role", "is_active"})


class MemoryCredentialStore:
    """Dict-backed implementation of auth.store.CredentialStore."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: dict[str, Account] = {}
        self._email_index: dict[str, str] = {}
        self._refresh: dict[str, RefreshToken] = {}
        self._resets: dict[str, PasswordResetToken] = {}
        self._events: list[AuthEvent] = []

    # accounts

    def insert_account(self, account: Account) -> Account:
        email = account.email.strip().lower()
        now = datetime.now(timezone.utc)
        with self._lock:
            if email in self._email_index:
                raise DuplicateAccount("An account with this email already exists.")
            stored = replace(
                account,
                id=uuid.uuid4().hex,
                uuid=account.uuid or str(uuid.uuid4()),
                email=email,
                role=Role(account.role),
                failed_login_attempts=0,
                last_failed_login=None,
                last_login=None,
                created_at=now,
                updated_at=now,
            )
            self._accounts[stored.id] = stored
            self._email_index[email] = stored.id
            return replace(stored)

    def find_account_by_id(self, account_id: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return replace(account) if account else None

    def find_account_by_email(self, email: str) -> Account | None:
        with self._lock:
            account_id = self._email_index.get(email.strip().lower())
            return replace(self._accounts[account_id]) if account_id else None

    def update_account(self, account_id: str, **fields) -> bool:
        unknown = set(fields) - _MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)!r}")
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return False
            if "role" in fields:
                fields["role"] = Role(fields["role"])
            if "email" in fields:
                email = fields["email"].strip().lower()
                owner = self._email_index.get(email)
                if owner is not None and owner != account_id:
                    raise DuplicateAccount("An account with this email already exists.")
                del self._email_index[account.email]
                self._email_index[email] = account_id
                fields["email"] = email
            self._accounts[account_id] = replace(account, updated_at=datetime.now(timezone.utc), **fields)
            return True

    def record_login_failure(self, account_id: str, now: datetime, window_start: datetime) -> int:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return 0
            stale = account.last_failed_login is None or account.last_failed_login <= window_start
            count = 1 if stale else account.failed_login_attempts + 1
            self._accounts[account_id] = replace(account, failed_login_attempts=count, last_failed_login=now)
            return count

    def reserve_login_attempt(
        self, account_id: str, now: datetime, window_start: datetime, threshold: int
    ) -> int | None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            stale = account.last_failed_login is None or account.last_failed_login <= window_start
            if not stale and account.failed_login_attempts >= threshold:
                return None
            count = 1 if stale else account.failed_login_attempts + 1
            self._accounts[account_id] = replace(account, failed_login_attempts=count, last_failed_login=now)
            return count

    def record_login_success(self, account_id: str, now: datetime) -> None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is not None:
                self._accounts[account_id] = replace(
                    account, failed_login_attempts=0, last_failed_login=None, last_login=now
                )

    # refresh tokens

    def insert_refresh_token(self, token: RefreshToken) -> None:
        with self._lock:
            self._refresh[token.token_hash] = replace(token, value=None)

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self._lock:
            token = self._refresh.get(token_hash)
            return replace(token) if token else None

    def rotate_refresh_token(
        self, presented_hash: str, successor: RefreshToken, now: datetime, ip: str | None = None
    ) -> bool:
        with self._lock:
            token = self._refresh.get(presented_hash)
            if token is None or token.revoked:
                return False
            self._refresh[presented_hash] = replace(
                token,
                revoked=True,
                revoked_at=now,
                revocation_reason=RevocationReason.rotated,
                replaced_by_hash=successor.token_hash,
                revoked_by_ip=ip,
            )
            self._refresh[successor.token_hash] = replace(successor, value=None)
            return True

    def revoke_refresh_token(
        self, token_hash: str, reason: RevocationReason, now: datetime, ip: str | None = None
    ) -> bool:
        with self._lock:
            token = self._refresh.get(token_hash)
            if token is None or token.revoked:
                return False
            self._refresh[token_hash] = replace(
                token, revoked=True, revoked_at=now, revocation_reason=reason, revoked_by_ip=ip
            )
            return True

    def revoke_refresh_tokens_for_account(
        self, account_id: str, reason: RevocationReason, now: datetime, ip: str | None = None
    ) -> int:
        with self._lock:
            live = [t.token_hash for t in self._refresh.values() if t.account_id == account_id and not t.revoked]
            for token_hash in live:
                self.revoke_refresh_token(token_hash, reason, now, ip)
            return len(live)

    # reset tokens

    def insert_reset_token(self, token: PasswordResetToken) -> None:
        with self._lock:
            self._resets[token.token_hash] = replace(token, value=None)

    def get_reset_token(self, token_hash: str) -> PasswordResetToken | None:
        with self._lock:
            token = self._resets.get(token_hash)
            return replace(token) if token else None

    def consume_reset_token(self, token_hash: str, now: datetime) -> bool:
        with self._lock:
            token = self._resets.get(token_hash)
            if token is None or token.consumed_at is not None:
                return False
            self._resets[token_hash] = replace(token, consumed_at=now)
            return True

    def invalidate_reset_tokens_for_account(self, account_id: str, now: datetime) -> int:
        with self._lock:
            open_tokens = [
                t.token_hash for t in self._resets.values() if t.account_id == account_id and t.consumed_at is None
            ]
            for token_hash in open_tokens:
                self.consume_reset_token(token_hash, now)
            return len(open_tokens)

    # housekeeping + activity log

    def purge_expired_tokens(self, now: datetime) -> int:
        with self._lock:
            expired_refresh = [h for h, t in self._refresh.items() if t.expires_at < now]
            expired_reset = [h for h, t in self._resets.items() if t.expires_at < now]
            for token_hash in expired_refresh:
                del self._refresh[token_hash]
            for token_hash in expired_reset:
                del self._resets[token_hash]
            return len(expired_refresh) + len(expired_reset)

    def insert_event(self, auth_event: AuthEvent) -> int:
        with self._lock:
            stored = replace(
                auth_event,
                id=len(self._events) + 1,
                created_at=auth_event.created_at or datetime.now(timezone.utc),
            )
            self._events.append(stored)
            return stored.id

    def list_events(self, account_id: str, limit: int = 50) -> list[AuthEvent]:
        with self._lock:
            matching = [replace(e) for e in reversed(self._events) if e.account_id == account_id]
            return matching[:limit]

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass
