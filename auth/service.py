"""
auth/service.py -- Auth Service and Password Service (orchestration).

Both services are stateless between calls: everything they know lives in the
CredentialStore, so one instance can serve any number of concurrent requests.

Login order (each step depends on the one before it):
  1. Look up the account by email. Unknown email: compare against DUMMY_HASH
     so timing matches a real compare, then InvalidCredentials. Never say
     "email not found".
  2. Inactive account: AccountInactive.
  3. Lockout check, then an atomic reservation that counts the attempt as a
     failure up front. Blocked by either: AccountLocked, the real password
     is NOT compared, so a correct password cannot end a lock early.
  4. Constant-time password compare. Mismatch: the reserved failure stands,
     InvalidCredentials.
  5. Match: reset the counter, issue access + refresh tokens, return them
     with the public account fields (never the hash).

Roles are re-read from the store on every verify_role_access() call instead
of being trusted from the access token, so a downgrade takes effect at once.

Password changes (reset or authenticated change) invalidate every
outstanding reset token and revoke every refresh token for the account.
The new password is hashed before any state changes, so a rejected password
never burns a reset token.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable
from urllib.parse import urlencode

from auth.email import EmailSender, redact_email
from auth.errors import AccountInactive, AccountLocked, InvalidCredentials
from auth.ledgers import PasswordResetLedger, RefreshTokenLedger
from auth.lockout import LockoutPolicy
from auth.models import (
    ROLE_RANK,
    AccessClaims,
    Account,
    AuthEvent,
    AuthEventType,
    LoginResult,
    PublicAccount,
    RevocationReason,
    Role,
    TokenPair,
)
from auth.passwords import DUMMY_HASH, hash_password, verify_password
from auth.tokens import TokenCodec

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("authcore.auth")

RESET_REQUESTED_MESSAGE = "If an account exists for this address, a password reset link has been sent."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_public(account: Account) -> PublicAccount:
    return PublicAccount(
        id=account.id,
        uuid=account.uuid,
        email=account.email,
        name=account.name,
        role=Role(account.role),
        is_active=account.is_active,
        last_login=account.last_login,
    )


class AuthService:
    """Login, refresh, logout, access-token verification and role checks."""

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        lockout: LockoutPolicy,
        refresh_ledger: RefreshTokenLedger,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._codec = codec
        self._lockout = lockout
        self._refresh = refresh_ledger
        self._clock = clock

    def login(
        self,
        email: str,
        password: str,
        source_ip: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        account = self._store.find_account_by_email(email)
        if account is None:
            verify_password(password, DUMMY_HASH)
            self._event(AuthEventType.login_failed, None, source_ip, user_agent, "unknown_email")
            raise InvalidCredentials()

        if not account.is_active:
            verify_password(password, DUMMY_HASH)
            self._event(AuthEventType.login_inactive, account.id, source_ip, user_agent)
            raise AccountInactive()

        count = self._lockout.reserve_attempt(account) if self._lockout.check_allowed(account) else None
        if count is None:
            verify_password(password, DUMMY_HASH)
            self._event(AuthEventType.login_locked, account.id, source_ip, user_agent)
            raise AccountLocked()

        if not verify_password(password, account.password_hash):
            self._lockout.note_failure(account, count, source_ip)
            self._event(AuthEventType.login_failed, account.id, source_ip, user_agent, f"consecutive={count}")
            raise InvalidCredentials()

        self._lockout.record_success(account)
        now = self._clock()
        access_token = self._codec.issue_access_token(account, now)
        refresh_token = self._refresh.issue(account, source_ip)
        self._event(AuthEventType.login_success, account.id, source_ip, user_agent)
        logger.info("Login succeeded for account %s from %s", account.id, source_ip or "unknown")

        account.failed_login_attempts = 0
        account.last_failed_login = None
        account.last_login = now
        return LoginResult(
            tokens=TokenPair(
                access_token=access_token,
                refresh_token=refresh_token.value,
                access_expires_in=self._codec.access_token_expire_seconds,
            ),
            account=to_public(account),
        )

    def refresh(
        self,
        presented_refresh_token: str,
        source_ip: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Rotate the refresh token and issue a fresh access token.

        Propagates TokenNotFound / TokenRevoked / TokenExpired from the ledger.
        An account deactivated since login loses every session here.
        """
        rotation = self._refresh.rotate(presented_refresh_token, source_ip)
        account = rotation.account
        if not account.is_active:
            self._refresh.revoke_all_for_account(account.id, RevocationReason.explicit, source_ip)
            self._event(AuthEventType.login_inactive, account.id, source_ip, user_agent, "refresh")
            raise AccountInactive()

        self._event(AuthEventType.refresh, account.id, source_ip, user_agent)
        return TokenPair(
            access_token=self._codec.issue_access_token(account, self._clock()),
            refresh_token=rotation.refresh_token.value,
            access_expires_in=self._codec.access_token_expire_seconds,
        )

    def logout(
        self,
        presented_refresh_token: str,
        source_ip: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Revoke the presented refresh token.

        Unknown or already-revoked tokens are ignored so logout stays
        idempotent. Returns True if the token was live before this call.
        """
        record = self._refresh.revoke(presented_refresh_token, RevocationReason.logout, source_ip)
        if record is None:
            return False
        self._event(AuthEventType.logout, record.account_id, source_ip, user_agent, "everywhere=False")
        return not record.revoked

    def logout_account(self, account_id: str, source_ip: str | None = None, user_agent: str | None = None) -> int:
        """Terminate every session of an account. Returns the number of tokens revoked."""
        revoked = self._refresh.revoke_all_for_account(account_id, RevocationReason.logout, source_ip)
        self._event(AuthEventType.logout, account_id, source_ip, user_agent, "everywhere=True")
        return revoked

    def authenticate(self, access_token: str) -> AccessClaims:
        """Verify an access token. Raises InvalidToken or ExpiredToken."""
        return self._codec.verify_access_token(access_token)

    def verify_role_access(self, account_id: str, required_role: Role | str, exact: bool = False) -> bool:
        """Return True if the account's CURRENT role satisfies required_role.

        Ordered policy by default (admin > head > user); exact=True demands an
        exact match. Missing or inactive accounts never have access.
        """
        account = self._store.find_account_by_id(account_id)
        if account is None or not account.is_active:
            return False
        required = Role(required_role)
        current = Role(account.role)
        if exact:
            return current is required
        return ROLE_RANK[current] <= ROLE_RANK[required]

    def get_account(self, account_id: str) -> PublicAccount | None:
        account = self._store.find_account_by_id(account_id)
        return to_public(account) if account is not None else None

    def _event(
        self,
        event: AuthEventType,
        account_id: str | None,
        source_ip: str | None,
        user_agent: str | None,
        detail: str | None = None,
    ) -> None:
        self._store.insert_event(
            AuthEvent(
                event=event,
                account_id=account_id,
                source_ip=source_ip,
                user_agent=user_agent,
                detail=detail,
                created_at=self._clock(),
            )
        )


class PasswordService:
    """Reset-request, reset-confirm and authenticated password change."""

    def __init__(
        self,
        store: CredentialStore,
        reset_ledger: PasswordResetLedger,
        refresh_ledger: RefreshTokenLedger,
        email_sender: EmailSender,
        reset_url_base: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._resets = reset_ledger
        self._refresh = refresh_ledger
        self._email = email_sender
        self._reset_url_base = reset_url_base
        self._clock = clock

    def request_reset(self, email: str, source_ip: str | None = None, user_agent: str | None = None) -> str:
        """Issue and mail a reset link if the address belongs to an active account.

        Always returns RESET_REQUESTED_MESSAGE, whatever happened, so the
        response cannot be used to enumerate accounts.
        """
        account = self._store.find_account_by_email(email)
        if account is None or not account.is_active:
            logger.info("Password reset requested for unknown or inactive address %s", redact_email(email))
            return RESET_REQUESTED_MESSAGE

        token = self._resets.issue(account, source_ip)
        reset_url = f"{self._reset_url_base}?{urlencode({'token': token.value})}"
        expires_minutes = int(self._resets.lifetime.total_seconds() // 60)
        delivered = self._email.send_password_reset(account.email, account.name, reset_url, expires_minutes)
        self._event(
            AuthEventType.password_reset_requested,
            account.id,
            source_ip,
            user_agent,
            "delivered" if delivered else "delivery_failed",
        )
        return RESET_REQUESTED_MESSAGE

    def reset_password(
        self,
        token: str,
        new_password: str,
        source_ip: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Consume a reset token and set the new password.

        Raises TokenNotFound / TokenExpired / TokenAlreadyUsed, or
        PasswordTooLong before the token is touched.
        """
        password_hash = hash_password(new_password)
        account = self._resets.consume(token)
        self._apply_new_password(account, password_hash, source_ip)
        self._event(AuthEventType.password_reset, account.id, source_ip, user_agent)
        logger.info("Password reset completed for account %s", account.id)

    def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        source_ip: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Change a password after re-verifying the current one.

        Raises InvalidCredentials, or PasswordTooLong.
        """
        account = self._store.find_account_by_id(account_id)
        if account is None or not account.is_active:
            verify_password(current_password, DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(current_password, account.password_hash):
            raise InvalidCredentials()
        self._apply_new_password(account, hash_password(new_password), source_ip)
        self._event(AuthEventType.password_changed, account.id, source_ip, user_agent)
        logger.info("Password changed for account %s", account.id)

    def _apply_new_password(self, account: Account, password_hash: str, source_ip: str | None) -> None:
        self._store.update_account(account.id, password_hash=password_hash)
        invalidated = self._resets.invalidate_all_for_account(account.id)
        revoked = self._refresh.revoke_all_for_account(account.id, RevocationReason.explicit, source_ip)
        logger.info(
            "Password updated for account %s: %d reset token(s) invalidated, %d session(s) revoked",
            account.id,
            invalidated,
            revoked,
        )

    def _event(
        self,
        event: AuthEventType,
        account_id: str | None,
        source_ip: str | None,
        user_agent: str | None,
        detail: str | None = None,
    ) -> None:
        self._store.insert_event(
            AuthEvent(
                event=event,
                account_id=account_id,
                source_ip=source_ip,
                user_agent=user_agent,
                detail=detail,
                created_at=self._clock(),
            )
        )
