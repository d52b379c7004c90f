"""
auth/ledgers.py -- Refresh Token Ledger and Password Reset Ledger.

Both ledgers hand out opaque random values and persist only their HMAC
fingerprints (TokenCodec.fingerprint). The raw value is attached to the
record returned at issuance and is unrecoverable afterwards.

Refresh rotation:
  rotate() revokes the presented token (reason=rotated) and links it to a
  freshly issued successor in one atomic store call. The links form an
  append-only chain per login session.

  A revoked token presented again is reuse: either a replay or a stolen copy
  racing the legitimate client. The ledger revokes everything reachable from
  it via successor links and reports TokenRevoked, forcing a full re-login.
  A request that loses a rotate race to a concurrent request lands on the
  same path, since by the time its conditional update runs the token is
  revoked.

Reset consumption:
  consume() checks existence, prior use and expiry, then performs the
  conditional consume. Of two racing consumers exactly one wins; the other
  gets TokenAlreadyUsed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from auth.errors import TokenAlreadyUsed, TokenExpired, TokenNotFound, TokenRevoked
from auth.models import (
    Account,
    AuthEvent,
    AuthEventType,
    PasswordResetToken,
    RefreshToken,
    RevocationReason,
)
from auth.tokens import TokenCodec, generate_opaque_token

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("authcore.auth.ledgers")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Rotation:
    refresh_token: RefreshToken
    account: Account


# ---------------------------------------------------------------------------
# Refresh Token Ledger
# ---------------------------------------------------------------------------


class RefreshTokenLedger:
    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        lifetime: timedelta = timedelta(days=14),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._codec = codec
        self._lifetime = lifetime
        self._clock = clock

    def issue(self, account: Account, source_ip: str | None = None) -> RefreshToken:
        """Create and persist a new refresh token. The returned record carries the raw value."""
        token = self._new_token(account.id, self._clock(), source_ip)
        self._store.insert_refresh_token(token)
        return token

    def rotate(self, presented: str, source_ip: str | None = None) -> Rotation:
        """Exchange a live refresh token for its successor.

        Raises TokenNotFound for unknown values, TokenRevoked on reuse (after
        revoking the rest of the chain), TokenExpired past expiry.
        """
        now = self._clock()
        presented_hash = self._codec.fingerprint(presented)
        record = self._store.get_refresh_token(presented_hash)
        if record is None:
            raise TokenNotFound()
        if record.revoked:
            self._revoke_chain(record, now, source_ip)
            raise TokenRevoked()
        if record.expires_at <= now:
            self._store.revoke_refresh_token(presented_hash, RevocationReason.expired, now, source_ip)
            raise TokenExpired()

        account = self._store.find_account_by_id(record.account_id)
        if account is None:
            self._store.revoke_refresh_token(presented_hash, RevocationReason.explicit, now, source_ip)
            raise TokenNotFound()

        successor = self._new_token(account.id, now, source_ip)
        if not self._store.rotate_refresh_token(presented_hash, successor, now, source_ip):
            # Lost a race: someone else revoked it between our read and the conditional update.
            self._revoke_chain(self._store.get_refresh_token(presented_hash) or record, now, source_ip)
            raise TokenRevoked()
        return Rotation(refresh_token=successor, account=account)

    def revoke(self, presented: str, reason: RevocationReason, source_ip: str | None = None) -> RefreshToken | None:
        """Revoke a single token by raw value.

        Returns the token record if it exists (whether or not this call was the
        one that revoked it), None for an unknown value.
        """
        token_hash = self._codec.fingerprint(presented)
        record = self._store.get_refresh_token(token_hash)
        if record is None:
            return None
        self._store.revoke_refresh_token(token_hash, reason, self._clock(), source_ip)
        return record

    def revoke_all_for_account(
        self,
        account_id: str,
        reason: RevocationReason = RevocationReason.logout,
        source_ip: str | None = None,
    ) -> int:
        """Revoke every live refresh token for an account. Returns the number revoked."""
        return self._store.revoke_refresh_tokens_for_account(account_id, reason, self._clock(), source_ip)

    def _new_token(self, account_id: str, now: datetime, source_ip: str | None) -> RefreshToken:
        value = generate_opaque_token()
        return RefreshToken(
            token_hash=self._codec.fingerprint(value),
            account_id=account_id,
            issued_at=now,
            expires_at=now + self._lifetime,
            created_by_ip=source_ip,
            value=value,
        )

    def _revoke_chain(self, record: RefreshToken, now: datetime, source_ip: str | None) -> int:
        """Revoke every token reachable from record via successor links.

        Each link is revoked before it is re-read, so a successor created by a
        concurrent rotation of that link is always seen and revoked too.
        """
        revoked = 0
        seen: set[str] = {record.token_hash}
        next_hash = record.replaced_by_hash
        while next_hash and next_hash not in seen:
            seen.add(next_hash)
            if self._store.revoke_refresh_token(next_hash, RevocationReason.reuse_detected, now, source_ip):
                revoked += 1
            successor = self._store.get_refresh_token(next_hash)
            next_hash = successor.replaced_by_hash if successor else None

        logger.warning(
            "Refresh token reuse detected for account %s from %s; revoked %d chained token(s)",
            record.account_id,
            source_ip or "unknown",
            revoked,
        )
        self._store.insert_event(
            AuthEvent(
                event=AuthEventType.refresh_reuse_detected,
                account_id=record.account_id,
                source_ip=source_ip,
                detail=f"revoked={revoked}",
                created_at=now,
            )
        )
        return revoked


# ---------------------------------------------------------------------------
# Password Reset Ledger
# ---------------------------------------------------------------------------


class PasswordResetLedger:
    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        lifetime: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._codec = codec
        self._lifetime = lifetime
        self._clock = clock

    @property
    def lifetime(self) -> timedelta:
        return self._lifetime

    def issue(self, account: Account, source_ip: str | None = None) -> PasswordResetToken:
        """Create a reset token. Earlier unconsumed tokens for the account stay valid."""
        now = self._clock()
        value = generate_opaque_token()
        token = PasswordResetToken(
            token_hash=self._codec.fingerprint(value),
            account_id=account.id,
            issued_at=now,
            expires_at=now + self._lifetime,
            created_by_ip=source_ip,
            value=value,
        )
        self._store.insert_reset_token(token)
        return token

    def consume(self, presented: str) -> Account:
        """Use up a reset token and return the account it authorizes a password change for."""
        now = self._clock()
        token_hash = self._codec.fingerprint(presented)
        record = self._store.get_reset_token(token_hash)
        if record is None:
            raise TokenNotFound()
        if record.consumed:
            raise TokenAlreadyUsed()
        if record.expires_at <= now:
            raise TokenExpired()
        if not self._store.consume_reset_token(token_hash, now):
            raise TokenAlreadyUsed()
        account = self._store.find_account_by_id(record.account_id)
        if account is None:
            raise TokenNotFound()
        return account

    def invalidate_all_for_account(self, account_id: str) -> int:
        return self._store.invalidate_reset_tokens_for_account(account_id, self._clock())
