"""
auth/lockout.py -- Lockout Policy: consecutive failed-login tracking per account.

Policy: after `threshold` consecutive failures, login is blocked until
`window_seconds` have passed since the most recent failure, even if the
password is then correct. The window is rolling and anchored at
last_failed_login. Blocked attempts never reach the password compare and are
not counted, so hammering a locked account does not extend the lock; it just
cannot end it early.

A failure recorded after the window has already elapsed restarts the count
at 1 instead of adding to a stale counter. Success resets the counter to 0
and clears the window marker. Counter updates are delegated to the store's
atomic record_login_failure() and reserve_login_attempt().

Login counts each attempt through reserve_attempt() before comparing the
password, so a burst of parallel guesses cannot slip past a stale counter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from auth.models import Account

if TYPE_CHECKING:
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("authcore.auth.lockout")


@dataclass(frozen=True)
class LockoutConfig:
    threshold: int = 5
    window_seconds: int = 15 * 60

    @classmethod
    def from_settings(cls, settings: Settings) -> LockoutConfig:
        return cls(threshold=settings.lockout_threshold, window_seconds=settings.lockout_window_seconds)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockoutPolicy:
    def __init__(
        self,
        store: CredentialStore,
        config: LockoutConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._config = config or LockoutConfig()
        self._window = timedelta(seconds=self._config.window_seconds)
        self._clock = clock

    def check_allowed(self, account: Account) -> bool:
        """Return False while the account has hit the threshold and the window has not elapsed."""
        if account.failed_login_attempts < self._config.threshold:
            return True
        if account.last_failed_login is None:
            return True
        return self._clock() - account.last_failed_login >= self._window

    def reserve_attempt(self, account: Account) -> int | None:
        """Count an attempt before its password compare; None means the account is locked.

        check_allowed() works from an Account read earlier, so parallel
        requests can all pass it. This is the authoritative gate: the store
        only lets `threshold` reservations through per window. A successful
        compare must follow with record_success(), a failed one with
        note_failure().
        """
        now = self._clock()
        return self._store.reserve_login_attempt(account.id, now, now - self._window, self._config.threshold)

    def record_failure(self, account: Account, source_ip: str | None = None) -> int:
        """Count one failed login and return the account's new consecutive-failure count."""
        now = self._clock()
        count = self._store.record_login_failure(account.id, now, now - self._window)
        return self.note_failure(account, count, source_ip)

    def note_failure(self, account: Account, count: int, source_ip: str | None = None) -> int:
        """Log the lock when a counted failure reaches the threshold. Returns count."""
        if count == self._config.threshold:
            logger.warning(
                "Account %s locked for %ds after %d failed logins (last from %s)",
                account.id,
                self._config.window_seconds,
                count,
                source_ip or "unknown",
            )
        return count

    def record_success(self, account: Account) -> None:
        self._store.record_login_success(account.id, self._clock())
