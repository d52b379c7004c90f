"""Tests for AuthService in auth/service.py.

Runs against both CredentialStore implementations (see the store fixture).

Covers:
- login happy path: token pair plus public account fields, no hash
- unknown email, wrong password, inactive and locked accounts
- lockout end to end: a correct password does not end a lock early
- parallel wrong guesses cannot exceed the threshold
- refresh rotation and reuse detection through the service
- logout (single session) and logout_account (every session)
- verify_role_access re-reads the role, so a downgrade is immediate
- activity log entries for each outcome
"""

import threading
from dataclasses import asdict

import pytest

from auth.errors import (
    AccountInactive,
    AccountLocked,
    InvalidCredentials,
    TokenRevoked,
)
from auth.ledgers import RefreshTokenLedger
from auth.lockout import LockoutConfig, LockoutPolicy
from auth.memory import MemoryCredentialStore
from auth.models import Account, AuthEventType, Role
from auth.service import AuthService
from auth.tokens import TokenCodec, TokenConfig
from tests.conftest import PASSWORD, PASSWORD_HASH, TEST_SECRET, WRONG_PASSWORD, FakeClock


def _events(store, account_id):
    return [e.event for e in store.list_events(account_id)]


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_success_returns_tokens_and_public_account(auth_service, codec, clock, make_account):
    account = make_account(role=Role.head)
    result = auth_service.login("A@X.com", PASSWORD, "10.0.0.1", "pytest")

    claims = codec.verify_access_token(result.tokens.access_token)
    assert claims.account_id == account.id
    assert claims.role is Role.head
    assert result.tokens.refresh_token
    assert result.tokens.access_expires_in == 900
    assert result.account.email == "a@x.com"
    assert result.account.last_login == clock.now
    assert "password_hash" not in asdict(result.account)


def test_login_unknown_email_is_invalid_credentials(auth_service, store):
    with pytest.raises(InvalidCredentials):
        auth_service.login("nobody@x.com", PASSWORD)


def test_login_wrong_password_counts_failure(auth_service, store, make_account):
    account = make_account()
    with pytest.raises(InvalidCredentials):
        auth_service.login("a@x.com", WRONG_PASSWORD, "10.0.0.1")
    assert store.find_account_by_id(account.id).failed_login_attempts == 1
    assert _events(store, account.id) == [AuthEventType.login_failed]


def test_login_inactive_account(auth_service, store, make_account):
    account = make_account(is_active=False)
    with pytest.raises(AccountInactive):
        auth_service.login("a@x.com", PASSWORD)
    assert store.find_account_by_id(account.id).failed_login_attempts == 0


def test_lockout_blocks_correct_password_until_window_elapses(auth_service, store, clock, make_account):
    account = make_account()
    for _ in range(5):
        with pytest.raises(InvalidCredentials):
            auth_service.login("a@x.com", WRONG_PASSWORD)

    with pytest.raises(AccountLocked):
        auth_service.login("a@x.com", PASSWORD)
    # Blocked attempts are not counted.
    assert store.find_account_by_id(account.id).failed_login_attempts == 5

    clock.advance(minutes=15)
    result = auth_service.login("a@x.com", PASSWORD)
    assert result.account.id == account.id
    assert store.find_account_by_id(account.id).failed_login_attempts == 0
    assert AuthEventType.login_locked in _events(store, account.id)


def test_success_resets_failure_streak(auth_service, store, make_account):
    account = make_account()
    for _ in range(4):
        with pytest.raises(InvalidCredentials):
            auth_service.login("a@x.com", WRONG_PASSWORD)
    auth_service.login("a@x.com", PASSWORD)
    for _ in range(4):
        with pytest.raises(InvalidCredentials):
            auth_service.login("a@x.com", WRONG_PASSWORD)
    # 4 + 4 failures with a success in between never reach the threshold.
    auth_service.login("a@x.com", PASSWORD)
    assert store.find_account_by_id(account.id).failed_login_attempts == 0


def test_parallel_guesses_never_exceed_threshold():
    store = MemoryCredentialStore()
    clock = FakeClock()
    codec = TokenCodec(TokenConfig(secret_key=TEST_SECRET))
    service = AuthService(
        store,
        codec,
        LockoutPolicy(store, LockoutConfig(threshold=3, window_seconds=900), clock=clock),
        RefreshTokenLedger(store, codec, clock=clock),
        clock=clock,
    )
    account = store.insert_account(Account(email="a@x.com", name="Ada", password_hash=PASSWORD_HASH))

    outcomes: list[str] = []
    barrier = threading.Barrier(10)

    def worker():
        barrier.wait()
        try:
            service.login("a@x.com", WRONG_PASSWORD)
        except InvalidCredentials:
            outcomes.append("compared")
        except AccountLocked:
            outcomes.append("locked")

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("compared") == 3
    assert outcomes.count("locked") == 7
    assert store.find_account_by_id(account.id).failed_login_attempts == 3


# ---------------------------------------------------------------------------
# Refresh / logout
# ---------------------------------------------------------------------------


def test_refresh_rotates_and_detects_reuse(auth_service, store, make_account):
    account = make_account()
    r1 = auth_service.login("a@x.com", PASSWORD).tokens.refresh_token
    pair = auth_service.refresh(r1, "10.0.0.9")
    assert pair.refresh_token != r1
    assert pair.access_token

    with pytest.raises(TokenRevoked):
        auth_service.refresh(r1)
    with pytest.raises(TokenRevoked):
        auth_service.refresh(pair.refresh_token)
    assert AuthEventType.refresh_reuse_detected in _events(store, account.id)


def test_refresh_for_deactivated_account_revokes_sessions(auth_service, store, make_account):
    account = make_account()
    laptop = auth_service.login("a@x.com", PASSWORD).tokens.refresh_token
    phone = auth_service.login("a@x.com", PASSWORD).tokens.refresh_token
    store.update_account(account.id, is_active=False)

    with pytest.raises(AccountInactive):
        auth_service.refresh(laptop)
    with pytest.raises(TokenRevoked):
        auth_service.refresh(phone)


def test_logout_is_idempotent(auth_service, make_account):
    make_account()
    refresh_token = auth_service.login("a@x.com", PASSWORD).tokens.refresh_token
    assert auth_service.logout(refresh_token) is True
    assert auth_service.logout(refresh_token) is False
    assert auth_service.logout("never-issued") is False
    with pytest.raises(TokenRevoked):
        auth_service.refresh(refresh_token)


def test_logout_account_ends_every_session(auth_service, make_account):
    account = make_account()
    tokens = [auth_service.login("a@x.com", PASSWORD).tokens.refresh_token for _ in range(2)]
    assert auth_service.logout_account(account.id) == 2
    for token in tokens:
        with pytest.raises(TokenRevoked):
            auth_service.refresh(token)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "role, required, exact, allowed",
    [
        (Role.admin, Role.user, False, True),
        (Role.admin, Role.head, False, True),
        (Role.head, Role.admin, False, False),
        (Role.user, Role.head, False, False),
        (Role.head, Role.head, True, True),
        (Role.admin, Role.head, True, False),
    ],
)
def test_verify_role_access_policy(auth_service, make_account, role, required, exact, allowed):
    account = make_account(role=role)
    assert auth_service.verify_role_access(account.id, required, exact=exact) is allowed


def test_role_downgrade_takes_effect_immediately(auth_service, store, make_account):
    account = make_account(role=Role.admin)
    access_token = auth_service.login("a@x.com", PASSWORD).tokens.access_token
    assert auth_service.verify_role_access(account.id, Role.admin)

    store.update_account(account.id, role=Role.user)
    # The old token still claims admin, the store no longer agrees.
    assert auth_service.authenticate(access_token).role is Role.admin
    assert not auth_service.verify_role_access(account.id, Role.admin)


def test_verify_role_access_unknown_or_inactive(auth_service, store, make_account):
    account = make_account(role=Role.admin)
    assert not auth_service.verify_role_access("missing", Role.user)
    store.update_account(account.id, is_active=False)
    assert not auth_service.verify_role_access(account.id, Role.user)
