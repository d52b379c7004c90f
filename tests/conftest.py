"""
tests/conftest.py -- Shared fixtures for the authcore test suite.

This module provides:
  - FakeClock: a controllable UTC clock injected into every time-dependent component
  - store: the CredentialStore under test, parametrized over the in-memory
    store and SqlCredentialStore on an in-memory SQLite DB, so every service
    test runs against both implementations
  - codec / lockout / ledgers / services wired to that store and clock
  - make_account: factory that inserts an account with a known password
  - api: TestClient with a patched lifespan that wires an in-memory store

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from auth.email import LoggingEmailSender
from auth.ledgers import PasswordResetLedger, RefreshTokenLedger
from auth.lockout import LockoutConfig, LockoutPolicy
from auth.memory import MemoryCredentialStore
from auth.models import Account, Role
from auth.passwords import hash_password
from auth.service import AuthService, PasswordService
from auth.store import SqlCredentialStore
from auth.tokens import TokenCodec, TokenConfig

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"
PASSWORD = "correct-horse-battery"
WRONG_PASSWORD = "not-the-password"

# bcrypt is deliberately slow; hash the shared password once per session.
PASSWORD_HASH = hash_password(PASSWORD)


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


# ---------------------------------------------------------------------------
# Core component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Every service-level test runs once per CredentialStore implementation."""
    if request.param == "memory":
        s = MemoryCredentialStore()
    else:
        s = SqlCredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(TokenConfig(secret_key=TEST_SECRET, access_token_expire_seconds=900))


@pytest.fixture
def lockout(store, clock) -> LockoutPolicy:
    return LockoutPolicy(store, LockoutConfig(threshold=5, window_seconds=900), clock=clock)


@pytest.fixture
def refresh_ledger(store, codec, clock) -> RefreshTokenLedger:
    return RefreshTokenLedger(store, codec, lifetime=timedelta(days=14), clock=clock)


@pytest.fixture
def reset_ledger(store, codec, clock) -> PasswordResetLedger:
    return PasswordResetLedger(store, codec, lifetime=timedelta(minutes=30), clock=clock)


@pytest.fixture
def email_sender() -> LoggingEmailSender:
    return LoggingEmailSender()


@pytest.fixture
def auth_service(store, codec, lockout, refresh_ledger, clock) -> AuthService:
    return AuthService(store, codec, lockout, refresh_ledger, clock=clock)


@pytest.fixture
def password_service(store, reset_ledger, refresh_ledger, email_sender, clock) -> PasswordService:
    return PasswordService(
        store, reset_ledger, refresh_ledger, email_sender, "https://app.example/reset", clock=clock
    )


@pytest.fixture
def make_account(store) -> Callable[..., Account]:
    """Insert an account whose password is PASSWORD unless password_hash is given."""

    def _make(
        email: str = "a@x.com",
        name: str = "Ada",
        role: Role = Role.user,
        is_active: bool = True,
        password_hash: str = PASSWORD_HASH,
    ) -> Account:
        return store.insert_account(
            Account(email=email, name=name, password_hash=password_hash, role=role, is_active=is_active)
        )

    return _make


# ---------------------------------------------------------------------------
# HTTP adapter fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: MemoryCredentialStore
    email_sender: LoggingEmailSender

    def create_account(self, email: str = "a@x.com", role: Role = Role.user, is_active: bool = True) -> Account:
        return self.store.insert_account(
            Account(email=email, name="Test User", password_hash=PASSWORD_HASH, role=role, is_active=is_active)
        )

    def login(self, email: str = "a@x.com", password: str = PASSWORD):
        return self.client.post("/api/v1/auth/login", json={"email": email, "password": password})

    def bearer(self, email: str = "a@x.com") -> dict[str, str]:
        resp = self.login(email)
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around the real app with an isolated in-memory store.

    The lifespan is replaced so no SQLite file or SMTP server is touched.
    base_url uses localhost to satisfy TrustedHostMiddleware. The per-IP
    limiter is disabled: every TestClient request comes from the same address.
    """
    from api.limiter import limiter
    from api.main import app, wire_services
    from core.config import get_settings

    store = MemoryCredentialStore()
    email_sender = LoggingEmailSender()

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, get_settings(), store, email_sender)
        yield

    app.router.lifespan_context = test_lifespan
    limiter.enabled = False
    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, email_sender=email_sender)
    limiter.enabled = True
