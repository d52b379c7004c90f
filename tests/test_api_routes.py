"""Integration tests for the HTTP adapter (api/routes/v1/auth.py, api/routes/v1/admin.py).

Covers:
  - login returns a token pair, no-store caching, and never the password hash
  - every login failure kind produces the same 401 body
  - validation errors never echo submitted values
  - refresh rotation and reuse detection over HTTP
  - logout / logout-all / me with and without bearer tokens
  - access-token failures keep distinct codes (token_expired vs invalid_token)
  - forgot / reset / change password flows
  - admin endpoint re-checks the caller's current role
  - per-IP rate limit on login returns 429
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from auth.models import Role
from tests.conftest import PASSWORD, WRONG_PASSWORD

NEW_PASSWORD = "a-brand-new-passphrase"


def _reset_token(api) -> str:
    body = api.email_sender.outbox[-1].body
    url = next(line for line in body.splitlines() if line.startswith("http"))
    return parse_qs(urlparse(url).query)["token"][0]


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_success(api):
    account = api.create_account()
    resp = api.login("A@X.com")
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    data = resp.json()
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == 900
    assert data["access_token"] and data["refresh_token"]
    assert data["account"]["id"] == account.id
    assert data["account"]["role"] == "user"
    assert "password_hash" not in resp.text


def test_login_failures_are_indistinguishable(api):
    api.create_account()
    api.create_account(email="off@x.com", is_active=False)
    api.create_account(email="locked@x.com")
    for _ in range(5):
        api.login("locked@x.com", WRONG_PASSWORD)

    responses = [
        api.login("nobody@x.com"),
        api.login("a@x.com", WRONG_PASSWORD),
        api.login("off@x.com"),
        api.login("locked@x.com"),
    ]
    assert {r.status_code for r in responses} == {401}
    assert len({r.text for r in responses}) == 1
    assert responses[0].json()["error"]["code"] == "invalid_credentials"
    assert responses[0].headers["WWW-Authenticate"] == "Bearer"


def test_login_validation_error_does_not_echo_password(api):
    resp = api.client.post("/api/v1/auth/login", json={"email": "not-an-email", "password": "hunter2-secret"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"
    assert "hunter2-secret" not in resp.text


# ---------------------------------------------------------------------------
# Refresh / logout / me
# ---------------------------------------------------------------------------


def test_refresh_rotation_and_reuse(api):
    api.create_account()
    r1 = api.login().json()["refresh_token"]

    resp = api.client.post("/api/v1/auth/refresh", json={"refresh_token": r1})
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    r2 = resp.json()["refresh_token"]
    assert r2 != r1

    replay = api.client.post("/api/v1/auth/refresh", json={"refresh_token": r1})
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "invalid_refresh_token"
    assert api.client.post("/api/v1/auth/refresh", json={"refresh_token": r2}).status_code == 401


def test_refresh_unknown_token_same_answer_as_revoked(api):
    resp = api.client.post("/api/v1/auth/refresh", json={"refresh_token": "never-issued"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_refresh_token"


def test_logout_always_succeeds(api):
    api.create_account()
    refresh_token = api.login().json()["refresh_token"]
    for token in (refresh_token, refresh_token, "never-issued"):
        resp = api.client.post("/api/v1/auth/logout", json={"refresh_token": token})
        assert resp.status_code == 200
    assert api.client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token}).status_code == 401


def test_logout_all_requires_bearer_and_revokes_sessions(api):
    api.create_account()
    assert api.client.post("/api/v1/auth/logout-all").status_code == 401

    refresh_token = api.login().json()["refresh_token"]
    resp = api.client.post("/api/v1/auth/logout-all", headers=api.bearer())
    assert resp.status_code == 200
    assert "2 session(s)" in resp.json()["message"]
    assert api.client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token}).status_code == 401


def test_me(api):
    account = api.create_account(role=Role.head)
    resp = api.client.get("/api/v1/auth/me", headers=api.bearer())
    assert resp.status_code == 200
    assert resp.json()["id"] == account.id
    assert resp.json()["role"] == "head"


def test_me_without_token(api):
    resp = api.client.get("/api/v1/auth/me")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_me_with_forged_token(api):
    resp = api.client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.token"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_token"


def test_me_with_expired_token(api):
    account = api.create_account()
    codec = api.client.app.state.codec
    expired = codec.issue_access_token(account, now=datetime.now(timezone.utc) - timedelta(hours=1))
    resp = api.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {expired}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "token_expired"


# ---------------------------------------------------------------------------
# Password flows
# ---------------------------------------------------------------------------


def test_forgot_password_uniform_202(api):
    api.create_account()
    known = api.client.post("/api/v1/auth/password/forgot", json={"email": "a@x.com"})
    unknown = api.client.post("/api/v1/auth/password/forgot", json={"email": "nobody@x.com"})
    assert known.status_code == unknown.status_code == 202
    assert known.json() == unknown.json()
    assert len(api.email_sender.outbox) == 1


def test_reset_password_flow(api):
    api.create_account()
    old_refresh = api.login().json()["refresh_token"]
    api.client.post("/api/v1/auth/password/forgot", json={"email": "a@x.com"})
    token = _reset_token(api)

    resp = api.client.post("/api/v1/auth/password/reset", json={"token": token, "new_password": NEW_PASSWORD})
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"

    again = api.client.post("/api/v1/auth/password/reset", json={"token": token, "new_password": NEW_PASSWORD})
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "invalid_reset_token"
    assert api.client.post("/api/v1/auth/refresh", json={"refresh_token": old_refresh}).status_code == 401
    assert api.login(password=NEW_PASSWORD).status_code == 200


def test_reset_password_short_password_rejected(api):
    resp = api.client.post("/api/v1/auth/password/reset", json={"token": "t", "new_password": "short"})
    assert resp.status_code == 422


def test_reset_password_over_72_bytes_rejected_without_burning_link(api):
    api.create_account()
    api.client.post("/api/v1/auth/password/forgot", json={"email": "a@x.com"})
    token = _reset_token(api)

    for too_long in ("é" * 60, "x" * 100):
        resp = api.client.post("/api/v1/auth/password/reset", json={"token": token, "new_password": too_long})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    resp = api.client.post("/api/v1/auth/password/reset", json={"token": token, "new_password": NEW_PASSWORD})
    assert resp.status_code == 200


def test_change_password_over_72_bytes_rejected(api):
    api.create_account()
    resp = api.client.post(
        "/api/v1/auth/password/change",
        json={"current_password": PASSWORD, "new_password": "é" * 40},
        headers=api.bearer(),
    )
    assert resp.status_code == 422
    assert api.login(password=PASSWORD).status_code == 200


def test_change_password(api):
    api.create_account()
    headers = api.bearer()
    wrong = api.client.post(
        "/api/v1/auth/password/change",
        json={"current_password": WRONG_PASSWORD, "new_password": NEW_PASSWORD},
        headers=headers,
    )
    assert wrong.status_code == 400
    assert wrong.json()["error"]["code"] == "invalid_credentials"

    resp = api.client.post(
        "/api/v1/auth/password/change",
        json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
        headers=headers,
    )
    assert resp.status_code == 200
    assert api.login(password=PASSWORD).status_code == 401
    assert api.login(password=NEW_PASSWORD).status_code == 200


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


def test_admin_events_requires_current_admin_role(api):
    admin = api.create_account(email="admin@x.com", role=Role.admin)
    user = api.create_account()
    api.login(password=WRONG_PASSWORD)
    headers = api.bearer("admin@x.com")

    resp = api.client.get(f"/api/v1/admin/accounts/{user.id}/events", headers=headers)
    assert resp.status_code == 200
    assert [e["event"] for e in resp.json()] == ["login_failed"]

    assert api.client.get("/api/v1/admin/accounts/missing/events", headers=headers).status_code == 404
    assert api.client.get(f"/api/v1/admin/accounts/{admin.id}/events", headers=api.bearer()).status_code == 403

    # Downgrade: the old token still says admin, the store does not.
    api.store.update_account(admin.id, role=Role.user)
    resp = api.client.get(f"/api/v1/admin/accounts/{user.id}/events", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


def test_login_rate_limited_per_ip(api):
    from api.limiter import limiter

    limiter.enabled = True
    limiter.reset()
    try:
        statuses = [api.login("nobody@x.com").status_code for _ in range(11)]
    finally:
        limiter.reset()
        limiter.enabled = False
    assert statuses[:10] == [401] * 10
    assert statuses[10] == 429
