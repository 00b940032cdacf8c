"""
tests/test_api_auth.py -- Integration tests for the public /api/v1/auth routes.

Covers:
  - register: 201, duplicate 409, validation 422 in the error envelope
  - login: token pair with Cache-Control no-store; uniform 401 on failure
  - lockout over HTTP: 423 after five failures
  - refresh rotation and replay rejection; logout
  - verify-email, forgot-password and reset-password flows
  - general per-IP throttle: 429 with Retry-After, health exempt
  - throttle counters are taken off the event loop
  - disabled OAuth providers are refused
"""

from __future__ import annotations

from unittest.mock import patch

from conftest import make_settings

PASSWORD = "correct-horse-1"


def _register(client, email="alice@example.com", password=PASSWORD):
    return client.post("/api/v1/auth/register", json={"email": email, "password": password, "full_name": "Alice"})


def _login(client, email="alice@example.com", password=PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


def test_register_returns_public_user(api_client):
    client, _, _ = api_client
    resp = _register(client)
    assert resp.status_code == 201
    data = resp.json()
    assert data["email"] == "alice@example.com"
    assert data["has_password"] is True
    assert data["email_verified"] is False
    assert "hashed_password" not in data


def test_register_duplicate_is_conflict(api_client):
    client, _, _ = api_client
    _register(client)
    resp = _register(client, email="ALICE@example.com")
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_register_short_password_is_validation_error(api_client):
    client, _, _ = api_client
    resp = _register(client, password="short")
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


def test_login_returns_tokens_no_store(api_client):
    client, _, _ = api_client
    _register(client)
    resp = _login(client)
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    data = resp.json()
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == 900
    assert data["user"]["email"] == "alice@example.com"

    me = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {data['access_token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == "alice@example.com"


def test_login_failures_are_uniform(api_client):
    client, _, _ = api_client
    _register(client)
    wrong_pw = _login(client, password="wrong-password")
    no_user = _login(client, email="nobody@example.com")
    assert wrong_pw.status_code == no_user.status_code == 401
    assert wrong_pw.json() == no_user.json()
    assert wrong_pw.json()["error"]["code"] == "invalid_credentials"


def test_lockout_returns_423(api_client):
    client, _, _ = api_client
    _register(client)
    for _ in range(5):
        assert _login(client, password="wrong-password").status_code == 401
    resp = _login(client)
    assert resp.status_code == 423
    assert resp.json()["error"]["code"] == "account_locked"
    assert resp.headers["Cache-Control"] == "no-store"


def test_refresh_rotates_and_rejects_replay(api_client):
    client, _, _ = api_client
    _register(client)
    first = _login(client).json()["refresh_token"]

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": first})
    assert resp.status_code == 200
    second = resp.json()["refresh_token"]
    assert second != first

    replay = client.post("/api/v1/auth/refresh", json={"refresh_token": first})
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "invalid_token"


def test_logout_revokes_refresh_token(api_client):
    client, _, _ = api_client
    _register(client)
    refresh = _login(client).json()["refresh_token"]
    assert client.post("/api/v1/auth/logout", json={"refresh_token": refresh}).status_code == 200
    assert client.post("/api/v1/auth/refresh", json={"refresh_token": refresh}).status_code == 401
    # Logging out twice, or with garbage, still succeeds.
    assert client.post("/api/v1/auth/logout", json={"refresh_token": "garbage"}).status_code == 200


def test_verify_email(api_client):
    client, _, services = api_client
    _register(client)
    token = services.auth.notifier.send_verification_email.call_args.args[2]
    resp = client.post("/api/v1/auth/verify-email", json={"token": token})
    assert resp.status_code == 200
    assert resp.json()["message"] == "Email verified."
    again = client.post("/api/v1/auth/verify-email", json={"token": token})
    assert again.json()["message"] == "Email already verified."


def test_forgot_password_does_not_reveal_accounts(api_client):
    client, _, _ = api_client
    _register(client)
    known = client.post("/api/v1/auth/forgot-password", json={"email": "alice@example.com"})
    unknown = client.post("/api/v1/auth/forgot-password", json={"email": "nobody@example.com"})
    assert known.status_code == unknown.status_code == 202
    assert known.json() == unknown.json()


def test_reset_password_flow(api_client):
    client, _, services = api_client
    _register(client)
    client.post("/api/v1/auth/forgot-password", json={"email": "alice@example.com"})
    token = services.auth.notifier.send_password_reset_email.call_args.args[2]

    resp = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "brand-new-pass-1"})
    assert resp.status_code == 200
    reused = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "other-pass-123"})
    assert reused.status_code == 401
    assert _login(client, password="brand-new-pass-1").status_code == 200


def test_resend_verification_is_accepted(api_client):
    client, _, services = api_client
    _register(client)
    resp = client.post("/api/v1/auth/resend-verification", json={"email": "alice@example.com"})
    assert resp.status_code == 202
    assert services.auth.notifier.send_verification_email.call_count == 2


def test_general_throttle(api_client):
    client, _, _ = api_client
    client.app.state.settings = make_settings(global_rate_limit=3)
    statuses = [client.get("/api/v1/auth/providers").status_code for _ in range(4)]
    assert statuses == [200, 200, 200, 429]
    throttled = client.get("/api/v1/auth/providers")
    assert throttled.json()["error"]["code"] == "rate_limited"
    assert int(throttled.headers["Retry-After"]) > 0
    assert client.get("/api/v1/health").status_code == 200


def test_general_throttle_counts_in_the_threadpool(api_client):
    client, _, services = api_client
    client.app.state.settings = make_settings(global_rate_limit=1)
    offloaded = []

    async def recording_threadpool(func, *args):
        offloaded.append(func)
        return func(*args)

    with patch("api.main.run_in_threadpool", new=recording_threadpool):
        assert client.get("/api/v1/auth/providers").status_code == 200
        assert client.get("/api/v1/auth/providers").status_code == 429
    assert offloaded.count(services.limiter.check_and_increment) == 2
    assert services.limiter.retry_after in offloaded


def test_disabled_oauth_provider_is_refused(api_client):
    client, _, _ = api_client
    resp = client.get("/api/v1/auth/oauth/github/login")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "oauth_failed"
