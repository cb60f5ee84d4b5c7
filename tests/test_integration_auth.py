"""End-to-end auth flows through the FastAPI app with the in-memory store."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from starterauth.app import app
from starterauth.service.runtime import get_runtime
from starterauth.storage.models import utcnow

PASSWORD = "Password123!"


@pytest.fixture
def client():
    return TestClient(app)


def _register_and_confirm(client, email="user@example.com", password=PASSWORD, name="Test User"):
    resp = client.post("/v1/auth/register", json={"email": email, "password": password, "name": name})
    assert resp.status_code == 201, resp.text
    user = get_runtime().store.get_user_by_email(email)
    resp = client.get("/v1/auth/confirm-email", params={"token": user.email_confirmation_token})
    assert resp.status_code == 200, resp.text
    return user


def _login(client, email="user@example.com", password=PASSWORD):
    resp = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_register_confirm_login(client):
    resp = client.post(
        "/v1/auth/register", json={"email": "User@Example.com", "password": PASSWORD, "name": "Test"}
    )
    assert resp.status_code == 201
    assert resp.json() == {"message": "Please check your email to confirm your account"}

    user = get_runtime().store.get_user_by_email("user@example.com")
    assert user is not None and not user.is_email_confirmed

    blocked = client.post("/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD})
    assert blocked.status_code == 401
    assert blocked.json()["code"] == "AUTH.EMAIL_NOT_CONFIRMED"

    confirmed = client.get("/v1/auth/confirm-email", params={"token": user.email_confirmation_token})
    assert confirmed.json() == {"message": "Email confirmed successfully"}

    resp = client.post("/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    body = resp.json()
    assert set(body) == {"user", "accessToken", "refreshToken"}
    assert body["user"]["email"] == "user@example.com"
    assert body["user"]["isEmailConfirmed"] is True
    assert "passwordHash" not in body["user"]
    assert resp.cookies.get("token") == body["accessToken"]
    assert resp.cookies.get("refresh_token") == body["refreshToken"]


def test_login_cookie_attributes(client):
    _register_and_confirm(client)
    resp = client.post("/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD})
    set_cookies = resp.headers.get_list("set-cookie")
    access = next(c for c in set_cookies if c.startswith("token="))
    refresh = next(c for c in set_cookies if c.startswith("refresh_token="))
    assert "HttpOnly" in access
    assert "Max-Age=86400" in access
    assert "Path=/" in access
    assert "samesite=lax" in access.lower()
    assert "Secure" not in access
    assert "Max-Age=604800" in refresh


def test_register_duplicate_email(client):
    _register_and_confirm(client)
    resp = client.post("/v1/auth/register", json={"email": "user@example.com", "password": PASSWORD})
    assert resp.status_code == 409
    assert resp.json()["code"] == "AUTH.EMAIL_ALREADY_EXISTS"


def test_invalid_credentials_are_uniform(client):
    _register_and_confirm(client)
    wrong = client.post("/v1/auth/login", json={"email": "user@example.com", "password": "Wrong123!"})
    unknown = client.post("/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()
    assert wrong.json()["code"] == "AUTH.INVALID_CREDENTIALS"


def test_confirm_email_errors(client):
    resp = client.get("/v1/auth/confirm-email", params={"token": "nope"})
    assert resp.status_code == 404
    assert resp.json()["code"] == "AUTH.INVALID_TOKEN"

    client.post("/v1/auth/register", json={"email": "late@example.com", "password": PASSWORD})
    store = get_runtime().store
    user = store.get_user_by_email("late@example.com")
    store.update_user(user.id, email_confirmation_expires=utcnow() - timedelta(minutes=1))
    resp = client.get("/v1/auth/confirm-email", params={"token": user.email_confirmation_token})
    assert resp.status_code == 401
    assert resp.json()["code"] == "AUTH.CONFIRMATION_TOKEN_EXPIRED"


def test_refresh_with_bearer_rotates(client):
    _register_and_confirm(client)
    tokens = _login(client)
    client.cookies.clear()

    resp = client.post(
        "/v1/auth/refresh", headers={"Authorization": f"Bearer {tokens['refreshToken']}"}
    )
    assert resp.status_code == 200
    rotated = resp.json()
    assert rotated["refreshToken"] != tokens["refreshToken"]
    assert rotated["user"]["email"] == "user@example.com"

    client.cookies.clear()
    replay = client.post(
        "/v1/auth/refresh", headers={"Authorization": f"Bearer {tokens['refreshToken']}"}
    )
    assert replay.status_code == 401
    assert replay.json()["code"] == "AUTH.INVALID_TOKEN"


def test_refresh_falls_back_to_cookie(client):
    _register_and_confirm(client)
    tokens = _login(client)
    resp = client.post("/v1/auth/refresh")
    assert resp.status_code == 200
    assert resp.json()["refreshToken"] != tokens["refreshToken"]


def test_refresh_without_token(client):
    resp = client.post("/v1/auth/refresh")
    assert resp.status_code == 401
    assert resp.json()["code"] == "AUTH.INVALID_TOKEN"


def test_logout_revokes_and_clears_cookies(client):
    _register_and_confirm(client)
    tokens = _login(client)
    resp = client.post("/v1/auth/logout")
    assert resp.status_code == 200
    assert resp.json() == {"message": "Logged out successfully"}
    assert get_runtime().store.get_refresh_token(tokens["refreshToken"]) is None
    cleared = resp.headers.get_list("set-cookie")
    assert any(c.startswith("token=") for c in cleared)
    assert any(c.startswith("refresh_token=") for c in cleared)

    again = client.post(
        "/v1/auth/logout", headers={"Authorization": f"Bearer {tokens['refreshToken']}"}
    )
    assert again.status_code == 200


def test_logout_without_token_still_succeeds(client):
    resp = client.post("/v1/auth/logout")
    assert resp.status_code == 200


def test_logout_all(client):
    _register_and_confirm(client)
    first = _login(client)
    second = _login(client)
    client.cookies.clear()
    resp = client.post(
        "/v1/auth/logout-all", headers={"Authorization": f"Bearer {second['accessToken']}"}
    )
    assert resp.status_code == 200
    store = get_runtime().store
    assert store.get_refresh_token(first["refreshToken"]) is None
    assert store.get_refresh_token(second["refreshToken"]) is None


def test_forgot_and_reset_password(client):
    user = _register_and_confirm(client)
    generic = "If your email is registered, you will receive a reset link"

    unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})
    assert unknown.json() == {"message": generic}

    resp = client.post("/v1/auth/forgot-password", json={"email": "user@example.com"})
    assert resp.json() == {"message": generic}
    token = get_runtime().store.get_user(user.id).password_reset_token
    assert token

    same = client.post("/v1/auth/reset-password", json={"token": token, "password": PASSWORD})
    assert same.status_code == 400
    assert same.json()["code"] == "AUTH.NEW_PASSWORD_SAME_AS_CURRENT"

    done = client.post("/v1/auth/reset-password", json={"token": token, "password": "Changed123!"})
    assert done.status_code == 200
    assert done.json() == {"message": "Password reset successful"}

    reused = client.post("/v1/auth/reset-password", json={"token": token, "password": "Other123!"})
    assert reused.status_code == 404
    assert reused.json()["code"] == "AUTH.INVALID_TOKEN"

    _login(client, password="Changed123!")


def test_reset_password_requires_strong_password(client):
    resp = client.post("/v1/auth/reset-password", json={"token": "abc", "password": "weakpassword"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION.PASSWORD_TOO_WEAK"


def test_resend_confirmation(client):
    client.post("/v1/auth/register", json={"email": "pending@example.com", "password": PASSWORD})
    store = get_runtime().store
    before = store.get_user_by_email("pending@example.com").email_confirmation_token
    resp = client.post("/v1/auth/resend-confirmation", json={"email": "pending@example.com"})
    assert resp.status_code == 200
    assert store.get_user_by_email("pending@example.com").email_confirmation_token != before

    _register_and_confirm(client)
    resp = client.post("/v1/auth/resend-confirmation", json={"email": "user@example.com"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "AUTH.EMAIL_ALREADY_CONFIRMED"


def test_update_password(client):
    _register_and_confirm(client)
    tokens = _login(client)
    headers = {"Authorization": f"Bearer {tokens['accessToken']}"}

    wrong = client.put(
        "/v1/auth/password",
        json={"currentPassword": "Wrong123!", "newPassword": "Changed123!"},
        headers=headers,
    )
    assert wrong.status_code == 401
    assert wrong.json()["code"] == "AUTH.INVALID_CREDENTIALS"

    ok = client.put(
        "/v1/auth/password",
        json={"currentPassword": PASSWORD, "newPassword": "Changed123!"},
        headers=headers,
    )
    assert ok.status_code == 200
    assert ok.json() == {"message": "Password updated successfully"}


def test_access_token_from_cookie(client):
    _register_and_confirm(client)
    _login(client)
    resp = client.get("/v1/users/whoami")
    assert resp.status_code == 200
    assert resp.json()["email"] == "user@example.com"


def test_expired_access_token(client):
    user = _register_and_confirm(client)
    stale = get_runtime().tokens.issue_access_token(
        user.id, user.email, now=utcnow() - timedelta(hours=3)
    )
    resp = client.get("/v1/users/whoami", headers={"Authorization": f"Bearer {stale}"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "AUTH.TOKEN_EXPIRED"


def test_email_test_endpoint_is_development_only(client):
    resp = client.get("/v1/email/test", params={"to": "someone@example.com"})
    assert resp.status_code == 403
    assert resp.json()["code"] == "AUTH.FORBIDDEN"


def test_health(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["redis"]["status"] == "not_configured"


def test_correlation_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
