from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from starterauth.app import app
from starterauth.config import Settings
from starterauth.service.errors import ServiceError
from starterauth.service.oauth import GoogleOAuthClient
from starterauth.service.runtime import get_runtime, reset_runtime_for_tests

GOOGLE_USER = {"id": "g-123", "email": "oauth@example.com", "name": "OAuth User", "picture": "https://x/p.png"}


def _configured_settings(**overrides):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        oauth_google_client_id="client-id",
        oauth_google_client_secret="client-secret",
        oauth_google_redirect_uri="http://localhost:8000/v1/auth/google/callback",
        **overrides,
    )


def _state_from(url):
    return parse_qs(urlparse(url).query)["state"][0]


async def test_unconfigured_client_refuses():
    client = GoogleOAuthClient(Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!"))
    assert not client.is_configured
    with pytest.raises(ServiceError) as excinfo:
        await client.authorization_url()
    assert excinfo.value.status_code == 503


async def test_authorization_url_and_complete():
    client = GoogleOAuthClient(_configured_settings())
    url = await client.authorization_url()
    query = parse_qs(urlparse(url).query)
    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert query["client_id"] == ["client-id"]
    assert query["scope"] == ["openid email profile"]

    client.register_oauth_code("code-1", GOOGLE_USER)
    identity = await client.complete("code-1", query["state"][0])
    assert identity.provider == "google"
    assert identity.provider_id == "g-123"
    assert identity.email == "oauth@example.com"
    assert identity.avatar_url == "https://x/p.png"


async def test_state_is_single_use():
    client = GoogleOAuthClient(_configured_settings())
    state = _state_from(await client.authorization_url())
    client.register_oauth_code("code-1", GOOGLE_USER)
    assert await client.complete("code-1", state) is not None
    client.register_oauth_code("code-2", GOOGLE_USER)
    assert await client.complete("code-2", state) is None
    assert await client.complete("code-2", "forged") is None


async def test_userinfo_without_id_is_rejected():
    client = GoogleOAuthClient(_configured_settings())
    state = _state_from(await client.authorization_url())
    client.register_oauth_code("code-1", {"email": "oauth@example.com"})
    assert await client.complete("code-1", state) is None


def test_insecure_redirect_uri_rejected():
    client = GoogleOAuthClient(
        _configured_settings().model_copy(update={"oauth_google_redirect_uri": "http://evil.example/cb"})
    )
    with pytest.raises(ValueError):
        client._validate_redirect_uri(client.settings.oauth_google_redirect_uri)


@pytest.fixture
def oauth_client(monkeypatch):
    monkeypatch.setenv("OAUTH_GOOGLE_CLIENT_ID", "client-id")
    monkeypatch.setenv("OAUTH_GOOGLE_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("OAUTH_GOOGLE_REDIRECT_URI", "http://localhost:8000/v1/auth/google/callback")
    monkeypatch.setenv("FRONTEND_URL", "http://localhost:5173")
    reset_runtime_for_tests()
    return TestClient(app, follow_redirects=False)


def test_google_redirect_and_callback(oauth_client):
    start = oauth_client.get("/v1/auth/google")
    assert start.status_code == 307
    state = _state_from(start.headers["location"])

    get_runtime().oauth.register_oauth_code("code-1", GOOGLE_USER)
    done = oauth_client.get("/v1/auth/google/callback", params={"code": "code-1", "state": state})
    assert done.status_code == 302
    location = urlparse(done.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == "http://localhost:5173/auth/callback"
    params = parse_qs(location.query)
    assert params["provider"] == ["google"]
    assert params["access_token"] and params["refresh_token"]

    user = get_runtime().store.get_user_by_email("oauth@example.com")
    assert user.provider == "google"
    assert user.is_email_confirmed


def test_mixed_case_google_email_blocks_second_registration(oauth_client):
    state = _state_from(oauth_client.get("/v1/auth/google").headers["location"])
    get_runtime().oauth.register_oauth_code("code-1", {**GOOGLE_USER, "email": "Mixed@Example.com"})
    done = oauth_client.get("/v1/auth/google/callback", params={"code": "code-1", "state": state})
    assert done.status_code == 302

    resp = oauth_client.post(
        "/v1/auth/register", json={"email": "Mixed@Example.com", "password": "Password123!"}
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "AUTH.EMAIL_ALREADY_EXISTS"
    assert [u.email for u in get_runtime().store.list_users()] == ["mixed@example.com"]


def test_google_callback_failure_redirects_to_error_page(oauth_client):
    resp = oauth_client.get("/v1/auth/google/callback", params={"code": "x", "state": "forged"})
    assert resp.status_code == 302
    assert resp.headers["location"] == "http://localhost:5173/auth/error?message=Google%20login%20failed"

    missing = oauth_client.get("/v1/auth/google/callback")
    assert missing.headers["location"].endswith("/auth/error?message=Google%20login%20failed")


def test_google_login_unconfigured_returns_envelope():
    resp = TestClient(app, follow_redirects=False).get("/v1/auth/google")
    assert resp.status_code == 503
    assert resp.json()["code"] == "SYSTEM.SERVICE_UNAVAILABLE"
