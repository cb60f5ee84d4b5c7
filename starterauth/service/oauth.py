from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from urllib.parse import urlencode, urlparse

import httpx

from starterauth.config import Settings
from starterauth.logging import get_logger
from starterauth.service.auth import ExternalIdentity
from starterauth.service.errors import ErrorCodes, ServiceError
from starterauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

GOOGLE = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}

STATE_TTL = timedelta(minutes=10)


class GoogleOAuthClient:
    """Authorization-code flow against Google.

    ``state`` values are single use: they are stored in Redis when a cache is
    available (so any worker can complete the flow) and in process memory
    otherwise.
    """

    provider = "google"

    def __init__(
        self,
        settings: Settings,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.timeout = timeout
        self._state_lock = threading.Lock()
        self._states: dict[str, datetime] = {}
        self._code_registry: dict[str, dict] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def is_configured(self) -> bool:
        return bool(
            self.settings.oauth_google_client_id
            and self.settings.oauth_google_client_secret
            and self.settings.oauth_google_redirect_uri
        )

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"} or not parsed.netloc:
            raise ValueError("OAuth redirect URI must be an absolute http(s) URL")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValueError("Insecure redirect URI not allowed outside localhost")
        return redirect_uri

    async def authorization_url(self) -> str:
        """Create a state value and return the consent-screen URL."""
        if not self.is_configured:
            logger.warning("oauth_not_configured", provider=self.provider)
            raise ServiceError(
                "google sign-in is not configured",
                status_code=503,
                error_code=ErrorCodes.SYSTEM.SERVICE_UNAVAILABLE,
            )
        redirect_uri = self._validate_redirect_uri(self.settings.oauth_google_redirect_uri)
        state = uuid.uuid4().hex
        expires_at = self._now() + STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, self.provider, expires_at)
        else:
            with self._state_lock:
                self._prune_states()
                self._states[state] = expires_at

        params = {
            "client_id": self.settings.oauth_google_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": GOOGLE["scope"],
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE['auth_url']}?{urlencode(params)}"

    def _prune_states(self) -> None:
        now = self._now()
        for key in [k for k, exp in self._states.items() if exp < now]:
            self._states.pop(key, None)

    async def _consume_state(self, state: str) -> bool:
        if self.cache:
            stored = await self.cache.pop_oauth_state(state)
            if not stored:
                return False
            provider, expires_at = stored
            return provider == self.provider and expires_at >= self._now()
        with self._state_lock:
            expires_at = self._states.pop(state, None)
        return expires_at is not None and expires_at >= self._now()

    def register_oauth_code(self, code: str, userinfo: dict) -> None:
        """Pre-register the userinfo a code exchange should yield (tests, offline demos)."""
        self._code_registry[code] = userinfo

    async def complete(self, code: str, state: str) -> Optional[ExternalIdentity]:
        """Validate ``state`` and exchange ``code`` for the user's identity.

        Returns None on any failure; the reason is logged.
        """
        if not await self._consume_state(state):
            logger.warning("oauth_state_invalid", provider=self.provider)
            return None
        userinfo = self._code_registry.pop(code, None)
        if userinfo is None:
            userinfo = await self._exchange_code(code)
        if userinfo is None:
            return None
        return self._parse_userinfo(userinfo)

    async def _exchange_code(self, code: str) -> Optional[dict]:
        if not self.is_configured:
            logger.error("oauth_credentials_missing", provider=self.provider)
            return None
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                token_response = await client.post(
                    GOOGLE["token_url"],
                    data={
                        "client_id": self.settings.oauth_google_client_id,
                        "client_secret": self.settings.oauth_google_client_secret,
                        "code": code,
                        "redirect_uri": self.settings.oauth_google_redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.provider)
                    return None

                userinfo_response = await client.get(
                    GOOGLE["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.provider,
                status_code=e.response.status_code,
                error=str(e),
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("oauth_exchange_error", provider=self.provider, error=str(e))
            return None

        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider=self.provider)
            return None
        logger.info("oauth_exchange_success", provider=self.provider)
        return userinfo

    def _parse_userinfo(self, userinfo: dict) -> Optional[ExternalIdentity]:
        provider_id = userinfo.get("id") or userinfo.get("sub")
        if not provider_id:
            logger.error("oauth_identity_missing_uid", provider=self.provider)
            return None
        email = userinfo.get("email")
        return ExternalIdentity(
            provider=self.provider,
            provider_id=str(provider_id),
            email=email,
            name=userinfo.get("name") or (email.split("@", 1)[0] if email else None),
            avatar_url=userinfo.get("picture"),
        )
