from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from starterauth.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_LOCALES_DIR = str(Path(__file__).resolve().parent / "service" / "locales")


class AppEnv(str, Enum):
    """Deployment environments recognised by the API."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the process environment and ``.env``."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/starterauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/starterauth", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for the test suite; enables runtime resets.",
    )
    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("starterauth", "JWT_ISSUER")
    jwt_audience: str = env_field("starterauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    confirmation_token_ttl_hours: int = env_field(24 * 7, "CONFIRMATION_TOKEN_TTL_HOURS")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    access_cookie_max_age_hours: int = env_field(24, "ACCESS_COOKIE_MAX_AGE_HOURS")
    cross_site_cookies: bool = env_field(
        False,
        "CROSS_SITE_COOKIES",
        description="Send auth cookies with SameSite=None in production (frontend on another site).",
    )
    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Starter API", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    cors_allow_origins: str = env_field(
        "http://localhost:5173",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed CORS origins.",
    )
    # Image host
    cloudinary_cloud_name: str | None = env_field(None, "CLOUDINARY_CLOUD_NAME")
    cloudinary_api_key: str | None = env_field(None, "CLOUDINARY_API_KEY")
    cloudinary_api_secret: str | None = env_field(None, "CLOUDINARY_API_SECRET")
    project_name: str = env_field("starterauth", "PROJECT_NAME")
    # OAuth
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_google_redirect_uri: str | None = env_field(None, "OAUTH_GOOGLE_REDIRECT_URI")
    # Background sweep of unconfirmed accounts
    cleanup_interval_seconds: int = env_field(24 * 60 * 60, "CLEANUP_INTERVAL_SECONDS")
    # Rate limits (requests per minute, per client key)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    resend_rate_limit_per_minute: int = env_field(3, "RESEND_RATE_LIMIT_PER_MINUTE")
    # Localized messages
    default_language: str = env_field("en", "DEFAULT_LANGUAGE")
    supported_languages: str = env_field("en,fr", "SUPPORTED_LANGUAGES")
    locales_dir: str = env_field(_DEFAULT_LOCALES_DIR, "LOCALES_DIR")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.app_env == AppEnv.DEVELOPMENT

    @property
    def language_list(self) -> tuple[str, ...]:
        return tuple(
            lang.strip().lower()
            for lang in self.supported_languages.split(",")
            if lang.strip()
        )

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @field_validator("app_env")
    @classmethod
    def _validate_env(cls, value: AppEnv) -> AppEnv:
        return AppEnv(value)

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if self.is_production:
            raise ValueError("JWT_SECRET must be set in production")
        self.jwt_secret = _load_or_create_secret(Path(self.shared_fs_root) / ".jwt_secret")
        return self


def _load_or_create_secret(path: Path) -> str:
    """Reuse the secret stored at ``path`` or write a new one (mode 0600).

    Keeping it on disk lets tokens survive a restart in development.
    """
    if path.is_file() and not path.is_symlink():
        try:
            stored = path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", path=str(path), error=str(exc))
        else:
            if len(stored) >= 32:
                return stored

    generated = secrets.token_urlsafe(64)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".jwt_secret_")
        with os.fdopen(fd, "w") as handle:
            handle.write(generated)
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except OSError as exc:
        raise RuntimeError(
            "Unable to persist a JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(path))
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
