from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    name: Optional[str] = None
    is_email_confirmed: bool = False
    email_confirmation_token: Optional[str] = None
    email_confirmation_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    avatar_url: Optional[str] = None
    provider: Optional[str] = None
    provider_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_usable_password(self) -> bool:
        return bool(self.password_hash)

    def to_safe(self) -> "SafeUser":
        return SafeUser(
            id=self.id,
            email=self.email,
            name=self.name,
            is_email_confirmed=self.is_email_confirmed,
            avatar_url=self.avatar_url,
            provider=self.provider,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class SafeUser:
    """A user without password hash or one-time tokens."""

    id: str
    email: str
    name: Optional[str]
    is_email_confirmed: bool
    avatar_url: Optional[str]
    provider: Optional[str]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "is_email_confirmed": self.is_email_confirmed,
            "avatar_url": self.avatar_url,
            "provider": self.provider,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class RefreshToken:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


# Fields a caller may change through ``update_user``; ``id`` and timestamps are store-managed.
USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "password_hash",
        "name",
        "is_email_confirmed",
        "email_confirmation_token",
        "email_confirmation_expires",
        "password_reset_token",
        "password_reset_expires",
        "avatar_url",
        "provider",
        "provider_id",
    }
)
