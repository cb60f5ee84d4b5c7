from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from starterauth.logging import get_logger
from starterauth.storage.errors import ConstraintViolation, RecordNotFound
from starterauth.storage.models import USER_MUTABLE_FIELDS, RefreshToken, User, utcnow


class MemoryStore:
    """In-process credential store persisted to a JSON file.

    Used for local development and the test suite. Every mutation is written to
    ``<fs_root>/state/memory_store.json`` so a restarted process keeps its users.
    """

    def __init__(self, fs_root: str = "/tmp/starterauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> bool:
        return True

    # users

    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        name: Optional[str] = None,
        is_email_confirmed: bool = False,
        email_confirmation_token: Optional[str] = None,
        email_confirmation_expires: Optional[datetime] = None,
        avatar_url: Optional[str] = None,
        provider: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                name=name,
                is_email_confirmed=is_email_confirmed,
                email_confirmation_token=email_confirmation_token,
                email_confirmation_expires=email_confirmation_expires,
                avatar_url=avatar_url,
                provider=provider,
                provider_id=provider_id,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._first(lambda u: u.email == email)

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        with self._data_lock:
            return self._first(
                lambda u: u.provider == provider and u.provider_id == provider_id
            )

    def get_user_by_confirmation_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            return self._first(lambda u: u.email_confirmation_token == token)

    def get_user_by_reset_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        """Return the user holding ``token`` only while the token is unexpired."""
        current = now or utcnow()
        with self._data_lock:
            return self._first(
                lambda u: u.password_reset_token == token
                and u.password_reset_expires is not None
                and u.password_reset_expires > current
            )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [replace(u) for u in ordered[:limit]]

    def update_user(self, user_id: str, **changes: Any) -> User:
        unknown = set(changes) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"id": user_id})
            new_email = changes.get("email")
            if new_email and new_email != user.email:
                if any(u.email == new_email for u in self.users.values()):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(user, **changes, updated_at=utcnow())
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for token, record in list(self.refresh_tokens.items()):
                if record.user_id == user_id:
                    self.refresh_tokens.pop(token, None)
            self._persist_state()
            return True

    def delete_unconfirmed_expired(self, *, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            stale = [
                u.id
                for u in self.users.values()
                if not u.is_email_confirmed
                and u.email_confirmation_expires is not None
                and u.email_confirmation_expires < current
            ]
            for user_id in stale:
                self.users.pop(user_id, None)
            if stale:
                self.refresh_tokens = {
                    token: record
                    for token, record in self.refresh_tokens.items()
                    if record.user_id not in stale
                }
                self._persist_state()
            return len(stale)

    def _first(self, predicate) -> Optional[User]:
        user = next((u for u in self.users.values() if predicate(u)), None)
        return replace(user) if user else None

    # refresh tokens

    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for refresh token", {"user_id": user_id})
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken(token=token, user_id=user_id, expires_at=expires_at)
            self.refresh_tokens[token] = record
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.pop(token, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [t for t, r in self.refresh_tokens.items() if r.user_id == user_id]
            for token in doomed:
                self.refresh_tokens.pop(token, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_expired_refresh_tokens(self, *, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            doomed = [t for t, r in self.refresh_tokens.items() if r.is_expired(current)]
            for token in doomed:
                self.refresh_tokens.pop(token, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # persistence

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["token"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), refresh_tokens=len(self.refresh_tokens)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "name": user.name,
            "is_email_confirmed": user.is_email_confirmed,
            "email_confirmation_token": user.email_confirmation_token,
            "email_confirmation_expires": self._serialize_datetime(user.email_confirmation_expires),
            "password_reset_token": user.password_reset_token,
            "password_reset_expires": self._serialize_datetime(user.password_reset_expires),
            "avatar_url": user.avatar_url,
            "provider": user.provider,
            "provider_id": user.provider_id,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data.get("password_hash"),
            name=data.get("name"),
            is_email_confirmed=data.get("is_email_confirmed", False),
            email_confirmation_token=data.get("email_confirmation_token"),
            email_confirmation_expires=self._deserialize_datetime(
                data.get("email_confirmation_expires")
            ),
            password_reset_token=data.get("password_reset_token"),
            password_reset_expires=self._deserialize_datetime(data.get("password_reset_expires")),
            avatar_url=data.get("avatar_url"),
            provider=data.get("provider"),
            provider_id=data.get("provider_id"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "token": record.token,
            "user_id": record.user_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            token=data["token"],
            user_id=str(data["user_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
