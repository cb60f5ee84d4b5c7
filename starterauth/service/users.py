from __future__ import annotations

from typing import Any, List, Optional

from starterauth.logging import get_logger
from starterauth.service.auth import AuthService, CredentialStore, normalize_email
from starterauth.service.avatars import AvatarService
from starterauth.service.errors import Err, ErrorCodes, Ok, Result, ServiceError, fail
from starterauth.storage.errors import ConstraintViolation, RecordNotFound
from starterauth.storage.models import SafeUser

logger = get_logger(__name__)


class UserService:
    """Account management for signed-in users."""

    def __init__(
        self, store: CredentialStore, auth: AuthService, avatars: AvatarService
    ) -> None:
        self.store = store
        self.auth = auth
        self.avatars = avatars

    def list_users(self, limit: int = 100) -> List[SafeUser]:
        return [user.to_safe() for user in self.store.list_users(limit=limit)]

    def get_user(self, user_id: str) -> Result[SafeUser]:
        user = self.store.get_user(user_id)
        if not user:
            return fail(ErrorCodes.DATABASE.RECORD_NOT_FOUND, 404, id=user_id)
        return Ok(user.to_safe())

    def create_user(self, email: str, password: str, name: Optional[str] = None) -> Result[SafeUser]:
        try:
            user = self.store.create_user(
                normalize_email(email), self.auth.hash_password(password), name=name
            )
        except ConstraintViolation as exc:
            return fail(
                ErrorCodes.DATABASE.UNIQUE_CONSTRAINT_VIOLATION,
                409,
                field=exc.detail.get("field", "email"),
            )
        logger.info("user_created", user_id=user.id)
        return Ok(user.to_safe())

    def update_user(
        self,
        actor_id: str,
        user_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Result[SafeUser]:
        if actor_id != user_id:
            logger.warning("user_update_forbidden", actor_id=actor_id, user_id=user_id)
            return fail(ErrorCodes.AUTH.FORBIDDEN, 403)
        changes: dict[str, Any] = {}
        if email is not None:
            changes["email"] = normalize_email(email)
        if name is not None:
            changes["name"] = name
        if password is not None:
            changes["password_hash"] = self.auth.hash_password(password)
        if not changes:
            return self.get_user(user_id)
        return self._apply(user_id, changes)

    def update_name(self, user_id: str, name: str) -> Result[SafeUser]:
        return self._apply(user_id, {"name": name})

    def _apply(self, user_id: str, changes: dict[str, Any]) -> Result[SafeUser]:
        try:
            user = self.store.update_user(user_id, **changes)
        except RecordNotFound:
            return fail(ErrorCodes.DATABASE.RECORD_NOT_FOUND, 404, id=user_id)
        except ConstraintViolation as exc:
            return fail(
                ErrorCodes.DATABASE.UNIQUE_CONSTRAINT_VIOLATION,
                409,
                field=exc.detail.get("field", "email"),
            )
        logger.info("user_updated", user_id=user_id, fields=sorted(changes))
        return Ok(user.to_safe())

    def delete_user(self, actor_id: str, user_id: str) -> Result[SafeUser]:
        if actor_id != user_id:
            logger.warning("user_delete_forbidden", actor_id=actor_id, user_id=user_id)
            return fail(ErrorCodes.AUTH.FORBIDDEN, 403)
        user = self.store.get_user(user_id)
        if not user or not self.store.delete_user(user_id):
            return fail(ErrorCodes.DATABASE.RECORD_NOT_FOUND, 404, id=user_id)
        logger.info("user_deleted", user_id=user_id)
        return Ok(user.to_safe())

    async def upload_avatar(
        self,
        user_id: str,
        content: bytes,
        content_type: Optional[str],
        filename: str = "avatar",
    ) -> Result[SafeUser]:
        """Upload a new avatar, point the user at it, then drop the old image."""
        user = self.store.get_user(user_id)
        if not user:
            return fail(ErrorCodes.DATABASE.RECORD_NOT_FOUND, 404, id=user_id)
        try:
            uploaded = await self.avatars.upload(user_id, content, content_type, filename)
        except ServiceError as exc:
            return Err(exc.to_failure())

        previous = user.avatar_url
        result = self._apply(user_id, {"avatar_url": uploaded.url})
        if result.ok and previous:
            old_public_id = self.avatars.extract_public_id(previous)
            if old_public_id and old_public_id != uploaded.public_id:
                try:
                    await self.avatars.delete(old_public_id)
                except ServiceError as exc:
                    # the new avatar is already live; a stale image is only clutter
                    logger.warning(
                        "old_avatar_delete_failed", user_id=user_id, public_id=old_public_id, error=exc.message
                    )
        return result
