from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from starterauth.config import Settings
from starterauth.logging import get_logger
from starterauth.service.errors import ErrorCodes, Ok, Result, fail
from starterauth.service.tokens import TokenIssuer, generate_one_time_token
from starterauth.storage.errors import ConstraintViolation, RecordNotFound
from starterauth.storage.models import RefreshToken, SafeUser, User

logger = get_logger(__name__)

REGISTERED_MESSAGE = "Please check your email to confirm your account"
CONFIRMED_MESSAGE = "Email confirmed successfully"
LOGGED_OUT_MESSAGE = "Logged out successfully"
RESET_REQUESTED_MESSAGE = "If your email is registered, you will receive a reset link"
RESET_DONE_MESSAGE = "Password reset successful"
CONFIRMATION_RESENT_MESSAGE = (
    "If your email is registered, you will receive a new confirmation link"
)
PASSWORD_UPDATED_MESSAGE = "Password updated successfully"


def normalize_email(email: str) -> str:
    """Emails are stored and compared in one canonical form: trimmed, lowercase."""
    return email.strip().lower()


class CredentialStore(Protocol):
    """Persistence contract shared by the memory and Postgres stores."""

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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]: ...

    def get_user_by_confirmation_token(self, token: str) -> Optional[User]: ...

    def get_user_by_reset_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def delete_unconfirmed_expired(self, *, now: Optional[datetime] = None) -> int: ...

    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, *, now: Optional[datetime] = None) -> int: ...


class Mailer(Protocol):
    def send_confirmation_email(self, to_email: str, token: str) -> bool: ...

    def send_password_reset_email(self, to_email: str, token: str) -> bool: ...


@dataclass(frozen=True)
class AuthTokens:
    user: SafeUser
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class ExternalIdentity:
    """Profile returned by an OAuth provider after a successful code exchange."""

    provider: str
    provider_id: str
    email: Optional[str]
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class AuthService:
    """Session lifecycle: credentials, confirmation, refresh rotation, resets.

    Every public coroutine takes plain, already-validated values and returns an
    ``Ok``/``Err`` result. Expected failures never raise; storage or mail
    transport faults that are not part of a flow propagate to the caller.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenIssuer,
        mailer: Mailer,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.mailer = mailer
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against when the email is unknown so both branches cost the same
        self._dummy_hash = self._pwd_hasher.hash("starterauth-timing-equalizer")
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # passwords

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            # accounts created through OAuth have no usable password
            self._safe_verify(self._dummy_hash, password)
            return False
        return self._safe_verify(stored_hash, password)

    def _safe_verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # credentials and sessions

    async def validate_credentials(self, email: str, password: str) -> Result[Optional[SafeUser]]:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            self._safe_verify(self._dummy_hash, password)
            self.logger.warning("credential_validation_failed", reason="unknown_email")
            return Ok(None)
        if not self._verify_hash(user.password_hash, password):
            self.logger.warning(
                "credential_validation_failed", reason="password_mismatch", user_id=user.id
            )
            return Ok(None)
        if not user.is_email_confirmed:
            self.logger.warning("credential_validation_failed", reason="unconfirmed", user_id=user.id)
            return fail(ErrorCodes.AUTH.EMAIL_NOT_CONFIRMED, 401)
        return Ok(user.to_safe())

    async def login(self, email: str, password: str) -> Result[AuthTokens]:
        validated = await self.validate_credentials(email, password)
        if not validated.ok:
            return validated
        if validated.value is None:
            return fail(ErrorCodes.AUTH.INVALID_CREDENTIALS, 401)
        tokens = self.issue_tokens(validated.value)
        self.logger.info("login_succeeded", user_id=validated.value.id)
        return Ok(tokens)

    def issue_tokens(self, user: SafeUser) -> AuthTokens:
        """Sign an access token and persist a fresh refresh token for ``user``."""
        now = self._now()
        access_token = self.tokens.issue_access_token(user.id, user.email, now=now)
        refresh_token = self.tokens.issue_refresh_token()
        self.store.create_refresh_token(user.id, refresh_token, self.tokens.refresh_expiry(now=now))
        return AuthTokens(user=user, access_token=access_token, refresh_token=refresh_token)

    async def refresh_tokens(self, refresh_token: str) -> Result[AuthTokens]:
        record = self.store.get_refresh_token(refresh_token)
        if not record:
            self.logger.warning("refresh_rejected", reason="unknown_token")
            return fail(ErrorCodes.AUTH.INVALID_TOKEN, 401)
        if record.is_expired(self._now()):
            self.store.delete_refresh_token(refresh_token)
            self.logger.warning("refresh_rejected", reason="expired", user_id=record.user_id)
            return fail(ErrorCodes.AUTH.INVALID_TOKEN, 401)
        # delete first: a concurrent refresh with the same token loses here
        if not self.store.delete_refresh_token(refresh_token):
            self.logger.warning("refresh_rejected", reason="already_rotated", user_id=record.user_id)
            return fail(ErrorCodes.AUTH.INVALID_TOKEN, 401)
        user = self.store.get_user(record.user_id)
        if not user:
            self.logger.warning("refresh_rejected", reason="user_missing", user_id=record.user_id)
            return fail(ErrorCodes.AUTH.INVALID_TOKEN, 401)
        self.logger.info("refresh_rotated", user_id=user.id)
        return Ok(self.issue_tokens(user.to_safe()))

    async def logout(self, refresh_token: str) -> Result[str]:
        removed = self.store.delete_refresh_token(refresh_token)
        self.logger.info("logout", revoked=removed)
        return Ok(LOGGED_OUT_MESSAGE)

    async def logout_all(self, user_id: str) -> Result[str]:
        revoked = self.store.delete_user_refresh_tokens(user_id)
        self.logger.info("logout_all", user_id=user_id, revoked=revoked)
        return Ok(LOGGED_OUT_MESSAGE)

    async def authenticate(self, access_token: str) -> Result[SafeUser]:
        verified = self.tokens.verify_access_token(access_token)
        if not verified.ok:
            return verified
        user = self.store.get_user(str(verified.value["sub"]))
        if not user:
            return fail(ErrorCodes.AUTH.USER_NOT_FOUND, 401)
        return Ok(user.to_safe())

    # registration and confirmation

    async def register(self, email: str, password: str, name: Optional[str] = None) -> Result[str]:
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            self.logger.warning("register_rejected", reason="email_exists")
            return fail(ErrorCodes.AUTH.EMAIL_ALREADY_EXISTS, 409)
        token = generate_one_time_token()
        expires = self._now() + timedelta(hours=self.settings.confirmation_token_ttl_hours)
        try:
            user = self.store.create_user(
                email,
                self.hash_password(password),
                name=name,
                is_email_confirmed=False,
                email_confirmation_token=token,
                email_confirmation_expires=expires,
            )
        except ConstraintViolation:
            # lost the race against a concurrent registration of the same email
            self.logger.warning("register_rejected", reason="email_exists_on_insert")
            return fail(ErrorCodes.AUTH.EMAIL_ALREADY_EXISTS, 409)
        self.logger.info("user_registered", user_id=user.id)
        sent = await asyncio.to_thread(self.mailer.send_confirmation_email, email, token)
        if not sent:
            self.logger.error("confirmation_email_failed", user_id=user.id)
            return fail(ErrorCodes.SYSTEM.EMAIL_DELIVERY_FAILED, 500)
        return Ok(REGISTERED_MESSAGE)

    async def confirm_email(self, token: str) -> Result[str]:
        user = self.store.get_user_by_confirmation_token(token)
        if not user:
            return fail(ErrorCodes.AUTH.INVALID_TOKEN, 404)
        expires = user.email_confirmation_expires
        if expires is not None and expires < self._now():
            self.logger.warning("confirmation_expired", user_id=user.id)
            return fail(ErrorCodes.AUTH.CONFIRMATION_TOKEN_EXPIRED, 401)
        self.store.update_user(
            user.id,
            is_email_confirmed=True,
            email_confirmation_token=None,
            email_confirmation_expires=None,
        )
        self.logger.info("email_confirmed", user_id=user.id)
        return Ok(CONFIRMED_MESSAGE)

    async def resend_confirmation(self, email: str) -> Result[str]:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            return Ok(CONFIRMATION_RESENT_MESSAGE)
        if user.is_email_confirmed:
            return fail(ErrorCodes.AUTH.EMAIL_ALREADY_CONFIRMED, 409)
        token = generate_one_time_token()
        self.store.update_user(
            user.id,
            email_confirmation_token=token,
            email_confirmation_expires=self._now()
            + timedelta(hours=self.settings.confirmation_token_ttl_hours),
        )
        sent = await asyncio.to_thread(self.mailer.send_confirmation_email, user.email, token)
        if not sent:
            self.logger.error("confirmation_email_failed", user_id=user.id)
            return fail(ErrorCodes.SYSTEM.EMAIL_DELIVERY_FAILED, 500)
        return Ok(CONFIRMATION_RESENT_MESSAGE)

    # password management

    async def request_password_reset(self, email: str) -> Result[str]:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            return Ok(RESET_REQUESTED_MESSAGE)
        token = generate_one_time_token()
        self.store.update_user(
            user.id,
            password_reset_token=token,
            password_reset_expires=self._now()
            + timedelta(minutes=self.settings.reset_token_ttl_minutes),
        )
        sent = await asyncio.to_thread(self.mailer.send_password_reset_email, user.email, token)
        if not sent:
            # the response stays generic so delivery problems do not reveal the account
            self.logger.error("password_reset_email_failed", user_id=user.id)
        return Ok(RESET_REQUESTED_MESSAGE)

    async def reset_password(self, token: str, new_password: str) -> Result[str]:
        # expired and unknown tokens are indistinguishable to the caller
        user = self.store.get_user_by_reset_token(token, now=self._now())
        if not user:
            self.logger.warning("password_reset_rejected", reason="invalid_or_expired")
            return fail(ErrorCodes.AUTH.INVALID_TOKEN, 404)
        if user.password_hash and self._safe_verify(user.password_hash, new_password):
            return fail(ErrorCodes.AUTH.NEW_PASSWORD_SAME_AS_CURRENT, 400)
        self.store.update_user(
            user.id,
            password_hash=self.hash_password(new_password),
            password_reset_token=None,
            password_reset_expires=None,
        )
        revoked = self.store.delete_user_refresh_tokens(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return Ok(RESET_DONE_MESSAGE)

    async def update_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Result[str]:
        user = self.store.get_user(user_id)
        if not user:
            return fail(ErrorCodes.AUTH.USER_NOT_FOUND, 401)
        if not self._verify_hash(user.password_hash, current_password):
            self.logger.warning("password_update_rejected", reason="wrong_current", user_id=user_id)
            return fail(ErrorCodes.AUTH.INVALID_CREDENTIALS, 401)
        if new_password == current_password:
            return fail(ErrorCodes.AUTH.NEW_PASSWORD_SAME_AS_CURRENT, 400)
        self.store.update_user(user_id, password_hash=self.hash_password(new_password))
        self.logger.info("password_updated", user_id=user_id)
        return Ok(PASSWORD_UPDATED_MESSAGE)

    # external identities

    async def find_or_create_user(self, identity: ExternalIdentity) -> Result[SafeUser]:
        """Resolve an OAuth identity to a local user, linking or creating as needed.

        Lookup order is provider id, then email. A matching email account is
        linked to the provider and marked confirmed, since the provider has
        verified the address. If that account was never confirmed, whoever
        registered it did not own the mailbox: its password, pending reset and
        sessions are discarded. New accounts get no password.
        """
        if not identity.email:
            self.logger.warning("external_identity_rejected", provider=identity.provider, reason="no_email")
            return fail(ErrorCodes.AUTH.UNAUTHORIZED, 401)

        user = self.store.get_user_by_provider(identity.provider, identity.provider_id)
        if user:
            return Ok(user.to_safe())

        email = normalize_email(identity.email)
        user = self.store.get_user_by_email(email)
        if user:
            changes: dict[str, Any] = {
                "provider": identity.provider,
                "provider_id": identity.provider_id,
            }
            unconfirmed = not user.is_email_confirmed
            if unconfirmed:
                changes.update(
                    is_email_confirmed=True,
                    email_confirmation_token=None,
                    email_confirmation_expires=None,
                    password_hash=None,
                    password_reset_token=None,
                    password_reset_expires=None,
                )
            if not user.avatar_url and identity.avatar_url:
                changes["avatar_url"] = identity.avatar_url
            try:
                user = self.store.update_user(user.id, **changes)
            except RecordNotFound:
                user = None
            else:
                if unconfirmed:
                    revoked = self.store.delete_user_refresh_tokens(user.id)
                    self.logger.warning(
                        "unconfirmed_account_claimed",
                        provider=identity.provider,
                        user_id=user.id,
                        sessions_revoked=revoked,
                    )
                self.logger.info("external_identity_linked", provider=identity.provider, user_id=user.id)
                return Ok(user.to_safe())

        name = identity.name or email.split("@", 1)[0]
        try:
            created = self.store.create_user(
                email,
                None,
                name=name,
                is_email_confirmed=True,
                avatar_url=identity.avatar_url,
                provider=identity.provider,
                provider_id=identity.provider_id,
            )
        except ConstraintViolation:
            # a parallel sign-in created the account first
            existing = self.store.get_user_by_email(email)
            if not existing:
                raise
            return Ok(existing.to_safe())
        self.logger.info("external_identity_created", provider=identity.provider, user_id=created.id)
        return Ok(created.to_safe())

    async def sign_in_external(self, identity: ExternalIdentity) -> Result[AuthTokens]:
        resolved = await self.find_or_create_user(identity)
        if not resolved.ok:
            return resolved
        return Ok(self.issue_tokens(resolved.value))
