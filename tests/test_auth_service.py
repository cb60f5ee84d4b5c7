"""Unit tests for the session lifecycle in AuthService.

Covers credential validation, login, registration (including the duplicate
email race), email confirmation, refresh rotation, logout, password resets
and external identity linking.
"""

from datetime import timedelta

import pytest

from starterauth.service.auth import (
    CONFIRMATION_RESENT_MESSAGE,
    CONFIRMED_MESSAGE,
    LOGGED_OUT_MESSAGE,
    PASSWORD_UPDATED_MESSAGE,
    REGISTERED_MESSAGE,
    RESET_DONE_MESSAGE,
    RESET_REQUESTED_MESSAGE,
    AuthService,
    ExternalIdentity,
)
from starterauth.service.errors import ErrorCodes
from starterauth.storage.errors import ConstraintViolation
from starterauth.storage.models import utcnow

PASSWORD = "Password123!"


@pytest.fixture
def confirmed_user(memory_store, auth_service):
    return memory_store.create_user(
        "confirmed@example.com",
        auth_service.hash_password(PASSWORD),
        name="Confirmed",
        is_email_confirmed=True,
    )


@pytest.fixture
def unconfirmed_user(memory_store, auth_service):
    return memory_store.create_user(
        "pending@example.com",
        auth_service.hash_password(PASSWORD),
        email_confirmation_token="c" * 64,
        email_confirmation_expires=utcnow() + timedelta(days=7),
    )


class TestValidateCredentials:
    async def test_unknown_email_yields_none(self, auth_service):
        result = await auth_service.validate_credentials("ghost@example.com", PASSWORD)
        assert result.ok
        assert result.value is None

    async def test_wrong_password_yields_none(self, auth_service, confirmed_user):
        result = await auth_service.validate_credentials(confirmed_user.email, "Wrong123!")
        assert result.ok
        assert result.value is None

    async def test_unconfirmed_account_is_rejected(self, auth_service, unconfirmed_user):
        result = await auth_service.validate_credentials(unconfirmed_user.email, PASSWORD)
        assert not result.ok
        assert result.failure.code == ErrorCodes.AUTH.EMAIL_NOT_CONFIRMED
        assert result.failure.status == 401

    async def test_success_strips_password_material(self, auth_service, confirmed_user):
        result = await auth_service.validate_credentials(confirmed_user.email, PASSWORD)
        assert result.ok
        assert result.value.id == confirmed_user.id
        assert not hasattr(result.value, "password_hash")

    async def test_oauth_only_account_cannot_use_password(self, auth_service, memory_store):
        memory_store.create_user("oauth@example.com", None, is_email_confirmed=True, provider="google")
        result = await auth_service.validate_credentials("oauth@example.com", "")
        assert result.ok
        assert result.value is None


class TestLogin:
    async def test_unknown_email_and_wrong_password_fail_identically(
        self, auth_service, confirmed_user
    ):
        unknown = await auth_service.login("ghost@example.com", PASSWORD)
        wrong = await auth_service.login(confirmed_user.email, "Wrong123!")
        assert unknown.failure == wrong.failure
        assert unknown.failure.code == ErrorCodes.AUTH.INVALID_CREDENTIALS
        assert unknown.failure.status == 401

    async def test_unconfirmed_login_reports_confirmation(self, auth_service, unconfirmed_user):
        result = await auth_service.login(unconfirmed_user.email, PASSWORD)
        assert result.failure.code == ErrorCodes.AUTH.EMAIL_NOT_CONFIRMED

    async def test_login_persists_one_refresh_token(
        self, auth_service, memory_store, confirmed_user, token_issuer
    ):
        result = await auth_service.login(confirmed_user.email, PASSWORD)
        assert result.ok
        tokens = result.value
        assert tokens.user.email == confirmed_user.email
        stored = memory_store.get_refresh_token(tokens.refresh_token)
        assert stored is not None
        assert stored.user_id == confirmed_user.id
        assert len(tokens.refresh_token) == 80
        claims = token_issuer.verify_access_token(tokens.access_token)
        assert claims.ok
        assert claims.value["sub"] == confirmed_user.id
        assert claims.value["email"] == confirmed_user.email

    async def test_email_lookup_ignores_case(self, auth_service, mailer, confirmed_user):
        login = await auth_service.login(" Confirmed@Example.COM", PASSWORD)
        assert login.value.user.id == confirmed_user.id
        await auth_service.request_password_reset("CONFIRMED@example.com")
        assert [to for to, _ in mailer.resets] == [confirmed_user.email]


class TestRegister:
    async def test_register_creates_unconfirmed_user_and_sends_mail(
        self, auth_service, memory_store, mailer
    ):
        result = await auth_service.register("new@example.com", PASSWORD, "New User")
        assert result.ok
        assert result.value == REGISTERED_MESSAGE

        user = memory_store.get_user_by_email("new@example.com")
        assert user is not None
        assert not user.is_email_confirmed
        assert user.password_hash != PASSWORD
        assert user.password_hash.startswith("$argon2id$")
        assert len(user.email_confirmation_token) == 64
        remaining = user.email_confirmation_expires - utcnow()
        assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)
        assert mailer.confirmations == [("new@example.com", user.email_confirmation_token)]

    async def test_duplicate_email_conflicts(self, auth_service, confirmed_user):
        result = await auth_service.register(confirmed_user.email, PASSWORD)
        assert result.failure.code == ErrorCodes.AUTH.EMAIL_ALREADY_EXISTS
        assert result.failure.status == 409

    async def test_insert_race_maps_to_duplicate_email(
        self, memory_store, token_issuer, mailer, settings
    ):
        class RacingStore:
            """Pre-check sees no user, then the insert loses to a concurrent one."""

            def __getattr__(self, name):
                return getattr(memory_store, name)

            def get_user_by_email(self, email):
                return None

            def create_user(self, *args, **kwargs):
                raise ConstraintViolation("email already exists", {"field": "email"})

        service = AuthService(RacingStore(), token_issuer, mailer, settings)
        result = await service.register("race@example.com", PASSWORD)
        assert not result.ok
        assert result.failure.code == ErrorCodes.AUTH.EMAIL_ALREADY_EXISTS
        assert result.failure.status == 409
        assert mailer.confirmations == []

    async def test_delivery_failure_is_reported(
        self, memory_store, token_issuer, failing_mailer, settings
    ):
        service = AuthService(memory_store, token_issuer, failing_mailer, settings)
        result = await service.register("nomail@example.com", PASSWORD)
        assert result.failure.code == ErrorCodes.SYSTEM.EMAIL_DELIVERY_FAILED
        assert result.failure.status == 500


class TestConfirmEmail:
    async def test_confirm_then_token_is_spent(self, auth_service, memory_store, unconfirmed_user):
        token = unconfirmed_user.email_confirmation_token
        result = await auth_service.confirm_email(token)
        assert result.value == CONFIRMED_MESSAGE

        user = memory_store.get_user(unconfirmed_user.id)
        assert user.is_email_confirmed
        assert user.email_confirmation_token is None
        assert user.email_confirmation_expires is None

        again = await auth_service.confirm_email(token)
        assert again.failure.code == ErrorCodes.AUTH.INVALID_TOKEN
        assert again.failure.status == 404

    async def test_unknown_token(self, auth_service):
        result = await auth_service.confirm_email("does-not-exist")
        assert result.failure.code == ErrorCodes.AUTH.INVALID_TOKEN
        assert result.failure.status == 404

    async def test_expired_token(self, auth_service, memory_store, unconfirmed_user):
        memory_store.update_user(
            unconfirmed_user.id, email_confirmation_expires=utcnow() - timedelta(minutes=1)
        )
        result = await auth_service.confirm_email(unconfirmed_user.email_confirmation_token)
        assert result.failure.code == ErrorCodes.AUTH.CONFIRMATION_TOKEN_EXPIRED
        assert result.failure.status == 401
        assert not memory_store.get_user(unconfirmed_user.id).is_email_confirmed

    async def test_resend_issues_fresh_token(self, auth_service, memory_store, mailer, unconfirmed_user):
        result = await auth_service.resend_confirmation(unconfirmed_user.email)
        assert result.value == CONFIRMATION_RESENT_MESSAGE
        user = memory_store.get_user(unconfirmed_user.id)
        assert user.email_confirmation_token != unconfirmed_user.email_confirmation_token
        assert mailer.confirmations[-1] == (user.email, user.email_confirmation_token)

    async def test_resend_for_confirmed_account(self, auth_service, confirmed_user):
        result = await auth_service.resend_confirmation(confirmed_user.email)
        assert result.failure.code == ErrorCodes.AUTH.EMAIL_ALREADY_CONFIRMED

    async def test_resend_for_unknown_email_is_generic(self, auth_service, mailer):
        result = await auth_service.resend_confirmation("ghost@example.com")
        assert result.value == CONFIRMATION_RESENT_MESSAGE
        assert mailer.confirmations == []


class TestRefreshRotation:
    async def test_rotation_invalidates_old_token(self, auth_service, memory_store, confirmed_user):
        first = (await auth_service.login(confirmed_user.email, PASSWORD)).value
        rotated = await auth_service.refresh_tokens(first.refresh_token)
        assert rotated.ok
        assert rotated.value.refresh_token != first.refresh_token
        assert memory_store.get_refresh_token(first.refresh_token) is None
        assert memory_store.get_refresh_token(rotated.value.refresh_token) is not None

        replay = await auth_service.refresh_tokens(first.refresh_token)
        assert replay.failure.code == ErrorCodes.AUTH.INVALID_TOKEN
        assert replay.failure.status == 401

    async def test_expired_refresh_token(self, auth_service, memory_store, confirmed_user):
        memory_store.create_refresh_token(confirmed_user.id, "r" * 80, utcnow() - timedelta(seconds=1))
        result = await auth_service.refresh_tokens("r" * 80)
        assert result.failure.code == ErrorCodes.AUTH.INVALID_TOKEN
        assert memory_store.get_refresh_token("r" * 80) is None

    async def test_owner_removed(self, auth_service, memory_store, confirmed_user):
        tokens = (await auth_service.login(confirmed_user.email, PASSWORD)).value
        memory_store.delete_user(confirmed_user.id)
        result = await auth_service.refresh_tokens(tokens.refresh_token)
        assert result.failure.code == ErrorCodes.AUTH.INVALID_TOKEN


class TestLogout:
    async def test_logout_is_idempotent(self, auth_service, memory_store, confirmed_user):
        tokens = (await auth_service.login(confirmed_user.email, PASSWORD)).value
        first = await auth_service.logout(tokens.refresh_token)
        second = await auth_service.logout(tokens.refresh_token)
        assert first.value == second.value == LOGGED_OUT_MESSAGE
        assert memory_store.get_refresh_token(tokens.refresh_token) is None

    async def test_logout_all_revokes_every_session(self, auth_service, memory_store, confirmed_user):
        a = (await auth_service.login(confirmed_user.email, PASSWORD)).value
        b = (await auth_service.login(confirmed_user.email, PASSWORD)).value
        await auth_service.logout_all(confirmed_user.id)
        assert memory_store.get_refresh_token(a.refresh_token) is None
        assert memory_store.get_refresh_token(b.refresh_token) is None


class TestPasswordReset:
    async def test_request_for_unknown_email_is_generic(self, auth_service, mailer):
        result = await auth_service.request_password_reset("ghost@example.com")
        assert result.value == RESET_REQUESTED_MESSAGE
        assert mailer.resets == []

    async def test_full_reset_flow(self, auth_service, memory_store, mailer, confirmed_user):
        session = (await auth_service.login(confirmed_user.email, PASSWORD)).value
        requested = await auth_service.request_password_reset(confirmed_user.email)
        assert requested.value == RESET_REQUESTED_MESSAGE
        _, token = mailer.resets[-1]
        user = memory_store.get_user(confirmed_user.id)
        assert user.password_reset_token == token
        assert timedelta(minutes=59) < user.password_reset_expires - utcnow() <= timedelta(hours=1)

        result = await auth_service.reset_password(token, "NewPassword1!")
        assert result.value == RESET_DONE_MESSAGE
        user = memory_store.get_user(confirmed_user.id)
        assert user.password_reset_token is None
        assert user.password_reset_expires is None
        assert memory_store.get_refresh_token(session.refresh_token) is None
        assert (await auth_service.login(confirmed_user.email, "NewPassword1!")).ok
        assert not (await auth_service.login(confirmed_user.email, PASSWORD)).ok

    async def test_same_password_is_rejected(self, auth_service, mailer, confirmed_user):
        await auth_service.request_password_reset(confirmed_user.email)
        _, token = mailer.resets[-1]
        result = await auth_service.reset_password(token, PASSWORD)
        assert result.failure.code == ErrorCodes.AUTH.NEW_PASSWORD_SAME_AS_CURRENT
        assert result.failure.status == 400

    async def test_expired_and_unknown_tokens_are_indistinguishable(
        self, auth_service, memory_store, mailer, confirmed_user
    ):
        await auth_service.request_password_reset(confirmed_user.email)
        _, token = mailer.resets[-1]
        memory_store.update_user(confirmed_user.id, password_reset_expires=utcnow() - timedelta(seconds=1))
        expired = await auth_service.reset_password(token, "NewPassword1!")
        unknown = await auth_service.reset_password("nope", "NewPassword1!")
        assert expired.failure == unknown.failure
        assert expired.failure.code == ErrorCodes.AUTH.INVALID_TOKEN
        assert expired.failure.status == 404

    async def test_mail_failure_keeps_response_generic(
        self, memory_store, token_issuer, failing_mailer, settings
    ):
        service = AuthService(memory_store, token_issuer, failing_mailer, settings)
        memory_store.create_user("x@example.com", service.hash_password(PASSWORD), is_email_confirmed=True)
        result = await service.request_password_reset("x@example.com")
        assert result.value == RESET_REQUESTED_MESSAGE


class TestUpdatePassword:
    async def test_update(self, auth_service, confirmed_user):
        result = await auth_service.update_password(confirmed_user.id, PASSWORD, "Another123!")
        assert result.value == PASSWORD_UPDATED_MESSAGE
        assert (await auth_service.login(confirmed_user.email, "Another123!")).ok

    async def test_wrong_current_password(self, auth_service, confirmed_user):
        result = await auth_service.update_password(confirmed_user.id, "Wrong123!", "Another123!")
        assert result.failure.code == ErrorCodes.AUTH.INVALID_CREDENTIALS

    async def test_same_as_current(self, auth_service, confirmed_user):
        result = await auth_service.update_password(confirmed_user.id, PASSWORD, PASSWORD)
        assert result.failure.code == ErrorCodes.AUTH.NEW_PASSWORD_SAME_AS_CURRENT


class TestAuthenticate:
    async def test_valid_access_token(self, auth_service, confirmed_user):
        tokens = (await auth_service.login(confirmed_user.email, PASSWORD)).value
        result = await auth_service.authenticate(tokens.access_token)
        assert result.value.id == confirmed_user.id

    async def test_expired_access_token(self, auth_service, token_issuer, confirmed_user):
        stale = token_issuer.issue_access_token(
            confirmed_user.id, confirmed_user.email, now=utcnow() - timedelta(hours=2)
        )
        result = await auth_service.authenticate(stale)
        assert result.failure.code == ErrorCodes.AUTH.TOKEN_EXPIRED

    async def test_deleted_user(self, auth_service, memory_store, confirmed_user):
        tokens = (await auth_service.login(confirmed_user.email, PASSWORD)).value
        memory_store.delete_user(confirmed_user.id)
        result = await auth_service.authenticate(tokens.access_token)
        assert result.failure.code == ErrorCodes.AUTH.USER_NOT_FOUND


class TestFindOrCreateUser:
    def _identity(self, email="g@example.com", provider_id="g-1"):
        return ExternalIdentity(
            provider="google",
            provider_id=provider_id,
            email=email,
            name="Google User",
            avatar_url="https://example.com/pic.png",
        )

    async def test_creates_confirmed_user_without_password(self, auth_service, memory_store):
        result = await auth_service.find_or_create_user(self._identity())
        assert result.ok
        stored = memory_store.get_user(result.value.id)
        assert stored.is_email_confirmed
        assert stored.password_hash is None
        assert stored.provider == "google"
        assert stored.avatar_url == "https://example.com/pic.png"

    async def test_second_sign_in_returns_same_user(self, auth_service):
        first = await auth_service.find_or_create_user(self._identity())
        second = await auth_service.find_or_create_user(self._identity())
        assert first.value.id == second.value.id

    async def test_links_existing_confirmed_account_keeps_password(
        self, auth_service, memory_store, confirmed_user
    ):
        result = await auth_service.find_or_create_user(self._identity(email=confirmed_user.email))
        assert result.value.id == confirmed_user.id
        linked = memory_store.get_user(confirmed_user.id)
        assert linked.provider_id == "g-1"
        assert linked.password_hash == confirmed_user.password_hash
        assert (await auth_service.login(confirmed_user.email, PASSWORD)).ok

    async def test_linking_unconfirmed_account_discards_registrant_password(
        self, auth_service, memory_store
    ):
        assert (await auth_service.register("victim@example.com", "Attacker123!")).ok
        registered = memory_store.get_user_by_email("victim@example.com")
        memory_store.update_user(
            registered.id,
            password_reset_token="r" * 64,
            password_reset_expires=utcnow() + timedelta(hours=1),
        )
        memory_store.create_refresh_token(registered.id, "s" * 64, utcnow() + timedelta(days=1))

        result = await auth_service.find_or_create_user(self._identity(email="victim@example.com"))
        assert result.value.id == registered.id

        linked = memory_store.get_user(registered.id)
        assert linked.is_email_confirmed
        assert linked.password_hash is None
        assert linked.password_reset_token is None
        assert linked.email_confirmation_token is None
        assert memory_store.get_refresh_token("s" * 64) is None
        login = await auth_service.login("victim@example.com", "Attacker123!")
        assert login.failure.code == ErrorCodes.AUTH.INVALID_CREDENTIALS

    async def test_mixed_case_provider_email_owns_the_address(self, auth_service, memory_store):
        created = await auth_service.find_or_create_user(self._identity(email=" Mixed@Example.com"))
        assert created.value.email == "mixed@example.com"

        result = await auth_service.register("Mixed@Example.com", PASSWORD)
        assert result.failure.code == ErrorCodes.AUTH.EMAIL_ALREADY_EXISTS
        assert result.failure.status == 409
        assert [u.email for u in memory_store.list_users()] == ["mixed@example.com"]

    async def test_mixed_case_email_links_to_registered_account(
        self, auth_service, confirmed_user
    ):
        result = await auth_service.find_or_create_user(
            self._identity(email=confirmed_user.email.upper())
        )
        assert result.value.id == confirmed_user.id

    async def test_identity_without_email(self, auth_service):
        result = await auth_service.find_or_create_user(self._identity(email=None))
        assert result.failure.code == ErrorCodes.AUTH.UNAUTHORIZED
        assert result.failure.status == 401

    async def test_sign_in_external_issues_tokens(self, auth_service, memory_store):
        result = await auth_service.sign_in_external(self._identity())
        assert result.ok
        assert memory_store.get_refresh_token(result.value.refresh_token) is not None
