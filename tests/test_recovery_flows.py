from datetime import timedelta

import pytest

from gatekeeper.service.auth import AuthResult, OTPChallenge
from gatekeeper.service.errors import (
    ChallengeInvalidError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    ValidationError,
)
from gatekeeper.service.tokens import TokenType
from gatekeeper.storage.models import SYSTEM_ADMIN_ID, ActivityAction, AuthProvider, utcnow

PASSWORD = "Alice-Password-1"
NEW_PASSWORD = "Brand-New-Password-2"


async def _lock(services):
    for _ in range(services.settings.max_failed_login_attempts):
        with pytest.raises(InvalidCredentialsError):
            await services.auth.login("alice", "wrong-password", "ok")
    return services.store.get_user_by_username("alice")


def _actions(services, user_id):
    return [entry.action for entry in services.activity.query(user_id=user_id)]


class TestUnlock:
    async def test_unlock_with_mailed_token(self, services):
        services.create_user()
        locked = await _lock(services)

        result = services.auth.unlock_account(locked.unlock_token, NEW_PASSWORD)

        assert isinstance(result, AuthResult)
        assert result.session_id is None
        stored = services.store.get_user(locked.id)
        assert stored.is_locked is False
        assert stored.failed_login_attempts == 0
        assert stored.lock_until is None
        assert stored.unlock_token is None
        assert stored.refresh_token == result.tokens.refresh_token
        assert ActivityAction.ACCOUNT_UNLOCKED in _actions(services, locked.id)
        assert isinstance(await services.auth.login("alice", NEW_PASSWORD, "ok"), OTPChallenge)

    async def test_old_password_rejected_after_unlock(self, services):
        services.create_user()
        locked = await _lock(services)
        services.auth.unlock_account(locked.unlock_token, NEW_PASSWORD)

        with pytest.raises(InvalidCredentialsError):
            await services.auth.login("alice", PASSWORD, "ok")

    async def test_unlock_token_single_use(self, services):
        services.create_user()
        locked = await _lock(services)
        services.auth.unlock_account(locked.unlock_token, NEW_PASSWORD)

        with pytest.raises(InvalidTokenError):
            services.auth.unlock_account(locked.unlock_token, "Another-Password-3")

    async def test_expired_unlock_token(self, services):
        services.create_user()
        locked = await _lock(services)
        services.store.update_user(
            locked.id,
            unlock_token=locked.unlock_token,
            unlock_token_expires=utcnow() - timedelta(minutes=1),
        )

        with pytest.raises(TokenExpiredError) as exc_info:
            services.auth.unlock_account(locked.unlock_token, NEW_PASSWORD)

        assert "expired" in exc_info.value.message
        assert ActivityAction.ACCOUNT_UNLOCK_FAILED in _actions(services, locked.id)
        assert services.store.get_user(locked.id).is_locked is True

    async def test_token_not_issued_for_unlock_rejected(self, services):
        user = services.create_user()
        await _lock(services)
        other = services.tokens.issue_email_verification(user.email, user.id)

        with pytest.raises(InvalidTokenError):
            services.auth.unlock_account(other, NEW_PASSWORD)

    def test_unlock_requires_locked_account(self, services):
        user = services.create_user()
        token = services.tokens.issue_email_verification(user.email, user.id)
        services.store.update_user(
            user.id, unlock_token=token, unlock_token_expires=utcnow() + timedelta(hours=1)
        )

        with pytest.raises(InvalidTokenError):
            services.auth.unlock_account(token, NEW_PASSWORD)

    def test_weak_password_rejected(self, services):
        with pytest.raises(ValidationError):
            services.auth.unlock_account("whatever", "short")


class TestPasswordReset:
    def test_reset_flow(self, services):
        user = services.create_user()
        services.auth.request_password_reset("alice@example.com")
        token = services.store.get_user(user.id).password_reset_token
        assert token is not None
        assert any("reset-password?token=" in (msg["text"] or "") for msg in services.email.sent)

        services.auth.reset_password(token, NEW_PASSWORD)

        stored = services.store.get_user(user.id)
        assert stored.password_reset_token is None
        assert stored.refresh_token is None
        assert services.auth.verify_password(stored, NEW_PASSWORD)
        assert ActivityAction.PASSWORD_RESET_SUCCESS in _actions(services, user.id)

    def test_reset_revokes_refresh_token(self, services):
        """A reset issues no new pair; the old refresh token stops working."""
        user = services.create_user()
        old_refresh = services.tokens.issue_refresh(user.id)
        services.store.update_user(user.id, refresh_token=old_refresh)
        services.auth.request_password_reset(user.email)
        token = services.store.get_user(user.id).password_reset_token

        assert services.auth.reset_password(token, NEW_PASSWORD) is None

        with pytest.raises(InvalidTokenError):
            services.auth.refresh(old_refresh)

    def test_reset_token_single_use(self, services):
        user = services.create_user()
        services.auth.request_password_reset(user.email)
        token = services.store.get_user(user.id).password_reset_token
        services.auth.reset_password(token, NEW_PASSWORD)

        with pytest.raises(InvalidTokenError):
            services.auth.reset_password(token, "Another-Password-3")

    def test_only_latest_reset_token_is_valid(self, services):
        user = services.create_user()
        services.auth.request_password_reset(user.email)
        first = services.store.get_user(user.id).password_reset_token
        services.auth.request_password_reset(user.email)

        with pytest.raises(InvalidTokenError):
            services.auth.reset_password(first, NEW_PASSWORD)

    def test_reset_clears_lock(self, services):
        user = services.create_user()
        services.store.update_user(user.id, is_locked=True, failed_login_attempts=3)
        services.auth.request_password_reset(user.email)
        token = services.store.get_user(user.id).password_reset_token

        services.auth.reset_password(token, NEW_PASSWORD)

        stored = services.store.get_user(user.id)
        assert stored.is_locked is False
        assert stored.failed_login_attempts == 0

    def test_unknown_address_is_silent(self, services):
        services.auth.request_password_reset("nobody@example.com")

        assert services.email.sent == []

    def test_unverified_address_is_silent(self, services):
        user = services.create_user(is_verified=False)

        services.auth.request_password_reset(user.email)

        assert services.store.get_user(user.id).password_reset_token is None

    def test_access_token_is_not_a_reset_token(self, services):
        user = services.create_user()
        access = services.tokens.issue_access(user.id)

        with pytest.raises(InvalidTokenError):
            services.auth.reset_password(access, NEW_PASSWORD)


class TestRegistration:
    async def test_register_then_verify_email(self, services):
        user = await services.auth.register(
            username="carol",
            email="Carol@Example.com",
            password="Carol-Password-1",
            challenge_token="ok",
            name="Carol",
        )
        await services.mailer.drain()

        assert user.email == "carol@example.com"
        assert user.is_verified is False
        assert ActivityAction.REGISTER in _actions(services, user.id)
        assert any("verify-email?token=" in (msg["text"] or "") for msg in services.email.sent)

        token = services.tokens.issue_email_verification(user.email, user.id)
        verification = services.auth.verify_email(token)

        assert verification.already_verified is False
        assert verification.tokens is not None
        assert services.store.get_user(user.id).is_verified is True
        again = services.auth.verify_email(token)
        assert again.already_verified is True
        assert again.tokens is None

    async def test_duplicate_username_or_email(self, services):
        services.create_user()

        with pytest.raises(ConflictError):
            await services.auth.register(
                username="alice", email="other@example.com", password=PASSWORD, challenge_token="ok"
            )
        with pytest.raises(ConflictError):
            await services.auth.register(
                username="other", email="alice@example.com", password=PASSWORD, challenge_token="ok"
            )

    async def test_system_admin_email_reserved(self, services):
        with pytest.raises(ConflictError):
            await services.auth.register(
                username="root", email="root@example.com", password=PASSWORD, challenge_token="ok"
            )

    async def test_signup_disabled(self, services):
        services.auth.settings = services.settings.model_copy(update={"allow_signup": False})

        with pytest.raises(ForbiddenError):
            await services.auth.register(
                username="carol", email="carol@example.com", password=PASSWORD, challenge_token="ok"
            )

    async def test_bypass_token_not_accepted_for_signup(self, services):
        services.auth.captcha.enabled = True

        with pytest.raises(ChallengeInvalidError):
            await services.auth.register(
                username="carol",
                email="carol@example.com",
                password=PASSWORD,
                challenge_token=services.settings.captcha_bypass_token,
            )

    def test_verification_token_for_changed_email_rejected(self, services):
        user = services.create_user(is_verified=False)
        token = services.tokens.issue_email_verification(user.email, user.id)
        services.store.update_user(user.id, email="new@example.com")

        with pytest.raises(InvalidTokenError):
            services.auth.verify_email(token)


class TestChangePassword:
    def test_change_password(self, services):
        user = services.create_user()

        pair = services.auth.change_password(user.id, PASSWORD, NEW_PASSWORD)

        stored = services.store.get_user(user.id)
        assert stored.refresh_token == pair.refresh_token
        assert services.auth.verify_password(stored, NEW_PASSWORD)
        assert not services.auth.verify_password(stored, PASSWORD)

    def test_wrong_current_password(self, services):
        user = services.create_user()

        with pytest.raises(InvalidCredentialsError):
            services.auth.change_password(user.id, "not-my-password", NEW_PASSWORD)

        failed = services.activity.query(user_id=user.id, success=False)
        assert [entry.action for entry in failed] == [ActivityAction.PASSWORD_CHANGED]

    def test_new_password_must_differ(self, services):
        user = services.create_user()

        with pytest.raises(ValidationError):
            services.auth.change_password(user.id, PASSWORD, PASSWORD)

    def test_system_admin_refused(self, services):
        with pytest.raises(ForbiddenError):
            services.auth.change_password(SYSTEM_ADMIN_ID, "Root-Password-123", NEW_PASSWORD)


class TestDeregister:
    def test_deregister_anonymizes_account(self, services):
        user = services.create_user()

        services.auth.deregister(user.id, PASSWORD, "moving on")

        stored = services.store.get_user(user.id)
        assert stored.is_deregistered is True
        assert stored.is_active is False
        assert stored.email.startswith("deregistered_") and stored.email.endswith("@deleted.com")
        assert stored.username.startswith("deleted_user_")
        assert stored.password_hash is None
        assert stored.refresh_token is None
        assert stored.deregistration_reason == "moving on"
        assert services.store.get_user_by_email("alice@example.com") is None
        assert [msg["to"] for msg in services.email.sent] == ["alice@example.com"]
        assert ActivityAction.ACCOUNT_DEREGISTERED in _actions(services, user.id)

    def test_address_reusable_after_deregistration(self, services):
        user = services.create_user()
        services.auth.deregister(user.id, PASSWORD)

        again = services.create_user()

        assert again.id != user.id

    def test_wrong_password(self, services):
        user = services.create_user()

        with pytest.raises(InvalidCredentialsError):
            services.auth.deregister(user.id, "not-my-password")

        assert ActivityAction.DEREGISTER_FAILED in _actions(services, user.id)
        assert services.store.get_user(user.id).is_deregistered is False

    def test_federated_account_needs_no_password(self, services):
        user = services.store.create_user(
            email="fed@example.com",
            username="fed",
            auth_provider=AuthProvider.GOOGLE,
            google_id="g-1",
            is_verified=True,
        )

        services.auth.deregister(user.id, None)

        assert services.store.get_user(user.id).is_deregistered is True

    def test_twice_is_not_found(self, services):
        user = services.create_user()
        services.auth.deregister(user.id, PASSWORD)

        with pytest.raises(NotFoundError):
            services.auth.deregister(user.id, PASSWORD)

    def test_system_admin_refused(self, services):
        with pytest.raises(ForbiddenError):
            services.auth.deregister(SYSTEM_ADMIN_ID, "Root-Password-123")


class TestOAuth:
    async def test_new_identity_registers_and_logs_in(self, services):
        start = await services.auth.start_oauth()
        assert start["state"] in start["authorization_url"]
        services.oauth.register_code(
            "code-1", {"provider_uid": "g-100", "email": "dana@example.com", "name": "Dana"}
        )

        result = await services.auth.complete_oauth("code-1", start["state"])

        user = services.store.get_user(result.user.id)
        assert user.google_id == "g-100"
        assert user.auth_provider == AuthProvider.GOOGLE
        assert user.is_verified is True
        assert user.username == "dana"
        assert services.sessions.get(result.session_id) is not None
        actions = _actions(services, user.id)
        assert ActivityAction.GOOGLE_REGISTER in actions
        assert ActivityAction.GOOGLE_LOGIN in actions
        claims = services.tokens.verify(result.tokens.access_token, TokenType.ACCESS)
        assert claims["sid"] == result.session_id

    async def test_existing_email_is_linked(self, services):
        existing = services.create_user(is_verified=False)
        start = await services.auth.start_oauth()
        services.oauth.register_code(
            "code-2", {"provider_uid": "g-200", "email": "alice@example.com", "name": "Alice"}
        )

        result = await services.auth.complete_oauth("code-2", start["state"])

        assert result.user.id == existing.id
        linked = services.store.get_user(existing.id)
        assert linked.google_id == "g-200"
        assert linked.is_verified is True
        assert ActivityAction.GOOGLE_LINK in _actions(services, existing.id)

    async def test_state_cannot_be_replayed(self, services):
        start = await services.auth.start_oauth()
        services.oauth.register_code("code-3", {"provider_uid": "g-300", "email": "eve@example.com"})
        await services.auth.complete_oauth("code-3", start["state"])
        services.oauth.register_code("code-4", {"provider_uid": "g-300", "email": "eve@example.com"})

        with pytest.raises(InvalidTokenError):
            await services.auth.complete_oauth("code-4", start["state"])

    async def test_unknown_state_rejected(self, services):
        with pytest.raises(InvalidTokenError):
            await services.auth.complete_oauth("code", "not-a-state")

    async def test_unsupported_provider(self, services):
        with pytest.raises(ValidationError):
            await services.auth.start_oauth("github")
