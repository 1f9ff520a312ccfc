import json
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.models import ActivityAction, ActivityEntry, OTPCheck, Permission, Role, utcnow


def _user(store, username="alice", email="alice@example.com"):
    return store.create_user(email=email, username=username, password_hash="hash")


def test_create_user_normalizes_identity(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))

    user = store.create_user(email="  Alice@Example.COM ", username=" alice ")

    assert user.email == "alice@example.com"
    assert user.username == "alice"
    assert store.get_user_by_email("ALICE@example.com").id == user.id
    assert store.get_user_by_username("ALICE").id == user.id


def test_returned_users_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _user(store)

    user.role = Role.ADMIN

    assert store.get_user(user.id).role == Role.USER


def test_uniqueness_among_live_users(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _user(store)

    with pytest.raises(ConstraintViolation) as exc_info:
        _user(store, username="other")
    assert exc_info.value.detail == {"field": "email"}
    with pytest.raises(ConstraintViolation):
        _user(store, email="other@example.com", username="ALICE")

    store.update_user(user.id, is_deregistered=True)
    assert _user(store).id != user.id


def test_update_user_rejects_unknown_fields(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _user(store)

    with pytest.raises(ValueError):
        store.update_user(user.id, id="new-id")


def test_paired_fields_must_change_together(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _user(store)

    with pytest.raises(ValueError):
        store.update_user(user.id, login_otp="123456")
    with pytest.raises(ValueError):
        store.update_user(user.id, login_otp="123456", login_otp_expires=None)

    updated = store.update_user(user.id, login_otp="123456", login_otp_expires=utcnow())
    assert updated.login_otp == "123456"


def test_update_missing_user_returns_none(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))

    assert store.update_user("missing", is_active=False) is None


def test_increment_failed_logins(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _user(store)

    assert [store.increment_failed_logins(user.id) for _ in range(3)] == [1, 2, 3]
    with pytest.raises(ConstraintViolation):
        store.increment_failed_logins("missing")


class TestConsumeLoginOTP:
    def test_valid_then_cleared(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        now = utcnow()
        store.update_user(user.id, login_otp="654321", login_otp_expires=now + timedelta(minutes=10))

        assert store.consume_login_otp(user.id, "654321", now) == OTPCheck.VALID
        assert store.consume_login_otp(user.id, "654321", now) == OTPCheck.MISMATCH
        stored = store.get_user(user.id)
        assert stored.login_otp is None and stored.login_otp_expires is None

    def test_expired(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        now = utcnow()
        store.update_user(user.id, login_otp="654321", login_otp_expires=now - timedelta(seconds=1))

        assert store.consume_login_otp(user.id, "654321", now) == OTPCheck.EXPIRED

    def test_mismatch_also_clears(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        now = utcnow()
        store.update_user(user.id, login_otp="654321", login_otp_expires=now + timedelta(minutes=10))

        assert store.consume_login_otp(user.id, "111111", now) == OTPCheck.MISMATCH
        assert store.get_user(user.id).login_otp is None


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        store.update_user(
            user.id,
            role=Role.MODERATOR,
            permissions={Permission.REPORT_ACCESS},
            refresh_token="refresh-secret",
            last_login=utcnow(),
        )
        store.append_activity(ActivityEntry.new(ActivityAction.LOGIN_SUCCESS, user_id=user.id))

        reloaded = MemoryStore(fs_root=str(tmp_path))

        restored = reloaded.get_user(user.id)
        assert restored.role == Role.MODERATOR
        assert restored.permissions == {Permission.REPORT_ACCESS}
        assert restored.refresh_token == "refresh-secret"
        assert restored.last_login is not None
        assert [e.action for e in reloaded.list_activity()] == [ActivityAction.LOGIN_SUCCESS]

    def test_secrets_encrypted_at_rest(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        store.update_user(
            user.id,
            refresh_token="refresh-secret",
            login_otp="246810",
            login_otp_expires=utcnow() + timedelta(minutes=5),
        )

        raw = (tmp_path / "state" / "memory_store.json").read_text()

        assert "refresh-secret" not in raw
        assert "246810" not in raw
        assert json.loads(raw)["users"][0]["email"] == "alice@example.com"

    def test_rotated_key_drops_secret_pairs(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), encryption_key=Fernet.generate_key().decode())
        user = _user(store)
        store.update_user(
            user.id,
            login_otp="246810",
            login_otp_expires=utcnow() + timedelta(minutes=5),
        )

        reloaded = MemoryStore(fs_root=str(tmp_path), encryption_key=Fernet.generate_key().decode())

        restored = reloaded.get_user(user.id)
        assert restored.login_otp is None
        assert restored.login_otp_expires is None


class TestActivity:
    def test_filters_newest_first(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        now = utcnow()
        for offset, action in enumerate(
            [ActivityAction.LOGIN_SUCCESS, ActivityAction.LOGOUT, ActivityAction.LOGIN_FAILED]
        ):
            store.append_activity(
                ActivityEntry.new(
                    action,
                    user_id="u1",
                    success=action != ActivityAction.LOGIN_FAILED,
                    timestamp=now - timedelta(minutes=offset),
                )
            )

        assert [e.action for e in store.list_activity()] == [
            ActivityAction.LOGIN_SUCCESS,
            ActivityAction.LOGOUT,
            ActivityAction.LOGIN_FAILED,
        ]
        assert [e.action for e in store.list_activity(success=False)] == [ActivityAction.LOGIN_FAILED]
        assert len(store.list_activity(since=now - timedelta(seconds=90))) == 2
        assert len(store.list_activity(limit=1)) == 1
        assert store.list_activity(user_id="u2") == []
        assert [e.action for e in store.list_activity(actions=[ActivityAction.LOGOUT])] == [
            ActivityAction.LOGOUT
        ]

    def test_purge_expired(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        now = utcnow()
        store.append_activity(ActivityEntry.new(ActivityAction.LOGOUT, timestamp=now - timedelta(days=100)))
        store.append_activity(ActivityEntry.new(ActivityAction.LOGOUT, timestamp=now))

        assert store.purge_expired_activity(now - timedelta(days=90)) == 1
        assert len(store.list_activity()) == 1
