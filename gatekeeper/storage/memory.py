from __future__ import annotations

import hmac
import json
import os
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from gatekeeper.logging import get_logger
from gatekeeper.storage.common import (
    filter_activity,
    normalize_email,
    normalize_username,
    validate_user_updates,
)
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import (
    ActivityAction,
    ActivityEntry,
    AuthProvider,
    OTPCheck,
    Permission,
    Role,
    User,
    utcnow,
)

# Secrets that are encrypted in the persisted JSON state.
_ENCRYPTED_USER_FIELDS = ("login_otp", "unlock_token", "password_reset_token", "refresh_token")
_DATETIME_USER_FIELDS = (
    "lock_until",
    "login_otp_expires",
    "unlock_token_expires",
    "password_reset_expires",
    "last_login",
    "last_logout",
    "deregistered_at",
    "created_at",
    "updated_at",
)


class MemoryStore:
    """In-memory credential and activity store persisted to a JSON file."""

    def __init__(
        self, fs_root: str = "/tmp/gatekeeper", *, encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.activities: List[ActivityEntry] = []
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = self._build_cipher(encryption_key)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _build_cipher(self, key_material: str | None) -> Fernet:
        key = key_material or os.getenv("STORE_ENCRYPTION_KEY")
        if not key:
            key_path = self.fs_root / ".store_key"
            try:
                key = key_path.read_text().strip()
            except FileNotFoundError:
                key = Fernet.generate_key().decode()
                try:
                    key_path.write_text(key)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist store encryption key") from exc
        try:
            return Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as exc:
            raise RuntimeError("Unable to initialize store cipher") from exc

    def _encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        return self._cipher.encrypt(value.encode()).decode()

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken:
            # A rotated key makes old secrets unusable; drop them rather than
            # resurrect ciphertext as a credential.
            self.logger.warning("store_secret_decrypt_failed")
            return None

    # users
    def _live_conflict(self, *, email: Optional[str], username: Optional[str], exclude: Optional[str] = None) -> None:
        for existing in self.users.values():
            if existing.id == exclude or existing.is_deregistered:
                continue
            if email and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and existing.username.lower() == username.lower():
                raise ConstraintViolation("username already exists", {"field": "username"})

    def create_user(
        self,
        *,
        email: str,
        username: str,
        password_hash: Optional[str] = None,
        name: Optional[str] = None,
        auth_provider: AuthProvider = AuthProvider.LOCAL,
        google_id: Optional[str] = None,
        role: Role = Role.USER,
        is_verified: bool = False,
    ) -> User:
        email = normalize_email(email)
        username = normalize_username(username)
        with self._data_lock:
            self._live_conflict(email=email, username=username)
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                name=name,
                password_hash=password_hash,
                auth_provider=AuthProvider(auth_provider),
                google_id=google_id,
                role=Role(role),
                is_verified=is_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email == email and not u.is_deregistered),
                None,
            )
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        username = normalize_username(username).lower()
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.username.lower() == username and not u.is_deregistered
                ),
                None,
            )
            return replace(user) if user else None

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.google_id == google_id and not u.is_deregistered
                ),
                None,
            )
            return replace(user) if user else None

    def list_users(self, *, include_deregistered: bool = False) -> List[User]:
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if include_deregistered or not u.is_deregistered
            ]
        return sorted(results, key=lambda u: u.created_at, reverse=True)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        """Replace the named fields of one user as a single atomic write."""

        updates = validate_user_updates(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in updates or "username" in updates:
                self._live_conflict(
                    email=updates.get("email"),
                    username=updates.get("username"),
                    exclude=user_id,
                )
            updates["updated_at"] = utcnow()
            updated = replace(user, **updates)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def increment_failed_logins(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            updated = replace(user, failed_login_attempts=user.failed_login_attempts + 1)
            self.users[user_id] = updated
            self._persist_state()
            return updated.failed_login_attempts

    def consume_login_otp(self, user_id: str, otp: str, now: datetime) -> OTPCheck:
        """Check and clear the stored login OTP in one step.

        Any outcome clears the OTP so a code is redeemable at most once.
        """

        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.login_otp or not user.login_otp_expires:
                return OTPCheck.MISMATCH
            matches = hmac.compare_digest(user.login_otp.encode(), otp.encode())
            expired = user.login_otp_expires < now
            self.users[user_id] = replace(user, login_otp=None, login_otp_expires=None)
            self._persist_state()
        if not matches:
            return OTPCheck.MISMATCH
        if expired:
            return OTPCheck.EXPIRED
        return OTPCheck.VALID

    # activity log
    def append_activity(self, entry: ActivityEntry) -> ActivityEntry:
        with self._data_lock:
            self.activities.append(entry)
            self._persist_state()
        return entry

    def list_activity(
        self,
        *,
        actions: Optional[Iterable[ActivityAction]] = None,
        since: Optional[datetime] = None,
        user_id: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[ActivityEntry]:
        with self._data_lock:
            snapshot = list(self.activities)
        return filter_activity(
            snapshot, actions=actions, since=since, user_id=user_id, success=success, limit=limit
        )

    def purge_expired_activity(self, before: datetime) -> int:
        with self._data_lock:
            kept = [entry for entry in self.activities if entry.timestamp >= before]
            removed = len(self.activities) - len(kept)
            if removed:
                self.activities = kept
                self._persist_state()
        return removed

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "activities": [self._serialize_activity(a) for a in self.activities],
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
        self.activities = [self._deserialize_activity(a) for a in data.get("activities", [])]
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        data = {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "name": user.name,
            "password_hash": user.password_hash,
            "auth_provider": AuthProvider(user.auth_provider).value,
            "google_id": user.google_id,
            "role": Role(user.role).value,
            "permissions": sorted(Permission(p).value for p in user.permissions),
            "is_active": user.is_active,
            "is_verified": user.is_verified,
            "is_locked": user.is_locked,
            "failed_login_attempts": user.failed_login_attempts,
            "is_deregistered": user.is_deregistered,
            "deregistration_reason": user.deregistration_reason,
        }
        for name in _ENCRYPTED_USER_FIELDS:
            data[name] = self._encrypt(getattr(user, name))
        for name in _DATETIME_USER_FIELDS:
            data[name] = self._serialize_datetime(getattr(user, name))
        return data

    def _deserialize_user(self, data: dict) -> User:
        kwargs: Dict[str, Any] = {
            "id": str(data["id"]),
            "email": data["email"],
            "username": data["username"],
            "name": data.get("name"),
            "password_hash": data.get("password_hash"),
            "auth_provider": AuthProvider(data.get("auth_provider", "local")),
            "google_id": data.get("google_id"),
            "role": Role(data.get("role", "user")),
            "permissions": {Permission(p) for p in data.get("permissions", [])},
            "is_active": data.get("is_active", True),
            "is_verified": data.get("is_verified", False),
            "is_locked": data.get("is_locked", False),
            "failed_login_attempts": data.get("failed_login_attempts", 0),
            "is_deregistered": data.get("is_deregistered", False),
            "deregistration_reason": data.get("deregistration_reason"),
        }
        for name in _ENCRYPTED_USER_FIELDS:
            kwargs[name] = self._decrypt(data.get(name))
        for name in _DATETIME_USER_FIELDS:
            value = self._deserialize_datetime(data.get(name))
            if value is not None:
                kwargs[name] = value
        user = User(**kwargs)
        # Keep the pairs consistent if one half failed to decrypt
        if user.login_otp is None:
            user.login_otp_expires = None
        if user.unlock_token is None:
            user.unlock_token_expires = None
        if user.password_reset_token is None:
            user.password_reset_expires = None
        return user

    def _serialize_activity(self, entry: ActivityEntry) -> dict:
        return entry.to_dict()

    def _deserialize_activity(self, data: dict) -> ActivityEntry:
        return ActivityEntry(
            id=data["id"],
            action=ActivityAction(data["action"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            success=data.get("success", True),
            user_id=data.get("user_id"),
            details=data.get("details") or {},
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )
