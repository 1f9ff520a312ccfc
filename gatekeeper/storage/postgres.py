from __future__ import annotations

import hmac
import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatekeeper.logging import get_logger
from gatekeeper.storage.common import (
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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        name TEXT,
        password_hash TEXT,
        auth_provider TEXT NOT NULL DEFAULT 'local',
        google_id TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        permissions TEXT[] NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_locked BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_attempts >= 0),
        lock_until TIMESTAMPTZ,
        login_otp TEXT,
        login_otp_expires TIMESTAMPTZ,
        unlock_token TEXT,
        unlock_token_expires TIMESTAMPTZ,
        password_reset_token TEXT,
        password_reset_expires TIMESTAMPTZ,
        refresh_token TEXT,
        last_login TIMESTAMPTZ,
        last_logout TIMESTAMPTZ,
        is_deregistered BOOLEAN NOT NULL DEFAULT FALSE,
        deregistered_at TIMESTAMPTZ,
        deregistration_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        CHECK ((login_otp IS NULL) = (login_otp_expires IS NULL))
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_live_email ON app_user (lower(email)) WHERE NOT is_deregistered",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_live_username ON app_user (lower(username)) WHERE NOT is_deregistered",
    """
    CREATE TABLE IF NOT EXISTS user_activity (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action TEXT NOT NULL,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT now(),
        success BOOLEAN NOT NULL DEFAULT TRUE,
        details JSONB NOT NULL DEFAULT '{}',
        ip_address TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_activity_user_ts ON user_activity (user_id, timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS user_activity_action_ts ON user_activity (action, timestamp DESC)",
)


class PostgresStore:
    """Postgres-backed credential and activity store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_schema(self) -> None:
        """Create the user and activity tables and their indexes if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _constraint_from(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
        field = "username" if "username" in constraint else "email"
        return ConstraintViolation(f"{field} already exists", {"field": field})

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            name=row.get("name"),
            password_hash=row.get("password_hash"),
            auth_provider=AuthProvider(row.get("auth_provider") or "local"),
            google_id=row.get("google_id"),
            role=Role(row.get("role") or "user"),
            permissions={Permission(p) for p in row.get("permissions") or []},
            is_active=row.get("is_active", True),
            is_verified=row.get("is_verified", False),
            is_locked=row.get("is_locked", False),
            failed_login_attempts=row.get("failed_login_attempts", 0),
            lock_until=row.get("lock_until"),
            login_otp=row.get("login_otp"),
            login_otp_expires=row.get("login_otp_expires"),
            unlock_token=row.get("unlock_token"),
            unlock_token_expires=row.get("unlock_token_expires"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            refresh_token=row.get("refresh_token"),
            last_login=row.get("last_login"),
            last_logout=row.get("last_logout"),
            is_deregistered=row.get("is_deregistered", False),
            deregistered_at=row.get("deregistered_at"),
            deregistration_reason=row.get("deregistration_reason"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_activity(row: Dict[str, Any]) -> ActivityEntry:
        details = row.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return ActivityEntry(
            id=str(row["id"]),
            action=ActivityAction(row["action"]),
            timestamp=row["timestamp"],
            success=row.get("success", True),
            user_id=row.get("user_id"),
            details=details,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _to_column(name: str, value: Any) -> Any:
        if name == "permissions":
            return sorted(Permission(p).value for p in value)
        if name in {"role", "auth_provider"}:
            return value.value
        return value

    # users
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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, name, password_hash, auth_provider, google_id, role, is_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        normalize_username(username),
                        name,
                        password_hash,
                        AuthProvider(auth_provider).value,
                        google_id,
                        Role(role).value,
                        is_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_from(exc) from exc
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s AND NOT is_deregistered",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = lower(%s) AND NOT is_deregistered",
                (normalize_username(username),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE google_id = %s AND NOT is_deregistered",
                (google_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, *, include_deregistered: bool = False) -> List[User]:
        query = "SELECT * FROM app_user"
        if not include_deregistered:
            query = " ".join([query, "WHERE NOT is_deregistered"])
        query = " ".join([query, "ORDER BY created_at DESC"])
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        """Replace the named fields of one user in a single UPDATE."""

        updates = validate_user_updates(fields)
        updates["updated_at"] = utcnow()
        # Column names come from the validated allowlist
        assignments = ", ".join(f"{name} = %s" for name in updates)
        params = [self._to_column(name, value) for name, value in updates.items()]
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_from(exc) from exc
        return self._row_to_user(row) if row else None

    def increment_failed_logins(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET failed_login_attempts = failed_login_attempts + 1, updated_at = now()
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (user_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return int(row["failed_login_attempts"])

    def consume_login_otp(self, user_id: str, otp: str, now: datetime) -> OTPCheck:
        """Check and clear the stored login OTP inside one transaction."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT login_otp, login_otp_expires FROM app_user WHERE id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not row or not row.get("login_otp") or not row.get("login_otp_expires"):
                return OTPCheck.MISMATCH
            conn.execute(
                "UPDATE app_user SET login_otp = NULL, login_otp_expires = NULL, updated_at = now() WHERE id = %s",
                (user_id,),
            )
        if not hmac.compare_digest(row["login_otp"].encode(), otp.encode()):
            return OTPCheck.MISMATCH
        if row["login_otp_expires"] < now:
            return OTPCheck.EXPIRED
        return OTPCheck.VALID

    # activity log
    def append_activity(self, entry: ActivityEntry) -> ActivityEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_activity (id, user_id, action, timestamp, success, details, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action.value,
                    entry.timestamp,
                    entry.success,
                    json.dumps(entry.details),
                    entry.ip_address,
                    entry.user_agent,
                ),
            )
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
        clauses = []
        params: list[Any] = []
        if actions is not None:
            action_values = [ActivityAction(a).value for a in actions]
            if not action_values:
                return []
            placeholders = ", ".join(["%s"] * len(action_values))
            clauses.append(f"action IN ({placeholders})")
            params.extend(action_values)
        if since is not None:
            clauses.append("timestamp >= %s")
            params.append(since)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if success is not None:
            clauses.append("success = %s")
            params.append(success)
        query = "SELECT * FROM user_activity"
        if clauses:
            query = " ".join([query, "WHERE", " AND ".join(clauses)])
        query = " ".join([query, "ORDER BY timestamp DESC"])
        if limit is not None:
            query = " ".join([query, "LIMIT %s"])
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_activity(row) for row in rows]

    def purge_expired_activity(self, before: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM user_activity WHERE timestamp < %s", (before,))
            removed = cursor.rowcount or 0
        if removed:
            self.logger.info("activity_purged", removed=removed, before=before.isoformat())
        return removed
