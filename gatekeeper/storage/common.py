"""Helpers shared between the memory and postgres credential stores."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from gatekeeper.storage.models import ActivityAction, ActivityEntry, AuthProvider, Permission, Role

# Columns a caller may replace through ``update_user``. Identity and creation
# timestamps are immutable.
UPDATABLE_USER_FIELDS = frozenset(
    {
        "email",
        "username",
        "name",
        "password_hash",
        "auth_provider",
        "google_id",
        "role",
        "permissions",
        "is_active",
        "is_verified",
        "is_locked",
        "failed_login_attempts",
        "lock_until",
        "login_otp",
        "login_otp_expires",
        "unlock_token",
        "unlock_token_expires",
        "password_reset_token",
        "password_reset_expires",
        "refresh_token",
        "last_login",
        "last_logout",
        "is_deregistered",
        "deregistered_at",
        "deregistration_reason",
    }
)

# Fields that must be written together so a record never holds a new secret
# with a stale expiry.
_PAIRED_FIELDS = (
    ("login_otp", "login_otp_expires"),
    ("unlock_token", "unlock_token_expires"),
    ("password_reset_token", "password_reset_expires"),
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_username(username: str) -> str:
    return username.strip()


def validate_user_updates(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Check and coerce a field map passed to ``update_user``."""

    unknown = set(fields) - UPDATABLE_USER_FIELDS
    if unknown:
        raise ValueError(f"unsupported user fields: {sorted(unknown)}")
    for secret_field, expiry_field in _PAIRED_FIELDS:
        if (secret_field in fields) != (expiry_field in fields):
            raise ValueError(f"{secret_field} and {expiry_field} must be updated together")
        if secret_field in fields and (fields[secret_field] is None) != (fields[expiry_field] is None):
            raise ValueError(f"{secret_field} and {expiry_field} must both be set or both cleared")
    coerced = dict(fields)
    if "email" in coerced and coerced["email"] is not None:
        coerced["email"] = normalize_email(coerced["email"])
    if "username" in coerced and coerced["username"] is not None:
        coerced["username"] = normalize_username(coerced["username"])
    if "role" in coerced:
        coerced["role"] = Role(coerced["role"])
    if "auth_provider" in coerced:
        coerced["auth_provider"] = AuthProvider(coerced["auth_provider"])
    if "permissions" in coerced:
        coerced["permissions"] = {Permission(p) for p in coerced["permissions"] or ()}
    if "failed_login_attempts" in coerced and coerced["failed_login_attempts"] < 0:
        raise ValueError("failed_login_attempts cannot be negative")
    return coerced


def filter_activity(
    entries: Iterable[ActivityEntry],
    *,
    actions: Optional[Iterable[ActivityAction]] = None,
    since: Optional[datetime] = None,
    user_id: Optional[str] = None,
    success: Optional[bool] = None,
    limit: Optional[int] = None,
) -> List[ActivityEntry]:
    """Apply activity-log filters and return matches newest first."""

    wanted = {ActivityAction(a) for a in actions} if actions is not None else None
    matches = [
        entry
        for entry in entries
        if (wanted is None or entry.action in wanted)
        and (since is None or entry.timestamp >= since)
        and (user_id is None or entry.user_id == user_id)
        and (success is None or entry.success == success)
    ]
    matches.sort(key=lambda e: e.timestamp, reverse=True)
    if limit is not None:
        matches = matches[:limit]
    return matches
