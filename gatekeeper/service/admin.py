from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.activity import ActivityLog
from gatekeeper.service.auth import AuthContext, deregistration_fields
from gatekeeper.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from gatekeeper.service.reconciliation import SessionReconciler
from gatekeeper.service.sessions import SessionTracker, parse_session_id
from gatekeeper.storage.models import (
    ROLE_IMPLIED_PERMISSIONS,
    SYSTEM_ADMIN_ID,
    ActivityAction,
    Permission,
    Role,
    SessionRecord,
    User,
    UserSummary,
)

logger = get_logger(__name__)


class AdminStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_users(self, *, include_deregistered: bool = False) -> List[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def admin_user_view(user: User) -> Dict[str, Any]:
    """User fields safe to show in the admin console."""

    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "name": user.name,
        "role": Role(user.role).value,
        "auth_provider": user.auth_provider.value,
        "is_active": user.is_active,
        "is_verified": user.is_verified,
        "is_locked": user.is_locked,
        "failed_login_attempts": user.failed_login_attempts,
        "permissions": sorted(p.value for p in user.permissions),
        "last_login": _iso(user.last_login),
        "last_logout": _iso(user.last_logout),
        "created_at": _iso(user.created_at),
        "is_system_admin": False,
    }


def role_for_permissions(permissions: Iterable[Permission]) -> Role:
    granted = set(permissions)
    if Permission.ADMIN_ACCESS in granted:
        return Role.ADMIN
    if Permission.USER_MANAGEMENT in granted:
        return Role.MODERATOR
    return Role.USER


def _has_override(user: User) -> bool:
    return Role(user.role) != Role.USER or not user.is_active or bool(user.permissions)


class AdminService:
    """Administrative console over accounts, sessions and permission overrides.

    Audit entries are written against the affected user with the acting
    administrator in ``details``, so actions by the system administrator
    are still recorded.
    """

    def __init__(
        self,
        store: AdminStore,
        activity: ActivityLog,
        sessions: SessionTracker,
        reconciler: SessionReconciler,
        settings: Settings,
    ) -> None:
        self.store = store
        self.activity = activity
        self.sessions = sessions
        self.reconciler = reconciler
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _require_user(self, user_id: str) -> User:
        if user_id == SYSTEM_ADMIN_ID:
            raise ForbiddenError("the system administrator cannot be modified")
        user = self.store.get_user(user_id)
        if user is None or user.is_deregistered:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def _audit(
        self,
        action: ActivityAction,
        target: str,
        actor: AuthContext,
        details: Optional[Dict[str, Any]] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        self.activity.record(
            action,
            user_id=target,
            details={**(details or {}), "admin_id": actor.user_id},
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=timestamp,
        )
        logger.info("admin_action", action=action.value, target_user_id=target, admin_id=actor.user_id)

    # users
    def system_admin_view(self) -> Dict[str, Any]:
        summary = UserSummary(
            id=SYSTEM_ADMIN_ID,
            email=self.settings.admin_email or "",
            username="admin",
            name=self.settings.admin_name,
            role=Role.ADMIN,
            is_system_admin=True,
        )
        return {
            **summary.to_dict(),
            "auth_provider": "local",
            "is_active": True,
            "is_verified": True,
            "is_locked": False,
            "failed_login_attempts": 0,
            "permissions": sorted(p.value for p in Permission),
            "last_login": None,
            "last_logout": None,
            "created_at": None,
        }

    def list_users(self, *, include_system_admin: bool = False) -> List[Dict[str, Any]]:
        users = [admin_user_view(u) for u in self.store.list_users()]
        if include_system_admin and self.settings.admin_email:
            users.insert(0, self.system_admin_view())
        return users

    def set_user_status(
        self,
        user_id: str,
        actor: AuthContext,
        *,
        is_active: Optional[bool] = None,
        role: Optional[Role] = None,
    ) -> Dict[str, Any]:
        if is_active is None and role is None:
            raise ValidationError("nothing to update")
        user = self._require_user(user_id)
        if user_id == actor.user_id and (is_active is False or (role and Role(role) != Role.ADMIN)):
            raise ForbiddenError("administrators cannot disable or demote themselves")
        changes: Dict[str, Any] = {}
        if is_active is not None:
            changes["is_active"] = is_active
        if role is not None:
            changes["role"] = Role(role)
        if is_active is False:
            changes.update(refresh_token=None, login_otp=None, login_otp_expires=None)
        updated = self.store.update_user(user.id, **changes) or user
        if is_active is False:
            self.sessions.remove_user(user.id)
        audited = {k: v for k, v in changes.items() if k in ("is_active", "role")}
        self._audit(
            ActivityAction.ADMIN_USER_UPDATE,
            user.id,
            actor,
            {k: (v.value if isinstance(v, Role) else v) for k, v in audited.items()},
        )
        return admin_user_view(updated)

    def verify_user(self, user_id: str, actor: AuthContext) -> Dict[str, Any]:
        user = self._require_user(user_id)
        updated = self.store.update_user(user.id, is_verified=True) or user
        self._audit(ActivityAction.ADMIN_VERIFIED_USER, user.id, actor)
        return admin_user_view(updated)

    def delete_user(self, user_id: str, actor: AuthContext) -> None:
        """Soft delete: the account is anonymized the same way as self-deregistration."""

        if user_id == actor.user_id:
            raise ForbiddenError("administrators cannot delete their own account")
        user = self._require_user(user_id)
        self.store.update_user(user.id, **deregistration_fields(self._now(), "deleted by administrator"))
        self.sessions.remove_user(user.id)
        self._audit(ActivityAction.ADMIN_USER_DELETE, user.id, actor)

    def force_logout(self, user_id: str, actor: AuthContext) -> int:
        user = self._require_user(user_id)
        now = self._now()
        self.store.update_user(user.id, refresh_token=None, last_logout=now)
        removed = self.sessions.remove_user(user.id)
        self._audit(
            ActivityAction.FORCE_LOGOUT,
            user.id,
            actor,
            {"sessions_removed": removed},
            timestamp=now,
        )
        return removed

    # sessions
    def list_active_sessions(self) -> List[SessionRecord]:
        return self.reconciler.reconcile()

    def terminate_session(
        self,
        session_id: str,
        actor: AuthContext,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """End one session. The log entry keeps it terminated across reconciliation."""

        parsed = parse_session_id(session_id)
        if parsed is None:
            raise ValidationError("invalid session id format", detail={"session_id": session_id})
        target_user_id, _ = parsed
        removed = self.sessions.remove(session_id)
        if not removed:
            # The tracker may be stale; the log decides what is active.
            active = {record.session_id for record in self.reconciler.reconcile()}
            removed = session_id in active and self.sessions.remove(session_id)
        if not removed:
            logger.info("session_terminate_not_found", session_id=session_id)
            return False

        now = self._now()
        self.activity.record(
            ActivityAction.ADMIN_SESSION_TERMINATE,
            user_id=target_user_id,
            details={
                "session_id": session_id,
                "target_user_id": target_user_id,
                "terminated_by": actor.user_id,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=now,
        )
        if target_user_id != SYSTEM_ADMIN_ID:
            self.store.update_user(target_user_id, refresh_token=None, last_logout=now)
        logger.info(
            "session_terminated",
            session_id=session_id,
            target_user_id=target_user_id,
            terminated_by=actor.user_id,
        )
        return True

    # reporting
    def stats(self) -> Dict[str, Any]:
        users = self.store.list_users()
        active = self.list_active_sessions()
        now = self._now()
        durations = [(now - record.login_time).total_seconds() / 60 for record in active]
        average = round(sum(durations) / len(durations), 1) if durations else 0
        return {
            "total_users": len(users),
            "active_sessions": len(active),
            "total_overrides": sum(1 for u in users if _has_override(u)),
            "average_session_minutes": average,
            "recent_activity": [entry.to_dict() for entry in self.activity.recent(limit=10)],
        }

    def suspicious_activity(self, hours: int = 24) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.activity.suspicious(hours=hours)]

    # permission overrides
    def _override_view(self, user: User) -> Dict[str, Any]:
        effective = set(user.permissions) | set(ROLE_IMPLIED_PERMISSIONS[Role(user.role)])
        return {
            "user_id": user.id,
            "email": user.email,
            "username": user.username,
            "role": Role(user.role).value,
            "is_active": user.is_active,
            "permissions": sorted(p.value for p in effective),
            "explicit_permissions": sorted(p.value for p in user.permissions),
        }

    def list_overrides(self) -> List[Dict[str, Any]]:
        return [self._override_view(u) for u in self.store.list_users() if _has_override(u)]

    def create_override(
        self,
        user_id: str,
        permissions: Iterable[Permission],
        actor: AuthContext,
        *,
        is_active: bool = True,
    ) -> Dict[str, Any]:
        user = self._require_user(user_id)
        if _has_override(user):
            raise ConflictError("user already has an override", detail={"user_id": user_id})
        return self._apply_override(
            user, permissions, actor, ActivityAction.ADMIN_OVERRIDE_CREATE, is_active=is_active
        )

    def update_override(
        self,
        user_id: str,
        permissions: Iterable[Permission],
        actor: AuthContext,
        *,
        is_active: Optional[bool] = None,
    ) -> Dict[str, Any]:
        user = self._require_user(user_id)
        if not _has_override(user):
            raise NotFoundError("override not found", detail={"user_id": user_id})
        return self._apply_override(
            user,
            permissions,
            actor,
            ActivityAction.ADMIN_OVERRIDE_UPDATE,
            is_active=user.is_active if is_active is None else is_active,
        )

    def _apply_override(
        self,
        user: User,
        permissions: Iterable[Permission],
        actor: AuthContext,
        action: ActivityAction,
        *,
        is_active: bool,
    ) -> Dict[str, Any]:
        granted = {Permission(p) for p in permissions}
        role = role_for_permissions(granted)
        if user.id == actor.user_id and role != Role.ADMIN:
            raise ForbiddenError("administrators cannot demote themselves")
        updated = self.store.update_user(
            user.id, permissions=granted, role=role, is_active=is_active
        ) or user
        self._audit(
            action,
            user.id,
            actor,
            {"permissions": sorted(p.value for p in granted), "role": role.value, "is_active": is_active},
        )
        return self._override_view(updated)

    def delete_override(self, user_id: str, actor: AuthContext) -> None:
        user = self._require_user(user_id)
        if not _has_override(user):
            raise NotFoundError("override not found", detail={"user_id": user_id})
        if user.id == actor.user_id:
            raise ForbiddenError("administrators cannot demote themselves")
        self.store.update_user(user.id, permissions=set(), role=Role.USER, is_active=True)
        self._audit(ActivityAction.ADMIN_OVERRIDE_DELETE, user.id, actor)
