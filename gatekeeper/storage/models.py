from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set

# Fixed user id of the configured system administrator. It never exists in the
# credential store and is exempt from activity logging.
SYSTEM_ADMIN_ID = "admin-system-user"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


class AuthProvider(str, Enum):
    LOCAL = "local"
    GOOGLE = "google"


class Permission(str, Enum):
    ADMIN_ACCESS = "admin_access"
    USER_MANAGEMENT = "user_management"
    SESSION_MANAGEMENT = "session_management"
    OVERRIDE_MANAGEMENT = "override_management"
    REPORT_ACCESS = "report_access"
    SYSTEM_SETTINGS = "system_settings"


ROLE_IMPLIED_PERMISSIONS: Dict[Role, frozenset] = {
    Role.ADMIN: frozenset(Permission),
    Role.MODERATOR: frozenset({Permission.USER_MANAGEMENT, Permission.SESSION_MANAGEMENT}),
    Role.USER: frozenset(),
}


class ActivityAction(str, Enum):
    LOGIN_ATTEMPT = "LOGIN_ATTEMPT"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_SUCCESS = "PASSWORD_RESET_SUCCESS"
    GOOGLE_LOGIN = "GOOGLE_LOGIN"
    GOOGLE_REGISTER = "GOOGLE_REGISTER"
    GOOGLE_LINK = "GOOGLE_LINK"
    OTP_GENERATED = "OTP_GENERATED"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_FAILED = "OTP_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    ACCOUNT_UNLOCK_FAILED = "ACCOUNT_UNLOCK_FAILED"
    ACCOUNT_DEREGISTERED = "ACCOUNT_DEREGISTERED"
    DEREGISTER_FAILED = "DEREGISTER_FAILED"
    ADMIN_LOGIN_SUCCESS = "ADMIN_LOGIN_SUCCESS"
    ADMIN_SESSION_TERMINATE = "ADMIN_SESSION_TERMINATE"
    FORCE_LOGOUT = "FORCE_LOGOUT"
    ADMIN_USER_UPDATE = "ADMIN_USER_UPDATE"
    ADMIN_VERIFIED_USER = "ADMIN_VERIFIED_USER"
    ADMIN_USER_DELETE = "ADMIN_USER_DELETE"
    ADMIN_OVERRIDE_CREATE = "ADMIN_OVERRIDE_CREATE"
    ADMIN_OVERRIDE_UPDATE = "ADMIN_OVERRIDE_UPDATE"
    ADMIN_OVERRIDE_DELETE = "ADMIN_OVERRIDE_DELETE"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    TOKEN_REVOKED = "TOKEN_REVOKED"


# Events that open a session when successful.
LOGIN_ACTIONS = frozenset(
    {
        ActivityAction.LOGIN_SUCCESS,
        ActivityAction.OTP_VERIFIED,
        ActivityAction.ADMIN_LOGIN_SUCCESS,
        ActivityAction.GOOGLE_LOGIN,
    }
)
# Events that end every session of a user.
LOGOUT_ACTIONS = frozenset({ActivityAction.LOGOUT, ActivityAction.FORCE_LOGOUT})
SUSPICIOUS_ACTIONS = frozenset(
    {ActivityAction.LOGIN_FAILED, ActivityAction.OTP_FAILED, ActivityAction.ACCOUNT_LOCKED}
)


class OTPCheck(str, Enum):
    """Outcome of an atomic login OTP redemption."""

    VALID = "valid"
    MISMATCH = "mismatch"
    EXPIRED = "expired"


@dataclass
class UserSummary:
    id: str
    email: str
    username: Optional[str] = None
    name: Optional[str] = None
    role: Role = Role.USER
    is_system_admin: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "name": self.name,
            "role": Role(self.role).value,
            "is_system_admin": self.is_system_admin,
        }


@dataclass
class User:
    id: str
    email: str
    username: str
    name: Optional[str] = None
    password_hash: Optional[str] = None
    auth_provider: AuthProvider = AuthProvider.LOCAL
    google_id: Optional[str] = None
    role: Role = Role.USER
    permissions: Set[Permission] = field(default_factory=set)
    is_active: bool = True
    is_verified: bool = False
    is_locked: bool = False
    failed_login_attempts: int = 0
    lock_until: Optional[datetime] = None
    login_otp: Optional[str] = None
    login_otp_expires: Optional[datetime] = None
    unlock_token: Optional[str] = None
    unlock_token_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    refresh_token: Optional[str] = None
    last_login: Optional[datetime] = None
    last_logout: Optional[datetime] = None
    is_deregistered: bool = False
    deregistered_at: Optional[datetime] = None
    deregistration_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def summary(self) -> UserSummary:
        return UserSummary(
            id=self.id,
            email=self.email,
            username=self.username,
            name=self.name,
            role=self.role,
        )

    def effective_permissions(self) -> Set[Permission]:
        return set(self.permissions) | set(ROLE_IMPLIED_PERMISSIONS[Role(self.role)])

    def is_locked_at(self, now: datetime) -> bool:
        return self.is_locked or (self.lock_until is not None and self.lock_until > now)


@dataclass
class ActivityEntry:
    id: str
    action: ActivityAction
    timestamp: datetime
    success: bool = True
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        action: ActivityAction,
        *,
        user_id: Optional[str] = None,
        success: bool = True,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "ActivityEntry":
        return cls(
            id=str(uuid.uuid4()),
            action=ActivityAction(action),
            timestamp=timestamp or utcnow(),
            success=success,
            user_id=user_id,
            details=dict(details or {}),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action.value,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }


@dataclass
class SessionRecord:
    session_id: str
    user_id: str
    user: UserSummary
    login_time: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: str = "active"
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "user": self.user.to_dict(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "login_time": self.login_time.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
        }
