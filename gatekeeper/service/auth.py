from __future__ import annotations

import hmac
import re
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger, hash_email, log_auth_event
from gatekeeper.service.activity import ActivityLog
from gatekeeper.service.captcha import CaptchaVerifier
from gatekeeper.service.email import EmailDispatcher
from gatekeeper.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ChallengeInvalidError,
    ChallengeRequiredError,
    ConflictError,
    EmailNotVerifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOTPError,
    InvalidTokenError,
    NotFoundError,
    OTPExpiredError,
    TokenExpiredError,
    ValidationError,
)
from gatekeeper.service.oauth import GoogleOAuthClient
from gatekeeper.service.sessions import SessionTracker, derive_session_id, login_millis
from gatekeeper.service.tokens import TokenPair, TokenService, TokenType
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import (
    SYSTEM_ADMIN_ID,
    ActivityAction,
    AuthProvider,
    OTPCheck,
    Permission,
    Role,
    SessionRecord,
    User,
    UserSummary,
)
from gatekeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_OTP_PATTERN = re.compile(r"^\d{6}$")
_USERNAME_STRIP = re.compile(r"[^a-zA-Z0-9_.-]")
_OAUTH_STATE_TTL = timedelta(minutes=10)


class AuthStore(Protocol):
    def create_user(self, **kwargs: Any) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def increment_failed_logins(self, user_id: str) -> int: ...

    def consume_login_otp(self, user_id: str, otp: str, now: datetime) -> OTPCheck: ...


@dataclass
class AuthContext:
    user_id: str
    role: Role
    email: Optional[str] = None
    is_system_admin: bool = False
    session_id: Optional[str] = None
    permissions: Set[Permission] = field(default_factory=set)

    @property
    def is_admin(self) -> bool:
        return self.is_system_admin or Role(self.role) == Role.ADMIN


@dataclass
class OTPChallenge:
    """Returned by a correct password: a code was mailed, no tokens yet."""

    email_hint: str
    expires_in: int
    requires_otp: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requires_otp": self.requires_otp,
            "email": self.email_hint,
            "expires_in": self.expires_in,
        }


@dataclass
class AuthResult:
    tokens: TokenPair
    user: UserSummary
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {**self.tokens.to_dict(), "user": self.user.to_dict(), "session_id": self.session_id}


@dataclass
class EmailVerification:
    user: UserSummary
    already_verified: bool = False
    tokens: Optional[TokenPair] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"user": self.user.to_dict(), "already_verified": self.already_verified}
        if self.tokens is not None:
            data.update(self.tokens.to_dict())
        return data


def mask_email(email: str) -> str:
    """Hide most of the local part: ``alice@example.com`` becomes ``al***@example.com``."""

    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def validate_password(password: str) -> str:
    if not password or len(password) < 8:
        raise ValidationError("password must be at least 8 characters")
    if len(password) > 128:
        raise ValidationError("password must be at most 128 characters")
    return password


def deregistration_fields(now: datetime, reason: Optional[str]) -> Dict[str, Any]:
    """Field updates that anonymize an account and clear every credential."""

    millis = login_millis(now)
    return {
        "email": f"deregistered_{millis}@deleted.com",
        "username": f"deleted_user_{millis}",
        "name": None,
        "password_hash": None,
        "google_id": None,
        "is_active": False,
        "is_deregistered": True,
        "deregistered_at": now,
        "deregistration_reason": reason,
        "is_locked": False,
        "failed_login_attempts": 0,
        "lock_until": None,
        "login_otp": None,
        "login_otp_expires": None,
        "unlock_token": None,
        "unlock_token_expires": None,
        "password_reset_token": None,
        "password_reset_expires": None,
        "refresh_token": None,
    }


# Fields cleared whenever a password is replaced through a recovery flow.
_RECOVERY_RESET_FIELDS: Dict[str, Any] = {
    "is_locked": False,
    "failed_login_attempts": 0,
    "lock_until": None,
    "login_otp": None,
    "login_otp_expires": None,
    "unlock_token": None,
    "unlock_token_expires": None,
    "password_reset_token": None,
    "password_reset_expires": None,
}


class AuthService:
    """Login state machine and account lifecycle.

    A correct password only ever yields a one-time code; tokens come from
    ``verify_otp``. The configured system administrator is the single
    exception and logs in directly with the environment credentials.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        sessions: SessionTracker,
        activity: ActivityLog,
        mailer: EmailDispatcher,
        captcha: CaptchaVerifier,
        settings: Settings,
        *,
        oauth: Optional[GoogleOAuthClient] = None,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.activity = activity
        self.mailer = mailer
        self.email = mailer.service
        self.captcha = captcha
        self.settings = settings
        self.oauth = oauth
        self.cache = cache
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._state_lock = threading.Lock()
        self._oauth_states: Dict[str, Tuple[str, datetime]] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # credentials
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash or not password:
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _is_system_admin_identifier(self, identifier: str) -> bool:
        admin_email = self.settings.admin_email
        return bool(admin_email) and identifier.strip().lower() == admin_email

    def _lookup_account(self, identifier: str) -> Optional[User]:
        user = self.store.get_user_by_username(identifier)
        if user is None and "@" in identifier:
            user = self.store.get_user_by_email(identifier)
        return user

    def system_admin_summary(self) -> UserSummary:
        return UserSummary(
            id=SYSTEM_ADMIN_ID,
            email=self.settings.admin_email or "",
            username="admin",
            name=self.settings.admin_name,
            role=Role.ADMIN,
            is_system_admin=True,
        )

    def _unknown_account(
        self,
        identifier: str,
        action: ActivityAction,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> AuthenticationError | NotFoundError:
        self.logger.info("login_unknown_identifier", identifier_hash=hash_email(identifier))
        self.activity.record(
            action,
            success=False,
            details={"reason": "user_not_found"},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if self.settings.reveal_unknown_accounts:
            return NotFoundError("user not found")
        return InvalidCredentialsError()

    async def check_challenge(
        self,
        token: Optional[str],
        remote_ip: Optional[str] = None,
        *,
        allow_bypass: bool = True,
    ) -> None:
        bypass = self.settings.captcha_bypass_token
        if allow_bypass and bypass and token and hmac.compare_digest(token, bypass):
            return
        if not token:
            raise ChallengeRequiredError()
        if not await self.captcha.verify(token, remote_ip):
            raise ChallengeInvalidError()

    # login state machine
    async def login(
        self,
        identifier: str,
        password: str,
        challenge_token: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Union[OTPChallenge, AuthResult]:
        """First login step.

        Returns an ``OTPChallenge`` for stored accounts and an ``AuthResult``
        for the system administrator.
        """

        identifier = (identifier or "").strip()
        if not identifier or not password:
            raise ValidationError("identifier and password are required")
        if self._is_system_admin_identifier(identifier):
            return self._system_admin_login(password, ip_address, user_agent)

        await self.check_challenge(challenge_token, ip_address)
        user = self._lookup_account(identifier)
        if user is None:
            raise self._unknown_account(identifier, ActivityAction.LOGIN_FAILED, ip_address, user_agent)
        now = self._now()
        is_admin = Role(user.role) == Role.ADMIN

        if not is_admin and not user.is_verified:
            token = self.tokens.issue_email_verification(user.email, user.id)
            sent = await self.mailer.send(self.email.send_email_verification, user.email, token)
            self.activity.record(
                ActivityAction.LOGIN_FAILED,
                user_id=user.id,
                success=False,
                details={"reason": "email_not_verified"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise EmailNotVerifiedError(
                "please verify your email before logging in",
                detail={"email_sent": sent, "email": mask_email(user.email)},
            )
        if user.is_locked_at(now):
            self.activity.record(
                ActivityAction.LOGIN_FAILED,
                user_id=user.id,
                success=False,
                details={"reason": "account_locked"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise AccountLockedError(
                "account is locked; check your email for unlock instructions"
            )
        if not user.is_active:
            self.activity.record(
                ActivityAction.LOGIN_FAILED,
                user_id=user.id,
                success=False,
                details={"reason": "account_disabled"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise ForbiddenError("account is disabled")
        if not self.verify_password(user, password):
            self._register_failed_password(user, now, ip_address, user_agent)
        return self._issue_login_otp(
            user, now, ip_address, user_agent, auto_verify=is_admin and not user.is_verified
        )

    def _register_failed_password(
        self,
        user: User,
        now: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        attempts = self.store.increment_failed_logins(user.id)
        threshold = self.settings.max_failed_login_attempts
        remaining = max(0, threshold - attempts)
        locked = attempts >= threshold
        self.activity.record(
            ActivityAction.LOGIN_FAILED,
            user_id=user.id,
            success=False,
            details={"reason": "invalid_password", "failed_attempts": attempts},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        log_auth_event("login", email=user.email, success=False, attempts=attempts)
        if not locked:
            raise InvalidCredentialsError(
                f"invalid username or password; {remaining} attempt(s) remaining",
                attempts_remaining=remaining,
            )

        unlock_token = self.tokens.issue_email_verification(user.email, user.id)
        lock_until = now + timedelta(minutes=self.settings.lock_minutes)
        self.store.update_user(
            user.id,
            is_locked=True,
            lock_until=lock_until,
            unlock_token=unlock_token,
            unlock_token_expires=now + timedelta(hours=self.settings.unlock_token_ttl_hours),
        )
        self.activity.record(
            ActivityAction.ACCOUNT_LOCKED,
            user_id=user.id,
            success=False,
            details={"failed_attempts": attempts, "lock_until": lock_until.isoformat()},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.warning("account_locked", user_id=user.id, attempts=attempts)
        self.mailer.dispatch(
            self.email.send_unlock_instructions, user.email, unlock_token, self.settings.lock_minutes
        )
        raise InvalidCredentialsError(
            "account locked after too many failed attempts; check your email for unlock instructions",
            attempts_remaining=0,
            is_locked=True,
        )

    def _issue_login_otp(
        self,
        user: User,
        now: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        auto_verify: bool = False,
    ) -> OTPChallenge:
        otp = f"{secrets.randbelow(900000) + 100000}"
        ttl_minutes = self.settings.otp_ttl_minutes
        expires = now + timedelta(minutes=ttl_minutes)
        updates: Dict[str, Any] = {
            "failed_login_attempts": 0,
            "is_locked": False,
            "lock_until": None,
            "login_otp": otp,
            "login_otp_expires": expires,
        }
        if auto_verify:
            updates["is_verified"] = True
        self.store.update_user(user.id, **updates)
        self.activity.record(
            ActivityAction.OTP_GENERATED,
            user_id=user.id,
            details={"expires_at": expires.isoformat()},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.mailer.dispatch(self.email.send_login_otp, user.email, otp, ttl_minutes)
        self.logger.info("login_otp_issued", user_id=user.id)
        return OTPChallenge(email_hint=mask_email(user.email), expires_in=ttl_minutes * 60)

    def _system_admin_login(
        self, password: str, ip_address: Optional[str], user_agent: Optional[str]
    ) -> AuthResult:
        configured = self.settings.admin_password
        if not configured or not hmac.compare_digest(password.encode(), configured.encode()):
            log_auth_event("system_admin_login", email=self.settings.admin_email, success=False)
            raise InvalidCredentialsError()
        now = self._now()
        session_id = derive_session_id(SYSTEM_ADMIN_ID, now)
        pair = self.tokens.issue_pair(
            SYSTEM_ADMIN_ID, Role.ADMIN, session_id=session_id, email=self.settings.admin_email
        )
        summary = self.system_admin_summary()
        self.sessions.add(
            session_id,
            SessionRecord(
                session_id=session_id,
                user_id=SYSTEM_ADMIN_ID,
                user=summary,
                login_time=now,
                last_activity=now,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
            ),
        )
        log_auth_event("system_admin_login", email=self.settings.admin_email, success=True)
        return AuthResult(tokens=pair, user=summary, session_id=session_id)

    async def verify_otp(
        self,
        identifier: str,
        otp: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Second login step: redeem the mailed code for tokens and a session."""

        identifier = (identifier or "").strip()
        otp = (otp or "").strip()
        if not identifier or not otp:
            raise ValidationError("identifier and otp are required")
        if not _OTP_PATTERN.match(otp):
            raise ValidationError("otp must be 6 digits")
        user = self._lookup_account(identifier)
        if user is None:
            raise self._unknown_account(identifier, ActivityAction.OTP_FAILED, ip_address, user_agent)
        now = self._now()
        if user.is_locked_at(now):
            raise AccountLockedError("account is locked; check your email for unlock instructions")
        if not user.is_active:
            self.activity.record(
                ActivityAction.OTP_FAILED,
                user_id=user.id,
                success=False,
                details={"reason": "account_disabled"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise ForbiddenError("account is disabled")

        outcome = self.store.consume_login_otp(user.id, otp, now)
        if outcome != OTPCheck.VALID:
            self.activity.record(
                ActivityAction.OTP_FAILED,
                user_id=user.id,
                success=False,
                details={"reason": outcome.value},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            if outcome == OTPCheck.EXPIRED:
                raise OTPExpiredError("OTP has expired; please log in again")
            raise InvalidOTPError()
        return self._complete_login(
            user,
            now,
            ip_address,
            user_agent,
            actions=(ActivityAction.LOGIN_SUCCESS, ActivityAction.OTP_VERIFIED),
        )

    def _complete_login(
        self,
        user: User,
        now: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        actions: Tuple[ActivityAction, ...],
        details: Optional[Dict[str, Any]] = None,
    ) -> AuthResult:
        session_id = derive_session_id(user.id, now)
        pair = self.tokens.issue_pair(user.id, user.role, session_id=session_id)
        updated = self.store.update_user(
            user.id,
            refresh_token=pair.refresh_token,
            last_login=now,
            failed_login_attempts=0,
        )
        summary = (updated or user).summary()
        # Every entry shares the login instant so log replay derives the same session id.
        for action in actions:
            self.activity.record(
                action,
                user_id=user.id,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
                timestamp=now,
            )
        self.sessions.add(
            session_id,
            SessionRecord(
                session_id=session_id,
                user_id=user.id,
                user=summary,
                login_time=now,
                last_activity=now,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
            ),
        )
        log_auth_event("login", email=user.email, success=True, session_id=session_id)
        return AuthResult(tokens=pair, user=summary, session_id=session_id)

    # tokens and sessions
    def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Rotate a refresh token. Only the most recently issued one is accepted."""

        try:
            claims = self.tokens.verify(refresh_token, TokenType.REFRESH)
        except InvalidTokenError:
            self.activity.record(
                ActivityAction.TOKEN_REFRESHED,
                success=False,
                details={"reason": "invalid_token"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise
        user_id = claims["sub"]
        if user_id == SYSTEM_ADMIN_ID:
            raise InvalidTokenError("system administrator sessions cannot be refreshed")
        user = self.store.get_user(user_id)
        if (
            user is None
            or user.is_deregistered
            or not user.is_active
            or not user.refresh_token
            or not hmac.compare_digest(user.refresh_token, refresh_token)
        ):
            self.activity.record(
                ActivityAction.TOKEN_REFRESHED,
                user_id=user.id if user else None,
                success=False,
                details={"reason": "refresh_token_mismatch"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise InvalidTokenError()
        session_id = claims.get("sid")
        pair = self.tokens.issue_pair(user.id, user.role, session_id=session_id)
        self.store.update_user(user.id, refresh_token=pair.refresh_token)
        self.activity.record(
            ActivityAction.TOKEN_REFRESHED,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if session_id:
            self.sessions.touch(session_id)
        return pair

    def logout(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        now = self._now()
        removed = self.sessions.remove_user(user_id)
        if user_id != SYSTEM_ADMIN_ID:
            self.store.update_user(user_id, refresh_token=None, last_logout=now)
        self.activity.record(
            ActivityAction.LOGOUT,
            user_id=user_id,
            details={"sessions_removed": removed},
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=now,
        )
        self.logger.info("logout", user_id=user_id, sessions_removed=removed)
        return removed

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a bearer header into the caller's identity.

        Role and permissions come from the store, not from the token claims.
        """

        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.tokens.verify(token, TokenType.ACCESS)
        subject = claims["sub"]
        session_id = claims.get("sid")
        if subject == SYSTEM_ADMIN_ID and claims.get("is_system_admin"):
            ctx = AuthContext(
                user_id=SYSTEM_ADMIN_ID,
                role=Role.ADMIN,
                email=self.settings.admin_email,
                is_system_admin=True,
                session_id=session_id,
                permissions=set(Permission),
            )
        else:
            user = self.store.get_user(subject)
            if user is None or user.is_deregistered:
                raise InvalidTokenError()
            if not user.is_active:
                raise ForbiddenError("account is disabled")
            ctx = AuthContext(
                user_id=user.id,
                role=Role(user.role),
                email=user.email,
                session_id=session_id,
                permissions=user.effective_permissions(),
            )
        if session_id:
            self.sessions.touch(session_id)
        return ctx

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        if not authorization.lower().startswith("bearer "):
            return None
        token = authorization.split(" ", 1)[1].strip()
        return token or None

    # recovery
    def unlock_account(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Unlock a locked account with the mailed token and a new password."""

        validate_password(new_password)
        try:
            claims = self.tokens.verify(token, TokenType.EMAIL_VERIFICATION)
        except TokenExpiredError:
            self._unlock_failed(None, "token_expired", ip_address, user_agent)
            raise TokenExpiredError("unlock token has expired") from None
        except InvalidTokenError:
            self._unlock_failed(None, "invalid_token", ip_address, user_agent)
            raise InvalidTokenError("invalid or expired unlock token") from None

        user = self.store.get_user(claims["sub"])
        if (
            user is None
            or user.is_deregistered
            or user.email != claims.get("email")
            or not user.is_locked
            or not user.unlock_token
            or not hmac.compare_digest(user.unlock_token, token)
        ):
            self._unlock_failed(user.id if user else None, "token_mismatch", ip_address, user_agent)
            raise InvalidTokenError("invalid or expired unlock token")
        now = self._now()
        if user.unlock_token_expires is None or user.unlock_token_expires < now:
            self._unlock_failed(user.id, "token_expired", ip_address, user_agent)
            raise TokenExpiredError("unlock token has expired")

        pair = self.tokens.issue_pair(user.id, user.role)
        updated = self.store.update_user(
            user.id,
            password_hash=self.hash_password(new_password),
            refresh_token=pair.refresh_token,
            **_RECOVERY_RESET_FIELDS,
        )
        self.activity.record(
            ActivityAction.ACCOUNT_UNLOCKED,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.mailer.dispatch(self.email.send_account_unlocked, user.email)
        self.logger.info("account_unlocked", user_id=user.id)
        return AuthResult(tokens=pair, user=(updated or user).summary())

    def _unlock_failed(
        self,
        user_id: Optional[str],
        reason: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        self.activity.record(
            ActivityAction.ACCOUNT_UNLOCK_FAILED,
            user_id=user_id,
            success=False,
            details={"reason": reason},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def request_password_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Mail a reset link. Unknown or unverified addresses are silently ignored."""

        user = self.store.get_user_by_email(email or "")
        if user is None or not user.is_verified or not user.is_active:
            self.logger.info("password_reset_skipped", email_hash=hash_email(email))
            return
        token = self.tokens.issue_password_reset(user.email, user.id)
        self.store.update_user(
            user.id,
            password_reset_token=token,
            password_reset_expires=self.tokens.expires_at(TokenType.PASSWORD_RESET),
        )
        self.activity.record(
            ActivityAction.PASSWORD_RESET_REQUEST,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.mailer.dispatch(self.email.send_password_reset, user.email, token)

    def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        validate_password(new_password)
        claims = self.tokens.verify(token, TokenType.PASSWORD_RESET)
        user = self.store.get_user(claims["sub"])
        now = self._now()
        if (
            user is None
            or user.is_deregistered
            or user.email != claims.get("email")
            or not user.password_reset_token
            or not hmac.compare_digest(user.password_reset_token, token)
            or user.password_reset_expires is None
            or user.password_reset_expires < now
        ):
            raise InvalidTokenError()
        self.store.update_user(
            user.id,
            password_hash=self.hash_password(new_password),
            refresh_token=None,
            **_RECOVERY_RESET_FIELDS,
        )
        removed = self.sessions.remove_user(user.id)
        self.activity.record(
            ActivityAction.PASSWORD_RESET_SUCCESS,
            user_id=user.id,
            details={"sessions_removed": removed},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.mailer.dispatch(self.email.send_password_changed, user.email)

    # account lifecycle
    async def register(
        self,
        *,
        username: str,
        email: str,
        password: str,
        challenge_token: Optional[str] = None,
        name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        username = (username or "").strip()
        email = (email or "").strip().lower()
        if not username or not email:
            raise ValidationError("username and email are required")
        validate_password(password)
        await self.check_challenge(challenge_token, ip_address, allow_bypass=False)
        if self._is_system_admin_identifier(email):
            raise ConflictError("email already exists", detail={"field": "email"})
        try:
            user = self.store.create_user(
                email=email,
                username=username,
                password_hash=self.hash_password(password),
                name=name,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        token = self.tokens.issue_email_verification(user.email, user.id)
        self.activity.record(
            ActivityAction.REGISTER,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.mailer.dispatch(self.email.send_email_verification, user.email, token)
        self.logger.info("user_registered", user_id=user.id)
        return user

    def verify_email(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> EmailVerification:
        claims = self.tokens.verify(token, TokenType.EMAIL_VERIFICATION)
        user = self.store.get_user(claims["sub"])
        if user is None or user.is_deregistered or user.email != claims.get("email"):
            raise InvalidTokenError()
        if user.is_verified:
            return EmailVerification(user=user.summary(), already_verified=True)
        pair = self.tokens.issue_pair(user.id, user.role)
        updated = self.store.update_user(user.id, is_verified=True, refresh_token=pair.refresh_token)
        self.activity.record(
            ActivityAction.EMAIL_VERIFIED,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.mailer.dispatch(self.email.send_welcome, user.email, user.name)
        return EmailVerification(user=(updated or user).summary(), tokens=pair)

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        if user_id == SYSTEM_ADMIN_ID:
            raise ForbiddenError("the system administrator password is managed by configuration")
        validate_password(new_password)
        if current_password == new_password:
            raise ValidationError("new password must differ from the current password")
        user = self.store.get_user(user_id)
        if user is None or user.is_deregistered:
            raise NotFoundError("user not found")
        if not self.verify_password(user, current_password):
            self.activity.record(
                ActivityAction.PASSWORD_CHANGED,
                user_id=user.id,
                success=False,
                details={"reason": "invalid_current_password"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise InvalidCredentialsError("current password is incorrect")
        pair = self.tokens.issue_pair(user.id, user.role)
        self.store.update_user(
            user.id,
            password_hash=self.hash_password(new_password),
            refresh_token=pair.refresh_token,
        )
        self.activity.record(
            ActivityAction.PASSWORD_CHANGED,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.mailer.dispatch(self.email.send_password_changed, user.email)
        return pair

    def deregister(
        self,
        user_id: str,
        password: Optional[str],
        reason: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Anonymize the caller's account. Local accounts must confirm their password."""

        if user_id == SYSTEM_ADMIN_ID:
            raise ForbiddenError("the system administrator cannot be deregistered")
        user = self.store.get_user(user_id)
        if user is None or user.is_deregistered:
            raise NotFoundError("user not found")
        if user.password_hash and not self.verify_password(user, password or ""):
            self.activity.record(
                ActivityAction.DEREGISTER_FAILED,
                user_id=user.id,
                success=False,
                details={"reason": "invalid_password"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise InvalidCredentialsError("password is incorrect")
        original_email = user.email
        self.store.update_user(user.id, **deregistration_fields(self._now(), reason))
        self.sessions.remove_user(user.id)
        self.activity.record(
            ActivityAction.ACCOUNT_DEREGISTERED,
            user_id=user.id,
            details={"reason": reason},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.mailer.dispatch(self.email.send_deregistration_confirmation, original_email)
        self.logger.info("user_deregistered", user_id=user.id)

    # federated login
    async def start_oauth(self, provider: str = "google") -> Dict[str, str]:
        if provider != "google" or self.oauth is None or not self.oauth.is_configured:
            raise ValidationError(f"OAuth provider '{provider}' is not configured")
        state = uuid.uuid4().hex
        expires_at = self._now() + _OAUTH_STATE_TTL
        with self._state_lock:
            self._oauth_states[state] = (provider, expires_at)
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at)
        return {"authorization_url": self.oauth.authorization_url(state), "state": state}

    async def complete_oauth(
        self,
        code: str,
        state: str,
        *,
        provider: str = "google",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        now = self._now()
        stored: Optional[Tuple[str, datetime]] = None
        if self.cache:
            stored = await self.cache.pop_oauth_state(state)
        with self._state_lock:
            local = self._oauth_states.pop(state, None)
        stored = stored or local
        if stored is None or stored[0] != provider or stored[1] < now:
            raise InvalidTokenError("invalid or expired OAuth state")
        if self.oauth is None:
            raise ValidationError(f"OAuth provider '{provider}' is not configured")
        identity = await self.oauth.exchange_code(code)
        if not identity:
            raise AuthenticationError("OAuth exchange failed")

        actions: List[ActivityAction] = []
        user = self.store.get_user_by_google_id(identity["provider_uid"])
        if user is None:
            user = self.store.get_user_by_email(identity["email"])
            if user is not None:
                user = self.store.update_user(
                    user.id, google_id=identity["provider_uid"], is_verified=True
                ) or user
                actions.append(ActivityAction.GOOGLE_LINK)
            else:
                try:
                    user = self.store.create_user(
                        email=identity["email"],
                        username=self._available_username(identity["email"]),
                        name=identity.get("name"),
                        auth_provider=AuthProvider.GOOGLE,
                        google_id=identity["provider_uid"],
                        is_verified=True,
                    )
                except ConstraintViolation as exc:
                    raise ConflictError(exc.message, detail=exc.detail) from exc
                actions.append(ActivityAction.GOOGLE_REGISTER)
        if not user.is_active:
            raise ForbiddenError("account is disabled")
        actions.append(ActivityAction.GOOGLE_LOGIN)
        return self._complete_login(
            user,
            now,
            ip_address,
            user_agent,
            actions=tuple(actions),
            details={"provider": provider},
        )

    def _available_username(self, email: str) -> str:
        base = _USERNAME_STRIP.sub("", email.partition("@")[0])[:24] or "user"
        candidate = base
        for suffix in range(1, 100):
            if self.store.get_user_by_username(candidate) is None:
                return candidate
            candidate = f"{base}{suffix}"
        return f"{base}_{uuid.uuid4().hex[:6]}"
