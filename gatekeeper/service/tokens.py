from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import InvalidTokenError, TokenExpiredError, WrongTokenTypeError
from gatekeeper.storage.models import SYSTEM_ADMIN_ID, Role, User

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"

    def to_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
        }


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


class TokenService:
    """Issues and verifies HS256-signed tokens carrying a ``type`` claim.

    Refresh tokens are signed with their own secret so a leaked refresh secret
    cannot mint access tokens and the other way round.
    """

    def __init__(self, settings: Settings, store: Optional[UserLookup] = None) -> None:
        self.settings = settings
        self.store = store
        self._clock_skew_leeway = timedelta(seconds=settings.token_clock_skew_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _lifetime(self, token_type: TokenType) -> timedelta:
        if token_type == TokenType.ACCESS:
            return timedelta(minutes=self.settings.access_token_ttl_minutes)
        if token_type == TokenType.REFRESH:
            return timedelta(days=self.settings.refresh_token_ttl_days)
        if token_type == TokenType.EMAIL_VERIFICATION:
            return timedelta(hours=self.settings.email_verification_ttl_hours)
        return timedelta(minutes=self.settings.password_reset_ttl_minutes)

    def _secret_for(self, token_type: TokenType) -> str:
        if token_type == TokenType.REFRESH:
            return self.settings.jwt_refresh_secret
        return self.settings.jwt_secret

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _signature_matches(self, signing_input: str, sig_b64: str, token_type: TokenType) -> bool:
        secret = self._secret_for(token_type).encode()
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        return hmac.compare_digest(expected_sig, sig_b64)

    def _claimed_type(self, payload_b64: str) -> Optional[TokenType]:
        """Read the unverified ``type`` claim; None when it is absent or unknown."""
        try:
            payload = json.loads(self._decode_segment(payload_b64))
            return TokenType(payload.get("type"))
        except (ValueError, UnicodeDecodeError, AttributeError):
            return None

    def _issue(self, token_type: TokenType, subject: str, claims: dict[str, Any]) -> str:
        now = self._now()
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "type": token_type.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._lifetime(token_type)).timestamp()),
        }
        return self._sign(payload, self._secret_for(token_type))

    def issue_access(
        self, user_id: str, role: Role | str = Role.USER, claims: Optional[dict[str, Any]] = None
    ) -> str:
        """Mint an access token.

        For stored users the role and email are re-read from the store at
        issuance time, so a downgraded role never survives in a new token.
        """

        extra = dict(claims or {})
        if user_id == SYSTEM_ADMIN_ID:
            extra["role"] = Role.ADMIN.value
            extra["is_system_admin"] = True
            extra.setdefault("email", self.settings.admin_email)
            return self._issue(TokenType.ACCESS, user_id, extra)
        extra.pop("is_system_admin", None)
        extra["role"] = Role(role).value
        if self.store is not None:
            user = self.store.get_user(user_id)
            if user is not None:
                extra["role"] = Role(user.role).value
                extra["email"] = user.email
        return self._issue(TokenType.ACCESS, user_id, extra)

    def issue_refresh(self, user_id: str, claims: Optional[dict[str, Any]] = None) -> str:
        extra = {k: v for k, v in (claims or {}).items() if k == "sid"}
        return self._issue(TokenType.REFRESH, user_id, extra)

    def issue_email_verification(self, email: str, user_id: str) -> str:
        return self._issue(TokenType.EMAIL_VERIFICATION, user_id, {"email": email})

    def issue_password_reset(self, email: str, user_id: str) -> str:
        return self._issue(TokenType.PASSWORD_RESET, user_id, {"email": email})

    def issue_pair(
        self,
        user_id: str,
        role: Role | str = Role.USER,
        *,
        session_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> TokenPair:
        claims: dict[str, Any] = {}
        if session_id:
            claims["sid"] = session_id
        if email:
            claims["email"] = email
        return TokenPair(
            access_token=self.issue_access(user_id, role, claims),
            refresh_token=self.issue_refresh(user_id, claims),
        )

    def expires_at(self, token_type: TokenType) -> datetime:
        return self._now() + self._lifetime(token_type)

    def verify(self, token: str, expected_type: TokenType | str) -> dict[str, Any]:
        """Return the claims of ``token`` if it is valid for ``expected_type``.

        Raises:
            InvalidTokenError: malformed token, bad signature, issuer or audience
            WrongTokenTypeError: the token was minted for another purpose
            TokenExpiredError: the token lifetime has elapsed
        """

        expected = TokenType(expected_type)
        if not token or not isinstance(token, str):
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError() from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise InvalidTokenError()

        signing_input = f"{header_b64}.{payload_b64}"
        if not self._signature_matches(signing_input, sig_b64, expected):
            claimed = self._claimed_type(payload_b64)
            # Tokens minted under the other secret fail the signature check first
            if (
                claimed is not None
                and claimed != expected
                and self._signature_matches(signing_input, sig_b64, claimed)
            ):
                logger.warning("token_type_mismatch", expected=expected.value, actual=claimed.value)
                raise WrongTokenTypeError()
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or not payload.get("sub"):
            raise InvalidTokenError()
        if payload.get("type") != expected.value:
            logger.warning("token_type_mismatch", expected=expected.value, actual=payload.get("type"))
            raise WrongTokenTypeError()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError() from None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            raise TokenExpiredError()
        return payload
