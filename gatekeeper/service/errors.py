from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - challenge_failed (400)
    - unauthorized (401)
    - invalid_credentials (401)
    - invalid_otp (401)
    - invalid_token (401)
    - forbidden (403)
    - email_not_verified (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ChallengeError(ServiceError):
    """Bot challenge missing or rejected (400)."""
    status_code = 400
    error_code = "challenge_failed"


class ChallengeRequiredError(ChallengeError):
    def __init__(self, message: str = "please complete the captcha verification", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeInvalidError(ChallengeError):
    def __init__(self, message: str = "invalid captcha verification", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Wrong identifier/password combination (401).

    ``detail`` carries ``attempts_remaining`` and ``is_locked`` when the
    failure counted against a known account.
    """
    error_code = "invalid_credentials"

    def __init__(
        self,
        message: str = "invalid username or password",
        *,
        attempts_remaining: Optional[int] = None,
        is_locked: bool = False,
    ) -> None:
        detail: dict = {}
        if attempts_remaining is not None:
            detail = {"attempts_remaining": attempts_remaining, "is_locked": is_locked}
        super().__init__(message, detail=detail)
        self.attempts_remaining = attempts_remaining
        self.is_locked = is_locked


class InvalidOTPError(AuthenticationError):
    error_code = "invalid_otp"

    def __init__(self, message: str = "invalid OTP", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OTPExpiredError(InvalidOTPError):
    def __init__(self, message: str = "OTP has expired; please login again", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Token signature, claims or expiry rejected (401)."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class WrongTokenTypeError(InvalidTokenError):
    """Token is valid but was minted for a different purpose."""


class TokenExpiredError(InvalidTokenError):
    """Token signature is valid but its lifetime has elapsed."""


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailNotVerifiedError(ServiceError):
    """Login refused until the email address is verified (403).

    ``detail["email_sent"]`` reports whether a fresh verification email was
    dispatched.
    """
    status_code = 403
    error_code = "email_not_verified"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Account is locked after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "account is locked due to multiple failed login attempts; check your email for unlock instructions",
        **kwargs,
    ) -> None:
        kwargs.setdefault("detail", {"is_locked": True})
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ChallengeError",
    "ChallengeRequiredError",
    "ChallengeInvalidError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidOTPError",
    "OTPExpiredError",
    "InvalidTokenError",
    "WrongTokenTypeError",
    "TokenExpiredError",
    "ForbiddenError",
    "EmailNotVerifiedError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
]
