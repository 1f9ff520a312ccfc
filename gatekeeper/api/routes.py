from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from gatekeeper.api.schemas import (
    ChangePasswordRequest,
    DeregisterRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    OAuthStartResponse,
    OverrideRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenRefreshRequest,
    TokenRequest,
    UnlockRequest,
    UserStatusRequest,
    VerifyOTPRequest,
)
from gatekeeper.logging import get_logger
from gatekeeper.service.admin import admin_user_view
from gatekeeper.service.auth import AuthContext
from gatekeeper.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Raise a 429 envelope with ``Retry-After`` once ``key`` exceeds its budget."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": reset_seconds},
            headers={"Retry-After": str(max(1, reset_seconds))},
        )
    return info


def _client(request: Request) -> Tuple[Optional[str], Optional[str]]:
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    await _enforce_rate_limit(
        runtime, f"admin:{ctx.user_id}", runtime.settings.admin_rate_limit_per_minute, 60
    )
    return ctx


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a local account. The address must be verified before the first login."""
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    await _enforce_rate_limit(
        runtime, f"signup:{ip_address}", runtime.settings.signup_rate_limit_per_minute, 60
    )
    user = await runtime.auth.register(
        username=body.username,
        email=body.email,
        password=body.password,
        challenge_token=body.captcha_token,
        name=body.name,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data={
            "user": user.summary().to_dict(),
            "message": "registration successful; check your email to verify your account",
        },
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: TokenRequest, request: Request):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    result = runtime.auth.verify_email(body.token, ip_address=ip_address, user_agent=user_agent)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """First login step.

    A correct password mails a one-time code and returns ``requires_otp``;
    tokens are only issued by ``/auth/verify-otp``.

    Raises:
        400: captcha missing or rejected
        401: invalid credentials (with attempts remaining)
        403: email not verified
        423: account locked
        429: rate limit exceeded
    """
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identifier.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(
        body.identifier,
        body.password,
        body.captcha_token,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOTPRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    await _enforce_rate_limit(
        runtime,
        f"otp:{body.identifier.lower()}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.verify_otp(
        body.identifier, body.otp, ip_address=ip_address, user_agent=user_agent
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    pair = runtime.auth.refresh(body.refresh_token, ip_address=ip_address, user_agent=user_agent)
    return Envelope(status="ok", data=pair.to_dict())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    removed = runtime.auth.logout(principal.user_id, ip_address=ip_address, user_agent=user_agent)
    return Envelope(status="ok", data={"status": "logged_out", "sessions_removed": removed})


@router.post("/auth/unlock", response_model=Envelope, tags=["auth"])
async def unlock_account(body: UnlockRequest, request: Request):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    await _enforce_rate_limit(
        runtime, f"unlock:{ip_address}", runtime.settings.reset_rate_limit_per_minute, 60
    )
    result = runtime.auth.unlock_account(
        body.token, body.new_password, ip_address=ip_address, user_agent=user_agent
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    await _enforce_rate_limit(
        runtime, f"reset:{body.email}", runtime.settings.reset_rate_limit_per_minute, 60
    )
    runtime.auth.request_password_reset(body.email, ip_address=ip_address, user_agent=user_agent)
    # Same answer for every address to prevent enumeration
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    await _enforce_rate_limit(
        runtime, f"reset:confirm:{ip_address}", runtime.settings.reset_rate_limit_per_minute, 60
    )
    runtime.auth.reset_password(
        body.token, body.new_password, ip_address=ip_address, user_agent=user_agent
    )
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    pair = runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return Envelope(status="ok", data=pair.to_dict())


@router.post("/auth/deregister", response_model=Envelope, tags=["auth"])
async def deregister(
    body: DeregisterRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    runtime.auth.deregister(
        principal.user_id,
        body.password,
        body.reason,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return Envelope(status="ok", data={"status": "deregistered"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if principal.is_system_admin:
        return Envelope(status="ok", data=runtime.admin.system_admin_view())
    user = runtime.store.get_user(principal.user_id)
    if user is None:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=admin_user_view(user))


@router.get("/auth/activity", response_model=Envelope, tags=["auth"])
async def get_my_activity(
    limit: int = Query(10, ge=1, le=100),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    entries = runtime.activity.recent(principal.user_id, limit=limit)
    return Envelope(status="ok", data=[entry.to_dict() for entry in entries])


@router.get("/auth/oauth/google/start", response_model=Envelope, tags=["auth"])
async def oauth_start(request: Request):
    runtime = get_runtime()
    ip_address, _ = _client(request)
    await _enforce_rate_limit(runtime, f"oauth:start:{ip_address}", limit=20, window_seconds=60)
    start = await runtime.auth.start_oauth("google")
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start["authorization_url"],
            state=start["state"],
            provider="google",
        ),
    )


@router.get("/auth/oauth/google/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    await _enforce_rate_limit(runtime, f"oauth:callback:{ip_address}", limit=10, window_seconds=60)
    result = await runtime.auth.complete_oauth(
        code, state, provider="google", ip_address=ip_address, user_agent=user_agent
    )
    return Envelope(status="ok", data=result.to_dict())


# admin


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    include_system_admin: bool = Query(False),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.admin.list_users(include_system_admin=include_system_admin)
    return Envelope(status="ok", data={"items": users, "count": len(users)})


@router.patch("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_status(
    body: UserStatusRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = runtime.admin.set_user_status(
        user_id, principal, is_active=body.is_active, role=body.role
    )
    return Envelope(status="ok", data=user)


@router.post("/admin/users/{user_id}/verify", response_model=Envelope, tags=["admin"])
async def admin_verify_user(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.admin.verify_user(user_id, principal))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    runtime.admin.delete_user(user_id, principal)
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})


@router.post("/admin/users/{user_id}/force-logout", response_model=Envelope, tags=["admin"])
async def admin_force_logout(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    removed = runtime.admin.force_logout(user_id, principal)
    return Envelope(status="ok", data={"user_id": user_id, "sessions_removed": removed})


@router.get("/admin/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_sessions(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    sessions = [record.to_dict() for record in runtime.admin.list_active_sessions()]
    return Envelope(status="ok", data={"items": sessions, "count": len(sessions)})


@router.delete("/admin/sessions/{session_id}", response_model=Envelope, tags=["admin"])
async def admin_terminate_session(
    request: Request,
    session_id: str = Path(..., max_length=256),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    ip_address, user_agent = _client(request)
    terminated = runtime.admin.terminate_session(
        session_id, principal, ip_address=ip_address, user_agent=user_agent
    )
    if not terminated:
        raise _http_error("not_found", "session not found", status_code=404)
    return Envelope(status="ok", data={"terminated": True, "session_id": session_id})


@router.get("/admin/stats", response_model=Envelope, tags=["admin"])
async def admin_stats(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.admin.stats())


@router.get("/admin/activity/suspicious", response_model=Envelope, tags=["admin"])
async def admin_suspicious_activity(
    hours: int = Query(24, ge=1, le=24 * 30),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    entries = runtime.admin.suspicious_activity(hours=hours)
    return Envelope(status="ok", data={"items": entries, "count": len(entries)})


@router.get("/admin/overrides", response_model=Envelope, tags=["admin"])
async def admin_list_overrides(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    overrides = runtime.admin.list_overrides()
    return Envelope(status="ok", data={"items": overrides, "count": len(overrides)})


@router.post("/admin/overrides", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_override(
    body: OverrideRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    override = runtime.admin.create_override(
        body.user_id,
        body.permissions,
        principal,
        is_active=True if body.is_active is None else body.is_active,
    )
    return Envelope(status="ok", data=override)


@router.put("/admin/overrides/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_override(
    body: OverrideRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    if body.user_id != user_id:
        raise _http_error("validation_error", "user_id does not match the path", status_code=400)
    runtime = get_runtime()
    override = runtime.admin.update_override(
        user_id, body.permissions, principal, is_active=body.is_active
    )
    return Envelope(status="ok", data=override)


@router.delete("/admin/overrides/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_override(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    runtime.admin.delete_override(user_id, principal)
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})
