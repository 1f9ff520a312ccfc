from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from gatekeeper.config import get_settings, reset_settings_cache
from gatekeeper.logging import get_logger
from gatekeeper.service.activity import ActivityLog
from gatekeeper.service.admin import AdminService
from gatekeeper.service.auth import AuthService
from gatekeeper.service.captcha import CaptchaVerifier
from gatekeeper.service.email import EmailDispatcher, EmailService
from gatekeeper.service.oauth import GoogleOAuthClient
from gatekeeper.service.reconciliation import SessionReconciler
from gatekeeper.service.sessions import SessionSweeper, SessionTracker
from gatekeeper.service.tokens import TokenService
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.postgres import PostgresStore
from gatekeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, fs_root=self.settings.shared_fs_root)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and OAuth state; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.sessions = SessionTracker()
        self.tokens = TokenService(self.settings, self.store)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.frontend_url,
        )
        self.mailer = EmailDispatcher(self.email)
        self.captcha = CaptchaVerifier(
            secret_key=self.settings.recaptcha_secret_key,
            verify_url=self.settings.recaptcha_verify_url,
            enabled=self.settings.captcha_enabled,
        )
        self.oauth = GoogleOAuthClient(
            client_id=self.settings.oauth_google_client_id,
            client_secret=self.settings.oauth_google_client_secret,
            redirect_uri=self.settings.oauth_redirect_uri,
        )
        self.activity = ActivityLog(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.sessions,
            self.activity,
            self.mailer,
            self.captcha,
            self.settings,
            oauth=self.oauth,
            cache=self.cache,
        )
        self.reconciler = SessionReconciler(self.activity, self.store, self.sessions, self.settings)
        self.admin = AdminService(
            self.store, self.activity, self.sessions, self.reconciler, self.settings
        )
        self.sweeper = SessionSweeper(
            self.sessions,
            interval_seconds=self.settings.session_sweep_interval_seconds,
            max_age_hours=self.settings.session_idle_hours,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            captcha_enabled=self.settings.captcha_enabled,
            oauth_configured=self.oauth.is_configured,
            system_admin_configured=bool(self.settings.admin_email),
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous = runtime
        runtime = Runtime()
    if previous is not None and previous.cache is not None:
        try:
            asyncio.get_running_loop().create_task(previous.cache.close())
        except RuntimeError:
            asyncio.run(previous.cache.close())
    return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit backed by Redis, or in-process without it.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
