import asyncio
import inspect
import os
import tempfile

# Environment must be seeded before any import that builds settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gatekeeper_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only")
os.environ.setdefault("CAPTCHA_ENABLED", "false")
os.environ.setdefault("ADMIN_EMAIL", "root@example.com")
os.environ.setdefault("ADMIN_PASSWORD", "Root-Password-123")

import pytest  # noqa: E402

from gatekeeper.config import Settings  # noqa: E402
from gatekeeper.service.activity import ActivityLog  # noqa: E402
from gatekeeper.service.admin import AdminService  # noqa: E402
from gatekeeper.service.auth import AuthService  # noqa: E402
from gatekeeper.service.captcha import CaptchaVerifier  # noqa: E402
from gatekeeper.service.email import EmailDispatcher, EmailService  # noqa: E402
from gatekeeper.service.oauth import GoogleOAuthClient  # noqa: E402
from gatekeeper.service.reconciliation import SessionReconciler  # noqa: E402
from gatekeeper.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatekeeper.service.sessions import SessionTracker  # noqa: E402
from gatekeeper.service.tokens import TokenService  # noqa: E402
from gatekeeper.storage.memory import MemoryStore  # noqa: E402


class RecordingEmailService(EmailService):
    """Captures outgoing mail instead of logging it."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.sent = []

    def _send_email(self, to_email, subject, html_body, text_body=None):
        self.sent.append({"to": to_email, "subject": subject, "text": text_body})
        return True


class Services:
    """Service graph wired over an isolated memory store, without the runtime singleton."""

    def __init__(self, settings: Settings, fs_root: str):
        self.settings = settings
        self.store = MemoryStore(fs_root=fs_root)
        self.sessions = SessionTracker()
        self.tokens = TokenService(settings, self.store)
        self.email = RecordingEmailService(from_name="Gatekeeper")
        self.mailer = EmailDispatcher(self.email)
        self.captcha = CaptchaVerifier(secret_key=None, enabled=False)
        self.oauth = GoogleOAuthClient(
            client_id="client-id",
            client_secret="client-secret",
            redirect_uri="http://localhost:3000/oauth/callback",
        )
        self.activity = ActivityLog(self.store, settings)
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.sessions,
            self.activity,
            self.mailer,
            self.captcha,
            settings,
            oauth=self.oauth,
        )
        self.reconciler = SessionReconciler(self.activity, self.store, self.sessions, settings)
        self.admin = AdminService(self.store, self.activity, self.sessions, self.reconciler, settings)

    def create_user(self, username="alice", email="alice@example.com", password="Alice-Password-1", **kwargs):
        kwargs.setdefault("is_verified", True)
        return self.store.create_user(
            email=email,
            username=username,
            password_hash=self.auth.hash_password(password),
            **kwargs,
        )


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-access-secret",
        jwt_refresh_secret="unit-refresh-secret",
        admin_email="root@example.com",
        admin_password="Root-Password-123",
        captcha_enabled=False,
        captcha_bypass_token="admin-bypass",
        redis_url=None,
    )


@pytest.fixture
def services(settings, tmp_path):
    return Services(settings, str(tmp_path / "store"))


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
