import importlib.util
from pathlib import Path

import pytest

from gatekeeper.service.errors import ValidationError
from gatekeeper.service.runtime import get_runtime
from gatekeeper.storage.models import Role

_SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


def test_creates_verified_admin(bootstrap):
    result = bootstrap("ops@example.com", "ops", "Ops-Password-1")

    assert result["status"] == "created"
    user = get_runtime().store.get_user(result["user_id"])
    assert user.role == Role.ADMIN
    assert user.is_verified is True


def test_promotes_existing_account(bootstrap):
    runtime = get_runtime()
    user = runtime.store.create_user(email="ops@example.com", username="ops")

    result = bootstrap("ops@example.com", "ops", "Ops-Password-1")

    assert result == {"user_id": user.id, "email": "ops@example.com", "status": "promoted"}
    assert runtime.store.get_user(user.id).role == Role.ADMIN
    assert bootstrap("ops@example.com", "ops", "Ops-Password-1")["status"] == "already_admin"


def test_dry_run_changes_nothing(bootstrap):
    assert bootstrap("ops@example.com", "ops", "Ops-Password-1", dry_run=True)["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("ops@example.com") is None


def test_weak_password_rejected(bootstrap):
    with pytest.raises(ValidationError):
        bootstrap("ops@example.com", "ops", "short")
