import importlib.util
import uuid
from pathlib import Path

import pytest

from authcore.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def email():
    return f"admin-{uuid.uuid4().hex[:12]}@example.com"


def test_creates_admin_that_can_log_in(bootstrap, email):
    result = bootstrap.bootstrap_admin(email, "Correct-Horse-9-Battery")

    assert result["status"] == "created"
    runtime = get_runtime()
    user = runtime.store.get_user_by_email(email)
    assert user.role == "admin"
    cred = runtime.store.get_credential(user.id)
    assert runtime.auth.hasher.verify("Correct-Horse-9-Battery", cred.password_hash)


def test_promotes_then_reports_already_admin(bootstrap, email):
    store = get_runtime().store
    user = store.create_user(email, password_hash="unused")

    assert bootstrap.bootstrap_admin(email, "ignored")["status"] == "promoted"
    assert store.get_user(user.id).role == "admin"
    assert bootstrap.bootstrap_admin(email, "ignored")["status"] == "already_admin"


def test_dry_run_changes_nothing(bootstrap, email):
    assert bootstrap.bootstrap_admin(email, "Correct-Horse-9-Battery", dry_run=True) == {
        "user_id": None,
        "email": email,
        "status": "dry_run",
    }
    assert get_runtime().store.get_user_by_email(email) is None


def test_main_rejects_weak_password(bootstrap, email, capsys):
    assert bootstrap.main(["--email", email, "--password", "short"]) == 1
    assert "Error" in capsys.readouterr().out


def test_main_requires_email(bootstrap, monkeypatch):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    assert bootstrap.main(["--password", "Correct-Horse-9-Battery"]) == 1
