import importlib.util
from pathlib import Path

import pytest

from authcore.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestBootstrapAdmin:
    async def test_creates_verified_admin(self, bootstrap):
        result = await bootstrap.bootstrap_admin("Admin@Example.com", "Long-Admin-Passphrase-1")
        assert result["status"] == "created"
        assert result["email"] == "admin@example.com"
        user = get_runtime().store.get_user(result["user_id"])
        assert "admin" in user.roles
        assert user.email_verified is True

    async def test_promotes_existing_user(self, bootstrap):
        runtime = get_runtime()
        user = await runtime.auth.register("someone@example.com", "Long-Admin-Passphrase-1")
        result = await bootstrap.bootstrap_admin("someone@example.com", "ignored-password")
        assert result == {"user_id": user.id, "email": "someone@example.com", "status": "promoted"}
        assert sorted(runtime.store.get_user(user.id).roles) == ["admin", "user"]

        again = await bootstrap.bootstrap_admin("someone@example.com", "ignored-password")
        assert again["status"] == "already_admin"

    async def test_dry_run_changes_nothing(self, bootstrap):
        result = await bootstrap.bootstrap_admin(
            "admin@example.com", "Long-Admin-Passphrase-1", dry_run=True
        )
        assert result["status"] == "dry_run"
        assert get_runtime().store.get_user_by_email("admin@example.com") is None

    def test_main_rejects_short_password(self, bootstrap, monkeypatch):
        monkeypatch.setattr(
            "sys.argv", ["bootstrap_admin.py", "--email", "a@example.com", "--password", "short"]
        )
        with pytest.raises(SystemExit) as excinfo:
            bootstrap.main()
        assert excinfo.value.code == 2
