import importlib.util
from pathlib import Path

import pytest

from conftest import TEST_PASSWORD

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestBootstrapAdmin:
    def test_creates_verified_admin(self, bootstrap, runtime):
        result = bootstrap.bootstrap_admin("Root@Example.com", TEST_PASSWORD)

        assert result["status"] == "created"
        user = runtime.store.get_user_by_email("root@example.com")
        assert user.role == "ADMIN"
        assert user.email_verified and user.phone_verified
        assert runtime.auth.passwords.verify_password(user.id, TEST_PASSWORD)

    def test_promotes_existing_user(self, bootstrap, runtime):
        user = runtime.store.create_user("mentor@example.com", "Men", "Tor", role="MENTOR")

        result = bootstrap.bootstrap_admin("mentor@example.com", TEST_PASSWORD)

        assert result == {"user_id": user.id, "email": "mentor@example.com", "status": "promoted"}
        assert runtime.store.get_user(user.id).role == "ADMIN"

    def test_second_run_is_noop(self, bootstrap, runtime):
        bootstrap.bootstrap_admin("root@example.com", TEST_PASSWORD)

        assert bootstrap.bootstrap_admin("root@example.com", TEST_PASSWORD)["status"] == "already_admin"

    def test_dry_run_changes_nothing(self, bootstrap, runtime):
        result = bootstrap.bootstrap_admin("root@example.com", TEST_PASSWORD, dry_run=True)

        assert result["status"] == "dry_run"
        assert runtime.store.get_user_by_email("root@example.com") is None

    def test_weak_password_rejected(self, bootstrap, runtime):
        with pytest.raises(ValueError):
            bootstrap.bootstrap_admin("root@example.com", "password")

    def test_main_reports_missing_email(self, bootstrap, monkeypatch, capsys):
        monkeypatch.delenv("ADMIN_EMAIL", raising=False)
        monkeypatch.delenv("ADMIN_PASSWORD", raising=False)

        assert bootstrap.main([]) == 1
        assert "--email" in capsys.readouterr().out

    def test_main_creates_admin(self, bootstrap, runtime, capsys):
        code = bootstrap.main(["--email", "cli@example.com", "--password", TEST_PASSWORD])

        assert code == 0
        assert "Created admin user: cli@example.com" in capsys.readouterr().out
