"""
tests/test_cli.py -- Tests for the operator command line in main.py.

Each test points the CLI at a fresh SQLite file under tmp_path by patching
main.get_settings with a copy of the real settings.
"""

from __future__ import annotations

import json

import pytest

import main
from auth.audit import AuditLogger
from auth.models import AuditEntry
from auth.roles import Role
from auth.store import UserStore
from auth.tokens import verify_password
from core.config import get_settings


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    settings = get_settings().model_copy(update={"database_url": url, "session_database_url": "", "debug": True})
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    return url


def _store(url: str) -> UserStore:
    return UserStore(url)


class TestCreateUser:
    def test_creates_user_with_hashed_password(self, db_url, capsys) -> None:
        rc = main.main(["create-user", "alice", "--role", "Nurse", "--organization", "3", "--password", "alicepass1"])
        assert rc == 0
        assert "Created user 'alice'" in capsys.readouterr().out
        store = _store(db_url)
        user = store.get_by_username("alice")
        store.close()
        assert user.role is Role.NURSE
        assert user.organization_id == 3
        assert verify_password("alicepass1", user.hashed_password)

    def test_legacy_super_admin_spelling(self, db_url) -> None:
        assert main.main(["create-user", "root", "--role", "superadmin", "--password", "rootpass12"]) == 0
        store = _store(db_url)
        assert store.get_by_username("root").role is Role.SUPER_ADMIN
        store.close()

    def test_unknown_role(self, db_url, capsys) -> None:
        assert main.main(["create-user", "bob", "--role", "janitor", "--password", "bobpass123"]) == 2
        assert "Unknown role" in capsys.readouterr().out

    def test_short_password(self, db_url) -> None:
        assert main.main(["create-user", "bob", "--role", "nurse", "--password", "short"]) == 2

    def test_password_over_bcrypt_limit(self, db_url, capsys) -> None:
        assert main.main(["create-user", "gina", "--role", "nurse", "--password", "g" * 80]) == 2
        assert "72 bytes" in capsys.readouterr().out

    def test_duplicate(self, db_url, capsys) -> None:
        main.main(["create-user", "carol", "--role", "doctor", "--password", "carolpass1"])
        assert main.main(["create-user", "carol", "--role", "doctor", "--password", "carolpass1"]) == 1
        assert "already exists" in capsys.readouterr().out

    def test_prompts_for_password(self, db_url, monkeypatch) -> None:
        answers = iter(["promptpass1", "promptpass1"])
        monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": next(answers))
        assert main.main(["create-user", "dave", "--role", "pharmacist"]) == 0

    def test_prompt_mismatch(self, db_url, monkeypatch) -> None:
        answers = iter(["promptpass1", "different1"])
        monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": next(answers))
        with pytest.raises(SystemExit):
            main.main(["create-user", "erin", "--role", "nurse"])


class TestMembership:
    def test_add_default_membership(self, db_url) -> None:
        main.main(["create-user", "frank", "--role", "doctor", "--organization", "1", "--password", "frankpass1"])
        store = _store(db_url)
        uid = store.get_by_username("frank").id
        assert main.main(["add-membership", str(uid), "5", "--default"]) == 0
        assert store.list_memberships(uid) == [5]
        assert store.default_organization(uid) == 5
        store.close()

    def test_unknown_user(self, db_url) -> None:
        _store(db_url).close()
        assert main.main(["add-membership", "999", "5"]) == 1


class TestSeedDemo:
    def test_seed_is_idempotent(self, db_url, capsys) -> None:
        assert main.main(["seed-demo"]) == 0
        assert main.main(["seed-demo"]) == 0
        assert "already exists" in capsys.readouterr().out
        store = _store(db_url)
        assert store.get_by_username("ade").role is Role.SUPER_ADMIN
        store.close()

    def test_refuses_outside_debug(self, db_url, monkeypatch) -> None:
        prod = main.get_settings().model_copy(update={"debug": False})
        monkeypatch.setattr(main, "get_settings", lambda: prod)
        assert main.main(["seed-demo"]) == 2
        assert main.main(["seed-demo", "--force"]) == 0


class TestMaintenance:
    def test_purge_sessions_on_empty_store(self, db_url, capsys) -> None:
        assert main.main(["purge-sessions"]) == 0
        assert "Purged 0 expired session(s)." in capsys.readouterr().out

    def test_audit_tail_json(self, db_url, capsys) -> None:
        audit = AuditLogger(db_url)
        audit.log(AuditEntry(action="LOGIN_FAILED", details={"username": "mallory"}, organization_id=2))
        audit.log(AuditEntry(action="LOGIN_SUCCESS", actor_user_id=1, organization_id=1))
        assert main.main(["audit-tail", "--json", "--organization", "2"]) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["action"] == "LOGIN_FAILED"
        assert record["details"] == {"username": "mallory"}

    def test_no_command_prints_help(self, capsys) -> None:
        assert main.main([]) == 0
        assert "usage: clinicconnect-auth" in capsys.readouterr().out
