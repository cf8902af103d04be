"""
tests/test_cli.py -- Operator commands in main.py.

Each test points DATABASE_URL at a fresh SQLite file and clears the cached
Settings so the command picks it up. The cache is cleared again afterwards
so later tests see the session-wide environment.
"""

from __future__ import annotations

import json

import pytest

from auth.models import NewUser
from auth.store import UserStore
from auth.tokens import create_access_token
from core.config import get_settings
from db.connection import ConnectionManager
from main import main


@pytest.fixture
def cli_db_url(tmp_path, monkeypatch) -> str:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


def _seed(url: str) -> None:
    db = ConnectionManager(url)
    try:
        UserStore(db).create_user(NewUser(name="Ann", email="ann@test.com", password="secret1"))
    finally:
        db.dispose()


class TestDatabaseCommands:
    def test_init_db(self, cli_db_url: str, capsys) -> None:
        assert main(["init-db"]) == 0
        assert "0 record(s)" in capsys.readouterr().out

    def test_init_db_is_idempotent(self, cli_db_url: str, capsys) -> None:
        _seed(cli_db_url)
        assert main(["init-db"]) == 0
        assert "1 record(s)" in capsys.readouterr().out

    def test_check_db(self, cli_db_url: str, capsys) -> None:
        assert main(["check-db"]) == 0
        assert "connected" in capsys.readouterr().out

    def test_check_db_unreachable(self, tmp_path, monkeypatch, capsys) -> None:
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}")
        monkeypatch.setenv("DB_MAX_RETRIES", "0")
        get_settings.cache_clear()
        try:
            assert main(["check-db"]) == 1
        finally:
            get_settings.cache_clear()
        assert "failed" in capsys.readouterr().out

    def test_list_users_json(self, cli_db_url: str, capsys) -> None:
        _seed(cli_db_url)
        assert main(["list-users", "--json"]) == 0
        users = json.loads(capsys.readouterr().out)
        assert [u["email"] for u in users] == ["ann@test.com"]
        assert "password" not in users[0]

    def test_list_users_table(self, cli_db_url: str, capsys) -> None:
        _seed(cli_db_url)
        assert main(["list-users"]) == 0
        assert "ann@test.com" in capsys.readouterr().out

    def test_list_users_empty(self, cli_db_url: str, capsys) -> None:
        assert main(["list-users"]) == 0
        assert "No users." in capsys.readouterr().out


class TestDecodeToken:
    def test_valid_token(self, capsys) -> None:
        assert main(["decode-token", create_access_token(3, "c@test.com")]) == 0
        out = capsys.readouterr().out
        assert '"email": "c@test.com"' in out
        assert "signature/expiry/issuer: valid" in out

    def test_forged_token_flagged(self, capsys) -> None:
        token = create_access_token(3, "c@test.com", secret_key="another-secret-key-that-is-long-enough-000")
        assert main(["decode-token", token]) == 0
        assert "INVALID" in capsys.readouterr().out

    def test_garbage(self, capsys) -> None:
        assert main(["decode-token", "garbage"]) == 1


def test_unknown_command_exits() -> None:
    with pytest.raises(SystemExit):
        main(["frobnicate"])
