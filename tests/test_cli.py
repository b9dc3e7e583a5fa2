"""
tests/test_cli.py -- Tests for the operator CLI in main.py.

The CLI reads Settings through get_settings(); tests patch it to point at a
throwaway SQLite file.
"""

from __future__ import annotations

import pytest

import main
from auth.services import build_services
from core.config import Settings
from conftest import PASSWORD


@pytest.fixture
def cli_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(database_url=f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    return settings


def test_create_user_and_login(cli_settings: Settings, capsys) -> None:
    assert main.main(["create-user", "--username", "root", "--role", "superadmin", "--password", PASSWORD]) == 0
    assert "Created superadmin 'root'" in capsys.readouterr().out

    services = build_services(cli_settings)
    try:
        pair = services.tokens.login("root", PASSWORD)
        assert services.tokens.validate_access_token(pair.access_token).role.value == "superadmin"
    finally:
        services.close()


def test_create_duplicate_user(cli_settings: Settings, capsys) -> None:
    main.main(["create-user", "--username", "root", "--password", PASSWORD])
    assert main.main(["create-user", "--username", "root", "--password", PASSWORD]) == 1
    assert "already exists" in capsys.readouterr().out


def test_short_password_refused(cli_settings: Settings) -> None:
    assert main.main(["create-user", "--username", "root", "--password", "short"]) == 1


def test_prompted_passwords_must_match(cli_settings: Settings, monkeypatch) -> None:
    answers = iter(["first-password", "second-password"])
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": next(answers))
    assert main.main(["create-user", "--username", "root"]) == 1


def test_revoke_sessions(cli_settings: Settings, capsys) -> None:
    main.main(["create-user", "--username", "alice", "--password", PASSWORD])
    services = build_services(cli_settings)
    try:
        pair = services.tokens.login("alice", PASSWORD)
        services.tokens.login("alice", PASSWORD)
    finally:
        services.close()

    assert main.main(["revoke-sessions", "--username", "alice"]) == 0
    assert "Revoked 2 session(s)" in capsys.readouterr().out

    services = build_services(cli_settings)
    try:
        assert services.sessions.get(pair.session_id).revoked is True
    finally:
        services.close()


def test_revoke_sessions_unknown_user(cli_settings: Settings) -> None:
    assert main.main(["revoke-sessions", "--username", "nobody"]) == 1
