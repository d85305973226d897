"""
tests/test_cli.py -- Tests for the administrative CLI in main.py.

AuthService.from_settings is patched to hand back a test service so the
commands run against an in-memory DB.
"""

from __future__ import annotations

import pytest

import main
from auth.models import Role
from auth.service import AuthService


@pytest.fixture
def service(make_service, monkeypatch):
    svc = make_service()
    monkeypatch.setattr(AuthService, "from_settings", classmethod(lambda cls, settings, directory=None: svc))
    monkeypatch.setattr(svc, "close", lambda: None)
    return svc


def test_create_admin(service, capsys) -> None:
    code = main.main(["create-admin", "root", "--email", "root@example.com", "--password", "rootpass"])
    assert code == 0
    user = service.users.get_by_username("root")
    assert user.role is Role.ADMINISTRATOR
    assert service.login("root", "rootpass").ok
    assert "created" in capsys.readouterr().out


def test_create_admin_duplicate(service, create_user) -> None:
    create_user(service, "root")
    assert main.main(["create-admin", "ROOT", "--email", "r@example.com", "--password", "rootpass"]) == 1


def test_create_admin_short_password(service) -> None:
    assert main.main(["create-admin", "root", "--email", "r@example.com", "--password", "abc"]) == 1
    assert service.users.get_by_username("root") is None


def test_set_password_signs_user_out(service, create_user) -> None:
    create_user(service, "alice", "old-pass")
    token = service.login("alice", "old-pass").session_token

    assert main.main(["set-password", "alice", "--password", "new-pass"]) == 0

    assert service.current_user(token) is None
    assert service.login("alice", "new-pass").ok


def test_set_password_unknown_user(service) -> None:
    assert main.main(["set-password", "ghost", "--password", "whatever"]) == 1


def test_purge_sessions(service, capsys) -> None:
    assert main.main(["purge-sessions"]) == 0
    assert "0 expired" in capsys.readouterr().out


def test_no_command_prints_help(service) -> None:
    assert main.main([]) == 1
