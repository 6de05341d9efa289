"""
tests/test_cli.py -- Administrative command line (main.py).

Each test points --database-url at its own SQLite file so commands run
against a real database without touching the default one.
"""

from __future__ import annotations

import pytest

from auth.service import build_auth_service
from auth.store import RecordStore
from main import main


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cli.db'}"


def _service(db_url: str):
    store = RecordStore(db_url)
    return store, build_auth_service(store)


def test_create_user(db_url, capsys):
    """create-user lowercases the email and the account can log in."""
    code = main(["--database-url", db_url, "create-user", "Ana@Tienda.pe", "--role", "administrador", "--password", "Secreto123"])
    assert code == 0
    assert "ana@tienda.pe" in capsys.readouterr().out

    store, service = _service(db_url)
    try:
        user, _ = service.login("ana@tienda.pe", "Secreto123")
        assert user.role == "administrador"
    finally:
        store.close()


def test_create_duplicate_user_fails(db_url, capsys):
    """A second create-user for the same email exits 1 with an error line."""
    args = ["--database-url", db_url, "create-user", "ana@tienda.pe", "--password", "Secreto123"]
    assert main(args) == 0
    assert main(args) == 1
    assert "[!]" in capsys.readouterr().out


def test_create_user_prompts_for_password(db_url, monkeypatch):
    """Without --password the password is read with getpass."""
    monkeypatch.setattr("getpass.getpass", lambda prompt="": "Secreto123")
    assert main(["--database-url", db_url, "create-user", "caja@tienda.pe"]) == 0


def test_create_oauth_only_user(db_url):
    """--oauth-only creates an account with no password hash."""
    assert main(["--database-url", db_url, "create-user", "oauth@tienda.pe", "--oauth-only"]) == 0
    store, service = _service(db_url)
    try:
        assert service.get_user_by_email("oauth@tienda.pe").hashed_password is None
    finally:
        store.close()


def test_unlock_and_revoke(db_url, capsys):
    """unlock, revoke-sessions and purge-expired act on the database."""
    store, service = _service(db_url)
    try:
        user = service.create_user("caja@tienda.pe", "Secreto123", "vendedor")
        _, pair = service.login("caja@tienda.pe", "Secreto123")
        for _ in range(5):
            service.policy.record_failure(service.get_user(user.id))
    finally:
        store.close()

    assert main(["--database-url", db_url, "unlock", str(user.id)]) == 0
    assert main(["--database-url", db_url, "revoke-sessions", str(user.id)]) == 0
    assert main(["--database-url", db_url, "unlock", "999"]) == 1

    store, service = _service(db_url)
    try:
        assert service.get_user(user.id).lockout_until is None
        assert service.list_sessions(user.id) == []
        assert main(["--database-url", db_url, "purge-expired"]) == 0
        assert store.count("refresh_tokens") == 0
    finally:
        store.close()
    assert "Removed 1 refresh record(s)" in capsys.readouterr().out


def test_create_user_rejects_weak_password(db_url, capsys):
    """create-user applies the API password rules and creates nothing on failure."""
    assert main(["--database-url", db_url, "create-user", "caja@tienda.pe", "--password", "corta"]) == 1
    assert "at least 8 characters" in capsys.readouterr().out

    args = ["--database-url", db_url, "create-user", "caja@tienda.pe", "--password", "sinmayuscula1"]
    assert main(args) == 1
    assert "uppercase" in capsys.readouterr().out

    store, service = _service(db_url)
    try:
        assert service.get_user_by_email("caja@tienda.pe") is None
    finally:
        store.close()
