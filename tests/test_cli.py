"""
tests/test_cli.py -- Tests for the operator CLI in main.py.

Each test points the CLI at its own SQLite file with --database-url.
"""

from __future__ import annotations

import json

import pytest

from auth.session import build_session_service
from core.config import Settings
from core.errors import AuthenticationError
from main import main


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cli.db'}"


@pytest.fixture
def seeded(db_url) -> str:
    assert main(["--database-url", db_url, "init-db"]) == 0
    sessions = build_session_service(Settings(debug=True, database_url=db_url, bcrypt_rounds=4))
    try:
        sessions.register("alice", "alice@x.com", "Str0ng!Pw")
        with pytest.raises(AuthenticationError):
            sessions.login("alice@x.com", "wrong")
    finally:
        sessions.data.close()
    return db_url


def test_init_db(db_url, capsys) -> None:
    assert main(["--database-url", db_url, "init-db"]) == 0
    assert "Schema ready" in capsys.readouterr().out
    # Idempotent.
    assert main(["--database-url", db_url, "init-db"]) == 0


def test_sweep_json(seeded, capsys) -> None:
    capsys.readouterr()
    assert main(["--database-url", seeded, "sweep", "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == {"tokens_removed": 0, "events_removed": 0}


def test_health(db_url, capsys) -> None:
    assert main(["--database-url", db_url, "health"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["reachable"] is True
    assert stats["status"] == "ok"


def test_events_filtered_by_kind(seeded, capsys) -> None:
    capsys.readouterr()
    assert main(["--database-url", seeded, "events", "--kind", "login_failed"]) == 0
    out = capsys.readouterr().out
    assert "login_failed" in out
    assert "registered" not in out


def test_events_empty(db_url, capsys) -> None:
    assert main(["--database-url", db_url, "events", "--kind", "account_closed"]) == 0
    assert "No matching security events." in capsys.readouterr().out


def test_unknown_kind_rejected(db_url) -> None:
    with pytest.raises(SystemExit):
        main(["--database-url", db_url, "events", "--kind", "nonsense"])
