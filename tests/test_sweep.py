"""
tests/test_sweep.py -- Tests for the background retention sweep and app lifespan.

Covers:
  - _sweep_loop keeps running after a DataError or an unexpected error,
    and stops on cancel
  - The real lifespan builds the service graph on a file database,
    creates the schema and disposes the engine on shutdown
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter as api_limiter
from api.main import _sweep_loop, app, lifespan
from auth.models import SweepReport
from core.config import get_settings
from core.errors import FatalDataError


class _FlakySessions:
    def __init__(self, first_error: Exception) -> None:
        self.calls = 0
        self.first_error = first_error

    def sweep(self) -> SweepReport:
        self.calls += 1
        if self.calls == 1:
            raise self.first_error
        return SweepReport(tokens_removed=1)


@pytest.mark.parametrize("error", [FatalDataError(), RuntimeError("boom")], ids=["data-error", "unexpected"])
def test_sweep_loop_survives_failures(error, caplog) -> None:
    fake_app = SimpleNamespace(state=SimpleNamespace(sessions=_FlakySessions(error)))

    async def scenario() -> int:
        task = asyncio.create_task(_sweep_loop(fake_app, 0.01))
        for _ in range(200):
            await asyncio.sleep(0.01)
            if fake_app.state.sessions.calls >= 3:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return fake_app.state.sessions.calls

    assert asyncio.run(scenario()) >= 3
    assert any("Retention sweep" in r.getMessage() for r in caplog.records)


@pytest.fixture
def real_lifespan(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'lifespan.db'}")
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")
    get_settings.cache_clear()
    app.router.lifespan_context = lifespan
    api_limiter.reset()
    yield
    get_settings.cache_clear()


def test_lifespan_wires_service_graph(real_lifespan, tmp_path) -> None:
    with TestClient(app) as client:
        assert client.get("/api/v1/health").json()["status"] == "ok"
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": "alice", "email": "alice@x.com", "password": "Str0ng!Pw"},
        )
        assert resp.status_code == 201
        task = app.state.sweep_task
        assert not task.done()
    assert task.cancelled()
    assert (tmp_path / "lifespan.db").exists()
