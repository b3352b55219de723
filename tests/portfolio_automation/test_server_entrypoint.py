"""Tests for the web server entry point."""

from __future__ import annotations

import json
import types

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient  # noqa: E402

from portfolio_automation import web_server  # noqa: E402
from portfolio_automation.api import build_controller  # noqa: E402
from portfolio_automation.audit import read_audit_entries, reset_audit_registry  # noqa: E402


@pytest.fixture
def fake_uvicorn(monkeypatch):
    calls = []
    module = types.SimpleNamespace(run=lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(web_server, "_import_uvicorn", lambda: module)
    monkeypatch.setattr(web_server, "configure_logging", lambda level: True)
    return calls


def test_main_serves_configured_app(tmp_path, fake_uvicorn, monkeypatch) -> None:
    for key in ("AUTOMATION_CONFIG", "AUTOMATION_AUDIT_LOG", "AUTOMATION_STORE_PATH", "AUTOMATION_DEBUG_LEVEL"):
        monkeypatch.delenv(key, raising=False)
    reset_audit_registry()
    config_path = tmp_path / "engine.json"
    config_path.write_text(
        json.dumps({"audit": {"log_path": "audit.log"}, "store_path": "automations.json"}), encoding="utf-8"
    )

    web_server.main(["--config", str(config_path), "--port", "9001", "--tick-interval", "0", "--debug-level", "2"])

    [(app, kwargs)] = fake_uvicorn
    assert app.title == "Portfolio Automation Engine"
    assert kwargs == {"host": "127.0.0.1", "port": 9001, "log_level": "debug"}
    [entry] = read_audit_entries(tmp_path / "audit.log", action="web_server.start")
    assert entry["details"] == {"host": "127.0.0.1", "port": 9001, "tick_interval": 0.0}
    reset_audit_registry()


def test_lifespan_starts_and_stops_background_ticks() -> None:
    controller = build_controller()
    app = web_server.build_app(controller, tick_interval=0.01)

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200

    assert controller.scheduler.tick_in_flight is False


def test_lifespan_without_interval_runs_no_ticks() -> None:
    controller = build_controller()
    app = web_server.build_app(controller, tick_interval=0)

    with TestClient(app) as client:
        client.get("/health")

    assert controller.metrics.samples("automation_tick_latency_seconds") == []
