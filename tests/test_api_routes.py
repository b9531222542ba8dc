from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from faucet.runtime.config import default_faucet_config, with_overrides
from faucet.runtime.metrics import inc_counter
from faucet.runtime.service import FaucetService
from faucet.testing.fakes import FakeLedger, FakeMailer


def _service(tmp_path: Path) -> FaucetService:
    cfg = with_overrides(
        default_faucet_config(),
        data_dir=str(tmp_path / "data"),
        start_block=50,
        poll_interval_ms=100,
        error_backoff_ms=100,
    )
    return FaucetService(cfg, ledger=FakeLedger(head=50), mailer=FakeMailer())


def test_create_app_boot_runtime_false_has_no_service() -> None:
    from faucet.api.app import create_app

    app = create_app(boot_runtime=False)
    assert app.state.service is None

    with TestClient(app) as client:
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["monitoring"] is False

        r = client.post("/monitor/start")
        assert r.status_code == 503


def test_create_app_boot_runtime_true_uses_build_service(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    from faucet.api import app as api_app

    svc = _service(tmp_path)
    monkeypatch.setattr(api_app, "build_service", lambda: svc.open())

    app = api_app.create_app(boot_runtime=True, autostart=True)
    assert app.state.service is svc

    with TestClient(app) as client:
        assert svc.running is True
        assert client.get("/health").json()["monitoring"] is True
    assert svc.running is False


def test_health_and_status_shape(tmp_path: Path) -> None:
    from faucet.api.app import create_app

    svc = _service(tmp_path).open()
    inc_counter("requests_seen_total", 3)
    app = create_app(service=svc, boot_runtime=False, autostart=False)

    with TestClient(app) as client:
        h = client.get("/health").json()
        assert h["status"] == "ok"
        assert h["service"] == "Hive Account Faucet"
        assert h["version"] == "1.0.0"
        assert h["monitoring"] is False
        assert h["last_block"] == 0
        assert h["timestamp"]

        s = client.get("/status").json()
        assert s["monitoring"] is False
        assert s["last_processed_block"] == 0
        assert s["pending_credentials"] == 0
        assert s["uptime_s"] >= 0
        assert s["memory"]["rss_kb"] > 0
        assert s["counters"]["requests_seen_total"] == 3


def test_monitor_start_and_stop(tmp_path: Path) -> None:
    from faucet.api.app import create_app

    svc = _service(tmp_path)
    app = create_app(service=svc, boot_runtime=False, autostart=False)

    with TestClient(app) as client:
        r = client.post("/monitor/start")
        assert r.status_code == 200
        assert r.json()["message"] == "Monitoring started"
        assert client.post("/monitor/start").json()["message"] == "Monitoring already running"
        assert client.get("/health").json()["monitoring"] is True

        r = client.post("/monitor/stop")
        assert r.json()["message"] == "Monitoring stopped"
        assert client.post("/monitor/stop").json()["message"] == "Monitoring not running"


def test_unknown_path_returns_json_404() -> None:
    from faucet.api.app import create_app

    with TestClient(create_app(boot_runtime=False)) as client:
        r = client.get("/no/such/thing")
        assert r.status_code == 404
        assert r.json() == {"error": "Endpoint not found"}


def test_unhandled_error_returns_json_500() -> None:
    from faucet.api.app import create_app

    app = create_app(boot_runtime=False)

    def boom():
        raise RuntimeError("kaboom")

    app.add_api_route("/boom", boom)

    with TestClient(app, raise_server_exceptions=False) as client:
        r = client.get("/boom")
        assert r.status_code == 500
        assert r.json() == {"error": "Internal server error"}


def test_request_id_header_is_echoed() -> None:
    from faucet.api.app import create_app

    with TestClient(create_app(boot_runtime=False)) as client:
        r = client.get("/health", headers={"x-request-id": "abc123"})
        assert r.headers["x-request-id"] == "abc123"
