from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from portfolio_automation.api import build_controller
from portfolio_automation.models import Strategy
from portfolio_automation.web import create_app
from services.ledger import InMemoryLedger

FAR_FUTURE = "2100-01-01T00:00:00Z"


@pytest.fixture
def ledger() -> InMemoryLedger:
    ledger = InMemoryLedger()
    ledger.set_available("alice", 1_000)
    ledger.add_strategy("alice", Strategy("btc", "Bitcoin", "BTC", "compound", 10_000, 10_000))
    return ledger


@pytest.fixture
def client(ledger) -> TestClient:
    return TestClient(create_app(build_controller(ledger=ledger)))


def _deposit(client: TestClient, **overrides) -> dict:
    payload = {
        "type": "scheduled_deposit",
        "frequency": "daily",
        "user_id": "alice",
        "parameters": {"amount": 100},
    }
    payload.update(overrides)
    response = client.post("/api/automations", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_health_reports_scheduler_and_services(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["tick_in_flight"] is False
    assert body["services"]["status"] == "healthy"


def test_automation_lifecycle_over_http(client: TestClient) -> None:
    created = _deposit(client)
    automation_id = created["id"]
    assert created["status"] == "active"

    assert client.get(f"/api/automations/{automation_id}").json()["id"] == automation_id
    assert client.post(f"/api/automations/{automation_id}/pause").json()["status"] == "paused"
    paused = client.get("/api/automations", params={"status": "paused"}).json()["automations"]
    assert [item["id"] for item in paused] == [automation_id]
    assert client.post(f"/api/automations/{automation_id}/resume").json()["status"] == "active"
    assert client.post(f"/api/automations/{automation_id}/cancel").json()["status"] == "cancelled"

    rejected = client.post(f"/api/automations/{automation_id}/pause")
    assert rejected.status_code == 400

    assert client.delete(f"/api/automations/{automation_id}").status_code == 204
    assert client.get(f"/api/automations/{automation_id}").status_code == 404


def test_list_filters_by_user(client: TestClient) -> None:
    _deposit(client)
    _deposit(client, user_id="bob")

    listed = client.get("/api/automations", params={"user_id": "bob"}).json()["automations"]

    assert [item["user_id"] for item in listed] == ["bob"]


def test_invalid_automation_is_rejected(client: TestClient) -> None:
    response = client.post("/api/automations", json={"type": "teleport", "parameters": {}})

    assert response.status_code == 400
    assert response.json()["errors"]


def test_non_object_payload_is_rejected(client: TestClient) -> None:
    assert client.post("/api/automations", json=[1, 2]).status_code == 400
    assert client.post("/api/automations", content=b"{nope", headers={"content-type": "application/json"}).status_code == 400


def test_unknown_automation_is_404(client: TestClient) -> None:
    assert client.post("/api/automations/missing/pause").status_code == 404


def test_tick_executes_due_automations(client: TestClient, ledger: InMemoryLedger) -> None:
    created = _deposit(client, parameters={"amount": 100, "target_strategy": "aave-usdc"})

    report = client.post("/api/tick", json={"now": FAR_FUTURE}).json()

    assert report["executed"] == [created["id"]]
    automation = client.get(f"/api/automations/{created['id']}").json()
    assert automation["execution_count"] == 1
    assert automation["next_execution"].startswith("2100-01-02")


def test_tick_without_body_uses_current_time(client: TestClient) -> None:
    _deposit(client)

    report = client.post("/api/tick").json()

    assert report["dropped"] is False
    assert report["executed"] == []


def test_risk_assessment_for_explicit_portfolio(client: TestClient) -> None:
    response = client.post(
        "/api/risk/assess",
        json={"portfolio": {"positions": [{"asset": "USDC", "protocol": "compound", "value": 1000}]}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["overall_risk_score"] == 14
    assert body["risk_level"] == "Very Low"
    assert body["tolerance"] == "Moderate"


def test_risk_assessment_uses_ledger_holdings(client: TestClient) -> None:
    body = client.post("/api/risk/assess", json={"user_id": "alice", "tolerance": "Aggressive"}).json()

    assert body["portfolio_id"] == "alice"
    assert body["overall_risk_score"] == 55.55
    assert body["is_within_tolerance"] is True


def test_unknown_tolerance_is_400(client: TestClient) -> None:
    response = client.post("/api/risk/assess", json={"user_id": "alice", "tolerance": "Reckless"})

    assert response.status_code == 400


def test_rebalance_recommendation(client: TestClient) -> None:
    body = client.post(
        "/api/risk/rebalance",
        json={"user_id": "alice", "tolerance": "Conservative", "target_allocations": [{"asset": "usdc", "weight": 0.5}]},
    ).json()

    assert body["needs_rebalancing"] is True
    assert [action["asset"] for action in body["actions"]] == ["USDC", "USDT", "DAI"]
    assert body["deviations"][0]["asset"] == "USDC"


def test_stress_test_endpoint(client: TestClient) -> None:
    body = client.post("/api/stress", json={"user_id": "alice", "scenarios": ["market_crash"]}).json()

    assert body["scenarios"]["market_crash"]["total_loss"] == 38.25
    assert client.post("/api/stress", json={"scenarios": ["alien_invasion"]}).status_code == 400


def test_performance_metrics_endpoint(client: TestClient) -> None:
    payload = {
        "transactions": [{"type": "deposit", "amount": 1000, "timestamp": "2023-01-01T00:00:00Z"}],
        "current_value": 1100,
        "strategy_id": "s1",
    }

    body = client.post("/api/performance/metrics", json=payload).json()

    assert body["total_return"] == 10
    assert body["strategy_id"] == "s1"
    assert client.post("/api/performance/metrics", json={"transactions": []}).status_code == 400


def test_projection_endpoint(client: TestClient) -> None:
    body = client.post(
        "/api/performance/projections",
        json={"current_value": 1000, "monthly_contribution": 100, "horizon": "1year", "expected_apy": 6},
    ).json()

    assert len(body["projections"]) == 4
    assert body["summary"]["total_contributions"] == 2200
    assert client.post("/api/performance/projections", json={"current_value": "lots"}).status_code == 400


def test_performance_metrics_for_fresh_deposit(client: TestClient) -> None:
    an_hour_ago = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    payload = {"transactions": [{"type": "deposit", "amount": 1000, "timestamp": an_hour_ago}], "current_value": 1100}

    response = client.post("/api/performance/metrics", json=payload)

    assert response.status_code == 200
    assert response.json()["annualized_return"] is None


def test_projection_accepts_float_horizon(client: TestClient) -> None:
    body = client.post("/api/performance/projections", json={"current_value": 1000, "horizon": 24.0}).json()

    assert body["assumptions"]["total_months"] == 24
    assert len(body["projections"]) == 8


def test_non_numeric_parameter_is_400(client: TestClient) -> None:
    response = client.post(
        "/api/automations",
        json={"type": "take_profit", "parameters": {"strategy_id": "btc", "target_return": "abc"}},
    )

    assert response.status_code == 400
    assert "target_return" in response.json()["errors"][0]
