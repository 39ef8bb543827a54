"""HTTP-level tests for the FastAPI app: tenancy headers, error mapping and each router."""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from accubooks.main import app
from accubooks.services import build_services

from conftest import START, TENANT

END = START.date()

RULE = {
    "name": "Chase large overdue invoices",
    "trigger_type": "invoice_overdue",
    "condition_tree": {"kind": "atomic", "field": "invoice.amount", "operator": "gt", "value": 1000},
    "actions": [{"action_type": "send_notification", "params": {"message": "Invoice ${invoice.id} is overdue"}}],
}


def headers(tier="PROFESSIONAL", tenant_id=TENANT):
    values = {"X-Tenant-Id": tenant_id}
    if tier:
        values["X-Plan-Tier"] = tier
    return values


@pytest.fixture
def client(clock, provider, registry):
    # Plans come from the X-Plan-Tier header through the repository-backed plan service
    app.state.services = build_services("memory", clock=clock, data_provider=provider, registry=registry)
    with TestClient(app) as test_client:
        yield test_client


class TestAppBasics:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "storage": "memory"}

    def test_catalog_lists_triggers_and_actions(self, client):
        body = client.get("/api/automations/catalog").json()
        assert "invoice_overdue" in {t["type"] for t in body["triggers"]}
        assert "send_notification" in body["registered_actions"]

    def test_missing_tenant_is_unauthorized(self, client):
        assert client.get("/api/automations/rules").status_code == 401

    def test_unknown_tier_is_rejected(self, client):
        assert client.get("/api/automations/rules", headers=headers("PLATINUM")).status_code == 400

    def test_unknown_plan_fails_closed(self, client):
        response = client.post("/api/automations/rules", json=RULE, headers=headers(tier=None))
        assert response.status_code == 402
        assert "could not be verified" in response.json()["explanation"]


class TestAutomationRoutes:

    def test_create_execute_and_read_back(self, client):
        created = client.post("/api/automations/rules", json=RULE, headers=headers())
        assert created.status_code == 201
        rule = created.json()
        assert rule["version"] == 1
        assert rule["status"] == "enabled"

        context = {"invoice": {"id": "INV-7", "amount": 2500}}
        first = client.post(f"/api/automations/rules/{rule['id']}/execute",
                            json={"context": context, "idempotency_key": "run-1"}, headers=headers())
        assert first.status_code == 200
        assert first.json()["execution"]["status"] == "succeeded"
        assert first.json()["replayed"] is False

        replay = client.post(f"/api/automations/rules/{rule['id']}/execute",
                             json={"context": context, "idempotency_key": "run-1"}, headers=headers())
        assert replay.json()["replayed"] is True
        assert replay.json()["execution"]["id"] == first.json()["execution"]["id"]

        conflict = client.post(f"/api/automations/rules/{rule['id']}/execute",
                               json={"context": {"invoice": {"id": "INV-8"}}, "idempotency_key": "run-1"},
                               headers=headers())
        assert conflict.status_code == 409

        executions = client.get("/api/automations/executions", headers=headers()).json()
        assert [e["id"] for e in executions] == [first.json()["execution"]["id"]]

    def test_invalid_rule_is_unprocessable(self, client):
        bad = dict(RULE, condition_tree={"kind": "atomic", "field": "invoice.amount", "operator": "approx", "value": 1})
        response = client.post("/api/automations/rules", json=bad, headers=headers())
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_dry_run_trigger(self, client):
        client.post("/api/automations/rules", json=RULE, headers=headers())
        response = client.post("/api/automations/triggers", headers=headers(), json={
            "trigger_type": "invoice_overdue",
            "payload": {"invoice": {"id": "INV-9", "amount": 5000}},
            "dry_run": True,
        })
        outcome = response.json()
        assert response.status_code == 200
        assert outcome["dry_run"] is True
        assert len(outcome["matched_rule_ids"]) == 1
        assert outcome["execution_ids"] == []
        assert outcome["previews"][0]["matched"] is True
        assert outcome["previews"][0]["plan_allowed"] is True

    def test_starter_rule_limit_returns_upgrade_prompt(self, client):
        for i in range(10):
            assert client.post("/api/automations/rules", json=dict(RULE, name=f"rule {i}"),
                               headers=headers("STARTER")).status_code == 201

        response = client.post("/api/automations/rules", json=RULE, headers=headers("STARTER"))
        assert response.status_code == 402
        upgrade = response.json()["upgrade"]
        assert upgrade["suggested_plan"] == "PROFESSIONAL"
        assert upgrade["limit"] == 10

    def test_other_tenant_gets_not_found(self, client):
        rule = client.post("/api/automations/rules", json=RULE, headers=headers()).json()
        response = client.get(f"/api/automations/rules/{rule['id']}", headers=headers(tenant_id="tenant-b"))
        assert response.status_code == 404


class TestIntelligenceRoutes:

    def seed(self, provider):
        provider.add_cash_balance(TENANT, END, 100000)
        for i in range(3):
            provider.add_expense(TENANT, END - timedelta(days=10 + 30 * i), 20000, category="payroll")

    def test_forecast_round_trip(self, client, provider):
        self.seed(provider)
        response = client.post("/api/forecasts", json={"forecast_type": "cash_runway"}, headers=headers())
        assert response.status_code == 201
        forecast = response.json()
        assert forecast["projected_value"] == "5.00"
        assert forecast["formula"] == "cash_runway_months = current_cash / monthly_burn_rate"

        fetched = client.get(f"/api/forecasts/{forecast['id']}", headers=headers())
        assert fetched.json()["id"] == forecast["id"]

    def test_forecasts_need_professional(self, client):
        response = client.post("/api/forecasts", json={"forecast_type": "burn_rate"}, headers=headers("STARTER"))
        assert response.status_code == 402
        assert response.json()["upgrade"]["feature"] == "forecasting"

    def test_scenario_from_stated_baseline(self, client):
        response = client.post("/api/scenarios", headers=headers("STARTER"), json={
            "scenario_type": "hiring",
            "params": {"monthly_cost": 12000},
            "current_cash": 50000,
            "monthly_burn_rate": 10000,
        })
        assert response.status_code == 201
        scenario = response.json()
        assert scenario["projected_runway_days"] == 68.18
        assert scenario["risk_level"] == "HIGH"

        listed = client.get("/api/scenarios", headers=headers("STARTER")).json()
        assert [s["id"] for s in listed] == [scenario["id"]]

    def test_denied_scenario_leaves_no_forecast(self, client):
        response = client.post("/api/scenarios", headers=headers("FREE"), json={
            "scenario_type": "hiring",
            "params": {"monthly_cost": 12000},
            "current_cash": 50000,
            "monthly_burn_rate": 10000,
        })
        assert response.status_code == 402
        assert client.get("/api/forecasts", headers=headers("FREE")).json() == []

    def test_scenario_needs_a_baseline(self, client):
        response = client.post("/api/scenarios", headers=headers(), json={
            "scenario_type": "hiring", "params": {"monthly_cost": 12000},
        })
        assert response.status_code == 422

    def test_bad_scenario_params(self, client):
        response = client.post("/api/scenarios", headers=headers(), json={
            "scenario_type": "large_purchase",
            "params": {"amount": "a lot"},
            "current_cash": 50000,
            "monthly_burn_rate": 10000,
        })
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_insights_generate_and_dismiss(self, client, provider):
        for i in range(6):
            provider.add_expense(TENANT, END - timedelta(days=60 + 10 * i), 100, category="software")
        provider.add_expense(TENANT, END - timedelta(days=3), 1000, category="software")

        generated = client.post("/api/insights/generate", json={}, headers=headers())
        assert generated.status_code == 200
        [insight] = generated.json()
        assert insight["severity"] == "critical"

        dismissed = client.post(f"/api/insights/{insight['id']}/dismiss",
                                json={"reason": "Known renewal"}, headers=headers())
        assert dismissed.json()["dismissed"] is True
        assert client.get("/api/insights", headers=headers()).json() == []
