"""
API tests for the workflow and report routers.
Runs the routers in-process with FastAPI's TestClient over in-memory stores.
"""
import pytest
from fastapi import APIRouter, FastAPI
from fastapi.testclient import TestClient

from routes import reports, workflows


SITE_USER = {"id": "u-site", "name": "Site Officer", "role": "site_officer"}
REGIONAL = {"id": "u-ro", "name": "Regional Officer", "role": ["regional_office"]}


@pytest.fixture
def client(engine, bill_store, master_data, make_bill):
    bill_store.add(make_bill("bill-1", tax_inv_received_at_site="2025-03-01"))
    bill_store.add(make_bill("bill-2", nature_of_work="Service"))

    workflows.set_dependencies(engine)
    reports.set_dependencies(bill_store, master_data)

    app = FastAPI()
    api_router = APIRouter(prefix="/api")
    api_router.include_router(workflows.router)
    api_router.include_router(reports.router)
    app.include_router(api_router)
    return TestClient(app)


def transition(client, bill_ids, action="forward", from_user=SITE_USER, to_user=REGIONAL):
    return client.post("/api/workflows/batch-transition", json={
        "from_user": from_user,
        "to_user": to_user,
        "bill_ids": bill_ids,
        "action": action,
        "remarks": "via api",
    })


class TestBatchTransitionEndpoint:

    def test_partitioned_result(self, client):
        response = transition(client, ["bill-1", "missing"])

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Processed 2 bills: 1 successful, 1 failed"
        assert data["data"]["successful"][0]["workflow"]["position"] == 2
        assert data["data"]["failed"][0]["error_type"] == "NotFound"

    @pytest.mark.parametrize("payload", [
        {"from_user": SITE_USER, "to_user": REGIONAL, "bill_ids": [], "action": "forward"},
        {"from_user": SITE_USER, "to_user": REGIONAL, "bill_ids": "bill-1", "action": "forward"},
        {"from_user": SITE_USER, "to_user": REGIONAL, "bill_ids": ["bill-1"], "action": "sideways"},
        {"to_user": REGIONAL, "bill_ids": ["bill-1"], "action": "forward"},
        {"from_user": SITE_USER, "to_user": REGIONAL, "bill_ids": [{"$ne": None}], "action": "forward"},
        {"from_user": SITE_USER, "to_user": REGIONAL, "bill_ids": ["bill-1", ["x"]], "action": "forward"},
    ])
    def test_malformed_request(self, client, payload):
        response = client.post("/api/workflows/batch-transition", json=payload)
        assert response.status_code == 400

    def test_operator_id_touches_no_bill(self, client, bill_store):
        response = transition(client, [{"$ne": None}])
        assert response.status_code == 400
        assert bill_store.get("bill-1")["position"] == 1
        assert bill_store.get("bill-2")["position"] == 1


class TestBillEndpoints:

    def test_history_and_summary(self, client):
        transition(client, ["bill-1"])

        history = client.get("/api/workflows/bills/bill-1/history").json()["data"]
        assert len(history) == 1
        assert history[0]["remarks"] == "via api"

        summary = client.get("/api/workflows/bills/bill-1").json()["data"]
        assert summary["current_state"] == "Regional_Office"
        assert len(summary["history"]) == 1

    def test_unknown_bill(self, client):
        assert client.get("/api/workflows/bills/missing").status_code == 404
        assert client.get("/api/workflows/bills/missing/time-in-state").status_code == 404

    def test_time_in_state(self, client):
        transition(client, ["bill-1"])
        data = client.get("/api/workflows/bills/bill-1/time-in-state").json()["data"]
        assert data["total_transitions"] == 1
        assert data["time_in_states"] == {"Regional_Office": 0.0}


class TestDashboardEndpoints:

    def test_state_counts(self, client):
        transition(client, ["bill-1"])
        counts = client.get("/api/workflows/state-counts").json()["data"]
        assert counts == {"Regional_Office": 1, "Site_Team": 1}

    def test_stuck_and_stats(self, client):
        assert client.get("/api/workflows/stuck?threshold_days=0").json()["count"] == 0
        stats = client.get("/api/workflows/stats").json()["data"]
        assert "state_counts" in stats

    def test_above_level(self, client):
        transition(client, ["bill-1"])
        data = client.get("/api/workflows/above-level/site_officer").json()
        assert data["count"] == 1
        assert client.get("/api/workflows/above-level/janitor").status_code == 400

    def test_by_state(self, client):
        response = client.get("/api/workflows/state/Site_Team")
        assert response.json()["count"] == 2
        assert client.get("/api/workflows/state/Limbo").status_code == 400

    def test_user_activity_and_roles(self, client):
        transition(client, ["bill-1"])
        activity = client.get("/api/workflows/users/u-site/activity").json()["data"]
        assert activity["action_summary"]["forward"] == 1
        roles = client.get("/api/workflows/roles/performance").json()["data"]
        assert roles[0]["role"] == "site_team"


class TestReportEndpoints:

    def test_catalog(self, client):
        reports_list = client.get("/api/reports").json()["reports"]
        assert len(reports_list) == 11

    def test_stage_report(self, client):
        report = client.get("/api/reports/invoices_received_at_site").json()["report"]
        assert report["summary"]["total_count"] == 1
        assert report["data"][0]["vendor_name"] == "Acme Builders"

    def test_unknown_report(self, client):
        assert client.get("/api/reports/invoices_lost").status_code == 404

    def test_invalid_date(self, client):
        response = client.get("/api/reports/bill-journey?start_date=2025-13-45")
        assert response.status_code == 400

    def test_grouped_reports(self, client):
        pending = client.get("/api/reports/pending-bills").json()["report"]
        assert pending["summary"]["record_count"] == 1
        outstanding = client.get("/api/reports/outstanding-bills").json()["report"]
        assert outstanding["summary"]["record_count"] == 0


class TestServerEndpoints:
    """Root endpoints of the assembled app. The lifespan is not entered, so no database is needed."""

    def test_root_and_health(self):
        import server

        client = TestClient(server.app)
        assert client.get("/").json()["service"] == "Bill Workflow Hub"
        assert client.get("/api/health").json() == {"status": "healthy", "service": "bill-workflow-hub"}
