# tests/test_http_app.py
"""HTTP API tests over the memory backend."""
from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from casedispatch.transport.http_app import create_app
from tests.helpers import make_provider

CASE_BODY = {
    "serviceType": "plumber",
    "category": "cat_plumber",
    "description": "Leaking pipe under the kitchen sink",
    "phone": "+359888123456",
    "city": "Sofia",
    "neighborhood": "Lozenets",
    "customerId": "cust-1",
}


@pytest.fixture
def client(test_settings, services):
    with TestClient(create_app(test_settings, services)) as c:
        yield c


def _create(client, **overrides) -> str:
    resp = client.post("/cases", json={**CASE_BODY, **overrides})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["caseId"]


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    def test_ready_memory_backend(self, client):
        assert client.get("/ready").json() == {"status": "healthy"}

    def test_metrics_exposed_outside_prod(self, client):
        _create(client)
        body = client.get("/metrics").json()
        assert body["counters"]["cases_created_total{assignment_type=open}"] == 1
        assert "outbox" not in body

    def test_metrics_include_outbox_depth(self, client, services):
        services.jobs = Mock()
        services.jobs.count_by_status = AsyncMock(return_value={"pending": 3})
        assert client.get("/metrics").json()["outbox"] == {"pending": 3}

    def test_outbox_failure_does_not_break_metrics(self, client, services):
        services.jobs = Mock()
        services.jobs.count_by_status = AsyncMock(side_effect=OSError("db down"))
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert resp.json()["outbox"] is None

    def test_metrics_hidden_in_prod(self, test_settings, services):
        prod = test_settings.model_copy(update={"app_env": "prod"})
        with TestClient(create_app(prod, services)) as c:
            assert c.get("/metrics").status_code == 404


class TestCreateAndRead:
    def test_create_returns_case(self, client):
        resp = client.post("/cases", json=CASE_BODY)
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        case = body["data"]["case"]
        assert case["status"] == "pending"
        assert case["isOpenCase"] is True
        assert body["data"]["caseId"] == case["id"]
        assert "X-Request-ID" in resp.headers

    def test_missing_field_is_invalid_input(self, client):
        body = {k: v for k, v in CASE_BODY.items() if k != "city"}
        resp = client.post("/cases", json=body)
        assert resp.status_code == 400
        assert resp.json() == {
            "success": False,
            "error": {
                "code": "INVALID_INPUT",
                "message": "Missing required fields: serviceType, description, phone, city",
            },
        }

    def test_malformed_body_is_invalid_input(self, client):
        resp = client.post("/cases", json={**CASE_BODY, "budgetMin": "lots"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_INPUT"

    def test_self_assignment_forbidden(self, client):
        resp = client.post(
            "/cases",
            json={**CASE_BODY, "assignmentType": "specific", "providerId": "cust-1"},
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

    def test_get_case(self, client):
        case_id = _create(client)
        resp = client.get(f"/cases/{case_id}")
        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == case_id

    def test_unknown_case_is_404(self, client):
        resp = client.get("/cases/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"


class TestTransitions:
    def test_accept_then_conflict(self, client):
        case_id = _create(client)

        first = client.post(f"/cases/{case_id}/accept", json={"providerId": "prov-1", "providerName": "Ivan"})
        assert first.status_code == 200
        assert first.json()["data"] == {"caseId": case_id, "status": "accepted", "providerId": "prov-1"}

        second = client.post(f"/cases/{case_id}/accept", json={"providerId": "prov-2"})
        assert second.status_code == 409
        assert second.json()["success"] is False
        assert second.json()["error"]["code"] == "CONFLICT"

    def test_accept_requires_provider(self, client):
        case_id = _create(client)
        resp = client.post(f"/cases/{case_id}/accept", json={})
        assert resp.status_code == 400

    def test_decline_returns_case_to_queue(self, client):
        case_id = _create(client)
        client.post(f"/cases/{case_id}/accept", json={"providerId": "prov-1"})

        resp = client.post(f"/cases/{case_id}/decline", json={"providerId": "prov-1", "reason": "sick"})
        assert resp.status_code == 200
        assert resp.json()["data"] == {"caseId": case_id, "returnedToQueue": True}

        again = client.post(f"/cases/{case_id}/decline", json={"providerId": "prov-1"})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "ALREADY_DECLINED"

    def test_declined_provider_cannot_accept(self, client):
        case_id = _create(client)
        client.post(f"/cases/{case_id}/decline", json={"providerId": "prov-1"})

        resp = client.post(f"/cases/{case_id}/accept", json={"providerId": "prov-1"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"
        assert client.get(f"/cases/{case_id}").json()["data"]["status"] == "pending"

    def test_undecline_restores_visibility(self, client):
        case_id = _create(client)
        client.post(f"/cases/{case_id}/decline", json={"providerId": "prov-1"})
        assert client.get("/providers/prov-1/available-cases").json()["data"]["count"] == 0

        resp = client.post(f"/cases/{case_id}/undecline", json={"providerId": "prov-1"})
        assert resp.status_code == 200
        assert client.get("/providers/prov-1/available-cases").json()["data"]["count"] == 1

    def test_start_complete_with_income(self, client, store):
        case_id = _create(client)
        client.post(f"/cases/{case_id}/accept", json={"providerId": "prov-1"})

        started = client.post(f"/cases/{case_id}/start", json={"providerId": "prov-1"})
        assert started.json()["data"]["status"] == "wip"

        done = client.post(
            f"/cases/{case_id}/complete",
            json={"completionNotes": "Fixed", "income": {"amount": 120, "currency": "bgn"}},
        )
        assert done.status_code == 200
        assert done.json()["data"]["status"] == "completed"
        assert done.json()["data"]["completedAt"] is not None
        assert len(store.income) == 1
        assert store.income[0].income.currency == "BGN"

    def test_start_by_other_provider_forbidden(self, client):
        case_id = _create(client)
        client.post(f"/cases/{case_id}/accept", json={"providerId": "prov-1"})
        resp = client.post(f"/cases/{case_id}/start", json={"providerId": "prov-2"})
        assert resp.status_code == 403

    def test_cancel_only_pending(self, client):
        case_id = _create(client)
        assert client.post(f"/cases/{case_id}/cancel").json()["data"]["status"] == "closed"

        again = client.post(f"/cases/{case_id}/cancel")
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "INVALID_STATE"

    def test_update_status(self, client):
        case_id = _create(client)
        resp = client.put(f"/cases/{case_id}/status", json={"status": "declined", "message": "spam"})
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "declined"

        bad = client.put(f"/cases/{case_id}/status", json={"status": "archived"})
        assert bad.status_code == 400
        assert bad.json()["error"]["code"] == "INVALID_STATUS"


class TestSearch:
    def test_search_with_pagination(self, client):
        for city in ("Sofia", "Varna", "Sofia"):
            _create(client, city=city)

        resp = client.get("/cases", params={"city": "Sofia", "limit": 1})
        data = resp.json()["data"]
        assert len(data["cases"]) == 1
        assert data["pagination"] == {"page": 1, "limit": 1, "total": 2, "totalPages": 2}

    def test_participant_filter(self, client):
        mine = _create(client, customerId="cust-7")
        _create(client)

        data = client.get("/cases", params={"userId": "cust-7"}).json()["data"]
        assert [c["id"] for c in data["cases"]] == [mine]

    def test_invalid_sort_is_400(self, client):
        resp = client.get("/cases", params={"sortBy": "phone"})
        assert resp.status_code == 400

    @pytest.mark.parametrize("params", [{"page": "abc"}, {"limit": "ten"}, {"page": "1.5"}])
    def test_non_numeric_paging_is_invalid_input(self, client, params):
        resp = client.get("/cases", params=params)
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INVALID_INPUT"
        assert next(iter(params)) in body["error"]["message"]


class TestProviderViews:
    def test_available_and_declined_and_stats(self, client):
        open_id = _create(client)
        declined_id = _create(client)
        client.post(f"/cases/{declined_id}/decline", json={"providerId": "prov-1", "reason": "far"})

        available = client.get("/providers/prov-1/available-cases", params={"sort": "oldest"}).json()["data"]
        assert [c["id"] for c in available["cases"]] == [open_id]

        declined = client.get("/providers/prov-1/declined-cases").json()["data"]
        assert declined["count"] == 1
        assert declined["cases"][0]["declineReason"] == "far"

        stats = client.get("/providers/prov-1/stats").json()["data"]
        assert stats["available"] == 1
        assert stats["declined"] == 1

    def test_unknown_sort_is_400(self, client):
        resp = client.get("/providers/prov-1/available-cases", params={"sort": "random"})
        assert resp.status_code == 400


class TestMatching:
    def test_smart_matches_and_auto_assign(self, client, store):
        store.providers["prov-1"] = make_provider("prov-1")
        store.providers["prov-2"] = make_provider("prov-2", city="Varna")
        case_id = _create(client)

        matches = client.get(f"/cases/{case_id}/smart-matches", params={"limit": 5}).json()["data"]
        assert [m["provider"]["id"] for m in matches["matches"]] == ["prov-1", "prov-2"]
        assert "matchFactors" in matches["matches"][0]

        assigned = client.post(f"/cases/{case_id}/auto-assign").json()["data"]
        assert assigned == {"caseId": case_id, "assigned": True, "providerId": "prov-1"}

        case = client.get(f"/cases/{case_id}").json()["data"]
        assert case["autoAssigned"] is True

        conflict = client.post(f"/cases/{case_id}/auto-assign")
        assert conflict.status_code == 409

    def test_auto_assign_without_providers(self, client):
        case_id = _create(client)
        data = client.post(f"/cases/{case_id}/auto-assign").json()["data"]
        assert data == {"caseId": case_id, "assigned": False, "providerId": None}

    def test_smart_matches_limit_validated(self, client):
        case_id = _create(client)
        assert client.get(f"/cases/{case_id}/smart-matches", params={"limit": 0}).status_code == 400

    def test_smart_matches_non_numeric_limit(self, client):
        case_id = _create(client)
        resp = client.get(f"/cases/{case_id}/smart-matches", params={"limit": "many"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_INPUT"
