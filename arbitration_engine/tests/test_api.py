"""
Tests for the HTTP API
======================

Status codes and error envelopes for the main dispute, voting and arbitrator
routes.
"""

import pytest
from fastapi.testclient import TestClient

from arbitration_engine.api import app
from arbitration_engine.db.models import ArbitratorTier


@pytest.fixture
def client(sqlalchemy_db):
    """Create test client"""
    return TestClient(app)


def _open_dispute(client, **overrides):
    body = {
        "type": "payment_dispute",
        "disputed_amount": 500,
        "initiated_by": "buyer-1",
        "respondent_id": "seller-1",
        "title": "Goods never arrived",
    }
    body.update(overrides)
    return client.post("/api/v1/disputes", json=body)


class TestHealthEndpoint:
    def test_health_returns_200(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"


class TestDisputeRoutes:
    def test_create_returns_201(self, client, make_arbitrators):
        make_arbitrators(1)
        response = _open_dispute(client)
        assert response.status_code == 201

        data = response.json()
        assert data["status"] == "open"
        assert data["priority"] == "medium"
        assert data["current_tier"] == 1
        assert data["case_number"].startswith("DSP-")
        assert len(data["assignments"]) == 1

    @pytest.mark.parametrize("overrides", [
        {"disputed_amount": -5},
        {"type": "not_a_type"},
        {"title": ""},
    ])
    def test_invalid_body_is_400(self, client, overrides):
        response = _open_dispute(client, **overrides)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_no_arbitrators_is_409(self, client):
        response = _open_dispute(client)
        assert response.status_code == 409
        assert response.json()["error"] == "no_available_arbitrator"

    def test_unknown_case_is_404(self, client):
        response = client.get("/api/v1/disputes/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_list_filters_by_status(self, client, make_arbitrators):
        make_arbitrators(2)
        _open_dispute(client)
        _open_dispute(client, initiated_by="buyer-2")

        response = client.get("/api/v1/disputes", params={"status": "open", "initiated_by": "buyer-2"})
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["initiated_by"] == "buyer-2"

    def test_escalating_top_tier_is_409(self, client, make_arbitrators):
        make_arbitrators(1, ArbitratorTier.JUNIOR)
        make_arbitrators(1, ArbitratorTier.SENIOR)
        make_arbitrators(1, ArbitratorTier.EXPERT)
        case_id = _open_dispute(client).json()["id"]

        for _ in range(2):
            response = client.post(f"/api/v1/disputes/{case_id}/escalate", json={"reason": "review"})
            assert response.status_code == 200

        response = client.post(f"/api/v1/disputes/{case_id}/escalate", json={"reason": "review"})
        assert response.status_code == 409
        assert response.json()["error"] == "tier_limit_exceeded"

    def test_timeline(self, client, make_arbitrators):
        make_arbitrators(1)
        case_id = _open_dispute(client).json()["id"]
        events = client.get(f"/api/v1/disputes/{case_id}/timeline").json()
        kinds = {e["event_type"] for e in events}
        assert {"dispute_created", "arbitrator_assigned"} <= kinds


class TestVotingRoutes:
    def test_vote_stays_sealed_until_reveal(self, client, make_arbitrators):
        """Decision and reasoning are hidden from every response before reveal"""
        make_arbitrators(3, ArbitratorTier.SENIOR)
        case = _open_dispute(client, disputed_amount=20000).json()
        case_id = case["id"]
        for seat in case["assignments"]:
            response = client.post(
                f"/api/v1/assignments/{seat['id']}/accept", json={"arbitrator_id": seat["arbitrator_id"]}
            )
            assert response.status_code == 200

        voter = case["assignments"][0]["arbitrator_id"]
        response = client.post(f"/api/v1/disputes/{case_id}/votes", json={
            "arbitrator_id": voter,
            "decision": "favor_claimant",
            "reasoning": "evidence strong",
            "nonce": "abc",
        })
        assert response.status_code == 201
        assert response.json()["decision"] is None
        assert response.json()["reasoning"] is None

        listed = client.get(f"/api/v1/disputes/{case_id}/votes").json()
        assert listed[0]["decision"] is None

        response = client.post(f"/api/v1/disputes/{case_id}/votes/reveal",
                               json={"arbitrator_id": voter, "nonce": "wrong"})
        assert response.status_code == 422
        assert response.json()["error"] == "invalid_reveal"

        response = client.post(f"/api/v1/disputes/{case_id}/votes/reveal",
                               json={"arbitrator_id": voter, "nonce": "abc"})
        assert response.status_code == 200
        assert response.json()["decision"] == "favor_claimant"

        tally = client.get(f"/api/v1/disputes/{case_id}/tally").json()
        assert tally["decision"] == "favor_claimant"
        assert tally["vote_count"] == 1

    def test_duplicate_vote_is_409(self, client, make_arbitrators):
        make_arbitrators(3, ArbitratorTier.SENIOR)
        case = _open_dispute(client, disputed_amount=20000).json()
        for seat in case["assignments"]:
            client.post(f"/api/v1/assignments/{seat['id']}/accept", json={"arbitrator_id": seat["arbitrator_id"]})

        body = {
            "arbitrator_id": case["assignments"][0]["arbitrator_id"],
            "decision": "favor_respondent",
            "reasoning": "seller shipped",
            "nonce": "n1",
        }
        assert client.post(f"/api/v1/disputes/{case['id']}/votes", json=body).status_code == 201
        response = client.post(f"/api/v1/disputes/{case['id']}/votes", json=body)
        assert response.status_code == 409
        assert response.json()["error"] == "duplicate_vote"


class TestArbitratorRoutes:
    def test_register_and_fetch(self, client):
        response = client.post("/api/v1/arbitrators", json={
            "user_id": "user-42",
            "tier": "expert",
            "specializations": ["fraud_claim"],
        })
        assert response.status_code == 201
        data = response.json()
        assert data["max_caseload"] == 8
        assert data["specializations"] == ["fraud_claim"]

        fetched = client.get(f"/api/v1/arbitrators/{data['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["user_id"] == "user-42"

    def test_metrics(self, client, make_arbitrators):
        arbitrator_id = make_arbitrators(1)[0]
        data = client.get(f"/api/v1/arbitrators/{arbitrator_id}/metrics").json()
        assert data["tier"] == "junior"
        assert data["current_caseload"] == 0


class TestOperationsRoutes:
    def test_sweep_reports_counts(self, client):
        response = client.post("/api/v1/scheduler/sweep")
        assert response.status_code == 200
        assert response.json()["expired"] == 0
