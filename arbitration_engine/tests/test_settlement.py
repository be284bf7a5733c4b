"""
Settlement executor tests
"""

import httpx
import pytest

from arbitration_engine import settlement
from arbitration_engine.appeals import AppealService
from arbitration_engine.cases import DisputeService
from arbitration_engine.db.session import get_db_session
from arbitration_engine.db.models import (
    ArbitratorTier, DisputeCase, DisputeStatus, SettlementStatus, TimelineEventType, VoteDecision,
)
from arbitration_engine.errors import SettlementError
from arbitration_engine.jobs.queue import QUEUE_SETTLEMENT
from arbitration_engine.jobs.tasks import task_settle_case
from arbitration_engine.settlement import ResolutionExecutor, SettlementClient
from arbitration_engine.timeline import list_events


class FakeClient:
    enabled = True

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def execute_resolution(self, case, resolution):
        self.calls.append((case, resolution))
        if self.fail:
            raise SettlementError("ledger unavailable", {"case_id": case["id"]})
        return "0xfeed"


def _resolve(case_id):
    with get_db_session() as db:
        DisputeService(db).resolve(
            case_id, "Refund the buyer", "admin-1",
            ruling=VoteDecision.FAVOR_CLAIMANT, compensation_amount=250, compensation_recipient="buyer-1",
        )


class TestResolutionExecutor:
    def test_failure_keeps_resolution_and_queues_retry(self, make_arbitrators, make_case, load_case,
                                                       offline_collaborators):
        """The ruling stays committed; settlement is flagged for retry"""
        make_arbitrators(1)
        case_id = make_case()
        client = FakeClient(fail=True)
        settlement.set_executor(ResolutionExecutor(client))

        _resolve(case_id)

        case = load_case(case_id)
        assert case.status == DisputeStatus.RESOLVED
        assert case.settlement_status == SettlementStatus.PENDING_RETRY
        assert case.settlement_attempts == 1
        assert case.settlement_error == "ledger unavailable"

        call = offline_collaborators.call_args
        assert call.args == (task_settle_case, case_id)
        assert call.kwargs["queue_name"] == QUEUE_SETTLEMENT

        _, payload = client.calls[0]
        assert payload["ruling"] == "favor_claimant"
        assert payload["amount"] == 250
        assert payload["recipient"] == "buyer-1"

    def test_retry_task_settles(self, make_arbitrators, make_case, load_case):
        make_arbitrators(1)
        case_id = make_case()
        settlement.set_executor(ResolutionExecutor(FakeClient(fail=True)))
        _resolve(case_id)

        settlement.set_executor(ResolutionExecutor(FakeClient()))
        result = task_settle_case(case_id)
        assert result["reference"] == "0xfeed"

        case = load_case(case_id)
        assert case.settlement_status == SettlementStatus.SETTLED
        assert case.settlement_reference == "0xfeed"
        assert case.settlement_attempts == 2

        with get_db_session() as db:
            kinds = [e.event_type for e in list_events(db, case_id)]
        assert TimelineEventType.SETTLEMENT_FAILED in kinds
        assert TimelineEventType.SETTLEMENT_EXECUTED in kinds

        # Settled cases are not settled twice
        assert task_settle_case(case_id)["reference"] is None

    def test_retry_task_raises_for_rq(self, make_arbitrators, make_case):
        """A failed retry raises so the queue's retry policy applies"""
        make_arbitrators(1)
        case_id = make_case()
        settlement.set_executor(ResolutionExecutor(FakeClient(fail=True)))
        _resolve(case_id)

        with pytest.raises(SettlementError):
            task_settle_case(case_id)

    def test_no_service_configured_skips(self, make_arbitrators, make_case, load_case):
        make_arbitrators(1)
        case_id = make_case()
        _resolve(case_id)
        assert load_case(case_id).settlement_status == SettlementStatus.SKIPPED


class TestSettlementUnderAppeal:
    """A ruling under appeal is held; an overturned ruling is never settled"""

    @pytest.fixture
    def pending_case(self, make_arbitrators, make_case, load_case):
        make_arbitrators(1, ArbitratorTier.JUNIOR)
        make_arbitrators(1, ArbitratorTier.SENIOR)
        case_id = make_case()
        settlement.set_executor(ResolutionExecutor(FakeClient(fail=True)))
        _resolve(case_id)
        assert load_case(case_id).settlement_status == SettlementStatus.PENDING_RETRY
        return case_id

    def _file(self, case_id):
        with get_db_session() as db:
            return AppealService(db).file_appeal(case_id, "seller-1", "Parcel was signed for").id

    def _review(self, appeal_id, approve):
        with get_db_session() as db:
            AppealService(db).review_appeal(appeal_id, "admin-2", approve)

    def test_filing_holds_settlement(self, pending_case, load_case):
        client = FakeClient()
        settlement.set_executor(ResolutionExecutor(client))
        self._file(pending_case)

        assert load_case(pending_case).settlement_status == SettlementStatus.HELD
        assert task_settle_case(pending_case)["reference"] is None
        assert client.calls == []

    def test_approved_appeal_drops_pending_settlement(self, pending_case, load_case):
        client = FakeClient()
        settlement.set_executor(ResolutionExecutor(client))
        self._review(self._file(pending_case), approve=True)

        case = load_case(pending_case)
        assert case.status == DisputeStatus.ARBITRATION
        assert case.settlement_status == SettlementStatus.NOT_REQUESTED

        assert task_settle_case(pending_case)["reference"] is None
        assert client.calls == []

    def test_rejected_appeal_settles_original_ruling(self, pending_case, load_case):
        client = FakeClient()
        settlement.set_executor(ResolutionExecutor(client))
        self._review(self._file(pending_case), approve=False)

        case = load_case(pending_case)
        assert case.status == DisputeStatus.RESOLVED
        assert case.settlement_status == SettlementStatus.SETTLED
        _, payload = client.calls[0]
        assert payload["ruling"] == "favor_claimant"
        assert payload["amount"] == 250

    def test_executor_refuses_case_without_ruling(self, pending_case):
        """A stale retry flag on a re-opened case does not reach the ledger"""
        self._review(self._file(pending_case), approve=True)
        with get_db_session() as db:
            db.query(DisputeCase).filter(DisputeCase.id == pending_case).update(
                {DisputeCase.settlement_status: SettlementStatus.PENDING_RETRY}, synchronize_session=False
            )

        client = FakeClient()
        assert ResolutionExecutor(client).execute(pending_case) is None
        assert client.calls == []


class TestSettlementClient:
    def _response(self, status_code, **kwargs):
        return httpx.Response(status_code, request=httpx.Request("POST", "http://ledger/resolutions"), **kwargs)

    def test_posts_with_idempotency_key(self, monkeypatch):
        captured = {}

        def fake_post(url, json=None, headers=None, timeout=None):
            captured.update(url=url, json=json, headers=headers)
            return self._response(200, json={"transaction_hash": "0xabc"})

        monkeypatch.setattr(httpx, "post", fake_post)
        client = SettlementClient(base_url="http://ledger/", timeout=2)
        reference = client.execute_resolution(
            {"id": "case-1", "case_number": "DSP-2026-000001", "escrow_id": "escrow-1", "cycle": 1},
            {"ruling": "favor_claimant"},
        )

        assert reference == "0xabc"
        assert captured["url"] == "http://ledger/resolutions"
        assert captured["headers"]["Idempotency-Key"] == "case-1:1"
        assert captured["json"]["dispute_id"] == "case-1"
        assert captured["json"]["ruling"] == "favor_claimant"

    @pytest.mark.parametrize("reply", [
        "timeout",
        "server_error",
        "no_reference",
    ])
    def test_failures_become_settlement_errors(self, monkeypatch, reply):
        def fake_post(url, json=None, headers=None, timeout=None):
            if reply == "timeout":
                raise httpx.ReadTimeout("slow ledger")
            if reply == "server_error":
                return self._response(502, text="bad gateway")
            return self._response(200, json={"status": "ok"})

        monkeypatch.setattr(httpx, "post", fake_post)
        client = SettlementClient(base_url="http://ledger")
        with pytest.raises(SettlementError):
            client.execute_resolution({"id": "case-1", "case_number": "DSP-2026-000001"}, {})
