"""
Deadline scheduler tests
"""

from datetime import timedelta

import pytest

from arbitration_engine.appeals import AppealService
from arbitration_engine.cases import ESCALATION_WINDOWS, DisputeService
from arbitration_engine.db.session import get_db_session
from arbitration_engine.db.models import (
    AppealStatus, Arbitrator, ArbitratorTier, Assignment, AssignmentStatus, DisputeCase, DisputeStatus,
    DisputeType, ResolutionPath, SettlementStatus, VoteDecision, utcnow,
)
from arbitration_engine.errors import StateConflict
from arbitration_engine.jobs.queue import QUEUE_SETTLEMENT
from arbitration_engine.jobs.tasks import task_apply_default_resolution, task_settle_case
from arbitration_engine.scheduler import Scheduler, claim_case, run_sweep
from arbitration_engine.voting import VotingEngine


def _update_case(case_id, **values):
    with get_db_session() as db:
        db.query(DisputeCase).filter(DisputeCase.id == case_id).update(values, synchronize_session=False)


def _seat(load_case, case_id, tier):
    return next(a for a in load_case(case_id).assignments if a.tier == tier)


class TestClaims:
    def test_claim_is_exclusive_until_ttl(self, make_arbitrators, make_case):
        make_arbitrators(1)
        case_id = make_case()
        now = utcnow()

        assert claim_case(case_id, now, ttl_seconds=300)
        assert not claim_case(case_id, now, ttl_seconds=300)
        assert not claim_case(case_id, now + timedelta(seconds=200), ttl_seconds=300)
        assert claim_case(case_id, now + timedelta(seconds=301), ttl_seconds=300)


class TestAutoEscalation:
    def test_overdue_tier_two_escalates_once(self, make_arbitrators, make_case, load_case):
        """A tier-2 case past its escalation time moves to tier 3 exactly once"""
        make_arbitrators(1, ArbitratorTier.JUNIOR)
        make_arbitrators(1, ArbitratorTier.SENIOR)
        expert_id = make_arbitrators(1, ArbitratorTier.EXPERT)[0]
        case_id = make_case()

        with get_db_session() as db:
            DisputeService(db).escalate(case_id, "claimant disputes tier 1 handling", actor_id="buyer-1")
        seat = _seat(load_case, case_id, 2)
        with get_db_session() as db:
            DisputeService(db).accept_assignment(seat.id, seat.arbitrator_id)
        assert load_case(case_id).status == DisputeStatus.ARBITRATION

        now = utcnow()
        _update_case(case_id, auto_escalation_at=now - timedelta(hours=1))

        report = run_sweep(now=now)
        assert report.escalated == 1
        case = load_case(case_id)
        assert case.current_tier == 3
        assert case.status == DisputeStatus.ESCALATED
        assert _seat(load_case, case_id, 3).arbitrator_id == expert_id
        assert _seat(load_case, case_id, 2).status == AssignmentStatus.ESCALATED
        # The next escalation window runs from the sweep's clock
        assert case.auto_escalation_at == now + ESCALATION_WINDOWS[case.priority]

        # Later sweeps leave a tier-3 case alone
        report = run_sweep(now=now + timedelta(minutes=10))
        assert report.escalated == 0
        assert load_case(case_id).current_tier == 3

    def test_concurrent_sweeper_skips_claimed_case(self, make_arbitrators, make_case, load_case):
        make_arbitrators(1, ArbitratorTier.JUNIOR)
        make_arbitrators(1, ArbitratorTier.SENIOR)
        case_id = make_case()
        now = utcnow()
        _update_case(case_id, auto_escalation_at=now - timedelta(minutes=5))

        assert claim_case(case_id, now)
        report = run_sweep(now=now)
        assert report.escalated == 0
        assert report.skipped == 1
        assert load_case(case_id).current_tier == 1

    def test_unstaffable_escalation_does_not_block_seat_expiry(self, make_arbitrators, make_case, load_case):
        """A case whose escalation keeps failing still gets its overdue seat restaffed"""
        make_arbitrators(2, ArbitratorTier.JUNIOR)
        case_id = make_case()
        with get_db_session() as db:
            DisputeService(db).escalate(case_id, "claimant disputes tier 1 handling")
        tier_two = _seat(load_case, case_id, 2)

        now = utcnow() + timedelta(hours=13)
        _update_case(case_id, auto_escalation_at=now - timedelta(hours=1))

        report = run_sweep(now=now)
        assert report.escalated == 0
        assert report.errors == 1
        assert report.skipped == 0
        assert report.assignments_expired == 1

        case = load_case(case_id)
        assert case.current_tier == 2
        statuses = {a.id: a.status for a in case.assignments}
        assert statuses[tier_two.id] == AssignmentStatus.EXPIRED


class TestExpiry:
    def test_deadline_expires_case_and_queues_default(self, make_arbitrators, make_case, load_case,
                                                      offline_collaborators):
        arbitrator_id = make_arbitrators(1)[0]
        case_id = make_case()
        later = utcnow() + timedelta(days=8)

        report = run_sweep(now=later)
        assert report.expired == 1

        case = load_case(case_id)
        assert case.status == DisputeStatus.EXPIRED
        assert case.resolution_path is None
        assert all(a.status == AssignmentStatus.EXPIRED for a in case.assignments)
        with get_db_session() as db:
            assert db.get(Arbitrator, arbitrator_id).current_caseload == 0

        queued = [c.args for c in offline_collaborators.call_args_list]
        assert (task_apply_default_resolution, case_id) in queued

    def test_default_resolution_applies_once(self, make_arbitrators, make_case, load_case):
        make_arbitrators(1)
        case_id = make_case()
        run_sweep(now=utcnow() + timedelta(days=8))

        assert task_apply_default_resolution(case_id)["applied"]
        case = load_case(case_id)
        assert case.status == DisputeStatus.EXPIRED
        assert case.resolution_path == ResolutionPath.EXPIRY_DEFAULT
        assert case.resolution_ruling == VoteDecision.FAVOR_RESPONDENT
        # No settlement service configured in tests
        assert case.settlement_status == SettlementStatus.SKIPPED

        assert not task_apply_default_resolution(case_id)["applied"]

    def test_sweep_backstops_lost_default_job(self, make_arbitrators, make_case, load_case):
        """An expired case whose queued default never ran is picked up by a later sweep"""
        make_arbitrators(1)
        case_id = make_case()
        later = utcnow() + timedelta(days=8)
        run_sweep(now=later)

        report = run_sweep(now=later + timedelta(minutes=10))
        assert report.default_resolutions == 1
        assert load_case(case_id).resolution_path == ResolutionPath.EXPIRY_DEFAULT


class TestAssignmentTimeouts:
    def test_unanswered_seat_is_restaffed(self, make_arbitrators, make_case, load_case):
        """A seat nobody answered within 24h expires and a different arbitrator takes it"""
        make_arbitrators(2)
        case_id = make_case()
        first = _seat(load_case, case_id, 1)

        report = run_sweep(now=utcnow() + timedelta(hours=25))
        assert report.assignments_expired == 1

        case = load_case(case_id)
        assert case.status == DisputeStatus.OPEN
        statuses = {a.arbitrator_id: a.status for a in case.assignments}
        assert statuses[first.arbitrator_id] == AssignmentStatus.EXPIRED
        replacements = [a for a in case.assignments if a.status == AssignmentStatus.ASSIGNED]
        assert len(replacements) == 1
        assert replacements[0].arbitrator_id != first.arbitrator_id

        with get_db_session() as db:
            assert db.get(Arbitrator, first.arbitrator_id).current_caseload == 0

    def test_expired_last_seat_completes_the_vote(self, make_arbitrators, make_case, load_case):
        """When the only unrevealed seat times out, the revealed panel decides"""
        make_arbitrators(3, ArbitratorTier.SENIOR)
        case_id = make_case(amount=20000)
        seats = [(a.id, a.arbitrator_id) for a in load_case(case_id).assignments]
        for assignment_id, arbitrator_id in seats:
            with get_db_session() as db:
                DisputeService(db).accept_assignment(assignment_id, arbitrator_id)
        assert load_case(case_id).status == DisputeStatus.VOTING

        for _, arbitrator_id in seats[:2]:
            with get_db_session() as db:
                VotingEngine(db).submit_vote(
                    case_id, arbitrator_id, VoteDecision.FAVOR_CLAIMANT, "tracking shows no delivery", "n1"
                )
            with get_db_session() as db:
                VotingEngine(db).reveal_vote(case_id, arbitrator_id, "n1")
        assert load_case(case_id).status == DisputeStatus.VOTING

        now = utcnow()
        with get_db_session() as db:
            db.query(Assignment).filter(Assignment.id == seats[2][0]).update(
                {Assignment.deadline: now - timedelta(hours=1)}, synchronize_session=False
            )

        report = run_sweep(now=now)
        assert report.assignments_expired == 1

        case = load_case(case_id)
        assert case.status == DisputeStatus.RESOLVED
        assert case.resolution_path == ResolutionPath.VOTE_TALLY
        assert case.resolution_ruling == VoteDecision.FAVOR_CLAIMANT
        assert case.voting_results["vote_count"] == 2
        statuses = {a.id: a.status for a in case.assignments}
        assert statuses[seats[2][0]] == AssignmentStatus.EXPIRED
        assert statuses[seats[0][0]] == AssignmentStatus.COMPLETED


class TestAppealDeadlines:
    def _urgent_resolved_case(self, make_arbitrators, make_case):
        make_arbitrators(3, ArbitratorTier.EXPERT)
        case_id = make_case(dispute_type=DisputeType.FRAUD_CLAIM)
        with get_db_session() as db:
            DisputeService(db).resolve(
                case_id, "Seller refunded", "admin-1", settle=False, ruling=VoteDecision.FAVOR_CLAIMANT
            )
        return case_id

    def test_appeal_after_creation_deadline_survives_sweep(self, make_arbitrators, make_case, load_case):
        """An appeal filed inside the window outlives the 24h deadline the case was opened with"""
        case_id = self._urgent_resolved_case(make_arbitrators, make_case)
        filed = load_case(case_id).deadline + timedelta(hours=1)
        with get_db_session() as db:
            AppealService(db).file_appeal(case_id, "seller-1", "Refund evidence was forged", now=filed)

        report = run_sweep(now=filed + timedelta(minutes=5))
        assert report.expired == 0
        assert report.appeals_lapsed == 0

        case = load_case(case_id)
        assert case.status == DisputeStatus.APPEALED
        assert case.deadline > filed
        assert [a.status for a in case.appeals] == [AppealStatus.PENDING]

    def test_unreviewed_appeal_lapses_and_ruling_stands(self, make_arbitrators, make_case, load_case):
        case_id = self._urgent_resolved_case(make_arbitrators, make_case)
        filed = utcnow() + timedelta(hours=2)
        with get_db_session() as db:
            AppealService(db).file_appeal(case_id, "seller-1", "Refund evidence was forged", now=filed)

        report = run_sweep(now=filed + timedelta(hours=25))
        assert report.appeals_lapsed == 1
        assert report.expired == 0

        case = load_case(case_id)
        assert case.status == DisputeStatus.RESOLVED
        assert case.resolution_path == ResolutionPath.ADMINISTRATIVE
        assert case.resolution_ruling == VoteDecision.FAVOR_CLAIMANT
        assert [a.status for a in case.appeals] == [AppealStatus.REJECTED]


class TestSettlementAndClosure:
    def _resolved_case(self, make_case, settle=False):
        case_id = make_case()
        with get_db_session() as db:
            DisputeService(db).resolve(case_id, "Refund agreed by both parties", "admin-1", settle=settle)
        return case_id

    def test_pending_settlement_requeued(self, make_arbitrators, make_case, offline_collaborators):
        make_arbitrators(1)
        case_id = self._resolved_case(make_case)
        now = utcnow()
        _update_case(
            case_id,
            settlement_status=SettlementStatus.PENDING_RETRY,
            settlement_last_attempt_at=now - timedelta(hours=1),
        )

        report = run_sweep(now=now)
        assert report.settlements_requeued == 1
        call = offline_collaborators.call_args
        assert call.args == (task_settle_case, case_id)
        assert call.kwargs["queue_name"] == QUEUE_SETTLEMENT

    def test_recent_attempt_not_requeued(self, make_arbitrators, make_case):
        """A retry still inside the queue's backoff window is left to the queue"""
        make_arbitrators(1)
        case_id = self._resolved_case(make_case)
        now = utcnow()
        _update_case(
            case_id,
            settlement_status=SettlementStatus.PENDING_RETRY,
            settlement_last_attempt_at=now - timedelta(seconds=60),
        )
        assert run_sweep(now=now).settlements_requeued == 0

    def test_resolved_case_closes_after_appeal_window(self, make_arbitrators, make_case, load_case):
        make_arbitrators(1)
        case_id = self._resolved_case(make_case)

        assert run_sweep(now=utcnow() + timedelta(days=3)).closed == 0
        assert load_case(case_id).status == DisputeStatus.RESOLVED

        assert run_sweep(now=utcnow() + timedelta(days=8)).closed == 1
        assert load_case(case_id).status == DisputeStatus.CLOSED

    def test_one_failing_case_does_not_stop_the_batch(self, make_arbitrators, make_case, load_case,
                                                      monkeypatch):
        make_arbitrators(2)
        broken = self._resolved_case(make_case)
        healthy = self._resolved_case(make_case)

        real_close_case = DisputeService.close_case

        def close_case(self, case_id, now=None, actor_id=None):
            if case_id == broken:
                raise StateConflict("simulated conflict")
            return real_close_case(self, case_id, now, actor_id)

        monkeypatch.setattr(DisputeService, "close_case", close_case)

        report = Scheduler(now=utcnow() + timedelta(days=8)).run()
        assert report.closed == 1
        assert report.errors == 1
        assert load_case(healthy).status == DisputeStatus.CLOSED
        assert load_case(broken).status == DisputeStatus.RESOLVED
