"""
Arbitrator selection and registry tests
"""

import pytest

from arbitration_engine.db.session import get_db_session
from arbitration_engine.db.models import (
    Arbitrator, ArbitratorStatus, ArbitratorTier, DisputeCase, DisputePriority, DisputeType, utcnow
)
from arbitration_engine.errors import NoAvailableArbitrator, StateConflict
from arbitration_engine.registry import (
    ArbitratorRegistry, ReputationOutcome, reserve_capacity, update_reputation
)
from arbitration_engine.selection import (
    SelectionEngine, base_tier, required_arbitrator_count, required_tier
)


def _case(amount, dispute_type=DisputeType.PAYMENT_DISPUTE, priority=DisputePriority.MEDIUM):
    return DisputeCase(
        case_number="DSP-TEST-000001",
        type=dispute_type,
        priority=priority,
        disputed_amount=amount,
    )


class TestPanelRules:
    def test_required_count_by_amount(self):
        """Panel size grows with the disputed amount"""
        assert required_arbitrator_count(_case(150000)) == 5
        assert required_arbitrator_count(_case(20000)) == 3
        assert required_arbitrator_count(_case(500)) == 1

    def test_fraud_and_urgent_get_a_panel(self):
        """Small fraud or urgent cases still get three arbitrators"""
        assert required_arbitrator_count(_case(500, DisputeType.FRAUD_CLAIM)) == 3
        assert required_arbitrator_count(_case(500, priority=DisputePriority.URGENT)) == 3

    def test_required_rank_rises_with_tier(self):
        """Each tier above 1 asks for one rank more, capped at master"""
        small = _case(500)
        assert base_tier(small) == ArbitratorTier.JUNIOR
        assert required_tier(small, 2) == ArbitratorTier.SENIOR
        assert required_tier(small, 3) == ArbitratorTier.EXPERT

        fraud = _case(500, DisputeType.FRAUD_CLAIM)
        assert base_tier(fraud) == ArbitratorTier.EXPERT
        assert required_tier(fraud, 3) == ArbitratorTier.MASTER


class TestSelectArbitrators:
    def test_returns_min_of_available_and_required(self, make_arbitrators):
        """Two eligible seniors for a three-seat panel yields both, each reserved once"""
        ids = make_arbitrators(2, ArbitratorTier.SENIOR)

        with get_db_session() as db:
            case = _case(20000)
            selected = SelectionEngine(db).select_arbitrators(case, 1)
            assert sorted(a.id for a in selected) == sorted(ids)

        with get_db_session() as db:
            for arbitrator in db.query(Arbitrator).all():
                assert arbitrator.current_caseload == 1

    def test_fills_panel_exactly(self, make_arbitrators):
        """With more candidates than seats, exactly the panel size is reserved"""
        make_arbitrators(5, ArbitratorTier.SENIOR)

        with get_db_session() as db:
            selected = SelectionEngine(db).select_arbitrators(_case(20000), 1)
            assert len({a.id for a in selected}) == 3

        with get_db_session() as db:
            loads = sorted(a.current_caseload for a in db.query(Arbitrator).all())
            assert loads == [0, 0, 1, 1, 1]

    def test_falls_back_one_rank(self, make_arbitrators):
        """A senior-level case with only juniors around widens to juniors"""
        junior_ids = make_arbitrators(3, ArbitratorTier.JUNIOR)

        with get_db_session() as db:
            selected = SelectionEngine(db).select_arbitrators(_case(20000), 1)
            assert {a.id for a in selected} == set(junior_ids)

    def test_fallback_only_widens_once(self, make_arbitrators):
        """An expert-level case never reaches juniors"""
        make_arbitrators(3, ArbitratorTier.JUNIOR)

        with get_db_session() as db:
            with pytest.raises(NoAvailableArbitrator):
                SelectionEngine(db).select_arbitrators(_case(60000), 1)

    def test_skips_inactive_full_and_mismatched(self, make_arbitrators):
        """Inactive, full, and wrongly specialised arbitrators are never picked"""
        inactive = make_arbitrators(1, status=ArbitratorStatus.INACTIVE)[0]
        full = make_arbitrators(1, max_caseload=1)[0]
        specialist = make_arbitrators(1, specializations=[DisputeType.QUALITY_DISPUTE])[0]
        generalist = make_arbitrators(1)[0]

        with get_db_session() as db:
            assert reserve_capacity(db, full)
            assert not reserve_capacity(db, full)

        with get_db_session() as db:
            pool = SelectionEngine(db).available(ArbitratorTier.JUNIOR, DisputeType.PAYMENT_DISPUTE)
            ids = {a.id for a in pool}
            assert generalist in ids
            assert inactive not in ids
            assert full not in ids
            assert specialist not in ids

    def test_specialist_outranks_generalist(self, make_arbitrators):
        """The specialization bonus decides between otherwise equal arbitrators"""
        generalist = make_arbitrators(1)[0]
        specialist = make_arbitrators(1, specializations=[DisputeType.PAYMENT_DISPUTE])[0]

        with get_db_session() as db:
            selected = SelectionEngine(db).select_arbitrators(_case(500), 1)
            assert [a.id for a in selected] == [specialist]
            assert generalist != specialist


class TestRegistry:
    def test_duplicate_user_rejected(self, make_arbitrators):
        make_arbitrators(1)
        with pytest.raises(StateConflict):
            with get_db_session() as db:
                ArbitratorRegistry(db).register(user_id="user-junior-1")

    def test_promote_raises_caseload_and_stops_at_master(self, make_arbitrators):
        """Promotion steps one rank and grants the new tier's caseload"""
        arbitrator_id = make_arbitrators(1, ArbitratorTier.EXPERT)[0]

        with get_db_session() as db:
            arbitrator = ArbitratorRegistry(db).promote(arbitrator_id)
            assert arbitrator.tier == ArbitratorTier.MASTER
            assert arbitrator.max_caseload == 12

        with pytest.raises(StateConflict):
            with get_db_session() as db:
                ArbitratorRegistry(db).promote(arbitrator_id)

    def test_reputation_is_clamped(self, make_arbitrators):
        """Reputation never leaves [0, 5] however many outcomes are applied"""
        top = make_arbitrators(1, reputation_score=4.95)[0]
        bottom = make_arbitrators(1, reputation_score=0.05)[0]

        with get_db_session() as db:
            for _ in range(3):
                update_reputation(db, top, ReputationOutcome.POSITIVE)
                update_reputation(db, bottom, ReputationOutcome.NEGATIVE)

        with get_db_session() as db:
            registry = ArbitratorRegistry(db)
            high, low = registry.get(top), registry.get(bottom)
            assert high.reputation_score == 5.0
            assert low.reputation_score == 0.0
            assert high.total_cases == 3 and high.resolved_cases == 3
            assert low.total_cases == 3 and low.resolved_cases == 0
            assert high.last_active_at <= utcnow()

    def test_metrics(self, make_arbitrators):
        arbitrator_id = make_arbitrators(1, ArbitratorTier.SENIOR)[0]
        with get_db_session() as db:
            metrics = ArbitratorRegistry(db).metrics(arbitrator_id)
        assert metrics["tier"] == "senior"
        assert metrics["max_caseload"] == 5
        assert metrics["success_rate"] == 0
