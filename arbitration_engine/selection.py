"""
Arbitrator Selection Engine
===========================

Scores and picks arbitrators for one tier of a case.

Pipeline:
1. Filter: active, below max caseload, tier at or above the required rank,
   specialization match (generalists always match)
2. Fallback: if the pool is smaller than the panel, widen one rank down (once)
3. Score: weighted sum of success rate, experience, availability, tier,
   plus flat specialization and recent-activity bonuses
4. Reserve caseload atomically and create the assignments
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from .db.models import (
    Arbitrator, ArbitratorStatus, ArbitratorTier, Assignment, AssignmentStatus,
    DisputeCase, DisputePriority, DisputeType, TimelineEventType, utcnow
)
from .db.session import after_commit
from .errors import NoAvailableArbitrator
from .notifications import get_notifier
from .registry import normalized_success_rate, reserve_capacity
from .timeline import record_event

logger = logging.getLogger(__name__)

# Scoring weights
WEIGHT_SUCCESS = 0.4
WEIGHT_EXPERIENCE = 0.3
WEIGHT_AVAILABILITY = 0.2
WEIGHT_TIER = 0.1
SPECIALIZATION_BONUS = 0.1
RECENT_ACTIVITY_BONUS = 0.05
RECENT_ACTIVITY_WINDOW = timedelta(days=7)
EXPERIENCE_CAP = 100  # cases after which experience stops counting

TIER_BONUS = {
    ArbitratorTier.MASTER: 1.0,
    ArbitratorTier.EXPERT: 0.8,
    ArbitratorTier.SENIOR: 0.6,
    ArbitratorTier.JUNIOR: 0.4,
}

# Hours an arbitrator has to respond, per case tier
RESPONSE_HOURS_BY_TIER = {1: 24, 2: 12, 3: 6}


@dataclass
class ScoredArbitrator:
    arbitrator: Arbitrator
    score: float


def required_arbitrator_count(case: DisputeCase) -> int:
    amount = float(case.disputed_amount or 0)
    if amount > 100000:
        return 5
    if amount > 10000:
        return 3
    if case.priority == DisputePriority.URGENT or case.type == DisputeType.FRAUD_CLAIM:
        return 3
    return 1


def base_tier(case: DisputeCase) -> ArbitratorTier:
    """Minimum arbitrator rank a case needs at tier 1."""
    amount = float(case.disputed_amount or 0)
    if amount > 50000 or case.type == DisputeType.FRAUD_CLAIM:
        return ArbitratorTier.EXPERT
    if amount > 10000 or case.priority == DisputePriority.HIGH:
        return ArbitratorTier.SENIOR
    return ArbitratorTier.JUNIOR


def required_tier(case: DisputeCase, tier: int) -> ArbitratorTier:
    """Each escalation tier above 1 raises the minimum rank by one step."""
    return ArbitratorTier.from_rank(base_tier(case).rank + (tier - 1))


def response_deadline_hours(tier: int) -> int:
    return RESPONSE_HOURS_BY_TIER.get(tier, 24)


class SelectionEngine:
    """Selects and assigns arbitrators for a case tier."""

    def __init__(self, db: Session):
        self.db = db

    def available(
        self,
        min_tier: ArbitratorTier,
        dispute_type: DisputeType,
        exclude_ids: Optional[Set[str]] = None,
    ) -> List[Arbitrator]:
        arbitrators = (
            self.db.query(Arbitrator)
            .filter(
                Arbitrator.status == ArbitratorStatus.ACTIVE,
                Arbitrator.current_caseload < Arbitrator.max_caseload,
                Arbitrator.tier.in_(min_tier.at_or_above()),
            )
            .all()
        )
        exclude_ids = exclude_ids or set()
        return [
            a for a in arbitrators
            if a.id not in exclude_ids and self._matches_specialization(a, dispute_type)
        ]

    @staticmethod
    def _matches_specialization(arbitrator: Arbitrator, dispute_type: DisputeType) -> bool:
        if dispute_type == DisputeType.OTHER:
            return True
        specializations = arbitrator.specializations or []
        return not specializations or dispute_type.value in specializations

    def score(self, arbitrator: Arbitrator, case: DisputeCase, now=None) -> float:
        now = now or utcnow()
        score = normalized_success_rate(arbitrator) * WEIGHT_SUCCESS
        score += min((arbitrator.total_cases or 0) / EXPERIENCE_CAP, 1.0) * WEIGHT_EXPERIENCE
        if arbitrator.max_caseload:
            score += (1 - arbitrator.current_caseload / arbitrator.max_caseload) * WEIGHT_AVAILABILITY
        score += TIER_BONUS[arbitrator.tier] * WEIGHT_TIER

        if case.type.value in (arbitrator.specializations or []):
            score += SPECIALIZATION_BONUS
        if arbitrator.last_active_at and now - arbitrator.last_active_at < RECENT_ACTIVITY_WINDOW:
            score += RECENT_ACTIVITY_BONUS
        return score

    def rank(self, arbitrators: Iterable[Arbitrator], case: DisputeCase) -> List[ScoredArbitrator]:
        now = utcnow()
        scored = [ScoredArbitrator(a, self.score(a, case, now)) for a in arbitrators]
        # id as tie-breaker keeps the ordering stable across runs
        scored.sort(key=lambda s: (-s.score, s.arbitrator.id))
        return scored

    def select_arbitrators(
        self,
        case: DisputeCase,
        tier: int,
        count: Optional[int] = None,
        exclude_ids: Optional[Set[str]] = None,
    ) -> List[Arbitrator]:
        """
        Pick and reserve up to ``count`` arbitrators for ``tier``.

        Raises:
            NoAvailableArbitrator: pool empty even after the lower-rank fallback
        """
        needed = count or required_arbitrator_count(case)
        min_tier = required_tier(case, tier)
        pool = self.available(min_tier, case.type, exclude_ids)

        if len(pool) < needed and min_tier != ArbitratorTier.JUNIOR:
            fallback_tier = ArbitratorTier.from_rank(min_tier.rank - 1)
            logger.warning(
                "Insufficient %s+ arbitrators for case %s (%d/%d); widening to %s",
                min_tier.value, case.case_number, len(pool), needed, fallback_tier.value,
            )
            seen = {a.id for a in pool}
            pool.extend(
                a for a in self.available(fallback_tier, case.type, exclude_ids)
                if a.id not in seen
            )

        if not pool:
            raise NoAvailableArbitrator(
                f"No available arbitrator for case {case.case_number} at tier {tier}",
                {"case_id": case.id, "tier": tier, "required_tier": min_tier.value},
            )

        selected: List[Arbitrator] = []
        for candidate in self.rank(pool, case):
            if len(selected) >= needed:
                break
            if reserve_capacity(self.db, candidate.arbitrator.id):
                selected.append(candidate.arbitrator)
            else:
                logger.info("Arbitrator %s filled up concurrently; skipping", candidate.arbitrator.id)

        if not selected:
            raise NoAvailableArbitrator(
                f"All candidate arbitrators for case {case.case_number} filled up",
                {"case_id": case.id, "tier": tier},
            )

        if len(selected) < needed:
            logger.warning(
                "Case %s tier %d staffed with %d of %d arbitrators",
                case.case_number, tier, len(selected), needed,
            )
        logger.info("Selected %d arbitrators for case %s tier %d", len(selected), case.case_number, tier)
        return selected

    def assign(
        self,
        case: DisputeCase,
        tier: int,
        count: Optional[int] = None,
        exclude_ids: Optional[Set[str]] = None,
    ) -> List[Assignment]:
        """Select arbitrators for ``tier`` and create their assignments."""
        arbitrators = self.select_arbitrators(case, tier, count=count, exclude_ids=exclude_ids)
        now = utcnow()
        deadline = now + timedelta(hours=response_deadline_hours(tier))
        notifier = get_notifier()
        case_snapshot = {
            "case_id": case.id,
            "case_number": case.case_number,
            "type": case.type.value,
            "priority": case.priority.value,
            "tier": tier,
            "deadline": deadline.isoformat(),
        }

        assignments = []
        for arbitrator in arbitrators:
            assignment = Assignment(
                case_id=case.id,
                arbitrator_id=arbitrator.id,
                tier=tier,
                status=AssignmentStatus.ASSIGNED,
                assigned_at=now,
                deadline=deadline,
            )
            self.db.add(assignment)
            case.assignments.append(assignment)
            assignments.append(assignment)

            record_event(
                self.db, case.id, TimelineEventType.ARBITRATOR_ASSIGNED,
                f"Arbitrator assigned at tier {tier}",
                payload={"arbitrator_id": arbitrator.id, "tier": tier, "deadline": deadline},
            )
            after_commit(
                self.db,
                lambda arbitrator_id=arbitrator.id: notifier.notify_arbitrator_assignment(
                    arbitrator_id, case_snapshot
                ),
            )

        self.db.flush()
        return assignments
