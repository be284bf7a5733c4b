"""
Arbitrator Registry
===================

Tracks arbitrator identity, tier, specialization, reputation and caseload.

All reputation mutation goes through ``update_reputation``; it is called only
from the decision-completion and tally-completion paths of the case service.
Caseload is reserved and released with conditional SQL updates so two cases
racing for the last free slot cannot both take it.
"""

import enum
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .config import get_settings
from .db.models import (
    Arbitrator, ArbitratorStatus, ArbitratorTier, Assignment, DisputeType, utcnow
)
from .errors import NotFoundError, StateConflict, ValidationError

logger = logging.getLogger(__name__)


class ReputationOutcome(str, enum.Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


# Concurrent case limit granted with each tier
MAX_CASELOAD_BY_TIER = {
    ArbitratorTier.JUNIOR: 3,
    ArbitratorTier.SENIOR: 5,
    ArbitratorTier.EXPERT: 8,
    ArbitratorTier.MASTER: 12,
}


def clamp_reputation(score: float) -> float:
    settings = get_settings()
    return max(settings.reputation_min, min(settings.reputation_max, score))


def normalized_success_rate(arbitrator: Arbitrator) -> float:
    """
    Success rate in [0, 1].

    Arbitrators without closed-out cases fall back to their reputation
    relative to the reputation ceiling.
    """
    if arbitrator.total_cases:
        return arbitrator.success_rate
    settings = get_settings()
    span = settings.reputation_max - settings.reputation_min
    if span <= 0:
        return 0.0
    return (arbitrator.reputation_score - settings.reputation_min) / span


def update_reputation(db: Session, arbitrator_id: str, outcome: ReputationOutcome) -> Arbitrator:
    """
    Apply one case outcome to an arbitrator.

    Counts the case, credits a resolution when the arbitrator's call matched
    the outcome, and moves reputation one step in the outcome's direction,
    clamped to the configured range.
    """
    arbitrator = (
        db.query(Arbitrator)
        .filter(Arbitrator.id == arbitrator_id)
        .with_for_update()
        .first()
    )
    if not arbitrator:
        raise NotFoundError(f"Arbitrator {arbitrator_id} not found")

    step = get_settings().reputation_step
    delta = step if outcome == ReputationOutcome.POSITIVE else -step

    arbitrator.total_cases = (arbitrator.total_cases or 0) + 1
    if outcome == ReputationOutcome.POSITIVE:
        arbitrator.resolved_cases = (arbitrator.resolved_cases or 0) + 1
    arbitrator.reputation_score = round(clamp_reputation(arbitrator.reputation_score + delta), 4)
    arbitrator.last_active_at = utcnow()

    logger.info(
        "Reputation %s for arbitrator %s -> %.2f",
        outcome.value, arbitrator_id, arbitrator.reputation_score,
    )
    return arbitrator


def reserve_capacity(db: Session, arbitrator_id: str) -> bool:
    """
    Atomically take one caseload slot.

    Returns False when the arbitrator is no longer active or already full.
    """
    updated = (
        db.query(Arbitrator)
        .filter(
            Arbitrator.id == arbitrator_id,
            Arbitrator.status == ArbitratorStatus.ACTIVE,
            Arbitrator.current_caseload < Arbitrator.max_caseload,
        )
        .update(
            {
                Arbitrator.current_caseload: Arbitrator.current_caseload + 1,
                Arbitrator.last_active_at: utcnow(),
            },
            synchronize_session="fetch",
        )
    )
    return updated == 1


def release_capacity(db: Session, assignment: Assignment) -> None:
    """Give back the slot held by a finished assignment (once)."""
    if assignment.caseload_released:
        return
    (
        db.query(Arbitrator)
        .filter(Arbitrator.id == assignment.arbitrator_id, Arbitrator.current_caseload > 0)
        .update(
            {Arbitrator.current_caseload: Arbitrator.current_caseload - 1},
            synchronize_session="fetch",
        )
    )
    assignment.caseload_released = True


class ArbitratorRegistry:
    """CRUD and lifecycle operations over arbitrators."""

    def __init__(self, db: Session):
        self.db = db

    def register(
        self,
        user_id: str,
        tier: ArbitratorTier = ArbitratorTier.JUNIOR,
        specializations: Optional[List[DisputeType]] = None,
        max_caseload: Optional[int] = None,
        display_name: Optional[str] = None,
        status: ArbitratorStatus = ArbitratorStatus.ACTIVE,
        reputation_score: Optional[float] = None,
    ) -> Arbitrator:
        if not user_id:
            raise ValidationError("user_id is required")
        if max_caseload is not None and max_caseload < 1:
            raise ValidationError("max_caseload must be at least 1")

        existing = self.db.query(Arbitrator).filter(Arbitrator.user_id == user_id).first()
        if existing:
            raise StateConflict(f"User {user_id} is already registered as arbitrator {existing.id}")

        settings = get_settings()
        arbitrator = Arbitrator(
            user_id=user_id,
            display_name=display_name,
            tier=tier,
            status=status,
            specializations=[DisputeType(s).value for s in (specializations or [])],
            max_caseload=max_caseload or MAX_CASELOAD_BY_TIER[tier],
            reputation_score=clamp_reputation(
                settings.default_reputation if reputation_score is None else reputation_score
            ),
            total_cases=0,
            resolved_cases=0,
            current_caseload=0,
        )
        self.db.add(arbitrator)
        self.db.flush()
        logger.info("Registered arbitrator %s (%s)", arbitrator.id, tier.value)
        return arbitrator

    def get(self, arbitrator_id: str) -> Arbitrator:
        arbitrator = self.db.query(Arbitrator).filter(Arbitrator.id == arbitrator_id).first()
        if not arbitrator:
            raise NotFoundError(f"Arbitrator {arbitrator_id} not found")
        return arbitrator

    def list(
        self,
        status: Optional[ArbitratorStatus] = None,
        tier: Optional[ArbitratorTier] = None,
        specialization: Optional[DisputeType] = None,
    ) -> List[Arbitrator]:
        query = self.db.query(Arbitrator)
        if status:
            query = query.filter(Arbitrator.status == status)
        if tier:
            query = query.filter(Arbitrator.tier == tier)
        arbitrators = query.order_by(Arbitrator.reputation_score.desc()).all()
        if specialization:
            # JSON containment differs per dialect; the registry is small enough to filter here
            arbitrators = [
                a for a in arbitrators
                if not a.specializations or specialization.value in a.specializations
            ]
        return arbitrators

    def set_status(self, arbitrator_id: str, status: ArbitratorStatus) -> Arbitrator:
        arbitrator = self.get(arbitrator_id)
        previous = arbitrator.status
        arbitrator.status = status
        logger.info("Arbitrator %s status %s -> %s", arbitrator_id, previous.value, status.value)
        return arbitrator

    def promote(self, arbitrator_id: str) -> Arbitrator:
        arbitrator = self.get(arbitrator_id)
        if arbitrator.tier == ArbitratorTier.MASTER:
            raise StateConflict("Arbitrator is already at the highest tier")

        previous = arbitrator.tier
        arbitrator.tier = ArbitratorTier.from_rank(previous.rank + 1)
        arbitrator.max_caseload = max(arbitrator.max_caseload, MAX_CASELOAD_BY_TIER[arbitrator.tier])
        logger.info("Arbitrator %s promoted %s -> %s", arbitrator_id, previous.value, arbitrator.tier.value)
        return arbitrator

    def metrics(self, arbitrator_id: str) -> Dict[str, Any]:
        arbitrator = self.get(arbitrator_id)
        return {
            "id": arbitrator.id,
            "tier": arbitrator.tier.value,
            "status": arbitrator.status.value,
            "reputation_score": arbitrator.reputation_score,
            "total_cases": arbitrator.total_cases,
            "resolved_cases": arbitrator.resolved_cases,
            "success_rate": round(arbitrator.success_rate, 4),
            "current_caseload": arbitrator.current_caseload,
            "max_caseload": arbitrator.max_caseload,
            "total_votes": len(arbitrator.votes),
            "specializations": list(arbitrator.specializations or []),
            "last_active_at": arbitrator.last_active_at,
        }
