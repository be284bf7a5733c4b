"""
Commit-Reveal Voting
====================

Panel arbitrators first commit a sealed vote (a sha256 over decision,
reasoning and a private nonce), then reveal the nonce. Only revealed votes
are counted. Once every active seat at the case's current tier has revealed
in the current round, the round is tallied by weight and the case resolved
(or sent back for more evidence).

Vote weight = base weight x normalized success rate x tier multiplier,
clamped to [0.1, 2.0] and fixed at commit time.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .cases import RESOLUTION_TEXT, DisputeService
from .db.models import (
    Arbitrator, ArbitratorTier, AssignmentStatus, DisputeCase, DisputeStatus, ResolutionPath,
    TimelineEventType, Vote, VoteDecision, utcnow,
)
from .errors import DuplicateVote, InvalidReveal, NotFoundError, StateConflict, ValidationError
from .registry import normalized_success_rate, release_capacity
from .timeline import record_event

logger = logging.getLogger(__name__)

BASE_WEIGHT = 1.0
MIN_WEIGHT = 0.1
MAX_WEIGHT = 2.0

TIER_MULTIPLIER = {
    ArbitratorTier.MASTER: 2.0,
    ArbitratorTier.EXPERT: 1.5,
    ArbitratorTier.SENIOR: 1.2,
    ArbitratorTier.JUNIOR: 1.0,
}


def create_commit_hash(decision: VoteDecision, reasoning: str, nonce: str) -> str:
    decision = VoteDecision(decision)
    return hashlib.sha256(f"{decision.value}:{reasoning}:{nonce}".encode("utf-8")).hexdigest()


def calculate_vote_weight(arbitrator: Arbitrator) -> float:
    weight = BASE_WEIGHT * normalized_success_rate(arbitrator) * TIER_MULTIPLIER[arbitrator.tier]
    return round(max(MIN_WEIGHT, min(MAX_WEIGHT, weight)), 4)


@dataclass
class TallyResult:
    decision: VoteDecision
    total_weight: float
    winning_weight: float
    breakdown: Dict[str, float] = field(default_factory=dict)
    vote_count: int = 0

    @property
    def winning_share(self) -> float:
        """Winning weight as a fraction of all revealed weight."""
        return self.winning_weight / self.total_weight if self.total_weight else 0.0

    @property
    def winning_percentage(self) -> float:
        return round(self.winning_share * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "total_weight": round(self.total_weight, 4),
            "winning_weight": round(self.winning_weight, 4),
            "winning_percentage": self.winning_percentage,
            "breakdown": {k: round(v, 4) for k, v in self.breakdown.items()},
            "vote_count": self.vote_count,
        }


def tally_votes(votes: List[Vote]) -> TallyResult:
    """
    Weighted tally of revealed votes.

    Ties between decisions go to the decision of the earliest revealed vote
    among the tied ones.
    """
    revealed = [v for v in votes if v.is_revealed]
    if not revealed:
        raise StateConflict("No revealed votes to tally")

    breakdown: Dict[str, float] = {}
    first_reveal: Dict[str, tuple] = {}
    for vote in revealed:
        key = vote.decision.value
        breakdown[key] = breakdown.get(key, 0.0) + vote.weight
        order = (vote.revealed_at, vote.id)
        if key not in first_reveal or order < first_reveal[key]:
            first_reveal[key] = order

    top = max(breakdown.values())
    tied = [k for k, w in breakdown.items() if w == top]
    winner = min(tied, key=lambda k: first_reveal[k])

    return TallyResult(
        decision=VoteDecision(winner),
        total_weight=sum(breakdown.values()),
        winning_weight=top,
        breakdown=breakdown,
        vote_count=len(revealed),
    )


class VotingEngine:
    """Commit, reveal and tally operations for one unit of work."""

    def __init__(self, db: Session, cases: Optional[DisputeService] = None):
        self.db = db
        self.cases = cases or DisputeService(db)

    def _round_votes(self, case: DisputeCase) -> List[Vote]:
        return (
            self.db.query(Vote)
            .filter(Vote.case_id == case.id, Vote.round == case.voting_round)
            .order_by(Vote.committed_at.asc())
            .all()
        )

    def list_votes(self, case_id: str) -> List[Vote]:
        case = self.cases.get_case(case_id)
        return self._round_votes(case)

    def submit_vote(
        self,
        case_id: str,
        arbitrator_id: str,
        decision: Any,
        reasoning: str,
        nonce: str,
    ) -> Vote:
        """
        Commit a sealed vote for the current round.

        Raises:
            ValidationError: unknown decision, missing reasoning or nonce
            StateConflict: case not voting, or arbitrator holds no active seat
            DuplicateVote: arbitrator already voted this round
        """
        try:
            decision = VoteDecision(decision)
        except ValueError:
            raise ValidationError(f"Unknown vote decision: {decision!r}", {"field": "decision"})
        if not nonce:
            raise ValidationError("nonce is required", {"field": "nonce"})
        reasoning = (reasoning or "").strip()
        if not reasoning:
            raise ValidationError("reasoning is required", {"field": "reasoning"})

        case = self.cases.lock_case(case_id)
        if case.status != DisputeStatus.VOTING:
            raise StateConflict(f"Case {case.case_number} is not open for voting ({case.status.value})")

        seat = next(
            (a for a in self.cases.open_assignments(case) if a.arbitrator_id == arbitrator_id),
            None,
        )
        if seat is None:
            raise StateConflict(f"Arbitrator {arbitrator_id} holds no active seat on case {case.case_number}")

        existing = (
            self.db.query(Vote)
            .filter(Vote.case_id == case.id, Vote.arbitrator_id == arbitrator_id, Vote.round == case.voting_round)
            .first()
        )
        if existing:
            raise DuplicateVote(
                f"Arbitrator {arbitrator_id} already voted in round {case.voting_round}",
                {"vote_id": existing.id},
            )

        arbitrator = self.db.query(Arbitrator).filter(Arbitrator.id == arbitrator_id).first()
        if seat.status == AssignmentStatus.ASSIGNED:
            # Voting on a seat counts as taking it
            seat.status = AssignmentStatus.ACCEPTED
            seat.accepted_at = utcnow()

        vote = Vote(
            case_id=case.id,
            arbitrator_id=arbitrator_id,
            assignment_id=seat.id,
            round=case.voting_round,
            decision=decision,
            reasoning=reasoning,
            weight=calculate_vote_weight(arbitrator),
            commit_hash=create_commit_hash(decision, reasoning, nonce),
            committed_at=utcnow(),
            is_revealed=False,
        )
        self.db.add(vote)
        case.votes.append(vote)
        self.db.flush()

        # The decision stays sealed until reveal; the timeline only records the commit
        record_event(
            self.db, case.id, TimelineEventType.VOTE_SUBMITTED,
            "Sealed vote committed",
            actor_id=arbitrator_id, actor_role="arbitrator",
            payload={"vote_id": vote.id, "round": case.voting_round},
        )
        logger.info("Vote committed on case %s round %d by %s", case.case_number, case.voting_round, arbitrator_id)
        return vote

    def reveal_vote(self, case_id: str, arbitrator_id: str, nonce: str) -> Vote:
        """
        Reveal a committed vote; tallies the round if this was the last one.

        Raises:
            StateConflict: case not voting, nothing committed, or already revealed
            InvalidReveal: nonce does not reproduce the commitment
        """
        if not nonce:
            raise ValidationError("nonce is required", {"field": "nonce"})

        case = self.cases.lock_case(case_id)
        if case.status != DisputeStatus.VOTING:
            raise StateConflict(f"Case {case.case_number} is not open for voting ({case.status.value})")

        vote = (
            self.db.query(Vote)
            .filter(Vote.case_id == case.id, Vote.arbitrator_id == arbitrator_id, Vote.round == case.voting_round)
            .first()
        )
        if not vote:
            raise StateConflict(f"Arbitrator {arbitrator_id} has no committed vote in round {case.voting_round}")
        if vote.is_revealed:
            raise StateConflict("Vote already revealed")

        if create_commit_hash(vote.decision, vote.reasoning, nonce) != vote.commit_hash:
            raise InvalidReveal(
                "Revealed values do not match the committed vote",
                {"vote_id": vote.id},
            )

        vote.is_revealed = True
        vote.revealed_at = utcnow()
        record_event(
            self.db, case.id, TimelineEventType.VOTE_REVEALED,
            "Vote revealed",
            actor_id=arbitrator_id, actor_role="arbitrator",
            payload={"vote_id": vote.id, "decision": vote.decision, "weight": vote.weight},
        )
        self.db.flush()

        self.check_completion(case)
        return vote

    def quorum_reached(self, case: DisputeCase) -> bool:
        """Every active seat at the current tier has revealed in this round."""
        seats = self.cases.open_assignments(case)
        if not seats:
            return False
        revealed = {v.arbitrator_id for v in self._round_votes(case) if v.is_revealed}
        return all(seat.arbitrator_id in revealed for seat in seats)

    def check_completion(self, case: DisputeCase) -> Optional[TallyResult]:
        """Tally and apply the round if quorum is reached; case must already be locked."""
        if case.status != DisputeStatus.VOTING or not self.quorum_reached(case):
            return None

        result = tally_votes(self._round_votes(case))
        results = {"round": case.voting_round, **result.to_dict()}
        case.voting_results = results
        record_event(
            self.db, case.id, TimelineEventType.VOTING_COMPLETED,
            f"Voting round {case.voting_round} completed",
            payload=results,
        )
        logger.info(
            "Case %s round %d tallied: %s (%.1f%%)",
            case.case_number, case.voting_round, result.decision.value, result.winning_percentage,
        )

        if result.decision == VoteDecision.REQUIRE_MORE_EVIDENCE:
            # Panel stays seated for the next round
            case.status = DisputeStatus.EVIDENCE_COLLECTION
            return result

        now = utcnow()
        for seat in self.cases.open_assignments(case):
            seat.status = AssignmentStatus.COMPLETED
            seat.completed_at = now
            release_capacity(self.db, seat)

        self.cases._resolve_locked(
            case,
            resolution=RESOLUTION_TEXT[result.decision],
            resolved_by="panel",
            path=ResolutionPath.VOTE_TALLY,
            ruling=result.decision,
            voting_results=results,
        )
        return result

    def tally(self, case_id: str) -> TallyResult:
        """Current weighted standing of the round's revealed votes (read only)."""
        case = self.cases.lock_case(case_id)
        if case.voting_round < 1:
            raise NotFoundError(f"Case {case.case_number} has no voting rounds")
        return tally_votes(self._round_votes(case))
