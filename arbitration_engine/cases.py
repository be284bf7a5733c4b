"""
Dispute Case State Machine
==========================

Owns the case lifecycle:

    OPEN -> ARBITRATION | VOTING -> UNDER_REVIEW -> RESOLVED -> CLOSED
                 |            \\-> EVIDENCE_COLLECTION -> VOTING
                 \\-> ESCALATED (tier + 1) -> ...
    RESOLVED -> APPEALED -> ARBITRATION (tier + 1) | RESOLVED (rejected or lapsed)
    any active status -> EXPIRED (deadline passed)

Every public operation locks the case row (SELECT ... FOR UPDATE on
PostgreSQL, plus optimistic versioning on every dialect) and performs the
state change, timeline entries, assignment changes and reputation updates in
the caller's transaction. Collaborator calls (notification, settlement) are
deferred until that transaction commits.
"""

import logging
import math
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from .config import get_settings
from .db.models import (
    ACTIVE_STATUSES,
    Assignment, AssignmentStatus, DisputeCase, DisputePriority,
    DisputeStatus, DisputeType, ResolutionPath, SettlementStatus, TimelineEventType,
    VoteDecision, utcnow,
)
from .db.session import after_commit
from .errors import (
    NoAvailableArbitrator, NotFoundError, StateConflict, TierLimitExceeded, ValidationError
)
from .registry import ReputationOutcome, release_capacity, update_reputation
from .selection import SelectionEngine, required_arbitrator_count
from .timeline import record_event

logger = logging.getLogger(__name__)

MAX_TIER = 3

DEADLINE_WINDOWS = {
    DisputePriority.URGENT: timedelta(hours=24),
    DisputePriority.HIGH: timedelta(days=3),
    DisputePriority.MEDIUM: timedelta(days=7),
    DisputePriority.LOW: timedelta(days=14),
}

ESCALATION_WINDOWS = {
    DisputePriority.URGENT: timedelta(hours=12),
    DisputePriority.HIGH: timedelta(days=2),
    DisputePriority.MEDIUM: timedelta(days=5),
    DisputePriority.LOW: timedelta(days=5),
}

RESOLUTION_TEXT = {
    VoteDecision.FAVOR_CLAIMANT: "Dispute resolved in favor of claimant",
    VoteDecision.FAVOR_RESPONDENT: "Dispute resolved in favor of respondent",
    VoteDecision.PARTIAL_CLAIMANT: "Partial resolution in favor of claimant",
    VoteDecision.PARTIAL_RESPONDENT: "Partial resolution in favor of respondent",
    VoteDecision.ABSTAIN: "Dispute could not be resolved due to insufficient consensus",
    VoteDecision.REQUIRE_MORE_EVIDENCE: "Arbitrators require more evidence before making a decision",
}

# Statuses from which a fully accepted panel starts its proceedings
_AWAITING_PANEL = frozenset({DisputeStatus.OPEN, DisputeStatus.ESCALATED, DisputeStatus.ARBITRATION})

# Statuses in which a single arbitrator may hand down a decision
_DECIDING = frozenset({DisputeStatus.ARBITRATION, DisputeStatus.UNDER_REVIEW, DisputeStatus.EVIDENCE_COLLECTION})


def compute_priority(dispute_type: DisputeType, amount: float) -> DisputePriority:
    if dispute_type == DisputeType.FRAUD_CLAIM:
        return DisputePriority.URGENT
    if amount > get_settings().high_value_threshold:
        return DisputePriority.HIGH
    return DisputePriority.MEDIUM


def _parse_type(value: Any) -> DisputeType:
    try:
        return DisputeType(value)
    except ValueError:
        raise ValidationError(f"Unknown dispute type: {value!r}", {"field": "type"})


def _parse_amount(value: Any) -> float:
    if value is None or isinstance(value, bool):
        raise ValidationError("disputed_amount is required", {"field": "disputed_amount"})
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"disputed_amount must be a number, got {value!r}", {"field": "disputed_amount"})
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("disputed_amount must be a positive amount", {"field": "disputed_amount"})
    return round(amount, 2)


def _parse_decision(decision: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(decision, dict):
        raise ValidationError("decision must be an object")
    try:
        ruling = VoteDecision(decision.get("ruling"))
    except ValueError:
        raise ValidationError(f"Unknown ruling: {decision.get('ruling')!r}", {"field": "ruling"})
    reasoning = (decision.get("reasoning") or "").strip()
    if not reasoning:
        raise ValidationError("reasoning is required", {"field": "reasoning"})

    parsed = {"ruling": ruling.value, "reasoning": reasoning}
    if decision.get("compensation") is not None:
        parsed["compensation"] = _parse_amount(decision["compensation"])
        parsed["recipient"] = decision.get("recipient")
    return parsed


class DisputeService:
    """Transition functions for dispute cases. One instance per unit of work."""

    def __init__(self, db: Session, selection: Optional[SelectionEngine] = None):
        self.db = db
        self.selection = selection or SelectionEngine(db)

    # =========================================================================
    # Loading
    # =========================================================================

    def get_case(self, case_id: str) -> DisputeCase:
        case = self.db.query(DisputeCase).filter(DisputeCase.id == case_id).first()
        if not case:
            raise NotFoundError(f"Case {case_id} not found")
        return case

    def lock_case(self, case_id: str) -> DisputeCase:
        """Load a case holding its row lock for the rest of the transaction."""
        case = (
            self.db.query(DisputeCase)
            .filter(DisputeCase.id == case_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not case:
            raise NotFoundError(f"Case {case_id} not found")
        return case

    def _load_assignment(self, assignment_id: str, arbitrator_id: str) -> Assignment:
        assignment = (
            self.db.query(Assignment)
            .filter(Assignment.id == assignment_id, Assignment.arbitrator_id == arbitrator_id)
            .first()
        )
        if not assignment:
            raise NotFoundError(f"Assignment {assignment_id} not found for arbitrator {arbitrator_id}")
        return assignment

    def list_cases(
        self,
        status: Optional[DisputeStatus] = None,
        dispute_type: Optional[DisputeType] = None,
        priority: Optional[DisputePriority] = None,
        initiated_by: Optional[str] = None,
        tier: Optional[int] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[DisputeCase], int]:
        query = self.db.query(DisputeCase)
        if status:
            query = query.filter(DisputeCase.status == status)
        if dispute_type:
            query = query.filter(DisputeCase.type == dispute_type)
        if priority:
            query = query.filter(DisputeCase.priority == priority)
        if initiated_by:
            query = query.filter(DisputeCase.initiated_by == initiated_by)
        if tier:
            query = query.filter(DisputeCase.current_tier == tier)

        total = query.count()
        page = max(page, 1)
        cases = (
            query.order_by(DisputeCase.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return cases, total

    @staticmethod
    def previous_arbitrators(case: DisputeCase) -> Set[str]:
        """Everyone who already sat on the case; a higher tier gets fresh eyes."""
        return {a.arbitrator_id for a in case.assignments}

    @staticmethod
    def open_assignments(case: DisputeCase, tier: Optional[int] = None) -> List[Assignment]:
        tier = case.current_tier if tier is None else tier
        return [a for a in case.assignments if a.tier == tier and a.is_open]

    # =========================================================================
    # Creation
    # =========================================================================

    def _next_case_number(self) -> str:
        prefix = f"DSP-{utcnow().year}-"
        latest = (
            self.db.query(func.max(DisputeCase.case_number))
            .filter(DisputeCase.case_number.like(f"{prefix}%"))
            .scalar()
        )
        sequence = int(latest.rsplit("-", 1)[1]) + 1 if latest else 1
        return f"{prefix}{sequence:06d}"

    def create_case(
        self,
        type: Any,
        disputed_amount: Any,
        initiated_by: Optional[str],
        title: Optional[str],
        description: Optional[str] = None,
        escrow_id: Optional[str] = None,
        respondent_id: Optional[str] = None,
    ) -> DisputeCase:
        """
        Open a case and staff tier 1.

        Raises:
            ValidationError: missing/invalid type, amount, initiator or title
            NoAvailableArbitrator: nobody can take tier 1 (nothing is persisted)
        """
        dispute_type = _parse_type(type)
        amount = _parse_amount(disputed_amount)
        if not initiated_by:
            raise ValidationError("initiated_by is required", {"field": "initiated_by"})
        if not title or not title.strip():
            raise ValidationError("title is required", {"field": "title"})

        now = utcnow()
        priority = compute_priority(dispute_type, amount)
        case = DisputeCase(
            case_number=self._next_case_number(),
            escrow_id=escrow_id,
            type=dispute_type,
            status=DisputeStatus.OPEN,
            priority=priority,
            initiated_by=initiated_by,
            respondent_id=respondent_id,
            title=title.strip(),
            description=description,
            disputed_amount=amount,
            current_tier=1,
            voting_round=0,
            appeal_count=0,
            deadline=now + DEADLINE_WINDOWS[priority],
            auto_escalation_at=now + ESCALATION_WINDOWS[priority],
            settlement_status=SettlementStatus.NOT_REQUESTED,
            settlement_attempts=0,
        )
        case.panel_size = required_arbitrator_count(case)
        self.db.add(case)
        self.db.flush()

        record_event(
            self.db, case.id, TimelineEventType.DISPUTE_CREATED,
            f"Dispute case {case.case_number} created",
            actor_id=initiated_by, actor_role="user",
            payload={"priority": priority, "deadline": case.deadline, "panel_size": case.panel_size},
        )

        self.selection.assign(case, 1)
        logger.info(
            "Dispute case %s created (%s, %s, panel of %d)",
            case.case_number, dispute_type.value, priority.value, case.panel_size,
        )
        return case

    # =========================================================================
    # Assignment responses
    # =========================================================================

    def accept_assignment(self, assignment_id: str, arbitrator_id: str) -> Assignment:
        assignment = self._load_assignment(assignment_id, arbitrator_id)
        case = self.lock_case(assignment.case_id)

        if assignment.status != AssignmentStatus.ASSIGNED:
            raise StateConflict(f"Assignment is {assignment.status.value}; only assigned work can be accepted")
        if case.status not in ACTIVE_STATUSES or assignment.tier != case.current_tier:
            raise StateConflict(f"Case {case.case_number} is no longer staffing tier {assignment.tier}")

        assignment.status = AssignmentStatus.ACCEPTED
        assignment.accepted_at = utcnow()
        record_event(
            self.db, case.id, TimelineEventType.ARBITRATOR_ACCEPTED,
            f"Arbitrator accepted tier {assignment.tier} assignment",
            actor_id=arbitrator_id, actor_role="arbitrator",
            payload={"assignment_id": assignment.id},
        )
        self._maybe_start_proceedings(case)
        return assignment

    def decline_assignment(self, assignment_id: str, arbitrator_id: str, reason: Optional[str] = None) -> Assignment:
        assignment = self._load_assignment(assignment_id, arbitrator_id)
        case = self.lock_case(assignment.case_id)

        if assignment.status != AssignmentStatus.ASSIGNED:
            raise StateConflict(f"Assignment is {assignment.status.value}; only assigned work can be declined")

        assignment.status = AssignmentStatus.DECLINED
        assignment.completed_at = utcnow()
        assignment.decline_reason = reason
        release_capacity(self.db, assignment)

        replacement = None
        if case.status in ACTIVE_STATUSES and assignment.tier == case.current_tier:
            replacement = self._reassign(case, assignment.tier)

        record_event(
            self.db, case.id, TimelineEventType.ARBITRATOR_DECLINED,
            f"Arbitrator declined tier {assignment.tier} assignment",
            actor_id=arbitrator_id, actor_role="arbitrator",
            payload={"assignment_id": assignment.id, "reason": reason,
                     "replacement_arbitrator_id": replacement.arbitrator_id if replacement else None},
        )
        if case.status in ACTIVE_STATUSES:
            self._maybe_start_proceedings(case)
        return assignment

    def _reassign(self, case: DisputeCase, tier: int) -> Optional[Assignment]:
        """Staff one replacement seat at ``tier``; logs and returns None if nobody is free."""
        already_on_case = {a.arbitrator_id for a in case.assignments if a.tier == tier}
        try:
            replacements = self.selection.assign(case, tier, count=1, exclude_ids=already_on_case)
        except NoAvailableArbitrator as e:
            logger.warning("No replacement arbitrator for case %s tier %d: %s", case.case_number, tier, e.message)
            return None
        return replacements[0]

    def _maybe_start_proceedings(self, case: DisputeCase) -> None:
        """Move a fully accepted panel into arbitration (single) or voting (panel)."""
        if case.status not in _AWAITING_PANEL:
            return
        seats = self.open_assignments(case)
        if not seats or any(a.status != AssignmentStatus.ACCEPTED for a in seats):
            return

        if len(seats) > 1:
            self.open_voting(case)
        elif case.status != DisputeStatus.ARBITRATION:
            self._change_status(case, DisputeStatus.ARBITRATION)

    def _change_status(self, case: DisputeCase, status: DisputeStatus, actor_id: Optional[str] = None) -> None:
        previous = case.status
        case.status = status
        record_event(
            self.db, case.id, TimelineEventType.STATUS_CHANGED,
            f"Status changed from {previous.value} to {status.value}",
            actor_id=actor_id,
            payload={"previous_status": previous, "new_status": status},
        )
        logger.info("Case %s: %s -> %s", case.case_number, previous.value, status.value)

    # =========================================================================
    # Voting rounds
    # =========================================================================

    def open_voting(self, case: DisputeCase, actor_id: Optional[str] = None) -> DisputeCase:
        seats = self.open_assignments(case)
        if not seats:
            raise StateConflict(f"Case {case.case_number} has no active arbitrators to vote")

        case.voting_round = (case.voting_round or 0) + 1
        case.status = DisputeStatus.VOTING
        record_event(
            self.db, case.id, TimelineEventType.VOTING_STARTED,
            f"Voting round {case.voting_round} opened",
            actor_id=actor_id,
            payload={"round": case.voting_round, "voters": [a.arbitrator_id for a in seats]},
        )
        logger.info("Case %s voting round %d opened (%d voters)", case.case_number, case.voting_round, len(seats))
        return case

    def start_voting(self, case_id: str, actor_id: Optional[str] = None) -> DisputeCase:
        case = self.lock_case(case_id)
        if case.status not in (
            DisputeStatus.ARBITRATION, DisputeStatus.UNDER_REVIEW, DisputeStatus.EVIDENCE_COLLECTION
        ):
            raise StateConflict(f"Cannot open voting while case is {case.status.value}")
        return self.open_voting(case, actor_id=actor_id)

    # =========================================================================
    # Decisions
    # =========================================================================

    def submit_decision(self, assignment_id: str, decision: Dict[str, Any], arbitrator_id: str) -> Assignment:
        """
        Record a ruling from the single accepted seat of a case.

        A tier-3 ruling, or any ruling on a binding dispute type, resolves the
        case. Otherwise the decision goes up for review at the next tier. A
        request for more evidence parks the case in evidence collection and
        keeps the seat open for a later decision.
        """
        parsed = _parse_decision(decision)
        assignment = self._load_assignment(assignment_id, arbitrator_id)
        case = self.lock_case(assignment.case_id)

        if assignment.status != AssignmentStatus.ACCEPTED:
            raise StateConflict("Assignment must be accepted before submitting a decision")
        if case.status not in _DECIDING or assignment.tier != case.current_tier:
            raise StateConflict(f"Case {case.case_number} is not accepting tier {assignment.tier} decisions")
        if len(self.open_assignments(case)) > 1:
            raise StateConflict(f"Case {case.case_number} has a panel; submit a sealed vote instead")

        ruling = VoteDecision(parsed["ruling"])
        record_event(
            self.db, case.id, TimelineEventType.DECISION_MADE,
            f"Tier {assignment.tier} arbitrator submitted a decision",
            actor_id=arbitrator_id, actor_role="arbitrator",
            payload={"assignment_id": assignment.id, "decision": parsed, "tier": assignment.tier},
        )

        if ruling == VoteDecision.REQUIRE_MORE_EVIDENCE:
            if case.status != DisputeStatus.EVIDENCE_COLLECTION:
                self._change_status(case, DisputeStatus.EVIDENCE_COLLECTION, actor_id=arbitrator_id)
            return assignment

        assignment.decision = parsed
        assignment.status = AssignmentStatus.COMPLETED
        assignment.completed_at = utcnow()
        release_capacity(self.db, assignment)
        case.status = DisputeStatus.UNDER_REVIEW

        if self._decision_is_binding(case):
            self._resolve_locked(
                case,
                resolution=f"{RESOLUTION_TEXT[ruling]}: {parsed['reasoning']}",
                resolved_by=arbitrator_id,
                path=ResolutionPath.DECISION,
                ruling=ruling,
                compensation_amount=parsed.get("compensation"),
                compensation_recipient=parsed.get("recipient"),
            )
        else:
            self._escalate_locked(case, f"Tier {assignment.tier} decision requires higher-tier review")
        return assignment

    def _decision_is_binding(self, case: DisputeCase) -> bool:
        return case.current_tier >= MAX_TIER or case.type.value in get_settings().binding_dispute_types

    # =========================================================================
    # Escalation
    # =========================================================================

    def escalate(self, case_id: str, reason: str, actor_id: Optional[str] = None) -> DisputeCase:
        """
        Move a case one tier up and staff the new tier.

        Raises:
            StateConflict: case is not in an active status
            TierLimitExceeded: case is already at the top tier
        """
        if not reason or not reason.strip():
            raise ValidationError("reason is required", {"field": "reason"})
        case = self.lock_case(case_id)
        return self._escalate_locked(case, reason.strip(), actor_id=actor_id)

    def auto_escalate(self, case_id: str, now=None) -> Optional[DisputeCase]:
        """Timeout escalation; returns None if the case no longer qualifies."""
        now = now or utcnow()
        case = self.lock_case(case_id)
        if (
            case.status not in ACTIVE_STATUSES
            or case.current_tier >= MAX_TIER
            or case.auto_escalation_at is None
            or case.auto_escalation_at > now
        ):
            return None
        return self._escalate_locked(case, "timeout", now=now)

    def _escalate_locked(
        self, case: DisputeCase, reason: str, actor_id: Optional[str] = None, now=None
    ) -> DisputeCase:
        if case.status not in ACTIVE_STATUSES:
            raise StateConflict(f"Cannot escalate case {case.case_number} while {case.status.value}")
        if case.current_tier >= MAX_TIER:
            raise TierLimitExceeded(
                f"Case {case.case_number} is already at tier {MAX_TIER}",
                {"case_id": case.id, "current_tier": case.current_tier},
            )

        now = now or utcnow()
        previous_tier = case.current_tier
        self._close_open_assignments(case, AssignmentStatus.ESCALATED, tier=previous_tier, now=now)

        case.current_tier = previous_tier + 1
        case.status = DisputeStatus.ESCALATED
        case.auto_escalation_at = now + ESCALATION_WINDOWS[case.priority]

        record_event(
            self.db, case.id, TimelineEventType.ESCALATED,
            f"Dispute escalated to tier {case.current_tier}",
            actor_id=actor_id, actor_role="user" if actor_id else "system",
            payload={"previous_tier": previous_tier, "new_tier": case.current_tier, "reason": reason},
        )
        self.selection.assign(case, case.current_tier, exclude_ids=self.previous_arbitrators(case))
        logger.info("Case %s escalated to tier %d (%s)", case.case_number, case.current_tier, reason)
        return case

    def _close_open_assignments(
        self, case: DisputeCase, status: AssignmentStatus, tier: Optional[int] = None, now=None
    ) -> None:
        now = now or utcnow()
        for assignment in case.assignments:
            if not assignment.is_open or (tier is not None and assignment.tier != tier):
                continue
            assignment.status = status
            assignment.completed_at = now
            release_capacity(self.db, assignment)

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve(
        self,
        case_id: str,
        resolution: str,
        resolved_by: str,
        settle: bool = True,
        ruling: Optional[VoteDecision] = None,
        compensation_amount: Optional[float] = None,
        compensation_recipient: Optional[str] = None,
    ) -> DisputeCase:
        """Administrative resolution of an active case."""
        if not resolution or not resolution.strip():
            raise ValidationError("resolution is required", {"field": "resolution"})
        if not resolved_by:
            raise ValidationError("resolved_by is required", {"field": "resolved_by"})
        if compensation_amount is not None:
            compensation_amount = _parse_amount(compensation_amount)
        if ruling is not None:
            try:
                ruling = VoteDecision(ruling)
            except ValueError:
                raise ValidationError(f"Unknown ruling: {ruling!r}", {"field": "ruling"})

        case = self.lock_case(case_id)
        return self._resolve_locked(
            case,
            resolution=resolution.strip(),
            resolved_by=resolved_by,
            path=ResolutionPath.ADMINISTRATIVE,
            ruling=ruling,
            compensation_amount=compensation_amount,
            compensation_recipient=compensation_recipient,
            settle=settle,
        )

    def _resolve_locked(
        self,
        case: DisputeCase,
        resolution: str,
        resolved_by: str,
        path: ResolutionPath,
        ruling: Optional[VoteDecision] = None,
        compensation_amount: Optional[float] = None,
        compensation_recipient: Optional[str] = None,
        settle: bool = True,
        voting_results: Optional[Dict[str, Any]] = None,
    ) -> DisputeCase:
        if case.status not in ACTIVE_STATUSES:
            raise StateConflict(f"Cannot resolve case {case.case_number} while {case.status.value}")

        now = utcnow()
        case.status = DisputeStatus.RESOLVED
        case.resolution = resolution
        case.resolution_path = path
        case.resolution_ruling = ruling
        case.compensation_amount = compensation_amount
        case.compensation_recipient = compensation_recipient
        case.resolved_at = now
        case.resolved_by = resolved_by
        if voting_results is not None:
            case.voting_results = voting_results

        self._close_open_assignments(case, AssignmentStatus.COMPLETED)

        record_event(
            self.db, case.id, TimelineEventType.RESOLVED,
            "Dispute resolved",
            actor_id=resolved_by,
            actor_role="system" if path == ResolutionPath.VOTE_TALLY else "arbitrator",
            payload={"path": path, "ruling": ruling, "resolution": resolution},
        )

        if ruling is not None:
            self._apply_outcome_reputation(case, ruling)

        if settle:
            case.settlement_status = SettlementStatus.REQUESTED
            case.settlement_error = None
            self._settle_after_commit(case.id)
        else:
            case.settlement_status = SettlementStatus.NOT_REQUESTED

        logger.info("Case %s resolved via %s (%s)", case.case_number, path.value,
                    ruling.value if ruling else "no ruling")
        return case

    def _settle_after_commit(self, case_id: str) -> None:
        from .settlement import request_settlement

        after_commit(self.db, lambda: request_settlement(case_id))

    def _apply_outcome_reputation(self, case: DisputeCase, ruling: VoteDecision) -> None:
        """Score every unscored decision and revealed vote against the final ruling."""
        for assignment in case.assignments:
            if assignment.decision and not assignment.reputation_applied:
                matched = assignment.decision.get("ruling") == ruling.value
                update_reputation(
                    self.db, assignment.arbitrator_id,
                    ReputationOutcome.POSITIVE if matched else ReputationOutcome.NEGATIVE,
                )
                assignment.reputation_applied = True

        for vote in case.votes:
            if vote.is_revealed and not vote.reputation_applied:
                update_reputation(
                    self.db, vote.arbitrator_id,
                    ReputationOutcome.POSITIVE if vote.decision == ruling else ReputationOutcome.NEGATIVE,
                )
                vote.reputation_applied = True

    # =========================================================================
    # Expiry and closure
    # =========================================================================

    def expire(self, case_id: str, now=None) -> Optional[DisputeCase]:
        """Expire an overdue case; returns None if it no longer qualifies."""
        now = now or utcnow()
        case = self.lock_case(case_id)
        if case.status not in ACTIVE_STATUSES or case.deadline > now:
            return None

        previous = case.status
        case.status = DisputeStatus.EXPIRED
        case.expired_at = now
        self._close_open_assignments(case, AssignmentStatus.EXPIRED, now=now)

        record_event(
            self.db, case.id, TimelineEventType.EXPIRED,
            "Dispute expired without resolution",
            payload={"previous_status": previous, "deadline": case.deadline, "tier": case.current_tier},
        )
        after_commit(self.db, lambda: _queue_default_resolution(case_id))
        logger.info("Case %s expired (was %s)", case.case_number, previous.value)
        return case

    def apply_default_resolution(self, case_id: str) -> Optional[DisputeCase]:
        """Record the expiry default ruling once and hand it to settlement."""
        case = self.lock_case(case_id)
        if case.status != DisputeStatus.EXPIRED or case.resolution_path is not None:
            return None

        ruling = VoteDecision(get_settings().expiry_default_ruling)
        case.resolution = f"Case expired before a ruling; default applied: {RESOLUTION_TEXT[ruling]}"
        case.resolution_path = ResolutionPath.EXPIRY_DEFAULT
        case.resolution_ruling = ruling
        case.resolved_at = utcnow()
        case.resolved_by = "system"
        case.settlement_status = SettlementStatus.REQUESTED

        record_event(
            self.db, case.id, TimelineEventType.RESOLVED,
            "Default resolution applied after expiry",
            payload={"path": ResolutionPath.EXPIRY_DEFAULT, "ruling": ruling},
        )
        self._settle_after_commit(case.id)
        logger.info("Case %s default resolution applied (%s)", case.case_number, ruling.value)
        return case

    def close_case(self, case_id: str, now=None, actor_id: Optional[str] = None) -> DisputeCase:
        now = now or utcnow()
        case = self.lock_case(case_id)
        if case.status != DisputeStatus.RESOLVED:
            raise StateConflict(f"Only resolved cases can be closed (case is {case.status.value})")
        window_end = case.resolved_at + timedelta(days=get_settings().appeal_window_days)
        if now < window_end:
            raise StateConflict(
                f"Appeal window for case {case.case_number} is open until {window_end.isoformat()}"
            )

        case.status = DisputeStatus.CLOSED
        record_event(
            self.db, case.id, TimelineEventType.CLOSED,
            "Dispute closed",
            actor_id=actor_id,
        )
        logger.info("Case %s closed", case.case_number)
        return case

    # =========================================================================
    # Assignment timeouts
    # =========================================================================

    def expire_overdue_assignments(self, case_id: str, now=None) -> List[Assignment]:
        """Expire seats past their response deadline and restaff each one at the same tier."""
        now = now or utcnow()
        case = self.lock_case(case_id)
        if case.status not in ACTIVE_STATUSES:
            return []

        overdue = [a for a in self.open_assignments(case) if a.deadline < now]
        for assignment in overdue:
            assignment.status = AssignmentStatus.EXPIRED
            assignment.completed_at = now
            release_capacity(self.db, assignment)
            replacement = self._reassign(case, assignment.tier)
            record_event(
                self.db, case.id, TimelineEventType.ASSIGNMENT_EXPIRED,
                f"Tier {assignment.tier} assignment expired",
                payload={
                    "assignment_id": assignment.id,
                    "arbitrator_id": assignment.arbitrator_id,
                    "replacement_arbitrator_id": replacement.arbitrator_id if replacement else None,
                },
            )
        self.db.flush()
        if overdue:
            logger.info("Case %s: %d overdue assignments expired", case.case_number, len(overdue))
        return overdue


def _queue_default_resolution(case_id: str) -> None:
    from .jobs.queue import enqueue_job
    from .jobs.tasks import task_apply_default_resolution

    enqueue_job(task_apply_default_resolution, case_id, meta={"case_id": case_id})
