"""
Appeals.

A party may appeal a resolved case within the appeal window, a limited number
of times. Filing gives the case a review deadline and holds any settlement
that has not gone through yet. An approved appeal re-opens the case one tier
up with a fresh deadline and a new panel. A rejected appeal, or one left
unreviewed past its deadline, restores the resolution and releases the held
settlement.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from .cases import DEADLINE_WINDOWS, ESCALATION_WINDOWS, MAX_TIER, DisputeService
from .config import get_settings
from .db.models import (
    DUE_SETTLEMENT_STATUSES, Appeal, AppealStatus, DisputeCase, DisputeStatus, SettlementStatus,
    TimelineEventType, utcnow,
)
from .errors import NotFoundError, StateConflict, TierLimitExceeded, ValidationError
from .timeline import record_event

logger = logging.getLogger(__name__)


class AppealService:
    def __init__(self, db: Session, cases: Optional[DisputeService] = None):
        self.db = db
        self.cases = cases or DisputeService(db)

    def list_appeals(self, case_id: str) -> List[Appeal]:
        self.cases.get_case(case_id)
        return (
            self.db.query(Appeal)
            .filter(Appeal.case_id == case_id)
            .order_by(Appeal.filed_at.asc())
            .all()
        )

    def file_appeal(self, case_id: str, filed_by: str, reason: str, now=None) -> Appeal:
        """
        Raises:
            StateConflict: case not resolved, window closed, or appeal cap reached
            TierLimitExceeded: case was resolved at the top tier
        """
        if not filed_by:
            raise ValidationError("filed_by is required", {"field": "filed_by"})
        if not reason or not reason.strip():
            raise ValidationError("reason is required", {"field": "reason"})

        now = now or utcnow()
        settings = get_settings()
        case = self.cases.lock_case(case_id)

        if case.status != DisputeStatus.RESOLVED:
            raise StateConflict(f"Only resolved cases can be appealed (case is {case.status.value})")
        if case.appeal_count >= settings.max_appeals:
            raise StateConflict(
                f"Case {case.case_number} has used all {settings.max_appeals} appeals",
                {"appeal_count": case.appeal_count},
            )
        if now > case.resolved_at + timedelta(days=settings.appeal_window_days):
            raise StateConflict(f"Appeal window for case {case.case_number} has closed")
        if case.current_tier >= MAX_TIER:
            raise TierLimitExceeded(
                f"Case {case.case_number} was decided at tier {MAX_TIER}; no higher tier to appeal to",
                {"current_tier": case.current_tier},
            )

        appeal = Appeal(
            case_id=case.id,
            filed_by=filed_by,
            reason=reason.strip(),
            status=AppealStatus.PENDING,
            from_tier=case.current_tier,
            previous_resolution=case.resolution,
            previous_ruling=case.resolution_ruling,
            previous_resolution_path=case.resolution_path,
            filed_at=now,
        )
        self.db.add(appeal)
        self.db.flush()

        case.status = DisputeStatus.APPEALED
        case.appeal_count += 1
        case.deadline = now + DEADLINE_WINDOWS[case.priority]
        if case.settlement_status in DUE_SETTLEMENT_STATUSES:
            case.settlement_status = SettlementStatus.HELD
        record_event(
            self.db, case.id, TimelineEventType.APPEAL_FILED,
            f"Appeal {case.appeal_count} filed",
            actor_id=filed_by, actor_role="user",
            payload={
                "appeal_id": appeal.id, "reason": appeal.reason, "from_tier": appeal.from_tier,
                "review_deadline": case.deadline,
            },
        )
        logger.info("Appeal %s filed on case %s", appeal.id, case.case_number)
        return appeal

    def review_appeal(
        self, appeal_id: str, reviewer_id: str, approve: bool, notes: Optional[str] = None, now=None
    ) -> Appeal:
        appeal = self.db.query(Appeal).filter(Appeal.id == appeal_id).first()
        if not appeal:
            raise NotFoundError(f"Appeal {appeal_id} not found")

        case = self.cases.lock_case(appeal.case_id)
        if appeal.status != AppealStatus.PENDING or case.status != DisputeStatus.APPEALED:
            raise StateConflict(f"Appeal {appeal_id} is not awaiting review")

        now = now or utcnow()
        appeal.status = AppealStatus.APPROVED if approve else AppealStatus.REJECTED
        appeal.reviewed_at = now
        appeal.reviewed_by = reviewer_id
        appeal.review_notes = notes

        record_event(
            self.db, case.id, TimelineEventType.APPEAL_REVIEWED,
            f"Appeal {'approved' if approve else 'rejected'}",
            actor_id=reviewer_id, actor_role="admin",
            payload={"appeal_id": appeal.id, "approved": approve, "notes": notes},
        )

        if not approve:
            self._restore_resolution(case)
            logger.info("Appeal %s rejected; case %s stays resolved", appeal.id, case.case_number)
            return appeal

        # The superseded outcome lives on in the appeal row
        case.current_tier += 1
        case.status = DisputeStatus.ARBITRATION
        case.resolution = None
        case.resolution_path = None
        case.resolution_ruling = None
        case.compensation_amount = None
        case.compensation_recipient = None
        case.resolved_at = None
        case.resolved_by = None
        case.voting_results = None
        if case.settlement_status != SettlementStatus.SETTLED:
            # The overturned ruling is never settled; the next resolution requests its own
            case.settlement_status = SettlementStatus.NOT_REQUESTED
            case.settlement_error = None
        case.deadline = now + DEADLINE_WINDOWS[case.priority]
        case.auto_escalation_at = now + ESCALATION_WINDOWS[case.priority]

        self.cases.selection.assign(case, case.current_tier, exclude_ids=self.cases.previous_arbitrators(case))
        logger.info("Appeal %s approved; case %s re-opened at tier %d", appeal.id, case.case_number, case.current_tier)
        return appeal

    def lapse_overdue(self, case_id: str, now=None) -> Optional[DisputeCase]:
        """Reject an appeal nobody reviewed before the case deadline; the prior ruling stands."""
        now = now or utcnow()
        case = self.cases.lock_case(case_id)
        if case.status != DisputeStatus.APPEALED or case.deadline > now:
            return None

        pending = [a for a in case.appeals if a.status == AppealStatus.PENDING]
        for appeal in pending:
            appeal.status = AppealStatus.REJECTED
            appeal.reviewed_at = now
            appeal.reviewed_by = "system"
            appeal.review_notes = "Not reviewed before the deadline"

        record_event(
            self.db, case.id, TimelineEventType.APPEAL_REVIEWED,
            "Appeal lapsed without review",
            payload={"appeal_ids": [a.id for a in pending], "approved": False, "lapsed": True},
        )
        self._restore_resolution(case)
        logger.info("Appeal on case %s lapsed; resolution restored", case.case_number)
        return case

    def _restore_resolution(self, case: DisputeCase) -> None:
        case.status = DisputeStatus.RESOLVED
        if case.settlement_status == SettlementStatus.HELD:
            case.settlement_status = SettlementStatus.REQUESTED
            self.cases._settle_after_commit(case.id)
