"""
Evidence submission and verification.

Evidence content is stored with its sha256 checksum; verification recomputes
the checksum so tampered rows are rejected rather than verified.
"""

import hashlib
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from .db.models import (
    ACTIVE_STATUSES, DisputeStatus, Evidence, EvidenceStatus, EvidenceType, TimelineEventType, utcnow
)
from .errors import NotFoundError, StateConflict, ValidationError
from .cases import DisputeService
from .timeline import record_event

logger = logging.getLogger(__name__)

# Evidence is also accepted while an appeal is pending review
_ACCEPTING = ACTIVE_STATUSES | {DisputeStatus.APPEALED}


def content_checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class EvidenceService:
    def __init__(self, db: Session, cases: Optional[DisputeService] = None):
        self.db = db
        self.cases = cases or DisputeService(db)

    def submit(
        self,
        case_id: str,
        submitted_by: str,
        title: str,
        content: str,
        evidence_type=EvidenceType.DOCUMENT,
        description: Optional[str] = None,
    ) -> Evidence:
        if not submitted_by:
            raise ValidationError("submitted_by is required", {"field": "submitted_by"})
        if not title or not title.strip():
            raise ValidationError("title is required", {"field": "title"})
        if not content:
            raise ValidationError("content is required", {"field": "content"})
        try:
            evidence_type = EvidenceType(evidence_type)
        except ValueError:
            raise ValidationError(f"Unknown evidence type: {evidence_type!r}", {"field": "evidence_type"})

        case = self.cases.lock_case(case_id)
        if case.status not in _ACCEPTING:
            raise StateConflict(f"Case {case.case_number} no longer accepts evidence ({case.status.value})")

        evidence = Evidence(
            case_id=case.id,
            submitted_by=submitted_by,
            evidence_type=evidence_type,
            title=title.strip(),
            description=description,
            content=content,
            checksum=content_checksum(content),
            status=EvidenceStatus.PENDING_REVIEW,
            created_at=utcnow(),
        )
        self.db.add(evidence)
        self.db.flush()

        record_event(
            self.db, case.id, TimelineEventType.EVIDENCE_SUBMITTED,
            f"Evidence submitted: {evidence.title}",
            actor_id=submitted_by, actor_role="user",
            payload={"evidence_id": evidence.id, "evidence_type": evidence_type, "checksum": evidence.checksum},
        )
        logger.info("Evidence %s submitted on case %s", evidence.id, case.case_number)
        return evidence

    def list(self, case_id: str) -> List[Evidence]:
        self.cases.get_case(case_id)
        return (
            self.db.query(Evidence)
            .filter(Evidence.case_id == case_id)
            .order_by(Evidence.created_at.asc())
            .all()
        )

    def verify(self, evidence_id: str, verified_by: str) -> Evidence:
        """Mark evidence verified if its content still matches the stored checksum."""
        evidence = self.db.query(Evidence).filter(Evidence.id == evidence_id).first()
        if not evidence:
            raise NotFoundError(f"Evidence {evidence_id} not found")
        if evidence.status != EvidenceStatus.PENDING_REVIEW:
            raise StateConflict(f"Evidence {evidence_id} was already reviewed ({evidence.status.value})")

        case = self.cases.lock_case(evidence.case_id)
        intact = content_checksum(evidence.content) == evidence.checksum
        evidence.status = EvidenceStatus.VERIFIED if intact else EvidenceStatus.REJECTED
        evidence.verified_at = utcnow()
        evidence.verified_by = verified_by

        record_event(
            self.db, case.id, TimelineEventType.EVIDENCE_VERIFIED,
            f"Evidence {'verified' if intact else 'rejected (checksum mismatch)'}: {evidence.title}",
            actor_id=verified_by, actor_role="arbitrator",
            payload={"evidence_id": evidence.id, "status": evidence.status},
        )
        if not intact:
            logger.warning("Evidence %s failed checksum verification", evidence.id)
        return evidence
