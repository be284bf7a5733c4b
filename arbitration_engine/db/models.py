"""
SQLAlchemy Models for Database
==============================

Schema for the dispute arbitration engine:
- Arbitrator registry (tier, specializations, reputation, caseload)
- Dispute cases (tiered lifecycle, deadlines, resolution, settlement)
- Assignments linking one case tier to one arbitrator
- Commit-reveal votes
- Append-only timeline
- Appeals and evidence

The case row is the unit of transactional consistency: assignments, votes,
timeline events, appeals and evidence are owned child rows addressed by
case_id. Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Text, Integer, Float, Boolean, DateTime, Enum, ForeignKey,
    Numeric, UniqueConstraint, Index, JSON, CheckConstraint, event, text
)
from sqlalchemy.orm import relationship, declarative_base
import uuid

# Use JSON for cross-database compatibility (works with both PostgreSQL and SQLite)
JSONB = JSON

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================

class DisputeType(str, enum.Enum):
    """What the complaint is about"""
    PAYMENT_DISPUTE = "payment_dispute"
    DELIVERY_DISPUTE = "delivery_dispute"
    QUALITY_DISPUTE = "quality_dispute"
    BREACH_OF_CONTRACT = "breach_of_contract"
    FRAUD_CLAIM = "fraud_claim"
    OTHER = "other"


class DisputePriority(str, enum.Enum):
    """Case priority, drives deadlines and panel size"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DisputeStatus(str, enum.Enum):
    """Case lifecycle status"""
    OPEN = "open"
    ARBITRATION = "arbitration"
    UNDER_REVIEW = "under_review"
    EVIDENCE_COLLECTION = "evidence_collection"
    VOTING = "voting"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    APPEALED = "appealed"
    CLOSED = "closed"
    EXPIRED = "expired"


# In-progress statuses: escalation and resolution are allowed from these
ACTIVE_STATUSES = frozenset({
    DisputeStatus.OPEN,
    DisputeStatus.ARBITRATION,
    DisputeStatus.UNDER_REVIEW,
    DisputeStatus.EVIDENCE_COLLECTION,
    DisputeStatus.VOTING,
    DisputeStatus.ESCALATED,
})

FINAL_STATUSES = frozenset({
    DisputeStatus.RESOLVED,
    DisputeStatus.CLOSED,
    DisputeStatus.EXPIRED,
})


class ArbitratorStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    PENDING = "pending"


class ArbitratorTier(str, enum.Enum):
    """Arbitrator seniority, ordered junior < senior < expert < master"""
    JUNIOR = "junior"
    SENIOR = "senior"
    EXPERT = "expert"
    MASTER = "master"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    @classmethod
    def from_rank(cls, rank: int) -> "ArbitratorTier":
        rank = max(0, min(rank, len(_TIER_ORDER) - 1))
        return _TIER_ORDER[rank]

    def at_or_above(self):
        return list(_TIER_ORDER[self.rank:])


_TIER_ORDER = [
    ArbitratorTier.JUNIOR,
    ArbitratorTier.SENIOR,
    ArbitratorTier.EXPERT,
    ArbitratorTier.MASTER,
]


class AssignmentStatus(str, enum.Enum):
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ESCALATED = "escalated"


OPEN_ASSIGNMENT_STATUSES = frozenset({AssignmentStatus.ASSIGNED, AssignmentStatus.ACCEPTED})


class VoteDecision(str, enum.Enum):
    FAVOR_CLAIMANT = "favor_claimant"
    FAVOR_RESPONDENT = "favor_respondent"
    PARTIAL_CLAIMANT = "partial_claimant"
    PARTIAL_RESPONDENT = "partial_respondent"
    ABSTAIN = "abstain"
    REQUIRE_MORE_EVIDENCE = "require_more_evidence"


class TimelineEventType(str, enum.Enum):
    DISPUTE_CREATED = "dispute_created"
    EVIDENCE_SUBMITTED = "evidence_submitted"
    EVIDENCE_VERIFIED = "evidence_verified"
    ARBITRATOR_ASSIGNED = "arbitrator_assigned"
    ARBITRATOR_ACCEPTED = "arbitrator_accepted"
    ARBITRATOR_DECLINED = "arbitrator_declined"
    ASSIGNMENT_EXPIRED = "assignment_expired"
    DECISION_MADE = "decision_made"
    VOTING_STARTED = "voting_started"
    VOTE_SUBMITTED = "vote_submitted"
    VOTE_REVEALED = "vote_revealed"
    VOTING_COMPLETED = "voting_completed"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    SETTLEMENT_EXECUTED = "settlement_executed"
    SETTLEMENT_FAILED = "settlement_failed"
    SETTLEMENT_SKIPPED = "settlement_skipped"
    APPEAL_FILED = "appeal_filed"
    APPEAL_REVIEWED = "appeal_reviewed"
    STATUS_CHANGED = "status_changed"
    EXPIRED = "expired"
    CLOSED = "closed"


class ResolutionPath(str, enum.Enum):
    """How a resolution cycle ended (exactly one per cycle)"""
    DECISION = "decision"
    VOTE_TALLY = "vote_tally"
    EXPIRY_DEFAULT = "expiry_default"
    ADMINISTRATIVE = "administrative"


class SettlementStatus(str, enum.Enum):
    NOT_REQUESTED = "not_requested"
    REQUESTED = "requested"
    SKIPPED = "skipped"
    PENDING_RETRY = "pending_retry"
    SETTLED = "settled"
    HELD = "held"  # ruling under appeal; resumes if the appeal fails


DUE_SETTLEMENT_STATUSES = frozenset({SettlementStatus.REQUESTED, SettlementStatus.PENDING_RETRY})


class AppealStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EvidenceType(str, enum.Enum):
    DOCUMENT = "document"
    IMAGE = "image"
    SCREENSHOT = "screenshot"
    CONTRACT = "contract"
    COMMUNICATION = "communication"
    TRANSACTION_PROOF = "transaction_proof"
    OTHER = "other"


class EvidenceStatus(str, enum.Enum):
    PENDING_REVIEW = "pending_review"
    VERIFIED = "verified"
    REJECTED = "rejected"


# =============================================================================
# ARBITRATOR REGISTRY
# =============================================================================

class Arbitrator(Base):
    """Registered arbitrator"""
    __tablename__ = "arbitrators"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, unique=True)  # identity reference (external user service)
    display_name = Column(String(255), nullable=True)
    status = Column(Enum(ArbitratorStatus), default=ArbitratorStatus.ACTIVE, nullable=False)
    tier = Column(Enum(ArbitratorTier), default=ArbitratorTier.JUNIOR, nullable=False)
    specializations = Column(JSONB, default=list)  # list of DisputeType values; empty = generalist

    reputation_score = Column(Float, default=2.5, nullable=False)
    total_cases = Column(Integer, default=0, nullable=False)
    resolved_cases = Column(Integer, default=0, nullable=False)
    current_caseload = Column(Integer, default=0, nullable=False)
    max_caseload = Column(Integer, default=3, nullable=False)

    last_active_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    extra_data = Column(JSONB, default=dict)  # Note: 'metadata' is reserved by SQLAlchemy

    __table_args__ = (
        CheckConstraint("current_caseload >= 0", name="ck_arbitrator_caseload_nonneg"),
        Index("ix_arbitrator_status_tier", "status", "tier"),
    )

    # Relationships
    assignments = relationship("Assignment", back_populates="arbitrator")
    votes = relationship("Vote", back_populates="arbitrator")

    @property
    def success_rate(self) -> float:
        """Resolved share of all closed-out cases (0-1)."""
        if not self.total_cases:
            return 0.0
        return self.resolved_cases / self.total_cases


# =============================================================================
# DISPUTE CASE AGGREGATE
# =============================================================================

class DisputeCase(Base):
    """Dispute case over one escrow transaction"""
    __tablename__ = "dispute_cases"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_number = Column(String(32), nullable=False, unique=True)
    escrow_id = Column(String(36), nullable=True)
    type = Column(Enum(DisputeType), nullable=False)
    status = Column(Enum(DisputeStatus), default=DisputeStatus.OPEN, nullable=False)
    priority = Column(Enum(DisputePriority), default=DisputePriority.MEDIUM, nullable=False)

    initiated_by = Column(String(36), nullable=False)
    respondent_id = Column(String(36), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    disputed_amount = Column(Numeric(15, 2, asdecimal=False), nullable=False)

    current_tier = Column(Integer, default=1, nullable=False)
    panel_size = Column(Integer, default=1, nullable=False)
    voting_round = Column(Integer, default=0, nullable=False)
    appeal_count = Column(Integer, default=0, nullable=False)

    deadline = Column(DateTime, nullable=False)
    auto_escalation_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)

    # Resolution
    resolution = Column(Text, nullable=True)
    resolution_path = Column(Enum(ResolutionPath), nullable=True)
    resolution_ruling = Column(Enum(VoteDecision), nullable=True)
    compensation_amount = Column(Numeric(15, 2, asdecimal=False), nullable=True)
    compensation_recipient = Column(String(36), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(36), nullable=True)
    voting_results = Column(JSONB, nullable=True)

    # Settlement (external ledger / contract)
    settlement_status = Column(Enum(SettlementStatus), default=SettlementStatus.NOT_REQUESTED, nullable=False)
    settlement_reference = Column(String(255), nullable=True)
    settlement_attempts = Column(Integer, default=0, nullable=False)
    settlement_last_attempt_at = Column(DateTime, nullable=True)
    settlement_error = Column(Text, nullable=True)

    # Scheduler claim watermark
    swept_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    extra_data = Column(JSONB, default=dict)

    __table_args__ = (
        CheckConstraint("current_tier >= 1 AND current_tier <= 3", name="ck_case_tier_range"),
        Index("ix_case_status_priority", "status", "priority", "created_at"),
        Index("ix_case_escalation", "status", "auto_escalation_at"),
        Index("ix_case_deadline", "status", "deadline"),
    )

    # Optimistic versioning: concurrent writers on one case conflict instead of interleaving
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    assignments = relationship("Assignment", back_populates="case", cascade="all, delete-orphan",
                               order_by="Assignment.assigned_at")
    votes = relationship("Vote", back_populates="case", cascade="all, delete-orphan")
    timeline = relationship("TimelineEvent", back_populates="case", cascade="all, delete-orphan",
                            order_by="TimelineEvent.created_at")
    appeals = relationship("Appeal", back_populates="case", cascade="all, delete-orphan")
    evidence = relationship("Evidence", back_populates="case", cascade="all, delete-orphan")

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES


class Assignment(Base):
    """One arbitrator assigned to one case tier"""
    __tablename__ = "dispute_assignments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("dispute_cases.id", ondelete="CASCADE"), nullable=False)
    arbitrator_id = Column(String(36), ForeignKey("arbitrators.id", ondelete="CASCADE"), nullable=False)
    tier = Column(Integer, nullable=False)
    status = Column(Enum(AssignmentStatus), default=AssignmentStatus.ASSIGNED, nullable=False)

    assigned_at = Column(DateTime, default=utcnow, nullable=False)
    accepted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    deadline = Column(DateTime, nullable=False)

    # {ruling, reasoning, compensation?, recipient?}
    decision = Column(JSONB, nullable=True)
    decline_reason = Column(Text, nullable=True)

    # Bookkeeping so caseload and reputation are touched exactly once
    caseload_released = Column(Boolean, default=False, nullable=False)
    reputation_applied = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_assignment_case_tier", "case_id", "tier"),
        Index("ix_assignment_status_deadline", "status", "deadline"),
        Index(
            "uq_assignment_open_per_arbitrator",
            "case_id", "tier", "arbitrator_id",
            unique=True,
            postgresql_where=text("status IN ('ASSIGNED', 'ACCEPTED')"),
            sqlite_where=text("status IN ('ASSIGNED', 'ACCEPTED')"),
        ),
    )

    # Relationships
    case = relationship("DisputeCase", back_populates="assignments")
    arbitrator = relationship("Arbitrator", back_populates="assignments")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ASSIGNMENT_STATUSES


class Vote(Base):
    """Sealed (commit-reveal) arbitrator vote"""
    __tablename__ = "arbitration_votes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("dispute_cases.id", ondelete="CASCADE"), nullable=False)
    arbitrator_id = Column(String(36), ForeignKey("arbitrators.id", ondelete="CASCADE"), nullable=False)
    assignment_id = Column(String(36), ForeignKey("dispute_assignments.id", ondelete="SET NULL"), nullable=True)
    round = Column(Integer, nullable=False, default=1)

    decision = Column(Enum(VoteDecision), nullable=False)
    reasoning = Column(Text, nullable=False, default="")
    weight = Column(Float, nullable=False, default=1.0)
    commit_hash = Column(String(64), nullable=False)

    committed_at = Column(DateTime, default=utcnow, nullable=False)
    is_revealed = Column(Boolean, default=False, nullable=False)
    revealed_at = Column(DateTime, nullable=True)
    reputation_applied = Column(Boolean, default=False, nullable=False)

    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("case_id", "arbitrator_id", "round", name="uq_vote_case_arbitrator_round"),
        Index("ix_vote_case_round", "case_id", "round"),
    )

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    case = relationship("DisputeCase", back_populates="votes")
    arbitrator = relationship("Arbitrator", back_populates="votes")


class TimelineEvent(Base):
    """Append-only case history entry"""
    __tablename__ = "dispute_timeline"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("dispute_cases.id", ondelete="CASCADE"), nullable=False)
    event_type = Column(Enum(TimelineEventType), nullable=False)
    title = Column(String(255), nullable=False)
    actor_id = Column(String(36), nullable=True)
    actor_role = Column(String(50), nullable=False, default="system")  # user/arbitrator/system/admin
    payload = Column(JSONB, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_timeline_case", "case_id", "created_at"),
    )

    case = relationship("DisputeCase", back_populates="timeline")


@event.listens_for(TimelineEvent, "before_update")
def _timeline_is_write_once(mapper, connection, target):
    raise RuntimeError(f"Timeline event {target.id} is immutable")


class Appeal(Base):
    """Request to re-review a resolved case at the next tier"""
    __tablename__ = "dispute_appeals"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("dispute_cases.id", ondelete="CASCADE"), nullable=False)
    filed_by = Column(String(36), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(Enum(AppealStatus), default=AppealStatus.PENDING, nullable=False)

    from_tier = Column(Integer, nullable=False)
    previous_resolution = Column(Text, nullable=True)
    previous_ruling = Column(Enum(VoteDecision), nullable=True)
    previous_resolution_path = Column(Enum(ResolutionPath), nullable=True)

    filed_at = Column(DateTime, default=utcnow, nullable=False)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(36), nullable=True)
    review_notes = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_appeal_case", "case_id", "filed_at"),
    )

    case = relationship("DisputeCase", back_populates="appeals")


class Evidence(Base):
    """Evidence item attached to a case"""
    __tablename__ = "dispute_evidence"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("dispute_cases.id", ondelete="CASCADE"), nullable=False)
    submitted_by = Column(String(36), nullable=False)
    evidence_type = Column(Enum(EvidenceType), default=EvidenceType.DOCUMENT, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    content = Column(Text, nullable=False)
    checksum = Column(String(64), nullable=False)  # sha256 of content
    status = Column(Enum(EvidenceStatus), default=EvidenceStatus.PENDING_REVIEW, nullable=False)
    verified_at = Column(DateTime, nullable=True)
    verified_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_evidence_case", "case_id", "created_at"),
    )

    case = relationship("DisputeCase", back_populates="evidence")
