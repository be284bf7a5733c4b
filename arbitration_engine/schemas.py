"""
Pydantic Schemas for the Arbitration API
========================================

Request bodies and response models. Responses are built from ORM rows with
``from_attributes``; sealed votes are rendered through ``VoteResponse.from_vote``
so an unrevealed decision never leaves the service.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .db.models import (
    AppealStatus, ArbitratorStatus, ArbitratorTier, AssignmentStatus, DisputePriority,
    DisputeStatus, DisputeType, EvidenceStatus, EvidenceType, ResolutionPath,
    SettlementStatus, TimelineEventType, Vote, VoteDecision,
)


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# REQUESTS
# =============================================================================

class CreateDisputeRequest(BaseModel):
    """Open a dispute over an escrow transaction"""
    type: DisputeType
    disputed_amount: float = Field(..., gt=0, description="Amount in dispute")
    initiated_by: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    escrow_id: Optional[str] = None
    respondent_id: Optional[str] = None


class EscalateRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    actor_id: Optional[str] = None


class ResolveRequest(BaseModel):
    resolution: str = Field(..., min_length=1)
    resolved_by: str = Field(..., min_length=1)
    settle: bool = True
    ruling: Optional[VoteDecision] = None
    compensation_amount: Optional[float] = Field(None, gt=0)
    compensation_recipient: Optional[str] = None


class ActorRequest(BaseModel):
    """Body for actions that only need to know who acted"""
    actor_id: Optional[str] = None


class AssignmentActionRequest(BaseModel):
    arbitrator_id: str = Field(..., min_length=1)


class DeclineAssignmentRequest(AssignmentActionRequest):
    reason: Optional[str] = None


class DecisionRequest(AssignmentActionRequest):
    ruling: VoteDecision
    reasoning: str = Field(..., min_length=1)
    compensation: Optional[float] = Field(None, gt=0)
    recipient: Optional[str] = None


class SubmitVoteRequest(BaseModel):
    arbitrator_id: str = Field(..., min_length=1)
    decision: VoteDecision
    reasoning: str = Field(..., min_length=1)
    nonce: str = Field(..., min_length=1, description="Secret kept by the arbitrator until reveal")


class RevealVoteRequest(BaseModel):
    arbitrator_id: str = Field(..., min_length=1)
    nonce: str = Field(..., min_length=1)


class FileAppealRequest(BaseModel):
    filed_by: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class ReviewAppealRequest(BaseModel):
    reviewer_id: str = Field(..., min_length=1)
    approve: bool
    notes: Optional[str] = None


class SubmitEvidenceRequest(BaseModel):
    submitted_by: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    evidence_type: EvidenceType = EvidenceType.DOCUMENT
    description: Optional[str] = None


class VerifyEvidenceRequest(BaseModel):
    verified_by: str = Field(..., min_length=1)


class RegisterArbitratorRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    tier: ArbitratorTier = ArbitratorTier.JUNIOR
    specializations: List[DisputeType] = Field(default_factory=list)
    max_caseload: Optional[int] = Field(None, ge=1)
    display_name: Optional[str] = None
    reputation_score: Optional[float] = None


class ArbitratorStatusRequest(BaseModel):
    status: ArbitratorStatus


# =============================================================================
# RESPONSES
# =============================================================================

class AssignmentResponse(ORMModel):
    id: str
    case_id: str
    arbitrator_id: str
    tier: int
    status: AssignmentStatus
    assigned_at: datetime
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    deadline: datetime
    decision: Optional[Dict[str, Any]] = None
    decline_reason: Optional[str] = None


class DisputeCaseResponse(ORMModel):
    id: str
    case_number: str
    escrow_id: Optional[str] = None
    type: DisputeType
    status: DisputeStatus
    priority: DisputePriority
    initiated_by: str
    respondent_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    disputed_amount: float
    current_tier: int
    panel_size: int
    voting_round: int
    appeal_count: int
    deadline: datetime
    auto_escalation_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    resolution: Optional[str] = None
    resolution_path: Optional[ResolutionPath] = None
    resolution_ruling: Optional[VoteDecision] = None
    compensation_amount: Optional[float] = None
    compensation_recipient: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    voting_results: Optional[Dict[str, Any]] = None

    settlement_status: SettlementStatus
    settlement_reference: Optional[str] = None
    settlement_attempts: int = 0
    settlement_error: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    assignments: List[AssignmentResponse] = []


class DisputeListResponse(BaseModel):
    items: List[DisputeCaseResponse]
    total: int
    page: int
    limit: int


class ArbitratorResponse(ORMModel):
    id: str
    user_id: str
    display_name: Optional[str] = None
    status: ArbitratorStatus
    tier: ArbitratorTier
    specializations: List[str] = []
    reputation_score: float
    total_cases: int
    resolved_cases: int
    current_caseload: int
    max_caseload: int
    last_active_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class VoteResponse(BaseModel):
    id: str
    case_id: str
    arbitrator_id: str
    round: int
    weight: float
    commit_hash: str
    committed_at: datetime
    is_revealed: bool
    revealed_at: Optional[datetime] = None
    decision: Optional[VoteDecision] = None
    reasoning: Optional[str] = None

    @classmethod
    def from_vote(cls, vote: Vote) -> "VoteResponse":
        return cls(
            id=vote.id,
            case_id=vote.case_id,
            arbitrator_id=vote.arbitrator_id,
            round=vote.round,
            weight=vote.weight,
            commit_hash=vote.commit_hash,
            committed_at=vote.committed_at,
            is_revealed=vote.is_revealed,
            revealed_at=vote.revealed_at,
            decision=vote.decision if vote.is_revealed else None,
            reasoning=vote.reasoning if vote.is_revealed else None,
        )


class TallyResponse(BaseModel):
    decision: VoteDecision
    total_weight: float
    winning_weight: float
    winning_percentage: float
    breakdown: Dict[str, float]
    vote_count: int


class TimelineEventResponse(ORMModel):
    id: str
    case_id: str
    event_type: TimelineEventType
    title: str
    actor_id: Optional[str] = None
    actor_role: str
    payload: Optional[Dict[str, Any]] = None
    created_at: datetime


class AppealResponse(ORMModel):
    id: str
    case_id: str
    filed_by: str
    reason: str
    status: AppealStatus
    from_tier: int
    previous_resolution: Optional[str] = None
    previous_ruling: Optional[VoteDecision] = None
    previous_resolution_path: Optional[ResolutionPath] = None
    filed_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None


class EvidenceResponse(ORMModel):
    id: str
    case_id: str
    submitted_by: str
    evidence_type: EvidenceType
    title: str
    description: Optional[str] = None
    content: str
    checksum: str
    status: EvidenceStatus
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    created_at: datetime


class SweepResponse(BaseModel):
    expired: int
    escalated: int
    assignments_expired: int
    default_resolutions: int
    settlements_requeued: int
    closed: int
    skipped: int
    errors: int


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    timestamp: datetime
