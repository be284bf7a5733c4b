"""
Database Package - PostgreSQL with SQLAlchemy
==============================================

Persistence layer for the arbitration engine.
"""

from .models import (
    Base,
    Arbitrator, DisputeCase, Assignment, Vote, TimelineEvent, Appeal, Evidence,
    DisputeType, DisputePriority, DisputeStatus, ArbitratorStatus, ArbitratorTier,
    AssignmentStatus, VoteDecision, TimelineEventType, ResolutionPath,
    SettlementStatus, AppealStatus, EvidenceType, EvidenceStatus,
    ACTIVE_STATUSES, DUE_SETTLEMENT_STATUSES, FINAL_STATUSES, OPEN_ASSIGNMENT_STATUSES,
    utcnow,
)
from .session import get_db_session, init_db, get_engine, reset_engine, after_commit

__all__ = [
    # Base
    "Base",
    # Records
    "Arbitrator", "DisputeCase", "Assignment", "Vote", "TimelineEvent", "Appeal", "Evidence",
    # Enums
    "DisputeType", "DisputePriority", "DisputeStatus", "ArbitratorStatus", "ArbitratorTier",
    "AssignmentStatus", "VoteDecision", "TimelineEventType", "ResolutionPath",
    "SettlementStatus", "AppealStatus", "EvidenceType", "EvidenceStatus",
    "ACTIVE_STATUSES", "DUE_SETTLEMENT_STATUSES", "FINAL_STATUSES", "OPEN_ASSIGNMENT_STATUSES",
    "utcnow",
    # Session
    "get_db_session", "init_db", "get_engine", "reset_engine", "after_commit",
]
