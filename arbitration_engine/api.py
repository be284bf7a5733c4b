"""
Arbitration Engine API
======================

FastAPI endpoints over the dispute arbitration engine.

Disputes:
- POST /api/v1/disputes                          - Open a dispute
- GET  /api/v1/disputes                          - List disputes
- GET  /api/v1/disputes/{case_id}                - Get dispute
- GET  /api/v1/disputes/{case_id}/timeline       - Case history
- POST /api/v1/disputes/{case_id}/escalate       - Escalate one tier
- POST /api/v1/disputes/{case_id}/resolve        - Administrative resolution
- POST /api/v1/disputes/{case_id}/close          - Close after the appeal window
- POST /api/v1/disputes/{case_id}/voting/start   - Open a voting round
- POST /api/v1/disputes/{case_id}/votes          - Commit a sealed vote
- POST /api/v1/disputes/{case_id}/votes/reveal   - Reveal a vote
- GET  /api/v1/disputes/{case_id}/votes          - Current round votes
- GET  /api/v1/disputes/{case_id}/tally          - Weighted tally of revealed votes
- POST /api/v1/disputes/{case_id}/appeals        - File an appeal
- GET  /api/v1/disputes/{case_id}/appeals        - List appeals
- POST /api/v1/disputes/{case_id}/evidence       - Submit evidence
- GET  /api/v1/disputes/{case_id}/evidence       - List evidence

Assignments, appeals, evidence:
- POST /api/v1/assignments/{id}/accept | decline | decision
- POST /api/v1/appeals/{appeal_id}/review
- POST /api/v1/evidence/{evidence_id}/verify

Arbitrators:
- POST /api/v1/arbitrators, GET /api/v1/arbitrators, GET /api/v1/arbitrators/{id}
- GET  /api/v1/arbitrators/{id}/metrics
- POST /api/v1/arbitrators/{id}/status | promote

Operations:
- POST /api/v1/scheduler/sweep                   - Run one deadline sweep
- GET  /api/v1/queues                            - Queue lengths
- GET  /api/v1/jobs/{job_id}                     - Queue job status
- GET  /health                                   - Health check

Run with:
    uvicorn arbitration_engine.api:app --host 0.0.0.0 --port 8000
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .appeals import AppealService
from .cases import DisputeService
from .config import get_settings
from .db.models import (
    ArbitratorStatus, ArbitratorTier, DisputePriority, DisputeStatus, DisputeType
)
from .db.session import get_db_session, init_db
from .errors import ArbitrationError
from .evidence import EvidenceService
from .registry import ArbitratorRegistry
from .scheduler import run_sweep
from .schemas import (
    ActorRequest, AppealResponse, ArbitratorResponse, ArbitratorStatusRequest,
    AssignmentActionRequest, AssignmentResponse, CreateDisputeRequest, DecisionRequest,
    DeclineAssignmentRequest, DisputeCaseResponse, DisputeListResponse, EscalateRequest,
    EvidenceResponse, FileAppealRequest, HealthResponse, RegisterArbitratorRequest,
    ResolveRequest, RevealVoteRequest, ReviewAppealRequest, SubmitEvidenceRequest,
    SubmitVoteRequest, SweepResponse, TallyResponse, TimelineEventResponse,
    VerifyEvidenceRequest, VoteResponse,
)
from .timeline import list_events
from .voting import VotingEngine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Arbitration Engine",
    description="Tiered dispute arbitration for escrow transactions",
    version=get_settings().service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)

router = APIRouter(prefix="/api/v1")


@app.exception_handler(ArbitrationError)
async def arbitration_error_handler(request: Request, exc: ArbitrationError):
    if exc.http_status >= 500:
        logger.warning(f"{request.method} {request.url.path} failed downstream: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({
            "error": "validation_error",
            "detail": "Request body failed validation",
            "context": {"errors": exc.errors()},
        }),
    )


@app.on_event("startup")
async def startup():
    init_db()
    for warning in get_settings().validate_collaborators():
        logger.warning(warning)
    logger.info("Arbitration engine started")


# =============================================================================
# Disputes
# =============================================================================

@router.post("/disputes", response_model=DisputeCaseResponse, status_code=201, tags=["Disputes"])
def create_dispute(body: CreateDisputeRequest):
    with get_db_session() as db:
        case = DisputeService(db).create_case(**body.model_dump())
        return DisputeCaseResponse.model_validate(case)


@router.get("/disputes", response_model=DisputeListResponse, tags=["Disputes"])
def list_disputes(
    status: Optional[DisputeStatus] = None,
    type: Optional[DisputeType] = None,
    priority: Optional[DisputePriority] = None,
    initiated_by: Optional[str] = None,
    tier: Optional[int] = Query(None, ge=1, le=3),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
):
    with get_db_session() as db:
        cases, total = DisputeService(db).list_cases(
            status=status, dispute_type=type, priority=priority,
            initiated_by=initiated_by, tier=tier, page=page, limit=limit,
        )
        items = [DisputeCaseResponse.model_validate(c) for c in cases]
    return DisputeListResponse(items=items, total=total, page=page, limit=limit)


@router.get("/disputes/{case_id}", response_model=DisputeCaseResponse, tags=["Disputes"])
def get_dispute(case_id: str):
    with get_db_session() as db:
        return DisputeCaseResponse.model_validate(DisputeService(db).get_case(case_id))


@router.get("/disputes/{case_id}/timeline", response_model=List[TimelineEventResponse], tags=["Disputes"])
def get_timeline(case_id: str):
    with get_db_session() as db:
        DisputeService(db).get_case(case_id)
        return [TimelineEventResponse.model_validate(e) for e in list_events(db, case_id)]


@router.post("/disputes/{case_id}/escalate", response_model=DisputeCaseResponse, tags=["Disputes"])
def escalate_dispute(case_id: str, body: EscalateRequest):
    with get_db_session() as db:
        case = DisputeService(db).escalate(case_id, body.reason, actor_id=body.actor_id)
        return DisputeCaseResponse.model_validate(case)


@router.post("/disputes/{case_id}/resolve", response_model=DisputeCaseResponse, tags=["Disputes"])
def resolve_dispute(case_id: str, body: ResolveRequest):
    with get_db_session() as db:
        case = DisputeService(db).resolve(case_id, **body.model_dump())
        return DisputeCaseResponse.model_validate(case)


@router.post("/disputes/{case_id}/close", response_model=DisputeCaseResponse, tags=["Disputes"])
def close_dispute(case_id: str, body: ActorRequest):
    with get_db_session() as db:
        case = DisputeService(db).close_case(case_id, actor_id=body.actor_id)
        return DisputeCaseResponse.model_validate(case)


# =============================================================================
# Voting
# =============================================================================

@router.post("/disputes/{case_id}/voting/start", response_model=DisputeCaseResponse, tags=["Voting"])
def start_voting(case_id: str, body: ActorRequest):
    with get_db_session() as db:
        case = DisputeService(db).start_voting(case_id, actor_id=body.actor_id)
        return DisputeCaseResponse.model_validate(case)


@router.post("/disputes/{case_id}/votes", response_model=VoteResponse, status_code=201, tags=["Voting"])
def submit_vote(case_id: str, body: SubmitVoteRequest):
    with get_db_session() as db:
        vote = VotingEngine(db).submit_vote(
            case_id, body.arbitrator_id, body.decision, body.reasoning, body.nonce
        )
        return VoteResponse.from_vote(vote)


@router.post("/disputes/{case_id}/votes/reveal", response_model=VoteResponse, tags=["Voting"])
def reveal_vote(case_id: str, body: RevealVoteRequest):
    with get_db_session() as db:
        vote = VotingEngine(db).reveal_vote(case_id, body.arbitrator_id, body.nonce)
        return VoteResponse.from_vote(vote)


@router.get("/disputes/{case_id}/votes", response_model=List[VoteResponse], tags=["Voting"])
def list_votes(case_id: str):
    with get_db_session() as db:
        return [VoteResponse.from_vote(v) for v in VotingEngine(db).list_votes(case_id)]


@router.get("/disputes/{case_id}/tally", response_model=TallyResponse, tags=["Voting"])
def get_tally(case_id: str):
    with get_db_session() as db:
        result = VotingEngine(db).tally(case_id)
    return TallyResponse(**result.to_dict())


# =============================================================================
# Appeals
# =============================================================================

@router.post("/disputes/{case_id}/appeals", response_model=AppealResponse, status_code=201, tags=["Appeals"])
def file_appeal(case_id: str, body: FileAppealRequest):
    with get_db_session() as db:
        appeal = AppealService(db).file_appeal(case_id, body.filed_by, body.reason)
        return AppealResponse.model_validate(appeal)


@router.get("/disputes/{case_id}/appeals", response_model=List[AppealResponse], tags=["Appeals"])
def list_appeals(case_id: str):
    with get_db_session() as db:
        return [AppealResponse.model_validate(a) for a in AppealService(db).list_appeals(case_id)]


@router.post("/appeals/{appeal_id}/review", response_model=AppealResponse, tags=["Appeals"])
def review_appeal(appeal_id: str, body: ReviewAppealRequest):
    with get_db_session() as db:
        appeal = AppealService(db).review_appeal(appeal_id, body.reviewer_id, body.approve, body.notes)
        return AppealResponse.model_validate(appeal)


# =============================================================================
# Evidence
# =============================================================================

@router.post("/disputes/{case_id}/evidence", response_model=EvidenceResponse, status_code=201, tags=["Evidence"])
def submit_evidence(case_id: str, body: SubmitEvidenceRequest):
    with get_db_session() as db:
        evidence = EvidenceService(db).submit(case_id, **body.model_dump())
        return EvidenceResponse.model_validate(evidence)


@router.get("/disputes/{case_id}/evidence", response_model=List[EvidenceResponse], tags=["Evidence"])
def list_evidence(case_id: str):
    with get_db_session() as db:
        return [EvidenceResponse.model_validate(e) for e in EvidenceService(db).list(case_id)]


@router.post("/evidence/{evidence_id}/verify", response_model=EvidenceResponse, tags=["Evidence"])
def verify_evidence(evidence_id: str, body: VerifyEvidenceRequest):
    with get_db_session() as db:
        evidence = EvidenceService(db).verify(evidence_id, body.verified_by)
        return EvidenceResponse.model_validate(evidence)


# =============================================================================
# Assignments
# =============================================================================

@router.post("/assignments/{assignment_id}/accept", response_model=AssignmentResponse, tags=["Assignments"])
def accept_assignment(assignment_id: str, body: AssignmentActionRequest):
    with get_db_session() as db:
        assignment = DisputeService(db).accept_assignment(assignment_id, body.arbitrator_id)
        return AssignmentResponse.model_validate(assignment)


@router.post("/assignments/{assignment_id}/decline", response_model=AssignmentResponse, tags=["Assignments"])
def decline_assignment(assignment_id: str, body: DeclineAssignmentRequest):
    with get_db_session() as db:
        assignment = DisputeService(db).decline_assignment(assignment_id, body.arbitrator_id, body.reason)
        return AssignmentResponse.model_validate(assignment)


@router.post("/assignments/{assignment_id}/decision", response_model=AssignmentResponse, tags=["Assignments"])
def submit_decision(assignment_id: str, body: DecisionRequest):
    decision = body.model_dump(exclude={"arbitrator_id"}, exclude_none=True)
    with get_db_session() as db:
        assignment = DisputeService(db).submit_decision(assignment_id, decision, body.arbitrator_id)
        return AssignmentResponse.model_validate(assignment)


# =============================================================================
# Arbitrators
# =============================================================================

@router.post("/arbitrators", response_model=ArbitratorResponse, status_code=201, tags=["Arbitrators"])
def register_arbitrator(body: RegisterArbitratorRequest):
    with get_db_session() as db:
        arbitrator = ArbitratorRegistry(db).register(**body.model_dump())
        return ArbitratorResponse.model_validate(arbitrator)


@router.get("/arbitrators", response_model=List[ArbitratorResponse], tags=["Arbitrators"])
def list_arbitrators(
    status: Optional[ArbitratorStatus] = None,
    tier: Optional[ArbitratorTier] = None,
    specialization: Optional[DisputeType] = None,
):
    with get_db_session() as db:
        arbitrators = ArbitratorRegistry(db).list(status=status, tier=tier, specialization=specialization)
        return [ArbitratorResponse.model_validate(a) for a in arbitrators]


@router.get("/arbitrators/{arbitrator_id}", response_model=ArbitratorResponse, tags=["Arbitrators"])
def get_arbitrator(arbitrator_id: str):
    with get_db_session() as db:
        return ArbitratorResponse.model_validate(ArbitratorRegistry(db).get(arbitrator_id))


@router.get("/arbitrators/{arbitrator_id}/metrics", tags=["Arbitrators"])
def get_arbitrator_metrics(arbitrator_id: str):
    with get_db_session() as db:
        return jsonable_encoder(ArbitratorRegistry(db).metrics(arbitrator_id))


@router.post("/arbitrators/{arbitrator_id}/status", response_model=ArbitratorResponse, tags=["Arbitrators"])
def set_arbitrator_status(arbitrator_id: str, body: ArbitratorStatusRequest):
    with get_db_session() as db:
        arbitrator = ArbitratorRegistry(db).set_status(arbitrator_id, body.status)
        return ArbitratorResponse.model_validate(arbitrator)


@router.post("/arbitrators/{arbitrator_id}/promote", response_model=ArbitratorResponse, tags=["Arbitrators"])
def promote_arbitrator(arbitrator_id: str):
    with get_db_session() as db:
        return ArbitratorResponse.model_validate(ArbitratorRegistry(db).promote(arbitrator_id))


# =============================================================================
# Operations
# =============================================================================

@router.post("/scheduler/sweep", response_model=SweepResponse, tags=["Operations"])
def trigger_sweep():
    return SweepResponse(**run_sweep().to_dict())


@router.get("/queues", tags=["Operations"])
def queue_stats():
    from redis.exceptions import RedisError
    from .jobs.queue import get_queue_stats

    try:
        return get_queue_stats()
    except RedisError as e:
        logger.warning(f"Queue stats unavailable: {e}")
        return JSONResponse(
            status_code=503,
            content={"error": "downstream_error", "detail": "Job queue unavailable"},
        )


@router.get("/jobs/{job_id}", tags=["Operations"])
def get_job(job_id: str):
    from .jobs.queue import get_job_status

    return jsonable_encoder(get_job_status(job_id))


app.include_router(router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check():
    """Health check endpoint"""
    database = "ok"
    try:
        with get_db_session() as db:
            db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Health check database probe failed: {e}")
        database = "unavailable"

    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=get_settings().service_version,
        database=database,
        timestamp=datetime.now(),
    )
