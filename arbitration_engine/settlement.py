"""
Resolution Executor
===================

Hands a resolved case to the settlement collaborator (ledger / smart-contract
service) and records the outcome.

The arbitration decision is already committed when settlement runs: a failed
or timed-out settlement flags the case ``pending_retry`` and is retried with
backoff from the RQ settlement queue. It never touches case status.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .config import get_settings
from .db.models import (
    DUE_SETTLEMENT_STATUSES, DisputeCase, DisputeStatus, SettlementStatus, TimelineEventType, utcnow,
)
from .db.session import get_db_session
from .errors import NotFoundError, SettlementError
from .timeline import record_event

logger = logging.getLogger(__name__)

# Statuses in which a case carries a ruling that may be settled
SETTLEABLE_CASE_STATUSES = frozenset({DisputeStatus.RESOLVED, DisputeStatus.CLOSED, DisputeStatus.EXPIRED})


class SettlementClient:
    """HTTP client for the settlement collaborator."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.settlement_url or "").rstrip("/")
        self.timeout = timeout if timeout is not None else settings.settlement_timeout

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def execute_resolution(self, case: Dict[str, Any], resolution: Dict[str, Any]) -> str:
        """
        Enact a resolution.

        Returns:
            Settlement reference (transaction hash / contract call id)

        Raises:
            SettlementError: on timeout, transport error, non-2xx, or a reply
                without a reference
        """
        body = {
            "dispute_id": case["id"],
            "case_number": case["case_number"],
            "escrow_id": case.get("escrow_id"),
            **resolution,
        }
        headers = {"Idempotency-Key": f"{case['id']}:{case.get('cycle', 0)}"}

        try:
            response = httpx.post(
                f"{self.base_url}/resolutions",
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise SettlementError(f"Settlement timed out after {self.timeout}s", {"case_id": case["id"]}) from e
        except httpx.HTTPError as e:
            raise SettlementError(f"Settlement call failed: {e}", {"case_id": case["id"]}) from e
        except ValueError as e:
            raise SettlementError("Settlement reply was not JSON", {"case_id": case["id"]}) from e

        reference = data.get("reference") or data.get("transaction_hash")
        if not reference:
            raise SettlementError("Settlement reply carried no reference", {"case_id": case["id"]})
        return str(reference)


def _settlement_payload(case: DisputeCase) -> Dict[str, Any]:
    return {
        "ruling": case.resolution_ruling.value if case.resolution_ruling else None,
        "resolution": case.resolution,
        "amount": case.compensation_amount,
        "recipient": case.compensation_recipient,
        "resolution_path": case.resolution_path.value if case.resolution_path else None,
    }


class ResolutionExecutor:
    """Runs settlement for one case in its own short transactions."""

    def __init__(self, client: Optional[SettlementClient] = None):
        self.client = client or SettlementClient()

    def execute(self, case_id: str) -> Optional[str]:
        """
        Settle ``case_id`` once.

        Returns the settlement reference, or None when nothing was due (no
        pending request, or the case no longer carries a ruling).

        Raises:
            SettlementError: the attempt failed; the case is flagged pending_retry
        """
        with get_db_session() as db:
            case = db.query(DisputeCase).filter(DisputeCase.id == case_id).first()
            if not case:
                raise NotFoundError(f"Case {case_id} not found")
            if case.settlement_status not in DUE_SETTLEMENT_STATUSES:
                logger.info("Case %s settlement is %s; nothing to do", case.case_number, case.settlement_status.value)
                return None
            if case.status not in SETTLEABLE_CASE_STATUSES or case.resolution_path is None:
                logger.warning(
                    "Case %s has no standing ruling (%s); settlement refused",
                    case.case_number, case.status.value,
                )
                return None

            if not self.client.enabled:
                case.settlement_status = SettlementStatus.SKIPPED
                record_event(
                    db, case.id, TimelineEventType.SETTLEMENT_SKIPPED,
                    "Settlement skipped (no settlement service configured)",
                )
                logger.warning("Settlement for case %s skipped: SETTLEMENT_URL not set", case.case_number)
                return None

            snapshot = {
                "id": case.id,
                "case_number": case.case_number,
                "escrow_id": case.escrow_id,
                "cycle": case.appeal_count,
            }
            payload = _settlement_payload(case)

        # No transaction or row lock is held across the external call
        try:
            reference = self.client.execute_resolution(snapshot, payload)
        except SettlementError as e:
            self._record_failure(case_id, e)
            raise

        self._record_success(case_id, reference)
        return reference

    def _record_success(self, case_id: str, reference: str) -> None:
        with get_db_session() as db:
            case = db.query(DisputeCase).filter(DisputeCase.id == case_id).with_for_update().one()
            if case.settlement_status == SettlementStatus.SETTLED:
                logger.warning(
                    "Case %s already settled as %s; ignoring duplicate reference %s",
                    case.case_number, case.settlement_reference, reference,
                )
                return
            case.settlement_status = SettlementStatus.SETTLED
            case.settlement_reference = reference
            case.settlement_attempts = (case.settlement_attempts or 0) + 1
            case.settlement_last_attempt_at = utcnow()
            case.settlement_error = None
            record_event(
                db, case.id, TimelineEventType.SETTLEMENT_EXECUTED,
                "Resolution settled",
                payload={"reference": reference},
            )
            logger.info("Case %s settled: %s", case.case_number, reference)

    def _record_failure(self, case_id: str, error: SettlementError) -> None:
        with get_db_session() as db:
            case = db.query(DisputeCase).filter(DisputeCase.id == case_id).with_for_update().one()
            if case.settlement_status not in DUE_SETTLEMENT_STATUSES:
                # Settled meanwhile, or held by an appeal
                return
            case.settlement_status = SettlementStatus.PENDING_RETRY
            case.settlement_attempts = (case.settlement_attempts or 0) + 1
            case.settlement_last_attempt_at = utcnow()
            case.settlement_error = error.message
            record_event(
                db, case.id, TimelineEventType.SETTLEMENT_FAILED,
                "Settlement failed; queued for retry",
                payload={"error": error.message, "attempt": case.settlement_attempts},
            )
            logger.warning("Settlement for case %s failed (attempt %d): %s",
                           case.case_number, case.settlement_attempts, error.message)


def request_settlement(case_id: str, executor: Optional[ResolutionExecutor] = None) -> Optional[str]:
    """
    First settlement attempt, run right after the resolving transaction commits.

    A failure is handed to the RQ settlement queue instead of being raised.
    """
    executor = executor or get_executor()
    try:
        return executor.execute(case_id)
    except SettlementError:
        schedule_settlement_retry(case_id)
        return None


def schedule_settlement_retry(case_id: str) -> Dict[str, Any]:
    from .jobs.queue import enqueue_job, QUEUE_SETTLEMENT
    from .jobs.tasks import task_settle_case

    settings = get_settings()
    return enqueue_job(
        task_settle_case,
        case_id,
        queue_name=QUEUE_SETTLEMENT,
        timeout=int(settings.settlement_timeout * 3),
        retry=settings.settlement_max_retries,
        retry_intervals=settings.settlement_retry_intervals,
        meta={"case_id": case_id},
    )


_executor: Optional[ResolutionExecutor] = None


def get_executor() -> ResolutionExecutor:
    global _executor
    if _executor is None:
        _executor = ResolutionExecutor()
    return _executor


def set_executor(executor: Optional[ResolutionExecutor]) -> None:
    global _executor
    _executor = executor
