"""
Job Tasks
=========

Deferred engine work executed by RQ workers. Every task opens its own
database sessions; arguments are plain ids so jobs survive worker restarts.
"""

import logging
from typing import Any, Dict, Optional

from redis.exceptions import RedisError
from rq import get_current_job

logger = logging.getLogger(__name__)


def update_job_meta(**values: Any) -> None:
    """Record progress details on the running RQ job (no-op outside a worker)."""
    job = get_current_job()
    if not job:
        return
    job.meta.update(values)
    try:
        job.save_meta()
    except RedisError as e:
        logger.warning("Could not save meta for job %s: %s", job.id, e)


def task_settle_case(case_id: str) -> Dict[str, Any]:
    """
    Attempt settlement for a resolved case.

    Raises SettlementError on failure so RQ applies the job's retry policy.
    """
    from ..settlement import get_executor

    update_job_meta(case_id=case_id, stage="settling")
    reference = get_executor().execute(case_id)
    update_job_meta(stage="done", reference=reference)
    return {"case_id": case_id, "reference": reference}


def task_apply_default_resolution(case_id: str) -> Dict[str, Any]:
    """Apply the expiry default ruling to an expired case."""
    from ..cases import DisputeService
    from ..db.session import get_db_session

    update_job_meta(case_id=case_id, stage="default_resolution")
    with get_db_session() as db:
        case = DisputeService(db).apply_default_resolution(case_id)
        applied = case is not None
    return {"case_id": case_id, "applied": applied}


def task_run_sweep(now: Optional[str] = None) -> Dict[str, Any]:
    """Run one scheduler sweep from a worker (for cron-style RQ scheduling)."""
    from datetime import datetime
    from ..scheduler import run_sweep

    report = run_sweep(now=datetime.fromisoformat(now) if now else None)
    return report.to_dict()
