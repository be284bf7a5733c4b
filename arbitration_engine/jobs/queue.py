"""
Job Queue Management
====================

Redis Queue (RQ) integration for deferred engine work: settlement retries
and expiry default resolutions.
"""

import logging
from typing import Optional, Dict, Any, Callable, List
from datetime import datetime, timezone

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry
from rq.job import Job

from ..config import get_settings

logger = logging.getLogger(__name__)

# Queue names
QUEUE_DEFAULT = "default"
QUEUE_SETTLEMENT = "settlement"


def get_redis_connection() -> Redis:
    """Get Redis connection"""
    return Redis.from_url(get_settings().redis_url)


def get_queue(queue_name: str = QUEUE_DEFAULT) -> Queue:
    """Get RQ queue by name"""
    return Queue(queue_name, connection=get_redis_connection())


def enqueue_job(
    func: Callable,
    *args,
    queue_name: str = QUEUE_DEFAULT,
    job_id: Optional[str] = None,
    timeout: int = 120,
    retry: int = 0,
    retry_intervals: Optional[List[int]] = None,
    meta: Optional[Dict[str, Any]] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Enqueue a job for async processing.

    Args:
        func: Function to execute
        *args: Positional arguments for function
        queue_name: Queue to use
        job_id: Optional custom job ID
        timeout: Job timeout in seconds
        retry: Number of retries on failure
        retry_intervals: Backoff between retries in seconds
        meta: Custom metadata for job
        **kwargs: Keyword arguments for function

    Returns:
        Dict with job_id and status ("failed" when Redis is unreachable; the
        scheduler re-enqueues outstanding work on its next sweep)
    """
    retry_policy = Retry(max=retry, interval=retry_intervals or [10, 30, 60]) if retry > 0 else None

    try:
        queue = get_queue(queue_name)
        job = queue.enqueue(
            func,
            *args,
            job_id=job_id,
            job_timeout=timeout,
            retry=retry_policy,
            meta=meta or {},
            **kwargs
        )
    except RedisError as e:
        logger.warning(f"Could not enqueue {getattr(func, '__name__', func)} on {queue_name}: {e}")
        return {
            "job_id": job_id,
            "status": "failed",
            "error": str(e),
        }

    return {
        "job_id": job.id,
        "status": job.get_status(),
        "queue": queue_name,
        "enqueued_at": datetime.now(timezone.utc).isoformat(),
    }


def get_job_status(job_id: str) -> Dict[str, Any]:
    """
    Get job status and result.

    Args:
        job_id: Job ID

    Returns:
        Dict with status, result, error
    """
    try:
        job = Job.fetch(job_id, connection=get_redis_connection())
    except Exception as e:
        # rq raises NoSuchJobError, redis raises connection errors
        return {
            "job_id": job_id,
            "status": "not_found",
            "error": str(e),
        }

    result = {
        "job_id": job_id,
        "status": job.get_status(),
        "meta": job.meta,
        "enqueued_at": job.enqueued_at.isoformat() if job.enqueued_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "ended_at": job.ended_at.isoformat() if job.ended_at else None,
    }

    if job.is_finished:
        result["result"] = job.return_value()
    elif job.is_failed:
        result["error"] = str(job.exc_info) if job.exc_info else "Unknown error"

    return result


def get_queue_stats() -> Dict[str, Any]:
    """Get statistics for all queues"""
    conn = get_redis_connection()

    stats = {"queues": {}}
    for queue_name in [QUEUE_DEFAULT, QUEUE_SETTLEMENT]:
        queue = Queue(queue_name, connection=conn)
        stats["queues"][queue_name] = {
            "length": len(queue),
            "failed": queue.failed_job_registry.count,
            "scheduled": queue.scheduled_job_registry.count,
        }

    return stats
