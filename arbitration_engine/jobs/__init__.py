"""
Job Queue Package
=================

Deferred work with Redis Queue (RQ).
"""

from .queue import (
    QUEUE_DEFAULT, QUEUE_SETTLEMENT, enqueue_job, get_job_status, get_queue_stats
)
from .tasks import task_apply_default_resolution, task_run_sweep, task_settle_case

__all__ = [
    # Queue management
    "QUEUE_DEFAULT", "QUEUE_SETTLEMENT",
    "enqueue_job", "get_job_status", "get_queue_stats",
    # Tasks
    "task_settle_case",
    "task_apply_default_resolution",
    "task_run_sweep",
]
