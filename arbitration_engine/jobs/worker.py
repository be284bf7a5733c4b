"""
RQ Worker
=========

Worker process for settlement retries and expiry default resolutions.
"""

import logging
from typing import List, Optional

from redis import Redis
from rq import Worker

from ..config import get_settings
from .queue import QUEUE_DEFAULT, QUEUE_SETTLEMENT

logger = logging.getLogger(__name__)

DEFAULT_QUEUES = [QUEUE_SETTLEMENT, QUEUE_DEFAULT]


def start_worker(
    queues: Optional[List[str]] = None,
    burst: bool = False,
    logging_level: str = "INFO"
):
    """
    Start an RQ worker.

    Args:
        queues: List of queue names to listen to
        burst: Run in burst mode (exit when queues are empty)
        logging_level: Logging level
    """
    logging.basicConfig(
        level=getattr(logging, logging_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    queues = queues or DEFAULT_QUEUES
    conn = Redis.from_url(get_settings().redis_url)

    worker = Worker(
        queues,
        connection=conn,
        worker_ttl=420,  # 7 minutes
        job_monitoring_interval=5,
    )

    logger.info(f"Starting worker on queues: {queues}")
    worker.work(burst=burst)


def run_worker_cli():
    """CLI entry point for worker"""
    import argparse

    parser = argparse.ArgumentParser(description="RQ worker for the arbitration engine")
    parser.add_argument(
        "--queues", "-q",
        nargs="+",
        default=DEFAULT_QUEUES,
        help="Queues to listen to"
    )
    parser.add_argument(
        "--burst", "-b",
        action="store_true",
        help="Run in burst mode"
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()
    start_worker(
        queues=args.queues,
        burst=args.burst,
        logging_level=args.log_level
    )


if __name__ == "__main__":
    run_worker_cli()
