"""
Deadline Scheduler
==================

Periodic sweep over time-driven transitions:

1. Expire cases past their deadline (and queue their default resolution)
2. Lapse appeals left unreviewed past their review deadline
3. Auto-escalate active cases past ``auto_escalation_at``
4. Expire assignments past their response deadline and restaff the seat
5. Apply default resolutions that never got applied (lost queue jobs)
6. Re-enqueue settlements still requested or pending retry
7. Close resolved cases whose appeal window has passed

Several scheduler processes may run at once. Before acting on a case a sweep
claims it with a conditional UPDATE of ``swept_at``; a claim held by another
sweeper (younger than ``SWEEP_CLAIM_TTL_SECONDS``) makes this one skip the
row. A case is claimed at most once per sweep and every later stage of the
same sweep works under that claim, so a stage that fails for a case does
not lock it out of the others. Each stage runs in its own transaction per
case, so one failing case never aborts the batch.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, or_

from .appeals import AppealService
from .cases import MAX_TIER, DisputeService
from .config import get_settings
from .db.models import (
    ACTIVE_STATUSES, DUE_SETTLEMENT_STATUSES, Assignment, DisputeCase, DisputeStatus,
    OPEN_ASSIGNMENT_STATUSES, utcnow,
)
from .db.session import get_db_session
from .errors import ArbitrationError
from .voting import VotingEngine

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    appeals_lapsed: int = 0
    escalated: int = 0
    assignments_expired: int = 0
    default_resolutions: int = 0
    settlements_requeued: int = 0
    closed: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self):
        return asdict(self)


def claim_case(case_id: str, now: datetime, ttl_seconds: Optional[int] = None) -> bool:
    """Take the sweep claim on a case; False if another sweeper holds it."""
    ttl = get_settings().sweep_claim_ttl_seconds if ttl_seconds is None else ttl_seconds
    cutoff = now - timedelta(seconds=ttl)
    with get_db_session() as db:
        updated = (
            db.query(DisputeCase)
            .filter(
                DisputeCase.id == case_id,
                or_(DisputeCase.swept_at.is_(None), DisputeCase.swept_at < cutoff),
            )
            .update({DisputeCase.swept_at: now}, synchronize_session=False)
        )
    return updated == 1


class Scheduler:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or utcnow()
        self.settings = get_settings()
        self.report = SweepReport()
        self._claimed = set()

    def _candidates(self, build_query) -> List[str]:
        with get_db_session() as db:
            rows = build_query(db).limit(self.settings.sweep_batch_size).all()
            return [row[0] for row in rows]

    def _process(self, case_ids: List[str], action: Callable, counter: str) -> None:
        for case_id in case_ids:
            if case_id not in self._claimed:
                if not claim_case(case_id, self.now):
                    self.report.skipped += 1
                    continue
                self._claimed.add(case_id)
            try:
                with get_db_session() as db:
                    changed = action(db, case_id)
            except ArbitrationError as e:
                self.report.errors += 1
                logger.warning("Sweep %s failed for case %s: %s", counter, case_id, e.message)
            except Exception:
                self.report.errors += 1
                logger.exception("Sweep %s crashed for case %s", counter, case_id)
            else:
                if changed:
                    count = len(changed) if isinstance(changed, list) else 1
                    setattr(self.report, counter, getattr(self.report, counter) + count)

    # -------------------------------------------------------------------------

    def check_expired(self) -> None:
        ids = self._candidates(
            lambda db: db.query(DisputeCase.id).filter(
                DisputeCase.status.in_(ACTIVE_STATUSES),
                DisputeCase.deadline < self.now,
            )
        )
        self._process(ids, lambda db, cid: DisputeService(db).expire(cid, self.now), "expired")

    def check_appeals(self) -> None:
        ids = self._candidates(
            lambda db: db.query(DisputeCase.id).filter(
                DisputeCase.status == DisputeStatus.APPEALED,
                DisputeCase.deadline < self.now,
            )
        )
        self._process(ids, lambda db, cid: AppealService(db).lapse_overdue(cid, self.now), "appeals_lapsed")

    def check_escalations(self) -> None:
        ids = self._candidates(
            lambda db: db.query(DisputeCase.id).filter(
                DisputeCase.status.in_(ACTIVE_STATUSES),
                DisputeCase.current_tier < MAX_TIER,
                DisputeCase.auto_escalation_at < self.now,
            )
        )
        self._process(ids, lambda db, cid: DisputeService(db).auto_escalate(cid, self.now), "escalated")

    def check_assignments(self) -> None:
        ids = self._candidates(
            lambda db: db.query(Assignment.case_id)
            .join(DisputeCase, DisputeCase.id == Assignment.case_id)
            .filter(
                Assignment.status.in_(OPEN_ASSIGNMENT_STATUSES),
                Assignment.deadline < self.now,
                DisputeCase.status.in_(ACTIVE_STATUSES),
            )
            .distinct()
        )

        def expire_assignments(db, case_id):
            cases = DisputeService(db)
            overdue = cases.expire_overdue_assignments(case_id, self.now)
            if overdue:
                # A dropped seat may have been the last one the round was waiting on
                VotingEngine(db, cases).check_completion(cases.get_case(case_id))
            return overdue

        self._process(ids, expire_assignments, "assignments_expired")

    def check_default_resolutions(self) -> None:
        # The job queued at expiry gets one claim window before the sweep steps in
        cutoff = self.now - timedelta(seconds=self.settings.sweep_claim_ttl_seconds)
        ids = self._candidates(
            lambda db: db.query(DisputeCase.id).filter(
                DisputeCase.status == DisputeStatus.EXPIRED,
                DisputeCase.resolution_path.is_(None),
                or_(DisputeCase.expired_at.is_(None), DisputeCase.expired_at < cutoff),
            )
        )
        self._process(
            ids, lambda db, cid: DisputeService(db).apply_default_resolution(cid), "default_resolutions"
        )

    def check_settlements(self) -> None:
        from .settlement import schedule_settlement_retry

        # Leave room for the queue's own backoff before re-enqueueing
        quiet = max(self.settings.settlement_retry_intervals + [self.settings.sweep_claim_ttl_seconds])
        cutoff = self.now - timedelta(seconds=quiet)
        ids = self._candidates(
            lambda db: db.query(DisputeCase.id).filter(
                DisputeCase.settlement_status.in_(DUE_SETTLEMENT_STATUSES),
                or_(
                    DisputeCase.settlement_last_attempt_at < cutoff,
                    and_(
                        DisputeCase.settlement_last_attempt_at.is_(None),
                        DisputeCase.resolved_at < cutoff,
                    ),
                ),
            )
        )

        def requeue(db, case_id):
            job = schedule_settlement_retry(case_id)
            return job.get("status") != "failed"

        self._process(ids, requeue, "settlements_requeued")

    def check_closures(self) -> None:
        cutoff = self.now - timedelta(days=self.settings.appeal_window_days)
        ids = self._candidates(
            lambda db: db.query(DisputeCase.id).filter(
                DisputeCase.status == DisputeStatus.RESOLVED,
                DisputeCase.resolved_at < cutoff,
            )
        )
        self._process(ids, lambda db, cid: DisputeService(db).close_case(cid, self.now), "closed")

    def run(self) -> SweepReport:
        self.check_expired()
        self.check_appeals()
        self.check_escalations()
        self.check_assignments()
        self.check_default_resolutions()
        self.check_settlements()
        self.check_closures()
        logger.info("Sweep at %s: %s", self.now.isoformat(), self.report.to_dict())
        return self.report


def run_sweep(now: Optional[datetime] = None) -> SweepReport:
    return Scheduler(now=now).run()


def run_forever(interval: Optional[int] = None) -> None:
    interval = interval or get_settings().sweep_interval_seconds
    logger.info("Scheduler started (every %ds)", interval)
    while True:
        try:
            run_sweep()
        except Exception:
            logger.exception("Sweep failed")
        time.sleep(interval)


def run_scheduler_cli():
    """CLI entry point for the scheduler"""
    import argparse

    parser = argparse.ArgumentParser(description="Deadline scheduler for the arbitration engine")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--interval", "-i", type=int, default=None, help="Seconds between sweeps")
    parser.add_argument("--log-level", "-l", default="INFO", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.once:
        run_sweep()
    else:
        run_forever(args.interval)


if __name__ == "__main__":
    run_scheduler_cli()
