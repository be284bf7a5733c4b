"""
Shared fixtures: a fresh SQLite database per test and offline collaborators.
"""

import os
from unittest.mock import MagicMock

import pytest


@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB for tests."""
    from arbitration_engine.db.session import reset_engine, init_db

    old_db_url = os.environ.get("DATABASE_URL")
    db_path = tmp_path / "arbitration.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    reset_engine()
    init_db()

    yield

    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


@pytest.fixture(autouse=True)
def offline_collaborators(monkeypatch):
    """
    Keep tests off the network and off Redis.

    Notifications and settlement run with their log-only / skip behaviour;
    queue submissions are captured on the returned mock.
    """
    from arbitration_engine import notifications, settlement
    from arbitration_engine.jobs import queue

    enqueue = MagicMock(return_value={"job_id": "job-1", "status": "queued"})
    monkeypatch.setattr(queue, "enqueue_job", enqueue)
    notifications.set_notifier(notifications.Notifier(url=""))
    settlement.set_executor(settlement.ResolutionExecutor(settlement.SettlementClient(base_url="")))

    yield enqueue

    notifications.set_notifier(None)
    settlement.set_executor(None)


@pytest.fixture
def make_arbitrators(sqlalchemy_db):
    """Factory: register ``count`` arbitrators of one tier and return their ids."""
    from arbitration_engine.db.session import get_db_session
    from arbitration_engine.db.models import ArbitratorTier
    from arbitration_engine.registry import ArbitratorRegistry

    counter = {"n": 0}

    def _make(count=1, tier=ArbitratorTier.JUNIOR, specializations=None, **kwargs):
        ids = []
        with get_db_session() as db:
            registry = ArbitratorRegistry(db)
            for _ in range(count):
                counter["n"] += 1
                arbitrator = registry.register(
                    user_id=f"user-{tier.value}-{counter['n']}",
                    tier=tier,
                    specializations=specializations,
                    **kwargs,
                )
                ids.append(arbitrator.id)
        return ids

    return _make


@pytest.fixture
def make_case(sqlalchemy_db):
    """Factory: open a dispute and return its id."""
    from arbitration_engine.db.session import get_db_session
    from arbitration_engine.db.models import DisputeType
    from arbitration_engine.cases import DisputeService

    def _make(amount=500.0, dispute_type=DisputeType.PAYMENT_DISPUTE, initiated_by="buyer-1", **kwargs):
        with get_db_session() as db:
            case = DisputeService(db).create_case(
                type=dispute_type,
                disputed_amount=amount,
                initiated_by=initiated_by,
                title=kwargs.pop("title", "Goods never arrived"),
                respondent_id=kwargs.pop("respondent_id", "seller-1"),
                escrow_id=kwargs.pop("escrow_id", "escrow-1"),
                **kwargs,
            )
            return case.id

    return _make


@pytest.fixture
def load_case(sqlalchemy_db):
    """Read a case with its assignments in a fresh session."""
    from arbitration_engine.db.session import get_db_session
    from arbitration_engine.cases import DisputeService

    def _load(case_id):
        with get_db_session() as db:
            case = DisputeService(db).get_case(case_id)
            # Touch relationships so they are usable after the session closes
            list(case.assignments)
            list(case.votes)
            list(case.appeals)
            return case

    return _load
