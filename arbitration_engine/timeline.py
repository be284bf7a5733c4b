"""
Timeline recorder.

Every case transition appends one immutable row in the same transaction as the
transition itself; external audit/analytics consumers read these rows.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .db.models import TimelineEvent, TimelineEventType, utcnow

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def record_event(
    db: Session,
    case_id: str,
    event_type: TimelineEventType,
    title: str,
    actor_id: Optional[str] = None,
    actor_role: str = "system",
    payload: Optional[Dict[str, Any]] = None,
) -> TimelineEvent:
    """Append a timeline event to the current unit of work."""
    entry = TimelineEvent(
        case_id=case_id,
        event_type=event_type,
        title=title,
        actor_id=actor_id,
        actor_role=actor_role,
        payload=_jsonable(payload or {}),
        created_at=utcnow(),
    )
    db.add(entry)
    logger.debug("timeline %s: %s", case_id, event_type.value)
    return entry


def list_events(db: Session, case_id: str) -> List[TimelineEvent]:
    return (
        db.query(TimelineEvent)
        .filter(TimelineEvent.case_id == case_id)
        .order_by(TimelineEvent.created_at.asc())
        .all()
    )
