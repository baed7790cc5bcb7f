from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from horarios.models import DomainEvent

logger = logging.getLogger("horarios.events")

SHIFT_CREATED = "SHIFT_CREATED"
SHIFT_UPDATED = "SHIFT_UPDATED"
SHIFT_DEACTIVATED = "SHIFT_DEACTIVATED"
SCHEDULE_TEMPLATE_CREATED = "SCHEDULE_TEMPLATE_CREATED"
SCHEDULE_TEMPLATE_UPDATED = "SCHEDULE_TEMPLATE_UPDATED"
SCHEDULE_TEMPLATE_DELETED = "SCHEDULE_TEMPLATE_DELETED"
SCHEDULE_INSTANCES_GENERATED = "SCHEDULE_INSTANCES_GENERATED"
SCHEDULE_INSTANCES_CREATED = "SCHEDULE_INSTANCES_CREATED"
SCHEDULE_INSTANCES_UPDATED = "SCHEDULE_INSTANCES_UPDATED"
SCHEDULE_INSTANCES_CANCELLED = "SCHEDULE_INSTANCES_CANCELLED"
ATTENDANCE_SESSION_STATE_CHANGED = "ATTENDANCE_SESSION_STATE_CHANGED"
ABSENCE_NOTE_OPENED = "ABSENCE_NOTE_OPENED"
ABSENCE_NOTE_RESOLVED = "ABSENCE_NOTE_RESOLVED"
ATTENDANCE_LATE_ARRIVAL = "ATTENDANCE_LATE_ARRIVAL"
ATTENDANCE_MAJOR_LATENESS = "ATTENDANCE_MAJOR_LATENESS"


def emit_domain_event(
    db: Session,
    *,
    event_type: str,
    aggregate_type: str,
    aggregate_id: int | str,
    payload: dict[str, Any] | None = None,
    actor_id: str | None = None,
    occurred_at: datetime | None = None,
) -> DomainEvent:
    """Record a domain fact in the outbox table as part of the caller's transaction.

    Delivery is left to the notification collaborator, which polls the table;
    nothing here fans out or commits.
    """
    event = DomainEvent(
        event_type=event_type,
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id),
        actor_id=actor_id,
        payload=payload or {},
        occurred_at=occurred_at or datetime.now(timezone.utc),
    )
    db.add(event)
    logger.info(
        "domain_event_staged",
        extra={
            "event_type": event_type,
            "aggregate_type": aggregate_type,
            "aggregate_id": str(aggregate_id),
            "actor_id": actor_id,
        },
    )
    return event


def list_domain_events(db: Session, *, after_id: int = 0, limit: int = 100) -> list[DomainEvent]:
    stmt = (
        select(DomainEvent)
        .where(DomainEvent.id > after_id)
        .order_by(DomainEvent.id.asc())
        .limit(limit)
    )
    return list(db.scalars(stmt).all())
