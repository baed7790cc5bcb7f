from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from horarios.errors import AlreadyExists, AlreadyResolved, ApiError
from horarios.models import (
    AbsenceNote,
    AbsenceNoteStatus,
    AttendanceSession,
    ScheduleInstance,
    ScheduleInstanceStatus,
)
from horarios.services.events import ABSENCE_NOTE_OPENED, ABSENCE_NOTE_RESOLVED, emit_domain_event
from horarios.services.time_windows import as_utc, normalize_ts

logger = logging.getLogger("horarios.schedule")

SYSTEM_ACTOR = "system"


def _clean_reason(raw_reason: str | None) -> str | None:
    return (raw_reason or "").strip() or None


def open_absence_note(
    db: Session,
    *,
    schedule_instance_id: int,
    reason: str | None,
    opened_by: str,
    now_utc: datetime | None = None,
) -> AbsenceNote:
    """Open a pending note for a past schedule with no recorded attendance.

    A schedule carries at most one note over its lifetime, rejected ones
    included.
    """
    now = normalize_ts(now_utc)
    instance = db.scalar(
        select(ScheduleInstance).where(ScheduleInstance.id == schedule_instance_id).with_for_update()
    )
    if instance is None:
        raise ApiError(status_code=404, code="INSTANCE_NOT_FOUND", message="Schedule instance not found.")
    if instance.status == ScheduleInstanceStatus.CANCELLED:
        raise ApiError(
            status_code=409,
            code="SCHEDULE_INSTANCE_CANCELLED",
            message="Schedule instance has been cancelled.",
            details={"schedule_instance_id": instance.id},
        )
    if as_utc(instance.end_ts) > now:  # type: ignore[operator]
        raise ApiError(
            status_code=422,
            code="INSTANCE_NOT_ENDED",
            message="An absence can only be justified once the schedule has ended.",
            details={"schedule_instance_id": instance.id},
        )

    session_id = db.scalar(
        select(AttendanceSession.id).where(AttendanceSession.schedule_instance_id == instance.id).limit(1)
    )
    if session_id is not None:
        raise ApiError(
            status_code=409,
            code="ATTENDANCE_RECORDED",
            message="Attendance was recorded for this schedule.",
            details={"schedule_instance_id": instance.id, "session_id": session_id},
        )

    existing = db.scalar(select(AbsenceNote).where(AbsenceNote.schedule_instance_id == instance.id))
    if existing is not None:
        raise AlreadyExists(instance.id, existing.id)

    note = AbsenceNote(
        schedule_instance_id=instance.id,
        status=AbsenceNoteStatus.PENDING,
        reason=_clean_reason(reason),
        opened_by=opened_by,
    )
    db.add(note)
    try:
        db.flush()
        emit_domain_event(
            db,
            event_type=ABSENCE_NOTE_OPENED,
            aggregate_type="absence_note",
            aggregate_id=note.id,
            payload={"schedule_instance_id": instance.id, "opened_by": opened_by},
            actor_id=opened_by,
            occurred_at=now,
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        existing_id = db.scalar(select(AbsenceNote.id).where(AbsenceNote.schedule_instance_id == schedule_instance_id))
        raise AlreadyExists(schedule_instance_id, existing_id) from exc
    db.refresh(note)
    return note


def stage_lateness_note(
    db: Session,
    *,
    instance: ScheduleInstance,
    late_minutes: int,
    occurred_at: datetime,
) -> AbsenceNote | None:
    """Add a pending system note for a late clock-in to the caller's transaction.

    Returns None when the schedule already carries a note.
    """
    existing_id = db.scalar(select(AbsenceNote.id).where(AbsenceNote.schedule_instance_id == instance.id))
    if existing_id is not None:
        logger.info(
            "lateness_note_skipped",
            extra={"schedule_instance_id": instance.id, "note_id": existing_id},
        )
        return None

    note = AbsenceNote(
        schedule_instance_id=instance.id,
        status=AbsenceNoteStatus.PENDING,
        reason=f"Retraso detectado: {late_minutes} minutos",
        opened_by=SYSTEM_ACTOR,
    )
    db.add(note)
    db.flush()
    emit_domain_event(
        db,
        event_type=ABSENCE_NOTE_OPENED,
        aggregate_type="absence_note",
        aggregate_id=note.id,
        payload={
            "schedule_instance_id": instance.id,
            "opened_by": SYSTEM_ACTOR,
            "late_minutes": late_minutes,
        },
        actor_id=SYSTEM_ACTOR,
        occurred_at=occurred_at,
    )
    return note


def resolve_absence_note(
    db: Session,
    note_id: int,
    *,
    approve: bool,
    reason: str | None,
    resolved_by: str,
    now_utc: datetime | None = None,
) -> AbsenceNote:
    now = normalize_ts(now_utc)
    note = db.scalar(select(AbsenceNote).where(AbsenceNote.id == note_id).with_for_update())
    if note is None:
        raise ApiError(status_code=404, code="ABSENCE_NOTE_NOT_FOUND", message="Absence note not found.")
    if note.status != AbsenceNoteStatus.PENDING:
        raise AlreadyResolved(note.id, note.status.value)

    note.status = AbsenceNoteStatus.APPROVED if approve else AbsenceNoteStatus.REJECTED
    note.resolution_reason = _clean_reason(reason)
    note.resolved_by = resolved_by
    note.resolved_at = now

    # Orphaned notes are closed without a schedule to mark.
    if note.schedule_instance_id is not None:
        instance = db.get(ScheduleInstance, note.schedule_instance_id)
        if instance is not None:
            instance.justified_absence = approve

    emit_domain_event(
        db,
        event_type=ABSENCE_NOTE_RESOLVED,
        aggregate_type="absence_note",
        aggregate_id=note.id,
        payload={
            "schedule_instance_id": note.schedule_instance_id,
            "status": note.status.value,
            "orphaned": note.orphaned,
        },
        actor_id=resolved_by,
        occurred_at=now,
    )
    db.commit()
    db.refresh(note)
    logger.info(
        "absence_note_resolved",
        extra={"note_id": note.id, "status": note.status.value, "resolved_by": resolved_by},
    )
    return note


def list_absence_notes(
    db: Session,
    *,
    status: AbsenceNoteStatus | None = None,
    limit: int = 200,
) -> list[AbsenceNote]:
    stmt = select(AbsenceNote).order_by(AbsenceNote.id.desc()).limit(limit)
    if status is not None:
        stmt = stmt.where(AbsenceNote.status == status)
    return list(db.scalars(stmt).all())
