from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from horarios.errors import ApiError, InvalidTransition
from horarios.models import (
    AbsenceNote,
    AbsenceNoteStatus,
    AttendanceAction,
    AttendanceLock,
    AttendanceSession,
    AttendanceSessionEvent,
    AttendanceState,
    Contract,
    ScheduleInstance,
    ScheduleInstanceStatus,
)
from horarios.schemas import AttendanceStatusResponse, Coordinates
from horarios.settings import get_settings
from horarios.services.absence_notes import stage_lateness_note
from horarios.services.events import (
    ATTENDANCE_LATE_ARRIVAL,
    ATTENDANCE_MAJOR_LATENESS,
    ATTENDANCE_SESSION_STATE_CHANGED,
    emit_domain_event,
)
from horarios.services.schedule_instances import (
    break_window_minutes,
    mandatory_break_offset_minutes,
    scheduled_minutes,
)
from horarios.services.time_windows import as_utc, local_day, normalize_ts

logger = logging.getLogger("horarios.attendance")

TRANSITIONS: dict[AttendanceAction, tuple[frozenset[AttendanceState], AttendanceState]] = {
    AttendanceAction.INICIAR: (
        frozenset({AttendanceState.NOT_STARTED}),
        AttendanceState.ACTIVE,
    ),
    AttendanceAction.DESCANSO_OBLIGATORIO: (
        frozenset({AttendanceState.ACTIVE}),
        AttendanceState.ON_OBLIGATORY_BREAK,
    ),
    AttendanceAction.DESCANSO_ADICIONAL: (
        frozenset({AttendanceState.ACTIVE}),
        AttendanceState.ON_ADDITIONAL_BREAK,
    ),
    AttendanceAction.REANUDAR: (
        frozenset({AttendanceState.ON_OBLIGATORY_BREAK, AttendanceState.ON_ADDITIONAL_BREAK}),
        AttendanceState.ACTIVE,
    ),
    AttendanceAction.FINALIZAR: (
        frozenset({AttendanceState.ACTIVE}),
        AttendanceState.FINISHED,
    ),
}
GEOLOCATION_ACTIONS = frozenset({AttendanceAction.INICIAR, AttendanceAction.FINALIZAR})
RUNNING_STATES = frozenset(
    {
        AttendanceState.ACTIVE,
        AttendanceState.ON_OBLIGATORY_BREAK,
        AttendanceState.ON_ADDITIONAL_BREAK,
    }
)


@dataclass(frozen=True, slots=True)
class SessionTotals:
    worked_minutes: int = 0
    obligatory_break_minutes: int = 0
    additional_break_minutes: int = 0

    @property
    def break_minutes(self) -> int:
        return self.obligatory_break_minutes + self.additional_break_minutes


def compute_session_totals(
    events: Sequence[AttendanceSessionEvent],
    *,
    until: datetime | None = None,
    obligatory_allowance_minutes: int | None = None,
) -> SessionTotals:
    """Accumulate worked and break time from an ordered event log.

    Each interval is charged to the state entered by the event that opens
    it. The last interval runs to ``until`` when the session is still open.
    Mandatory break time above ``obligatory_allowance_minutes`` counts as
    additional break.
    """
    seconds = {
        AttendanceState.ACTIVE: 0.0,
        AttendanceState.ON_OBLIGATORY_BREAK: 0.0,
        AttendanceState.ON_ADDITIONAL_BREAK: 0.0,
    }
    ordered = sorted(events, key=lambda item: item.sequence)
    for index, event in enumerate(ordered):
        if event.resulting_state not in seconds:
            continue
        if index + 1 < len(ordered):
            interval_end = as_utc(ordered[index + 1].ts_utc)
        elif until is not None:
            interval_end = normalize_ts(until)
        else:
            continue
        interval_start = as_utc(event.ts_utc)
        seconds[event.resulting_state] += max(0.0, (interval_end - interval_start).total_seconds())  # type: ignore[operator]

    worked = int(seconds[AttendanceState.ACTIVE] // 60)
    obligatory = int(seconds[AttendanceState.ON_OBLIGATORY_BREAK] // 60)
    additional = int(seconds[AttendanceState.ON_ADDITIONAL_BREAK] // 60)
    if obligatory_allowance_minutes is not None and obligatory > obligatory_allowance_minutes:
        additional += obligatory - obligatory_allowance_minutes
        obligatory = obligatory_allowance_minutes
    return SessionTotals(
        worked_minutes=worked,
        obligatory_break_minutes=obligatory,
        additional_break_minutes=additional,
    )


def session_key(employee_id: int, day_date: date, schedule_instance_id: int | None) -> str:
    return f"{employee_id}:{day_date.isoformat()}:{schedule_instance_id or 'free'}"


def validate_coordinates(action: AttendanceAction, coordinates: Coordinates | None) -> None:
    if coordinates is None:
        if action in GEOLOCATION_ACTIONS:
            raise ApiError(
                status_code=422,
                code="GEOLOCATION_REQUIRED",
                message="Coordinates are required to start or finish a session.",
                details={"action": action.value},
            )
        return
    lat = coordinates.lat
    lon = coordinates.lon
    if not (math.isfinite(lat) and math.isfinite(lon)) or not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise ApiError(
            status_code=422,
            code="INVALID_COORDINATES",
            message="Latitude must be within [-90, 90] and longitude within [-180, 180].",
            details={"lat": lat, "lon": lon},
        )


def _resolve_instance(db: Session, *, employee_id: int, schedule_instance_id: int) -> ScheduleInstance:
    instance = db.scalar(
        select(ScheduleInstance)
        .options(selectinload(ScheduleInstance.contract))
        .where(ScheduleInstance.id == schedule_instance_id)
    )
    if instance is None:
        raise ApiError(status_code=404, code="INSTANCE_NOT_FOUND", message="Schedule instance not found.")
    if instance.contract.employee_id != employee_id:
        raise ApiError(
            status_code=422,
            code="SCHEDULE_INSTANCE_MISMATCH",
            message="Schedule instance does not belong to this employee.",
            details={"schedule_instance_id": schedule_instance_id, "employee_id": employee_id},
        )
    if instance.status == ScheduleInstanceStatus.CANCELLED:
        raise ApiError(
            status_code=409,
            code="SCHEDULE_INSTANCE_CANCELLED",
            message="Schedule instance has been cancelled.",
            details={"schedule_instance_id": schedule_instance_id},
        )
    return instance


def _lock_employee(db: Session, *, employee_id: int) -> None:
    """Hold the employee's lock row until the transaction ends.

    The row is created on first use, so the very first action of an
    employee is serialized as well as later ones.
    """
    dialect_insert = sqlite_insert if db.get_bind().dialect.name == "sqlite" else postgresql_insert
    db.execute(
        dialect_insert(AttendanceLock)
        .values(employee_id=employee_id)
        .on_conflict_do_nothing(index_elements=["employee_id"])
    )
    db.execute(
        select(AttendanceLock.employee_id)
        .where(AttendanceLock.employee_id == employee_id)
        .with_for_update()
    )


def _lock_day_sessions(db: Session, *, employee_id: int, day_date: date) -> list[AttendanceSession]:
    stmt = (
        select(AttendanceSession)
        .options(selectinload(AttendanceSession.events))
        .where(
            AttendanceSession.employee_id == employee_id,
            AttendanceSession.day_date == day_date,
        )
        .order_by(AttendanceSession.id.asc())
        .with_for_update()
    )
    return list(db.scalars(stmt).all())


def _running_sessions(db: Session, *, employee_id: int) -> list[AttendanceSession]:
    stmt = (
        select(AttendanceSession)
        .options(selectinload(AttendanceSession.events))
        .where(
            AttendanceSession.employee_id == employee_id,
            AttendanceSession.state.in_(sorted(RUNNING_STATES, key=lambda item: item.value)),
        )
        .order_by(AttendanceSession.id.desc())
        .with_for_update()
    )
    return list(db.scalars(stmt).all())


def _ensure_within_clock_window(instance: ScheduleInstance, ts_utc: datetime) -> None:
    window = timedelta(minutes=get_settings().clock_window_minutes)
    opens_at = as_utc(instance.start_ts) - window  # type: ignore[operator]
    closes_at = as_utc(instance.end_ts) + window  # type: ignore[operator]
    if ts_utc < opens_at or ts_utc > closes_at:
        raise ApiError(
            status_code=422,
            code="OUTSIDE_SCHEDULE_WINDOW",
            message="Session can only start around the scheduled window.",
            details={
                "schedule_instance_id": instance.id,
                "opens_at": opens_at.isoformat(),
                "closes_at": closes_at.isoformat(),
            },
        )


def _ensure_mandatory_break_allowed(
    session: AttendanceSession,
    instance: ScheduleInstance | None,
    ts_utc: datetime,
) -> None:
    offset = mandatory_break_offset_minutes(instance) if instance is not None else None
    if instance is None or offset is None or instance.break_end_ts is None:
        raise ApiError(
            status_code=409,
            code="NO_MANDATORY_BREAK_CONFIGURED",
            message="This session has no mandatory break window.",
        )
    if any(event.action == AttendanceAction.DESCANSO_OBLIGATORIO for event in session.events):
        raise ApiError(
            status_code=409,
            code="MANDATORY_BREAK_ALREADY_TAKEN",
            message="The mandatory break was already taken in this session.",
        )
    required_minutes = max(0, offset - get_settings().mandatory_break_grace_minutes)
    worked_minutes = compute_session_totals(session.events, until=ts_utc).worked_minutes
    if worked_minutes < required_minutes:
        raise ApiError(
            status_code=409,
            code="MANDATORY_BREAK_NOT_ELIGIBLE",
            message="Not enough worked time to take the mandatory break yet.",
            details={"required_minutes": required_minutes, "worked_minutes": worked_minutes},
        )


def late_minutes_for(instance: ScheduleInstance, started_at: datetime) -> int:
    seconds = (normalize_ts(started_at) - as_utc(instance.start_ts)).total_seconds()  # type: ignore[operator]
    return max(0, int(seconds // 60))


def _reconcile_lateness(
    db: Session,
    *,
    session: AttendanceSession,
    instance: ScheduleInstance,
    ts: datetime,
) -> None:
    """Report a late clock-in and open a pending note once it exceeds the absence threshold.

    Schedules whose absence was already approved are left alone.
    """
    late = session.late_minutes or 0
    settings = get_settings()
    log_extra = {
        "employee_id": session.employee_id,
        "schedule_instance_id": instance.id,
        "late_minutes": late,
    }
    if late <= settings.late_significant_minutes:
        if late:
            logger.info("attendance_minor_lateness", extra=log_extra)
        return

    note_status = db.scalar(select(AbsenceNote.status).where(AbsenceNote.schedule_instance_id == instance.id))
    if note_status == AbsenceNoteStatus.APPROVED:
        return

    is_major = late > settings.late_absence_note_minutes
    emit_domain_event(
        db,
        event_type=ATTENDANCE_MAJOR_LATENESS if is_major else ATTENDANCE_LATE_ARRIVAL,
        aggregate_type="attendance_session",
        aggregate_id=session.id,
        payload={
            "employee_id": session.employee_id,
            "schedule_instance_id": instance.id,
            "late_minutes": late,
        },
        actor_id=f"employee:{session.employee_id}",
        occurred_at=ts,
    )
    logger.warning("attendance_major_lateness" if is_major else "attendance_late_arrival", extra=log_extra)
    if is_major:
        stage_lateness_note(db, instance=instance, late_minutes=late, occurred_at=ts)


def session_totals(session: AttendanceSession, *, until: datetime | None = None) -> SessionTotals:
    instance = session.schedule_instance
    allowance = break_window_minutes(instance) if instance is not None else None
    if session.state in RUNNING_STATES:
        return compute_session_totals(session.events, until=until, obligatory_allowance_minutes=allowance)
    return compute_session_totals(session.events, obligatory_allowance_minutes=allowance)


def apply_attendance_action(
    db: Session,
    *,
    employee_id: int,
    action: AttendanceAction | str,
    schedule_instance_id: int | None = None,
    coordinates: Coordinates | None = None,
    ts_utc: datetime | None = None,
) -> AttendanceSession:
    """Apply one clock action and return the updated session.

    The employee lock row is taken before any session is read, so concurrent
    actions of one employee are serialized even before a session exists. A
    writer that still races fails on the session key or the version counter.
    """
    action = AttendanceAction(action)
    ts = normalize_ts(ts_utc)
    validate_coordinates(action, coordinates)

    instance: ScheduleInstance | None = None
    if schedule_instance_id is not None:
        instance = _resolve_instance(db, employee_id=employee_id, schedule_instance_id=schedule_instance_id)
    day_date = instance.day_date if instance is not None else local_day(ts)
    key = session_key(employee_id, day_date, instance.id if instance is not None else None)

    _lock_employee(db, employee_id=employee_id)
    day_sessions = _lock_day_sessions(db, employee_id=employee_id, day_date=day_date)
    session = next((item for item in day_sessions if item.session_key == key), None)
    if session is None and instance is None and action != AttendanceAction.INICIAR:
        running = _running_sessions(db, employee_id=employee_id)
        session = running[0] if running else None

    current_state = session.state if session is not None else AttendanceState.NOT_STARTED
    allowed_states, resulting_state = TRANSITIONS[action]
    if current_state not in allowed_states:
        raise InvalidTransition(current_state=current_state.value, action=action.value)

    if session is not None and session.events:
        last_ts = as_utc(session.events[-1].ts_utc)
        if ts < last_ts:  # type: ignore[operator]
            raise ApiError(
                status_code=409,
                code="NON_MONOTONIC_TIMESTAMP",
                message="Clock action is older than the last recorded action.",
                details={"last_ts_utc": last_ts.isoformat()},  # type: ignore[union-attr]
            )

    if action == AttendanceAction.INICIAR:
        if instance is not None:
            _ensure_within_clock_window(instance, ts)
        others = [item for item in _running_sessions(db, employee_id=employee_id) if item.session_key != key]
        if others:
            raise ApiError(
                status_code=409,
                code="ANOTHER_SESSION_IN_PROGRESS",
                message="Another session is still open for this employee.",
                details={"session_id": others[0].id},
            )
        if session is None:
            session = AttendanceSession(
                session_key=key,
                employee_id=employee_id,
                schedule_instance_id=instance.id if instance is not None else None,
                day_date=day_date,
                state=AttendanceState.NOT_STARTED,
                events=[],
            )
            db.add(session)
        session.started_at = ts
        session.late_minutes = late_minutes_for(instance, ts) if instance is not None else None
        session.start_lat = coordinates.lat if coordinates else None
        session.start_lon = coordinates.lon if coordinates else None
    elif action == AttendanceAction.DESCANSO_OBLIGATORIO:
        _ensure_mandatory_break_allowed(session, session.schedule_instance, ts)

    previous_state = session.state
    session.events.append(
        AttendanceSessionEvent(
            sequence=len(session.events) + 1,
            action=action,
            resulting_state=resulting_state,
            ts_utc=ts,
            lat=coordinates.lat if coordinates else None,
            lon=coordinates.lon if coordinates else None,
        )
    )
    session.state = resulting_state
    if action == AttendanceAction.FINALIZAR:
        session.finished_at = ts
        session.finish_lat = coordinates.lat if coordinates else None
        session.finish_lon = coordinates.lon if coordinates else None

    totals = session_totals(session, until=ts)
    session.worked_minutes = totals.worked_minutes
    session.obligatory_break_minutes = totals.obligatory_break_minutes
    session.additional_break_minutes = totals.additional_break_minutes

    try:
        db.flush()
        emit_domain_event(
            db,
            event_type=ATTENDANCE_SESSION_STATE_CHANGED,
            aggregate_type="attendance_session",
            aggregate_id=session.id,
            payload={
                "employee_id": employee_id,
                "schedule_instance_id": session.schedule_instance_id,
                "action": action.value,
                "from_state": previous_state.value,
                "to_state": resulting_state.value,
                "ts_utc": ts.isoformat(),
            },
            actor_id=f"employee:{employee_id}",
        )
        if action == AttendanceAction.INICIAR and instance is not None:
            _reconcile_lateness(db, session=session, instance=instance, ts=ts)
        db.commit()
    except (IntegrityError, StaleDataError) as exc:
        db.rollback()
        raise ApiError(
            status_code=409,
            code="CONCURRENT_MODIFICATION",
            message="The session changed concurrently. Retry the action.",
        ) from exc

    db.refresh(session)
    logger.info(
        "attendance_transition",
        extra={
            "employee_id": employee_id,
            "session_id": session.id,
            "action": action.value,
            "state": resulting_state.value,
        },
    )
    return session


def get_attendance_status(
    db: Session,
    *,
    employee_id: int,
    day_date: date | None = None,
    now_utc: datetime | None = None,
) -> AttendanceStatusResponse:
    now = normalize_ts(now_utc)
    target_day = day_date or local_day(now)

    session = db.scalar(
        select(AttendanceSession)
        .options(selectinload(AttendanceSession.events))
        .where(
            AttendanceSession.employee_id == employee_id,
            AttendanceSession.state.in_(sorted(RUNNING_STATES, key=lambda item: item.value)),
        )
        .order_by(AttendanceSession.id.desc())
        .limit(1)
    )
    if session is None:
        session = db.scalar(
            select(AttendanceSession)
            .options(selectinload(AttendanceSession.events))
            .where(
                AttendanceSession.employee_id == employee_id,
                AttendanceSession.day_date == target_day,
            )
            .order_by(AttendanceSession.id.desc())
            .limit(1)
        )

    day_instances = sorted(
        db.scalars(
            select(ScheduleInstance)
            .join(Contract, Contract.id == ScheduleInstance.contract_id)
            .where(
                Contract.employee_id == employee_id,
                ScheduleInstance.day_date == target_day,
                ScheduleInstance.status == ScheduleInstanceStatus.ACTIVE,
            )
        ).all(),
        key=lambda item: (as_utc(item.start_ts), item.id),
    )

    instance = session.schedule_instance if session is not None else None
    if instance is None and session is None and day_instances:
        instance = next((item for item in day_instances if as_utc(item.end_ts) > now), day_instances[0])  # type: ignore[operator]

    reference_start = as_utc(instance.start_ts) if instance is not None else now
    next_instance = next(
        (
            item
            for item in day_instances
            if (instance is None or item.id != instance.id) and as_utc(item.start_ts) > reference_start  # type: ignore[operator]
        ),
        None,
    )

    totals = session_totals(session, until=now) if session is not None else SessionTotals()
    planned = scheduled_minutes(instance) if instance is not None else None
    return AttendanceStatusResponse(
        employee_id=employee_id,
        day_date=session.day_date if session is not None else target_day,
        session_id=session.id if session is not None else None,
        schedule_instance_id=instance.id if instance is not None else None,
        state=session.state if session is not None else AttendanceState.NOT_STARTED,
        worked_minutes=totals.worked_minutes,
        break_minutes=totals.break_minutes,
        obligatory_break_minutes=totals.obligatory_break_minutes,
        additional_break_minutes=totals.additional_break_minutes,
        late_minutes=session.late_minutes if session is not None else None,
        scheduled_minutes=planned,
        remaining_minutes=max(0, planned - totals.worked_minutes) if planned is not None else None,
        next_schedule_instance_id=next_instance.id if next_instance is not None else None,
    )
