from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from horarios.audit import audit_request
from horarios.db import get_db
from horarios.errors import ApiError
from horarios.models import AuditActorType
from horarios.schemas import AttendanceActionRequest, AttendanceActionResponse, AttendanceStatusResponse
from horarios.services.attendance import apply_attendance_action, get_attendance_status

router = APIRouter(tags=["attendance"])


@router.post("/api/attendance/{employee_id}/action", response_model=AttendanceActionResponse)
def attendance_action(
    employee_id: int,
    payload: AttendanceActionRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    actor_id = f"employee:{employee_id}"
    request.state.actor = "employee"
    request.state.actor_id = actor_id
    request.state.employee_id = employee_id

    try:
        session = apply_attendance_action(
            db,
            employee_id=employee_id,
            action=payload.action,
            schedule_instance_id=payload.schedule_instance_id,
            coordinates=payload.coordinates,
        )
    except ApiError as exc:
        db.rollback()
        audit_request(
            db,
            request,
            actor_type=AuditActorType.EMPLOYEE,
            actor_id=actor_id,
            action="ATTENDANCE_ACTION_REJECTED",
            success=False,
            entity_type="schedule_instance",
            entity_id=payload.schedule_instance_id,
            details={"action": payload.action.value, "code": exc.code},
        )
        raise

    response = AttendanceActionResponse(
        employee_id=employee_id,
        session_id=session.id,
        schedule_instance_id=session.schedule_instance_id,
        action=payload.action,
        state=session.state,
        started_at=session.started_at,
        finished_at=session.finished_at,
        worked_minutes=session.worked_minutes,
        break_minutes=session.obligatory_break_minutes + session.additional_break_minutes,
        obligatory_break_minutes=session.obligatory_break_minutes,
        additional_break_minutes=session.additional_break_minutes,
        late_minutes=session.late_minutes,
    )
    request.state.event_id = response.session_id
    audit_request(
        db,
        request,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=actor_id,
        action="ATTENDANCE_ACTION",
        entity_type="attendance_session",
        entity_id=response.session_id,
        details={"action": payload.action.value, "state": response.state.value},
    )
    return response


@router.get("/api/attendance/{employee_id}/status", response_model=AttendanceStatusResponse)
def attendance_status(
    employee_id: int,
    request: Request,
    day_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> AttendanceStatusResponse:
    request.state.actor = "employee"
    request.state.actor_id = f"employee:{employee_id}"
    request.state.employee_id = employee_id
    return get_attendance_status(db, employee_id=employee_id, day_date=day_date)
