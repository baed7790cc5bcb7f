from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from horarios.audit import audit_request
from horarios.db import get_db
from horarios.models import AuditActorType, Modality, Shift
from horarios.schemas import ModalityRead, ShiftCreate, ShiftRead, ShiftUpdate
from horarios.security import actor_id_from_claims, require_admin_permission
from horarios.services.shifts import create_shift, deactivate_shift, list_shifts, update_shift
from horarios.services.time_windows import format_hhmm, parse_hhmm, parse_optional_hhmm

router = APIRouter(tags=["shifts"])

_TIME_FIELDS = ("start_time", "end_time", "break_start_time", "break_end_time")


def _to_shift_read(shift: Shift) -> ShiftRead:
    return ShiftRead(
        id=shift.id,
        center_id=shift.center_id,
        name=shift.name,
        start_time=format_hhmm(shift.start_time),
        end_time=format_hhmm(shift.end_time),
        break_start_time=format_hhmm(shift.break_start_time),
        break_end_time=format_hhmm(shift.break_end_time),
        color=shift.color,
        is_active=shift.is_active,
        created_at=shift.created_at,
        updated_at=shift.updated_at,
    )


@router.get("/api/modalities", response_model=list[ModalityRead])
def list_modalities(db: Session = Depends(get_db)) -> list[ModalityRead]:
    modalities = db.scalars(select(Modality).order_by(Modality.id.asc())).all()
    return [ModalityRead.model_validate(item) for item in modalities]


@router.post("/api/admin/shifts", response_model=ShiftRead, status_code=201)
def create_shift_endpoint(
    payload: ShiftCreate,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("shifts", write=True)),
) -> ShiftRead:
    actor_id = actor_id_from_claims(claims)
    shift = create_shift(
        db,
        center_id=payload.center_id,
        name=payload.name,
        start_time=parse_hhmm(payload.start_time),
        end_time=parse_hhmm(payload.end_time),
        break_start_time=parse_optional_hhmm(payload.break_start_time),
        break_end_time=parse_optional_hhmm(payload.break_end_time),
        color=payload.color,
        actor_id=actor_id,
    )
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SHIFT_CREATED",
        entity_type="shift",
        entity_id=shift.id,
        details={"center_id": shift.center_id, "name": shift.name},
    )
    return _to_shift_read(shift)


@router.patch("/api/admin/shifts/{shift_id}", response_model=ShiftRead)
def update_shift_endpoint(
    shift_id: int,
    payload: ShiftUpdate,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("shifts", write=True)),
) -> ShiftRead:
    actor_id = actor_id_from_claims(claims)
    fields = payload.model_dump(exclude_unset=True)
    for key in _TIME_FIELDS:
        if key in fields:
            fields[key] = parse_optional_hhmm(fields[key])
    shift = update_shift(db, shift_id, fields=fields, actor_id=actor_id)
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SHIFT_UPDATED",
        entity_type="shift",
        entity_id=shift.id,
        details={"fields": sorted(fields)},
    )
    return _to_shift_read(shift)


@router.get(
    "/api/admin/shifts",
    response_model=list[ShiftRead],
    dependencies=[Depends(require_admin_permission("shifts"))],
)
def list_shifts_endpoint(
    center_id: int | None = Query(default=None, ge=1),
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[ShiftRead]:
    return [_to_shift_read(item) for item in list_shifts(db, center_id=center_id, active_only=active_only)]


@router.delete("/api/admin/shifts/{shift_id}", response_model=ShiftRead)
def deactivate_shift_endpoint(
    shift_id: int,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("shifts", write=True)),
) -> ShiftRead:
    actor_id = actor_id_from_claims(claims)
    shift = deactivate_shift(db, shift_id, actor_id=actor_id)
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SHIFT_DEACTIVATED",
        entity_type="shift",
        entity_id=shift.id,
    )
    return _to_shift_read(shift)
