from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from horarios.audit import audit_request
from horarios.db import get_db
from horarios.models import AbsenceNoteStatus, AuditActorType
from horarios.schemas import AbsenceNoteCreateRequest, AbsenceNoteRead, AbsenceNoteResolveRequest
from horarios.security import actor_id_from_claims, require_admin_permission
from horarios.services.absence_notes import list_absence_notes, open_absence_note, resolve_absence_note

router = APIRouter(tags=["absence-notes"])


@router.post("/api/absence-notes", response_model=AbsenceNoteRead, status_code=201)
def create_absence_note(
    payload: AbsenceNoteCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AbsenceNoteRead:
    opened_by = (payload.opened_by or "").strip() or "employee"
    request.state.actor = "employee"
    request.state.actor_id = opened_by
    note = open_absence_note(
        db,
        schedule_instance_id=payload.schedule_instance_id,
        reason=payload.reason,
        opened_by=opened_by,
    )
    response = AbsenceNoteRead.model_validate(note)
    audit_request(
        db,
        request,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=opened_by,
        action="ABSENCE_NOTE_OPENED",
        entity_type="absence_note",
        entity_id=response.id,
        details={"schedule_instance_id": payload.schedule_instance_id},
    )
    return response


@router.patch("/api/admin/absence-notes/{note_id}", response_model=AbsenceNoteRead)
def resolve_absence_note_endpoint(
    note_id: int,
    payload: AbsenceNoteResolveRequest,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("absence_notes", write=True)),
) -> AbsenceNoteRead:
    actor_id = actor_id_from_claims(claims)
    note = resolve_absence_note(
        db,
        note_id,
        approve=payload.approve,
        reason=payload.reason,
        resolved_by=actor_id,
    )
    response = AbsenceNoteRead.model_validate(note)
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="ABSENCE_NOTE_APPROVED" if payload.approve else "ABSENCE_NOTE_REJECTED",
        entity_type="absence_note",
        entity_id=response.id,
    )
    return response


@router.get(
    "/api/admin/absence-notes",
    response_model=list[AbsenceNoteRead],
    dependencies=[Depends(require_admin_permission("absence_notes"))],
)
def list_absence_notes_endpoint(
    status: AbsenceNoteStatus | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[AbsenceNoteRead]:
    return [AbsenceNoteRead.model_validate(item) for item in list_absence_notes(db, status=status, limit=limit)]
