from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from horarios.audit import audit_request
from horarios.db import get_db
from horarios.models import AuditActorType, ScheduleInstance
from horarios.schemas import (
    ScheduleInstanceBatchResponse,
    ScheduleInstanceBulkCreateRequest,
    ScheduleInstanceBulkDeleteRequest,
    ScheduleInstanceBulkDeleteResponse,
    ScheduleInstanceBulkUpdateRequest,
    ScheduleInstanceGenerateRequest,
    ScheduleInstanceRead,
    ScheduleTemplateRead,
    ScheduleTemplateUpsert,
    SoftDeleteResponse,
)
from horarios.security import actor_id_from_claims, require_admin_permission
from horarios.services.schedule_instances import (
    bulk_create_instances,
    bulk_delete_instances,
    bulk_update_instances,
    generate_from_template,
    list_instances,
)
from horarios.services.schedule_templates import (
    create_template,
    delete_template,
    get_template,
    list_templates,
    update_template,
)

router = APIRouter(tags=["schedule"])


def _batch_response(instances: list[ScheduleInstance]) -> ScheduleInstanceBatchResponse:
    items = [ScheduleInstanceRead.model_validate(item) for item in instances]
    return ScheduleInstanceBatchResponse(count=len(items), items=items)


@router.get(
    "/api/admin/schedule-template",
    response_model=list[ScheduleTemplateRead],
    dependencies=[Depends(require_admin_permission("schedule"))],
)
def list_schedule_templates(db: Session = Depends(get_db)) -> list[ScheduleTemplateRead]:
    return [ScheduleTemplateRead.model_validate(item) for item in list_templates(db)]


@router.get(
    "/api/admin/schedule-template/{template_id}",
    response_model=ScheduleTemplateRead,
    dependencies=[Depends(require_admin_permission("schedule"))],
)
def get_schedule_template(template_id: int, db: Session = Depends(get_db)) -> ScheduleTemplateRead:
    return ScheduleTemplateRead.model_validate(get_template(db, template_id))


@router.post("/api/admin/schedule-template", response_model=ScheduleTemplateRead, status_code=201)
def create_schedule_template(
    payload: ScheduleTemplateUpsert,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("schedule", write=True)),
) -> ScheduleTemplateRead:
    actor_id = actor_id_from_claims(claims)
    template = create_template(
        db,
        name=payload.name,
        description=payload.description,
        slots=payload.slots,
        actor_id=actor_id,
    )
    response = ScheduleTemplateRead.model_validate(template)
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SCHEDULE_TEMPLATE_CREATED",
        entity_type="schedule_template",
        entity_id=response.id,
        details={"name": response.name, "slot_count": len(response.slots)},
    )
    return response


@router.put("/api/admin/schedule-template/{template_id}", response_model=ScheduleTemplateRead)
def update_schedule_template(
    template_id: int,
    payload: ScheduleTemplateUpsert,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("schedule", write=True)),
) -> ScheduleTemplateRead:
    actor_id = actor_id_from_claims(claims)
    template = update_template(
        db,
        template_id,
        name=payload.name,
        description=payload.description,
        slots=payload.slots,
        actor_id=actor_id,
    )
    response = ScheduleTemplateRead.model_validate(template)
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SCHEDULE_TEMPLATE_UPDATED",
        entity_type="schedule_template",
        entity_id=response.id,
        details={"name": response.name, "slot_count": len(response.slots)},
    )
    return response


@router.delete("/api/admin/schedule-template/{template_id}", response_model=SoftDeleteResponse)
def delete_schedule_template(
    template_id: int,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("schedule", write=True)),
) -> SoftDeleteResponse:
    actor_id = actor_id_from_claims(claims)
    deleted_id = delete_template(db, template_id, actor_id=actor_id)
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SCHEDULE_TEMPLATE_DELETED",
        entity_type="schedule_template",
        entity_id=deleted_id,
    )
    return SoftDeleteResponse(ok=True, id=deleted_id)


@router.post("/api/admin/schedule-instances/generate", response_model=ScheduleInstanceBatchResponse, status_code=201)
def generate_schedule_instances(
    payload: ScheduleInstanceGenerateRequest,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("schedule", write=True)),
) -> ScheduleInstanceBatchResponse:
    actor_id = actor_id_from_claims(claims)
    instances = generate_from_template(
        db,
        contract_id=payload.contract_id,
        amendment_id=payload.amendment_id,
        schedule_template_id=payload.schedule_template_id,
        date_from=payload.date_from,
        date_to=payload.date_to,
        actor_id=actor_id,
    )
    response = _batch_response(instances)
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SCHEDULE_INSTANCES_GENERATED",
        entity_type="contract",
        entity_id=payload.contract_id,
        details={
            "date_from": payload.date_from.isoformat(),
            "date_to": payload.date_to.isoformat(),
            "count": response.count,
        },
    )
    return response


@router.get(
    "/api/admin/schedule-instances",
    response_model=list[ScheduleInstanceRead],
    dependencies=[Depends(require_admin_permission("schedule"))],
)
def list_schedule_instances(
    contract_id: int | None = Query(default=None, ge=1),
    employee_id: int | None = Query(default=None, ge=1),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    include_cancelled: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[ScheduleInstanceRead]:
    instances = list_instances(
        db,
        contract_id=contract_id,
        employee_id=employee_id,
        date_from=date_from,
        date_to=date_to,
        include_cancelled=include_cancelled,
    )
    return [ScheduleInstanceRead.model_validate(item) for item in instances]


@router.post("/api/admin/schedule-instances/bulk", response_model=ScheduleInstanceBatchResponse, status_code=201)
def bulk_create_schedule_instances(
    payload: ScheduleInstanceBulkCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("schedule", write=True)),
) -> ScheduleInstanceBatchResponse:
    actor_id = actor_id_from_claims(claims)
    response = _batch_response(bulk_create_instances(db, items=payload.items, actor_id=actor_id))
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SCHEDULE_INSTANCES_CREATED",
        entity_type="schedule_instance",
        details={"ids": [item.id for item in response.items]},
    )
    return response


@router.put("/api/admin/schedule-instances/bulk", response_model=ScheduleInstanceBatchResponse)
def bulk_update_schedule_instances(
    payload: ScheduleInstanceBulkUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("schedule", write=True)),
) -> ScheduleInstanceBatchResponse:
    actor_id = actor_id_from_claims(claims)
    response = _batch_response(bulk_update_instances(db, items=payload.items, actor_id=actor_id))
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SCHEDULE_INSTANCES_UPDATED",
        entity_type="schedule_instance",
        details={"ids": [item.id for item in response.items]},
    )
    return response


@router.delete("/api/admin/schedule-instances/bulk", response_model=ScheduleInstanceBulkDeleteResponse)
def bulk_delete_schedule_instances(
    payload: ScheduleInstanceBulkDeleteRequest,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin_permission("schedule", write=True)),
) -> ScheduleInstanceBulkDeleteResponse:
    actor_id = actor_id_from_claims(claims)
    result = bulk_delete_instances(db, ids=payload.ids, actor_id=actor_id)
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SCHEDULE_INSTANCES_CANCELLED",
        entity_type="schedule_instance",
        details={"ids": result.deleted_ids, "warning_count": len(result.warnings)},
    )
    return ScheduleInstanceBulkDeleteResponse(ok=True, deleted_ids=result.deleted_ids, warnings=result.warnings)
