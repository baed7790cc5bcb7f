from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from horarios.db import get_db
from horarios.schemas import DomainEventRead
from horarios.security import require_admin_permission
from horarios.services.events import list_domain_events

router = APIRouter(tags=["events"])


@router.get(
    "/api/admin/domain-events",
    response_model=list[DomainEventRead],
    dependencies=[Depends(require_admin_permission("audit"))],
)
def list_domain_events_endpoint(
    after_id: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[DomainEventRead]:
    return [DomainEventRead.model_validate(item) for item in list_domain_events(db, after_id=after_id, limit=limit)]
