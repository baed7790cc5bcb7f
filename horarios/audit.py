from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from horarios.errors import get_request_id
from horarios.models import AuditActorType, AuditLog

logger = logging.getLogger("horarios.audit")


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    """Persist an audit row in its own commit.

    Callers invoke this after the business write has been committed, so a
    failure here is logged and never undoes the operation it describes.
    """
    context = {
        "request_id": request_id,
        "action": action,
        "actor_type": actor_type.value,
        "actor_id": actor_id,
        "success": success,
    }
    db.add(
        AuditLog(
            ts_utc=datetime.now(timezone.utc),
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            ip=ip,
            user_agent=user_agent,
            success=success,
            details=details or {},
        )
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=context)
        return

    logger.info(
        "audit_event",
        extra={
            **context,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "ip": ip,
            "details": details or {},
        },
    )


def audit_request(
    db: Session,
    request: Request,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    entity_type: str | None = None,
    entity_id: int | str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        ip = forwarded_for.split(",")[0].strip() or None
    else:
        ip = request.client.host if request.client is not None else None
    log_audit(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        success=success,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
        details=details,
        request_id=get_request_id(request),
    )
