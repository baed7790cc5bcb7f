from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from horarios.audit import audit_request
from horarios.db import get_db
from horarios.errors import ApiError
from horarios.models import AuditActorType
from horarios.schemas import AdminAuthResponse, AdminLoginRequest, AdminMeResponse
from horarios.security import (
    actor_id_from_claims,
    create_access_token,
    full_permissions,
    login_throttle,
    normalize_permissions,
    require_admin,
    verify_admin_credentials,
)

router = APIRouter(tags=["auth"])


@router.post("/api/admin/auth/login", response_model=AdminAuthResponse)
def admin_login(
    payload: AdminLoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AdminAuthResponse:
    username = payload.username.strip()
    ip = request.client.host if request.client is not None else None
    request.state.actor = "system"
    request.state.actor_id = "system"

    if ip:
        try:
            login_throttle.ensure_allowed(ip)
        except ApiError:
            audit_request(
                db,
                request,
                actor_type=AuditActorType.SYSTEM,
                actor_id=username or "unknown",
                action="ADMIN_LOGIN_FAIL",
                success=False,
                details={"reason": "TOO_MANY_ATTEMPTS"},
            )
            raise

    if not verify_admin_credentials(username, payload.password):
        if ip:
            login_throttle.register_failure(ip)
        audit_request(
            db,
            request,
            actor_type=AuditActorType.SYSTEM,
            actor_id=username or "unknown",
            action="ADMIN_LOGIN_FAIL",
            success=False,
            details={"reason": "INVALID_CREDENTIALS"},
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid credentials.")

    if ip:
        login_throttle.register_success(ip)
    token, expires_in, _claims = create_access_token(
        sub=username,
        username=username,
        is_super_admin=True,
        permissions=full_permissions(),
    )
    request.state.actor = "admin"
    request.state.actor_id = username
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=username,
        action="ADMIN_LOGIN_SUCCESS",
    )
    return AdminAuthResponse(access_token=token, expires_in=expires_in)


@router.get("/api/admin/auth/me", response_model=AdminMeResponse)
def admin_me(claims: dict[str, Any] = Depends(require_admin)) -> AdminMeResponse:
    permissions = full_permissions() if claims.get("is_super_admin") else normalize_permissions(claims.get("permissions"))
    return AdminMeResponse(
        sub=str(claims.get("sub")),
        username=actor_id_from_claims(claims),
        role=str(claims.get("role") or "admin"),
        permissions=permissions,
    )
