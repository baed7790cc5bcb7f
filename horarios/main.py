import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from horarios.db import engine
from horarios.errors import ApiError, error_response
from horarios.logging_utils import setup_json_logging
from horarios.routers import absence_notes, attendance, auth, events, schedule, shifts
from horarios.settings import get_cors_origins, get_settings
from horarios.services.schema_guard import SchemaGuardResult, verify_runtime_schema

setup_json_logging()
logger = logging.getLogger("horarios.request")
startup_logger = logging.getLogger("horarios.startup")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = "system"
    request.state.actor_id = "system"

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "employee_id": getattr(request.state, "employee_id", None),
                "session_id": getattr(request.state, "event_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        429: "TOO_MANY_ATTEMPTS",
    }
    return error_response(
        request,
        status_code=exc.status_code,
        code=code_map.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail) if exc.detail else "Request failed.",
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message="Request payload is invalid.",
        details={"errors": [{"loc": list(item.get("loc", ())), "msg": item.get("msg")} for item in exc.errors()]},
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(auth.router)
app.include_router(shifts.router)
app.include_router(schedule.router)
app.include_router(attendance.router)
app.include_router(absence_notes.router)
app.include_router(events.router)


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        startup_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    startup_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        raise RuntimeError(f"Runtime schema guard failed: {'; '.join(result.issues)}")


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult | None = getattr(app.state, "schema_guard_result", None)
    if schema_guard_result is None:
        schema_guard_result = SchemaGuardResult(
            ok=False,
            checked_at_utc=datetime.now(timezone.utc),
            issues=["SCHEMA_GUARD_NOT_RUN"],
        )
    return {
        "status": "ok",
        "app": settings.app_name,
        "schema_guard": schema_guard_result.to_dict(),
    }
