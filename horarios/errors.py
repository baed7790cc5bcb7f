from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class InvalidBreakWindow(ApiError):
    def __init__(self, message: str = "Break window is invalid."):
        super().__init__(422, "INVALID_BREAK_WINDOW", message)


class DuplicateName(ApiError):
    def __init__(self, entity: str, name: str):
        super().__init__(
            409,
            "DUPLICATE_NAME",
            f"A {entity} named '{name}' already exists.",
            details={"entity": entity, "name": name},
        )


class DuplicateWeekday(ApiError):
    def __init__(self, weekday: int):
        super().__init__(
            422,
            "DUPLICATE_WEEKDAY",
            f"Weekday {weekday} appears more than once.",
            details={"weekday": weekday},
        )
        self.weekday = weekday


class IncompletePairing(ApiError):
    def __init__(self, weekday: int):
        super().__init__(
            422,
            "INCOMPLETE_PAIRING",
            "Shift and modality must be informed together or both left empty.",
            details={"weekday": weekday},
        )
        self.weekday = weekday


class UnknownReference(ApiError):
    def __init__(self, entity: str, entity_id: int):
        super().__init__(
            422,
            "UNKNOWN_REFERENCE",
            f"Unknown {entity} id: {entity_id}",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class OverlappingSchedule(ApiError):
    def __init__(self, conflicts: list[dict[str, Any]]):
        super().__init__(
            409,
            "OVERLAPPING_SCHEDULE",
            "Schedule overlaps another active schedule of the same contract.",
            details={"conflicts": conflicts},
        )
        self.conflicts = conflicts


class AlreadyExists(ApiError):
    def __init__(self, schedule_instance_id: int, existing_id: int):
        super().__init__(
            409,
            "ALREADY_EXISTS",
            "An absence note already exists for this schedule.",
            details={"schedule_instance_id": schedule_instance_id, "absence_note_id": existing_id},
        )


class AlreadyResolved(ApiError):
    def __init__(self, note_id: int, status: str):
        super().__init__(
            409,
            "ALREADY_RESOLVED",
            "Absence note has already been resolved.",
            details={"absence_note_id": note_id, "status": status},
        )


class InvalidTransition(ApiError):
    def __init__(self, *, current_state: str, action: str):
        super().__init__(
            409,
            "INVALID_TRANSITION",
            f"Action '{action}' is not allowed from state {current_state}.",
            details={"current_state": current_state, "action": action},
        )
        self.current_state = current_state
        self.action = action


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": get_request_id(request),
    }
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})
