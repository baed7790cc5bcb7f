from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import time
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from horarios.errors import ApiError, DuplicateName, InvalidBreakWindow
from horarios.models import Shift
from horarios.services.events import (
    SHIFT_CREATED,
    SHIFT_DEACTIVATED,
    SHIFT_UPDATED,
    emit_domain_event,
)
from horarios.services.time_windows import cycle_offset, format_hhmm

logger = logging.getLogger("horarios.schedule")

DEFAULT_SHIFT_COLOR = "#FB7D16"
_HEX_COLOR_RE = re.compile(r"^#?([0-9A-Fa-f]{6})$")
_UPDATABLE_FIELDS = {
    "name",
    "start_time",
    "end_time",
    "break_start_time",
    "break_end_time",
    "color",
    "is_active",
}


@dataclass(frozen=True, slots=True)
class BreakWindow:
    start: time
    end: time

    @classmethod
    def from_optional(cls, start: time | None, end: time | None) -> BreakWindow | None:
        if start is None and end is None:
            return None
        if start is None or end is None:
            raise InvalidBreakWindow("Break start and end must be informed together or both left empty.")
        return cls(start=start, end=end)


def normalize_color(raw_color: str | None) -> str:
    if raw_color is None:
        return DEFAULT_SHIFT_COLOR
    match = _HEX_COLOR_RE.match(raw_color.strip())
    if match is None:
        raise ApiError(status_code=422, code="INVALID_COLOR", message="Color must be a 6 digit hex value.")
    return f"#{match.group(1).upper()}"


def shift_length_minutes(start: time, end: time) -> int:
    length = cycle_offset(end, start)
    if length == 0:
        raise ApiError(
            status_code=422,
            code="INVALID_SHIFT_WINDOW",
            message="Shift start and end cannot be the same time.",
        )
    return length


def validate_break_window(start: time, end: time, window: BreakWindow | None) -> None:
    length = shift_length_minutes(start, end)
    if window is None:
        return
    # Offsets are measured from the shift start so overnight shifts compare like daytime ones.
    break_start_offset = cycle_offset(window.start, start)
    break_end_offset = cycle_offset(window.end, start)
    if not 0 < break_start_offset < break_end_offset < length:
        raise InvalidBreakWindow("Break window must lie strictly inside the shift.")


def _normalize_name(raw_name: str) -> str:
    normalized = (raw_name or "").strip()
    if not normalized:
        raise ApiError(status_code=422, code="INVALID_NAME", message="Shift name is required.")
    return normalized


def _ensure_unique_name(db: Session, *, center_id: int, name: str, exclude_id: int | None = None) -> None:
    conflict = db.scalar(
        select(Shift).where(
            Shift.center_id == center_id,
            Shift.name == name,
        )
    )
    if conflict is not None and conflict.id != exclude_id:
        raise DuplicateName("shift", name)


def shift_snapshot(shift: Shift) -> dict[str, Any]:
    return {
        "center_id": shift.center_id,
        "name": shift.name,
        "start_time": format_hhmm(shift.start_time),
        "end_time": format_hhmm(shift.end_time),
        "break_start_time": format_hhmm(shift.break_start_time),
        "break_end_time": format_hhmm(shift.break_end_time),
        "color": shift.color,
        "is_active": shift.is_active,
    }


def _commit_shift(db: Session, shift: Shift) -> Shift:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateName("shift", shift.name) from exc
    db.refresh(shift)
    return shift


def create_shift(
    db: Session,
    *,
    center_id: int,
    name: str,
    start_time: time,
    end_time: time,
    break_start_time: time | None = None,
    break_end_time: time | None = None,
    color: str | None = None,
    actor_id: str,
) -> Shift:
    normalized_name = _normalize_name(name)
    window = BreakWindow.from_optional(break_start_time, break_end_time)
    validate_break_window(start_time, end_time, window)
    normalized_color = normalize_color(color)
    _ensure_unique_name(db, center_id=center_id, name=normalized_name)

    shift = Shift(
        center_id=center_id,
        name=normalized_name,
        start_time=start_time,
        end_time=end_time,
        break_start_time=window.start if window else None,
        break_end_time=window.end if window else None,
        color=normalized_color,
        is_active=True,
    )
    db.add(shift)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateName("shift", normalized_name) from exc
    emit_domain_event(
        db,
        event_type=SHIFT_CREATED,
        aggregate_type="shift",
        aggregate_id=shift.id,
        payload=shift_snapshot(shift),
        actor_id=actor_id,
    )
    return _commit_shift(db, shift)


def update_shift(
    db: Session,
    shift_id: int,
    *,
    fields: dict[str, Any],
    actor_id: str,
) -> Shift:
    """Apply a partial update and revalidate the merged definition.

    Already materialized schedule instances keep the instants resolved when
    they were created; nothing here touches them.
    """
    shift = db.get(Shift, shift_id)
    if shift is None:
        raise ApiError(status_code=404, code="SHIFT_NOT_FOUND", message="Shift not found.")

    unknown_fields = sorted(set(fields) - _UPDATABLE_FIELDS)
    if unknown_fields:
        raise ApiError(
            status_code=422,
            code="VALIDATION_ERROR",
            message=f"Unknown shift fields: {', '.join(unknown_fields)}",
        )

    name = _normalize_name(fields["name"]) if "name" in fields else shift.name
    start_time = fields["start_time"] if fields.get("start_time") is not None else shift.start_time
    end_time = fields["end_time"] if fields.get("end_time") is not None else shift.end_time
    break_start_time = fields["break_start_time"] if "break_start_time" in fields else shift.break_start_time
    break_end_time = fields["break_end_time"] if "break_end_time" in fields else shift.break_end_time
    window = BreakWindow.from_optional(break_start_time, break_end_time)
    validate_break_window(start_time, end_time, window)
    color = normalize_color(fields["color"]) if "color" in fields else shift.color
    if name != shift.name:
        _ensure_unique_name(db, center_id=shift.center_id, name=name, exclude_id=shift.id)

    shift.name = name
    shift.start_time = start_time
    shift.end_time = end_time
    shift.break_start_time = window.start if window else None
    shift.break_end_time = window.end if window else None
    shift.color = color
    if fields.get("is_active") is not None:
        shift.is_active = bool(fields["is_active"])

    emit_domain_event(
        db,
        event_type=SHIFT_UPDATED,
        aggregate_type="shift",
        aggregate_id=shift.id,
        payload=shift_snapshot(shift),
        actor_id=actor_id,
    )
    return _commit_shift(db, shift)


def list_shifts(
    db: Session,
    *,
    center_id: int | None = None,
    active_only: bool = False,
) -> list[Shift]:
    stmt = select(Shift).order_by(Shift.center_id.asc(), Shift.id.asc())
    if center_id is not None:
        stmt = stmt.where(Shift.center_id == center_id)
    if active_only:
        stmt = stmt.where(Shift.is_active.is_(True))
    return list(db.scalars(stmt).all())


def deactivate_shift(db: Session, shift_id: int, *, actor_id: str) -> Shift:
    shift = db.get(Shift, shift_id)
    if shift is None:
        raise ApiError(status_code=404, code="SHIFT_NOT_FOUND", message="Shift not found.")

    # Templates and instances keep referencing the row; it is only hidden from new assignments.
    shift.is_active = False
    emit_domain_event(
        db,
        event_type=SHIFT_DEACTIVATED,
        aggregate_type="shift",
        aggregate_id=shift.id,
        payload={"center_id": shift.center_id, "name": shift.name},
        actor_id=actor_id,
    )
    db.commit()
    db.refresh(shift)
    logger.info("shift_deactivated", extra={"shift_id": shift.id, "actor_id": actor_id})
    return shift
