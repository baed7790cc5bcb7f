from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "shifts": {"id", "center_id", "start_time", "end_time", "break_start_time", "break_end_time"},
    "schedule_template_slots": {"template_id", "weekday", "shift_id", "modality_id"},
    "schedule_instances": {"id", "contract_id", "day_date", "start_ts", "end_ts", "status"},
    "attendance_sessions": {"id", "session_key", "state", "version_id", "orphaned", "late_minutes"},
    "attendance_locks": {"employee_id"},
    "attendance_session_events": {"session_id", "sequence", "action", "ts_utc"},
    "absence_notes": {"id", "schedule_instance_id", "status", "orphaned"},
    "domain_events": {"id", "event_type", "payload"},
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "attendance_session_state": {
        "NOT_STARTED",
        "ACTIVE",
        "ON_OBLIGATORY_BREAK",
        "ON_ADDITIONAL_BREAK",
        "FINISHED",
    },
    "attendance_action": {"iniciar", "descanso_obligatorio", "descanso_adicional", "reanudar", "finalizar"},
    "schedule_instance_status": {"ACTIVE", "CANCELLED"},
    "absence_note_status": {"PENDING", "APPROVED", "REJECTED"},
}


def _missing_columns(inspector: Any) -> list[str]:
    issues: list[str] = []
    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            present = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:  # pragma: no cover
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        missing = sorted(required_columns - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")
    return issues


def _enum_labels(inspector: Any) -> tuple[dict[str, set[str]] | None, str | None]:
    # Only PostgreSQL exposes named enums; other dialects report none.
    try:
        enums = inspector.get_enums() or []
    except Exception as exc:  # pragma: no cover
        return None, f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}"
    labels_by_name: dict[str, set[str]] = {}
    for enum_item in enums:
        name = str(enum_item.get("name") or "").strip()
        labels = enum_item.get("labels")
        if name and isinstance(labels, list):
            labels_by_name[name] = {str(label) for label in labels}
    return labels_by_name, None


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    """Compare the live database with what this build expects, without changing it."""
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)
    issues = _missing_columns(inspector)
    warnings: list[str] = []

    labels_by_name, enum_warning = _enum_labels(inspector)
    if enum_warning is not None:
        warnings.append(enum_warning)
    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if labels_by_name is None:
            break
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(required_values - labels_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")

    try:
        with engine.connect() as connection:
            version = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
        if not str(version or "").strip():
            issues.append("ALEMBIC_VERSION_EMPTY")
    except Exception as exc:  # pragma: no cover
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
