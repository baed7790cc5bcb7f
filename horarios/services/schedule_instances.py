from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from horarios.errors import ApiError, OverlappingSchedule, UnknownReference
from horarios.models import (
    AbsenceNote,
    AbsenceNoteStatus,
    AttendanceSession,
    AttendanceState,
    Contract,
    ContractAmendment,
    Modality,
    ScheduleInstance,
    ScheduleInstanceStatus,
    Shift,
)
from horarios.schemas import (
    ScheduleInstanceCreateItem,
    ScheduleInstanceTimes,
    ScheduleInstanceUpdateItem,
)
from horarios.settings import get_settings
from horarios.services.events import (
    SCHEDULE_INSTANCES_CANCELLED,
    SCHEDULE_INSTANCES_CREATED,
    SCHEDULE_INSTANCES_GENERATED,
    SCHEDULE_INSTANCES_UPDATED,
    emit_domain_event,
)
from horarios.services.schedule_templates import get_template
from horarios.services.shifts import BreakWindow, validate_break_window
from horarios.services.time_windows import (
    as_utc,
    iter_days,
    parse_optional_hhmm,
    resolve_inner_instant,
    resolve_window,
)

logger = logging.getLogger("horarios.schedule")

ORPHANED_ATTENDANCE_SESSION = "ORPHANED_ATTENDANCE_SESSION"
ORPHANED_ABSENCE_NOTE = "ORPHANED_ABSENCE_NOTE"


@dataclass(slots=True)
class InstanceDraft:
    contract_id: int
    amendment_id: int | None
    day_date: date
    shift_id: int | None
    modality_id: int
    start_ts: datetime
    end_ts: datetime
    break_start_ts: datetime | None = None
    break_end_ts: datetime | None = None
    observations: str | None = None
    schedule_template_id: int | None = None
    instance_id: int | None = None

    def overlaps(self, start_ts: datetime, end_ts: datetime) -> bool:
        return self.start_ts < end_ts and start_ts < self.end_ts


@dataclass(slots=True)
class BulkDeleteResult:
    deleted_ids: list[int]
    warnings: list[dict[str, Any]] = field(default_factory=list)


def _ensure_batch_size(count: int) -> None:
    limit = get_settings().bulk_max_items
    if count > limit:
        raise ApiError(
            status_code=422,
            code="BATCH_TOO_LARGE",
            message=f"A batch can hold at most {limit} schedules.",
            details={"count": count, "limit": limit},
        )


def _load_contracts(db: Session, contract_ids: set[int]) -> dict[int, Contract]:
    if not contract_ids:
        return {}
    contracts = db.scalars(
        select(Contract)
        .options(selectinload(Contract.amendments))
        .where(Contract.id.in_(sorted(contract_ids)))
    ).all()
    by_id = {contract.id: contract for contract in contracts}
    for contract_id in sorted(contract_ids):
        if contract_id not in by_id:
            raise UnknownReference("contract", contract_id)
    return by_id


def _load_shifts(db: Session, shift_ids: set[int]) -> dict[int, Shift]:
    if not shift_ids:
        return {}
    shifts = db.scalars(select(Shift).where(Shift.id.in_(sorted(shift_ids)))).all()
    by_id = {shift.id: shift for shift in shifts}
    for shift_id in sorted(shift_ids):
        if shift_id not in by_id:
            raise UnknownReference("shift", shift_id)
    return by_id


def _ensure_modalities_exist(db: Session, modality_ids: set[int]) -> None:
    if not modality_ids:
        return
    found = set(db.scalars(select(Modality.id).where(Modality.id.in_(sorted(modality_ids)))).all())
    for modality_id in sorted(modality_ids):
        if modality_id not in found:
            raise UnknownReference("modality", modality_id)


def _covers(valid_from: date, valid_to: date | None, day_date: date) -> bool:
    return valid_from <= day_date and (valid_to is None or day_date <= valid_to)


def resolve_contract_period(
    contract: Contract,
    day_date: date,
    *,
    amendment: ContractAmendment | None = None,
) -> int | None:
    """Return the amendment id a schedule on ``day_date`` belongs to, or None for the contract itself.

    An amendment covering the day takes precedence over the base contract.
    """
    if amendment is not None:
        if _covers(amendment.valid_from, amendment.valid_to, day_date):
            return amendment.id
        raise _outside_period(contract.id, day_date, amendment_id=amendment.id)

    for candidate in contract.amendments:
        if _covers(candidate.valid_from, candidate.valid_to, day_date):
            return candidate.id
    if _covers(contract.valid_from, contract.valid_to, day_date):
        return None
    raise _outside_period(contract.id, day_date)


def _outside_period(contract_id: int, day_date: date, *, amendment_id: int | None = None) -> ApiError:
    return ApiError(
        status_code=422,
        code="OUTSIDE_CONTRACT_PERIOD",
        message="Schedule date is outside the contract or amendment validity.",
        details={
            "contract_id": contract_id,
            "amendment_id": amendment_id,
            "day_date": day_date.isoformat(),
        },
    )


def draft_from_shift(
    *,
    contract_id: int,
    amendment_id: int | None,
    day_date: date,
    shift: Shift,
    modality_id: int,
    schedule_template_id: int | None = None,
    observations: str | None = None,
) -> InstanceDraft:
    start_ts, end_ts = resolve_window(day_date, shift.start_time, shift.end_time)
    break_start_ts = None
    break_end_ts = None
    if shift.break_start_time is not None and shift.break_end_time is not None:
        break_start_ts = resolve_inner_instant(day_date, shift.start_time, shift.break_start_time)
        break_end_ts = resolve_inner_instant(day_date, shift.start_time, shift.break_end_time)
    return InstanceDraft(
        contract_id=contract_id,
        amendment_id=amendment_id,
        day_date=day_date,
        shift_id=shift.id,
        modality_id=modality_id,
        start_ts=start_ts,
        end_ts=end_ts,
        break_start_ts=break_start_ts,
        break_end_ts=break_end_ts,
        observations=observations,
        schedule_template_id=schedule_template_id,
    )


def _draft_from_item(
    item: ScheduleInstanceTimes,
    *,
    contract_id: int,
    amendment_id: int | None,
    shifts: dict[int, Shift],
    schedule_template_id: int | None = None,
) -> InstanceDraft:
    observations = (item.observations or "").strip() or None
    if observations is not None and len(observations) > 255:
        raise ApiError(status_code=422, code="VALIDATION_ERROR", message="Observations cannot exceed 255 characters.")

    start_time = parse_optional_hhmm(item.start_time)
    end_time = parse_optional_hhmm(item.end_time)
    if start_time is None and end_time is None:
        if item.shift_id is None:
            raise ApiError(
                status_code=422,
                code="SCHEDULE_TIMES_REQUIRED",
                message="Either shift_id or start_time and end_time are required.",
                details={"day_date": item.day_date.isoformat()},
            )
        if item.break_start_time is not None or item.break_end_time is not None:
            raise ApiError(
                status_code=422,
                code="SCHEDULE_TIMES_REQUIRED",
                message="A break override needs explicit start_time and end_time.",
                details={"day_date": item.day_date.isoformat()},
            )
        draft = draft_from_shift(
            contract_id=contract_id,
            amendment_id=amendment_id,
            day_date=item.day_date,
            shift=shifts[item.shift_id],
            modality_id=item.modality_id,
            schedule_template_id=schedule_template_id,
            observations=observations,
        )
        return draft

    if start_time is None or end_time is None:
        raise ApiError(
            status_code=422,
            code="SCHEDULE_TIMES_REQUIRED",
            message="start_time and end_time must be informed together.",
            details={"day_date": item.day_date.isoformat()},
        )
    window = BreakWindow.from_optional(
        parse_optional_hhmm(item.break_start_time),
        parse_optional_hhmm(item.break_end_time),
    )
    validate_break_window(start_time, end_time, window)
    start_ts, end_ts = resolve_window(item.day_date, start_time, end_time)
    return InstanceDraft(
        contract_id=contract_id,
        amendment_id=amendment_id,
        day_date=item.day_date,
        shift_id=item.shift_id,
        modality_id=item.modality_id,
        start_ts=start_ts,
        end_ts=end_ts,
        break_start_ts=resolve_inner_instant(item.day_date, start_time, window.start) if window else None,
        break_end_ts=resolve_inner_instant(item.day_date, start_time, window.end) if window else None,
        observations=observations,
        schedule_template_id=schedule_template_id,
    )


def _conflict_entry(draft: InstanceDraft, **extra: Any) -> dict[str, Any]:
    return {
        "contract_id": draft.contract_id,
        "day_date": draft.day_date.isoformat(),
        "start_ts": draft.start_ts.isoformat(),
        "end_ts": draft.end_ts.isoformat(),
        **extra,
    }


def ensure_no_overlaps(
    db: Session,
    drafts: Sequence[InstanceDraft],
    *,
    replaced_ids: set[int] | None = None,
) -> None:
    """Reject the batch when any draft overlaps another draft or a stored active schedule.

    Neighbouring days are included so overnight schedules are compared with
    the morning of the following day.
    """
    replaced_ids = replaced_ids or set()
    conflicts: list[dict[str, Any]] = []

    by_contract: dict[int, list[tuple[int, InstanceDraft]]] = defaultdict(list)
    for index, draft in enumerate(drafts):
        by_contract[draft.contract_id].append((index, draft))

    for contract_id, indexed_drafts in by_contract.items():
        ordered = sorted(indexed_drafts, key=lambda pair: pair[1].start_ts)
        for (previous_index, previous), (current_index, current) in zip(ordered, ordered[1:]):
            if current.overlaps(previous.start_ts, previous.end_ts):
                conflicts.append(_conflict_entry(current, item_index=current_index, conflicting_item_index=previous_index))

        first_day = min(draft.day_date for _, draft in indexed_drafts) - timedelta(days=1)
        last_day = max(draft.day_date for _, draft in indexed_drafts) + timedelta(days=1)
        stmt = select(ScheduleInstance).where(
            ScheduleInstance.contract_id == contract_id,
            ScheduleInstance.status == ScheduleInstanceStatus.ACTIVE,
            ScheduleInstance.day_date >= first_day,
            ScheduleInstance.day_date <= last_day,
        )
        if replaced_ids:
            stmt = stmt.where(ScheduleInstance.id.not_in(sorted(replaced_ids)))
        existing_rows = list(db.scalars(stmt).all())
        for index, draft in ordered:
            for existing in existing_rows:
                if draft.overlaps(as_utc(existing.start_ts), as_utc(existing.end_ts)):
                    conflicts.append(_conflict_entry(draft, item_index=index, conflicting_instance_id=existing.id))

    if conflicts:
        raise OverlappingSchedule(conflicts)


def _apply_draft(instance: ScheduleInstance, draft: InstanceDraft) -> None:
    instance.contract_id = draft.contract_id
    instance.amendment_id = draft.amendment_id
    instance.day_date = draft.day_date
    instance.shift_id = draft.shift_id
    instance.modality_id = draft.modality_id
    instance.start_ts = draft.start_ts
    instance.end_ts = draft.end_ts
    instance.break_start_ts = draft.break_start_ts
    instance.break_end_ts = draft.break_end_ts
    instance.observations = draft.observations
    instance.schedule_template_id = draft.schedule_template_id


def _persist_drafts(
    db: Session,
    drafts: Sequence[InstanceDraft],
    *,
    event_type: str,
    event_payload: dict[str, Any],
    actor_id: str,
) -> list[ScheduleInstance]:
    instances: list[ScheduleInstance] = []
    for draft in drafts:
        instance = ScheduleInstance(status=ScheduleInstanceStatus.ACTIVE)
        _apply_draft(instance, draft)
        db.add(instance)
        instances.append(instance)
    db.flush()

    batch_id = uuid4().hex
    emit_domain_event(
        db,
        event_type=event_type,
        aggregate_type="schedule_instance_batch",
        aggregate_id=batch_id,
        payload={**event_payload, "batch_id": batch_id, "instance_ids": [instance.id for instance in instances]},
        actor_id=actor_id,
    )
    db.commit()
    for instance in instances:
        db.refresh(instance)
    logger.info(
        "schedule_instances_persisted",
        extra={"event_type": event_type, "count": len(instances), "actor_id": actor_id},
    )
    return instances


def generate_from_template(
    db: Session,
    *,
    contract_id: int,
    date_from: date,
    date_to: date,
    actor_id: str,
    amendment_id: int | None = None,
    schedule_template_id: int | None = None,
) -> list[ScheduleInstance]:
    """Expand a weekly template into dated schedules for one contract.

    The template defaults to the one configured on the amendment, then on
    the contract. Weekdays without a shift are skipped. The whole range is
    validated before anything is written.
    """
    if date_to < date_from:
        raise ApiError(status_code=422, code="INVALID_RANGE", message="date_to must not precede date_from.")
    max_days = get_settings().generation_max_days
    if (date_to - date_from).days + 1 > max_days:
        raise ApiError(
            status_code=422,
            code="RANGE_TOO_LARGE",
            message=f"A generation range can cover at most {max_days} days.",
        )

    contract = _load_contracts(db, {contract_id})[contract_id]
    amendment: ContractAmendment | None = None
    if amendment_id is not None:
        amendment = next((item for item in contract.amendments if item.id == amendment_id), None)
        if amendment is None:
            raise UnknownReference("amendment", amendment_id)

    template_id = schedule_template_id
    if template_id is None and amendment is not None:
        template_id = amendment.schedule_template_id
    if template_id is None:
        template_id = contract.schedule_template_id
    if template_id is None:
        raise ApiError(
            status_code=422,
            code="TEMPLATE_REQUIRED",
            message="No schedule template given or configured for this contract.",
        )
    template = get_template(db, template_id)

    slots_by_weekday = {
        slot.weekday: slot
        for slot in template.slots
        if slot.shift_id is not None and slot.modality_id is not None
    }
    shifts = _load_shifts(db, {slot.shift_id for slot in slots_by_weekday.values() if slot.shift_id is not None})

    drafts: list[InstanceDraft] = []
    for day_date in iter_days(date_from, date_to):
        slot = slots_by_weekday.get(day_date.weekday())
        if slot is None or slot.shift_id is None or slot.modality_id is None:
            continue
        resolved_amendment_id = resolve_contract_period(contract, day_date, amendment=amendment)
        drafts.append(
            draft_from_shift(
                contract_id=contract.id,
                amendment_id=resolved_amendment_id,
                day_date=day_date,
                shift=shifts[slot.shift_id],
                modality_id=slot.modality_id,
                schedule_template_id=template.id,
            )
        )

    _ensure_batch_size(len(drafts))
    if not drafts:
        return []
    ensure_no_overlaps(db, drafts)
    return _persist_drafts(
        db,
        drafts,
        event_type=SCHEDULE_INSTANCES_GENERATED,
        event_payload={
            "contract_id": contract.id,
            "amendment_id": amendment_id,
            "schedule_template_id": template.id,
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
        },
        actor_id=actor_id,
    )


def bulk_create_instances(
    db: Session,
    *,
    items: Sequence[ScheduleInstanceCreateItem],
    actor_id: str,
) -> list[ScheduleInstance]:
    _ensure_batch_size(len(items))
    contracts = _load_contracts(db, {item.contract_id for item in items})
    shifts = _load_shifts(db, {item.shift_id for item in items if item.shift_id is not None})
    _ensure_modalities_exist(db, {item.modality_id for item in items})

    drafts: list[InstanceDraft] = []
    for item in items:
        contract = contracts[item.contract_id]
        drafts.append(
            _draft_from_item(
                item,
                contract_id=contract.id,
                amendment_id=resolve_contract_period(contract, item.day_date),
                shifts=shifts,
            )
        )

    ensure_no_overlaps(db, drafts)
    return _persist_drafts(
        db,
        drafts,
        event_type=SCHEDULE_INSTANCES_CREATED,
        event_payload={"contract_ids": sorted(contracts)},
        actor_id=actor_id,
    )


def _load_active_instances(db: Session, ids: Sequence[int]) -> dict[int, ScheduleInstance]:
    unique_ids = sorted(set(ids))
    rows = db.scalars(
        select(ScheduleInstance)
        .where(ScheduleInstance.id.in_(unique_ids))
        .with_for_update()
    ).all()
    by_id = {row.id: row for row in rows if row.status == ScheduleInstanceStatus.ACTIVE}
    missing_ids = [instance_id for instance_id in unique_ids if instance_id not in by_id]
    if missing_ids:
        raise ApiError(
            status_code=404,
            code="INSTANCE_NOT_FOUND",
            message="Some schedules do not exist or are cancelled.",
            details={"missing_ids": missing_ids},
        )
    return by_id


def bulk_update_instances(
    db: Session,
    *,
    items: Sequence[ScheduleInstanceUpdateItem],
    actor_id: str,
) -> list[ScheduleInstance]:
    """Replace the addressed schedules and revalidate them against every other active schedule."""
    _ensure_batch_size(len(items))
    requested_ids = [item.id for item in items]
    if len(set(requested_ids)) != len(requested_ids):
        raise ApiError(
            status_code=422,
            code="DUPLICATE_INSTANCE_ID",
            message="Each schedule can appear only once per batch.",
        )
    instances = _load_active_instances(db, requested_ids)
    contracts = _load_contracts(db, {instance.contract_id for instance in instances.values()})
    shifts = _load_shifts(db, {item.shift_id for item in items if item.shift_id is not None})
    _ensure_modalities_exist(db, {item.modality_id for item in items})

    drafts: list[InstanceDraft] = []
    for item in items:
        instance = instances[item.id]
        contract = contracts[instance.contract_id]
        draft = _draft_from_item(
            item,
            contract_id=contract.id,
            amendment_id=resolve_contract_period(contract, item.day_date),
            shifts=shifts,
            schedule_template_id=instance.schedule_template_id,
        )
        draft.instance_id = instance.id
        drafts.append(draft)

    ensure_no_overlaps(db, drafts, replaced_ids=set(requested_ids))

    for draft in drafts:
        _apply_draft(instances[draft.instance_id], draft)  # type: ignore[index]
    batch_id = uuid4().hex
    emit_domain_event(
        db,
        event_type=SCHEDULE_INSTANCES_UPDATED,
        aggregate_type="schedule_instance_batch",
        aggregate_id=batch_id,
        payload={"batch_id": batch_id, "instance_ids": requested_ids},
        actor_id=actor_id,
    )
    db.commit()
    updated = [instances[instance_id] for instance_id in requested_ids]
    for instance in updated:
        db.refresh(instance)
    return updated


def bulk_delete_instances(
    db: Session,
    *,
    ids: Sequence[int],
    actor_id: str,
    now_utc: datetime | None = None,
) -> BulkDeleteResult:
    """Cancel schedules and detach whatever still depends on them.

    Unfinished attendance sessions and pending absence notes lose their link
    and are flagged as orphaned; each one is reported back as a warning.
    """
    _ensure_batch_size(len(ids))
    instances = _load_active_instances(db, ids)
    cancelled_at = now_utc or datetime.now(timezone.utc)
    instance_ids = sorted(instances)
    warnings: list[dict[str, Any]] = []

    open_sessions = db.scalars(
        select(AttendanceSession)
        .where(
            AttendanceSession.schedule_instance_id.in_(instance_ids),
            AttendanceSession.state != AttendanceState.FINISHED,
        )
        .order_by(AttendanceSession.id.asc())
        .with_for_update()
    ).all()
    for session in open_sessions:
        warnings.append(
            {
                "code": ORPHANED_ATTENDANCE_SESSION,
                "entity_type": "attendance_session",
                "entity_id": session.id,
                "schedule_instance_id": session.schedule_instance_id,
            }
        )
        session.orphaned = True
        session.orphaned_from_instance_id = session.schedule_instance_id
        session.schedule_instance_id = None

    pending_notes = db.scalars(
        select(AbsenceNote)
        .where(
            AbsenceNote.schedule_instance_id.in_(instance_ids),
            AbsenceNote.status == AbsenceNoteStatus.PENDING,
        )
        .order_by(AbsenceNote.id.asc())
    ).all()
    for note in pending_notes:
        warnings.append(
            {
                "code": ORPHANED_ABSENCE_NOTE,
                "entity_type": "absence_note",
                "entity_id": note.id,
                "schedule_instance_id": note.schedule_instance_id,
            }
        )
        note.orphaned = True
        note.orphaned_from_instance_id = note.schedule_instance_id
        note.schedule_instance_id = None

    for instance in instances.values():
        instance.status = ScheduleInstanceStatus.CANCELLED
        instance.cancelled_at = cancelled_at

    batch_id = uuid4().hex
    emit_domain_event(
        db,
        event_type=SCHEDULE_INSTANCES_CANCELLED,
        aggregate_type="schedule_instance_batch",
        aggregate_id=batch_id,
        payload={"batch_id": batch_id, "instance_ids": instance_ids, "warnings": warnings},
        actor_id=actor_id,
    )
    db.commit()
    if warnings:
        logger.warning(
            "schedule_instances_orphaned_dependents",
            extra={"instance_ids": instance_ids, "warnings": warnings, "actor_id": actor_id},
        )
    return BulkDeleteResult(deleted_ids=instance_ids, warnings=warnings)


def list_instances(
    db: Session,
    *,
    contract_id: int | None = None,
    employee_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    include_cancelled: bool = False,
) -> list[ScheduleInstance]:
    stmt = select(ScheduleInstance).order_by(ScheduleInstance.start_ts.asc(), ScheduleInstance.id.asc())
    if contract_id is not None:
        stmt = stmt.where(ScheduleInstance.contract_id == contract_id)
    if employee_id is not None:
        stmt = stmt.join(Contract, Contract.id == ScheduleInstance.contract_id).where(Contract.employee_id == employee_id)
    if date_from is not None:
        stmt = stmt.where(ScheduleInstance.day_date >= date_from)
    if date_to is not None:
        stmt = stmt.where(ScheduleInstance.day_date <= date_to)
    if not include_cancelled:
        stmt = stmt.where(ScheduleInstance.status == ScheduleInstanceStatus.ACTIVE)
    return list(db.scalars(stmt).all())


def scheduled_minutes(instance: ScheduleInstance) -> int:
    start_ts = as_utc(instance.start_ts)
    end_ts = as_utc(instance.end_ts)
    total = int((end_ts - start_ts).total_seconds() // 60)  # type: ignore[operator]
    if instance.break_start_ts is not None and instance.break_end_ts is not None:
        total -= int((as_utc(instance.break_end_ts) - as_utc(instance.break_start_ts)).total_seconds() // 60)  # type: ignore[operator]
    return max(0, total)


def break_window_minutes(instance: ScheduleInstance) -> int | None:
    if instance.break_start_ts is None or instance.break_end_ts is None:
        return None
    return int((as_utc(instance.break_end_ts) - as_utc(instance.break_start_ts)).total_seconds() // 60)  # type: ignore[operator]


def mandatory_break_offset_minutes(instance: ScheduleInstance) -> int | None:
    if instance.break_start_ts is None:
        return None
    return int((as_utc(instance.break_start_ts) - as_utc(instance.start_ts)).total_seconds() // 60)  # type: ignore[operator]


