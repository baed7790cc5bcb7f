from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from horarios.errors import ApiError, DuplicateName, DuplicateWeekday, IncompletePairing, UnknownReference
from horarios.models import (
    Contract,
    ContractAmendment,
    Modality,
    ScheduleInstance,
    ScheduleTemplate,
    ScheduleTemplateSlot,
    Shift,
)
from horarios.schemas import ScheduleTemplateSlotInput
from horarios.services.events import (
    SCHEDULE_TEMPLATE_CREATED,
    SCHEDULE_TEMPLATE_DELETED,
    SCHEDULE_TEMPLATE_UPDATED,
    emit_domain_event,
)


@dataclass(frozen=True, slots=True)
class ShiftModalityPair:
    shift_id: int
    modality_id: int


def pair_from_slot(slot: ScheduleTemplateSlotInput) -> ShiftModalityPair | None:
    if slot.shift_id is None and slot.modality_id is None:
        return None
    if slot.shift_id is None or slot.modality_id is None:
        raise IncompletePairing(slot.weekday)
    return ShiftModalityPair(shift_id=slot.shift_id, modality_id=slot.modality_id)


def validate_slots(
    db: Session,
    slots: Sequence[ScheduleTemplateSlotInput],
) -> dict[int, ShiftModalityPair | None]:
    """Validate a weekday slot set and return it keyed by weekday (0 = Monday).

    Checks run in a fixed order (range, uniqueness, pairing, references) so the
    first reported error is deterministic for a given input.
    """
    seen: set[int] = set()
    for slot in slots:
        if slot.weekday < 0 or slot.weekday > 6:
            raise ApiError(
                status_code=422,
                code="INVALID_WEEKDAY",
                message="Weekday must be between 0 (Monday) and 6 (Sunday).",
                details={"weekday": slot.weekday},
            )
        if slot.weekday in seen:
            raise DuplicateWeekday(slot.weekday)
        seen.add(slot.weekday)

    pairs = {slot.weekday: pair_from_slot(slot) for slot in sorted(slots, key=lambda item: item.weekday)}

    shift_ids = sorted({pair.shift_id for pair in pairs.values() if pair is not None})
    modality_ids = sorted({pair.modality_id for pair in pairs.values() if pair is not None})
    if shift_ids:
        found_shift_ids = set(db.scalars(select(Shift.id).where(Shift.id.in_(shift_ids))).all())
        for shift_id in shift_ids:
            if shift_id not in found_shift_ids:
                raise UnknownReference("shift", shift_id)
    if modality_ids:
        found_modality_ids = set(db.scalars(select(Modality.id).where(Modality.id.in_(modality_ids))).all())
        for modality_id in modality_ids:
            if modality_id not in found_modality_ids:
                raise UnknownReference("modality", modality_id)

    return pairs


def _normalize_template_name(raw_name: str) -> str:
    normalized = (raw_name or "").strip()
    if not normalized:
        raise ApiError(status_code=422, code="INVALID_NAME", message="Template name is required.")
    return normalized


def _ensure_unique_template_name(db: Session, name: str, *, exclude_id: int | None = None) -> None:
    conflict = db.scalar(select(ScheduleTemplate).where(ScheduleTemplate.name == name))
    if conflict is not None and conflict.id != exclude_id:
        raise DuplicateName("schedule template", name)


def _slots_payload(pairs: dict[int, ShiftModalityPair | None]) -> list[dict[str, int | None]]:
    return [
        {
            "weekday": weekday,
            "shift_id": pair.shift_id if pair else None,
            "modality_id": pair.modality_id if pair else None,
        }
        for weekday, pair in sorted(pairs.items())
    ]


def _apply_slots(template: ScheduleTemplate, pairs: dict[int, ShiftModalityPair | None]) -> None:
    # Rows are reused per weekday so replacing a slot never trips the (template, weekday) unique key.
    existing = {slot.weekday: slot for slot in template.slots}
    for weekday, pair in sorted(pairs.items()):
        slot = existing.pop(weekday, None)
        if slot is None:
            slot = ScheduleTemplateSlot(weekday=weekday)
            template.slots.append(slot)
        slot.shift_id = pair.shift_id if pair else None
        slot.modality_id = pair.modality_id if pair else None
    for stale_slot in existing.values():
        template.slots.remove(stale_slot)


def get_template(db: Session, template_id: int) -> ScheduleTemplate:
    template = db.scalar(
        select(ScheduleTemplate)
        .options(selectinload(ScheduleTemplate.slots))
        .where(ScheduleTemplate.id == template_id)
    )
    if template is None:
        raise ApiError(status_code=404, code="TEMPLATE_NOT_FOUND", message="Schedule template not found.")
    return template


def list_templates(db: Session) -> list[ScheduleTemplate]:
    stmt = (
        select(ScheduleTemplate)
        .options(selectinload(ScheduleTemplate.slots))
        .order_by(ScheduleTemplate.name.asc(), ScheduleTemplate.id.asc())
    )
    return list(db.scalars(stmt).all())


def _commit_template(db: Session, template: ScheduleTemplate) -> ScheduleTemplate:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateName("schedule template", template.name) from exc
    return get_template(db, template.id)


def create_template(
    db: Session,
    *,
    name: str,
    description: str | None,
    slots: Sequence[ScheduleTemplateSlotInput],
    actor_id: str,
) -> ScheduleTemplate:
    normalized_name = _normalize_template_name(name)
    pairs = validate_slots(db, slots)
    _ensure_unique_template_name(db, normalized_name)

    template = ScheduleTemplate(name=normalized_name, description=description, slots=[])
    _apply_slots(template, pairs)
    db.add(template)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateName("schedule template", normalized_name) from exc

    emit_domain_event(
        db,
        event_type=SCHEDULE_TEMPLATE_CREATED,
        aggregate_type="schedule_template",
        aggregate_id=template.id,
        payload={"name": normalized_name, "slots": _slots_payload(pairs)},
        actor_id=actor_id,
    )
    return _commit_template(db, template)


def update_template(
    db: Session,
    template_id: int,
    *,
    name: str,
    description: str | None,
    slots: Sequence[ScheduleTemplateSlotInput],
    actor_id: str,
) -> ScheduleTemplate:
    """Replace name, description and the full slot set.

    Materialized schedule instances are left untouched; regenerating them is
    an explicit, separate step.
    """
    template = get_template(db, template_id)
    normalized_name = _normalize_template_name(name)
    pairs = validate_slots(db, slots)
    if normalized_name != template.name:
        _ensure_unique_template_name(db, normalized_name, exclude_id=template.id)

    template.name = normalized_name
    template.description = description
    _apply_slots(template, pairs)
    emit_domain_event(
        db,
        event_type=SCHEDULE_TEMPLATE_UPDATED,
        aggregate_type="schedule_template",
        aggregate_id=template.id,
        payload={"name": normalized_name, "slots": _slots_payload(pairs)},
        actor_id=actor_id,
    )
    return _commit_template(db, template)


def delete_template(db: Session, template_id: int, *, actor_id: str) -> int:
    template = get_template(db, template_id)

    contract_refs = db.scalar(
        select(Contract.id).where(Contract.schedule_template_id == template.id).limit(1)
    )
    amendment_refs = db.scalar(
        select(ContractAmendment.id).where(ContractAmendment.schedule_template_id == template.id).limit(1)
    )
    if contract_refs is not None or amendment_refs is not None:
        raise ApiError(
            status_code=409,
            code="TEMPLATE_IN_USE",
            message="Schedule template is assigned to contracts or amendments.",
            details={
                "contract_id": contract_refs,
                "amendment_id": amendment_refs,
            },
        )

    db.execute(
        update(ScheduleInstance)
        .where(ScheduleInstance.schedule_template_id == template.id)
        .values(schedule_template_id=None)
    )
    emit_domain_event(
        db,
        event_type=SCHEDULE_TEMPLATE_DELETED,
        aggregate_type="schedule_template",
        aggregate_id=template.id,
        payload={"name": template.name},
        actor_id=actor_id,
    )
    deleted_id = template.id
    db.delete(template)
    db.commit()
    return deleted_id
