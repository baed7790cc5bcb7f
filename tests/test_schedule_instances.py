from __future__ import annotations

import unittest
from datetime import date, datetime, time, timezone

from sqlalchemy import func, select

from horarios.errors import ApiError
from horarios.models import (
    AbsenceNote,
    AbsenceNoteStatus,
    AttendanceSession,
    AttendanceState,
    DomainEvent,
    ModalityCode,
    ScheduleInstance,
    ScheduleInstanceStatus,
)
from horarios.schemas import ScheduleInstanceCreateItem, ScheduleInstanceUpdateItem, ScheduleTemplateSlotInput
from horarios.services.schedule_instances import (
    ORPHANED_ABSENCE_NOTE,
    ORPHANED_ATTENDANCE_SESSION,
    bulk_create_instances,
    bulk_delete_instances,
    bulk_update_instances,
    generate_from_template,
    list_instances,
    scheduled_minutes,
)
from horarios.services.schedule_templates import create_template
from horarios.services.time_windows import as_utc
from tests.db_support import (
    add_amendment,
    add_contract,
    add_shift,
    event_types,
    make_sqlite_session_factory,
    seed_modalities,
)


def _utc(year: int, month: int, day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


class ScheduleInstanceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_sqlite_session_factory()()
        self.modalities = seed_modalities(self.db)
        self.on_site = self.modalities[ModalityCode.ON_SITE]
        self.remote = self.modalities[ModalityCode.REMOTE]
        self.morning = add_shift(
            self.db,
            name="Manana",
            start=time(9, 0),
            end=time(17, 0),
            break_start=time(13, 0),
            break_end=time(13, 30),
        )
        self.night = add_shift(self.db, name="Noche", start=time(22, 0), end=time(6, 0))
        self.contract = add_contract(self.db, employee_id=7, valid_from=date(2026, 1, 1))

    def tearDown(self) -> None:
        self.db.close()

    def _template(self, slots: list[ScheduleTemplateSlotInput], name: str = "Oficina") -> int:
        return create_template(self.db, name=name, description=None, slots=slots, actor_id="admin").id

    def _item(self, day_date: date, **overrides) -> ScheduleInstanceCreateItem:  # type: ignore[no-untyped-def]
        values = {"contract_id": self.contract.id, "day_date": day_date, "modality_id": self.on_site}
        values.update(overrides)
        return ScheduleInstanceCreateItem(**values)

    def _instance_count(self) -> int:
        return int(self.db.scalar(select(func.count()).select_from(ScheduleInstance)) or 0)

    def test_generation_expands_template_and_skips_empty_weekdays(self) -> None:
        template_id = self._template(
            [
                ScheduleTemplateSlotInput(weekday=0, shift_id=self.morning.id, modality_id=self.on_site),
                ScheduleTemplateSlotInput(weekday=2, shift_id=self.morning.id, modality_id=self.remote),
                ScheduleTemplateSlotInput(weekday=3),
                ScheduleTemplateSlotInput(weekday=5, shift_id=self.night.id, modality_id=self.on_site),
            ]
        )

        instances = generate_from_template(
            self.db,
            contract_id=self.contract.id,
            schedule_template_id=template_id,
            date_from=date(2026, 2, 2),
            date_to=date(2026, 2, 8),
            actor_id="admin",
        )

        self.assertEqual([item.day_date for item in instances], [date(2026, 2, 2), date(2026, 2, 4), date(2026, 2, 7)])
        monday = instances[0]
        self.assertEqual(as_utc(monday.start_ts), _utc(2026, 2, 2, 8))
        self.assertEqual(as_utc(monday.end_ts), _utc(2026, 2, 2, 16))
        self.assertEqual(as_utc(monday.break_start_ts), _utc(2026, 2, 2, 12))
        self.assertEqual(scheduled_minutes(monday), 450)
        self.assertEqual(instances[1].modality_id, self.remote)
        self.assertTrue(all(item.schedule_template_id == template_id for item in instances))
        self.assertTrue(all(item.amendment_id is None for item in instances))

        saturday_night = instances[2]
        self.assertEqual(as_utc(saturday_night.start_ts), _utc(2026, 2, 7, 21))
        self.assertEqual(as_utc(saturday_night.end_ts), _utc(2026, 2, 8, 5))
        self.assertIsNone(saturday_night.break_start_ts)
        self.assertEqual(event_types(self.db)[-1], "SCHEDULE_INSTANCES_GENERATED")

    def test_year_long_batches_fit_the_event_aggregate_column(self) -> None:
        template_id = self._template(
            [
                ScheduleTemplateSlotInput(weekday=weekday, shift_id=self.morning.id, modality_id=self.on_site)
                for weekday in range(5)
            ]
        )
        column_limit = DomainEvent.__table__.c.aggregate_id.type.length

        instances = generate_from_template(
            self.db,
            contract_id=self.contract.id,
            schedule_template_id=template_id,
            date_from=date(2026, 1, 1),
            date_to=date(2026, 12, 31),
            actor_id="admin",
        )
        instance_ids = [item.id for item in instances]
        bulk_delete_instances(self.db, ids=instance_ids, actor_id="admin")

        self.assertEqual(len(instances), 261)
        batch_events = list(
            self.db.scalars(
                select(DomainEvent)
                .where(DomainEvent.aggregate_type == "schedule_instance_batch")
                .order_by(DomainEvent.id.asc())
            ).all()
        )
        self.assertEqual(
            [event.event_type for event in batch_events],
            ["SCHEDULE_INSTANCES_GENERATED", "SCHEDULE_INSTANCES_CANCELLED"],
        )
        for event in batch_events:
            self.assertLessEqual(len(event.aggregate_id), column_limit)
            self.assertEqual(event.payload["batch_id"], event.aggregate_id)
            self.assertEqual(event.payload["instance_ids"], instance_ids)
        self.assertNotEqual(batch_events[0].aggregate_id, batch_events[1].aggregate_id)

    def test_generation_uses_contract_template_and_requires_one(self) -> None:
        with self.assertRaises(ApiError) as exc:
            generate_from_template(
                self.db,
                contract_id=self.contract.id,
                date_from=date(2026, 2, 2),
                date_to=date(2026, 2, 2),
                actor_id="admin",
            )
        self.assertEqual(exc.exception.code, "TEMPLATE_REQUIRED")

        template_id = self._template(
            [ScheduleTemplateSlotInput(weekday=0, shift_id=self.morning.id, modality_id=self.on_site)]
        )
        self.contract.schedule_template_id = template_id
        self.db.commit()

        instances = generate_from_template(
            self.db,
            contract_id=self.contract.id,
            date_from=date(2026, 2, 2),
            date_to=date(2026, 2, 15),
            actor_id="admin",
        )
        self.assertEqual([item.day_date for item in instances], [date(2026, 2, 2), date(2026, 2, 9)])

    def test_generation_rejects_inverted_range(self) -> None:
        with self.assertRaises(ApiError) as exc:
            generate_from_template(
                self.db,
                contract_id=self.contract.id,
                date_from=date(2026, 2, 8),
                date_to=date(2026, 2, 2),
                actor_id="admin",
            )
        self.assertEqual(exc.exception.code, "INVALID_RANGE")

    def test_generation_with_amendment_template_links_amendment(self) -> None:
        base_template = self._template(
            [ScheduleTemplateSlotInput(weekday=0, shift_id=self.morning.id, modality_id=self.on_site)],
            name="Base",
        )
        reduced_template = self._template(
            [ScheduleTemplateSlotInput(weekday=1, shift_id=self.morning.id, modality_id=self.remote)],
            name="Reducida",
        )
        self.contract.schedule_template_id = base_template
        self.db.commit()
        amendment = add_amendment(
            self.db,
            contract_id=self.contract.id,
            valid_from=date(2026, 2, 1),
            valid_to=date(2026, 2, 28),
            schedule_template_id=reduced_template,
        )

        instances = generate_from_template(
            self.db,
            contract_id=self.contract.id,
            amendment_id=amendment.id,
            date_from=date(2026, 2, 2),
            date_to=date(2026, 2, 8),
            actor_id="admin",
        )

        self.assertEqual(len(instances), 1)
        self.assertEqual(instances[0].day_date, date(2026, 2, 3))
        self.assertEqual(instances[0].amendment_id, amendment.id)
        self.assertEqual(instances[0].schedule_template_id, reduced_template)

    def test_generation_outside_amendment_period_writes_nothing(self) -> None:
        template_id = self._template(
            [ScheduleTemplateSlotInput(weekday=0, shift_id=self.morning.id, modality_id=self.on_site)]
        )
        amendment = add_amendment(
            self.db,
            contract_id=self.contract.id,
            valid_from=date(2026, 2, 1),
            valid_to=date(2026, 2, 7),
            schedule_template_id=template_id,
        )

        with self.assertRaises(ApiError) as exc:
            generate_from_template(
                self.db,
                contract_id=self.contract.id,
                amendment_id=amendment.id,
                date_from=date(2026, 2, 2),
                date_to=date(2026, 2, 15),
                actor_id="admin",
            )

        self.assertEqual(exc.exception.code, "OUTSIDE_CONTRACT_PERIOD")
        self.assertEqual(exc.exception.details["day_date"], "2026-02-09")
        self.assertEqual(self._instance_count(), 0)

    def test_generation_is_all_or_nothing_on_overlap(self) -> None:
        template_id = self._template(
            [
                ScheduleTemplateSlotInput(weekday=0, shift_id=self.morning.id, modality_id=self.on_site),
                ScheduleTemplateSlotInput(weekday=2, shift_id=self.morning.id, modality_id=self.on_site),
            ]
        )
        existing = bulk_create_instances(
            self.db,
            items=[self._item(date(2026, 2, 4), start_time="10:00", end_time="12:00")],
            actor_id="admin",
        )[0]

        with self.assertRaises(ApiError) as exc:
            generate_from_template(
                self.db,
                contract_id=self.contract.id,
                schedule_template_id=template_id,
                date_from=date(2026, 2, 2),
                date_to=date(2026, 2, 8),
                actor_id="admin",
            )

        self.assertEqual(exc.exception.code, "OVERLAPPING_SCHEDULE")
        conflicts = exc.exception.details["conflicts"]
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0]["day_date"], "2026-02-04")
        self.assertEqual(conflicts[0]["conflicting_instance_id"], existing.id)
        self.assertEqual(self._instance_count(), 1)

    def test_manual_instance_with_break_resolves_instants(self) -> None:
        instance = bulk_create_instances(
            self.db,
            items=[
                self._item(
                    date(2026, 2, 2),
                    start_time="09:00",
                    end_time="17:00",
                    break_start_time="13:00",
                    break_end_time="13:30",
                    observations="  cobertura  ",
                )
            ],
            actor_id="admin",
        )[0]

        self.assertIsNone(instance.shift_id)
        self.assertEqual(as_utc(instance.break_end_ts), _utc(2026, 2, 2, 12, 30))
        self.assertEqual(instance.observations, "cobertura")
        self.assertEqual(instance.status, ScheduleInstanceStatus.ACTIVE)
        self.assertEqual(event_types(self.db), ["SCHEDULE_INSTANCES_CREATED"])

    def test_missing_times_and_shift_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as exc:
            bulk_create_instances(self.db, items=[self._item(date(2026, 2, 2))], actor_id="admin")
        self.assertEqual(exc.exception.code, "SCHEDULE_TIMES_REQUIRED")

        with self.assertRaises(ApiError) as half_exc:
            bulk_create_instances(
                self.db,
                items=[self._item(date(2026, 2, 2), start_time="09:00")],
                actor_id="admin",
            )
        self.assertEqual(half_exc.exception.code, "SCHEDULE_TIMES_REQUIRED")

    def test_unknown_contract_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as exc:
            bulk_create_instances(
                self.db,
                items=[self._item(date(2026, 2, 2), contract_id=999, shift_id=self.morning.id)],
                actor_id="admin",
            )
        self.assertEqual(exc.exception.code, "UNKNOWN_REFERENCE")
        self.assertEqual(exc.exception.details, {"entity": "contract", "id": 999})

    def test_date_outside_contract_is_rejected(self) -> None:
        closed = add_contract(self.db, employee_id=8, valid_from=date(2026, 1, 1), valid_to=date(2026, 1, 31))

        with self.assertRaises(ApiError) as exc:
            bulk_create_instances(
                self.db,
                items=[self._item(date(2026, 2, 2), contract_id=closed.id, shift_id=self.morning.id)],
                actor_id="admin",
            )

        self.assertEqual(exc.exception.code, "OUTSIDE_CONTRACT_PERIOD")

    def test_covering_amendment_is_assigned_automatically(self) -> None:
        amendment = add_amendment(self.db, contract_id=self.contract.id, valid_from=date(2026, 2, 1))

        created = bulk_create_instances(
            self.db,
            items=[
                self._item(date(2026, 1, 30), shift_id=self.morning.id),
                self._item(date(2026, 2, 2), shift_id=self.morning.id),
            ],
            actor_id="admin",
        )

        self.assertEqual([item.amendment_id for item in created], [None, amendment.id])

    def test_overlapping_items_in_one_batch_are_rejected(self) -> None:
        with self.assertRaises(ApiError) as exc:
            bulk_create_instances(
                self.db,
                items=[
                    self._item(date(2026, 2, 2), start_time="09:00", end_time="13:00"),
                    self._item(date(2026, 2, 2), start_time="12:00", end_time="15:00"),
                    self._item(date(2026, 2, 3), start_time="09:00", end_time="13:00"),
                ],
                actor_id="admin",
            )

        conflicts = exc.exception.details["conflicts"]
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0]["item_index"], 1)
        self.assertEqual(conflicts[0]["conflicting_item_index"], 0)
        self.assertEqual(self._instance_count(), 0)

    def test_back_to_back_and_other_contract_schedules_do_not_conflict(self) -> None:
        other = add_contract(self.db, employee_id=9, valid_from=date(2026, 1, 1))

        created = bulk_create_instances(
            self.db,
            items=[
                self._item(date(2026, 2, 2), start_time="09:00", end_time="13:00"),
                self._item(date(2026, 2, 2), start_time="13:00", end_time="17:00"),
                self._item(date(2026, 2, 2), contract_id=other.id, start_time="10:00", end_time="12:00"),
            ],
            actor_id="admin",
        )

        self.assertEqual(len(created), 3)

    def test_overnight_schedule_conflicts_with_next_morning(self) -> None:
        bulk_create_instances(
            self.db,
            items=[self._item(date(2026, 2, 7), shift_id=self.night.id)],
            actor_id="admin",
        )

        with self.assertRaises(ApiError) as exc:
            bulk_create_instances(
                self.db,
                items=[self._item(date(2026, 2, 8), start_time="05:00", end_time="09:00")],
                actor_id="admin",
            )

        self.assertEqual(exc.exception.code, "OVERLAPPING_SCHEDULE")

    def test_bulk_update_moves_schedule_without_self_conflict(self) -> None:
        first, second = bulk_create_instances(
            self.db,
            items=[
                self._item(date(2026, 2, 2), shift_id=self.morning.id),
                self._item(date(2026, 2, 3), shift_id=self.morning.id),
            ],
            actor_id="admin",
        )

        updated = bulk_update_instances(
            self.db,
            items=[
                ScheduleInstanceUpdateItem(
                    id=first.id,
                    day_date=date(2026, 2, 2),
                    modality_id=self.remote,
                    start_time="10:00",
                    end_time="18:00",
                )
            ],
            actor_id="admin",
        )

        self.assertEqual(as_utc(updated[0].start_ts), _utc(2026, 2, 2, 9))
        self.assertEqual(updated[0].modality_id, self.remote)
        self.assertIsNone(updated[0].break_start_ts)
        self.assertIn("SCHEDULE_INSTANCES_UPDATED", event_types(self.db))

        with self.assertRaises(ApiError) as exc:
            bulk_update_instances(
                self.db,
                items=[
                    ScheduleInstanceUpdateItem(
                        id=first.id,
                        day_date=date(2026, 2, 3),
                        modality_id=self.on_site,
                        start_time="08:00",
                        end_time="10:00",
                    )
                ],
                actor_id="admin",
            )
        self.assertEqual(exc.exception.details["conflicts"][0]["conflicting_instance_id"], second.id)

    def test_generate_update_read_roundtrip(self) -> None:
        template_id = self._template(
            [ScheduleTemplateSlotInput(weekday=0, shift_id=self.morning.id, modality_id=self.on_site)]
        )
        generated = generate_from_template(
            self.db,
            contract_id=self.contract.id,
            schedule_template_id=template_id,
            date_from=date(2026, 2, 2),
            date_to=date(2026, 2, 2),
            actor_id="admin",
        )

        bulk_update_instances(
            self.db,
            items=[
                ScheduleInstanceUpdateItem(
                    id=generated[0].id,
                    day_date=date(2026, 2, 2),
                    modality_id=self.remote,
                    start_time="08:00",
                    end_time="15:00",
                    break_start_time="11:00",
                    break_end_time="11:20",
                    observations="turno adelantado",
                )
            ],
            actor_id="admin",
        )

        (stored,) = list_instances(self.db, contract_id=self.contract.id)
        self.assertEqual(stored.id, generated[0].id)
        self.assertEqual(as_utc(stored.start_ts), _utc(2026, 2, 2, 7))
        self.assertEqual(as_utc(stored.end_ts), _utc(2026, 2, 2, 14))
        self.assertEqual(as_utc(stored.break_start_ts), _utc(2026, 2, 2, 10))
        self.assertEqual(stored.modality_id, self.remote)
        self.assertEqual(stored.observations, "turno adelantado")
        self.assertEqual(stored.schedule_template_id, template_id)
        self.assertEqual(scheduled_minutes(stored), 400)

    def test_bulk_update_rejects_duplicate_ids(self) -> None:
        instance = bulk_create_instances(
            self.db,
            items=[self._item(date(2026, 2, 2), shift_id=self.morning.id)],
            actor_id="admin",
        )[0]
        item = ScheduleInstanceUpdateItem(id=instance.id, day_date=date(2026, 2, 2), modality_id=self.on_site, shift_id=self.morning.id)

        with self.assertRaises(ApiError) as exc:
            bulk_update_instances(self.db, items=[item, item], actor_id="admin")

        self.assertEqual(exc.exception.code, "DUPLICATE_INSTANCE_ID")

    def test_bulk_delete_reports_orphaned_dependents(self) -> None:
        first, second = bulk_create_instances(
            self.db,
            items=[
                self._item(date(2026, 2, 2), shift_id=self.morning.id),
                self._item(date(2026, 2, 3), shift_id=self.morning.id),
            ],
            actor_id="admin",
        )
        running = AttendanceSession(
            session_key=f"7:2026-02-02:{first.id}",
            employee_id=7,
            schedule_instance_id=first.id,
            day_date=date(2026, 2, 2),
            state=AttendanceState.ACTIVE,
        )
        finished = AttendanceSession(
            session_key="7:2026-02-02:free",
            employee_id=7,
            schedule_instance_id=first.id,
            day_date=date(2026, 2, 2),
            state=AttendanceState.FINISHED,
        )
        note = AbsenceNote(schedule_instance_id=second.id, status=AbsenceNoteStatus.PENDING, opened_by="employee")
        self.db.add_all([running, finished, note])
        self.db.commit()

        result = bulk_delete_instances(
            self.db,
            ids=[first.id, second.id],
            actor_id="admin",
            now_utc=_utc(2026, 2, 1, 10),
        )

        self.assertEqual(result.deleted_ids, [first.id, second.id])
        self.assertEqual(
            [(warning["code"], warning["entity_id"]) for warning in result.warnings],
            [(ORPHANED_ATTENDANCE_SESSION, running.id), (ORPHANED_ABSENCE_NOTE, note.id)],
        )
        self.db.refresh(running)
        self.assertTrue(running.orphaned)
        self.assertIsNone(running.schedule_instance_id)
        self.assertEqual(running.orphaned_from_instance_id, first.id)
        self.db.refresh(finished)
        self.assertFalse(finished.orphaned)
        self.assertEqual(finished.schedule_instance_id, first.id)
        self.db.refresh(note)
        self.assertTrue(note.orphaned)
        self.assertEqual(note.orphaned_from_instance_id, second.id)

        self.db.refresh(first)
        self.assertEqual(first.status, ScheduleInstanceStatus.CANCELLED)
        self.assertEqual(as_utc(first.cancelled_at), _utc(2026, 2, 1, 10))
        self.assertEqual(list_instances(self.db, contract_id=self.contract.id), [])
        self.assertEqual(len(list_instances(self.db, contract_id=self.contract.id, include_cancelled=True)), 2)

    def test_bulk_delete_of_cancelled_schedule_is_not_found(self) -> None:
        instance = bulk_create_instances(
            self.db,
            items=[self._item(date(2026, 2, 2), shift_id=self.morning.id)],
            actor_id="admin",
        )[0]
        bulk_delete_instances(self.db, ids=[instance.id], actor_id="admin")

        with self.assertRaises(ApiError) as exc:
            bulk_delete_instances(self.db, ids=[instance.id, 999], actor_id="admin")

        self.assertEqual(exc.exception.status_code, 404)
        self.assertEqual(exc.exception.details, {"missing_ids": [instance.id, 999]})

    def test_cancelled_schedule_frees_its_slot(self) -> None:
        instance = bulk_create_instances(
            self.db,
            items=[self._item(date(2026, 2, 2), shift_id=self.morning.id)],
            actor_id="admin",
        )[0]
        bulk_delete_instances(self.db, ids=[instance.id], actor_id="admin")

        replacement = bulk_create_instances(
            self.db,
            items=[self._item(date(2026, 2, 2), shift_id=self.morning.id)],
            actor_id="admin",
        )

        self.assertEqual(len(replacement), 1)

    def test_list_instances_filters_by_employee_and_range(self) -> None:
        other = add_contract(self.db, employee_id=9, valid_from=date(2026, 1, 1))
        bulk_create_instances(
            self.db,
            items=[
                self._item(date(2026, 2, 2), shift_id=self.morning.id),
                self._item(date(2026, 2, 5), shift_id=self.morning.id),
                self._item(date(2026, 2, 2), contract_id=other.id, shift_id=self.morning.id),
            ],
            actor_id="admin",
        )

        rows = list_instances(self.db, employee_id=7, date_from=date(2026, 2, 1), date_to=date(2026, 2, 3))

        self.assertEqual([(row.contract_id, row.day_date) for row in rows], [(self.contract.id, date(2026, 2, 2))])


if __name__ == "__main__":
    unittest.main()
