from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import date, time

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from horarios.db import get_db
from horarios.main import app
from horarios.models import AuditLog, ModalityCode
from horarios.security import require_admin
from tests.db_support import add_contract, add_shift, make_sqlite_session_factory, seed_modalities


def _override_get_db(db: Session):
    def _override() -> Generator[Session, None, None]:
        yield db

    return _override


def _admin_claims() -> dict[str, object]:
    return {"username": "admin", "sub": "admin", "role": "admin", "is_super_admin": True}


class ApiEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_sqlite_session_factory()()
        self.modalities = seed_modalities(self.db)
        self.on_site = self.modalities[ModalityCode.ON_SITE]
        self.shift = add_shift(
            self.db,
            name="Manana",
            start=time(9, 0),
            end=time(17, 0),
            break_start=time(13, 0),
            break_end=time(13, 30),
        )
        self.contract = add_contract(self.db, employee_id=7, valid_from=date(2026, 1, 1))
        app.dependency_overrides[get_db] = _override_get_db(self.db)
        app.dependency_overrides[require_admin] = _admin_claims
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()

    def _audit_actions(self) -> list[str]:
        return list(self.db.scalars(select(AuditLog.action).order_by(AuditLog.id.asc())).all())

    def test_admin_routes_require_bearer_token(self) -> None:
        app.dependency_overrides.pop(require_admin)

        response = self.client.get("/api/admin/shifts")

        self.assertEqual(response.status_code, 401)
        body = response.json()
        self.assertEqual(body["error"]["code"], "INVALID_TOKEN")
        self.assertIn("request_id", body["error"])

    def test_limited_admin_cannot_write(self) -> None:
        app.dependency_overrides[require_admin] = lambda: {
            "username": "viewer",
            "sub": "viewer",
            "role": "admin",
            "permissions": {"shifts": {"read": True, "write": False}},
        }

        listed = self.client.get("/api/admin/shifts")
        created = self.client.post(
            "/api/admin/shifts",
            json={"center_id": 1, "name": "Tarde", "start_time": "15:00", "end_time": "23:00"},
        )

        self.assertEqual(listed.status_code, 200)
        self.assertEqual(created.status_code, 403)
        self.assertEqual(created.json()["error"]["code"], "FORBIDDEN")

    def test_shift_create_and_invalid_break_envelope(self) -> None:
        created = self.client.post(
            "/api/admin/shifts",
            json={
                "center_id": 1,
                "name": "Tarde",
                "start_time": "15:00",
                "end_time": "23:00",
                "break_start_time": "19:00",
                "break_end_time": "19:20",
            },
            headers={"X-Request-Id": "req-123"},
        )
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["break_start_time"], "19:00")
        self.assertEqual(created.headers["X-Request-Id"], "req-123")

        rejected = self.client.post(
            "/api/admin/shifts",
            json={
                "center_id": 1,
                "name": "Noche",
                "start_time": "22:00",
                "end_time": "06:00",
                "break_start_time": "21:00",
            },
            headers={"X-Request-Id": "req-456"},
        )
        self.assertEqual(rejected.status_code, 422)
        self.assertEqual(rejected.json()["error"]["code"], "INVALID_BREAK_WINDOW")
        self.assertEqual(rejected.json()["error"]["request_id"], "req-456")
        self.assertIn("SHIFT_CREATED", self._audit_actions())

    def test_request_validation_error_envelope(self) -> None:
        response = self.client.post("/api/admin/shifts", json={"center_id": 1, "name": "X", "start_time": "9h"})

        self.assertEqual(response.status_code, 422)
        error = response.json()["error"]
        self.assertEqual(error["code"], "VALIDATION_ERROR")
        self.assertTrue(error["details"]["errors"])

    def test_template_generation_and_listing(self) -> None:
        template = self.client.post(
            "/api/admin/schedule-template",
            json={
                "name": "Oficina",
                "slots": [
                    {"weekday": 0, "shift_id": self.shift.id, "modality_id": self.on_site},
                    {"weekday": 1, "shift_id": self.shift.id, "modality_id": self.on_site},
                ],
            },
        )
        self.assertEqual(template.status_code, 201)
        template_id = template.json()["id"]

        duplicate = self.client.post(
            "/api/admin/schedule-template",
            json={"name": "Otra", "slots": [{"weekday": 3}, {"weekday": 3}]},
        )
        self.assertEqual(duplicate.status_code, 422)
        self.assertEqual(duplicate.json()["error"]["details"], {"weekday": 3})

        generated = self.client.post(
            "/api/admin/schedule-instances/generate",
            json={
                "contract_id": self.contract.id,
                "schedule_template_id": template_id,
                "date_from": "2026-02-02",
                "date_to": "2026-02-08",
            },
        )
        self.assertEqual(generated.status_code, 201)
        self.assertEqual(generated.json()["count"], 2)

        listed = self.client.get("/api/admin/schedule-instances", params={"employee_id": 7})
        self.assertEqual(listed.status_code, 200)
        self.assertEqual([item["day_date"] for item in listed.json()], ["2026-02-02", "2026-02-03"])

        deleted = self.client.delete(f"/api/admin/schedule-template/{template_id}")
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(deleted.json(), {"ok": True, "id": template_id})

    def test_bulk_endpoints_report_overlaps_and_orphans(self) -> None:
        created = self.client.post(
            "/api/admin/schedule-instances/bulk",
            json={
                "items": [
                    {
                        "contract_id": self.contract.id,
                        "day_date": "2026-02-02",
                        "shift_id": self.shift.id,
                        "modality_id": self.on_site,
                    }
                ]
            },
        )
        self.assertEqual(created.status_code, 201)
        instance_id = created.json()["items"][0]["id"]

        overlapping = self.client.post(
            "/api/admin/schedule-instances/bulk",
            json={
                "items": [
                    {
                        "contract_id": self.contract.id,
                        "day_date": "2026-02-02",
                        "modality_id": self.on_site,
                        "start_time": "16:00",
                        "end_time": "20:00",
                    }
                ]
            },
        )
        self.assertEqual(overlapping.status_code, 409)
        self.assertEqual(overlapping.json()["error"]["code"], "OVERLAPPING_SCHEDULE")
        self.assertEqual(
            overlapping.json()["error"]["details"]["conflicts"][0]["conflicting_instance_id"],
            instance_id,
        )

        note = self.client.post("/api/absence-notes", json={"schedule_instance_id": instance_id, "reason": "medico"})
        self.assertEqual(note.status_code, 201)
        self.assertEqual(note.json()["opened_by"], "employee")

        deleted = self.client.request(
            "DELETE",
            "/api/admin/schedule-instances/bulk",
            json={"ids": [instance_id]},
        )
        self.assertEqual(deleted.status_code, 200)
        body = deleted.json()
        self.assertEqual(body["deleted_ids"], [instance_id])
        self.assertEqual(body["warnings"][0]["code"], "ORPHANED_ABSENCE_NOTE")
        self.assertEqual(body["warnings"][0]["schedule_instance_id"], instance_id)

        pending = self.client.get("/api/admin/absence-notes", params={"status": "PENDING"})
        self.assertTrue(pending.json()[0]["orphaned"])

        resolved = self.client.patch(f"/api/admin/absence-notes/{note.json()['id']}", json={"approve": False})
        self.assertEqual(resolved.status_code, 200)
        self.assertEqual(resolved.json()["status"], "REJECTED")
        self.assertIn("ABSENCE_NOTE_REJECTED", self._audit_actions())

    def test_attendance_action_and_status(self) -> None:
        rejected = self.client.post("/api/attendance/7/action", json={"action": "iniciar"})
        self.assertEqual(rejected.status_code, 422)
        self.assertEqual(rejected.json()["error"]["code"], "GEOLOCATION_REQUIRED")

        started = self.client.post(
            "/api/attendance/7/action",
            json={"action": "iniciar", "coordinates": {"lat": 40.41, "lon": -3.70}},
        )
        self.assertEqual(started.status_code, 200)
        self.assertEqual(started.json()["state"], "ACTIVE")
        self.assertIsNone(started.json()["schedule_instance_id"])

        paused = self.client.post("/api/attendance/7/action", json={"action": "descanso_adicional"})
        self.assertEqual(paused.json()["state"], "ON_ADDITIONAL_BREAK")
        self.assertEqual(paused.json()["session_id"], started.json()["session_id"])

        finish = self.client.post(
            "/api/attendance/7/action",
            json={"action": "finalizar", "coordinates": {"lat": 40.41, "lon": -3.70}},
        )
        self.assertEqual(finish.status_code, 409)
        self.assertEqual(finish.json()["error"]["details"]["current_state"], "ON_ADDITIONAL_BREAK")

        status = self.client.get("/api/attendance/7/status")
        self.assertEqual(status.status_code, 200)
        self.assertEqual(status.json()["state"], "ON_ADDITIONAL_BREAK")

        self.assertEqual(
            self._audit_actions(),
            [
                "ATTENDANCE_ACTION_REJECTED",
                "ATTENDANCE_ACTION",
                "ATTENDANCE_ACTION",
                "ATTENDANCE_ACTION_REJECTED",
            ],
        )

    def test_domain_event_feed_pages_by_id(self) -> None:
        self.client.post(
            "/api/admin/shifts",
            json={"center_id": 1, "name": "Tarde", "start_time": "15:00", "end_time": "23:00"},
        )
        self.client.post(
            "/api/admin/shifts",
            json={"center_id": 1, "name": "Noche", "start_time": "23:00", "end_time": "07:00"},
        )

        first_page = self.client.get("/api/admin/domain-events", params={"limit": 1})
        self.assertEqual(first_page.status_code, 200)
        self.assertEqual(len(first_page.json()), 1)
        next_page = self.client.get("/api/admin/domain-events", params={"after_id": first_page.json()[0]["id"]})
        self.assertEqual([item["event_type"] for item in next_page.json()], ["SHIFT_CREATED"])

    def test_modalities_are_public(self) -> None:
        response = self.client.get("/api/modalities")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["code"] for item in response.json()], ["ON_SITE", "REMOTE", "HYBRID"])


if __name__ == "__main__":
    unittest.main()
