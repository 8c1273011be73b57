from __future__ import annotations

import unittest
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from punchclock.dependencies import build_container, get_container
from punchclock.main import app
from punchclock.models import PunchType, UserRole
from punchclock.services.reconciliation import JOB_HEALTH_CHECK

from punch_fakes import InMemoryPunchStore, ManualClock, RecordingAuditSink, RecordingNotifier, make_config


def _utc(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc)


USER = {"X-User-Id": "1"}
ADMIN = {"X-User-Id": "9"}


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryPunchStore()
        self.store.add_user(1, name="Ayse")
        self.store.add_user(5, name="Gone", is_active=False)
        self.store.add_user(9, name="Admin", role=UserRole.ADMIN)
        self.clock = ManualClock(_utc(4, 9, 5))
        self.audit = RecordingAuditSink()
        self.container = build_container(
            config=make_config(),
            store=self.store,
            audit_sink=self.audit,
            notifier=RecordingNotifier(),
            clock=self.clock,
        )
        app.dependency_overrides[get_container] = lambda: self.container
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()


class PunchEndpointTests(ApiTestCase):
    def test_missing_user_header_is_unauthenticated(self) -> None:
        response = self.client.post("/api/punches", json={})
        self.assertEqual(response.status_code, 401)
        body = response.json()
        self.assertEqual(body["error"]["code"], "UNAUTHENTICATED")
        self.assertIn("request_id", body["error"])

        response = self.client.post("/api/punches", json={}, headers={"X-User-Id": "404"})
        self.assertEqual(response.status_code, 401)

    def test_inactive_user_is_forbidden(self) -> None:
        response = self.client.post("/api/punches", json={}, headers={"X-User-Id": "5"})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "USER_INACTIVE")

    def test_submit_punch_returns_punch_and_dashboard(self) -> None:
        response = self.client.post("/api/punches", json={"source": "NFC"}, headers=USER)
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["punch"]["punch_type"], "IN")
        self.assertEqual(body["punch"]["source"], "NFC")
        self.assertEqual(body["dashboard"]["status"], "WORKING")
        self.assertEqual(body["dashboard"]["next_punch_type"], "OUT")
        self.assertEqual(body["warnings"], [])
        self.assertIn("X-Request-Id", response.headers)

    def test_double_punch_returns_conflict_with_retry_after(self) -> None:
        self.client.post("/api/punches", json={}, headers=USER)
        response = self.client.post("/api/punches", json={}, headers=USER)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "DOUBLE_PUNCH")
        self.assertEqual(response.headers["Retry-After"], "60")

    def test_sequence_error_is_unprocessable(self) -> None:
        response = self.client.post("/api/punches", json={"punch_type": "OUT"}, headers=USER)
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "INVALID_SEQUENCE")

    def test_interactive_source_is_restricted(self) -> None:
        response = self.client.post("/api/punches", json={"source": "SYSTEM"}, headers=USER)
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_late_arrival_warning_details(self) -> None:
        self.clock.set(_utc(4, 9, 45))
        response = self.client.post("/api/punches", json={}, headers=USER)
        self.assertEqual(response.status_code, 201)
        warning = response.json()["warnings"][0]
        self.assertEqual(warning["kind"], "LATE_ARRIVAL")
        self.assertEqual(warning["message"], "You are 45 minutes late")
        self.assertEqual(warning["details"]["minutes_late"], 45)
        self.assertEqual(warning["details"]["severity"], "high")

    def test_manual_edit_and_delete_flow(self) -> None:
        created = self.client.post(
            "/api/punches/manual",
            json={"user_id": 1, "punch_type": "IN", "punch_time": "2024-03-04T08:00:00Z"},
            headers=ADMIN,
        )
        self.assertEqual(created.status_code, 201)
        punch_id = created.json()["id"]
        self.assertEqual(created.json()["source"], "ADMIN")

        edited = self.client.patch(
            f"/api/punches/{punch_id}",
            json={"edit_reason": "Badge reader offline", "punch_time": "2024-03-04T07:45:00Z"},
            headers=USER,
        )
        self.assertEqual(edited.status_code, 200)
        self.assertTrue(edited.json()["edited"])
        self.assertEqual(edited.json()["original_punch_type"], "IN")

        forbidden = self.client.delete(f"/api/punches/{punch_id}", params={"reason": "dup"}, headers=USER)
        self.assertEqual(forbidden.status_code, 403)

        deleted = self.client.delete(f"/api/punches/{punch_id}", params={"reason": "dup"}, headers=ADMIN)
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(deleted.json(), {"ok": True, "punch_id": punch_id})
        self.assertIsNone(self.store.get_punch(punch_id))

    def test_manual_future_punch_is_rejected(self) -> None:
        response = self.client.post(
            "/api/punches/manual",
            json={"user_id": 1, "punch_type": "IN", "punch_time": "2024-03-04T10:00:00Z"},
            headers=USER,
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "FUTURE_PUNCH")

    def test_history(self) -> None:
        self.store.add_punch(1, PunchType.IN, _utc(1, 9))
        self.store.add_punch(1, PunchType.OUT, _utc(1, 17))
        response = self.client.get("/api/punches/history", params={"limit": 1}, headers=USER)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total"], 2)
        self.assertEqual(body["pages"], 2)
        self.assertEqual(body["punches"][0]["punch_type"], "OUT")

    def test_unknown_punch_is_not_found(self) -> None:
        response = self.client.patch(
            "/api/punches/999",
            json={"edit_reason": "fix", "punch_type": "OUT"},
            headers=ADMIN,
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "PUNCH_NOT_FOUND")


class DashboardEndpointTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.clock.set(_utc(4, 14))
        self.store.add_punch(1, PunchType.IN, _utc(4, 9))
        self.store.add_punch(1, PunchType.OUT, _utc(4, 12))
        self.store.add_punch(1, PunchType.IN, _utc(4, 13))

    def test_daily_dashboard(self) -> None:
        response = self.client.get("/api/dashboard", headers=USER)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["worked_minutes"], 240)
        self.assertEqual(body["remaining_formatted"], "4h 0m")
        self.assertEqual(body["session_count"], 2)
        self.assertTrue(body["alerts"]["has_open_punch"])
        self.assertEqual(body["breaks"]["break_count"], 1)

    def test_weekly_summary(self) -> None:
        response = self.client.get("/api/dashboard/weekly", headers=USER)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["week_start"], "2024-03-04")
        self.assertEqual(len(body["days"]), 7)
        self.assertEqual(body["total_worked_minutes"], 240)

        self.assertEqual(self.client.get("/api/dashboard/weekly?week_offset=-1", headers=USER).status_code, 422)

    def test_issues_and_breaks(self) -> None:
        issues = self.client.get("/api/dashboard/issues", headers=USER)
        self.assertEqual(issues.status_code, 200)
        self.assertEqual([item["type"] for item in issues.json()], ["ODD_PUNCH_COUNT"])

        breaks = self.client.get("/api/dashboard/breaks", headers=USER)
        self.assertEqual(breaks.status_code, 200)
        self.assertEqual(breaks.json()["summary"]["total_break_minutes"], 60)
        self.assertIsNone(breaks.json()["long_break"])


class AdminEndpointTests(ApiTestCase):
    def test_admin_routes_require_admin(self) -> None:
        response = self.client.get("/api/admin/health-report", headers=USER)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_health_report(self) -> None:
        self.store.add_punch(1, PunchType.IN, _utc(4, 8))
        response = self.client.get("/api/admin/health-report", headers=ADMIN)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["open_punch_count"], 1)
        self.assertEqual(body["open_punches"][0]["user_id"], 1)
        self.assertEqual(body["orphaned_punch_count"], 0)

    def test_jobs(self) -> None:
        listed = self.client.get("/api/admin/jobs", headers=ADMIN)
        self.assertEqual(listed.status_code, 200)
        self.assertEqual(len(listed.json()), 4)

        missing = self.client.post("/api/admin/jobs/nope/run", headers=ADMIN)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["error"]["code"], "JOB_NOT_FOUND")

        ran = self.client.post(f"/api/admin/jobs/{JOB_HEALTH_CHECK}/run", headers=ADMIN)
        self.assertEqual(ran.status_code, 200)
        self.assertEqual(ran.json()["result"]["alerts"], [])

    def test_service_health(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertFalse(body["scheduler_running"])
        self.assertIsNone(body["notification_channels"]["email"])


if __name__ == "__main__":
    unittest.main()
