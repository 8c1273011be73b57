from __future__ import annotations

import unittest
from datetime import date, datetime, timezone

from punchclock.models import PunchType
from punchclock.services.dashboard import DashboardService, WorkStatus, progress_percent, week_start_for

from punch_fakes import InMemoryPunchStore, ManualClock, make_config

IN = PunchType.IN
OUT = PunchType.OUT


def _utc(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc)


class DailySnapshotTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryPunchStore()
        self.clock = ManualClock(_utc(6, 14))
        self.service = DashboardService(self.store, self.clock, make_config())
        self.user = self.store.add_user(1)

    def test_snapshot_without_punches(self) -> None:
        snapshot = self.service.get_daily_snapshot(self.user)
        self.assertEqual(snapshot.status, WorkStatus.NOT_WORKING)
        self.assertEqual(snapshot.next_punch_type, IN)
        self.assertEqual(snapshot.worked_minutes, 0)
        self.assertEqual(snapshot.remaining_minutes, 480)
        self.assertEqual(snapshot.session_count, 0)
        self.assertIsNone(snapshot.last_punch)
        self.assertIsNone(snapshot.predicted_exit)
        self.assertFalse(snapshot.alerts.has_open_punch)
        self.assertFalse(snapshot.alerts.is_non_working_day)

    def test_snapshot_with_open_session(self) -> None:
        self.store.add_punch(1, IN, _utc(6, 9))
        self.store.add_punch(1, OUT, _utc(6, 12))
        self.store.add_punch(1, IN, _utc(6, 13))
        # yesterday's punches stay out of today's totals
        self.store.add_punch(1, IN, _utc(5, 9))
        self.store.add_punch(1, OUT, _utc(5, 17))

        snapshot = self.service.get_daily_snapshot(self.user)

        self.assertEqual(snapshot.status, WorkStatus.WORKING)
        self.assertEqual(snapshot.next_punch_type, OUT)
        self.assertEqual(snapshot.punch_count, 3)
        self.assertEqual(snapshot.worked_minutes, 240)
        self.assertEqual(snapshot.worked_formatted, "4h 0m")
        self.assertEqual(snapshot.remaining_minutes, 240)
        self.assertEqual(snapshot.progress_percent, 50)
        self.assertEqual(snapshot.session_count, 2)
        self.assertEqual(snapshot.predicted_exit.time_utc, _utc(6, 18))
        self.assertTrue(snapshot.alerts.has_open_punch)
        self.assertTrue(snapshot.alerts.has_odd_punch_count)
        self.assertFalse(snapshot.alerts.open_session_clamped)
        self.assertEqual(snapshot.breaks.break_count, 1)
        self.assertEqual(snapshot.breaks.breaks[0].category, "Lunch Break")

    def test_snapshot_reports_non_working_day(self) -> None:
        self.clock.set(_utc(9, 10))
        snapshot = self.service.get_daily_snapshot(self.user)
        self.assertTrue(snapshot.alerts.is_non_working_day)

    def test_snapshot_uses_the_user_timezone_for_today(self) -> None:
        user = self.store.add_user(2, timezone="Asia/Kolkata")
        # 20:00 UTC on the 5th is 01:30 on the 6th in Kolkata
        self.store.add_punch(2, IN, _utc(5, 20))
        self.clock.set(_utc(5, 21))
        snapshot = self.service.get_daily_snapshot(user)
        self.assertEqual(snapshot.local_date, date(2024, 3, 6))
        self.assertEqual(snapshot.punch_count, 1)
        self.assertEqual(snapshot.worked_minutes, 60)

    def test_long_break_alert(self) -> None:
        self.store.add_punch(1, IN, _utc(6, 9))
        self.store.add_punch(1, OUT, _utc(6, 11))
        snapshot = self.service.get_daily_snapshot(self.user)
        self.assertIsNotNone(snapshot.alerts.long_break)
        self.assertEqual(snapshot.alerts.long_break.break_minutes, 180)
        self.assertEqual(snapshot.alerts.long_break.alert, "Break exceeds 2 hours")


class WeeklySummaryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryPunchStore()
        # Wednesday 2024-03-06 11:00 UTC
        self.clock = ManualClock(_utc(6, 11))
        self.service = DashboardService(self.store, self.clock, make_config())
        self.user = self.store.add_user(1)

    def test_week_starts_on_monday(self) -> None:
        self.assertEqual(week_start_for(date(2024, 3, 6)), date(2024, 3, 4))
        self.assertEqual(week_start_for(date(2024, 3, 4)), date(2024, 3, 4))
        self.assertEqual(week_start_for(date(2024, 3, 10)), date(2024, 3, 4))
        self.assertEqual(week_start_for(date(2024, 3, 6), 1), date(2024, 2, 26))

    def test_weekly_summary_aggregates_working_days(self) -> None:
        self.store.add_punch(1, IN, _utc(4, 9))
        self.store.add_punch(1, OUT, _utc(4, 17))
        self.store.add_punch(1, IN, _utc(5, 9))
        self.store.add_punch(1, OUT, _utc(5, 13))
        self.store.add_punch(1, IN, _utc(6, 9))

        summary = self.service.get_weekly_summary(self.user)

        self.assertEqual(summary.week_start, date(2024, 3, 4))
        self.assertEqual(summary.week_end, date(2024, 3, 10))
        self.assertEqual(len(summary.days), 7)
        self.assertEqual(summary.days[0].day_name, "Monday")
        self.assertEqual(summary.days[0].worked_minutes, 480)
        self.assertTrue(summary.days[0].is_target_met)
        self.assertEqual(summary.days[1].worked_minutes, 240)
        self.assertFalse(summary.days[1].is_target_met)
        # today includes the open session
        self.assertEqual(summary.days[2].worked_minutes, 120)
        self.assertEqual(summary.working_days_count, 5)
        self.assertEqual(summary.weekly_target_minutes, 5 * 480)
        self.assertEqual(summary.total_worked_minutes, 840)
        self.assertEqual(summary.progress_percent, 35)
        self.assertFalse(summary.days[5].is_working_day)
        self.assertEqual(summary.days[5].target_minutes, 0)

    def test_past_days_never_include_an_open_session(self) -> None:
        self.store.add_punch(1, IN, _utc(5, 9))
        summary = self.service.get_weekly_summary(self.user)
        self.assertEqual(summary.days[1].worked_minutes, 0)
        self.assertEqual(summary.days[1].punch_count, 1)

    def test_previous_week_offset(self) -> None:
        self.store.add_punch(1, IN, _utc(1, 9))
        self.store.add_punch(1, OUT, _utc(1, 17))
        self.store.add_punch(1, IN, _utc(2, 10))
        self.store.add_punch(1, OUT, _utc(2, 12))

        summary = self.service.get_weekly_summary(self.user, week_offset=1)

        self.assertEqual(summary.week_start, date(2024, 2, 26))
        self.assertEqual(summary.total_worked_minutes, 480)
        self.assertEqual(summary.non_working_day_minutes, 120)

    def test_progress_is_capped_at_one_hundred(self) -> None:
        user = self.store.add_user(2, working_days=["Monday"])
        self.store.add_punch(2, IN, _utc(4, 6))
        self.store.add_punch(2, OUT, _utc(4, 20))
        summary = self.service.get_weekly_summary(user)
        self.assertEqual(summary.working_days_count, 1)
        self.assertEqual(summary.total_worked_minutes, 840)
        self.assertEqual(summary.progress_percent, 100)

    def test_progress_rounds_halves_up(self) -> None:
        self.assertEqual(progress_percent(60, 480), 13)
        self.assertEqual(progress_percent(12, 480), 3)
        self.assertEqual(progress_percent(30, 0), 0)


if __name__ == "__main__":
    unittest.main()
