from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from punchclock.models import PunchType
from punchclock.services.time_engine import (
    STALE_OPEN_SESSION_FALLBACK_MINUTES,
    calculate_predicted_exit,
    calculate_remaining_minutes,
    calculate_worked_minutes,
    count_sessions,
    format_minutes,
    measure_worked_time,
    next_punch_type,
)

DAY = datetime(2024, 3, 4, tzinfo=timezone.utc)


def _punch(punch_type: PunchType, hour: int, minute: int = 0, *, day: datetime = DAY) -> SimpleNamespace:
    return SimpleNamespace(punch_type=punch_type, punch_time=day.replace(hour=hour, minute=minute))


IN = PunchType.IN
OUT = PunchType.OUT


class WorkedMinutesTests(unittest.TestCase):
    def test_two_closed_sessions_sum_to_eight_hours(self) -> None:
        punches = [_punch(IN, 9), _punch(OUT, 13), _punch(IN, 14), _punch(OUT, 18)]
        self.assertEqual(calculate_worked_minutes(punches, include_open_session=False), 480)

    def test_lunch_gap_is_not_counted(self) -> None:
        punches = [_punch(IN, 9), _punch(OUT, 12), _punch(IN, 13), _punch(OUT, 17)]
        self.assertEqual(calculate_worked_minutes(punches, include_open_session=False), 420)

    def test_lone_out_counts_nothing(self) -> None:
        self.assertEqual(calculate_worked_minutes([_punch(OUT, 17)], include_open_session=True, now=DAY), 0)

    def test_open_session_counts_elapsed_time(self) -> None:
        now = DAY.replace(hour=10)
        punches = [SimpleNamespace(punch_type=IN, punch_time=now - timedelta(minutes=30))]
        self.assertAlmostEqual(calculate_worked_minutes(punches, include_open_session=True, now=now), 30)
        self.assertEqual(calculate_worked_minutes(punches, include_open_session=False, now=now), 0)

    def test_consecutive_ins_move_the_pending_marker(self) -> None:
        punches = [_punch(IN, 8), _punch(IN, 9), _punch(OUT, 10)]
        self.assertEqual(calculate_worked_minutes(punches, include_open_session=False), 60)

    def test_closed_session_longer_than_a_day_is_discarded(self) -> None:
        punches = [
            _punch(IN, 8),
            SimpleNamespace(punch_type=OUT, punch_time=DAY.replace(hour=9) + timedelta(days=1)),
        ]
        worked = measure_worked_time(punches, include_open_session=False)
        self.assertEqual(worked.minutes, 0)
        self.assertEqual(worked.discarded_sessions, 1)

    def test_stale_open_session_uses_fallback_and_reports_raw_value(self) -> None:
        now = DAY.replace(hour=8) + timedelta(hours=20)
        punches = [_punch(IN, 8)]

        clamped = measure_worked_time(punches, include_open_session=True, now=now)
        self.assertEqual(clamped.minutes, STALE_OPEN_SESSION_FALLBACK_MINUTES)
        self.assertEqual(clamped.raw_minutes, 20 * 60)
        self.assertTrue(clamped.open_session_clamped)

        raw = measure_worked_time(punches, include_open_session=True, now=now, clamp_stale_open_session=False)
        self.assertEqual(raw.minutes, 20 * 60)
        self.assertTrue(raw.open_session_clamped)

    def test_open_session_at_sixteen_hours_is_not_clamped(self) -> None:
        now = DAY.replace(hour=8) + timedelta(hours=16)
        worked = measure_worked_time([_punch(IN, 8)], include_open_session=True, now=now)
        self.assertEqual(worked.minutes, 960)
        self.assertFalse(worked.open_session_clamped)

    def test_worked_minutes_never_exceed_elapsed_span(self) -> None:
        sequences = [
            [_punch(IN, 9), _punch(OUT, 9, 45), _punch(OUT, 10), _punch(IN, 11), _punch(OUT, 15, 30)],
            [_punch(OUT, 7), _punch(IN, 8), _punch(IN, 10), _punch(OUT, 18)],
            [_punch(IN, 6), _punch(OUT, 6, 1)],
        ]
        for punches in sequences:
            span = (punches[-1].punch_time - punches[0].punch_time).total_seconds() / 60
            worked = calculate_worked_minutes(punches, include_open_session=False)
            self.assertGreaterEqual(worked, 0)
            self.assertLessEqual(worked, span)


class PredictionTests(unittest.TestCase):
    def test_remaining_minutes_is_floored_at_zero(self) -> None:
        self.assertEqual(calculate_remaining_minutes(500, 480), 0)
        self.assertEqual(calculate_remaining_minutes(300, 480), 180)

    def test_predicted_exit_projects_from_last_open_in(self) -> None:
        punches = [_punch(IN, 9), _punch(OUT, 12), _punch(IN, 13)]
        predicted = calculate_predicted_exit(punches, 480, "UTC")
        self.assertIsNotNone(predicted)
        self.assertEqual(predicted.time_utc, DAY.replace(hour=18))
        self.assertEqual(predicted.time_local, "06:00 PM")
        self.assertEqual(predicted.remaining_minutes, 300)

    def test_predicted_exit_is_none_after_punch_out(self) -> None:
        punches = [_punch(IN, 9), _punch(OUT, 12)]
        self.assertIsNone(calculate_predicted_exit(punches, 480, "UTC"))
        self.assertIsNone(calculate_predicted_exit([], 480, "UTC"))

    def test_predicted_exit_uses_local_clock_for_display(self) -> None:
        predicted = calculate_predicted_exit([_punch(IN, 3, 30)], 480, "Asia/Kolkata")
        self.assertEqual(predicted.time_local, "05:00 PM")


class FormattingTests(unittest.TestCase):
    def test_format_minutes(self) -> None:
        self.assertEqual(format_minutes(90), "1h 30m")
        self.assertEqual(format_minutes(45), "45m")
        self.assertEqual(format_minutes(480), "8h 0m")
        self.assertEqual(format_minutes(0), "0m")
        self.assertEqual(format_minutes(59.6), "1h 0m")


class SequenceHelpersTests(unittest.TestCase):
    def test_next_punch_type_toggles_last_punch(self) -> None:
        self.assertEqual(next_punch_type([]), IN)
        self.assertEqual(next_punch_type([_punch(IN, 9)]), OUT)
        self.assertEqual(next_punch_type([_punch(IN, 9), _punch(OUT, 10)]), IN)
        self.assertEqual(next_punch_type([_punch(OUT, 10)]), IN)

    def test_count_sessions_includes_open_session(self) -> None:
        self.assertEqual(count_sessions([_punch(IN, 9), _punch(OUT, 10), _punch(IN, 11)]), 2)
        self.assertEqual(count_sessions([_punch(IN, 9), _punch(OUT, 10)]), 1)
        self.assertEqual(count_sessions([]), 0)


if __name__ == "__main__":
    unittest.main()
