from __future__ import annotations

import unittest
from datetime import datetime, time, timedelta, timezone
from types import SimpleNamespace

from punchclock.config import resolve_work_profile
from punchclock.models import PunchType
from punchclock.services.punch_validator import (
    EarlyDepartureWarning,
    LateArrivalWarning,
    NonWorkingDayWarning,
    OutsideBusinessHoursWarning,
    PunchValidator,
    SequenceState,
    WarningKind,
    check_business_hours,
    check_sequence,
    double_punch_retry_after,
    sequence_status,
)

from punch_fakes import make_config

MONDAY = datetime(2024, 3, 4, tzinfo=timezone.utc)
SATURDAY = datetime(2024, 3, 9, tzinfo=timezone.utc)


def _punch(punch_type: PunchType, at: datetime) -> SimpleNamespace:
    return SimpleNamespace(punch_type=punch_type, punch_time=at)


class DoublePunchTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = make_config()
        self.validator = PunchValidator(self.config)
        self.profile = resolve_work_profile(None, self.config)
        self.first_in = _punch(PunchType.IN, MONDAY.replace(hour=9))

    def _validate_out_after(self, seconds: int):
        return self.validator.validate(
            profile=self.profile,
            punch_type=PunchType.OUT,
            punch_time=self.first_in.punch_time + timedelta(seconds=seconds),
            today_punches=[self.first_in],
            last_punch=self.first_in,
        )

    def test_punch_ten_seconds_later_is_rejected(self) -> None:
        result = self._validate_out_after(10)
        self.assertFalse(result.valid)
        self.assertTrue(result.is_double_punch)
        self.assertEqual(result.double_punch_retry_after, 50)

    def test_punch_sixty_one_seconds_later_is_accepted(self) -> None:
        result = self._validate_out_after(61)
        self.assertTrue(result.valid)
        self.assertFalse(result.is_double_punch)

    def test_punch_exactly_sixty_seconds_later_is_accepted(self) -> None:
        result = self._validate_out_after(60)
        self.assertTrue(result.valid)

    def test_double_punch_takes_precedence_over_sequence_error(self) -> None:
        result = self.validator.validate(
            profile=self.profile,
            punch_type=PunchType.IN,
            punch_time=self.first_in.punch_time + timedelta(seconds=5),
            today_punches=[self.first_in],
            last_punch=self.first_in,
        )
        self.assertTrue(result.is_double_punch)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("Double punch", result.errors[0])

    def test_double_punch_window_uses_last_punch_of_any_day(self) -> None:
        yesterday_out = _punch(PunchType.OUT, MONDAY - timedelta(seconds=20))
        self.assertEqual(double_punch_retry_after(yesterday_out, MONDAY, 60), 40)
        self.assertIsNone(double_punch_retry_after(None, MONDAY, 60))


class SequenceTests(unittest.TestCase):
    def test_sequence_states(self) -> None:
        self.assertEqual(sequence_status([]).state, SequenceState.NO_PUNCHES)
        open_status = sequence_status([_punch(PunchType.IN, MONDAY.replace(hour=9))])
        self.assertEqual(open_status.state, SequenceState.OPEN)
        self.assertEqual(open_status.last_in_time, MONDAY.replace(hour=9))
        closed = [_punch(PunchType.IN, MONDAY.replace(hour=9)), _punch(PunchType.OUT, MONDAY.replace(hour=10))]
        self.assertEqual(sequence_status(closed).state, SequenceState.CLOSED)

    def test_sequence_errors(self) -> None:
        opened = [_punch(PunchType.IN, MONDAY.replace(hour=9))]
        closed = opened + [_punch(PunchType.OUT, MONDAY.replace(hour=10))]
        self.assertEqual(check_sequence([], PunchType.OUT), "First punch of the day must be IN")
        self.assertEqual(check_sequence(opened, PunchType.IN), "Cannot punch IN twice in a row")
        self.assertEqual(check_sequence(closed, PunchType.OUT), "Cannot punch OUT twice in a row")
        self.assertIsNone(check_sequence([], PunchType.IN))
        self.assertIsNone(check_sequence(opened, PunchType.OUT))
        self.assertIsNone(check_sequence(closed, PunchType.IN))

    def test_sequence_error_blocks_and_skips_policy_checks(self) -> None:
        config = make_config()
        result = PunchValidator(config).validate(
            profile=resolve_work_profile(None, config),
            punch_type=PunchType.OUT,
            punch_time=SATURDAY.replace(hour=3),
            today_punches=[],
            last_punch=None,
        )
        self.assertFalse(result.valid)
        self.assertFalse(result.is_double_punch)
        self.assertEqual(result.errors, ["First punch of the day must be IN"])
        self.assertEqual(result.details, [])


class PolicyWarningTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = make_config()
        self.validator = PunchValidator(self.config)
        self.profile = resolve_work_profile(None, self.config)

    def test_on_time_weekday_in_has_no_warnings(self) -> None:
        result = self.validator.validate(
            profile=self.profile,
            punch_type=PunchType.IN,
            punch_time=MONDAY.replace(hour=9, minute=10),
            today_punches=[],
            last_punch=None,
        )
        self.assertTrue(result.valid)
        self.assertEqual(result.warnings, [])

    def test_late_arrival_warning_and_severity(self) -> None:
        medium = self.validator.validate(
            profile=self.profile,
            punch_type=PunchType.IN,
            punch_time=MONDAY.replace(hour=9, minute=20),
            today_punches=[],
            last_punch=None,
        )
        late = medium.first(WarningKind.LATE_ARRIVAL)
        self.assertIsInstance(late, LateArrivalWarning)
        self.assertEqual(late.minutes_late, 20)
        self.assertEqual(late.severity, "medium")
        self.assertEqual(late.message, "You are 20 minutes late")

        high = self.validator.validate(
            profile=self.profile,
            punch_type=PunchType.IN,
            punch_time=MONDAY.replace(hour=9, minute=45),
            today_punches=[],
            last_punch=None,
        )
        self.assertEqual(high.first(WarningKind.LATE_ARRIVAL).severity, "high")

    def test_weekend_and_outside_hours_warnings_do_not_block(self) -> None:
        result = self.validator.validate(
            profile=self.profile,
            punch_type=PunchType.IN,
            punch_time=SATURDAY.replace(hour=5),
            today_punches=[],
            last_punch=None,
        )
        self.assertTrue(result.valid)
        kinds = [item.kind for item in result.details]
        self.assertIn(WarningKind.OUTSIDE_BUSINESS_HOURS, kinds)
        self.assertIn(WarningKind.NON_WORKING_DAY, kinds)
        weekend = result.first(WarningKind.NON_WORKING_DAY)
        self.assertIsInstance(weekend, NonWorkingDayWarning)
        self.assertTrue(weekend.is_weekend)
        self.assertEqual(weekend.day_name, "Saturday")
        outside = result.first(WarningKind.OUTSIDE_BUSINESS_HOURS)
        self.assertIsInstance(outside, OutsideBusinessHoursWarning)
        self.assertTrue(outside.requires_approval)

    def test_business_hours_window_is_half_open(self) -> None:
        self.assertIsNone(check_business_hours(MONDAY.replace(hour=6), self.profile))
        self.assertIsNotNone(check_business_hours(MONDAY.replace(hour=5, minute=59), self.profile))
        self.assertIsNotNone(check_business_hours(MONDAY.replace(hour=23, minute=59), self.profile))

    def test_overnight_business_window(self) -> None:
        config = make_config(business_hours_start=time(22, 0), business_hours_end=time(6, 0))
        profile = resolve_work_profile(None, config)
        self.assertIsNone(check_business_hours(MONDAY.replace(hour=23), profile))
        self.assertIsNone(check_business_hours(MONDAY.replace(hour=2), profile))
        self.assertIsNotNone(check_business_hours(MONDAY.replace(hour=12), profile))

    def test_business_hours_use_the_user_timezone(self) -> None:
        user = SimpleNamespace(id=3, timezone="Asia/Kolkata")
        profile = resolve_work_profile(user, self.config)
        # 01:00 UTC is 06:30 in Kolkata
        self.assertIsNone(check_business_hours(MONDAY.replace(hour=1), profile))

    def test_early_departure_reports_shortfall(self) -> None:
        punch_in = _punch(PunchType.IN, MONDAY.replace(hour=9))
        result = self.validator.validate(
            profile=self.profile,
            punch_type=PunchType.OUT,
            punch_time=MONDAY.replace(hour=15, minute=30),
            today_punches=[punch_in],
            last_punch=punch_in,
        )
        early = result.first(WarningKind.EARLY_DEPARTURE)
        self.assertIsInstance(early, EarlyDepartureWarning)
        self.assertEqual(early.hours_worked, 6.5)
        self.assertEqual(early.short_by_hours, 1.5)
        self.assertTrue(result.valid)

    def test_full_day_out_has_no_early_departure(self) -> None:
        punch_in = _punch(PunchType.IN, MONDAY.replace(hour=9))
        result = self.validator.validate(
            profile=self.profile,
            punch_type=PunchType.OUT,
            punch_time=MONDAY.replace(hour=17, minute=5),
            today_punches=[punch_in],
            last_punch=punch_in,
        )
        self.assertIsNone(result.first(WarningKind.EARLY_DEPARTURE))


if __name__ == "__main__":
    unittest.main()
