from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
import enum
import math
from typing import Any, Union

from punchclock.config import EngineConfig, WorkProfile
from punchclock.models import PunchType
from punchclock.services.timezones import normalize_ts, to_local, weekday_name

LATE_HIGH_SEVERITY_MINUTES = 30


class SequenceState(str, enum.Enum):
    NO_PUNCHES = "NO_PUNCHES"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class WarningKind(str, enum.Enum):
    OUTSIDE_BUSINESS_HOURS = "OUTSIDE_BUSINESS_HOURS"
    NON_WORKING_DAY = "NON_WORKING_DAY"
    LATE_ARRIVAL = "LATE_ARRIVAL"
    EARLY_DEPARTURE = "EARLY_DEPARTURE"


@dataclass(frozen=True, slots=True)
class SequenceStatus:
    state: SequenceState
    last_in_time: datetime | None = None


@dataclass(frozen=True, slots=True)
class OutsideBusinessHoursWarning:
    local_time: str
    window_start: time
    window_end: time
    requires_approval: bool = True
    kind: WarningKind = WarningKind.OUTSIDE_BUSINESS_HOURS

    @property
    def message(self) -> str:
        return (
            f"Punch time ({self.local_time}) is outside business hours "
            f"({self.window_start.strftime('%H:%M')} - {self.window_end.strftime('%H:%M')})"
        )


@dataclass(frozen=True, slots=True)
class NonWorkingDayWarning:
    day_name: str
    is_weekend: bool = True
    kind: WarningKind = WarningKind.NON_WORKING_DAY

    @property
    def message(self) -> str:
        return f"{self.day_name} is not a working day"


@dataclass(frozen=True, slots=True)
class LateArrivalWarning:
    minutes_late: int
    shift_start_local: str
    actual_punch_local: str
    kind: WarningKind = WarningKind.LATE_ARRIVAL

    @property
    def severity(self) -> str:
        return "high" if self.minutes_late > LATE_HIGH_SEVERITY_MINUTES else "medium"

    @property
    def message(self) -> str:
        return f"You are {self.minutes_late} minutes late"


@dataclass(frozen=True, slots=True)
class EarlyDepartureWarning:
    hours_worked: float
    minimum_required: float
    short_by_hours: float
    kind: WarningKind = WarningKind.EARLY_DEPARTURE

    @property
    def message(self) -> str:
        return (
            f"Early departure: Only {self.hours_worked}h worked "
            f"({self.minimum_required}h required)"
        )


PunchWarning = Union[
    OutsideBusinessHoursWarning,
    NonWorkingDayWarning,
    LateArrivalWarning,
    EarlyDepartureWarning,
]


@dataclass(slots=True)
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    details: list[PunchWarning] = field(default_factory=list)
    double_punch_retry_after: int | None = None

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def is_double_punch(self) -> bool:
        return self.double_punch_retry_after is not None

    @property
    def warnings(self) -> list[str]:
        return [item.message for item in self.details]

    @property
    def has_warnings(self) -> bool:
        return bool(self.details)

    def first(self, kind: WarningKind) -> PunchWarning | None:
        return next((item for item in self.details if item.kind == kind), None)


def sequence_status(today_punches: Sequence[Any]) -> SequenceStatus:
    if not today_punches:
        return SequenceStatus(SequenceState.NO_PUNCHES)
    last = today_punches[-1]
    if last.punch_type == PunchType.IN:
        return SequenceStatus(SequenceState.OPEN, normalize_ts(last.punch_time))
    return SequenceStatus(SequenceState.CLOSED)


def check_sequence(today_punches: Sequence[Any], punch_type: PunchType) -> str | None:
    status = sequence_status(today_punches)
    if punch_type == PunchType.IN:
        if status.state == SequenceState.OPEN:
            return "Cannot punch IN twice in a row"
        return None
    if status.state == SequenceState.NO_PUNCHES:
        return "First punch of the day must be IN"
    if status.state == SequenceState.CLOSED:
        return "Cannot punch OUT twice in a row"
    return None


def double_punch_retry_after(last_punch: Any | None, punch_time: datetime, window_seconds: int) -> int | None:
    """Seconds left in the debounce window, or None if the punch is allowed.

    A punch exactly ``window_seconds`` after the previous one is accepted.
    """
    if last_punch is None or window_seconds <= 0:
        return None
    elapsed = abs((normalize_ts(punch_time) - normalize_ts(last_punch.punch_time)).total_seconds())
    if elapsed < window_seconds:
        return max(1, math.ceil(window_seconds - elapsed))
    return None


def _minutes_of_day(value: datetime | time) -> int:
    return value.hour * 60 + value.minute


def check_business_hours(punch_time: datetime, profile: WorkProfile) -> OutsideBusinessHoursWarning | None:
    local = to_local(punch_time, profile.timezone)
    minutes = _minutes_of_day(local)
    start = _minutes_of_day(profile.business_hours_start)
    end = _minutes_of_day(profile.business_hours_end)
    if start <= end:
        inside = start <= minutes < end
    else:
        inside = minutes >= start or minutes < end
    if inside:
        return None
    return OutsideBusinessHoursWarning(
        local_time=local.strftime("%I:%M %p"),
        window_start=profile.business_hours_start,
        window_end=profile.business_hours_end,
    )


def check_working_day(punch_time: datetime, profile: WorkProfile) -> NonWorkingDayWarning | None:
    day_name = weekday_name(to_local(punch_time, profile.timezone).date())
    if profile.is_working_day(day_name):
        return None
    return NonWorkingDayWarning(day_name=day_name)


def check_grace_period(punch_time: datetime, profile: WorkProfile) -> LateArrivalWarning | None:
    local = to_local(punch_time, profile.timezone)
    shift_start = datetime.combine(local.date(), profile.shift_start_time, tzinfo=local.tzinfo)
    if local <= shift_start + timedelta(minutes=profile.grace_minutes):
        return None
    minutes_late = int((local - shift_start).total_seconds() // 60)
    return LateArrivalWarning(
        minutes_late=minutes_late,
        shift_start_local=shift_start.strftime("%I:%M %p"),
        actual_punch_local=local.strftime("%I:%M %p"),
    )


def check_early_departure(
    punch_out_time: datetime,
    punch_in_time: datetime,
    minimum_work_hours: float,
) -> EarlyDepartureWarning | None:
    hours_worked = (normalize_ts(punch_out_time) - normalize_ts(punch_in_time)).total_seconds() / 3600
    if hours_worked >= minimum_work_hours:
        return None
    return EarlyDepartureWarning(
        hours_worked=round(hours_worked, 2),
        minimum_required=minimum_work_hours,
        short_by_hours=round(minimum_work_hours - hours_worked, 2),
    )


class PunchValidator:
    """Gates new punches: debounce, IN/OUT alternation, then policy warnings."""

    def __init__(self, config: EngineConfig) -> None:
        self._config = config

    def validate(
        self,
        *,
        profile: WorkProfile,
        punch_type: PunchType,
        punch_time: datetime,
        today_punches: Sequence[Any],
        last_punch: Any | None,
    ) -> ValidationResult:
        result = ValidationResult()

        retry_after = double_punch_retry_after(
            last_punch,
            punch_time,
            self._config.double_punch_window_seconds,
        )
        if retry_after is not None:
            result.errors.append(
                "Double punch detected. Please wait at least "
                f"{self._config.double_punch_window_seconds} seconds between punches."
            )
            result.double_punch_retry_after = retry_after
            return result

        sequence_error = check_sequence(today_punches, punch_type)
        if sequence_error is not None:
            result.errors.append(sequence_error)
            return result

        business_hours = check_business_hours(punch_time, profile)
        if business_hours is not None:
            result.details.append(business_hours)

        working_day = check_working_day(punch_time, profile)
        if working_day is not None:
            result.details.append(working_day)

        if punch_type == PunchType.IN:
            late = check_grace_period(punch_time, profile)
            if late is not None:
                result.details.append(late)
        else:
            status = sequence_status(today_punches)
            if status.last_in_time is not None:
                early = check_early_departure(punch_time, status.last_in_time, profile.minimum_work_hours)
                if early is not None:
                    result.details.append(early)

        return result
