from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from punchclock.models import PunchType
from punchclock.services.time_engine import format_minutes
from punchclock.services.timezones import normalize_ts, to_local

LONG_BREAK_MINUTES = 60
LONG_BREAK_ALERT_MINUTES = 90
LONG_ABSENCE_ALERT_MINUTES = 120


@dataclass(frozen=True, slots=True)
class BreakPeriod:
    start_utc: datetime
    end_utc: datetime
    start_local: str
    end_local: str
    duration_minutes: int
    category: str
    is_long_break: bool

    @property
    def duration_formatted(self) -> str:
        return format_minutes(self.duration_minutes)


@dataclass(frozen=True, slots=True)
class BreakSummary:
    breaks: list[BreakPeriod]
    total_break_minutes: int
    break_count: int

    @property
    def total_break_formatted(self) -> str:
        return format_minutes(self.total_break_minutes)


@dataclass(frozen=True, slots=True)
class LongBreakAlert:
    break_start_utc: datetime
    break_minutes: int
    alert: str


def categorize_break(duration_minutes: int) -> str:
    if duration_minutes <= 15:
        return "Short Break"
    if duration_minutes <= 30:
        return "Tea Break"
    if duration_minutes <= 60:
        return "Lunch Break"
    if duration_minutes <= 120:
        return "Extended Break"
    return "Long Absence"


def _whole_minutes(later: datetime, earlier: datetime) -> int:
    return int((normalize_ts(later) - normalize_ts(earlier)).total_seconds() // 60)


def analyze_breaks(punches: Sequence[Any], tz_name: str) -> list[BreakPeriod]:
    breaks: list[BreakPeriod] = []
    for current, following in zip(punches, punches[1:]):
        if current.punch_type != PunchType.OUT or following.punch_type != PunchType.IN:
            continue
        duration = _whole_minutes(following.punch_time, current.punch_time)
        breaks.append(
            BreakPeriod(
                start_utc=normalize_ts(current.punch_time),
                end_utc=normalize_ts(following.punch_time),
                start_local=to_local(current.punch_time, tz_name).strftime("%I:%M %p"),
                end_local=to_local(following.punch_time, tz_name).strftime("%I:%M %p"),
                duration_minutes=duration,
                category=categorize_break(duration),
                is_long_break=duration > LONG_BREAK_MINUTES,
            )
        )
    return breaks


def summarize_breaks(punches: Sequence[Any], tz_name: str) -> BreakSummary:
    breaks = analyze_breaks(punches, tz_name)
    return BreakSummary(
        breaks=breaks,
        total_break_minutes=sum(item.duration_minutes for item in breaks),
        break_count=len(breaks),
    )


def check_long_break(punches: Sequence[Any], now: datetime) -> LongBreakAlert | None:
    if not punches or punches[-1].punch_type != PunchType.OUT:
        return None
    last_out = punches[-1]
    break_minutes = _whole_minutes(now, last_out.punch_time)
    if break_minutes <= LONG_BREAK_ALERT_MINUTES:
        return None
    alert = "Break exceeds 2 hours" if break_minutes > LONG_ABSENCE_ALERT_MINUTES else "Extended break detected"
    return LongBreakAlert(
        break_start_utc=normalize_ts(last_out.punch_time),
        break_minutes=break_minutes,
        alert=alert,
    )
