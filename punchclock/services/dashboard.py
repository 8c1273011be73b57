from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
import enum
import math
from typing import Any

from punchclock.clock import Clock
from punchclock.config import EngineConfig, WorkProfile, resolve_work_profile
from punchclock.models import PunchType
from punchclock.services.breaks import BreakSummary, LongBreakAlert, check_long_break, summarize_breaks
from punchclock.services.punch_store import PunchStore
from punchclock.services.time_engine import (
    PredictedExit,
    calculate_predicted_exit,
    calculate_remaining_minutes,
    count_sessions,
    format_minutes,
    has_open_session,
    measure_worked_time,
    next_punch_type,
    round_minutes,
)
from punchclock.services.timezones import (
    bounds_for_local_day,
    normalize_ts,
    to_local,
    weekday_name,
)


class WorkStatus(str, enum.Enum):
    WORKING = "WORKING"
    NOT_WORKING = "NOT_WORKING"


@dataclass(frozen=True, slots=True)
class PunchView:
    id: int | None
    punch_type: PunchType
    time_utc: datetime
    time_local: str
    source: str
    edited: bool
    edit_reason: str | None
    notes: str | None


@dataclass(frozen=True, slots=True)
class DashboardAlerts:
    has_open_punch: bool
    has_odd_punch_count: bool
    is_non_working_day: bool
    open_session_clamped: bool
    long_break: LongBreakAlert | None = None


@dataclass(frozen=True, slots=True)
class DailySnapshot:
    user_id: int | None
    timezone: str
    local_date: date
    now_utc: datetime
    now_local: str
    status: WorkStatus
    next_punch_type: PunchType
    last_punch: PunchView | None
    punches: list[PunchView]
    worked_minutes: float
    raw_worked_minutes: float
    remaining_minutes: float
    daily_target_minutes: int
    progress_percent: int
    session_count: int
    predicted_exit: PredictedExit | None
    alerts: DashboardAlerts
    breaks: BreakSummary

    @property
    def punch_count(self) -> int:
        return len(self.punches)

    @property
    def is_target_met(self) -> bool:
        return self.worked_minutes >= self.daily_target_minutes

    @property
    def worked_formatted(self) -> str:
        return format_minutes(self.worked_minutes)

    @property
    def remaining_formatted(self) -> str:
        return format_minutes(self.remaining_minutes)

    @property
    def daily_target_formatted(self) -> str:
        return format_minutes(self.daily_target_minutes)


@dataclass(frozen=True, slots=True)
class DayTotals:
    date: date
    day_name: str
    is_working_day: bool
    worked_minutes: float
    target_minutes: int
    punch_count: int
    is_target_met: bool

    @property
    def worked_formatted(self) -> str:
        return format_minutes(self.worked_minutes)


@dataclass(frozen=True, slots=True)
class WeeklySummary:
    user_id: int | None
    week_start: date
    week_end: date
    total_worked_minutes: float
    non_working_day_minutes: float
    weekly_target_minutes: int
    progress_percent: int
    working_days_count: int
    days: list[DayTotals]

    @property
    def total_worked_formatted(self) -> str:
        return format_minutes(self.total_worked_minutes)

    @property
    def weekly_target_formatted(self) -> str:
        return format_minutes(self.weekly_target_minutes)


def progress_percent(worked_minutes: float, target_minutes: float) -> int:
    if target_minutes <= 0:
        return 0
    return min(100, int(math.floor(worked_minutes / target_minutes * 100 + 0.5)))


def week_start_for(local_day: date, week_offset: int = 0) -> date:
    """Monday of the ISO week containing ``local_day``, shifted back ``week_offset`` weeks."""
    return local_day - timedelta(days=local_day.weekday()) - timedelta(weeks=week_offset)


def punch_view(punch: Any, tz_name: str) -> PunchView:
    source = punch.source.value if hasattr(punch.source, "value") else str(punch.source)
    return PunchView(
        id=punch.id,
        punch_type=punch.punch_type,
        time_utc=normalize_ts(punch.punch_time),
        time_local=to_local(punch.punch_time, tz_name).strftime("%I:%M %p"),
        source=source,
        edited=bool(punch.edited),
        edit_reason=punch.edit_reason,
        notes=punch.notes,
    )


def build_daily_snapshot(
    punches: Sequence[Any],
    *,
    profile: WorkProfile,
    now: datetime,
    clamp_stale_open_session: bool = True,
) -> DailySnapshot:
    """Assemble the status snapshot from one local day's ascending punches."""
    now_utc = normalize_ts(now)
    now_local = to_local(now_utc, profile.timezone)
    target = profile.daily_work_target_minutes

    worked = measure_worked_time(
        punches,
        include_open_session=True,
        now=now_utc,
        clamp_stale_open_session=clamp_stale_open_session,
    )
    remaining = calculate_remaining_minutes(worked.minutes, target)
    is_open = has_open_session(punches)
    views = [punch_view(punch, profile.timezone) for punch in punches]

    return DailySnapshot(
        user_id=profile.user_id,
        timezone=profile.timezone,
        local_date=now_local.date(),
        now_utc=now_utc,
        now_local=now_local.strftime("%Y-%m-%d %H:%M:%S"),
        status=WorkStatus.WORKING if is_open else WorkStatus.NOT_WORKING,
        next_punch_type=next_punch_type(punches),
        last_punch=views[-1] if views else None,
        punches=views,
        worked_minutes=round_minutes(worked.minutes),
        raw_worked_minutes=round_minutes(worked.raw_minutes),
        remaining_minutes=round_minutes(remaining),
        daily_target_minutes=target,
        progress_percent=progress_percent(worked.minutes, target),
        session_count=count_sessions(punches),
        predicted_exit=calculate_predicted_exit(punches, target, profile.timezone),
        alerts=DashboardAlerts(
            has_open_punch=is_open,
            has_odd_punch_count=len(punches) % 2 == 1,
            is_non_working_day=not profile.is_working_day(weekday_name(now_local.date())),
            open_session_clamped=worked.open_session_clamped,
            long_break=check_long_break(punches, now_utc),
        ),
        breaks=summarize_breaks(punches, profile.timezone),
    )


class DashboardService:
    def __init__(self, store: PunchStore, clock: Clock, config: EngineConfig) -> None:
        self._store = store
        self._clock = clock
        self._config = config

    def today_punches(self, user: Any, profile: WorkProfile | None = None, *, now: datetime | None = None) -> list[Any]:
        profile = profile or resolve_work_profile(user, self._config)
        now_utc = normalize_ts(now or self._clock.now())
        start_utc, end_utc = bounds_for_local_day(to_local(now_utc, profile.timezone).date(), profile.timezone)
        return self._store.find_punches_in_range(user.id, start_utc, end_utc)

    def get_daily_snapshot(self, user: Any) -> DailySnapshot:
        profile = resolve_work_profile(user, self._config)
        now_utc = normalize_ts(self._clock.now())
        punches = self.today_punches(user, profile, now=now_utc)
        return build_daily_snapshot(
            punches,
            profile=profile,
            now=now_utc,
            clamp_stale_open_session=self._config.clamp_stale_open_session,
        )

    def get_weekly_summary(self, user: Any, week_offset: int = 0) -> WeeklySummary:
        """Per-day totals for an ISO (Monday-start) week.

        ``week_offset`` counts weeks back from the current one. Only today's
        row may include an open session. The weekly total counts working days
        only; minutes punched on other days are reported separately.
        """
        profile = resolve_work_profile(user, self._config)
        now_utc = normalize_ts(self._clock.now())
        today = to_local(now_utc, profile.timezone).date()
        week_start = week_start_for(today, max(0, week_offset))
        week_end = week_start + timedelta(days=6)

        range_start, _ = bounds_for_local_day(week_start, profile.timezone)
        _, range_end = bounds_for_local_day(week_end, profile.timezone)
        punches = self._store.find_punches_in_range(user.id, range_start, range_end)

        days: list[DayTotals] = []
        total = 0.0
        off_day_total = 0.0
        working_days_count = 0
        for index in range(7):
            day = week_start + timedelta(days=index)
            day_name = weekday_name(day)
            is_working_day = profile.is_working_day(day_name)
            day_start, day_end = bounds_for_local_day(day, profile.timezone)
            day_punches = [
                punch for punch in punches if day_start <= normalize_ts(punch.punch_time) <= day_end
            ]
            worked = measure_worked_time(
                day_punches,
                include_open_session=day == today,
                now=now_utc,
                clamp_stale_open_session=self._config.clamp_stale_open_session,
            ).minutes

            if is_working_day:
                working_days_count += 1
                total += worked
            else:
                off_day_total += worked

            days.append(
                DayTotals(
                    date=day,
                    day_name=day_name,
                    is_working_day=is_working_day,
                    worked_minutes=round_minutes(worked),
                    target_minutes=profile.daily_work_target_minutes if is_working_day else 0,
                    punch_count=len(day_punches),
                    is_target_met=worked >= profile.daily_work_target_minutes,
                )
            )

        weekly_target = working_days_count * profile.daily_work_target_minutes
        return WeeklySummary(
            user_id=profile.user_id,
            week_start=week_start,
            week_end=week_end,
            total_worked_minutes=round_minutes(total),
            non_working_day_minutes=round_minutes(off_day_total),
            weekly_target_minutes=weekly_target,
            progress_percent=progress_percent(total, weekly_target),
            working_days_count=working_days_count,
            days=days,
        )
