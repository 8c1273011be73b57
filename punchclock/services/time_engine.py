from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
import math
from typing import Any

from punchclock.models import PunchType
from punchclock.services.timezones import normalize_ts, to_local

MAX_CLOSED_SESSION_MINUTES = 24 * 60
MAX_OPEN_SESSION_MINUTES = 16 * 60
STALE_OPEN_SESSION_FALLBACK_MINUTES = 8 * 60


@dataclass(frozen=True, slots=True)
class WorkedTime:
    minutes: float
    raw_minutes: float
    open_session_minutes: float | None
    open_session_clamped: bool
    discarded_sessions: int


@dataclass(frozen=True, slots=True)
class PredictedExit:
    time_utc: datetime
    time_local: str
    remaining_minutes: float


def _minutes_between(later: datetime, earlier: datetime) -> float:
    return (normalize_ts(later) - normalize_ts(earlier)).total_seconds() / 60


def measure_worked_time(
    punches: Sequence[Any],
    *,
    include_open_session: bool,
    now: datetime | None = None,
    clamp_stale_open_session: bool = True,
) -> WorkedTime:
    """Reduce an ascending punch sequence into worked minutes.

    Consecutive INs move the pending marker forward; an OUT with no pending
    IN is ignored. Closed sessions longer than 24h are dropped as data
    errors. An open session older than 16h contributes the 8h fallback when
    ``clamp_stale_open_session`` is set, otherwise its real duration; in both
    cases ``raw_minutes`` carries the real value and ``open_session_clamped``
    reports whether it exceeded the limit.
    """
    total = 0.0
    discarded = 0
    pending_in: Any | None = None

    for punch in punches:
        if punch.punch_type == PunchType.IN:
            pending_in = punch
            continue
        if punch.punch_type == PunchType.OUT and pending_in is not None:
            duration = _minutes_between(punch.punch_time, pending_in.punch_time)
            pending_in = None
            if duration > MAX_CLOSED_SESSION_MINUTES:
                discarded += 1
                continue
            total += duration

    raw_total = total
    open_minutes: float | None = None
    clamped = False
    if include_open_session and pending_in is not None:
        open_minutes = max(0.0, _minutes_between(normalize_ts(now), pending_in.punch_time))
        raw_total += open_minutes
        if open_minutes <= MAX_OPEN_SESSION_MINUTES:
            total += open_minutes
        else:
            clamped = True
            total += STALE_OPEN_SESSION_FALLBACK_MINUTES if clamp_stale_open_session else open_minutes

    return WorkedTime(
        minutes=max(0.0, total),
        raw_minutes=max(0.0, raw_total),
        open_session_minutes=open_minutes,
        open_session_clamped=clamped,
        discarded_sessions=discarded,
    )


def calculate_worked_minutes(
    punches: Sequence[Any],
    include_open_session: bool = True,
    *,
    now: datetime | None = None,
    clamp_stale_open_session: bool = True,
) -> float:
    return measure_worked_time(
        punches,
        include_open_session=include_open_session,
        now=now,
        clamp_stale_open_session=clamp_stale_open_session,
    ).minutes


def calculate_remaining_minutes(worked_minutes: float, target_minutes: float) -> float:
    return max(0.0, target_minutes - worked_minutes)


def calculate_predicted_exit(
    punches: Sequence[Any],
    target_minutes: float,
    tz_name: str,
) -> PredictedExit | None:
    last_in = next((punch for punch in reversed(punches) if punch.punch_type == PunchType.IN), None)
    if last_in is None:
        return None

    last_in_ts = normalize_ts(last_in.punch_time)
    if any(
        punch.punch_type == PunchType.OUT and normalize_ts(punch.punch_time) > last_in_ts
        for punch in punches
    ):
        return None

    earlier = [punch for punch in punches if normalize_ts(punch.punch_time) < last_in_ts]
    worked_before = calculate_worked_minutes(earlier, include_open_session=False)
    remaining = target_minutes - worked_before
    predicted = last_in_ts + timedelta(minutes=remaining)
    return PredictedExit(
        time_utc=predicted,
        time_local=to_local(predicted, tz_name).strftime("%I:%M %p"),
        remaining_minutes=remaining,
    )


def next_punch_type(punches: Sequence[Any]) -> PunchType:
    if not punches:
        return PunchType.IN
    return punches[-1].punch_type.opposite


def has_open_session(punches: Sequence[Any]) -> bool:
    return bool(punches) and punches[-1].punch_type == PunchType.IN


def count_sessions(punches: Sequence[Any]) -> int:
    return len(punches) // 2 + (1 if has_open_session(punches) else 0)


def round_minutes(minutes: float) -> float:
    return round(minutes * 100) / 100


def format_minutes(minutes: float) -> str:
    whole = int(math.floor(max(0.0, minutes) + 0.5))
    hours, mins = divmod(whole, 60)
    if hours == 0:
        return f"{mins}m"
    return f"{hours}h {mins}m"
