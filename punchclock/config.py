from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from typing import Any

from punchclock.errors import ConfigurationError
from punchclock.services.timezones import WEEKDAY_NAMES, load_timezone, resolve_timezone
from punchclock.settings import Settings


def parse_hhmm(raw: str | None, *, field: str) -> time:
    normalized = (raw or "").strip()
    parts = normalized.split(":")
    if len(parts) != 2 or not parts[0].isdigit() or not parts[1].isdigit():
        raise ConfigurationError(f"{field} must be HH:MM, got {raw!r}", code="INVALID_POLICY")
    hour = int(parts[0])
    minute = int(parts[1])
    if hour > 23 or minute > 59:
        raise ConfigurationError(f"{field} must be HH:MM, got {raw!r}", code="INVALID_POLICY")
    return time(hour=hour, minute=minute)


def _validate_working_days(days: list[str] | tuple[str, ...], *, field: str) -> frozenset[str]:
    normalized = {str(day).strip().capitalize() for day in days if str(day).strip()}
    unknown = sorted(normalized - set(WEEKDAY_NAMES))
    if unknown:
        raise ConfigurationError(f"{field} has unknown weekday names: {unknown}", code="INVALID_POLICY")
    return frozenset(normalized)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Immutable engine configuration, built once at process start."""

    default_timezone: str
    default_daily_work_target_minutes: int
    default_working_days: frozenset[str]
    business_hours_start: time
    business_hours_end: time
    grace_minutes: int
    shift_start_time: time
    minimum_work_hours: float
    double_punch_window_seconds: int = 60
    clamp_stale_open_session: bool = True
    auto_close_enabled: bool = True
    auto_close_local_time: time = time(23, 59)
    punch_out_reminder_time: time = time(20, 0)
    reminder_min_open_hours: float = 8
    orphan_scan_days: int = 30
    health_open_punch_threshold: int = 10
    health_orphaned_punch_threshold: int = 5
    scheduler_tick_seconds: int = 60


def build_engine_config(settings: Settings) -> EngineConfig:
    load_timezone(settings.default_timezone)
    if settings.default_work_hours <= 0:
        raise ConfigurationError("default_work_hours must be positive", code="INVALID_POLICY")
    return EngineConfig(
        default_timezone=settings.default_timezone.strip(),
        default_daily_work_target_minutes=int(settings.default_work_hours * 60),
        default_working_days=_validate_working_days(
            settings.default_working_days.split(","),
            field="default_working_days",
        ),
        business_hours_start=parse_hhmm(settings.business_hours_start, field="business_hours_start"),
        business_hours_end=parse_hhmm(settings.business_hours_end, field="business_hours_end"),
        grace_minutes=max(0, settings.grace_period_minutes),
        shift_start_time=parse_hhmm(settings.shift_start_time, field="shift_start_time"),
        minimum_work_hours=max(0.0, float(settings.minimum_work_hours)),
        double_punch_window_seconds=max(0, settings.double_punch_window_seconds),
        clamp_stale_open_session=settings.clamp_stale_open_session,
        auto_close_enabled=settings.auto_close_enabled,
        auto_close_local_time=parse_hhmm(settings.auto_close_local_time, field="auto_close_local_time"),
        punch_out_reminder_time=parse_hhmm(settings.punch_out_reminder_time, field="punch_out_reminder_time"),
        reminder_min_open_hours=max(0.0, float(settings.reminder_min_open_hours)),
        orphan_scan_days=max(1, settings.orphan_scan_days),
        health_open_punch_threshold=max(0, settings.health_open_punch_threshold),
        health_orphaned_punch_threshold=max(0, settings.health_orphaned_punch_threshold),
        scheduler_tick_seconds=max(15, settings.scheduler_tick_seconds),
    )


@dataclass(frozen=True, slots=True)
class WorkProfile:
    user_id: int | None
    timezone: str
    daily_work_target_minutes: int
    working_days: frozenset[str]
    business_hours_start: time
    business_hours_end: time
    grace_minutes: int
    shift_start_time: time
    minimum_work_hours: float

    def is_working_day(self, day_name: str) -> bool:
        return day_name in self.working_days


def resolve_work_profile(user: Any | None, config: EngineConfig) -> WorkProfile:
    """Overlay the user's optional policy fields on the engine defaults.

    Raises ConfigurationError for an unknown timezone or malformed policy
    values; nothing is silently replaced by a default once it is set.
    """
    tz_name = resolve_timezone(user, config)
    load_timezone(tz_name)

    def _attr(name: str) -> Any:
        return getattr(user, name, None) if user is not None else None

    target = _attr("daily_work_target_minutes")
    if target is not None and int(target) <= 0:
        raise ConfigurationError("daily_work_target_minutes must be positive", code="INVALID_POLICY")

    working_days = _attr("working_days")
    start_raw = _attr("business_hours_start")
    end_raw = _attr("business_hours_end")
    shift_raw = _attr("shift_start_time")
    grace = _attr("grace_minutes")
    minimum_hours = _attr("minimum_work_hours")

    return WorkProfile(
        user_id=_attr("id"),
        timezone=tz_name,
        daily_work_target_minutes=int(target) if target is not None else config.default_daily_work_target_minutes,
        working_days=(
            _validate_working_days(working_days, field="working_days")
            if working_days
            else config.default_working_days
        ),
        business_hours_start=(
            parse_hhmm(start_raw, field="business_hours_start") if start_raw else config.business_hours_start
        ),
        business_hours_end=parse_hhmm(end_raw, field="business_hours_end") if end_raw else config.business_hours_end,
        grace_minutes=max(0, int(grace)) if grace is not None else config.grace_minutes,
        shift_start_time=parse_hhmm(shift_raw, field="shift_start_time") if shift_raw else config.shift_start_time,
        minimum_work_hours=(
            max(0.0, float(minimum_hours)) if minimum_hours is not None else config.minimum_work_hours
        ),
    )
