from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from punchclock.errors import ConfigurationError

if TYPE_CHECKING:
    from punchclock.config import EngineConfig

END_OF_DAY_OFFSET = timedelta(microseconds=1)
WEEKDAY_NAMES = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


@lru_cache(maxsize=256)
def load_timezone(name: str) -> ZoneInfo:
    normalized = (name or "").strip()
    if not normalized:
        raise ConfigurationError("Timezone identifier is empty.", code="INVALID_TIMEZONE")
    try:
        return ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(
            f"Unknown timezone identifier: {normalized!r}",
            code="INVALID_TIMEZONE",
        ) from exc


def resolve_timezone(user: Any | None, config: EngineConfig) -> str:
    """Return the user's configured timezone name, or the process default.

    Never raises; validation happens when the name is turned into a zone
    with :func:`load_timezone`.
    """
    configured = getattr(user, "timezone", None) if user is not None else None
    if isinstance(configured, str) and configured.strip():
        return configured.strip()
    return config.default_timezone


def local_date(ts_utc: datetime, tz_name: str) -> date:
    return normalize_ts(ts_utc).astimezone(load_timezone(tz_name)).date()


def to_local(ts_utc: datetime, tz_name: str) -> datetime:
    return normalize_ts(ts_utc).astimezone(load_timezone(tz_name))


def local_to_utc(value: datetime, tz_name: str) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=load_timezone(tz_name))
    return value.astimezone(timezone.utc)


def bounds_for_local_day(local_day: date, tz_name: str) -> tuple[datetime, datetime]:
    tz = load_timezone(tz_name)
    local_start = datetime.combine(local_day, time.min, tzinfo=tz)
    next_start = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return (
        local_start.astimezone(timezone.utc),
        next_start.astimezone(timezone.utc) - END_OF_DAY_OFFSET,
    )


def day_bounds_utc(tz_name: str, reference_ts_utc: datetime | None = None) -> tuple[datetime, datetime]:
    """Inclusive UTC bounds of the local day containing ``reference_ts_utc`` (default: now).

    The end bound is the last representable instant before the next local
    midnight, so DST days come out as 23 or 25 hours long.
    """
    return bounds_for_local_day(local_date(reference_ts_utc, tz_name), tz_name)


def weekday_name(local_day: date) -> str:
    return WEEKDAY_NAMES[local_day.weekday()]
