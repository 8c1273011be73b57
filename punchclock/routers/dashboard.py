from typing import Any

from fastapi import APIRouter, Depends, Query

from punchclock.dependencies import ServiceContainer, get_container, get_current_user
from punchclock.schemas import AnomalyRead, BreakSummaryRead, DailySnapshotRead, LongBreakAlertRead, WeeklySummaryRead
from punchclock.services.breaks import check_long_break, summarize_breaks
from punchclock.services.timezones import resolve_timezone

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("", response_model=DailySnapshotRead)
def get_dashboard(
    user: Any = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> DailySnapshotRead:
    snapshot = container.punches.dashboard.get_daily_snapshot(user)
    return DailySnapshotRead.model_validate(snapshot)


@router.get("/weekly", response_model=WeeklySummaryRead)
def get_weekly_summary(
    week_offset: int = Query(default=0, ge=0, le=52),
    user: Any = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> WeeklySummaryRead:
    summary = container.punches.dashboard.get_weekly_summary(user, week_offset)
    return WeeklySummaryRead.model_validate(summary)


@router.get("/issues", response_model=list[AnomalyRead])
def get_issues(
    user: Any = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> list[AnomalyRead]:
    return [AnomalyRead.model_validate(item) for item in container.punches.detector.detect_issues(user)]


@router.get("/breaks")
def get_breaks(
    user: Any = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    tz_name = resolve_timezone(user, container.config)
    punches = container.punches.dashboard.today_punches(user)
    long_break = check_long_break(punches, container.clock.now())
    return {
        "summary": BreakSummaryRead.model_validate(summarize_breaks(punches, tz_name)),
        "long_break": LongBreakAlertRead.model_validate(long_break) if long_break is not None else None,
    }
