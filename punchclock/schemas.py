from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from punchclock.models import PunchSource, PunchType
from punchclock.services.anomalies import AnomalyType, Severity
from punchclock.services.dashboard import WorkStatus


class PunchSubmitRequest(BaseModel):
    punch_type: PunchType | None = None
    source: PunchSource = PunchSource.MANUAL
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("source")
    @classmethod
    def _interactive_source(cls, value: PunchSource) -> PunchSource:
        if value not in (PunchSource.NFC, PunchSource.MANUAL):
            raise ValueError("source must be NFC or MANUAL")
        return value


class ManualPunchCreateRequest(BaseModel):
    user_id: int = Field(ge=1)
    punch_type: PunchType
    punch_time: datetime
    notes: str | None = Field(default=None, max_length=500)
    reason: str | None = Field(default=None, max_length=500)


class PunchEditRequest(BaseModel):
    edit_reason: str = Field(min_length=1, max_length=500)
    punch_time: datetime | None = None
    punch_type: PunchType | None = None


class PunchRead(BaseModel):
    id: int
    user_id: int
    punch_type: PunchType
    punch_time: datetime
    source: PunchSource
    edited: bool
    edited_by: int | None = None
    edited_at: datetime | None = None
    edit_reason: str | None = None
    original_punch_time: datetime | None = None
    original_punch_type: PunchType | None = None
    notes: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PunchViewRead(BaseModel):
    id: int | None
    punch_type: PunchType
    time_utc: datetime
    time_local: str
    source: str
    edited: bool
    edit_reason: str | None = None
    notes: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PredictedExitRead(BaseModel):
    time_utc: datetime
    time_local: str
    remaining_minutes: float

    model_config = ConfigDict(from_attributes=True)


class LongBreakAlertRead(BaseModel):
    break_start_utc: datetime
    break_minutes: int
    alert: str

    model_config = ConfigDict(from_attributes=True)


class DashboardAlertsRead(BaseModel):
    has_open_punch: bool
    has_odd_punch_count: bool
    is_non_working_day: bool
    open_session_clamped: bool
    long_break: LongBreakAlertRead | None = None

    model_config = ConfigDict(from_attributes=True)


class BreakPeriodRead(BaseModel):
    start_utc: datetime
    end_utc: datetime
    start_local: str
    end_local: str
    duration_minutes: int
    duration_formatted: str
    category: str
    is_long_break: bool

    model_config = ConfigDict(from_attributes=True)


class BreakSummaryRead(BaseModel):
    breaks: list[BreakPeriodRead]
    total_break_minutes: int
    total_break_formatted: str
    break_count: int

    model_config = ConfigDict(from_attributes=True)


class DailySnapshotRead(BaseModel):
    user_id: int | None
    timezone: str
    local_date: date
    now_utc: datetime
    now_local: str
    status: WorkStatus
    next_punch_type: PunchType
    last_punch: PunchViewRead | None = None
    punches: list[PunchViewRead]
    punch_count: int
    worked_minutes: float
    worked_formatted: str
    raw_worked_minutes: float
    remaining_minutes: float
    remaining_formatted: str
    daily_target_minutes: int
    daily_target_formatted: str
    progress_percent: int
    is_target_met: bool
    session_count: int
    predicted_exit: PredictedExitRead | None = None
    alerts: DashboardAlertsRead
    breaks: BreakSummaryRead

    model_config = ConfigDict(from_attributes=True)


class DayTotalsRead(BaseModel):
    date: date
    day_name: str
    is_working_day: bool
    worked_minutes: float
    worked_formatted: str
    target_minutes: int
    punch_count: int
    is_target_met: bool

    model_config = ConfigDict(from_attributes=True)


class WeeklySummaryRead(BaseModel):
    user_id: int | None
    week_start: date
    week_end: date
    total_worked_minutes: float
    total_worked_formatted: str
    non_working_day_minutes: float
    weekly_target_minutes: int
    weekly_target_formatted: str
    progress_percent: int
    working_days_count: int
    days: list[DayTotalsRead]

    model_config = ConfigDict(from_attributes=True)


class AnomalyRead(BaseModel):
    type: AnomalyType
    severity: Severity
    message: str
    description: str
    punch_ids: list[int] = Field(default_factory=list)
    punch_time: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PunchWarningRead(BaseModel):
    kind: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class PunchSubmitResponse(BaseModel):
    punch: PunchRead
    dashboard: DailySnapshotRead
    warnings: list[PunchWarningRead]
    issues: list[AnomalyRead]


class HistoryEntryRead(BaseModel):
    id: int
    punch_type: PunchType
    time_utc: datetime
    time_local: str
    source: PunchSource
    edited: bool
    edited_by: int | None = None
    edit_reason: str | None = None
    notes: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PunchHistoryResponse(BaseModel):
    punches: list[HistoryEntryRead]
    total: int
    page: int
    limit: int
    pages: int

    model_config = ConfigDict(from_attributes=True)


class OpenPunchRead(BaseModel):
    user_id: int
    user_name: str
    email: str
    punch_id: int | None = None
    punch_in_time: datetime
    hours_since_in: float
    timezone: str

    model_config = ConfigDict(from_attributes=True)


class OrphanedPunchRead(BaseModel):
    punch_id: int
    user_id: int
    user_name: str
    punch_type: PunchType
    punch_time: datetime
    reason: str

    model_config = ConfigDict(from_attributes=True)


class OddPunchCountRead(BaseModel):
    user_id: int
    user_name: str
    email: str
    punch_count: int

    model_config = ConfigDict(from_attributes=True)


class HealthReportRead(BaseModel):
    generated_at: datetime
    open_punch_count: int
    open_punches: list[OpenPunchRead]
    orphaned_punch_count: int
    orphaned_punches: list[OrphanedPunchRead]
    odd_punch_user_count: int
    odd_punch_counts: list[OddPunchCountRead]
    failed_user_ids: list[int]

    model_config = ConfigDict(from_attributes=True)


class JobStatusRead(BaseModel):
    name: str
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_result: dict[str, Any] | None = None
    last_error: str | None = None


class JobRunResponse(BaseModel):
    name: str
    result: dict[str, Any] | None = None
