from dataclasses import asdict
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status

from punchclock.dependencies import ServiceContainer, get_container, get_current_user
from punchclock.schemas import (
    AnomalyRead,
    DailySnapshotRead,
    ManualPunchCreateRequest,
    PunchEditRequest,
    PunchHistoryResponse,
    PunchRead,
    PunchSubmitRequest,
    PunchSubmitResponse,
    PunchWarningRead,
)
from punchclock.services.punch_validator import PunchWarning

router = APIRouter(prefix="/api/punches", tags=["punches"])


def _warning_read(warning: PunchWarning) -> PunchWarningRead:
    details = asdict(warning)
    details.pop("kind", None)
    if hasattr(warning, "severity"):
        details["severity"] = warning.severity
    return PunchWarningRead(kind=warning.kind.value, message=warning.message, details=details)


@router.post("", response_model=PunchSubmitResponse, status_code=status.HTTP_201_CREATED)
def submit_punch(
    payload: PunchSubmitRequest,
    request: Request,
    user: Any = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> PunchSubmitResponse:
    outcome = container.punches.submit_punch(
        user,
        punch_type=payload.punch_type,
        source=payload.source,
        notes=payload.notes,
    )
    request.state.punch_id = outcome.punch.id
    return PunchSubmitResponse(
        punch=PunchRead.model_validate(outcome.punch),
        dashboard=DailySnapshotRead.model_validate(outcome.snapshot),
        warnings=[_warning_read(item) for item in outcome.warnings],
        issues=[AnomalyRead.model_validate(item) for item in outcome.issues],
    )


@router.post("/manual", response_model=PunchRead, status_code=status.HTTP_201_CREATED)
def create_manual_punch(
    payload: ManualPunchCreateRequest,
    user: Any = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> PunchRead:
    punch = container.punches.create_manual_punch(
        payload.user_id,
        punch_type=payload.punch_type,
        punch_time=payload.punch_time,
        performed_by=user,
        notes=payload.notes,
        reason=payload.reason,
    )
    return PunchRead.model_validate(punch)


@router.get("/history", response_model=PunchHistoryResponse)
def get_punch_history(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    user: Any = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> PunchHistoryResponse:
    history = container.punches.get_punch_history(
        user,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return PunchHistoryResponse.model_validate(history)


@router.patch("/{punch_id}", response_model=PunchRead)
def edit_punch(
    punch_id: int,
    payload: PunchEditRequest,
    user: Any = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> PunchRead:
    punch = container.punches.edit_punch(
        punch_id,
        performed_by=user,
        edit_reason=payload.edit_reason,
        punch_time=payload.punch_time,
        punch_type=payload.punch_type,
    )
    return PunchRead.model_validate(punch)


@router.delete("/{punch_id}")
def delete_punch(
    punch_id: int,
    reason: str = Query(min_length=1, max_length=500),
    user: Any = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    container.punches.delete_punch(punch_id, performed_by=user, reason=reason)
    return {"ok": True, "punch_id": punch_id}
