from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends

from punchclock.dependencies import ServiceContainer, get_container, require_admin
from punchclock.errors import NotFoundError
from punchclock.schemas import HealthReportRead, JobRunResponse, JobStatusRead

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/health-report", response_model=HealthReportRead)
def get_health_report(
    _admin: Any = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> HealthReportRead:
    users = container.store.list_active_users()
    report = container.punches.detector.build_health_report(users)
    return HealthReportRead.model_validate(report)


@router.get("/jobs", response_model=list[JobStatusRead])
def list_jobs(
    _admin: Any = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> list[JobStatusRead]:
    return [JobStatusRead.model_validate(item) for item in container.scheduler.job_status()]


@router.post("/jobs/{job_name}/run", response_model=JobRunResponse)
def run_job(
    job_name: str,
    _admin: Any = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> JobRunResponse:
    if job_name not in container.scheduler.jobs:
        raise NotFoundError("Job not found.", code="JOB_NOT_FOUND")
    result = container.scheduler.run_job(job_name)
    return JobRunResponse(name=job_name, result=asdict(result) if result is not None else None)
