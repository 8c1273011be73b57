import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from punchclock.dependencies import get_container
from punchclock.errors import ApiError, DoublePunchError, error_response
from punchclock.logging_utils import setup_json_logging
from punchclock.routers import admin, dashboard, punches
from punchclock.settings import get_settings

setup_json_logging()
logger = logging.getLogger("punchclock.request")
scheduler_logger = logging.getLogger("punchclock.scheduler")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "anonymous")
    request.state.actor_id = getattr(request.state, "actor_id", None)

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
                "punch_id": getattr(request.state, "punch_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    response = error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )
    if isinstance(exc, DoublePunchError):
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    return response


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    code_map = {
        401: "UNAUTHENTICATED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    return error_response(
        request,
        status_code=exc.status_code,
        code=code_map.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail) if exc.detail else "Request failed.",
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(punches.router)
app.include_router(dashboard.router)
app.include_router(admin.router)


def _resolve_container():
    provider = app.dependency_overrides.get(get_container, get_container)
    return provider()


@app.on_event("startup")
async def start_scheduler() -> None:
    if not settings.scheduler_enabled:
        return
    scheduler = _resolve_container().scheduler
    if scheduler.running:
        return
    scheduler.start()
    app.state.scheduler = scheduler


@app.on_event("shutdown")
async def stop_scheduler() -> None:
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is None:
        return
    await scheduler.stop()
    app.state.scheduler = None
    scheduler_logger.info("scheduler_shutdown_complete")


@app.get("/health")
def health() -> dict[str, Any]:
    container = _resolve_container()
    notifier_status = getattr(container.notifier, "config_status", None)
    return {
        "status": "ok",
        "scheduler_running": container.scheduler.running,
        "jobs": container.scheduler.job_status(),
        "notification_channels": {"email": notifier_status() if callable(notifier_status) else None},
    }
