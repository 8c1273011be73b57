from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ValidationError(ApiError):
    """User-correctable input problem. Never retried automatically."""

    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR", errors: list[str] | None = None):
        super().__init__(status_code=422, code=code, message=message)
        self.errors = list(errors or [message])


class DoublePunchError(ValidationError):
    def __init__(self, message: str, *, retry_after_seconds: int):
        super().__init__(message, code="DOUBLE_PUNCH")
        self.status_code = 409
        self.retry_after_seconds = retry_after_seconds


class ConfigurationError(ApiError):
    def __init__(self, message: str, *, code: str = "CONFIGURATION_ERROR"):
        super().__init__(status_code=500, code=code, message=message)


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND"):
        super().__init__(status_code=404, code=code, message=message)


class AuthorizationError(ApiError):
    def __init__(self, message: str, *, code: str = "FORBIDDEN"):
        super().__init__(status_code=403, code=code, message=message)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
