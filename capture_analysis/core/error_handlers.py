"""
FastAPI exception handlers.

Every error leaves the API as ``{"error": {code, message, user_message, details}}``.
Only validation and business-rule errors echo their internal message and
details; everything else is answered with the exception's user message.
"""

from http import HTTPStatus
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .exceptions import ErrorCategory, ErrorSeverity, PipelineException
from .logging_config import get_logger

logger = get_logger(__name__)

CATEGORY_STATUS = {
    ErrorCategory.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.BUSINESS_LOGIC: status.HTTP_409_CONFLICT,
    ErrorCategory.EXTERNAL_SERVICE: status.HTTP_502_BAD_GATEWAY,
    ErrorCategory.RESOURCE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCategory.QUEUE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.RATE_LIMIT: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCategory.CONFIGURATION: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.SYSTEM: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

PUBLIC_CATEGORIES = (ErrorCategory.VALIDATION, ErrorCategory.BUSINESS_LOGIC)

_SEVERITY_LEVEL = {
    ErrorSeverity.LOW: "info",
    ErrorSeverity.MEDIUM: "warning",
    ErrorSeverity.HIGH: "error",
    ErrorSeverity.CRITICAL: "critical",
}


def error_response(
    status_code: int,
    code: str,
    message: str,
    user_message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    retry_after: Optional[int] = None
) -> JSONResponse:
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code,
                "message": message,
                "user_message": user_message or message,
                "details": details or {},
            }
        },
        headers=headers
    )


def _log_request_error(request: Request, exc: Exception, severity: ErrorSeverity, code: str) -> None:
    log = getattr(logger, _SEVERITY_LEVEL[severity])
    log(
        f"{request.method} {request.url.path} failed with {code}",
        error_code=code,
        exception_type=type(exc).__name__,
        error_message=str(exc),
        client_ip=request.client.host if request.client else "unknown"
    )


def status_for(exc: PipelineException) -> int:
    if exc.error_code == "RESOURCE_NOT_FOUND":
        return status.HTTP_404_NOT_FOUND
    return CATEGORY_STATUS.get(exc.category, status.HTTP_500_INTERNAL_SERVER_ERROR)


async def pipeline_exception_handler(request: Request, exc: PipelineException) -> JSONResponse:
    _log_request_error(request, exc, exc.severity, exc.error_code)

    public = exc.category in PUBLIC_CATEGORIES
    return error_response(
        status_for(exc),
        exc.error_code,
        exc.message if public else exc.user_message,
        user_message=exc.user_message,
        details=exc.details if public else None,
        retry_after=exc.retry_after
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    _log_request_error(request, exc, ErrorSeverity.LOW, "VALIDATION_ERROR")

    problems = [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "Request validation failed",
        user_message="Please check the request parameters.",
        details={"validation_errors": problems}
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    try:
        code = HTTPStatus(exc.status_code).name
    except ValueError:
        code = "HTTP_ERROR"

    severity = ErrorSeverity.HIGH if exc.status_code >= 500 else ErrorSeverity.LOW
    _log_request_error(request, exc, severity, code)
    return error_response(exc.status_code, code, str(exc.detail))


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    _log_request_error(request, exc, ErrorSeverity.HIGH, "DATABASE_ERROR")
    return error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "DATABASE_ERROR",
        "Database operation failed",
        user_message="The capture store is unavailable. Please try again later."
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    _log_request_error(request, exc, ErrorSeverity.CRITICAL, "UNEXPECTED_ERROR")
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "UNEXPECTED_ERROR",
        "Unexpected error",
        user_message="An unexpected error occurred. Please try again later."
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PipelineException, pipeline_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
