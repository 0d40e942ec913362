from __future__ import annotations

import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tripgate.api.schemas import Envelope, ErrorBody
from tripgate.config import get_settings
from tripgate.logging import get_logger
from tripgate.service.errors import ServiceError
from tripgate.storage.errors import (
    DuplicateKeyError,
    RecordNotFoundError,
    StorageError,
)

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    429: "rate_limited",
    500: "internal_error",
    502: "auth_provider_error",
}

_VALUE_ERROR_PREFIX = "Value error, "


def _error_code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return _STATUS_TO_CODE.get(status_code, "internal_error")
    return _STATUS_TO_CODE.get(status_code, "validation_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    *,
    stack: list[str] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details,
        stack=stack,
    )
    envelope = Envelope(success=False, error=error_body)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


def _field_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        message = str(err.get("msg", "Invalid value"))
        if message.startswith(_VALUE_ERROR_PREFIX):
            message = message[len(_VALUE_ERROR_PREFIX):]
        errors.append({"field": ".".join(loc) or "body", "message": message})
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the ``{success: false, error: {...}}`` envelope."""

    @app.exception_handler(DuplicateKeyError)
    async def handle_duplicate_key(request: Request, exc: DuplicateKeyError):
        logger.warning(
            "duplicate_key",
            path=request.url.path,
            method=request.method,
            field=exc.field,
        )
        return _error_response(400, exc.message, code="duplicate_key")

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        if isinstance(exc, RecordNotFoundError):
            logger.warning("record_not_found", path=request.url.path, message=exc.message)
            return _error_response(404, "User not found", code="not_found")
        logger.error(
            "storage_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        return _error_response(500, "Service temporarily unavailable", code="internal_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(
            exc.status_code,
            exc.message,
            exc.detail,
            code=exc.error_code,
            headers=exc.headers or None,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _field_errors(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        message = details[0]["message"] if details else "Invalid request"
        return _error_response(400, message, details, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        headers = getattr(exc, "headers", None)
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            code = error_obj.get("code")
            message = error_obj.get("message", "Request failed")
            details = error_obj.get("details")
        elif exc.status_code == 404:
            code, message, details = "not_found", "Route not found", None
        else:
            code = _error_code_for_status(exc.status_code)
            message = str(exc.detail) if exc.detail else "Request failed"
            details = None
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=code,
        )
        return _error_response(exc.status_code, message, details, code=code, headers=headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        stack = None
        if not get_settings().is_production:
            stack = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return _error_response(500, "Internal server error", code="internal_error", stack=stack)
