from __future__ import annotations

from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from rbac_admin.api.schemas import ErrorEnvelope, FieldError
from rbac_admin.config import Settings, get_settings
from rbac_admin.logging import get_logger, sanitize_error_message
from rbac_admin.service.errors import ServiceError, ValidationError
from rbac_admin.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_LOCATION_PREFIXES = {"body", "query", "path", "header"}


def _error_response(
    status_code: int,
    message: str,
    errors: Optional[Any] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(message=message, status_code=status_code, errors=errors or None)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(by_alias=True, mode="json", exclude_none=True),
        headers=headers,
    )


def _field_errors(raw: List[dict]) -> List[dict]:
    items = []
    for error in raw:
        loc = [str(part) for part in error.get("loc", ()) if part not in _LOCATION_PREFIXES]
        field = ".".join(loc) or "body"
        items.append(
            FieldError(field=field, message=error.get("msg", "Invalid value")).model_dump()
        )
    return items


def _settings_for(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings or get_settings()


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as ``{status: "error", message, statusCode, ...}``."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc.errors())
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[e["field"] for e in errors],
        )
        return _error_response(422, "Validation failed", errors)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message)

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
            detail=exc.detail,
        )
        errors = exc.errors if isinstance(exc, ValidationError) else exc.detail
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return _error_response(exc.status_code, exc.message, errors, headers=headers)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        if _settings_for(request).is_production:
            message = "Internal server error"
        else:
            message = sanitize_error_message(str(exc)) or "Internal server error"
        return _error_response(500, message)
