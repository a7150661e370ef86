from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from usergate.api.schemas import Envelope, ErrorBody
from usergate.logging import get_correlation_id, get_logger, sanitize_error_message
from usergate.service.errors import ErrorKind, ServiceError
from usergate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

GENERIC_SERVER_ERROR = "internal server error"

_STATUS_TO_CODE = {
    400: ErrorKind.VALIDATION.value,
    401: ErrorKind.UNAUTHORIZED.value,
    404: ErrorKind.NOT_FOUND.value,
    409: ErrorKind.CONFLICT.value,
    422: ErrorKind.VALIDATION.value,
    500: ErrorKind.INTERNAL.value,
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return ErrorKind.VALIDATION.value if status_code < 500 else ErrorKind.INTERNAL.value


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build the error envelope; 5xx never expose internal messages or details."""
    error_code = code or _error_code_for_status(status_code)
    if status_code >= 500:
        message, details = GENERIC_SERVER_ERROR, None
    else:
        message = sanitize_error_message(message)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(
        status_code=status_code, content=jsonable_encoder(envelope.model_dump())
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        """Fallback for a store constraint that reaches a route unclassified.

        AuthService maps the violations it expects; this keeps any other
        caller of a store from answering with a bare 500.
        """
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code=ErrorKind.CONFLICT.value)

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
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "msg": error.get("msg", ""),
                "type": error.get("type", ""),
            }
            for error in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        message = errors[0]["msg"] if errors else "invalid request"
        return _error_response(422, message, errors, code=ErrorKind.VALIDATION.value)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details)

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
        return _error_response(500, GENERIC_SERVER_ERROR, code=ErrorKind.INTERNAL.value)
