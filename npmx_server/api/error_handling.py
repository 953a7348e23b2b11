from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from npmx_server.api.schemas import Envelope, ErrorBody
from npmx_server.logging import get_logger
from npmx_server.service.errors import ServiceError
from npmx_server.storage.errors import StorageError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    500: "server_error",
    502: "upstream_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    envelope = Envelope(
        status="error", error=ErrorBody(code=error_code, message=message, details=details)
    )
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _with_pending_cookies(request: Request, response: JSONResponse) -> JSONResponse:
    jar = getattr(request.state, "cookie_jar", None)
    if jar is not None:
        jar.apply(response)
    return response


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error envelope for service, storage and HTTP errors."""

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
        response = _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )
        return _with_pending_cookies(request, response)

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        logger.error(
            "storage_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            message=exc.message,
            retryable=exc.retryable,
        )
        headers = {"Retry-After": "1"} if exc.retryable else None
        response = _error_response(
            503, "storage unavailable", code="service_unavailable", headers=headers
        )
        return _with_pending_cookies(request, response)

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
        return _with_pending_cookies(request, _error_response(exc.status_code, message, details))

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
        return _error_response(500, "internal server error", code="server_error")
