from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from adminauth.api.schemas import Envelope, ErrorBody
from adminauth.logging import get_logger
from adminauth.service.errors import ServiceError

logger = get_logger(__name__)

# fallback codes for errors raised outside the ServiceError hierarchy
_CODE_BY_STATUS = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    423: "account_locked",
    503: "store_unavailable",
}


def error_envelope(
    status_code: int, message: str, details: Any = None, code: str | None = None
) -> JSONResponse:
    """Render a failure as the shared response envelope."""
    body = Envelope(
        success=False,
        message=message,
        error=ErrorBody(
            code=code or _CODE_BY_STATUS.get(status_code, "server_error"),
            message=message,
            details=details or None,
        ),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def _on_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    emit = logger.error if exc.status_code >= 500 else logger.warning
    emit(
        "auth_request_failed",
        path=request.url.path,
        status_code=exc.status_code,
        error_code=exc.error_code,
    )
    return error_envelope(exc.status_code, exc.message, exc.detail, exc.error_code)


async def _on_invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
        for err in exc.errors()
    ]
    logger.info("request_rejected", path=request.url.path, problems=len(problems))
    return error_envelope(400, "invalid request", problems, "validation_error")


async def _on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, str):
        message, details = exc.detail, None
    else:
        message, details = "request failed", exc.detail
    return error_envelope(exc.status_code, message, details)


async def _on_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        error_type=type(exc).__name__,
    )
    return error_envelope(500, "internal server error", code="server_error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _on_service_error)
    app.add_exception_handler(RequestValidationError, _on_invalid_request)
    app.add_exception_handler(StarletteHTTPException, _on_http_error)
    app.add_exception_handler(Exception, _on_unhandled)
