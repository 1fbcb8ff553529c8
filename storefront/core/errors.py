# storefront/core/errors.py
"""
Uniform error responses and request correlation.

Every error leaves the API as `{"error": <message>, "code": <CODE>, "cid": <id>}`.
The correlation id comes from `x-request-id` (or is generated), is echoed
back as `x-correlation-id` and is attached to every log record emitted
while the request is being handled.
"""
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("storefront.access")

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="-")

STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "UNPROCESSABLE_ENTITY",
    429: "TOO_MANY_REQUESTS",
    500: "INTERNAL",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}

SECRET_MARKERS = ("secret", "password", "token", "api_key", "apikey", "authorization", "key")


def mask_secrets(data: Any) -> Any:
    """Copy of `data` with secret-looking values replaced, for logging."""
    if isinstance(data, dict):
        return {
            k: "***" if any(m in str(k).lower() for m in SECRET_MARKERS) and v else mask_secrets(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [mask_secrets(v) for v in data]
    return data


class CorrelationIdFilter(logging.Filter):
    """Adds `cid` to every record so formats can reference %(cid)s."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cid = correlation_id.get()
        return True


def error_response(status_code: int, message: str, code: str | None = None) -> JSONResponse:
    cid = correlation_id.get()
    return JSONResponse(
        status_code=status_code,
        content={
            "error": message,
            "code": code or STATUS_CODES.get(status_code, "ERROR"),
            "cid": cid,
        },
        headers={"x-correlation-id": cid},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, detail)
    response = error_response(exc.status_code, detail)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
        message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))
    else:
        message = "Invalid request"
    return error_response(status.HTTP_400_BAD_REQUEST, message, "VALIDATION_ERROR")


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity error on %s: %s", request.url.path, exc.orig)
    return error_response(status.HTTP_409_CONFLICT, "Duplicate or conflicting record", "DUPLICATE")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


async def correlation_middleware(request: Request, call_next):
    cid = request.headers.get("x-request-id") or str(uuid.uuid4())
    token = correlation_id.set(cid)
    started = time.perf_counter()
    try:
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["x-correlation-id"] = cid
        access_logger.info(
            "%s %s %s %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response
    finally:
        correlation_id.reset(token)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.middleware("http")(correlation_middleware)
