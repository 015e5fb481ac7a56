from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for errors raised by the lending services.

    Each subclass maps to one HTTP status; routers never translate these by hand,
    the registered exception handler renders them into the response envelope.
    """

    status_code: int = 400
    default_code: str = "bad_request"

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(DomainError):
    status_code = 400
    default_code = "validation_error"


class AuthorizationError(DomainError):
    status_code = 403
    default_code = "forbidden"


class NotFoundError(DomainError):
    status_code = 404
    default_code = "not_found"


class ConflictError(DomainError):
    status_code = 409
    default_code = "conflict"


class CapacityError(DomainError):
    status_code = 422
    default_code = "cap_exceeded"


class UpstreamGatewayError(DomainError):
    """Gateway failure. Contained by the disbursement orchestrator."""

    status_code = 502
    default_code = "gateway_error"


class ReconciliationSkip(DomainError):
    """Incoming transaction that cannot be attributed; left unprocessed."""

    status_code = 422
    default_code = "reconciliation_skip"


STATUS_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "unprocessable_entity",
    429: "rate_limited",
}


def _phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def _as_details(raw: Any) -> dict:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, list):
        return {"errors": raw}
    return {"detail": str(raw)}


def error_response(
    status_code: int,
    message: str,
    *,
    code: str | None = None,
    details: Any = None,
    headers: dict | None = None,
) -> JSONResponse:
    body = {
        "code": code or STATUS_CODES.get(status_code, "http_error"),
        "message": message,
        "data": None,
        "details": _as_details(details),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


def _first_error_message(errors: list[dict]) -> str:
    if not errors:
        return "Validation failed"
    first = errors[0]
    # "body.amount: ..." reads worse than "amount: ..."
    path = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    msg = first.get("msg") or "Validation failed"
    return f"{path}: {msg}" if path else str(msg)


async def domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Domain error %s on %s: %s", exc.code, request.url.path, exc.message)
    return error_response(exc.status_code, exc.message, code=exc.code, details=exc.details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        return error_response(
            exc.status_code,
            detail.get("message") or _phrase(exc.status_code),
            code=detail.get("code"),
            details=detail.get("details"),
            headers=exc.headers,
        )
    message = detail if isinstance(detail, str) else _phrase(exc.status_code)
    return error_response(exc.status_code, message, details=detail, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    return error_response(
        422, _first_error_message(errors), code="validation_error", details={"errors": errors}
    )


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit hit on %s: %s", request.url.path, exc.detail)
    return error_response(429, _phrase(429), details={"limit": exc.detail})


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return error_response(500, "Internal server error", code="internal_server_error")


def register_exception_handlers(app) -> None:
    handlers = {
        DomainError: domain_exception_handler,
        StarletteHTTPException: http_exception_handler,
        RequestValidationError: validation_exception_handler,
        RateLimitExceeded: rate_limit_exception_handler,
        Exception: unhandled_exception_handler,
    }
    for exc_class, handler in handlers.items():
        app.add_exception_handler(exc_class, handler)
