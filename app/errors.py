"""Error envelope for every non-2xx response.

    {
        "code": "payment_already_confirmed",
        "message": "Payment has already been confirmed",
        "details": null,
        "status_code": 409,
        "request_id": "..."
    }

``BillingError`` subclasses carry their code on the instance. Plain
``HTTPException`` details are accepted as a dict, a string or anything else
(which lands in ``details``).
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.services.billing.errors import BillingError

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _respond(
    request: Request, status_code: int, code: str, message: str, details: Any = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "details": details,
            "status_code": status_code,
            "request_id": _request_id(request),
        },
    )


def _describe(exc: HTTPException) -> tuple[str, str, Any]:
    if isinstance(exc, BillingError):
        return exc.code, exc.message, exc.details
    detail = exc.detail
    if isinstance(detail, dict):
        return (
            detail.get("code", f"http_{exc.status_code}"),
            detail.get("message", "Request failed"),
            detail.get("details"),
        )
    if isinstance(detail, str):
        return f"http_{exc.status_code}", detail, None
    return f"http_{exc.status_code}", "Request failed", detail


def register_error_handlers(app: object) -> None:
    @app.exception_handler(HTTPException)  # type: ignore[arg-type]
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        code, message, details = _describe(exc)
        if exc.status_code >= 500:
            logger.error(
                "Upstream failure on %s %s: %s",
                request.method,
                request.url.path,
                code,
                extra={"request_id": _request_id(request)},
            )
        return _respond(request, exc.status_code, code, message, details)

    @app.exception_handler(RequestValidationError)  # type: ignore[arg-type]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = jsonable_encoder(exc.errors())
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            errors,
            extra={"request_id": _request_id(request)},
        )
        return _respond(request, 422, "validation_error", "Validation error", errors)

    @app.exception_handler(Exception)  # type: ignore[arg-type]
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return _respond(request, 500, "internal_error", "Internal server error")
