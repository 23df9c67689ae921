"""Centralized exception handlers rendering domain errors uniformly."""

import logging
from collections.abc import Iterable
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gymaccess.errors import (
    GymAccessError,
    PersistenceError,
    RateLimitExceededError,
)

logger = logging.getLogger(__name__)


def _flatten_detail(detail: Any) -> str:
    """Convert arbitrary exception detail payloads into a string message."""
    if isinstance(detail, str):
        return detail
    if isinstance(detail, dict):
        return "; ".join(f"{key}: {value}" for key, value in detail.items())
    if isinstance(detail, Iterable) and not isinstance(detail, (bytes, bytearray)):
        return "; ".join(_flatten_detail(item) for item in detail)
    if detail is None:
        return "An error occurred"
    return str(detail)


def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers that return {"error", "message", ...} payloads."""

    @app.exception_handler(GymAccessError)
    async def domain_error_handler(request: Request, exc: GymAccessError) -> JSONResponse:
        if isinstance(exc, PersistenceError):
            logger.error("Request failed with store error", extra={
                "path": request.url.path,
                "correlation_id": exc.correlation_id,
            })
        else:
            logger.info("Request rejected", extra={
                "path": request.url.path,
                "error": exc.kind.value,
            })

        response = JSONResponse(status_code=exc.http_status, content=exc.to_dict())
        if isinstance(exc, RateLimitExceededError):
            response.headers["Retry-After"] = str(exc.retry_after_seconds)
        return response

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        response = JSONResponse(
            status_code=exc.status_code,
            content={"error": "http_error", "message": _flatten_detail(exc.detail)},
        )
        if exc.headers:
            for key, value in exc.headers.items():
                response.headers[key] = value
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        messages = []
        for error in exc.errors():
            location = [str(loc) for loc in error.get("loc", []) if loc != "body"]
            message = error.get("msg", "Invalid input")
            if location:
                messages.append(f"{'.'.join(location)}: {message}")
            else:
                messages.append(message)

        detail = "; ".join(messages) if messages else "Invalid request"
        return JSONResponse(
            status_code=422,
            content={"error": "validation_error", "message": detail},
        )


__all__ = ["register_exception_handlers"]
