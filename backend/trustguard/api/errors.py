"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from trustguard.api.request_id import get_request_id
from trustguard.infra.rate_limit import RateLimitExceeded
from trustguard.trust.domain.exceptions import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    RecomputeCooldownError,
    TrustError,
)

logger = logging.getLogger(__name__)


def _error(request: Request, status_code: int, detail: object, **extra: object) -> JSONResponse:
    payload = {"detail": detail, "request_id": get_request_id(request)}
    payload.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        response = _error(request, exc.status_code, exc.detail)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        return _error(request, 422, "validation_error", errors=exc.errors())

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):  # type: ignore[override]
        response = _error(request, 429, "rate_limited", scope=exc.scope)
        response.headers["Retry-After"] = str(exc.retry_after)
        return response

    @app.exception_handler(TrustError)
    async def trust_error_handler(request: Request, exc: TrustError):  # type: ignore[override]
        if isinstance(exc, NotFoundError):
            return _error(request, 404, exc.code)
        if isinstance(exc, InvalidInputError):
            return _error(request, 400, exc.code)
        if isinstance(exc, ConflictError):
            return _error(request, 409, exc.code)
        if isinstance(exc, RecomputeCooldownError):
            response = _error(request, 429, exc.code)
            response.headers["Retry-After"] = str(exc.retry_after)
            return response
        logger.error("trust_subsystem_error", extra={"code": exc.code}, exc_info=exc)
        return _error(request, 500, exc.code)
