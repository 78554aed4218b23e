from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import (
    http_exception_handler as fastapi_http_exception_handler,
)
from fastapi.exception_handlers import (
    request_validation_exception_handler as fastapi_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError

from paysync.api.responses import error_response
from paysync.services.stripe.errors import StripeApiError, StripePermissionError, StripeRateLimitError
from paysync.services.sync.errors import SyncFailure, UnknownObjectTypeError, UpstreamProtocolViolation


def _is_api_path(path: str) -> bool:
    return path.startswith("/api/")


def _status_code_to_error_code(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        409: "conflict",
        422: "validation_error",
        429: "rate_limited",
        500: "internal_error",
        502: "upstream_error",
    }
    return mapping.get(status_code, "error")


class ApiException(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


def register_api_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiException)
    async def _handle_api_exception(request: Request, exc: ApiException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )

    @app.exception_handler(UnknownObjectTypeError)
    async def _handle_unknown_object_type(request: Request, exc: UnknownObjectTypeError):
        return error_response(
            request,
            status_code=404,
            code="unknown_object_type",
            message=str(exc),
            details={"object_type": exc.object_type},
        )

    @app.exception_handler(SyncFailure)
    async def _handle_sync_failure(request: Request, exc: SyncFailure):
        code = "upstream_protocol_violation" if isinstance(exc, UpstreamProtocolViolation) else "sync_failed"
        return error_response(
            request,
            status_code=502,
            code=code,
            message=exc.message,
            details={"object_type": exc.object_type, "run_id": exc.run_id},
        )

    @app.exception_handler(StripeApiError)
    async def _handle_stripe_error(request: Request, exc: StripeApiError):
        status_code = 502
        if isinstance(exc, StripeRateLimitError):
            status_code = 429
        elif isinstance(exc, StripePermissionError):
            status_code = 403
        return error_response(
            request,
            status_code=status_code,
            code="upstream_error",
            message=str(exc),
            details={"status_code": exc.status_code, "code": exc.code},
        )

    @app.exception_handler(HTTPException)
    async def _handle_http_exception(request: Request, exc: HTTPException):
        if not _is_api_path(request.url.path):
            return await fastapi_http_exception_handler(request, exc)
        return error_response(
            request,
            status_code=exc.status_code,
            code=_status_code_to_error_code(exc.status_code),
            message=str(exc.detail) if exc.detail is not None else "Request failed.",
            details=exc.detail if isinstance(exc.detail, (dict, list)) else None,
        )

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_exception(request: Request, exc: RequestValidationError):
        if not _is_api_path(request.url.path):
            return await fastapi_validation_exception_handler(request, exc)
        return error_response(
            request,
            status_code=422,
            code="validation_error",
            message="Request validation failed.",
            details=exc.errors(),
        )
