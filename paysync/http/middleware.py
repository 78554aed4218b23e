from __future__ import annotations

import logging
import re
from secrets import token_urlsafe
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from paysync.logging_context import set_request_id
from paysync.logging_utils import structured_log

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

logger = logging.getLogger(__name__)


def resolve_request_id(raw_value: str | None) -> str:
    """Reuse a caller-supplied id when it is a safe token, otherwise mint one."""
    candidate = (raw_value or "").strip()
    if _REQUEST_ID_RE.fullmatch(candidate):
        return candidate
    return token_urlsafe(12)


def parse_skip_paths(raw_value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw_value.split(",") if part.strip())


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Stamps every request with an id and logs one line per completed request.

    Sync triggers and webhook deliveries share this path, so 5xx responses
    log at warning to stand out from routine queue ticks.
    """

    def __init__(self, app, *, log_requests: bool = True, skip_paths: tuple[str, ...] = ()) -> None:
        super().__init__(app)
        self._log_requests = log_requests
        self._skip_paths = tuple(path for path in skip_paths if path)

    def _should_log(self, path: str) -> bool:
        if not self._log_requests:
            return False
        return not (self._skip_paths and path.startswith(self._skip_paths))

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        set_request_id(request_id)
        path = request.url.path
        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "request.failed",
                    extra={"method": request.method, "path": path, "duration_ms": _elapsed_ms(started)},
                )
                raise
            response.headers[REQUEST_ID_HEADER] = request_id
            if self._should_log(path):
                structured_log(
                    logger,
                    "warning" if response.status_code >= 500 else "info",
                    "request.completed",
                    method=request.method,
                    path=path,
                    status_code=response.status_code,
                    duration_ms=_elapsed_ms(started),
                )
            return response
        finally:
            set_request_id(None)
