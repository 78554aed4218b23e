"""Structured logging helpers shared by the sync services."""

from __future__ import annotations

import logging
from typing import Any

ERROR_DETAIL_MAX_LENGTH = 2000


def structured_log(
    logger: logging.Logger,
    level: str,
    event: str,
    /,
    **fields: Any,
) -> None:
    """Emit a structured log entry.

    The event name becomes the log message; the JSON formatter picks it up via
    record.getMessage(), and every keyword lands as an extra field.

    Usage:
        structured_log(logger, "info", "sync.object_completed", run_id=4, object_type="customers")
    """
    log_method = getattr(logger, level.lower())
    log_method(event, extra=fields)


def exception_detail(exc: BaseException) -> str:
    """Render an exception as a bounded `Type: message` string for persistence."""
    message = str(exc).strip()
    detail = f"{type(exc).__name__}: {message}" if message else type(exc).__name__
    if len(detail) > ERROR_DETAIL_MAX_LENGTH:
        return detail[: ERROR_DETAIL_MAX_LENGTH - 3] + "..."
    return detail
