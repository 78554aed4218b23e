from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys
from typing import Any

from paysync.logging_context import get_dispatch_id, get_request_id

DEFAULT_REDACT_FIELDS = frozenset(
    {
        "authorization",
        "api_key",
        "secret",
        "secret_key",
        "signature",
        "stripe_secret_key",
        "webhook_secret",
    }
)
REDACTED = "[REDACTED]"

_RECORD_ATTRIBUTES = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "color_message"}

# Sync context rendered first on console lines, in this order.
_CONSOLE_CONTEXT = (
    ("dispatch_id", "dispatch"),
    ("run_id", "run"),
    ("object_type", "object"),
    ("message_id", "msg"),
    ("account_id", "acct"),
)
_LEVEL_TAGS = {
    "debug": "DBG",
    "info": "INF",
    "warning": "WRN",
    "error": "ERR",
    "critical": "CRT",
}


def parse_redact_fields(raw: str | None) -> set[str]:
    extra = {field.strip().lower() for field in (raw or "").split(",") if field.strip()}
    return set(DEFAULT_REDACT_FIELDS) | extra


def redact(value: Any, fields: set[str] | frozenset[str], *, key: str | None = None) -> Any:
    if key is not None and key.lower() in fields:
        return REDACTED
    if isinstance(value, dict):
        return {nested_key: redact(nested, fields, key=str(nested_key)) for nested_key, nested in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item, fields, key=key) for item in value]
    return value


def configure_logging(
    *,
    level: str,
    log_format: str,
    redact_fields: set[str],
    include_uvicorn_access: bool = False,
) -> None:
    root_level = _level_number(level)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(root_level)
    handler.addFilter(LogContextFilter())
    formatter_cls = JsonLogFormatter if log_format.strip().lower() == "json" else ConsoleLogFormatter
    handler.setFormatter(formatter_cls(redact_fields=redact_fields))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(root_level)
    root_logger.addHandler(handler)

    quiet_level = max(root_level, logging.WARNING)
    framework_levels = {
        "uvicorn": root_level,
        "uvicorn.error": root_level,
        "uvicorn.access": root_level if include_uvicorn_access else logging.WARNING,
        # Page fetches and queue reads are logged by the engine and dispatcher.
        "httpx": quiet_level,
        "sqlalchemy.engine": quiet_level,
    }
    for logger_name, logger_level in framework_levels.items():
        framework_logger = logging.getLogger(logger_name)
        framework_logger.handlers.clear()
        framework_logger.propagate = True
        framework_logger.setLevel(logger_level)


class LogContextFilter(logging.Filter):
    """Copies the request and dispatch ids from context vars onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attribute, getter in (("request_id", get_request_id), ("dispatch_id", get_dispatch_id)):
            if getattr(record, attribute, None):
                continue
            value = getter()
            if value:
                setattr(record, attribute, value)
        return True


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, redact_fields: set[str]) -> None:
        super().__init__()
        self._redact_fields = frozenset(field.lower() for field in redact_fields)

    def payload(self, record: logging.LogRecord) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": _timestamp(record.created),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": getattr(record, "event", record.getMessage()),
        }
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            payload[key] = redact(value, self._redact_fields, key=key)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return payload

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self.payload(record), ensure_ascii=True, default=str)


class ConsoleLogFormatter(logging.Formatter):
    """One line per record: time, level, event, sync context, then the remaining fields."""

    def __init__(self, *, redact_fields: set[str]) -> None:
        super().__init__()
        self._json = JsonLogFormatter(redact_fields=redact_fields)

    def format(self, record: logging.LogRecord) -> str:
        payload = self._json.payload(record)
        level = str(payload.pop("level", "info"))
        parts = [
            str(payload.pop("timestamp", "")),
            _LEVEL_TAGS.get(level, level[:3].upper()),
            str(payload.pop("event", "")),
        ]
        for key, label in _CONSOLE_CONTEXT:
            value = payload.pop(key, None)
            if value is not None:
                parts.append(f"{label}={value}")

        method = payload.pop("method", None)
        path = payload.pop("path", None)
        if method and path:
            parts.append(f"{method} {path}")
        status_code = payload.pop("status_code", None)
        if status_code is not None:
            parts.append(str(status_code))
        duration_ms = payload.pop("duration_ms", None)
        if duration_ms is not None:
            parts.append(f"{duration_ms}ms")

        logger_name = payload.pop("logger", None)
        exception = payload.pop("exception", None)
        parts.extend(f"{key}={payload[key]}" for key in sorted(payload))
        if logger_name:
            parts.append(f"[{logger_name}]")
        line = " ".join(part for part in parts if part)
        if exception:
            line = f"{line}\n{exception}"
        return line


def _level_number(level: str) -> int:
    return logging.getLevelNamesMapping().get(level.strip().upper(), logging.INFO)


def _timestamp(created_ts: float) -> str:
    return datetime.fromtimestamp(created_ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")
