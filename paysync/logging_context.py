from __future__ import annotations

from contextvars import ContextVar

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
_dispatch_id_ctx: ContextVar[str | None] = ContextVar("dispatch_id", default=None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def set_request_id(value: str | None) -> None:
    _request_id_ctx.set(value)


def get_dispatch_id() -> str | None:
    return _dispatch_id_ctx.get()


def set_dispatch_id(value: str | None) -> None:
    _dispatch_id_ctx.set(value)
