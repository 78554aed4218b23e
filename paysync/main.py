from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException

from paysync.api.errors import register_api_exception_handlers
from paysync.api.router import router as api_router
from paysync.db.session import check_database, close_engine
from paysync.http.middleware import RequestLoggingMiddleware, parse_skip_paths
from paysync.logging_config import configure_logging, parse_redact_fields
from paysync.services.runtime import get_runtime
from paysync.settings import parse_csv, settings

logger = logging.getLogger(__name__)

configure_logging(
    level=settings.log_level,
    log_format=settings.log_format,
    redact_fields=parse_redact_fields(settings.log_redact_fields),
    include_uvicorn_access=settings.log_uvicorn_access,
)


def _log_startup() -> None:
    logger.info(
        "app.startup",
        extra={
            "event": "app.startup",
            "scheduler_enabled": settings.scheduler_enabled,
            "queue": settings.sync_queue_name,
            "triggered_by": settings.sync_trigger_channel,
            "disabled_object_types": sorted(parse_csv(settings.sync_disabled_object_types)),
            "log_format": settings.log_format,
        },
    )


@asynccontextmanager
async def lifespan(_: FastAPI):
    _log_startup()
    scheduler = get_runtime().scheduler
    await scheduler.start()
    yield
    await scheduler.stop()
    await close_engine()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
register_api_exception_handlers(app)
app.add_middleware(
    RequestLoggingMiddleware,
    log_requests=settings.log_requests,
    skip_paths=parse_skip_paths(settings.log_request_skip_paths),
)
app.include_router(api_router)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    if await check_database():
        return {"status": "ok"}
    raise HTTPException(status_code=500, detail="database unavailable")
