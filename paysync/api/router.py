from __future__ import annotations

from fastapi import APIRouter

from paysync.api.routers import sync_runs, webhooks

router = APIRouter(prefix="/api/v1")
router.include_router(sync_runs.router)
router.include_router(webhooks.router)
