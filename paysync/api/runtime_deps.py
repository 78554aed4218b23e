from __future__ import annotations

from fastapi import Depends

from paysync.services.runtime import SyncRuntime, get_runtime
from paysync.services.sync.dispatcher import QueueDispatcher
from paysync.services.sync.engine import SyncEngine
from paysync.services.webhooks.endpoints import ManagedWebhookService
from paysync.services.webhooks.processor import WebhookProcessor


def get_sync_runtime() -> SyncRuntime:
    return get_runtime()


def get_sync_engine(runtime: SyncRuntime = Depends(get_sync_runtime)) -> SyncEngine:
    return runtime.engine


def get_queue_dispatcher(runtime: SyncRuntime = Depends(get_sync_runtime)) -> QueueDispatcher:
    return runtime.dispatcher


def get_webhook_processor(runtime: SyncRuntime = Depends(get_sync_runtime)) -> WebhookProcessor:
    return runtime.webhooks


def get_managed_webhook_service(runtime: SyncRuntime = Depends(get_sync_runtime)) -> ManagedWebhookService:
    return runtime.managed_webhooks
