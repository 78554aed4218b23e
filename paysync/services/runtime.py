from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysync.db.session import get_session_factory
from paysync.services.accounts import AccountResolver
from paysync.services.entities.store import PostgresEntityStore
from paysync.services.queue.pgmq import PgmqQueue
from paysync.services.scheduler import SchedulerService
from paysync.services.stripe.client import StripeClient
from paysync.services.stripe.source import StripeObjectSource
from paysync.services.sync.dispatcher import QueueDispatcher
from paysync.services.sync.engine import SyncEngine
from paysync.services.sync.event_routes import EventRouteTable
from paysync.services.sync.object_types import build_default_registry
from paysync.services.sync.repository import PostgresSyncStateRepository
from paysync.services.sync.run_manager import RunManager
from paysync.services.webhooks.endpoints import ManagedWebhookService
from paysync.services.webhooks.processor import WebhookProcessor
from paysync.settings import Settings, parse_csv

_default_runtime: SyncRuntime | None = None


@dataclass(frozen=True)
class SyncRuntime:
    engine: SyncEngine
    dispatcher: QueueDispatcher
    scheduler: SchedulerService
    webhooks: WebhookProcessor
    managed_webhooks: ManagedWebhookService


def build_runtime(
    config: Settings,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> SyncRuntime:
    factory = session_factory or get_session_factory()
    registry = build_default_registry(disabled=parse_csv(config.sync_disabled_object_types))
    routes = EventRouteTable.from_registry(registry)
    repository = PostgresSyncStateRepository(factory)
    entity_store = PostgresEntityStore(factory)
    source = StripeObjectSource(
        StripeClient(
            secret_key=config.stripe_secret_key,
            base_url=config.stripe_api_base_url,
            api_version=config.stripe_api_version,
            timeout_seconds=config.stripe_timeout_seconds,
        ),
        registry,
        page_size=config.stripe_page_size,
    )
    accounts = AccountResolver(repository, source, account_id=config.stripe_account_id)
    run_manager = RunManager(
        repository,
        max_concurrent=config.sync_max_concurrent_objects,
        stale_after_seconds=config.sync_stale_object_run_seconds,
    )
    engine = SyncEngine(
        registry=registry,
        repository=repository,
        run_manager=run_manager,
        accounts=accounts,
        source=source,
        entity_store=entity_store,
        routes=routes,
        default_channel=config.sync_trigger_channel,
    )
    queue = PgmqQueue(factory)
    dispatcher = QueueDispatcher(
        engine,
        queue,
        queue_name=config.sync_queue_name,
        visibility_timeout_seconds=config.sync_queue_visibility_timeout_seconds,
        batch_size=config.sync_queue_batch_size,
        max_parallel=config.sync_dispatch_max_parallel,
        channel=config.sync_trigger_channel,
    )
    scheduler = SchedulerService(
        enabled=config.scheduler_enabled,
        tick_seconds=config.scheduler_tick_seconds,
        worker_count=config.scheduler_worker_count,
        dispatcher=dispatcher,
        queue=queue,
        queue_name=config.sync_queue_name,
    )
    webhooks = WebhookProcessor(
        routes=routes,
        entity_store=entity_store,
        accounts=accounts,
        secret=config.webhook_secret,
        tolerance_seconds=config.webhook_tolerance_seconds,
    )
    managed_webhooks = ManagedWebhookService(
        factory,
        source=source,
        accounts=accounts,
        routes=routes,
    )
    return SyncRuntime(
        engine=engine,
        dispatcher=dispatcher,
        scheduler=scheduler,
        webhooks=webhooks,
        managed_webhooks=managed_webhooks,
    )


def get_runtime() -> SyncRuntime:
    global _default_runtime
    if _default_runtime is None:
        from paysync.settings import settings

        _default_runtime = build_runtime(settings)
    return _default_runtime


def set_runtime(runtime: SyncRuntime | None) -> SyncRuntime | None:
    global _default_runtime
    previous = _default_runtime
    _default_runtime = runtime
    return previous
