from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
import logging

from paysync.db.models import ObjectRunStatus
from paysync.logging_utils import exception_detail, structured_log
from paysync.services.accounts import AccountResolver
from paysync.services.entities.store import EntityStore
from paysync.services.stripe.source import ObjectSource
from paysync.services.sync.catchup import CatchupStrategy
from paysync.services.sync.errors import (
    RunNotFoundError,
    TransientSyncError,
    UpstreamProtocolViolation,
)
from paysync.services.sync.event_routes import EventRouteTable
from paysync.services.sync.object_types import (
    ObjectTypeConfig,
    ObjectTypeRegistry,
    StrategyKind,
)
from paysync.services.sync.repository import SyncStateRepository
from paysync.services.sync.run_manager import RunManager
from paysync.services.sync.state_machine import is_terminal
from paysync.services.sync.strategies import (
    ListStrategy,
    ParentScopedStrategy,
    SkipStrategy,
    SyncStrategy,
)
from paysync.services.sync.types import (
    ProcessNextOverrides,
    ProcessNextResult,
    RunStatusReport,
    SyncRunRecord,
    UnitOfWork,
)

logger = logging.getLogger(__name__)


def build_strategy(
    config: ObjectTypeConfig,
    *,
    source: ObjectSource,
    entity_store: EntityStore,
    registry: ObjectTypeRegistry,
    routes: EventRouteTable,
    now: Callable[[], datetime] | None = None,
) -> SyncStrategy:
    if config.strategy == StrategyKind.SKIP:
        return SkipStrategy(config)
    if config.strategy == StrategyKind.PARENT:
        return ParentScopedStrategy(config, source=source, entity_store=entity_store)
    if config.strategy == StrategyKind.CATCHUP:
        return CatchupStrategy(
            source=source,
            entity_store=entity_store,
            registry=registry,
            routes=routes,
            now=now,
        )
    return ListStrategy(config, source=source, entity_store=entity_store)


class SyncEngine:
    """Advances one object type by one page per `process_next` call.

    Every call is safe to repeat: terminal ObjectRuns are no-ops, claims are
    gated by the run's concurrency cap, and cursors only move forward. The
    engine never retries; a raised `SyncFailure` leaves retry to the caller's
    queue.
    """

    def __init__(
        self,
        *,
        registry: ObjectTypeRegistry,
        repository: SyncStateRepository,
        run_manager: RunManager,
        accounts: AccountResolver,
        source: ObjectSource,
        entity_store: EntityStore,
        routes: EventRouteTable | None = None,
        default_channel: str = "worker",
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._run_manager = run_manager
        self._accounts = accounts
        self._default_channel = default_channel
        self._routes = routes or EventRouteTable.from_registry(registry)
        self._strategies: dict[str, SyncStrategy] = {
            config.name: build_strategy(
                config,
                source=source,
                entity_store=entity_store,
                registry=registry,
                routes=self._routes,
                now=now,
            )
            for config in registry
        }

    @property
    def registry(self) -> ObjectTypeRegistry:
        return self._registry

    @property
    def routes(self) -> EventRouteTable:
        return self._routes

    @property
    def default_channel(self) -> str:
        return self._default_channel

    def list_object_types(self) -> list[str]:
        return self._registry.names()

    async def join_or_create_run(
        self,
        triggered_by: str | None = None,
        *,
        object_types: list[str] | None = None,
    ) -> SyncRunRecord:
        account_id = await self._accounts.resolve()
        return await self._run_manager.join_or_create_run(
            account_id,
            triggered_by or self._default_channel,
            object_types=object_types,
        )

    async def get_run_status(self, run_id: int) -> RunStatusReport:
        return await self._run_manager.get_run_status(run_id)

    async def list_runs(self, *, limit: int = 20) -> list[SyncRunRecord]:
        return await self._run_manager.list_runs(limit=limit)

    async def _resolve_run(self, account_id: str, overrides: ProcessNextOverrides) -> SyncRunRecord:
        if overrides.run_id is not None:
            run = await self._repository.get_run(overrides.run_id)
            if run is None:
                raise RunNotFoundError(overrides.run_id)
            return run
        return await self._run_manager.join_or_create_run(
            account_id,
            overrides.triggered_by or self._default_channel,
        )

    async def process_next(
        self,
        object_type: str,
        overrides: ProcessNextOverrides | None = None,
    ) -> ProcessNextResult:
        overrides = overrides or ProcessNextOverrides()
        config = self._registry.get(object_type)
        account_id = await self._accounts.resolve()
        run = await self._resolve_run(account_id, overrides)

        object_run = await self._repository.get_object_run(run.id, object_type)
        if object_run is None:
            if not run.is_open:
                structured_log(
                    logger,
                    "info",
                    "sync.run_already_closed",
                    run_id=run.id,
                    object_type=object_type,
                )
                return ProcessNextResult(processed=0, has_more=False)
            await self._repository.ensure_object_runs(run.id, [object_type])
            object_run = await self._repository.get_object_run(run.id, object_type)
            if object_run is None:
                raise RunNotFoundError(run.id)

        if is_terminal(object_run.status):
            structured_log(
                logger,
                "debug",
                "sync.object_already_terminal",
                run_id=run.id,
                object_type=object_type,
                status=object_run.status.value,
            )
            return ProcessNextResult(processed=0, has_more=False)

        if object_run.status == ObjectRunStatus.PENDING:
            if config.after_primary:
                unfinished = await self._repository.count_unfinished_object_runs(
                    run.id,
                    exclude_object_type=object_type,
                )
                if unfinished > 0:
                    structured_log(
                        logger,
                        "info",
                        "sync.object_deferred",
                        run_id=run.id,
                        object_type=object_type,
                        unfinished_count=unfinished,
                    )
                    return ProcessNextResult(processed=0, has_more=True)
            await self._run_manager.recover_stale_runs(account_id)
            # The filter is fixed at claim time and reused for every page of this sweep.
            filter_cursor = overrides.cursor
            if filter_cursor is None:
                filter_cursor = await self._repository.last_completed_cursor(
                    account_id,
                    object_type,
                    exclude_run_id=run.id,
                )
            if not await self._repository.try_claim(run.id, object_type, filter_cursor=filter_cursor):
                return ProcessNextResult(processed=0, has_more=True)
            object_run = await self._repository.get_object_run(run.id, object_type)
            if object_run is None:
                raise RunNotFoundError(run.id)
        elif overrides.cursor is not None and overrides.cursor != object_run.filter_cursor:
            structured_log(
                logger,
                "warning",
                "sync.cursor_override_ignored",
                run_id=run.id,
                object_type=object_type,
                override=overrides.cursor,
                filter_cursor=object_run.filter_cursor,
            )

        work = UnitOfWork(
            account_id=account_id,
            run_id=run.id,
            object_type=object_type,
            incremental_filter=object_run.filter_cursor,
            page_cursor=object_run.page_cursor,
        )

        try:
            page = await self._strategies[object_type].fetch_page(work)
            if page.has_more:
                await self._repository.advance(
                    run.id,
                    object_type,
                    page_cursor=page.next_page_cursor,
                    watermark=page.watermark,
                    processed=page.processed,
                )
            else:
                await self._repository.complete(
                    run.id,
                    object_type,
                    cursor=page.watermark,
                    processed=page.processed,
                )
        except UpstreamProtocolViolation as exc:
            await self._repository.fail(run.id, object_type, error_detail=exception_detail(exc))
            structured_log(
                logger,
                "error",
                "sync.upstream_protocol_violation",
                run_id=run.id,
                object_type=object_type,
                page_cursor=work.page_cursor,
            )
            raise
        except Exception as exc:
            detail = exception_detail(exc)
            await self._repository.fail(run.id, object_type, error_detail=detail)
            raise TransientSyncError(object_type=object_type, run_id=run.id, message=detail) from exc

        structured_log(
            logger,
            "info",
            "sync.page_processed",
            run_id=run.id,
            object_type=object_type,
            processed=page.processed,
            has_more=page.has_more,
            **page.detail,
        )
        return ProcessNextResult(processed=page.processed, has_more=page.has_more)
