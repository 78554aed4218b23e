"""Catch-up reconciliation over the platform's recent events feed.

Webhooks can be missed; this pass walks the events the platform still
retains and re-applies their effect. Within one page only the latest event
per entity is applied, hard deletes come from a closed allow-list, and every
other event re-fetches the canonical entity rather than trusting the event
snapshot.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from paysync.logging_utils import structured_log
from paysync.services.entities.store import EntityStore
from paysync.services.stripe.source import ObjectSource
from paysync.services.sync.cursors import format_watermark, max_created, parse_watermark
from paysync.services.sync.event_routes import EventAction, EventRouteTable
from paysync.services.sync.object_types import (
    CATCHUP_OBJECT_TYPE,
    ObjectTypeRegistry,
    StrategyKind,
)
from paysync.services.sync.strategies import ensure_page_progress
from paysync.services.sync.types import PageWork, UnitOfWork

logger = logging.getLogger(__name__)

EVENT_RETENTION_DAYS = 30


@dataclass(frozen=True)
class EntityRef:
    object_name: str
    object_id: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def event_entity(event: dict[str, Any]) -> EntityRef | None:
    data = event.get("data")
    if not isinstance(data, dict):
        return None
    obj = data.get("object")
    if not isinstance(obj, dict):
        return None
    object_id = obj.get("id")
    if not isinstance(object_id, str) or not object_id:
        return None
    return EntityRef(object_name=str(obj.get("object") or ""), object_id=object_id)


def event_created_at(event: dict[str, Any]) -> datetime | None:
    created = parse_watermark(event.get("created"))
    if created is None:
        return None
    return datetime.fromtimestamp(created, tz=timezone.utc)


def dedupe_latest_events(events: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], int]:
    """Keep the latest event per entity; ties on `created` keep the first one seen.

    Returns the kept events in first-seen order plus how many were dropped.
    Events without an entity reference are kept as-is so they still get
    classified and counted.
    """
    latest: dict[EntityRef, tuple[int, dict[str, Any]]] = {}
    order: list[EntityRef | int] = []
    loose: dict[int, dict[str, Any]] = {}
    for index, event in enumerate(events):
        ref = event_entity(event)
        if ref is None:
            loose[index] = event
            order.append(index)
            continue
        created = parse_watermark(event.get("created")) or 0
        current = latest.get(ref)
        if current is None:
            latest[ref] = (created, event)
            order.append(ref)
        elif created > current[0]:
            latest[ref] = (created, event)

    kept: list[dict[str, Any]] = []
    for key in order:
        if isinstance(key, int):
            kept.append(loose[key])
        else:
            kept.append(latest[key][1])
    return kept, len(events) - len(kept)


class CatchupStrategy:
    def __init__(
        self,
        *,
        source: ObjectSource,
        entity_store: EntityStore,
        registry: ObjectTypeRegistry,
        routes: EventRouteTable,
        retention_days: int = EVENT_RETENTION_DAYS,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._entity_store = entity_store
        self._registry = registry
        self._routes = routes
        self._retention_days = max(1, int(retention_days))
        self._now = now or _utcnow

    def window_floor(self) -> int:
        return int((self._now() - timedelta(days=self._retention_days)).timestamp())

    def effective_created_gte(self, incremental_filter: str | None) -> int:
        floor = self.window_floor()
        stored = parse_watermark(incremental_filter)
        if stored is None:
            return floor
        return max(stored, floor)

    async def fetch_page(self, work: UnitOfWork) -> PageWork:
        page = await self._source.list_page(
            CATCHUP_OBJECT_TYPE,
            created_gte=self.effective_created_gte(work.incremental_filter),
            starting_after=work.page_cursor,
        )
        ensure_page_progress(work, page)

        events, duplicates = dedupe_latest_events(page.items)
        counts = {
            "duplicates": duplicates,
            "upserted": 0,
            "deleted": 0,
            "skipped_current": 0,
            "skipped_disabled": 0,
            "missing": 0,
            "unsupported": 0,
        }
        for event in events:
            outcome = await self._apply_event(event, account_id=work.account_id)
            counts[outcome] += 1

        structured_log(
            logger,
            "info",
            "catchup.page_reconciled",
            run_id=work.run_id,
            event_count=len(page.items),
            has_more=page.has_more,
            **counts,
        )
        return PageWork(
            processed=len(page.items),
            has_more=page.has_more,
            next_page_cursor=str(page.items[-1].get("id")) if page.has_more else None,
            watermark=format_watermark(max_created(page.items)),
            detail=counts,
        )

    async def _apply_event(self, event: dict[str, Any], *, account_id: str) -> str:
        event_type = str(event.get("type") or "")
        route = self._routes.resolve(event_type)
        ref = event_entity(event)
        if route is None or ref is None:
            structured_log(
                logger,
                "warning",
                "catchup.event_unsupported",
                event_id=event.get("id"),
                event_type=event_type,
            )
            return "unsupported"

        if self._registry.get(route.object_type).strategy == StrategyKind.SKIP:
            return "skipped_disabled"

        if route.action == EventAction.DELETE:
            await self._entity_store.delete(route.object_type, ref.object_id, account_id=account_id)
            return "deleted"

        event_at = event_created_at(event)
        stored_at = await self._entity_store.last_synced_at(route.object_type, ref.object_id)
        if stored_at is not None and event_at is not None and stored_at > event_at:
            return "skipped_current"

        canonical = await self._source.retrieve(route.object_type, ref.object_id)
        if canonical is None:
            structured_log(
                logger,
                "info",
                "catchup.entity_missing",
                event_id=event.get("id"),
                object_type=route.object_type,
                object_id=ref.object_id,
            )
            return "missing"
        await self._entity_store.upsert(route.object_type, canonical, account_id=account_id)
        return "upserted"
