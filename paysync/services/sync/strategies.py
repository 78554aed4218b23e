from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol

from paysync.services.entities.store import EntityStore, natural_key_of
from paysync.services.stripe.source import ObjectSource, SourcePage
from paysync.services.sync.cursors import (
    ParentPageCursor,
    format_watermark,
    max_created,
    parse_watermark,
)
from paysync.services.sync.errors import UpstreamProtocolViolation
from paysync.services.sync.object_types import ObjectTypeConfig
from paysync.services.sync.types import PageWork, UnitOfWork


class SyncStrategy(Protocol):
    async def fetch_page(self, work: UnitOfWork) -> PageWork: ...


def ensure_page_progress(work: UnitOfWork, page: SourcePage) -> None:
    if page.has_more and not page.items:
        raise UpstreamProtocolViolation(
            object_type=work.object_type,
            run_id=work.run_id,
            message=f"Source reported more {work.object_type} pages but returned no items.",
        )


def is_tombstone(item: dict[str, Any]) -> bool:
    return item.get("deleted") is True


async def write_items(
    entity_store: EntityStore,
    object_type: str,
    items: Iterable[dict[str, Any]],
    *,
    account_id: str,
) -> int:
    written = 0
    for item in items:
        if is_tombstone(item):
            await entity_store.delete(object_type, natural_key_of(item), account_id=account_id)
        else:
            await entity_store.upsert(object_type, item, account_id=account_id)
        written += 1
    return written


class ListStrategy:
    """Plain `created[gte]` filter plus `starting_after` paging."""

    def __init__(self, config: ObjectTypeConfig, *, source: ObjectSource, entity_store: EntityStore) -> None:
        self._config = config
        self._source = source
        self._entity_store = entity_store

    async def fetch_page(self, work: UnitOfWork) -> PageWork:
        created_gte = parse_watermark(work.incremental_filter) if self._config.supports_created_filter else None
        page = await self._source.list_page(
            self._config.name,
            created_gte=created_gte,
            starting_after=work.page_cursor,
        )
        ensure_page_progress(work, page)
        processed = await write_items(
            self._entity_store,
            self._config.name,
            page.items,
            account_id=work.account_id,
        )
        return PageWork(
            processed=processed,
            has_more=page.has_more,
            next_page_cursor=natural_key_of(page.items[-1]) if page.has_more else None,
            watermark=format_watermark(max_created(page.items)),
        )


class ParentScopedStrategy:
    """Lists children parent by parent, walking parents from the entity store in key order."""

    def __init__(self, config: ObjectTypeConfig, *, source: ObjectSource, entity_store: EntityStore) -> None:
        if config.parent_type is None:
            raise ValueError(f"Object type {config.name!r} has no parent type.")
        self._config = config
        self._parent_type = config.parent_type
        self._source = source
        self._entity_store = entity_store

    async def fetch_page(self, work: UnitOfWork) -> PageWork:
        position = ParentPageCursor.decode(work.page_cursor)
        if position is None:
            first_parent = await self._entity_store.next_natural_key(
                self._parent_type,
                account_id=work.account_id,
                after=None,
            )
            if first_parent is None:
                return PageWork(processed=0, has_more=False, next_page_cursor=None, watermark=None)
            position = ParentPageCursor(parent_id=first_parent)

        page = await self._source.list_page(
            self._config.name,
            created_gte=None,
            starting_after=position.after,
            parent_id=position.parent_id,
        )
        ensure_page_progress(work, page)
        processed = await write_items(
            self._entity_store,
            self._config.name,
            page.items,
            account_id=work.account_id,
        )
        watermark = format_watermark(max_created(page.items))

        if page.has_more:
            next_position = ParentPageCursor(parent_id=position.parent_id, after=natural_key_of(page.items[-1]))
            return PageWork(processed, True, next_position.encode(), watermark)

        next_parent = await self._entity_store.next_natural_key(
            self._parent_type,
            account_id=work.account_id,
            after=position.parent_id,
        )
        if next_parent is None:
            return PageWork(processed, False, None, watermark)
        return PageWork(processed, True, ParentPageCursor(parent_id=next_parent).encode(), watermark)


class SkipStrategy:
    """Completes without fetching; used for disabled or permission-restricted types."""

    def __init__(self, config: ObjectTypeConfig) -> None:
        self._config = config

    async def fetch_page(self, work: UnitOfWork) -> PageWork:
        return PageWork(
            processed=0,
            has_more=False,
            next_page_cursor=None,
            watermark=None,
            detail={"skipped": True},
        )
