from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysync.db.models import SyncedObject
from paysync.services.sync.cursors import parse_watermark


class EntityStore(Protocol):
    async def upsert(
        self,
        object_type: str,
        item: dict[str, Any],
        *,
        account_id: str,
        synced_at: datetime | None = None,
    ) -> bool: ...

    async def delete(self, object_type: str, natural_key: str, *, account_id: str) -> bool: ...

    async def last_synced_at(self, object_type: str, natural_key: str) -> datetime | None: ...

    async def next_natural_key(self, object_type: str, *, account_id: str, after: str | None) -> str | None: ...


def natural_key_of(item: dict[str, Any]) -> str:
    value = item.get("id")
    if not isinstance(value, str) or not value:
        raise ValueError("Item has no natural key.")
    return value


class PostgresEntityStore:
    """Generic JSONB row per synced object, keyed by `(object_type, id)`."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert(
        self,
        object_type: str,
        item: dict[str, Any],
        *,
        account_id: str,
        synced_at: datetime | None = None,
    ) -> bool:
        # Returns False when a newer copy is already stored.
        stamp = synced_at or datetime.now(timezone.utc)
        stmt = insert(SyncedObject).values(
            object_type=object_type,
            id=natural_key_of(item),
            account_id=account_id,
            raw_data=item,
            created=parse_watermark(item.get("created")),
            last_synced_at=stamp,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SyncedObject.object_type, SyncedObject.id],
            set_={
                "raw_data": stmt.excluded.raw_data,
                "created": stmt.excluded.created,
                "account_id": stmt.excluded.account_id,
                "last_synced_at": stmt.excluded.last_synced_at,
                "updated_at": stamp,
            },
            where=SyncedObject.last_synced_at <= stmt.excluded.last_synced_at,
        ).returning(SyncedObject.id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            written = result.scalar_one_or_none()
            await session.commit()
        return written is not None

    async def delete(self, object_type: str, natural_key: str, *, account_id: str) -> bool:
        stmt = (
            delete(SyncedObject)
            .where(
                SyncedObject.object_type == object_type,
                SyncedObject.id == natural_key,
                SyncedObject.account_id == account_id,
            )
            .returning(SyncedObject.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            removed = result.scalar_one_or_none()
            await session.commit()
        return removed is not None

    async def last_synced_at(self, object_type: str, natural_key: str) -> datetime | None:
        async with self._session_factory() as session:
            return await session.scalar(
                select(SyncedObject.last_synced_at).where(
                    SyncedObject.object_type == object_type,
                    SyncedObject.id == natural_key,
                )
            )

    async def next_natural_key(self, object_type: str, *, account_id: str, after: str | None) -> str | None:
        stmt = (
            select(SyncedObject.id)
            .where(SyncedObject.object_type == object_type, SyncedObject.account_id == account_id)
            .order_by(SyncedObject.id.asc())
            .limit(1)
        )
        if after is not None:
            stmt = stmt.where(SyncedObject.id > after)
        async with self._session_factory() as session:
            return await session.scalar(stmt)
