from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
import json
import logging
from typing import Any, Protocol
import zlib

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysync.logging_utils import structured_log

logger = logging.getLogger(__name__)

BOOTSTRAP_LOCK_NAMESPACE = 7203


@dataclass(frozen=True)
class QueueMessage:
    msg_id: int
    read_count: int
    enqueued_at: datetime | None
    payload: Any


class WorkQueue(Protocol):
    async def read_batch(self, queue: str, visibility_timeout_seconds: int, max_count: int) -> list[QueueMessage]: ...

    async def ack(self, queue: str, msg_id: int) -> bool: ...

    async def send(self, queue: str, payload: dict[str, Any]) -> int: ...

    async def in_flight_count(self, queue: str) -> int: ...

    def bootstrap_guard(self, queue: str) -> AbstractAsyncContextManager[bool]: ...


def _bootstrap_lock_key(queue: str) -> int:
    value = zlib.crc32(queue.encode("utf-8"))
    return value - 2**32 if value >= 2**31 else value


def _decode_payload(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


class PgmqQueue:
    """At-least-once queue backed by the Postgres `pgmq` extension.

    Read messages stay invisible for the visibility timeout and come back
    unless deleted, so an unacked message is a retry.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def ensure_queue(self, queue: str) -> None:
        async with self._session_factory() as session:
            await session.execute(text("SELECT pgmq.create(CAST(:queue AS text))"), {"queue": queue})
            await session.commit()
        structured_log(logger, "info", "queue.ensured", queue=queue)

    async def read_batch(self, queue: str, visibility_timeout_seconds: int, max_count: int) -> list[QueueMessage]:
        async with self._session_factory() as session:
            result = await session.execute(
                text(
                    "SELECT msg_id, read_ct, enqueued_at, message "
                    "FROM pgmq.read(CAST(:queue AS text), CAST(:vt AS integer), CAST(:qty AS integer))"
                ),
                {
                    "queue": queue,
                    "vt": max(1, int(visibility_timeout_seconds)),
                    "qty": max(1, int(max_count)),
                },
            )
            rows = result.all()
            await session.commit()
        return [
            QueueMessage(
                msg_id=int(msg_id),
                read_count=int(read_ct or 0),
                enqueued_at=enqueued_at,
                payload=_decode_payload(message),
            )
            for msg_id, read_ct, enqueued_at, message in rows
        ]

    async def ack(self, queue: str, msg_id: int) -> bool:
        async with self._session_factory() as session:
            deleted = await session.scalar(
                text("SELECT pgmq.delete(CAST(:queue AS text), CAST(:msg_id AS bigint))"),
                {"queue": queue, "msg_id": int(msg_id)},
            )
            await session.commit()
        return bool(deleted)

    async def send(self, queue: str, payload: dict[str, Any]) -> int:
        async with self._session_factory() as session:
            msg_id = await session.scalar(
                text("SELECT pgmq.send(CAST(:queue AS text), CAST(:message AS jsonb))"),
                {"queue": queue, "message": json.dumps(payload, separators=(",", ":"))},
            )
            await session.commit()
        return int(msg_id)

    async def in_flight_count(self, queue: str) -> int:
        # queue_length counts invisible (in-flight) messages as well as visible ones.
        async with self._session_factory() as session:
            length = await session.scalar(
                text("SELECT queue_length FROM pgmq.metrics(CAST(:queue AS text))"),
                {"queue": queue},
            )
        return int(length or 0)

    @asynccontextmanager
    async def bootstrap_guard(self, queue: str) -> AsyncIterator[bool]:
        """Yield True to at most one caller per queue at a time.

        The lock is transaction scoped and released when the block exits.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                text("SELECT pg_try_advisory_xact_lock(:namespace, :lock_key)"),
                {"namespace": BOOTSTRAP_LOCK_NAMESPACE, "lock_key": _bootstrap_lock_key(queue)},
            )
            acquired = bool(result.scalar_one())
            yield acquired
            await session.commit()
