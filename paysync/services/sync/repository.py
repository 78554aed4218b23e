from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
import logging
import zlib
from typing import Any, Protocol

from sqlalchemy import exists, func, select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysync.db.models import (
    OPEN_RUN_INDEX_NAME,
    Account,
    ObjectRunStatus,
    SyncObjectRun,
    SyncRun,
)
from paysync.logging_utils import structured_log
from paysync.services.sync.cursors import max_cursor
from paysync.services.sync.errors import RunNotFoundError
from paysync.services.sync.state_machine import (
    ACTIVE_STATUSES,
    ensure_transition,
    has_claim_capacity,
    is_terminal,
)
from paysync.services.sync.types import ObjectRunRecord, SyncRunRecord

logger = logging.getLogger(__name__)

CURSOR_LOCK_NAMESPACE = 7202


def _cursor_lock_key(account_id: str, object_type: str) -> int:
    value = zlib.crc32(f"{account_id}:{object_type}".encode("utf-8"))
    return value - 2**32 if value >= 2**31 else value


def _last_completed_cursor_stmt(account_id: str, object_type: str, *, exclude_run_id: int | None):
    stmt = (
        select(SyncObjectRun.cursor)
        .join(SyncRun, SyncRun.id == SyncObjectRun.run_id)
        .where(
            SyncRun.account_id == account_id,
            SyncObjectRun.object_type == object_type,
            SyncObjectRun.status == ObjectRunStatus.COMPLETE,
            SyncObjectRun.cursor.is_not(None),
        )
        .order_by(SyncObjectRun.completed_at.desc().nulls_last(), SyncObjectRun.run_id.desc())
        .limit(1)
    )
    if exclude_run_id is not None:
        stmt = stmt.where(SyncObjectRun.run_id != exclude_run_id)
    return stmt


def _is_open_run_integrity_error(exc: IntegrityError) -> bool:
    original_error = getattr(exc, "orig", None)
    if OPEN_RUN_INDEX_NAME in str(exc):
        return True
    if original_error is None:
        return False
    if OPEN_RUN_INDEX_NAME in str(original_error):
        return True
    diagnostics = getattr(original_error, "diag", None)
    if diagnostics is None:
        return False
    return getattr(diagnostics, "constraint_name", None) == OPEN_RUN_INDEX_NAME


def _run_record(run: SyncRun) -> SyncRunRecord:
    return SyncRunRecord(
        id=int(run.id),
        account_id=run.account_id,
        triggered_by=run.triggered_by,
        max_concurrent=int(run.max_concurrent),
        started_at=run.started_at,
        closed_at=run.closed_at,
    )


def _object_run_record(row: SyncObjectRun) -> ObjectRunRecord:
    return ObjectRunRecord(
        run_id=int(row.run_id),
        object_type=row.object_type,
        status=ObjectRunStatus(row.status),
        cursor=row.cursor,
        page_cursor=row.page_cursor,
        processed_count=int(row.processed_count or 0),
        error_message=row.error_message,
        started_at=row.started_at,
        completed_at=row.completed_at,
        updated_at=row.updated_at,
        filter_cursor=row.filter_cursor,
    )


class SyncStateRepository(Protocol):
    """Run and ObjectRun storage; every mutation is one atomic transition."""

    async def ensure_account(self, account_id: str, *, raw_data: dict[str, Any] | None = None) -> None: ...

    async def find_open_run(self, account_id: str, triggered_by: str) -> SyncRunRecord | None: ...

    async def create_run(self, account_id: str, triggered_by: str, *, max_concurrent: int) -> SyncRunRecord: ...

    async def get_run(self, run_id: int) -> SyncRunRecord | None: ...

    async def list_runs(self, *, account_id: str | None = None, limit: int = 20) -> list[SyncRunRecord]: ...

    async def ensure_object_runs(self, run_id: int, object_types: Sequence[str]) -> None: ...

    async def get_object_run(self, run_id: int, object_type: str) -> ObjectRunRecord | None: ...

    async def list_object_runs(self, run_id: int) -> list[ObjectRunRecord]: ...

    async def try_claim(
        self,
        run_id: int,
        object_type: str,
        *,
        max_concurrent: int | None = None,
        filter_cursor: str | None = None,
    ) -> bool: ...

    async def advance(
        self,
        run_id: int,
        object_type: str,
        *,
        page_cursor: str | None,
        watermark: str | None,
        processed: int,
    ) -> bool: ...

    async def complete(self, run_id: int, object_type: str, *, cursor: str | None, processed: int = 0) -> bool: ...

    async def fail(self, run_id: int, object_type: str, *, error_detail: str) -> bool: ...

    async def close_if_complete(self, run_id: int) -> bool: ...

    async def mark_stale_object_runs(
        self,
        account_id: str,
        *,
        older_than: datetime,
        error_detail: str,
    ) -> list[ObjectRunRecord]: ...

    async def last_completed_cursor(
        self,
        account_id: str,
        object_type: str,
        *,
        exclude_run_id: int | None = None,
    ) -> str | None: ...

    async def count_unfinished_object_runs(
        self,
        run_id: int,
        *,
        exclude_object_type: str | None = None,
    ) -> int: ...


class PostgresSyncStateRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def ensure_account(self, account_id: str, *, raw_data: dict[str, Any] | None = None) -> None:
        stmt = insert(Account).values(id=account_id, raw_data=raw_data or {})
        if raw_data is None:
            stmt = stmt.on_conflict_do_nothing(index_elements=[Account.id])
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=[Account.id],
                set_={"raw_data": stmt.excluded.raw_data, "updated_at": func.now()},
            )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def find_open_run(self, account_id: str, triggered_by: str) -> SyncRunRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncRun).where(
                    SyncRun.account_id == account_id,
                    SyncRun.triggered_by == triggered_by,
                    SyncRun.closed_at.is_(None),
                )
            )
            run = result.scalar_one_or_none()
        return _run_record(run) if run is not None else None

    async def create_run(self, account_id: str, triggered_by: str, *, max_concurrent: int) -> SyncRunRecord:
        async with self._session_factory() as session:
            run = SyncRun(
                account_id=account_id,
                triggered_by=triggered_by,
                max_concurrent=max(1, int(max_concurrent)),
            )
            session.add(run)
            try:
                await session.commit()
            except IntegrityError as exc:
                if not _is_open_run_integrity_error(exc):
                    raise
                await session.rollback()
                structured_log(
                    logger,
                    "info",
                    "sync.run_create_raced",
                    account_id=account_id,
                    triggered_by=triggered_by,
                )
                existing = await self.find_open_run(account_id, triggered_by)
                if existing is None:
                    raise
                return existing
            await session.refresh(run)
            structured_log(
                logger,
                "info",
                "sync.run_created",
                run_id=run.id,
                account_id=account_id,
                triggered_by=triggered_by,
                max_concurrent=run.max_concurrent,
            )
            return _run_record(run)

    async def get_run(self, run_id: int) -> SyncRunRecord | None:
        async with self._session_factory() as session:
            run = await session.get(SyncRun, run_id)
        return _run_record(run) if run is not None else None

    async def list_runs(self, *, account_id: str | None = None, limit: int = 20) -> list[SyncRunRecord]:
        stmt = select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(max(1, int(limit)))
        if account_id is not None:
            stmt = stmt.where(SyncRun.account_id == account_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            runs = result.scalars().all()
        return [_run_record(run) for run in runs]

    async def ensure_object_runs(self, run_id: int, object_types: Sequence[str]) -> None:
        if not object_types:
            return
        stmt = (
            insert(SyncObjectRun)
            .values([{"run_id": run_id, "object_type": object_type} for object_type in object_types])
            .on_conflict_do_nothing(index_elements=[SyncObjectRun.run_id, SyncObjectRun.object_type])
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_object_run(self, run_id: int, object_type: str) -> ObjectRunRecord | None:
        async with self._session_factory() as session:
            row = await session.get(SyncObjectRun, (run_id, object_type))
        return _object_run_record(row) if row is not None else None

    async def list_object_runs(self, run_id: int) -> list[ObjectRunRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncObjectRun)
                .where(SyncObjectRun.run_id == run_id)
                .order_by(SyncObjectRun.created_at.asc(), SyncObjectRun.object_type.asc())
            )
            rows = result.scalars().all()
        return [_object_run_record(row) for row in rows]

    async def _lock_object_run(self, session: AsyncSession, run_id: int, object_type: str) -> SyncObjectRun | None:
        result = await session.execute(
            select(SyncObjectRun)
            .where(SyncObjectRun.run_id == run_id, SyncObjectRun.object_type == object_type)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def try_claim(
        self,
        run_id: int,
        object_type: str,
        *,
        max_concurrent: int | None = None,
        filter_cursor: str | None = None,
    ) -> bool:
        """Flip pending to running if the run has capacity, pinning the sweep's filter."""
        async with self._session_factory() as session:
            # The run row lock serializes every claim under this run.
            run_result = await session.execute(select(SyncRun).where(SyncRun.id == run_id).with_for_update())
            run = run_result.scalar_one_or_none()
            if run is None:
                raise RunNotFoundError(run_id)
            row = await self._lock_object_run(session, run_id, object_type)
            if row is None or ObjectRunStatus(row.status) != ObjectRunStatus.PENDING:
                await session.rollback()
                return False
            running_count = await session.scalar(
                select(func.count())
                .select_from(SyncObjectRun)
                .where(
                    SyncObjectRun.run_id == run_id,
                    SyncObjectRun.status == ObjectRunStatus.RUNNING,
                )
            )
            limit = run.max_concurrent if max_concurrent is None else max_concurrent
            if not has_claim_capacity(running_count=int(running_count or 0), max_concurrent=limit):
                await session.rollback()
                structured_log(
                    logger,
                    "info",
                    "sync.claim_denied",
                    run_id=run_id,
                    object_type=object_type,
                    running_count=int(running_count or 0),
                    max_concurrent=limit,
                )
                return False
            row.status = ObjectRunStatus.RUNNING
            row.started_at = datetime.now(timezone.utc)
            row.filter_cursor = filter_cursor
            await session.commit()
        structured_log(
            logger,
            "info",
            "sync.object_claimed",
            run_id=run_id,
            object_type=object_type,
            filter_cursor=filter_cursor,
        )
        return True

    async def advance(
        self,
        run_id: int,
        object_type: str,
        *,
        page_cursor: str | None,
        watermark: str | None,
        processed: int,
    ) -> bool:
        async with self._session_factory() as session:
            row = await self._lock_object_run(session, run_id, object_type)
            if row is None or ObjectRunStatus(row.status) != ObjectRunStatus.RUNNING:
                await session.rollback()
                return False
            row.page_cursor = page_cursor
            row.cursor = max_cursor(row.cursor, watermark)
            row.processed_count = int(row.processed_count or 0) + max(0, int(processed))
            await session.commit()
        return True

    async def complete(self, run_id: int, object_type: str, *, cursor: str | None, processed: int = 0) -> bool:
        async with self._session_factory() as session:
            row = await self._lock_object_run(session, run_id, object_type)
            if row is None:
                raise RunNotFoundError(run_id)
            if is_terminal(row.status):
                await session.rollback()
                return False
            ensure_transition(row.status, ObjectRunStatus.COMPLETE)
            account_id = await session.scalar(select(SyncRun.account_id).where(SyncRun.id == run_id))
            # Serializes completions per account and object type.
            await session.execute(
                text("SELECT pg_advisory_xact_lock(:namespace, :lock_key)"),
                {"namespace": CURSOR_LOCK_NAMESPACE, "lock_key": _cursor_lock_key(account_id, object_type)},
            )
            latest_completed = await session.scalar(
                _last_completed_cursor_stmt(account_id, object_type, exclude_run_id=run_id)
            )
            row.status = ObjectRunStatus.COMPLETE
            row.cursor = max_cursor(row.cursor, cursor, latest_completed)
            row.page_cursor = None
            row.processed_count = int(row.processed_count or 0) + max(0, int(processed))
            row.completed_at = datetime.now(timezone.utc)
            stored_cursor = row.cursor
            total = row.processed_count
            await session.commit()
        structured_log(
            logger,
            "info",
            "sync.object_completed",
            run_id=run_id,
            object_type=object_type,
            cursor=stored_cursor,
            processed_count=total,
        )
        await self.close_if_complete(run_id)
        return True

    async def fail(self, run_id: int, object_type: str, *, error_detail: str) -> bool:
        async with self._session_factory() as session:
            row = await self._lock_object_run(session, run_id, object_type)
            if row is None or is_terminal(row.status):
                await session.rollback()
                return False
            ensure_transition(row.status, ObjectRunStatus.ERROR)
            row.status = ObjectRunStatus.ERROR
            row.error_message = error_detail
            row.completed_at = datetime.now(timezone.utc)
            await session.commit()
        structured_log(
            logger,
            "warning",
            "sync.object_failed",
            run_id=run_id,
            object_type=object_type,
            error_detail=error_detail,
        )
        await self.close_if_complete(run_id)
        return True

    async def close_if_complete(self, run_id: int) -> bool:
        unfinished = exists().where(
            SyncObjectRun.run_id == SyncRun.id,
            SyncObjectRun.status.in_(list(ACTIVE_STATUSES)),
        )
        stmt = (
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.closed_at.is_(None), ~unfinished)
            .values(closed_at=func.now(), updated_at=func.now())
            .returning(SyncRun.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            closed_id = result.scalar_one_or_none()
            await session.commit()
        if closed_id is None:
            return False
        structured_log(logger, "info", "sync.run_closed", run_id=run_id)
        return True

    async def mark_stale_object_runs(
        self,
        account_id: str,
        *,
        older_than: datetime,
        error_detail: str,
    ) -> list[ObjectRunRecord]:
        account_runs = select(SyncRun.id).where(SyncRun.account_id == account_id)
        stmt = (
            update(SyncObjectRun)
            .where(
                SyncObjectRun.run_id.in_(account_runs),
                SyncObjectRun.status == ObjectRunStatus.RUNNING,
                SyncObjectRun.updated_at < older_than,
            )
            .values(
                status=ObjectRunStatus.ERROR,
                error_message=error_detail,
                completed_at=func.now(),
                updated_at=func.now(),
            )
            .returning(SyncObjectRun)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
            records = [_object_run_record(row) for row in rows]
            await session.commit()
        return records

    async def last_completed_cursor(
        self,
        account_id: str,
        object_type: str,
        *,
        exclude_run_id: int | None = None,
    ) -> str | None:
        stmt = _last_completed_cursor_stmt(account_id, object_type, exclude_run_id=exclude_run_id)
        async with self._session_factory() as session:
            return await session.scalar(stmt)

    async def count_unfinished_object_runs(
        self,
        run_id: int,
        *,
        exclude_object_type: str | None = None,
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(SyncObjectRun)
            .where(
                SyncObjectRun.run_id == run_id,
                SyncObjectRun.status.in_(list(ACTIVE_STATUSES)),
            )
        )
        if exclude_object_type is not None:
            stmt = stmt.where(SyncObjectRun.object_type != exclude_object_type)
        async with self._session_factory() as session:
            count = await session.scalar(stmt)
        return int(count or 0)
