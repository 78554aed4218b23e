from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
import logging

from paysync.logging_utils import structured_log
from paysync.services.sync.errors import RunNotFoundError
from paysync.services.sync.repository import SyncStateRepository
from paysync.services.sync.types import RunStatusReport, SyncRunRecord

logger = logging.getLogger(__name__)


def stale_error_detail(stale_after_seconds: int) -> str:
    return f"stale: no progress for {int(stale_after_seconds)} seconds"


class RunManager:
    def __init__(
        self,
        repository: SyncStateRepository,
        *,
        max_concurrent: int,
        stale_after_seconds: int,
    ) -> None:
        self._repository = repository
        self._max_concurrent = max(1, int(max_concurrent))
        self._stale_after_seconds = max(1, int(stale_after_seconds))

    @property
    def stale_after_seconds(self) -> int:
        return self._stale_after_seconds

    async def join_or_create_run(
        self,
        account_id: str,
        triggered_by: str,
        *,
        object_types: Sequence[str] | None = None,
    ) -> SyncRunRecord:
        """Return the open run for `(account_id, triggered_by)`, opening one if needed.

        Stale recovery runs first, so a run abandoned by a crashed worker is
        closed before it could be joined.
        """
        await self.recover_stale_runs(account_id)
        run = await self._repository.find_open_run(account_id, triggered_by)
        if run is None:
            run = await self._repository.create_run(
                account_id,
                triggered_by,
                max_concurrent=self._max_concurrent,
            )
        if object_types:
            await self._repository.ensure_object_runs(run.id, list(object_types))
        return run

    async def close_if_complete(self, run_id: int) -> bool:
        return await self._repository.close_if_complete(run_id)

    async def recover_stale_runs(self, account_id: str) -> int:
        """Fail running ObjectRuns with no heartbeat inside the staleness window.

        Returns how many were recovered. Problems are logged, never raised:
        recovery must not block the claim that follows it.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._stale_after_seconds)
        try:
            recovered = await self._repository.mark_stale_object_runs(
                account_id,
                older_than=cutoff,
                error_detail=stale_error_detail(self._stale_after_seconds),
            )
            for object_run in recovered:
                structured_log(
                    logger,
                    "warning",
                    "sync.object_stale_recovered",
                    account_id=account_id,
                    run_id=object_run.run_id,
                    object_type=object_run.object_type,
                    last_heartbeat=object_run.updated_at,
                )
            for run_id in sorted({object_run.run_id for object_run in recovered}):
                await self._repository.close_if_complete(run_id)
        except Exception:
            logger.exception(
                "sync.stale_recovery_failed",
                extra={"event": "sync.stale_recovery_failed", "account_id": account_id},
            )
            return 0
        return len(recovered)

    async def get_run_status(self, run_id: int) -> RunStatusReport:
        run = await self._repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        object_runs = await self._repository.list_object_runs(run_id)
        return RunStatusReport(run=run, object_runs=object_runs)

    async def list_runs(self, *, account_id: str | None = None, limit: int = 20) -> list[SyncRunRecord]:
        return await self._repository.list_runs(account_id=account_id, limit=limit)
