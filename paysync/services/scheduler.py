from __future__ import annotations

import asyncio
import logging

from paysync.logging_utils import structured_log
from paysync.services.queue.pgmq import PgmqQueue
from paysync.services.sync.dispatcher import QueueDispatcher
from paysync.services.sync.types import DispatchReport

logger = logging.getLogger(__name__)


class SchedulerService:
    def __init__(
        self,
        *,
        enabled: bool,
        tick_seconds: int,
        worker_count: int,
        dispatcher: QueueDispatcher,
        queue: PgmqQueue | None = None,
        queue_name: str | None = None,
    ) -> None:
        self._enabled = enabled
        self._tick_seconds = max(1, int(tick_seconds))
        self._worker_count = max(1, int(worker_count))
        self._dispatcher = dispatcher
        self._queue = queue
        self._queue_name = queue_name
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if not self._enabled:
            structured_log(logger, "info", "scheduler.disabled")
            return
        if self._task is not None:
            return
        if self._queue is not None and self._queue_name:
            await self._queue.ensure_queue(self._queue_name)
        self._task = asyncio.create_task(self._run_loop(), name="paysync-scheduler")
        structured_log(
            logger,
            "info",
            "scheduler.started",
            tick_seconds=self._tick_seconds,
            worker_count=self._worker_count,
            triggered_by=self._dispatcher.channel,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        structured_log(logger, "info", "scheduler.stopped")

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.tick_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "scheduler.tick_failed",
                    extra={
                        "event": "scheduler.tick_failed",
                    },
                )
            await asyncio.sleep(float(self._tick_seconds))

    async def tick_once(self) -> list[DispatchReport]:
        # Overlapping workers are safe: the claim gate bounds concurrency per run.
        results = await asyncio.gather(
            *(self._dispatcher.run_once() for _ in range(self._worker_count)),
            return_exceptions=True,
        )
        reports: list[DispatchReport] = []
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "scheduler.worker_failed",
                    exc_info=result,
                    extra={"event": "scheduler.worker_failed"},
                )
                continue
            reports.append(result)
        return reports
