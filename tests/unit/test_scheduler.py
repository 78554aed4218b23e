from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from paysync.services.scheduler import SchedulerService
from paysync.services.sync.types import DispatchReport


def _dispatcher(*results) -> MagicMock:
    dispatcher = MagicMock()
    dispatcher.channel = "worker"
    dispatcher.run_once = AsyncMock(side_effect=list(results))
    return dispatcher


@pytest.mark.asyncio
async def test_tick_runs_each_worker_and_keeps_going_past_failures(caplog) -> None:
    report = DispatchReport(enqueued_object_types=["customers"], run_id=1)
    dispatcher = _dispatcher(report, RuntimeError("queue down"), DispatchReport())
    scheduler = SchedulerService(enabled=True, tick_seconds=5, worker_count=3, dispatcher=dispatcher)

    reports = await scheduler.tick_once()

    assert dispatcher.run_once.await_count == 3
    assert len(reports) == 2
    assert reports[0] is report
    assert any(record.getMessage() == "scheduler.worker_failed" for record in caplog.records)


@pytest.mark.asyncio
async def test_disabled_scheduler_never_starts() -> None:
    dispatcher = _dispatcher()
    queue = MagicMock()
    queue.ensure_queue = AsyncMock()
    scheduler = SchedulerService(
        enabled=False,
        tick_seconds=5,
        worker_count=1,
        dispatcher=dispatcher,
        queue=queue,
        queue_name="paysync_sync",
    )

    await scheduler.start()
    await scheduler.stop()

    queue.ensure_queue.assert_not_awaited()
    dispatcher.run_once.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_creates_queue_and_stop_cancels_loop() -> None:
    dispatcher = MagicMock()
    dispatcher.channel = "worker"
    dispatcher.run_once = AsyncMock(return_value=DispatchReport())
    queue = MagicMock()
    queue.ensure_queue = AsyncMock()
    scheduler = SchedulerService(
        enabled=True,
        tick_seconds=60,
        worker_count=1,
        dispatcher=dispatcher,
        queue=queue,
        queue_name="paysync_sync",
    )

    await scheduler.start()
    await scheduler.start()
    await scheduler.stop()

    queue.ensure_queue.assert_awaited_once_with("paysync_sync")
