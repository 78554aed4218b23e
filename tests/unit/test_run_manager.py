from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from paysync.db.models import ObjectRunStatus
from paysync.services.sync.run_manager import stale_error_detail
from paysync.services.sync.types import ProcessNextOverrides
from tests.unit.fakes import build_harness


def _ago(seconds: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(seconds=seconds)


@pytest.mark.asyncio
async def test_stale_running_object_is_failed_and_run_stays_open_while_others_pend() -> None:
    harness = build_harness(stale_after_seconds=300)
    run = await harness.engine.join_or_create_run(object_types=["customers", "subscriptions"])
    assert await harness.repository.try_claim(run.id, "customers") is True
    harness.repository.set_updated_at(run.id, "customers", _ago(600))

    recovered = await harness.run_manager.recover_stale_runs("acct_test")

    assert recovered == 1
    customers = await harness.repository.get_object_run(run.id, "customers")
    assert customers.status == ObjectRunStatus.ERROR
    assert customers.error_message == stale_error_detail(300)
    subscriptions = await harness.repository.get_object_run(run.id, "subscriptions")
    assert subscriptions.status == ObjectRunStatus.PENDING
    assert (await harness.repository.get_run(run.id)).is_open is True


@pytest.mark.asyncio
async def test_stale_recovery_closes_run_and_unblocks_new_run() -> None:
    harness = build_harness(stale_after_seconds=300)
    run = await harness.engine.join_or_create_run(object_types=["customers"])
    assert await harness.repository.try_claim(run.id, "customers") is True
    harness.repository.set_updated_at(run.id, "customers", _ago(301))

    next_run = await harness.engine.join_or_create_run(object_types=["customers"])

    assert next_run.id != run.id
    assert (await harness.repository.get_run(run.id)).is_open is False
    report = await harness.engine.get_run_status(run.id)
    assert report.status_counts == {"pending": 0, "running": 0, "complete": 0, "error": 1}


@pytest.mark.asyncio
async def test_recent_heartbeat_is_not_recovered() -> None:
    harness = build_harness(stale_after_seconds=300)
    run = await harness.engine.join_or_create_run(object_types=["customers"])
    await harness.repository.try_claim(run.id, "customers")
    harness.repository.set_updated_at(run.id, "customers", _ago(30))

    assert await harness.run_manager.recover_stale_runs("acct_test") == 0
    customers = await harness.repository.get_object_run(run.id, "customers")
    assert customers.status == ObjectRunStatus.RUNNING


@pytest.mark.asyncio
async def test_pending_rows_are_never_treated_as_stale() -> None:
    harness = build_harness(stale_after_seconds=300)
    run = await harness.engine.join_or_create_run(object_types=["customers"])
    harness.repository.set_updated_at(run.id, "customers", _ago(3600))

    assert await harness.run_manager.recover_stale_runs("acct_test") == 0
    customers = await harness.repository.get_object_run(run.id, "customers")
    assert customers.status == ObjectRunStatus.PENDING


@pytest.mark.asyncio
async def test_recovery_failure_is_logged_not_raised(monkeypatch, caplog) -> None:
    harness = build_harness()
    monkeypatch.setattr(
        harness.repository,
        "mark_stale_object_runs",
        AsyncMock(side_effect=RuntimeError("db unavailable")),
    )

    assert await harness.run_manager.recover_stale_runs("acct_test") == 0
    assert any(record.getMessage() == "sync.stale_recovery_failed" for record in caplog.records)


@pytest.mark.asyncio
async def test_stale_recovery_runs_before_claiming_work() -> None:
    harness = build_harness(max_concurrent=1, stale_after_seconds=300)
    run = await harness.engine.join_or_create_run(object_types=["customers", "subscriptions"])
    await harness.repository.try_claim(run.id, "customers")
    harness.repository.set_updated_at(run.id, "customers", _ago(900))

    result = await harness.engine.process_next("subscriptions", ProcessNextOverrides(run_id=run.id))

    assert (result.processed, result.has_more) == (0, False)
    subscriptions = await harness.repository.get_object_run(run.id, "subscriptions")
    assert subscriptions.status == ObjectRunStatus.COMPLETE
    customers = await harness.repository.get_object_run(run.id, "customers")
    assert customers.status == ObjectRunStatus.ERROR
