from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from paysync.db.models import ObjectRunStatus


@dataclass(frozen=True)
class SyncRunRecord:
    id: int
    account_id: str
    triggered_by: str
    max_concurrent: int
    started_at: datetime
    closed_at: datetime | None

    @property
    def is_open(self) -> bool:
        return self.closed_at is None


@dataclass(frozen=True)
class ObjectRunRecord:
    run_id: int
    object_type: str
    status: ObjectRunStatus
    cursor: str | None
    page_cursor: str | None
    processed_count: int
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime
    filter_cursor: str | None = None


@dataclass(frozen=True)
class RunStatusReport:
    run: SyncRunRecord
    object_runs: list[ObjectRunRecord]

    @property
    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in ObjectRunStatus}
        for object_run in self.object_runs:
            counts[object_run.status.value] += 1
        return counts


@dataclass(frozen=True)
class ProcessNextOverrides:
    run_id: int | None = None
    triggered_by: str | None = None
    cursor: str | None = None


@dataclass(frozen=True)
class ProcessNextResult:
    processed: int
    has_more: bool


@dataclass(frozen=True)
class PageWork:
    """What one strategy call did with one page of the source."""

    processed: int
    has_more: bool
    next_page_cursor: str | None
    watermark: str | None
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UnitOfWork:
    account_id: str
    run_id: int
    object_type: str
    incremental_filter: str | None
    page_cursor: str | None


@dataclass(frozen=True)
class MessageOk:
    message_id: int
    object_type: str
    processed: int
    has_more: bool
    requeued: bool


@dataclass(frozen=True)
class MessageFailed:
    message_id: int
    object_type: str | None
    error: str
    acked: bool


MessageOutcome = Union[MessageOk, MessageFailed]


@dataclass(frozen=True)
class DispatchReport:
    outcomes: list[MessageOutcome] = field(default_factory=list)
    enqueued_object_types: list[str] = field(default_factory=list)
    run_id: int | None = None
    skipped_reason: str | None = None

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if isinstance(outcome, MessageFailed))

    @property
    def requeued_count(self) -> int:
        return sum(1 for outcome in self.outcomes if isinstance(outcome, MessageOk) and outcome.requeued)
