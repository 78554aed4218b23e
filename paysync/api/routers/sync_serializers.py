from __future__ import annotations

from typing import Any

from paysync.services.sync.object_types import ObjectTypeConfig
from paysync.services.sync.types import (
    DispatchReport,
    MessageOk,
    MessageOutcome,
    ObjectRunRecord,
    RunStatusReport,
    SyncRunRecord,
)
from paysync.services.webhooks.endpoints import ManagedWebhookRecord


def serialize_object_type(config: ObjectTypeConfig) -> dict[str, Any]:
    return {
        "name": config.name,
        "object_name": config.object_name,
        "strategy": config.strategy.value,
        "supports_created_filter": config.supports_created_filter,
        "parent_type": config.parent_type,
        "after_primary": config.after_primary,
    }


def serialize_run(run: SyncRunRecord) -> dict[str, Any]:
    return {
        "id": run.id,
        "account_id": run.account_id,
        "triggered_by": run.triggered_by,
        "max_concurrent": run.max_concurrent,
        "started_at": run.started_at,
        "closed_at": run.closed_at,
        "is_open": run.is_open,
    }


def serialize_object_run(object_run: ObjectRunRecord) -> dict[str, Any]:
    return {
        "object_type": object_run.object_type,
        "status": object_run.status.value,
        "cursor": object_run.cursor,
        "page_cursor": object_run.page_cursor,
        "filter_cursor": object_run.filter_cursor,
        "processed_count": object_run.processed_count,
        "error_message": object_run.error_message,
        "started_at": object_run.started_at,
        "completed_at": object_run.completed_at,
        "updated_at": object_run.updated_at,
    }


def serialize_run_status(report: RunStatusReport) -> dict[str, Any]:
    return {
        "run": serialize_run(report.run),
        "object_runs": [serialize_object_run(object_run) for object_run in report.object_runs],
        "status_counts": report.status_counts,
    }


def serialize_outcome(outcome: MessageOutcome) -> dict[str, Any]:
    if isinstance(outcome, MessageOk):
        return {
            "message_id": outcome.message_id,
            "object_type": outcome.object_type,
            "ok": True,
            "processed": outcome.processed,
            "has_more": outcome.has_more,
            "requeued": outcome.requeued,
            "error": None,
            "acked": True,
        }
    return {
        "message_id": outcome.message_id,
        "object_type": outcome.object_type,
        "ok": False,
        "error": outcome.error,
        "acked": outcome.acked,
    }


def serialize_dispatch_report(report: DispatchReport) -> dict[str, Any]:
    return {
        "outcomes": [serialize_outcome(outcome) for outcome in report.outcomes],
        "enqueued_object_types": list(report.enqueued_object_types),
        "run_id": report.run_id,
        "skipped_reason": report.skipped_reason,
        "failed_count": report.failed_count,
        "requeued_count": report.requeued_count,
    }


def serialize_managed_webhook(record: ManagedWebhookRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "account_id": record.account_id,
        "url": record.url,
        "platform_webhook_id": record.platform_webhook_id,
        "enabled_events": list(record.enabled_events),
        "created": record.created,
    }
