from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from paysync.api.schemas.common import ApiMeta


class ObjectTypeData(BaseModel):
    name: str
    object_name: str
    strategy: str
    supports_created_filter: bool
    parent_type: str | None = None
    after_primary: bool = False

    model_config = ConfigDict(extra="forbid")


class ObjectTypesData(BaseModel):
    object_types: list[ObjectTypeData]

    model_config = ConfigDict(extra="forbid")


class ObjectTypesEnvelope(BaseModel):
    data: ObjectTypesData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class SyncRunData(BaseModel):
    id: int
    account_id: str
    triggered_by: str
    max_concurrent: int
    started_at: datetime
    closed_at: datetime | None
    is_open: bool

    model_config = ConfigDict(extra="forbid")


class ObjectRunData(BaseModel):
    object_type: str
    status: str
    cursor: str | None
    page_cursor: str | None
    filter_cursor: str | None = None
    processed_count: int
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    model_config = ConfigDict(extra="forbid")


class SyncRunsListData(BaseModel):
    runs: list[SyncRunData]

    model_config = ConfigDict(extra="forbid")


class SyncRunsListEnvelope(BaseModel):
    data: SyncRunsListData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class SyncRunDetailData(BaseModel):
    run: SyncRunData
    object_runs: list[ObjectRunData]
    status_counts: dict[str, int] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class SyncRunDetailEnvelope(BaseModel):
    data: SyncRunDetailData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class ProcessNextRequest(BaseModel):
    object_type: str = Field(min_length=1, max_length=64)
    run_id: int | None = Field(default=None, ge=1)
    triggered_by: str | None = Field(default=None, min_length=1, max_length=64)
    cursor: str | None = Field(default=None, max_length=64)

    model_config = ConfigDict(extra="forbid")


class ProcessNextData(BaseModel):
    object_type: str
    processed: int
    has_more: bool

    model_config = ConfigDict(extra="forbid")


class ProcessNextEnvelope(BaseModel):
    data: ProcessNextData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class MessageOutcomeData(BaseModel):
    message_id: int
    object_type: str | None
    ok: bool
    processed: int = 0
    has_more: bool = False
    requeued: bool = False
    error: str | None = None
    acked: bool = True

    model_config = ConfigDict(extra="forbid")


class DispatchData(BaseModel):
    outcomes: list[MessageOutcomeData]
    enqueued_object_types: list[str]
    run_id: int | None
    skipped_reason: str | None
    failed_count: int
    requeued_count: int

    model_config = ConfigDict(extra="forbid")


class DispatchEnvelope(BaseModel):
    data: DispatchData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class ManagedWebhookRequest(BaseModel):
    url: str = Field(min_length=1, max_length=2048)

    model_config = ConfigDict(extra="forbid")


class ManagedWebhookData(BaseModel):
    id: int
    account_id: str
    url: str
    platform_webhook_id: str
    enabled_events: list[str]
    created: bool

    model_config = ConfigDict(extra="forbid")


class ManagedWebhookEnvelope(BaseModel):
    data: ManagedWebhookData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class WebhookAppliedData(BaseModel):
    event_id: str
    event_type: str
    object_type: str
    object_id: str
    action: str

    model_config = ConfigDict(extra="forbid")


class WebhookAppliedEnvelope(BaseModel):
    data: WebhookAppliedData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")
