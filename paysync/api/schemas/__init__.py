from paysync.api.schemas.common import ApiErrorData, ApiErrorEnvelope, ApiMeta
from paysync.api.schemas.sync import (
    DispatchEnvelope,
    ManagedWebhookEnvelope,
    ManagedWebhookRequest,
    ObjectTypesEnvelope,
    ProcessNextEnvelope,
    ProcessNextRequest,
    SyncRunDetailEnvelope,
    SyncRunsListEnvelope,
    WebhookAppliedEnvelope,
)

__all__ = [
    "ApiErrorData",
    "ApiErrorEnvelope",
    "ApiMeta",
    "DispatchEnvelope",
    "ManagedWebhookEnvelope",
    "ManagedWebhookRequest",
    "ObjectTypesEnvelope",
    "ProcessNextEnvelope",
    "ProcessNextRequest",
    "SyncRunDetailEnvelope",
    "SyncRunsListEnvelope",
    "WebhookAppliedEnvelope",
]
