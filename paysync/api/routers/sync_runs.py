from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from paysync.api.errors import ApiException
from paysync.api.responses import success_payload
from paysync.api.routers.sync_serializers import (
    serialize_dispatch_report,
    serialize_managed_webhook,
    serialize_object_type,
    serialize_run,
    serialize_run_status,
)
from paysync.api.runtime_deps import (
    get_managed_webhook_service,
    get_queue_dispatcher,
    get_sync_engine,
)
from paysync.api.schemas import (
    DispatchEnvelope,
    ManagedWebhookEnvelope,
    ManagedWebhookRequest,
    ObjectTypesEnvelope,
    ProcessNextEnvelope,
    ProcessNextRequest,
    SyncRunDetailEnvelope,
    SyncRunsListEnvelope,
)
from paysync.services.sync.dispatcher import QueueDispatcher
from paysync.services.sync.engine import SyncEngine
from paysync.services.sync.errors import RunNotFoundError
from paysync.services.sync.types import ProcessNextOverrides
from paysync.services.webhooks.endpoints import ManagedWebhookService

router = APIRouter(prefix="/sync", tags=["api-sync"])


@router.get(
    "/object-types",
    response_model=ObjectTypesEnvelope,
)
async def list_object_types(
    request: Request,
    engine: SyncEngine = Depends(get_sync_engine),
):
    return success_payload(
        request,
        data={"object_types": [serialize_object_type(config) for config in engine.registry]},
    )


@router.get(
    "/runs",
    response_model=SyncRunsListEnvelope,
)
async def list_runs(
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    engine: SyncEngine = Depends(get_sync_engine),
):
    runs = await engine.list_runs(limit=limit)
    return success_payload(request, data={"runs": [serialize_run(run) for run in runs]})


@router.get(
    "/runs/{run_id}",
    response_model=SyncRunDetailEnvelope,
)
async def get_run(
    run_id: int,
    request: Request,
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        report = await engine.get_run_status(run_id)
    except RunNotFoundError as exc:
        raise ApiException(
            status_code=404,
            code="run_not_found",
            message=str(exc),
        ) from exc
    return success_payload(request, data=serialize_run_status(report))


@router.post(
    "/process",
    response_model=ProcessNextEnvelope,
)
async def process_next(
    payload: ProcessNextRequest,
    request: Request,
    engine: SyncEngine = Depends(get_sync_engine),
):
    try:
        result = await engine.process_next(
            payload.object_type,
            ProcessNextOverrides(
                run_id=payload.run_id,
                triggered_by=payload.triggered_by,
                cursor=payload.cursor,
            ),
        )
    except RunNotFoundError as exc:
        raise ApiException(
            status_code=404,
            code="run_not_found",
            message=str(exc),
        ) from exc
    return success_payload(
        request,
        data={
            "object_type": payload.object_type,
            "processed": result.processed,
            "has_more": result.has_more,
        },
    )


@router.post(
    "/dispatch",
    response_model=DispatchEnvelope,
)
async def dispatch_once(
    request: Request,
    dispatcher: QueueDispatcher = Depends(get_queue_dispatcher),
):
    report = await dispatcher.run_once()
    return success_payload(request, data=serialize_dispatch_report(report))


@router.post(
    "/webhooks/managed",
    response_model=ManagedWebhookEnvelope,
)
async def ensure_managed_webhook(
    payload: ManagedWebhookRequest,
    request: Request,
    service: ManagedWebhookService = Depends(get_managed_webhook_service),
):
    try:
        record = await service.find_or_create(payload.url)
    except ValueError as exc:
        raise ApiException(
            status_code=400,
            code="invalid_webhook_url",
            message=str(exc),
        ) from exc
    return success_payload(request, data=serialize_managed_webhook(record))
