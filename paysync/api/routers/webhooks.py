from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from paysync.api.errors import ApiException
from paysync.api.responses import success_payload
from paysync.api.runtime_deps import get_webhook_processor
from paysync.api.schemas import WebhookAppliedEnvelope
from paysync.logging_utils import structured_log
from paysync.services.webhooks.errors import (
    MalformedEventError,
    SignatureInvalidError,
    UnsupportedEventTypeError,
)
from paysync.services.webhooks.processor import WebhookProcessor
from paysync.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["api-webhooks"])


@router.post(
    "",
    response_model=WebhookAppliedEnvelope,
)
async def receive_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    raw_payload = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)
    try:
        result = await processor.verify_and_route(raw_payload, signature)
    except SignatureInvalidError as exc:
        structured_log(logger, "warning", "webhooks.signature_rejected", reason=str(exc))
        raise ApiException(
            status_code=400,
            code="signature_invalid",
            message="Webhook signature verification failed.",
        ) from exc
    except UnsupportedEventTypeError as exc:
        raise ApiException(
            status_code=400,
            code="unsupported_event_type",
            message=str(exc),
            details={"event_type": exc.event_type},
        ) from exc
    except MalformedEventError as exc:
        raise ApiException(
            status_code=400,
            code="malformed_event",
            message=str(exc),
        ) from exc
    return success_payload(
        request,
        data={
            "event_id": result.event_id,
            "event_type": result.event_type,
            "object_type": result.object_type,
            "object_id": result.object_id,
            "action": result.action,
        },
    )
