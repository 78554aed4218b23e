from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any

from paysync.logging_utils import structured_log
from paysync.services.accounts import AccountResolver
from paysync.services.entities.store import EntityStore
from paysync.services.sync.catchup import event_created_at
from paysync.services.sync.event_routes import EventAction, EventRouteTable
from paysync.services.webhooks.errors import MalformedEventError, UnsupportedEventTypeError
from paysync.services.webhooks.signature import verify_signature

logger = logging.getLogger(__name__)

ACTION_UPSERTED = "upserted"
ACTION_DELETED = "deleted"
ACTION_SKIPPED_STALE = "skipped_stale"


@dataclass(frozen=True)
class AppliedResult:
    event_id: str
    event_type: str
    object_type: str
    object_id: str
    action: str


def _parse_event(raw_payload: bytes) -> dict[str, Any]:
    try:
        event = json.loads(raw_payload)
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedEventError("Webhook payload is not valid JSON.") from exc
    if not isinstance(event, dict):
        raise MalformedEventError("Webhook payload is not an object.")
    if not isinstance(event.get("id"), str) or not isinstance(event.get("type"), str):
        raise MalformedEventError("Webhook payload has no event id or type.")
    return event


def _embedded_object(event: dict[str, Any]) -> dict[str, Any]:
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict) or not isinstance(obj.get("id"), str) or not obj["id"]:
        raise MalformedEventError(f"Event {event['id']} carries no object with an id.")
    return obj


class WebhookProcessor:
    def __init__(
        self,
        *,
        routes: EventRouteTable,
        entity_store: EntityStore,
        accounts: AccountResolver,
        secret: str,
        tolerance_seconds: int,
    ) -> None:
        self._routes = routes
        self._entity_store = entity_store
        self._accounts = accounts
        self._secret = secret
        self._tolerance_seconds = max(0, int(tolerance_seconds))

    async def verify_and_route(
        self,
        raw_payload: bytes,
        signature: str | None,
        *,
        now: float | None = None,
    ) -> AppliedResult:
        """Verify the signature, then apply the event to the entity store.

        Nothing is written unless verification passes. Unknown event types
        raise `UnsupportedEventTypeError` instead of being ignored.
        """
        verify_signature(
            raw_payload,
            signature,
            secret=self._secret,
            tolerance_seconds=self._tolerance_seconds,
            now=now,
        )
        event = _parse_event(raw_payload)
        event_type = event["type"]
        route = self._routes.resolve(event_type)
        if route is None:
            structured_log(
                logger,
                "warning",
                "webhooks.event_unsupported",
                event_id=event["id"],
                event_type=event_type,
            )
            raise UnsupportedEventTypeError(event_type)

        obj = _embedded_object(event)
        account_id = await self._accounts.resolve()
        if route.action == EventAction.DELETE:
            await self._entity_store.delete(route.object_type, obj["id"], account_id=account_id)
            action = ACTION_DELETED
        else:
            synced_at = event_created_at(event) or datetime.now(timezone.utc)
            written = await self._entity_store.upsert(
                route.object_type,
                obj,
                account_id=account_id,
                synced_at=synced_at,
            )
            action = ACTION_UPSERTED if written else ACTION_SKIPPED_STALE

        result = AppliedResult(
            event_id=event["id"],
            event_type=event_type,
            object_type=route.object_type,
            object_id=obj["id"],
            action=action,
        )
        structured_log(
            logger,
            "info",
            "webhooks.event_applied",
            event_id=result.event_id,
            event_type=result.event_type,
            object_type=result.object_type,
            object_id=result.object_id,
            action=result.action,
        )
        return result
