from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import logging
from typing import Any, Protocol

from paysync.logging_utils import structured_log
from paysync.services.stripe.client import StripeClient
from paysync.services.stripe.errors import StripeNotFoundError
from paysync.services.sync.object_types import ObjectTypeRegistry

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class SourcePage:
    items: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False


class ObjectSource(Protocol):
    async def list_page(
        self,
        object_type: str,
        *,
        created_gte: int | None,
        starting_after: str | None,
        parent_id: str | None = None,
    ) -> SourcePage: ...

    async def retrieve(self, object_type: str, object_id: str) -> dict[str, Any] | None: ...

    async def get_account(self) -> dict[str, Any]: ...

    async def create_webhook_endpoint(self, url: str, enabled_events: Sequence[str]) -> dict[str, Any]: ...


class StripeObjectSource:
    def __init__(self, client: StripeClient, registry: ObjectTypeRegistry, *, page_size: int = MAX_PAGE_SIZE) -> None:
        self._client = client
        self._registry = registry
        self._page_size = min(MAX_PAGE_SIZE, max(1, int(page_size)))

    async def list_page(
        self,
        object_type: str,
        *,
        created_gte: int | None,
        starting_after: str | None,
        parent_id: str | None = None,
    ) -> SourcePage:
        config = self._registry.get(object_type)
        if config.parent_type is not None:
            if not parent_id:
                raise ValueError(f"Object type {object_type!r} needs a parent id to list.")
            path = config.list_path.format(parent_id=parent_id)
        else:
            path = config.list_path
        params: dict[str, Any] = dict(config.list_params)
        params["limit"] = self._page_size
        if created_gte is not None and config.supports_created_filter:
            params["created"] = {"gte": int(created_gte)}
        if starting_after:
            params["starting_after"] = starting_after
        payload = await self._client.get(path, params=params)
        items = [item for item in payload.get("data") or [] if isinstance(item, dict)]
        has_more = bool(payload.get("has_more"))
        structured_log(
            logger,
            "debug",
            "stripe.page_fetched",
            object_type=object_type,
            parent_id=parent_id,
            item_count=len(items),
            has_more=has_more,
        )
        return SourcePage(items=items, has_more=has_more)

    async def retrieve(self, object_type: str, object_id: str) -> dict[str, Any] | None:
        config = self._registry.get(object_type)
        if config.retrieve_path is None:
            return None
        try:
            return await self._client.get(config.retrieve_path.format(id=object_id))
        except StripeNotFoundError:
            return None

    async def get_account(self) -> dict[str, Any]:
        return await self._client.get("/v1/account")

    async def create_webhook_endpoint(self, url: str, enabled_events: Sequence[str]) -> dict[str, Any]:
        return await self._client.post(
            "/v1/webhook_endpoints",
            data={"url": url, "enabled_events": list(enabled_events)},
        )
