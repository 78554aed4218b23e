from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import text

from paysync.services.accounts import AccountResolver
from paysync.services.sync.event_routes import EventRouteTable
from paysync.services.sync.repository import PostgresSyncStateRepository
from paysync.services.webhooks.endpoints import ManagedWebhookService
from tests.unit.fakes import FakeObjectSource, small_registry


def _service(session_factory, source: FakeObjectSource) -> ManagedWebhookService:
    repository = PostgresSyncStateRepository(session_factory)
    return ManagedWebhookService(
        session_factory,
        source=source,
        accounts=AccountResolver(repository, source, account_id="acct_integration"),
        routes=EventRouteTable.from_registry(small_registry()),
    )


@pytest.mark.integration
@pytest.mark.db
@pytest.mark.asyncio
async def test_find_or_create_registers_endpoint_once(session_factory) -> None:
    source = FakeObjectSource()
    service = _service(session_factory, source)

    records = await asyncio.gather(*(service.find_or_create("https://example.test/hooks") for _ in range(3)))

    assert len(source.created_endpoints) == 1
    assert len({record.id for record in records}) == 1
    assert sum(record.created for record in records) == 1
    url, enabled_events = source.created_endpoints[0]
    assert url == "https://example.test/hooks"
    assert "customer.deleted" in enabled_events
    assert enabled_events == sorted(enabled_events)

    async with session_factory() as session:
        count = await session.scalar(text("SELECT count(*) FROM managed_webhooks"))
    assert count == 1


@pytest.mark.integration
@pytest.mark.db
@pytest.mark.asyncio
async def test_find_or_create_rejects_blank_url(session_factory) -> None:
    service = _service(session_factory, FakeObjectSource())

    with pytest.raises(ValueError):
        await service.find_or_create("   ")
