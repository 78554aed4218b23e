from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import pytest

from paysync.services.accounts import AccountResolver
from paysync.services.sync.event_routes import EventRouteTable
from paysync.services.webhooks.errors import (
    MalformedEventError,
    SignatureInvalidError,
    UnsupportedEventTypeError,
)
from paysync.services.webhooks.processor import (
    ACTION_DELETED,
    ACTION_SKIPPED_STALE,
    ACTION_UPSERTED,
    WebhookProcessor,
)
from paysync.services.webhooks.signature import (
    build_signature_header,
    compute_signature,
    parse_signature_header,
    verify_signature,
)
from tests.unit.fakes import (
    FakeEntityStore,
    FakeObjectSource,
    InMemorySyncStateRepository,
    event,
    small_registry,
)

SECRET = "whsec_test_secret"
SIGNED_AT = 1_790_000_000


def _payload(document: dict) -> bytes:
    return json.dumps(document).encode("utf-8")


def _processor(entity_store: FakeEntityStore) -> WebhookProcessor:
    repository = InMemorySyncStateRepository()
    return WebhookProcessor(
        routes=EventRouteTable.from_registry(small_registry()),
        entity_store=entity_store,
        accounts=AccountResolver(repository, FakeObjectSource(), account_id="acct_test"),
        secret=SECRET,
        tolerance_seconds=300,
    )


def test_verify_signature_accepts_any_matching_v1() -> None:
    payload = b'{"id": "evt_1"}'
    good = compute_signature(payload, secret=SECRET, timestamp=SIGNED_AT)
    header = f"t={SIGNED_AT},v1=deadbeef,v1={good},v0=ignored"

    assert parse_signature_header(header) == (SIGNED_AT, ["deadbeef", good])
    assert verify_signature(payload, header, secret=SECRET, tolerance_seconds=300, now=SIGNED_AT + 10) == SIGNED_AT


@pytest.mark.parametrize(
    "header",
    [
        None,
        "",
        "v1=abc",
        f"t={SIGNED_AT}",
        "t=soon,v1=abc",
        f"t={SIGNED_AT},v1=0000",
    ],
)
def test_verify_signature_rejects_bad_headers(header) -> None:
    with pytest.raises(SignatureInvalidError):
        verify_signature(b"{}", header, secret=SECRET, tolerance_seconds=300, now=SIGNED_AT)


def test_verify_signature_rejects_tampering_and_replays() -> None:
    payload = b'{"id": "evt_1"}'
    header = build_signature_header(payload, secret=SECRET, timestamp=SIGNED_AT)

    with pytest.raises(SignatureInvalidError):
        verify_signature(b'{"id": "evt_2"}', header, secret=SECRET, tolerance_seconds=300, now=SIGNED_AT)
    with pytest.raises(SignatureInvalidError):
        verify_signature(payload, header, secret="whsec_other", tolerance_seconds=300, now=SIGNED_AT)
    with pytest.raises(SignatureInvalidError, match="tolerance"):
        verify_signature(payload, header, secret=SECRET, tolerance_seconds=300, now=SIGNED_AT + 301)
    with pytest.raises(SignatureInvalidError, match="secret"):
        verify_signature(payload, header, secret="", tolerance_seconds=300, now=SIGNED_AT)


@pytest.mark.asyncio
async def test_upsert_event_writes_embedded_object() -> None:
    entity_store = FakeEntityStore()
    payload = _payload(event("evt_1", "customer.updated", "cus_1", SIGNED_AT))
    header = build_signature_header(payload, secret=SECRET, timestamp=SIGNED_AT)

    result = await _processor(entity_store).verify_and_route(payload, header, now=SIGNED_AT)

    assert result.action == ACTION_UPSERTED
    assert (result.event_id, result.object_type, result.object_id) == ("evt_1", "customers", "cus_1")
    assert entity_store.rows[("customers", "cus_1")]["object"] == "customer"
    assert entity_store.synced_at[("customers", "cus_1")] == datetime.fromtimestamp(SIGNED_AT, tz=timezone.utc)


@pytest.mark.asyncio
async def test_hard_delete_event_removes_entity_but_cancellation_does_not() -> None:
    entity_store = FakeEntityStore()
    await entity_store.upsert("customers", {"id": "cus_1"}, account_id="acct_test")
    processor = _processor(entity_store)

    deleted = _payload(event("evt_1", "customer.deleted", "cus_1", SIGNED_AT))
    result = await processor.verify_and_route(
        deleted,
        build_signature_header(deleted, secret=SECRET, timestamp=SIGNED_AT),
        now=SIGNED_AT,
    )
    canceled = _payload(
        event("evt_2", "customer.subscription.deleted", "sub_1", SIGNED_AT, object_name="subscription")
    )
    canceled_result = await processor.verify_and_route(
        canceled,
        build_signature_header(canceled, secret=SECRET, timestamp=SIGNED_AT),
        now=SIGNED_AT,
    )

    assert result.action == ACTION_DELETED
    assert ("customers", "cus_1") not in entity_store.rows
    assert canceled_result.action == ACTION_UPSERTED
    assert ("subscriptions", "sub_1") in entity_store.rows


@pytest.mark.asyncio
async def test_older_event_does_not_overwrite_newer_copy() -> None:
    entity_store = FakeEntityStore()
    newer = datetime.fromtimestamp(SIGNED_AT, tz=timezone.utc) + timedelta(minutes=5)
    await entity_store.upsert("customers", {"id": "cus_1", "name": "Newer"}, account_id="acct_test", synced_at=newer)
    payload = _payload(event("evt_1", "customer.updated", "cus_1", SIGNED_AT))

    result = await _processor(entity_store).verify_and_route(
        payload,
        build_signature_header(payload, secret=SECRET, timestamp=SIGNED_AT),
        now=SIGNED_AT,
    )

    assert result.action == ACTION_SKIPPED_STALE
    assert entity_store.rows[("customers", "cus_1")]["name"] == "Newer"


@pytest.mark.asyncio
async def test_nothing_is_written_when_signature_fails() -> None:
    entity_store = FakeEntityStore()
    payload = _payload(event("evt_1", "customer.updated", "cus_1", SIGNED_AT))
    header = build_signature_header(payload, secret="whsec_wrong", timestamp=SIGNED_AT)

    with pytest.raises(SignatureInvalidError):
        await _processor(entity_store).verify_and_route(payload, header, now=SIGNED_AT)

    assert entity_store.rows == {}


@pytest.mark.asyncio
async def test_unknown_event_type_is_an_error() -> None:
    entity_store = FakeEntityStore()
    payload = _payload(event("evt_1", "balance.available", "bal_1", SIGNED_AT, object_name="balance"))

    with pytest.raises(UnsupportedEventTypeError) as exc_info:
        await _processor(entity_store).verify_and_route(
            payload,
            build_signature_header(payload, secret=SECRET, timestamp=SIGNED_AT),
            now=SIGNED_AT,
        )

    assert exc_info.value.event_type == "balance.available"
    assert entity_store.rows == {}


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"[1, 2]",
        b'{"id": "evt_1"}',
        b'{"id": "evt_1", "type": "customer.updated", "data": {}}',
    ],
)
@pytest.mark.asyncio
async def test_malformed_payloads_are_rejected(payload: bytes) -> None:
    entity_store = FakeEntityStore()

    with pytest.raises(MalformedEventError):
        await _processor(entity_store).verify_and_route(
            payload,
            build_signature_header(payload, secret=SECRET, timestamp=SIGNED_AT),
            now=SIGNED_AT,
        )

    assert entity_store.rows == {}
