from __future__ import annotations

from urllib.parse import parse_qsl

import httpx
import pytest
from tenacity import wait_none

from paysync.services.stripe.client import StripeClient, encode_form_params
from paysync.services.stripe.errors import (
    StripeApiError,
    StripeNotFoundError,
    StripePermissionError,
    StripeRateLimitError,
)
from paysync.services.stripe.source import StripeObjectSource
from paysync.services.sync.object_types import build_default_registry


def _client(handler) -> tuple[StripeClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = StripeClient(
        secret_key="sk_test_123",
        base_url="https://api.stripe.test/",
        api_version="2024-06-20",
        http_client=http_client,
    )
    return client, http_client


def test_encode_form_params_flattens_nested_values() -> None:
    pairs = encode_form_params(
        {
            "limit": 100,
            "created": {"gte": 1700000000},
            "expand": ["data.customer", "data.invoice"],
            "livemode": False,
            "starting_after": None,
        }
    )

    assert pairs == [
        ("limit", "100"),
        ("created[gte]", "1700000000"),
        ("expand[]", "data.customer"),
        ("expand[]", "data.invoice"),
        ("livemode", "false"),
    ]


@pytest.mark.asyncio
async def test_list_page_sends_filters_and_auth_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "sub_2", "created": 600}, "junk"], "has_more": True})

    client, http_client = _client(handler)
    source = StripeObjectSource(client, build_default_registry(), page_size=500)
    async with http_client:
        page = await source.list_page("subscriptions", created_gte=500, starting_after="sub_1")

    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/v1/subscriptions"
    params = dict(request.url.params.multi_items())
    assert params == {
        "status": "all",
        "limit": "100",
        "created[gte]": "500",
        "starting_after": "sub_1",
    }
    assert request.headers["Authorization"] == "Bearer sk_test_123"
    assert request.headers["Stripe-Version"] == "2024-06-20"
    assert page.items == [{"id": "sub_2", "created": 600}]
    assert page.has_more is True


@pytest.mark.asyncio
async def test_parent_scoped_listing_uses_parent_path_and_drops_created_filter() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [], "has_more": False})

    client, http_client = _client(handler)
    source = StripeObjectSource(client, build_default_registry())
    async with http_client:
        await source.list_page("payment_methods", created_gte=500, starting_after=None, parent_id="cus_9")
        with pytest.raises(ValueError):
            await source.list_page("payment_methods", created_gte=None, starting_after=None)

    assert seen[0].url.path == "/v1/customers/cus_9/payment_methods"
    assert "created[gte]" not in seen[0].url.params
    assert len(seen) == 1


@pytest.mark.parametrize(
    ("status_code", "error_type"),
    [
        (401, StripePermissionError),
        (403, StripePermissionError),
        (404, StripeNotFoundError),
        (429, StripeRateLimitError),
        (500, StripeApiError),
    ],
)
@pytest.mark.asyncio
async def test_error_statuses_map_to_typed_errors(status_code: int, error_type: type[StripeApiError]) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code,
            json={"error": {"message": "nope", "type": "invalid_request_error", "code": "resource_missing"}},
        )

    client, http_client = _client(handler)
    async with http_client:
        with pytest.raises(error_type) as exc_info:
            await client.get("/v1/customers")

    assert exc_info.value.status_code == status_code
    assert exc_info.value.code == "resource_missing"
    assert str(exc_info.value) == "nope"


@pytest.mark.asyncio
async def test_retrieve_returns_none_for_missing_objects() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/customers/cus_gone":
            return httpx.Response(404, json={"error": {"message": "No such customer"}})
        return httpx.Response(200, json={"id": "cus_1", "object": "customer"})

    client, http_client = _client(handler)
    source = StripeObjectSource(client, build_default_registry())
    async with http_client:
        assert await source.retrieve("customers", "cus_gone") is None
        assert await source.retrieve("customers", "cus_1") == {"id": "cus_1", "object": "customer"}


@pytest.mark.asyncio
async def test_create_webhook_endpoint_posts_form_body() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "we_1", "secret": "whsec_1"})

    client, http_client = _client(handler)
    source = StripeObjectSource(client, build_default_registry())
    async with http_client:
        endpoint = await source.create_webhook_endpoint(
            "https://example.test/hooks",
            ["customer.created", "customer.updated"],
        )

    assert endpoint["id"] == "we_1"
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/webhook_endpoints"
    assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
    assert parse_qsl(request.content.decode("utf-8")) == [
        ("url", "https://example.test/hooks"),
        ("enabled_events[]", "customer.created"),
        ("enabled_events[]", "customer.updated"),
    ]


@pytest.mark.asyncio
async def test_transport_errors_are_retried_but_error_statuses_are_not(monkeypatch) -> None:
    monkeypatch.setattr(StripeClient._send.retry, "wait", wait_none())
    attempts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        if request.url.path == "/v1/charges":
            return httpx.Response(500, json={"error": {"message": "boom"}})
        return httpx.Response(200, json={"id": "acct_1"})

    client, http_client = _client(handler)
    async with http_client:
        assert await client.get("/v1/account") == {"id": "acct_1"}
        with pytest.raises(StripeApiError):
            await client.get("/v1/charges")

    assert attempts == ["/v1/account", "/v1/account", "/v1/charges"]
