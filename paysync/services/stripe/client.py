from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlencode

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from paysync.logging_utils import structured_log
from paysync.services.stripe.errors import (
    StripeApiError,
    StripeNotFoundError,
    StripePermissionError,
    StripeRateLimitError,
)

logger = logging.getLogger(__name__)

_USER_AGENT = "paysync/0.1"


def encode_form_params(params: Mapping[str, Any] | None, *, prefix: str | None = None) -> list[tuple[str, str]]:
    """Flatten nested params into the bracketed form keys the API expects.

    `{"created": {"gte": 5}, "expand": ["data.customer"]}` becomes
    `[("created[gte]", "5"), ("expand[]", "data.customer")]`.
    """
    pairs: list[tuple[str, str]] = []
    for key, value in (params or {}).items():
        if value is None:
            continue
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, Mapping):
            pairs.extend(encode_form_params(value, prefix=name))
        elif isinstance(value, (list, tuple)):
            pairs.extend((f"{name}[]", _scalar(item)) for item in value)
        else:
            pairs.append((name, _scalar(value)))
    return pairs


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _error_from_response(response: httpx.Response) -> StripeApiError:
    message = f"API error {response.status_code}"
    code = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        message = str(error.get("message") or message)
        code = error.get("code") or error.get("type")
    status = response.status_code
    if status in {401, 403}:
        return StripePermissionError(message, status_code=status, code=code)
    if status == 404:
        return StripeNotFoundError(message, status_code=status, code=code)
    if status == 429:
        return StripeRateLimitError(message, status_code=status, code=code)
    return StripeApiError(message, status_code=status, code=code)


class StripeClient:
    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str,
        api_version: str | None = None,
        timeout_seconds: float = 20.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version
        self._timeout_seconds = max(1.0, float(timeout_seconds))
        self._http_client = http_client

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "User-Agent": _USER_AGENT,
        }
        if self._api_version:
            headers["Stripe-Version"] = self._api_version
        return headers

    async def get(self, path: str, *, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, *, data: Mapping[str, Any] | None = None) -> dict[str, Any]:
        return await self._request("POST", path, data=data)

    @retry(
        retry=retry_if_exception_type((httpx.NetworkError, httpx.TimeoutException)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _send(self, method: str, url: str, request_kwargs: dict[str, Any]) -> httpx.Response:
        # Only transport failures retry here; HTTP error statuses go back to the queue.
        if self._http_client is not None:
            return await self._http_client.request(method, url, **request_kwargs)
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            return await client.request(method, url, **request_kwargs)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = self._headers()
        request_kwargs: dict[str, Any] = {"headers": headers}
        if params:
            request_kwargs["params"] = encode_form_params(params)
        if data is not None:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            request_kwargs["content"] = urlencode(encode_form_params(data))

        response = await self._send(method, url, request_kwargs)
        if response.status_code >= 400:
            error = _error_from_response(response)
            structured_log(
                logger,
                "warning",
                "stripe.request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                error_code=error.code,
            )
            raise error
        payload = response.json()
        if not isinstance(payload, dict):
            raise StripeApiError(f"Unexpected response body for {path}.", status_code=response.status_code)
        return payload
