"""ServiceClient — shared httpx plumbing for the embedding gateway and cloud index."""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from threadindex.exceptions import (
    GatewayError,
    GatewayUnavailableError,
    InvalidResponseError,
    QuotaExceededError,
)

logger = logging.getLogger(__name__)

API_KEY_ENV = "THREADINDEX_API_KEY"
BASE_URL_ENV = "THREADINDEX_BASE_URL"

_STATUS_MESSAGES: dict[int, str] = {
    400: "Bad request",
    401: "Unauthorized",
    402: "Insufficient credits",
    403: "Access forbidden for this plan",
    404: "Resource not found",
    429: "Rate limit exceeded",
    500: "Internal server error",
    503: "Service temporarily unavailable",
}


class ServiceClient:
    """Authenticated JSON client for the remote indexing service.

    Every transport failure and non-2xx status raises a threadindex error:
    402 is :class:`QuotaExceededError`, 503 and connection failures
    are :class:`GatewayUnavailableError`, and unparseable bodies are
    :class:`InvalidResponseError`.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        tenant_id: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        resolved_url = base_url or os.environ.get(BASE_URL_ENV)
        if not resolved_url:
            msg = f"No service URL provided. Pass base_url= or set the {BASE_URL_ENV} variable."
            raise ValueError(msg)
        resolved_key = api_key or os.environ.get(API_KEY_ENV)
        if not resolved_key:
            msg = f"No API key provided. Pass api_key= or set the {API_KEY_ENV} variable."
            raise ValueError(msg)

        self._tenant_id = tenant_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=resolved_url.rstrip("/"),
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {resolved_key}",
                "Accept": "application/json",
            },
        )

    @property
    def tenant_id(self) -> str | None:
        """Tenant id added to request bodies, if configured."""
        return self._tenant_id

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON object body."""
        kwargs: dict[str, Any] = {"json": json, "params": params}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            msg = f"{method} {path} timed out"
            raise GatewayUnavailableError(msg) from exc
        except httpx.TransportError as exc:
            msg = f"{method} {path} failed: {exc}"
            raise GatewayUnavailableError(msg) from exc

        if response.status_code >= 400:
            raise _error_for(response)

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            msg = f"{method} {path} returned a non-JSON body"
            raise InvalidResponseError(msg, status_code=response.status_code) from exc
        if not isinstance(data, dict):
            msg = f"{method} {path} returned {type(data).__name__}, expected an object"
            raise InvalidResponseError(msg, status_code=response.status_code)
        return data

    def with_tenant(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return *payload* with ``tenant_id`` added when one is configured."""
        if self._tenant_id is not None:
            return {"tenant_id": self._tenant_id, **payload}
        return payload

    async def close(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    """Pick the most specific message the service returned."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("detail", "message", "error"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    code = response.status_code
    return _STATUS_MESSAGES.get(code, f"API error (HTTP {code})")


def _error_for(response: httpx.Response) -> GatewayError | QuotaExceededError:
    code = response.status_code
    message = _error_message(response)
    logger.debug("Service returned HTTP %d: %s", code, message)
    if code == 402:
        return QuotaExceededError(message)
    if code == 503:
        return GatewayUnavailableError(message, status_code=code)
    return GatewayError(message, status_code=code)
