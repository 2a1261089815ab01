"""Alpaca REST client.

Uses httpx for async HTTP.  One :class:`AlpacaClient` talks to one device
endpoint (``{server}/api/v1/{type}/{index}``); :class:`ManagementClient`
talks to a server's management API.  Neither retries: retry policy belongs
to the caller because device commands are not idempotent.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import random
from typing import Any

import httpx

from observatory.errors import RemoteCallError, RemoteErrorKind

logger = logging.getLogger(__name__)

IMAGEBYTES_MIME = "application/imagebytes"
DEFAULT_TIMEOUT = 10.0


def _format_value(value: Any) -> str:
    # Alpaca expects "True"/"False" for booleans in form bodies.
    if isinstance(value, bool):
        return "True" if value else "False"
    return str(value)


class _AlpacaHTTP:
    """Shared request/response handling for device and management calls."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        client_id: int | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client_id = client_id if client_id is not None else random.randint(1, 65535)
        self._owns_client = client is None
        self._client: httpx.AsyncClient = client or httpx.AsyncClient(timeout=timeout)
        self._transaction_ids = itertools.count(1)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Request plumbing
    # ------------------------------------------------------------------ #

    def _url(self, action: str) -> str:
        return f"{self.base_url}/{action.lower()}"

    def _ids(self) -> dict[str, str]:
        return {
            "ClientID": str(self.client_id),
            "ClientTransactionID": str(next(self._transaction_ids)),
        }

    async def _send(
        self,
        method: str,
        url: str,
        *,
        timeout: float | None,
        **kwargs: Any,
    ) -> httpx.Response:
        limit = self.timeout if timeout is None else timeout
        logger.debug("Alpaca %s %s", method, url)
        try:
            return await asyncio.wait_for(
                self._client.request(method, url, timeout=limit, **kwargs),
                timeout=limit,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise RemoteCallError(
                f"Request timed out after {limit}s",
                RemoteErrorKind.TIMEOUT,
                url=url,
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteCallError(
                f"Cannot reach {url}: {exc}",
                RemoteErrorKind.TRANSPORT,
                url=url,
            ) from exc

    @staticmethod
    def _decode(response: httpx.Response, url: str) -> Any:
        body: Any = None
        try:
            body = response.json()
        except ValueError:
            if response.status_code < 400:
                raise RemoteCallError(
                    "Response is not valid JSON",
                    RemoteErrorKind.PROTOCOL,
                    url=url,
                    status=response.status_code,
                ) from None

        if response.status_code >= 400:
            message = f"HTTP error {response.status_code}"
            if isinstance(body, dict) and body.get("ErrorMessage"):
                message = f"{message}: {body['ErrorMessage']}"
            elif response.text:
                message = f"{message}: {response.text.strip()[:200]}"
            raise RemoteCallError(
                message,
                RemoteErrorKind.TRANSPORT,
                url=url,
                status=response.status_code,
            )

        if not isinstance(body, dict):
            raise RemoteCallError(
                "Unexpected response shape",
                RemoteErrorKind.PROTOCOL,
                url=url,
                status=response.status_code,
            )
        error_number = body.get("ErrorNumber") or 0
        if error_number:
            raise RemoteCallError(
                body.get("ErrorMessage") or f"Error {error_number}",
                RemoteErrorKind.PROTOCOL,
                url=url,
                status=response.status_code,
                error_number=int(error_number),
            )
        return body.get("Value")

    async def _get(self, action: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        url = self._url(action)
        query = {k: _format_value(v) for k, v in (params or {}).items()}
        query.update(self._ids())
        response = await self._send("GET", url, params=query, timeout=timeout,
                                    headers={"Accept": "application/json"})
        return self._decode(response, url)

    async def _put(self, action: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        url = self._url(action)
        form = {k: _format_value(v) for k, v in (params or {}).items() if v is not None}
        form.update(self._ids())
        response = await self._send("PUT", url, data=form, timeout=timeout,
                                    headers={"Accept": "application/json"})
        return self._decode(response, url)


class AlpacaClient(_AlpacaHTTP):
    """Client for a single device endpoint.

    Args:
        endpoint:  Device base URL, e.g. ``http://host:11111/api/v1/camera/0``.
        client:    Shared :class:`httpx.AsyncClient`; one is created (and
                   owned) when omitted.
        client_id: Alpaca ``ClientID``; random when omitted.
        timeout:   Default per-call deadline in seconds.
    """

    def __init__(
        self,
        endpoint: str,
        client: httpx.AsyncClient | None = None,
        client_id: int | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(endpoint, client=client, client_id=client_id, timeout=timeout)

    @property
    def endpoint(self) -> str:
        return self.base_url

    async def get(self, action: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        """GET ``{endpoint}/{action}`` and return its ``Value``."""
        return await self._get(action, params, timeout)

    async def put(self, action: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        """PUT ``{endpoint}/{action}`` with form-encoded *params*."""
        return await self._put(action, params, timeout)

    async def get_image_bytes(self, timeout: float | None = None) -> bytes:
        """Fetch ``imagearray`` in ImageBytes format and return the raw payload."""
        url = self._url("imagearray")
        response = await self._send(
            "GET", url, params=self._ids(), timeout=timeout,
            headers={"Accept": IMAGEBYTES_MIME},
        )
        content_type = response.headers.get("content-type", "")
        if response.status_code >= 400 or not content_type.startswith(IMAGEBYTES_MIME):
            # Either an HTTP error or a JSON answer from a device without
            # ImageBytes support; _decode raises for both.
            self._decode(response, url)
            raise RemoteCallError(
                f"Device did not return {IMAGEBYTES_MIME} (got {content_type or 'no content type'})",
                RemoteErrorKind.PROTOCOL,
                url=url,
                status=response.status_code,
            )
        return response.content

    async def device_state(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Read ``devicestate`` into ``{lower-case name: value}``.

        Returns ``None`` when the device reports nothing usable.
        """
        result = await self.get("devicestate", timeout=timeout)
        state: dict[str, Any] = {}
        if isinstance(result, list):
            for item in result:
                if isinstance(item, dict) and "Name" in item and "Value" in item:
                    state[str(item["Name"]).lower()] = item["Value"]
        elif isinstance(result, dict):
            state = {str(k).lower(): v for k, v in result.items()}
        return state or None


class ManagementClient(_AlpacaHTTP):
    """Client for a server's ``/management`` API."""

    def __init__(
        self,
        server_url: str,
        client: httpx.AsyncClient | None = None,
        client_id: int | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(f"{server_url.rstrip('/')}/management", client=client,
                         client_id=client_id, timeout=timeout)

    async def api_versions(self, timeout: float | None = None) -> list[int]:
        result = await self._get("apiversions", timeout=timeout)
        return [int(v) for v in result] if isinstance(result, list) else []

    async def description(self, timeout: float | None = None) -> dict[str, Any]:
        """``management/v1/description`` — server name, manufacturer, location."""
        result = await self._get("v1/description", timeout=timeout)
        return result if isinstance(result, dict) else {}

    async def configured_devices(self, timeout: float | None = None) -> list[dict[str, Any]]:
        """``management/v1/configureddevices`` — one entry per served device."""
        result = await self._get("v1/configureddevices", timeout=timeout)
        return [d for d in result if isinstance(d, dict)] if isinstance(result, list) else []
