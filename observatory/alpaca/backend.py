"""Dispatch backends — the transport seam under the connection manager and dispatcher.

Any implementation (network, simulated, test fake) implements
:class:`DispatchBackend`.  The backend is chosen once when the hub is
constructed; nothing swaps it at runtime.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Awaitable, TypeVar

import httpx

from observatory.alpaca.client import DEFAULT_TIMEOUT, AlpacaClient
from observatory.devices.models import Device
from observatory.errors import RemoteCallError, RemoteErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DispatchBackend(abc.ABC):
    """Abstract interface for issuing Alpaca calls against a device."""

    @abc.abstractmethod
    async def get(
        self,
        device: Device,
        action: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Read *action* (a property) and return its decoded value."""
        raise NotImplementedError

    @abc.abstractmethod
    async def put(
        self,
        device: Device,
        action: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Write a property or invoke a method with named *params*."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_image_bytes(self, device: Device, timeout: float | None = None) -> bytes:
        """Return the raw ImageBytes payload of the last captured image."""
        raise NotImplementedError

    async def device_state(self, device: Device, timeout: float | None = None) -> dict[str, Any] | None:
        """Return ``devicestate`` as a flat mapping, or ``None`` if unsupported."""
        return None

    async def aclose(self) -> None:
        """Release transport resources."""


class AlpacaBackend(DispatchBackend):
    """Network backend: one :class:`AlpacaClient` per device endpoint.

    All clients share a single :class:`httpx.AsyncClient` for connection
    pooling and keep-alive.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        client_id: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout = timeout
        self.client_id = client_id
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._clients: dict[str, AlpacaClient] = {}

    def client_for(self, device: Device) -> AlpacaClient:
        client = self._clients.get(device.endpoint)
        if client is None:
            client = AlpacaClient(
                device.endpoint,
                client=self._http,
                client_id=self.client_id,
                timeout=self.timeout,
            )
            self._clients[device.endpoint] = client
        return client

    async def get(self, device, action, params=None, timeout=None):
        return await self.client_for(device).get(action, params, timeout)

    async def put(self, device, action, params=None, timeout=None):
        return await self.client_for(device).put(action, params, timeout)

    async def get_image_bytes(self, device, timeout=None):
        return await self.client_for(device).get_image_bytes(timeout)

    async def device_state(self, device, timeout=None):
        return await self.client_for(device).device_state(timeout)

    async def aclose(self) -> None:
        self._clients.clear()
        if self._owns_http:
            await self._http.aclose()


async def bounded(awaitable: Awaitable[T], timeout: float | None, what: str = "remote call") -> T:
    """Await *awaitable* with a hard deadline of *timeout* seconds.

    Raises:
        RemoteCallError: ``kind=TIMEOUT`` when the deadline passes.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise RemoteCallError(
            f"{what} timed out after {timeout}s", RemoteErrorKind.TIMEOUT,
        ) from exc
