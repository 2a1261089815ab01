"""Application root: wires the registry, lifecycle, dispatcher and discovery.

There is no module-level store; each :class:`DeviceHub` owns its own
collaborators and is passed to whatever needs it.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Sequence

import httpx

from observatory.alpaca.backend import AlpacaBackend, DispatchBackend
from observatory.alpaca.dispatcher import CommandDispatcher
from observatory.alpaca.imagebytes import ImageArray
from observatory.alpaca.polling import PropertyPoller
from observatory.config import ObservatoryConfig
from observatory.devices.connection import ConnectionManager
from observatory.devices.models import ConnectionState, Device, DeviceType
from observatory.devices.registry import DeviceRegistry, DeviceSnapshot
from observatory.discovery.service import DiscoveryService, ServerDescriptor
from observatory.discovery.udp import AlpacaBroadcastScanner
from observatory.events import EventBus, EventKey, Handler

logger = logging.getLogger(__name__)


class DeviceHub:
    """Single entry point for a presentation layer.

    Args:
        config:      Settings; defaults to ``ObservatoryConfig()``.
        backend:     Dispatch backend.  Defaults to the network
                     :class:`AlpacaBackend`; pass ``SimulatedBackend()`` to
                     run offline.
        scanner:     UDP scanner; defaults to one built from *config*.
        http_client: Shared ``httpx.AsyncClient`` for discovery and the
                     default backend.
    """

    def __init__(
        self,
        config: ObservatoryConfig | None = None,
        backend: DispatchBackend | None = None,
        scanner: AlpacaBroadcastScanner | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or ObservatoryConfig()
        cfg = self.config
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=cfg.request_timeout)

        self.bus = EventBus()
        self.registry = DeviceRegistry(self.bus)
        self.backend = backend or AlpacaBackend(
            timeout=cfg.request_timeout, client_id=cfg.client_id, http_client=self._http,
        )
        self.connections = ConnectionManager(self.registry, self.bus, self.backend, cfg.request_timeout)
        self.dispatcher = CommandDispatcher(self.registry, self.bus, self.backend, cfg.request_timeout)
        self.poller: PropertyPoller | None = None
        if cfg.poll_enabled:
            self.poller = PropertyPoller(self.registry, self.bus, self.dispatcher, cfg.poll_interval)
        self.discovery = DiscoveryService(
            self.registry,
            self.bus,
            scanner=scanner or AlpacaBroadcastScanner(cfg.discovery_port, cfg.broadcast_address),
            hosts=cfg.discovery_hosts,
            scan_timeout=cfg.discovery_timeout,
            timeout=cfg.request_timeout,
            proxy_base=cfg.proxy_base,
            auto_register=cfg.auto_register,
            http_client=self._http,
        )

    async def __aenter__(self) -> DeviceHub:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop polling, wait for pending disconnects and release HTTP resources."""
        if self.poller is not None:
            await self.poller.stop()
        await self.connections.aclose()
        await self.discovery.aclose()
        await self.backend.aclose()
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------ #
    # Registry
    # ------------------------------------------------------------------ #

    def get_device(self, device_id: str) -> Device | None:
        return self.registry.get(device_id)

    def find_device(
        self,
        device_type: str | DeviceType | None = None,
        index: int | None = None,
        predicate: Callable[[Device], bool] | None = None,
    ) -> Device | None:
        return self.registry.find_by(device_type=device_type, index=index, predicate=predicate)

    def list_devices(self) -> DeviceSnapshot:
        return self.registry.list_devices()

    def resolve_device_id(self, reference: str | int, device_type: str | DeviceType | None = None) -> str:
        """Turn a reference into a registered id (see ``DeviceRegistry.resolve``).

        Raises:
            UnknownDeviceError: nothing matched.
        """
        return self.registry.resolve(reference, device_type).id

    def register_device(
        self,
        device_type: str | DeviceType,
        index: int,
        endpoint: str,
        name: str = "",
        device_id: str | None = None,
    ) -> Device:
        """Register a device by hand; ids default to ``manual-<hex>``.

        Raises:
            DuplicateDeviceError: *device_id* is already registered.
        """
        device = Device(
            id=device_id or f"manual-{uuid.uuid4().hex[:8]}",
            type=device_type,
            index=index,
            endpoint=endpoint,
            name=name,
        )
        return self.registry.add(device)

    def remove_device(self, device_id: str) -> bool:
        return self.registry.remove(device_id)

    def update_properties(self, device_id: str, partial: dict[str, Any]) -> bool:
        return self.registry.update_properties(device_id, partial)

    # ------------------------------------------------------------------ #
    # Lifecycle and commands
    # ------------------------------------------------------------------ #

    async def connect(self, device_id: str, timeout: float | None = None) -> ConnectionState:
        return await self.connections.connect(device_id, timeout)

    async def disconnect(self, device_id: str, timeout: float | None = None) -> ConnectionState:
        return await self.connections.disconnect(device_id, timeout)

    async def call_method(
        self,
        device_id: str,
        name: str,
        args: Sequence[Any] | dict[str, Any] = (),
        *,
        timeout: float | None = None,
    ) -> Any:
        return await self.dispatcher.call_method(device_id, name, args, timeout=timeout)

    async def set_property(self, device_id: str, name: str, value: Any, *, timeout: float | None = None) -> None:
        await self.dispatcher.set_property(device_id, name, value, timeout=timeout)

    async def get_property(self, device_id: str, name: str, *, timeout: float | None = None) -> Any:
        return await self.dispatcher.get_property(device_id, name, timeout=timeout)

    async def download_image(self, device_id: str, *, timeout: float | None = None) -> ImageArray:
        return await self.dispatcher.download_image(device_id, timeout=timeout)

    # ------------------------------------------------------------------ #
    # Discovery
    # ------------------------------------------------------------------ #

    async def discover(self) -> list[ServerDescriptor]:
        return await self.discovery.discover()

    async def add_manual(self, address: str, port: int | str) -> ServerDescriptor:
        return await self.discovery.add_manual(address, port)

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #

    def on(self, key: EventKey, handler: Handler) -> Callable[[], None]:
        return self.bus.on(key, handler)

    def off(self, key: EventKey, handler: Handler) -> None:
        self.bus.off(key, handler)
