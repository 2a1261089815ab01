"""Discovery of Alpaca servers and their configured devices.

Automatic scans (UDP broadcast plus configured hosts) and manual entries go
through the same describe-and-merge path.  Descriptors are keyed by
``address:port``; a later descriptor supersedes an earlier one, except that a
manual entry keeps its manual tag.
"""

from __future__ import annotations

import asyncio
import dataclasses
import ipaddress
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

import httpx

from observatory.alpaca.client import DEFAULT_TIMEOUT, ManagementClient
from observatory.devices.models import Device, DeviceType, make_device_id
from observatory.devices.registry import DeviceRegistry
from observatory.discovery.udp import AlpacaBroadcastScanner
from observatory.errors import DiscoveryError, DuplicateDeviceError, RemoteCallError
from observatory.events import DeviceError, EventBus

logger = logging.getLogger(__name__)

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.?$"
)
_PROXY_RE = re.compile(r"/proxy/([^/]+)/(\d+)(?:/|$)")


def server_url(address: str, port: int) -> str:
    host = f"[{address}]" if ":" in address else address
    return f"http://{host}:{port}"


def proxy_url(proxy_base: str, address: str, port: int) -> str:
    """Same-origin rewrite of a server address: ``{proxy_base}/proxy/{address}/{port}``."""
    return f"{proxy_base.rstrip('/')}/proxy/{address}/{port}"


def parse_proxy_url(url: str) -> tuple[str, int] | None:
    """Recover ``(address, port)`` from a URL built by :func:`proxy_url`."""
    match = _PROXY_RE.search(url)
    if match is None:
        return None
    return match.group(1), int(match.group(2))


def validate_address(address: Any, port: Any) -> tuple[str, int]:
    """Check *address*/*port* syntactically.

    Raises:
        DiscoveryError: invalid IP address / host name, or port outside 1..65535.
    """
    if not isinstance(address, str) or not address.strip():
        raise DiscoveryError("Address is required")
    address = address.strip()
    try:
        ipaddress.ip_address(address)
    except ValueError:
        if not _HOSTNAME_RE.match(address):
            raise DiscoveryError(f"Invalid address {address!r}") from None
    if isinstance(port, bool):
        raise DiscoveryError(f"Invalid port {port!r}")
    try:
        port = int(port)
    except (TypeError, ValueError):
        raise DiscoveryError(f"Invalid port {port!r}") from None
    if not 0 < port < 65536:
        raise DiscoveryError(f"Port {port} out of range 1-65535")
    return address, port


@dataclass(frozen=True)
class ConfiguredDevice:
    """One entry of ``management/v1/configureddevices``."""

    device_type: DeviceType
    number: int
    name: str = ""
    unique_id: str = ""


@dataclass(frozen=True)
class ServerDescriptor:
    """An Alpaca server found by discovery or entered manually.

    Never mutated; a newer descriptor for the same ``address:port`` replaces it.
    """

    address: str
    port: int
    server_name: str = "Unknown Server"
    manufacturer: str = "Unknown"
    manufacturer_version: str = ""
    location: str = ""
    discovered_at: float = field(default_factory=time.time)
    is_manual_entry: bool = False
    devices: tuple[ConfiguredDevice, ...] = ()
    proxy_base: str = ""

    @property
    def key(self) -> str:
        return f"{self.address}:{self.port}"

    @property
    def server_url(self) -> str:
        return server_url(self.address, self.port)

    @property
    def proxy_url(self) -> str:
        return proxy_url(self.proxy_base, self.address, self.port)

    @property
    def base_url(self) -> str:
        """URL all calls go through: the proxy when one is configured, else direct."""
        return self.proxy_url if self.proxy_base else self.server_url

    def endpoint_for(self, device: ConfiguredDevice) -> str:
        return f"{self.base_url}/api/v1/{device.device_type.value}/{device.number}"

    def device_id(self, device: ConfiguredDevice) -> str:
        return make_device_id(self.address, self.port, device.device_type, device.number)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "port": self.port,
            "server_name": self.server_name,
            "manufacturer": self.manufacturer,
            "manufacturer_version": self.manufacturer_version,
            "location": self.location,
            "discovered_at": self.discovered_at,
            "is_manual_entry": self.is_manual_entry,
            "proxy_url": self.proxy_url,
            "devices": [
                {
                    "id": self.device_id(d),
                    "type": d.device_type.value,
                    "number": d.number,
                    "name": d.name,
                    "unique_id": d.unique_id,
                    "endpoint": self.endpoint_for(d),
                }
                for d in self.devices
            ],
        }


def parse_configured_devices(entries: Iterable[dict[str, Any]]) -> tuple[ConfiguredDevice, ...]:
    devices: list[ConfiguredDevice] = []
    for entry in entries:
        try:
            device_type = DeviceType.parse(entry["DeviceType"])
            number = int(entry["DeviceNumber"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.debug("Skipping configured device %r: %s", entry, exc)
            continue
        devices.append(ConfiguredDevice(
            device_type=device_type,
            number=number,
            name=str(entry.get("DeviceName") or ""),
            unique_id=str(entry.get("UniqueID") or ""),
        ))
    return tuple(devices)


class DiscoveryService:
    """Finds Alpaca servers and merges their devices into the registry.

    Args:
        registry:      Registry receiving discovered devices.
        bus:           Event bus for per-server ``error`` events.
        scanner:       UDP broadcast scanner (``None`` disables broadcasting).
        hosts:         Extra ``host:port`` entries queried on every scan.
        scan_timeout:  Scan window in seconds.
        timeout:       Deadline for each management API request.
        proxy_base:    Prefix for same-origin proxy endpoints; empty means
                       devices are addressed directly.
        auto_register: Merge discovered devices into the registry.
        http_client:   Shared ``httpx.AsyncClient``; one is created if omitted.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        bus: EventBus,
        scanner: AlpacaBroadcastScanner | None = None,
        hosts: Iterable[str] = (),
        scan_timeout: float = 2.0,
        timeout: float = DEFAULT_TIMEOUT,
        proxy_base: str = "",
        auto_register: bool = True,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self.scanner = scanner
        self.hosts = list(hosts)
        self.scan_timeout = scan_timeout
        self.timeout = timeout
        self.proxy_base = proxy_base
        self.auto_register = auto_register
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._descriptors: dict[str, ServerDescriptor] = {}
        self._inflight: asyncio.Future | None = None
        self.last_discovery_time: float | None = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def discovering(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def discover(self) -> list[ServerDescriptor]:
        """Run one discovery pass and return the servers that answered.

        A call made while a pass is in flight joins that pass.  An empty list
        means nothing answered within the scan window.
        """
        if not self.discovering:
            self._inflight = asyncio.ensure_future(self._run_discovery())
        else:
            logger.debug("Discovery already in progress; joining it")
        return await asyncio.shield(self._inflight)

    async def add_manual(self, address: str, port: int | str) -> ServerDescriptor:
        """Query a server entered by the operator and register its devices.

        Raises:
            DiscoveryError: invalid address/port, or the server did not answer.
        """
        address, port = validate_address(address, port)
        descriptor = await self.describe(address, port, is_manual_entry=True)
        self._store(descriptor)
        if self.auto_register:
            self.merge(descriptor)
        logger.info("Added manual server %s with %d device(s)", descriptor.key, len(descriptor.devices))
        return descriptor

    async def describe(self, address: str, port: int, is_manual_entry: bool = False) -> ServerDescriptor:
        """Read a server's description and configured devices.

        Raises:
            DiscoveryError: the configured-device listing could not be read.
        """
        url = server_url(address, port)
        client = ManagementClient(url, client=self._http, timeout=self.timeout)
        try:
            entries = await client.configured_devices()
        except RemoteCallError as exc:
            raise DiscoveryError(
                f"Could not read configured devices: {exc}",
                endpoint=f"{url}/management/v1/configureddevices",
            ) from exc
        try:
            info = await client.description()
        except RemoteCallError as exc:
            logger.debug("No description from %s: %s", url, exc)
            info = {}
        return ServerDescriptor(
            address=address,
            port=port,
            server_name=str(info.get("ServerName") or "Unknown Server"),
            manufacturer=str(info.get("Manufacturer") or "Unknown"),
            manufacturer_version=str(info.get("ManufacturerVersion") or ""),
            location=str(info.get("Location") or ""),
            is_manual_entry=is_manual_entry,
            devices=parse_configured_devices(entries),
            proxy_base=self.proxy_base,
        )

    def merge(self, descriptor: ServerDescriptor) -> list[Device]:
        """Register the descriptor's devices; existing ids are left untouched.

        Returns:
            The devices newly added to the registry.
        """
        added: list[Device] = []
        for configured in descriptor.devices:
            device_id = descriptor.device_id(configured)
            if device_id in self._registry:
                continue
            device = Device(
                id=device_id,
                type=configured.device_type,
                index=configured.number,
                endpoint=descriptor.endpoint_for(configured),
                name=configured.name,
                unique_id=configured.unique_id,
                address=descriptor.address,
                port=descriptor.port,
            )
            try:
                added.append(self._registry.add(device))
            except DuplicateDeviceError as exc:
                logger.warning("Not registering %s: %s", device_id, exc)
        return added

    def descriptors(self) -> list[ServerDescriptor]:
        return list(self._descriptors.values())

    def get_descriptor(self, address: str, port: int) -> ServerDescriptor | None:
        return self._descriptors.get(f"{address}:{port}")

    async def aclose(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
            await asyncio.gather(self._inflight, return_exceptions=True)
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _candidates(self) -> list[tuple[str, int]]:
        found: dict[str, tuple[str, int]] = {}
        if self.scanner is not None:
            try:
                for address, port in await self.scanner.scan(self.scan_timeout):
                    found[f"{address}:{port}"] = (address, port)
            except OSError as exc:
                logger.warning("Broadcast scan failed: %s", exc)
        for entry in self.hosts:
            host, _, port = entry.rpartition(":")
            try:
                address, port = validate_address(host.strip("[]"), port)
            except DiscoveryError as exc:
                logger.warning("Ignoring discovery host %r: %s", entry, exc)
                continue
            found.setdefault(f"{address}:{port}", (address, port))
        return list(found.values())

    async def _run_discovery(self) -> list[ServerDescriptor]:
        candidates = await self._candidates()
        if not candidates:
            logger.info("Discovery found no servers")
            self.last_discovery_time = time.time()
            return []

        results = await asyncio.gather(
            *(self.describe(address, port) for address, port in candidates),
            return_exceptions=True,
        )
        found: list[ServerDescriptor] = []
        for (address, port), result in zip(candidates, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Discovery of %s:%d failed: %s", address, port, result)
                self._bus.publish(DeviceError(
                    device_id=None, message=str(result), source="discovery", exception=result,
                ))
                continue
            descriptor = self._store(result)
            if self.auto_register:
                self.merge(descriptor)
            found.append(descriptor)
        self.last_discovery_time = time.time()
        logger.info("Discovery complete — %d server(s)", len(found))
        return found

    def _store(self, descriptor: ServerDescriptor) -> ServerDescriptor:
        previous = self._descriptors.get(descriptor.key)
        if previous is not None and previous.is_manual_entry and not descriptor.is_manual_entry:
            descriptor = dataclasses.replace(descriptor, is_manual_entry=True)
        self._descriptors[descriptor.key] = descriptor
        return descriptor
