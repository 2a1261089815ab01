"""Per-device connection lifecycle.

    Disconnected ──connect──▶ Connecting ──ok──▶ Connected
         ▲                        │ fail             │
         └────────────────────────┘                  │ disconnect
         ▲                                           ▼
         └──────────────(always)────────────── Disconnecting

The Connecting/Disconnecting states double as the per-device lock: while a
device is in one of them no second transition of the same kind is started.
This is the only component that writes ``Device.connection_state``.
"""

from __future__ import annotations

import asyncio
import logging

from observatory.alpaca.backend import DispatchBackend, bounded
from observatory.devices.models import ConnectionState, Device
from observatory.devices.registry import DeviceRegistry
from observatory.events import ConnectionChanged, DeviceError, EventBus

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Drives devices through the connection lifecycle.

    Args:
        registry: Device registry (source of ``Device`` records).
        bus:      Event bus for ``ConnectionChanged`` / ``DeviceError``.
        backend:  Transport used for the ``connected`` property writes.
        timeout:  Default deadline for each remote call.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        bus: EventBus,
        backend: DispatchBackend,
        timeout: float = 10.0,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self._backend = backend
        self.timeout = timeout
        # device id -> token of the connect attempt currently allowed to finish
        self._attempts: dict[str, object] = {}
        self._background: set[asyncio.Task] = set()
        registry.on_connected_removal(self._disconnect_removed)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def connect(self, device_id: str, timeout: float | None = None) -> ConnectionState:
        """Connect *device_id*; returns the resulting state.

        Idempotent: while Connecting or Connected this returns the current
        state without contacting the device.  A failed attempt reverts to
        Disconnected and records ``last_error``; it does not raise.

        Raises:
            UnknownDeviceError: *device_id* is not registered.
        """
        device = self._registry.require(device_id)
        if device.connection_state is not ConnectionState.DISCONNECTED:
            logger.debug("connect(%s) ignored in state %s", device_id, device.connection_state.value)
            return device.connection_state

        token = object()
        self._attempts[device_id] = token
        self._transition(device, ConnectionState.CONNECTING)
        try:
            limit = self.timeout if timeout is None else timeout
            await bounded(
                self._backend.put(device, "connected", {"Connected": True}, timeout=limit),
                limit, f"connect {device_id}",
            )
        except Exception as exc:  # noqa: BLE001
            if self._attempts.get(device_id) is not token:
                return device.connection_state
            self._attempts.pop(device_id, None)
            message = str(exc)
            device.last_error = message
            logger.warning("Connecting %s failed: %s", device_id, message)
            self._transition(device, ConnectionState.DISCONNECTED, error=message)
            self._bus.publish(DeviceError(device_id=device_id, message=message,
                                          source="connect", exception=exc))
            return device.connection_state
        except asyncio.CancelledError:
            if self._attempts.get(device_id) is token:
                self._attempts.pop(device_id, None)
                self._transition(device, ConnectionState.DISCONNECTED, error="connect cancelled")
            raise

        if self._attempts.get(device_id) is not token:
            # Cancelled by disconnect() (or the device was removed) meanwhile.
            logger.info("Discarding stale connect result for %s", device_id)
            return device.connection_state
        self._attempts.pop(device_id, None)
        device.last_error = None
        self._transition(device, ConnectionState.CONNECTED)
        logger.info("Connected %s", device_id)
        return device.connection_state

    async def disconnect(self, device_id: str, timeout: float | None = None) -> ConnectionState:
        """Disconnect *device_id*; always ends Disconnected.

        Allowed from Connected, or from Connecting to cancel the attempt.
        Remote failures are logged and recorded, never raised.

        Raises:
            UnknownDeviceError: *device_id* is not registered.
        """
        device = self._registry.require(device_id)
        if device.connection_state in (ConnectionState.DISCONNECTED, ConnectionState.DISCONNECTING):
            return device.connection_state
        await self._disconnect_device(device, timeout)
        return device.connection_state

    def state_of(self, device_id: str) -> ConnectionState:
        return self._registry.require(device_id).connection_state

    async def aclose(self) -> None:
        """Wait for background disconnects scheduled by device removal."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _disconnect_device(self, device: Device, timeout: float | None = None) -> None:
        self._attempts.pop(device.id, None)
        self._transition(device, ConnectionState.DISCONNECTING)
        error: str | None = None
        try:
            limit = self.timeout if timeout is None else timeout
            await bounded(
                self._backend.put(device, "connected", {"Connected": False}, timeout=limit),
                limit, f"disconnect {device.id}",
            )
        except Exception as exc:  # noqa: BLE001
            error = str(exc)
            logger.warning("Remote disconnect of %s failed (ignored): %s", device.id, error)
            device.last_error = error
            self._bus.publish(DeviceError(device_id=device.id, message=error,
                                          source="disconnect", exception=exc))
        finally:
            self._transition(device, ConnectionState.DISCONNECTED, error=error)
        logger.info("Disconnected %s", device.id)

    def _disconnect_removed(self, device: Device) -> None:
        """Disconnect a device that is being removed from the registry.

        Both state transitions are published before ``DeviceRemoved``; the
        remote ``connected=false`` write follows in the background.
        """
        if device.connection_state is ConnectionState.DISCONNECTING:
            return
        self._attempts.pop(device.id, None)
        self._transition(device, ConnectionState.DISCONNECTING)
        self._transition(device, ConnectionState.DISCONNECTED)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop; %s removed without remote disconnect", device.id)
            return
        task = loop.create_task(self._remote_disconnect(device))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _remote_disconnect(self, device: Device) -> None:
        try:
            await bounded(
                self._backend.put(device, "connected", {"Connected": False}, timeout=self.timeout),
                self.timeout, f"disconnect {device.id}",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Remote disconnect of removed %s failed (ignored): %s", device.id, exc)
        else:
            logger.info("Disconnected removed device %s", device.id)

    def _transition(self, device: Device, state: ConnectionState, error: str | None = None) -> None:
        previous = device.connection_state
        device.connection_state = state
        self._bus.publish(ConnectionChanged(
            device_id=device.id, state=state, previous=previous, error=error,
        ))
