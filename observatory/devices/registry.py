"""In-memory device registry — the single read model for every observer."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterator

from observatory.devices.models import ConnectionState, Device, DeviceType
from observatory.errors import DuplicateDeviceError, UnknownDeviceError
from observatory.events import DeviceAdded, DeviceRemoved, EventBus, PropertyChanged

logger = logging.getLogger(__name__)


class DeviceSnapshot:
    """Restartable view over the devices present when it was taken.

    Iterating twice yields the same devices; later registry mutations are not
    reflected.
    """

    def __init__(self, devices: tuple[Device, ...]) -> None:
        self._devices = devices

    def __iter__(self) -> Iterator[Device]:
        return iter(self._devices)

    def __len__(self) -> int:
        return len(self._devices)

    def __bool__(self) -> bool:
        return bool(self._devices)


def _changed(properties: dict[str, Any], key: str, value: Any) -> bool:
    if key not in properties:
        return True
    old = properties[key]
    if old is value:
        return False
    try:
        return bool(old != value)
    except (TypeError, ValueError):
        return True


class DeviceRegistry:
    """Maps ``id -> Device`` with synchronous lookups.

    Args:
        bus: Event bus receiving ``DeviceAdded``, ``DeviceRemoved`` and
             ``PropertyChanged`` events.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._devices: dict[str, Device] = {}
        # id -> endpoint of every device ever registered in this process
        self._bound_endpoints: dict[str, str] = {}
        self._removal_hooks: list[Callable[[Device], None]] = []

    # ------------------------------------------------------------------ #
    # Mutation
    # ------------------------------------------------------------------ #

    def add(self, device: Device) -> Device:
        """Insert *device*.

        Raises:
            DuplicateDeviceError: the id is present, or was previously bound to
                a different endpoint.
        """
        if device.id in self._devices:
            raise DuplicateDeviceError(device.id)
        bound = self._bound_endpoints.get(device.id)
        if bound is not None and bound != device.endpoint:
            raise DuplicateDeviceError(
                device.id,
                f"Device id {device.id} was already used for endpoint {bound}",
            )
        self._devices[device.id] = device
        self._bound_endpoints[device.id] = device.endpoint
        logger.info("Registered %s device %s at %s", device.type.value, device.id, device.endpoint)
        self._bus.publish(DeviceAdded(device_id=device.id))
        return device

    def remove(self, device_id: str) -> bool:
        """Remove *device_id*; returns ``False`` if it was not registered.

        A Connected device is handed to the removal hooks (the connection
        manager schedules a best-effort disconnect) before it is removed.
        """
        device = self._devices.get(device_id)
        if device is None:
            return False
        if device.connection_state is not ConnectionState.DISCONNECTED:
            for hook in list(self._removal_hooks):
                try:
                    hook(device)
                except Exception:  # noqa: BLE001
                    logger.exception("Removal hook failed for %s", device_id)
        del self._devices[device_id]
        logger.info("Removed device %s", device_id)
        self._bus.publish(DeviceRemoved(device_id=device_id))
        return True

    def update_properties(self, device_id: str, partial: dict[str, Any]) -> bool:
        """Merge *partial* into the device's properties (last writer wins).

        Unknown ids are logged and ignored.  One ``PropertyChanged`` event is
        published per key whose value actually changed.

        Returns:
            ``True`` if the device exists.
        """
        device = self._devices.get(device_id)
        if device is None:
            logger.warning("update_properties: unknown device %s (ignored)", device_id)
            return False
        changes: list[PropertyChanged] = []
        for key, value in partial.items():
            if _changed(device.properties, key, value):
                changes.append(PropertyChanged(
                    device_id=device_id,
                    name=key,
                    value=value,
                    previous=device.properties.get(key),
                ))
            device.properties[key] = value
        for event in changes:
            self._bus.publish(event)
        return True

    def set_last_error(self, device_id: str, message: str | None) -> None:
        device = self._devices.get(device_id)
        if device is not None:
            device.last_error = message

    def on_connected_removal(self, hook: Callable[[Device], None]) -> None:
        """Register *hook* to run when a non-Disconnected device is removed."""
        self._removal_hooks.append(hook)

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #

    def get(self, device_id: str) -> Device | None:
        return self._devices.get(device_id)

    def require(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise UnknownDeviceError(device_id)
        return device

    def find_by(
        self,
        device_type: str | DeviceType | None = None,
        index: int | None = None,
        predicate: Callable[[Device], bool] | None = None,
    ) -> Device | None:
        """Return the first device (in registration order) matching all filters."""
        wanted = DeviceType.parse(device_type) if device_type is not None else None
        for device in self._devices.values():
            if wanted is not None and device.type is not wanted:
                continue
            if index is not None and device.index != int(index):
                continue
            if predicate is not None and not predicate(device):
                continue
            return device
        return None

    def list_devices(self) -> DeviceSnapshot:
        return DeviceSnapshot(tuple(self._devices.values()))

    def resolve(self, reference: str | int, device_type: str | DeviceType | None = None) -> Device:
        """Resolve a device reference.

        Precedence:
          1. exact id match;
          2. numeric reference (``int`` or all-digit string) matched against
             ``index`` (and *device_type* when given), first in registration
             order.

        Raises:
            UnknownDeviceError: nothing matched.  There is no default device.
        """
        if isinstance(reference, str):
            device = self._devices.get(reference)
            if device is not None:
                return device
            numeric = reference.strip().isdigit()
        else:
            numeric = isinstance(reference, int) and not isinstance(reference, bool)
        if numeric:
            device = self.find_by(device_type=device_type, index=int(reference))
            if device is not None:
                return device
        raise UnknownDeviceError(reference)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)
