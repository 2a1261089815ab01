"""Background property polling for Connected devices.

One task per Connected device, started and stopped by ``ConnectionChanged``
events.  Poll failures are recorded by the dispatcher but never touch the
connection state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from observatory.alpaca.dispatcher import CommandDispatcher
from observatory.devices.models import ConnectionState, DeviceType
from observatory.devices.registry import DeviceRegistry
from observatory.errors import ObservatoryError
from observatory.events import ConnectionChanged, DeviceRemoved, EventBus

logger = logging.getLogger(__name__)

POLLED_PROPERTIES: dict[DeviceType, tuple[str, ...]] = {
    DeviceType.CAMERA: ("camerastate", "ccdtemperature", "coolerpower", "imageready", "percentcompleted"),
    DeviceType.TELESCOPE: (
        "rightascension", "declination", "altitude", "azimuth", "slewing", "tracking", "atpark",
    ),
    DeviceType.FOCUSER: ("position", "ismoving", "temperature"),
    DeviceType.FILTER_WHEEL: ("position",),
    DeviceType.ROTATOR: ("position", "ismoving"),
    DeviceType.DOME: ("shutterstatus", "slewing", "azimuth"),
    DeviceType.SAFETY_MONITOR: ("issafe",),
    DeviceType.COVER_CALIBRATOR: ("coverstate", "calibratorstate", "brightness"),
    DeviceType.OBSERVING_CONDITIONS: ("temperature", "humidity", "cloudcover", "windspeed"),
}

# Alpaca camera states that mean an exposure is under way.
_EXPOSING_STATES = (1, 2, 3)
# Dome shutter states 2 (opening) and 3 (closing).
_SHUTTER_MOVING_STATES = (2, 3)
# Consecutive devicestate failures before switching to single property reads.
DEVICE_STATE_MAX_FAILURES = 3


def derived_properties(device_type: DeviceType, values: dict[str, Any]) -> dict[str, Any]:
    """Map polled Alpaca values onto the keys used by optimistic updates."""
    derived: dict[str, Any] = {}
    if device_type is DeviceType.CAMERA:
        if "camerastate" in values:
            derived["cameraState"] = values["camerastate"]
            derived["isExposing"] = values["camerastate"] in _EXPOSING_STATES
        if "percentcompleted" in values:
            derived["exposureProgress"] = values["percentcompleted"]
        if "imageready" in values:
            derived["imageReady"] = values["imageready"]
    elif device_type is DeviceType.TELESCOPE:
        if "slewing" in values:
            derived["isSlewing"] = values["slewing"]
    elif device_type in (DeviceType.FOCUSER, DeviceType.ROTATOR):
        if "ismoving" in values:
            derived["isMoving"] = values["ismoving"]
    elif device_type is DeviceType.DOME:
        if "shutterstatus" in values:
            derived["shutterMoving"] = values["shutterstatus"] in _SHUTTER_MOVING_STATES
        if "slewing" in values:
            derived["isSlewing"] = values["slewing"]
    return derived


class PropertyPoller:
    """Keeps the registry in step with Connected devices.

    Args:
        registry:   Device registry.
        bus:        Event bus; the poller subscribes to connection and removal events.
        dispatcher: Used for the actual reads.
        interval:   Seconds between polls of one device.
        auto_download: Download the image when a camera exposure completes.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        bus: EventBus,
        dispatcher: CommandDispatcher,
        interval: float = 1.0,
        auto_download: bool = True,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self.interval = interval
        self.auto_download = auto_download
        self._tasks: dict[str, asyncio.Task] = {}
        # devices known not to implement devicestate
        self._no_device_state: set[str] = set()
        self._device_state_failures: dict[str, int] = {}
        self._unsubscribe = [
            bus.on(ConnectionChanged, self._on_connection_changed),
            bus.on(DeviceRemoved, self._on_device_removed),
        ]

    @property
    def polling(self) -> set[str]:
        return {device_id for device_id, task in self._tasks.items() if not task.done()}

    def start(self, device_id: str) -> None:
        task = self._tasks.get(device_id)
        if task is not None and not task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop; not polling %s", device_id)
            return
        self._tasks[device_id] = loop.create_task(self._loop(device_id))
        logger.debug("Polling %s every %.1fs", device_id, self.interval)

    def cancel(self, device_id: str) -> None:
        task = self._tasks.pop(device_id, None)
        if task is not None:
            task.cancel()
            logger.debug("Stopped polling %s", device_id)
        self._no_device_state.discard(device_id)
        self._device_state_failures.pop(device_id, None)

    async def stop(self) -> None:
        """Cancel every polling task and detach from the bus."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def poll_once(self, device_id: str) -> dict[str, Any]:
        """Run one poll cycle for *device_id* and return the values read.

        A camera whose ``imageReady`` goes from False to True (the state an
        exposure started through the dispatcher leaves it in) finishes the
        exposure locally and, with ``auto_download``, fetches the image.
        """
        device = self._registry.require(device_id)
        was_ready = device.properties.get("imageReady")
        values = await self._read_device_state(device_id)
        if values is None:
            names = POLLED_PROPERTIES.get(device.type, ())
            if not names:
                return {}
            values = await self._dispatcher.refresh_properties(device_id, names)
        derived = derived_properties(device.type, values)
        if derived:
            self._registry.update_properties(device_id, derived)
        if device.type is DeviceType.CAMERA and was_ready is False and derived.get("imageReady") is True:
            await self._exposure_complete(device_id)
        return values

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _read_device_state(self, device_id: str) -> dict[str, Any] | None:
        """``devicestate`` values, or ``None`` to fall back to single reads."""
        if device_id in self._no_device_state:
            return None
        try:
            values = await self._dispatcher.fetch_device_state(device_id)
        except ObservatoryError as exc:
            failures = self._device_state_failures.get(device_id, 0) + 1
            self._device_state_failures[device_id] = failures
            if failures >= DEVICE_STATE_MAX_FAILURES:
                logger.info("devicestate failed %d times on %s; using property reads", failures, device_id)
                self._no_device_state.add(device_id)
            else:
                logger.debug("devicestate on %s failed (%d): %s", device_id, failures, exc)
            return None
        self._device_state_failures.pop(device_id, None)
        if values is None:
            self._no_device_state.add(device_id)
        return values

    async def _exposure_complete(self, device_id: str) -> None:
        self._registry.update_properties(device_id, {"isExposing": False, "exposureProgress": 100})
        logger.info("Exposure complete on %s", device_id)
        if not self.auto_download:
            return
        try:
            await self._dispatcher.download_image(device_id)
        except ObservatoryError as exc:
            # recorded on the device by the dispatcher
            logger.warning("Image download from %s failed: %s", device_id, exc)

    async def _loop(self, device_id: str) -> None:
        while True:
            device = self._registry.get(device_id)
            if device is None or device.connection_state is not ConnectionState.CONNECTED:
                return
            try:
                await self.poll_once(device_id)
            except ObservatoryError as exc:
                logger.debug("Poll of %s failed: %s", device_id, exc)
            except Exception:  # noqa: BLE001
                logger.exception("Unexpected error polling %s", device_id)
            await asyncio.sleep(self.interval)

    def _on_connection_changed(self, event: ConnectionChanged) -> None:
        if event.state is ConnectionState.CONNECTED:
            self.start(event.device_id)
        else:
            self.cancel(event.device_id)

    def _on_device_removed(self, event: DeviceRemoved) -> None:
        self.cancel(event.device_id)
