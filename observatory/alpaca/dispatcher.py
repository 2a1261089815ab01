"""Remote command dispatcher.

Issues device methods and property writes against Connected devices, wrapped
in optimistic updates so observers see the intended state immediately and
converge on the device's answer when the call settles.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Sequence

from observatory.alpaca.backend import DispatchBackend, bounded
from observatory.alpaca.imagebytes import ImageArray, decode_image_bytes
from observatory.alpaca.optimistic import OptimisticUpdate, rule_for
from observatory.devices.models import Device
from observatory.devices.registry import DeviceRegistry
from observatory.errors import NotConnectedError, ObservatoryError, RemoteCallError, RemoteErrorKind
from observatory.events import DeviceError, EventBus

logger = logging.getLogger(__name__)

# Alpaca parameter names for positional method arguments.
METHOD_PARAMETERS: dict[str, tuple[str, ...]] = {
    "startexposure": ("Duration", "Light"),
    "slewtocoordinates": ("RightAscension", "Declination"),
    "slewtocoordinatesasync": ("RightAscension", "Declination"),
    "synctocoordinates": ("RightAscension", "Declination"),
    "slewtoaltaz": ("Azimuth", "Altitude"),
    "slewtoaltazasync": ("Azimuth", "Altitude"),
    "synctoaltaz": ("Azimuth", "Altitude"),
    "moveaxis": ("Axis", "Rate"),
    "pulseguide": ("Direction", "Duration"),
    "move": ("Position",),
    "moveabsolute": ("Position",),
    "movemechanical": ("Position",),
    "slewtoazimuth": ("Azimuth",),
    "slewtoaltitude": ("Altitude",),
    "synctoazimuth": ("Azimuth",),
    "calibratoron": ("Brightness",),
    "setswitch": ("Id", "State"),
    "setswitchvalue": ("Id", "Value"),
    "setswitchname": ("Id", "Name"),
    "action": ("Action", "Parameters"),
    "commandblind": ("Command", "Raw"),
    "commandbool": ("Command", "Raw"),
    "commandstring": ("Command", "Raw"),
}

METHOD_DEFAULTS: dict[str, dict[str, Any]] = {
    "startexposure": {"Light": True},
    "commandblind": {"Raw": False},
    "commandbool": {"Raw": False},
    "commandstring": {"Raw": False},
}

# Alpaca parameter names for property writes whose casing is not just a
# capitalised first letter.
PROPERTY_PARAMETERS: dict[str, str] = {
    "gain": "Gain",
    "offset": "Offset",
    "setccdtemperature": "SetCCDTemperature",
    "cooleron": "CoolerOn",
    "binx": "BinX",
    "biny": "BinY",
    "startx": "StartX",
    "starty": "StartY",
    "numx": "NumX",
    "numy": "NumY",
    "readoutmode": "ReadoutMode",
    "fastreadout": "FastReadout",
    "subexposureduration": "SubExposureDuration",
    "tracking": "Tracking",
    "trackingrate": "TrackingRate",
    "targetrightascension": "TargetRightAscension",
    "targetdeclination": "TargetDeclination",
    "rightascensionrate": "RightAscensionRate",
    "declinationrate": "DeclinationRate",
    "guideraterightascension": "GuideRateRightAscension",
    "guideratedeclination": "GuideRateDeclination",
    "sideofpier": "SideOfPier",
    "siteelevation": "SiteElevation",
    "sitelatitude": "SiteLatitude",
    "sitelongitude": "SiteLongitude",
    "utcdate": "UTCDate",
    "doesrefraction": "DoesRefraction",
    "position": "Position",
    "tempcomp": "TempComp",
    "reverse": "Reverse",
    "slaved": "Slaved",
    "averageperiod": "AveragePeriod",
}


def method_parameters(method: str, args: Sequence[Any] | dict[str, Any] = ()) -> dict[str, Any]:
    """Map *args* onto the named form fields Alpaca expects for *method*.

    A mapping is passed through unchanged.  Positional arguments beyond the
    known names (or for unknown methods) become ``Parameters[i]``.
    """
    if isinstance(args, dict):
        return dict(args)
    key = method.lower()
    names = METHOD_PARAMETERS.get(key, ())
    params: dict[str, Any] = dict(METHOD_DEFAULTS.get(key, {})) if args else {}
    for i, value in enumerate(args):
        name = names[i] if i < len(names) else f"Parameters[{i}]"
        params[name] = value
    return params


def property_parameter(name: str) -> str:
    key = name.lower()
    if key in PROPERTY_PARAMETERS:
        return PROPERTY_PARAMETERS[key]
    return name[:1].upper() + name[1:]


class CommandDispatcher:
    """Routes method calls and property writes to Connected devices.

    Every remote failure is recorded in ``Device.last_error`` and published
    as a ``DeviceError`` event before it is raised to the caller; every
    success clears ``last_error``.

    Args:
        registry: Device registry.
        bus:      Event bus for error events.
        backend:  Transport used for the calls.
        timeout:  Default deadline for each remote call, in seconds.
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

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    async def call_method(
        self,
        device_id: str,
        name: str,
        args: Sequence[Any] | dict[str, Any] = (),
        *,
        timeout: float | None = None,
    ) -> Any:
        """Invoke method *name* on *device_id* and return its result.

        Raises:
            UnknownDeviceError: *device_id* is not registered.
            NotConnectedError:  the device is not Connected; nothing is sent.
            RemoteCallError:    the call failed or timed out.
        """
        device = self._connected(device_id)
        method = name.lower()
        params = method_parameters(method, args)
        update = None
        rule = rule_for(device.type, method)
        if rule is not None:
            update = OptimisticUpdate.from_rule(self._registry, device_id, rule)
        logger.debug("call_method %s.%s %s", device_id, method, params)
        return await self._send(device, "put", method, params, timeout, update)

    async def set_property(
        self,
        device_id: str,
        name: str,
        value: Any,
        *,
        timeout: float | None = None,
    ) -> None:
        """Write property *name*; the local value is shown optimistically.

        Raises:
            UnknownDeviceError: *device_id* is not registered.
            NotConnectedError:  the device is not Connected; nothing is sent.
            RemoteCallError:    the write failed; the local value is restored.
        """
        device = self._connected(device_id)
        action = name.lower()
        update = OptimisticUpdate(self._registry, device_id, {name: value})
        await self._send(device, "put", action, {property_parameter(name): value}, timeout, update)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    async def get_property(self, device_id: str, name: str, *, timeout: float | None = None) -> Any:
        """Read *name* from the device and store it under the same key."""
        device = self._connected(device_id)
        value = await self._send(device, "get", name.lower(), None, timeout)
        self._registry.update_properties(device_id, {name: value})
        return value

    async def refresh_properties(
        self,
        device_id: str,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Read several properties concurrently and merge them in one update.

        Individual failures (commonly ``NotImplemented`` on optional
        properties) are logged and skipped.  If every read fails the first
        error is recorded and raised.
        """
        device = self._connected(device_id)
        names = list(names)
        limit = self.timeout if timeout is None else timeout
        results = await asyncio.gather(
            *(bounded(self._backend.get(device, n.lower(), timeout=limit), limit, f"get {n}")
              for n in names),
            return_exceptions=True,
        )
        values: dict[str, Any] = {}
        errors: list[BaseException] = []
        for name, result in zip(names, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.debug("Reading %s.%s failed: %s", device_id, name, result)
                errors.append(result)
            else:
                values[name] = result
        if names and not values and errors:
            error = self._as_remote_error(errors[0])
            self._fail(device, error, "refresh")
            raise error
        if values:
            self._registry.update_properties(device_id, values)
            self._succeed(device)
        return values

    async def fetch_device_state(self, device_id: str, *, timeout: float | None = None) -> dict[str, Any] | None:
        """Read the aggregate ``devicestate`` and merge it; ``None`` if unsupported."""
        device = self._connected(device_id)
        limit = self.timeout if timeout is None else timeout
        try:
            state = await bounded(self._backend.device_state(device, timeout=limit), limit, "devicestate")
        except RemoteCallError as exc:
            # Older servers answer an unknown member with 400/404 or NotImplemented.
            if exc.kind is RemoteErrorKind.PROTOCOL or exc.status in (400, 404):
                logger.debug("devicestate unsupported on %s: %s", device_id, exc)
                return None
            self._fail(device, exc, "devicestate")
            raise
        if state:
            self._registry.update_properties(device_id, state)
            self._succeed(device)
        return state

    async def download_image(self, device_id: str, *, timeout: float | None = None) -> ImageArray:
        """Download and decode the last image from a camera.

        The image is only published (``imageData`` / ``hasImage``) after it
        decoded cleanly.

        Raises:
            RemoteCallError: the download failed or the device reported an error.
            DecodeError:     the payload was malformed; nothing is published.
        """
        device = self._connected(device_id)
        limit = self.timeout if timeout is None else timeout
        try:
            payload = await bounded(
                self._backend.get_image_bytes(device, timeout=limit), limit, "imagearray",
            )
            image = decode_image_bytes(payload, url=f"{device.endpoint}/imagearray")
        except asyncio.CancelledError:
            raise
        except ObservatoryError as exc:
            self._fail(device, exc, "imagearray")
            raise
        except Exception as exc:  # noqa: BLE001
            error = self._as_remote_error(exc)
            self._fail(device, error, "imagearray")
            raise error from exc
        logger.info("Downloaded %dx%d image from %s", image.width, image.height, device_id)
        self._registry.update_properties(device_id, {
            "imageData": image,
            "hasImage": True,
            "imageStats": {"min": image.min, "max": image.max, "mean": image.mean},
        })
        self._succeed(device)
        return image

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _connected(self, device_id: str) -> Device:
        device = self._registry.require(device_id)
        if not device.is_connected:
            raise NotConnectedError(device_id, device.connection_state.value)
        return device

    async def _send(
        self,
        device: Device,
        verb: str,
        action: str,
        params: dict[str, Any] | None,
        timeout: float | None,
        update: OptimisticUpdate | None = None,
    ) -> Any:
        limit = self.timeout if timeout is None else timeout
        call = self._backend.put if verb == "put" else self._backend.get
        if update is not None:
            update.apply()
        try:
            result = await bounded(
                call(device, action, params, timeout=limit), limit, f"{verb} {action}",
            )
        except asyncio.CancelledError as exc:
            if update is not None:
                update.reconcile(error=exc)
            raise
        except Exception as exc:  # noqa: BLE001
            error = exc if isinstance(exc, ObservatoryError) else self._as_remote_error(exc)
            if update is not None:
                update.reconcile(error=error)
            self._fail(device, error, action)
            if error is exc:
                raise
            raise error from exc
        if update is not None:
            update.reconcile()
        self._succeed(device)
        return result

    @staticmethod
    def _as_remote_error(exc: BaseException) -> ObservatoryError:
        if isinstance(exc, ObservatoryError):
            return exc
        return RemoteCallError(str(exc) or type(exc).__name__, RemoteErrorKind.TRANSPORT)

    def _fail(self, device: Device, exc: BaseException, source: str) -> None:
        message = str(exc)
        logger.warning("%s on %s failed: %s", source, device.id, message)
        self._registry.set_last_error(device.id, message)
        self._bus.publish(DeviceError(device_id=device.id, message=message, source=source, exception=exc))

    def _succeed(self, device: Device) -> None:
        if device.last_error is not None:
            self._registry.set_last_error(device.id, None)
