"""Explicit offline backend for demonstrations and UI work.

Selected only when the hub is built with ``backend=SimulatedBackend()`` (or
``--simulate`` on the command line).  It never stands in for a failing
network backend.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import numpy as np

from observatory.alpaca.backend import DispatchBackend
from observatory.alpaca.imagebytes import ImageElementType, encode_image_bytes
from observatory.devices.models import Device, DeviceType
from observatory.errors import RemoteCallError, RemoteErrorKind

logger = logging.getLogger(__name__)

# Alpaca error numbers
NOT_IMPLEMENTED = 0x400
INVALID_OPERATION = 0x40B
NOT_CONNECTED = 0x407

DEFAULT_STATE: dict[DeviceType, dict[str, Any]] = {
    DeviceType.CAMERA: {
        "camerastate": 0,
        "cameraxsize": 64,
        "cameraysize": 48,
        "ccdtemperature": 20.0,
        "cooleron": False,
        "coolerpower": 0.0,
        "gain": 100,
        "offset": 10,
        "imageready": False,
        "percentcompleted": 0,
        "setccdtemperature": 0.0,
        "canabortexposure": True,
        "cansetccdtemperature": True,
    },
    DeviceType.TELESCOPE: {
        "rightascension": 0.0,
        "declination": 0.0,
        "altitude": 45.0,
        "azimuth": 180.0,
        "slewing": False,
        "tracking": False,
        "atpark": False,
        "canslewasync": True,
        "canpark": True,
    },
    DeviceType.FOCUSER: {"position": 5000, "ismoving": False, "temperature": 15.0, "maxstep": 10000},
    DeviceType.FILTER_WHEEL: {"position": 0, "names": ["L", "R", "G", "B"]},
    DeviceType.ROTATOR: {"position": 0.0, "ismoving": False},
    DeviceType.DOME: {"shutterstatus": 1, "slewing": False, "azimuth": 0.0},
    DeviceType.SAFETY_MONITOR: {"issafe": True},
}


class SimulatedBackend(DispatchBackend):
    """In-memory device state with plausible responses to common methods."""

    def __init__(self) -> None:
        self._state: dict[str, dict[str, Any]] = {}
        self._exposures: dict[str, tuple[float, float]] = {}

    def state_for(self, device: Device) -> dict[str, Any]:
        state = self._state.get(device.id)
        if state is None:
            state = {"connected": False, "name": device.name}
            state.update(DEFAULT_STATE.get(device.type, {}))
            self._state[device.id] = state
        return state

    def _advance(self, device: Device, state: dict[str, Any]) -> None:
        exposure = self._exposures.get(device.id)
        if exposure is None:
            return
        started, duration = exposure
        elapsed = time.monotonic() - started
        if elapsed >= duration:
            state.update(camerastate=0, imageready=True, percentcompleted=100)
            del self._exposures[device.id]
        else:
            state["percentcompleted"] = int(100 * elapsed / duration) if duration else 100

    async def get(self, device, action, params=None, timeout=None):
        state = self.state_for(device)
        self._advance(device, state)
        key = action.lower()
        if key not in state:
            raise RemoteCallError(
                f"Property {key} is not implemented by the simulator",
                RemoteErrorKind.PROTOCOL,
                error_number=NOT_IMPLEMENTED,
            )
        return state[key]

    async def put(self, device, action, params=None, timeout=None):
        state = self.state_for(device)
        key = action.lower()
        params = params or {}
        if key == "connected":
            state["connected"] = _as_bool(params.get("Connected", False))
            return None
        if not state["connected"]:
            raise RemoteCallError("Device is not connected", RemoteErrorKind.PROTOCOL,
                                  error_number=NOT_CONNECTED)

        handler = getattr(self, f"_do_{key}", None)
        if handler is not None:
            return handler(device, state, params)

        # Plain property write: single parameter named like the property.
        for name, value in params.items():
            if name.lower() == key:
                state[key] = value
                return None
        raise RemoteCallError(
            f"Method {key} is not implemented by the simulator",
            RemoteErrorKind.PROTOCOL,
            error_number=NOT_IMPLEMENTED,
        )

    async def get_image_bytes(self, device, timeout=None):
        state = self.state_for(device)
        self._advance(device, state)
        if not state.get("imageready"):
            return encode_image_bytes(np.zeros((1, 1)), error_number=INVALID_OPERATION,
                                      message="No image available")
        width = int(state.get("cameraxsize", 64))
        height = int(state.get("cameraysize", 48))
        x = np.arange(width, dtype=np.uint32)[:, None]
        y = np.arange(height, dtype=np.uint32)[None, :]
        pixels = ((x * 997 + y * 131) % 65536).astype(np.uint16)
        return encode_image_bytes(pixels, ImageElementType.UINT16, ImageElementType.INT32)

    async def device_state(self, device, timeout=None):
        state = self.state_for(device)
        self._advance(device, state)
        return {k: v for k, v in state.items() if not k.startswith("can")}

    # ------------------------------------------------------------------ #
    # Method simulations
    # ------------------------------------------------------------------ #

    def _do_startexposure(self, device, state, params):
        duration = float(params.get("Duration", 1.0))
        self._exposures[device.id] = (time.monotonic(), duration)
        state.update(camerastate=2, imageready=False, percentcompleted=0)
        logger.debug("Simulated exposure of %.2fs on %s", duration, device.id)

    def _do_abortexposure(self, device, state, params):
        self._exposures.pop(device.id, None)
        state.update(camerastate=0, percentcompleted=0)

    _do_stopexposure = _do_abortexposure

    def _do_slewtocoordinatesasync(self, device, state, params):
        state.update(
            rightascension=float(params.get("RightAscension", state["rightascension"])),
            declination=float(params.get("Declination", state["declination"])),
            slewing=False,
            atpark=False,
        )

    def _do_abortslew(self, device, state, params):
        state["slewing"] = False

    def _do_park(self, device, state, params):
        state.update(atpark=True, tracking=False, slewing=False)

    def _do_unpark(self, device, state, params):
        state["atpark"] = False

    def _do_move(self, device, state, params):
        state.update(position=int(params.get("Position", state.get("position", 0))), ismoving=False)

    def _do_halt(self, device, state, params):
        state["ismoving"] = False


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)
