"""Tests for the background property poller."""

from __future__ import annotations

import asyncio

import numpy as np
import pytest

from observatory.alpaca.dispatcher import CommandDispatcher
from observatory.alpaca.imagebytes import encode_image_bytes
from observatory.alpaca.polling import DEVICE_STATE_MAX_FAILURES, PropertyPoller, derived_properties
from observatory.devices.connection import ConnectionManager
from observatory.devices.models import ConnectionState, DeviceType
from observatory.errors import RemoteCallError, RemoteErrorKind


@pytest.fixture
def dispatcher(registry, bus, backend):
    return CommandDispatcher(registry, bus, backend, timeout=1.0)


@pytest.fixture
def poller(registry, bus, dispatcher):
    return PropertyPoller(registry, bus, dispatcher, interval=0.01)


class TestDerivedProperties:
    def test_camera(self):
        derived = derived_properties(DeviceType.CAMERA, {"camerastate": 2, "percentcompleted": 40})
        assert derived == {"cameraState": 2, "isExposing": True, "exposureProgress": 40}
        assert derived_properties(DeviceType.CAMERA, {"camerastate": 0})["isExposing"] is False

    def test_dome_shutter(self):
        assert derived_properties(DeviceType.DOME, {"shutterstatus": 2}) == {"shutterMoving": True}

    def test_slewing(self):
        assert derived_properties(DeviceType.TELESCOPE, {"slewing": True}) == {"isSlewing": True}
        assert derived_properties(DeviceType.DOME, {"slewing": False}) == {"isSlewing": False}

    def test_other_types(self):
        assert derived_properties(DeviceType.SWITCH, {"maxswitch": 4}) == {}


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_prefers_device_state(self, poller, camera, backend):
        camera.connection_state = ConnectionState.CONNECTED
        backend.state = {"camerastate": 0, "imageready": True}
        await poller.poll_once("cam-1")
        assert camera.properties["imageReady"] is True
        assert camera.properties["isExposing"] is False
        assert backend.count("camerastate") == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_property_reads(self, poller, camera, backend):
        camera.connection_state = ConnectionState.CONNECTED
        backend.responses.update(camerastate=2, ccdtemperature=-5.0, coolerpower=30.0,
                                 imageready=False, percentcompleted=50)
        values = await poller.poll_once("cam-1")
        assert values["ccdtemperature"] == -5.0
        assert camera.properties["exposureProgress"] == 50
        await poller.poll_once("cam-1")
        # devicestate is only tried once per connection.
        assert backend.count("devicestate") == 1

    @pytest.mark.asyncio
    async def test_poll_failure_keeps_connection(self, poller, camera, backend):
        camera.connection_state = ConnectionState.CONNECTED
        error = RemoteCallError("unreachable", RemoteErrorKind.TRANSPORT)
        for name in ("camerastate", "ccdtemperature", "coolerpower", "imageready", "percentcompleted"):
            backend.responses[name] = error
        with pytest.raises(RemoteCallError):
            await poller.poll_once("cam-1")
        assert camera.connection_state is ConnectionState.CONNECTED
        assert camera.last_error == "unreachable"

    @pytest.mark.asyncio
    async def test_device_state_errors_fall_back_then_stop_trying(self, poller, camera, backend):
        camera.connection_state = ConnectionState.CONNECTED
        backend.responses.update(camerastate=0, imageready=False)
        backend.responses["devicestate"] = RemoteCallError("bad gateway", RemoteErrorKind.TRANSPORT, status=502)
        values = await poller.poll_once("cam-1")
        assert values["camerastate"] == 0
        assert camera.last_error is None
        for _ in range(DEVICE_STATE_MAX_FAILURES + 2):
            await poller.poll_once("cam-1")
        assert backend.count("devicestate") == DEVICE_STATE_MAX_FAILURES

    @pytest.mark.asyncio
    async def test_device_state_recovery_resets_failures(self, poller, camera, backend):
        camera.connection_state = ConnectionState.CONNECTED
        backend.responses.update(camerastate=0)
        for _ in range(DEVICE_STATE_MAX_FAILURES - 1):
            backend.responses["devicestate"] = RemoteCallError("timeout", RemoteErrorKind.TIMEOUT)
            await poller.poll_once("cam-1")
            backend.responses.pop("devicestate")
            backend.state = {"camerastate": 0}
            await poller.poll_once("cam-1")
        backend.state = {"camerastate": 2}
        await poller.poll_once("cam-1")
        assert camera.properties["isExposing"] is True
        assert backend.count("devicestate") == 2 * (DEVICE_STATE_MAX_FAILURES - 1) + 1


class TestExposureComplete:
    @pytest.mark.asyncio
    async def test_image_ready_downloads_image(self, poller, dispatcher, camera, backend):
        camera.connection_state = ConnectionState.CONNECTED
        backend.image = encode_image_bytes(np.arange(12, dtype=np.uint16).reshape(4, 3))
        await dispatcher.call_method("cam-1", "startexposure", [1.0])
        assert camera.properties["imageReady"] is False

        backend.state = {"camerastate": 2, "imageready": False, "percentcompleted": 60}
        await poller.poll_once("cam-1")
        assert backend.count("imagearray") == 0

        backend.state = {"camerastate": 0, "imageready": True, "percentcompleted": 100}
        await poller.poll_once("cam-1")
        assert camera.properties["isExposing"] is False
        assert camera.properties["exposureProgress"] == 100
        assert camera.properties["hasImage"] is True
        assert camera.properties["imageData"] is not None
        assert backend.count("imagearray") == 1

        # Still ready on the next poll: no second download.
        await poller.poll_once("cam-1")
        assert backend.count("imagearray") == 1

    @pytest.mark.asyncio
    async def test_stale_image_ready_is_not_downloaded(self, poller, camera, backend):
        camera.connection_state = ConnectionState.CONNECTED
        backend.state = {"camerastate": 0, "imageready": True}
        await poller.poll_once("cam-1")
        assert backend.count("imagearray") == 0
        assert "hasImage" not in camera.properties

    @pytest.mark.asyncio
    async def test_auto_download_off(self, registry, bus, dispatcher, camera, backend):
        poller = PropertyPoller(registry, bus, dispatcher, interval=0.01, auto_download=False)
        camera.connection_state = ConnectionState.CONNECTED
        registry.update_properties("cam-1", {"imageReady": False, "isExposing": True})
        backend.state = {"imageready": True}
        await poller.poll_once("cam-1")
        assert camera.properties["isExposing"] is False
        assert backend.count("imagearray") == 0

    @pytest.mark.asyncio
    async def test_failed_download_does_not_fail_poll(self, poller, registry, camera, backend):
        camera.connection_state = ConnectionState.CONNECTED
        registry.update_properties("cam-1", {"imageReady": False})
        backend.responses["imagearray"] = RemoteCallError("lost", RemoteErrorKind.TRANSPORT)
        backend.state = {"camerastate": 0, "imageready": True}
        values = await poller.poll_once("cam-1")
        assert values["imageready"] is True
        assert camera.last_error == "lost"
        assert "hasImage" not in camera.properties


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_starts_and_stops_with_connection(self, registry, bus, backend, poller, camera):
        manager = ConnectionManager(registry, bus, backend, timeout=1.0)
        backend.state = {"camerastate": 2}
        await manager.connect("cam-1")
        assert poller.polling == {"cam-1"}
        await asyncio.sleep(0.05)
        assert camera.properties["isExposing"] is True
        await manager.disconnect("cam-1")
        assert poller.polling == set()
        await poller.stop()

    @pytest.mark.asyncio
    async def test_removal_stops_polling(self, registry, bus, backend, poller, camera):
        manager = ConnectionManager(registry, bus, backend, timeout=1.0)
        backend.state = {"camerastate": 0}
        await manager.connect("cam-1")
        registry.remove("cam-1")
        await manager.aclose()
        assert poller.polling == set()
        await poller.stop()
