"""Tests for the DeviceHub application root."""

from __future__ import annotations

import pytest

from observatory.alpaca import SimulatedBackend
from observatory.config import ObservatoryConfig
from observatory.devices.models import ConnectionState
from observatory.errors import DuplicateDeviceError, NotConnectedError, UnknownDeviceError
from observatory.events import ConnectionChanged, EventKind
from observatory.hub import DeviceHub


@pytest.fixture
def hub():
    return DeviceHub(ObservatoryConfig(poll_enabled=False), backend=SimulatedBackend())


class TestRegistration:
    def test_manual_ids(self, hub):
        device = hub.register_device("telescope", 0, "sim://telescope/0")
        assert device.id.startswith("manual-")
        assert len(device.id) == len("manual-") + 8
        assert hub.get_device(device.id) is device

    def test_explicit_id_conflict(self, hub):
        hub.register_device("camera", 0, "sim://camera/0", device_id="cam-1")
        with pytest.raises(DuplicateDeviceError):
            hub.register_device("camera", 0, "sim://camera/0", device_id="cam-1")

    def test_resolve_device_id(self, hub):
        hub.register_device("camera", 0, "sim://camera/0", device_id="cam-main")
        hub.register_device("telescope", 0, "sim://telescope/0", device_id="scope")
        assert hub.resolve_device_id("scope") == "scope"
        assert hub.resolve_device_id(0) == "cam-main"
        assert hub.resolve_device_id("0", device_type="telescope") == "scope"
        with pytest.raises(UnknownDeviceError):
            hub.resolve_device_id("camera")

    def test_find_and_list(self, hub):
        hub.register_device("camera", 1, "sim://camera/1", device_id="cam-b")
        assert hub.find_device(device_type="camera", index=1).id == "cam-b"
        assert [d.id for d in hub.list_devices()] == ["cam-b"]
        assert hub.update_properties("ghost", {"x": 1}) is False


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_connection_events_in_order(self, hub):
        states = []
        unsubscribe = hub.on(EventKind.CONNECTION_CHANGED, lambda e: states.append(e.state))
        hub.register_device("camera", 0, "sim://camera/0", device_id="cam-1")
        await hub.connect("cam-1")
        await hub.disconnect("cam-1")
        unsubscribe()
        await hub.connect("cam-1")
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTING,
            ConnectionState.DISCONNECTED,
        ]
        await hub.aclose()

    @pytest.mark.asyncio
    async def test_commands_need_connection(self, hub):
        hub.register_device("camera", 0, "sim://camera/0", device_id="cam-1")
        with pytest.raises(NotConnectedError):
            await hub.set_property("cam-1", "gain", 5)
        await hub.aclose()

    @pytest.mark.asyncio
    async def test_removal_of_connected_device(self, hub):
        seen = []
        hub.on(ConnectionChanged, seen.append)
        hub.register_device("camera", 0, "sim://camera/0", device_id="cam-1")
        await hub.connect("cam-1")
        assert hub.remove_device("cam-1") is True
        assert hub.get_device("cam-1") is None
        await hub.aclose()
        assert seen[-1].state is ConnectionState.DISCONNECTED
