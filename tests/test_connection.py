"""Tests for the connection lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from observatory.devices.connection import ConnectionManager
from observatory.devices.models import ConnectionState
from observatory.errors import RemoteCallError, RemoteErrorKind, UnknownDeviceError
from observatory.events import ConnectionChanged, DeviceError

C = ConnectionState


def _states(events, device_id="cam-1"):
    return [e.state for e in events if isinstance(e, ConnectionChanged) and e.device_id == device_id]


@pytest.fixture
def manager(registry, bus, backend):
    return ConnectionManager(registry, bus, backend, timeout=1.0)


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_then_disconnect(self, manager, camera, backend, recorded):
        assert await manager.connect("cam-1") is C.CONNECTED
        assert camera.is_connected
        assert await manager.disconnect("cam-1") is C.DISCONNECTED
        assert _states(recorded) == [C.CONNECTING, C.CONNECTED, C.DISCONNECTING, C.DISCONNECTED]
        assert backend.calls == [
            ("put", "connected", {"Connected": True}),
            ("put", "connected", {"Connected": False}),
        ]

    @pytest.mark.asyncio
    async def test_connect_twice_sends_one_request(self, manager, camera, backend):
        gate = backend.gates["connected"] = asyncio.Event()
        first = asyncio.create_task(manager.connect("cam-1"))
        await asyncio.sleep(0)
        assert camera.connection_state is C.CONNECTING
        assert await manager.connect("cam-1") is C.CONNECTING
        gate.set()
        assert await first is C.CONNECTED
        assert await manager.connect("cam-1") is C.CONNECTED
        assert backend.count("connected") == 1

    @pytest.mark.asyncio
    async def test_failure_reverts_and_records_error(self, manager, camera, backend, recorded):
        backend.responses["connected"] = RemoteCallError("connection refused")
        assert await manager.connect("cam-1") is C.DISCONNECTED
        assert camera.last_error == "connection refused"
        changes = [e for e in recorded if isinstance(e, ConnectionChanged)]
        assert [e.state for e in changes] == [C.CONNECTING, C.DISCONNECTED]
        assert changes[-1].error == "connection refused"
        errors = [e for e in recorded if isinstance(e, DeviceError)]
        assert errors[0].source == "connect"

    @pytest.mark.asyncio
    async def test_success_clears_last_error(self, manager, camera, backend):
        backend.responses["connected"] = RemoteCallError("refused")
        await manager.connect("cam-1")
        backend.responses.pop("connected")
        await manager.connect("cam-1")
        assert camera.last_error is None
        assert camera.is_connected

    @pytest.mark.asyncio
    async def test_unexpected_exception_never_sticks_in_connecting(self, manager, camera, backend):
        backend.responses["connected"] = KeyError("bad payload")
        assert await manager.connect("cam-1") is C.DISCONNECTED

    @pytest.mark.asyncio
    async def test_timeout_reverts(self, registry, bus, backend, camera):
        manager = ConnectionManager(registry, bus, backend, timeout=0.05)
        backend.gates["connected"] = asyncio.Event()
        assert await manager.connect("cam-1") is C.DISCONNECTED
        assert "timed out" in camera.last_error

    @pytest.mark.asyncio
    async def test_unknown_device(self, manager):
        with pytest.raises(UnknownDeviceError):
            await manager.connect("ghost")


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_always_ends_disconnected(self, manager, camera, backend, recorded):
        await manager.connect("cam-1")
        backend.responses["connected"] = RemoteCallError("device hung", RemoteErrorKind.TIMEOUT)
        assert await manager.disconnect("cam-1") is C.DISCONNECTED
        assert camera.last_error == "device hung"
        assert _states(recorded)[-1] is C.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_when_disconnected_is_noop(self, manager, camera, backend):
        assert await manager.disconnect("cam-1") is C.DISCONNECTED
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_connect(self, manager, camera, backend, recorded):
        gate = backend.gates["connected"] = asyncio.Event()
        pending = asyncio.create_task(manager.connect("cam-1"))
        await asyncio.sleep(0)
        backend.gates.pop("connected")
        assert await manager.disconnect("cam-1") is C.DISCONNECTED
        gate.set()
        assert await pending is C.DISCONNECTED
        assert camera.connection_state is C.DISCONNECTED
        assert C.CONNECTED not in _states(recorded)

    @pytest.mark.asyncio
    async def test_removing_connected_device_disconnects_in_background(self, manager, registry, camera, backend):
        await manager.connect("cam-1")
        registry.remove("cam-1")
        assert "cam-1" not in registry
        await manager.aclose()
        assert backend.calls[-1] == ("put", "connected", {"Connected": False})
        assert camera.connection_state is C.DISCONNECTED

    @pytest.mark.asyncio
    async def test_removal_events_precede_device_removed(self, manager, registry, camera, backend, recorded):
        await manager.connect("cam-1")
        recorded.clear()
        registry.remove("cam-1")
        order = [e.state if isinstance(e, ConnectionChanged) else type(e).__name__ for e in recorded]
        assert order == [C.DISCONNECTING, C.DISCONNECTED, "DeviceRemoved"]
        await manager.aclose()
        assert backend.count("connected") == 2

    @pytest.mark.asyncio
    async def test_remote_failure_after_removal_is_ignored(self, manager, registry, camera, backend, recorded):
        await manager.connect("cam-1")
        backend.responses["connected"] = RemoteCallError("gone", RemoteErrorKind.TRANSPORT)
        recorded.clear()
        registry.remove("cam-1")
        await manager.aclose()
        assert not any(isinstance(e, DeviceError) for e in recorded)
        assert camera.connection_state is C.DISCONNECTED


class TestStateInvariant:
    @pytest.mark.asyncio
    async def test_state_is_always_a_defined_value(self, manager, camera, backend, bus):
        seen = []
        bus.on(ConnectionChanged, lambda e: seen.append(camera.connection_state))
        await manager.connect("cam-1")
        backend.responses["connected"] = RemoteCallError("x")
        await manager.disconnect("cam-1")
        await manager.connect("cam-1")
        assert seen and all(isinstance(s, ConnectionState) for s in seen)
        assert manager.state_of("cam-1") is C.DISCONNECTED
