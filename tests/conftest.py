"""pytest configuration for Observatory tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from observatory.alpaca.backend import DispatchBackend
from observatory.devices.models import Device, DeviceType
from observatory.devices.registry import DeviceRegistry
from observatory.events import EventBus


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeBackend(DispatchBackend):
    """Records every call; behaviour is steered per action.

    ``responses[action]`` is returned (or raised, if an exception) and
    ``gates[action]`` is an ``asyncio.Event`` the call waits on first.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any] | None]] = []
        self.responses: dict[str, Any] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.image: bytes = b""
        self.state: dict[str, Any] | None = None

    async def _answer(self, verb, action, params):
        self.calls.append((verb, action, params))
        gate = self.gates.get(action)
        if gate is not None:
            await gate.wait()
        result = self.responses.get(action)
        if isinstance(result, BaseException):
            raise result
        return result

    async def get(self, device, action, params=None, timeout=None):
        return await self._answer("get", action, params)

    async def put(self, device, action, params=None, timeout=None):
        return await self._answer("put", action, params)

    async def get_image_bytes(self, device, timeout=None):
        self.calls.append(("get", "imagearray", None))
        result = self.responses.get("imagearray")
        if isinstance(result, BaseException):
            raise result
        return self.image

    async def device_state(self, device, timeout=None):
        self.calls.append(("get", "devicestate", None))
        result = self.responses.get("devicestate")
        if isinstance(result, BaseException):
            raise result
        return self.state

    def count(self, action: str) -> int:
        return sum(1 for _, a, _ in self.calls if a == action)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def registry(bus):
    return DeviceRegistry(bus)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def recorded(bus):
    """All events published on *bus*, in order."""
    events = []
    for kind in ("deviceAdded", "deviceRemoved", "connectionChanged", "propertyChanged", "error"):
        bus.on(kind, events.append)
    return events


def make_device(
    device_id: str = "cam-1",
    device_type: DeviceType | str = DeviceType.CAMERA,
    index: int = 0,
    endpoint: str = "http://192.168.1.50:11111/api/v1/camera/0",
) -> Device:
    return Device(id=device_id, type=device_type, index=index, endpoint=endpoint)


@pytest.fixture
def camera(registry):
    """A registered, Disconnected camera ``cam-1``."""
    return registry.add(make_device())
