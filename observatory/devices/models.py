"""Device record types shared by the registry, connection manager and dispatcher."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


class DeviceType(str, enum.Enum):
    """Alpaca device categories.  Values are the lower-case URL segment."""

    CAMERA = "camera"
    COVER_CALIBRATOR = "covercalibrator"
    DOME = "dome"
    FILTER_WHEEL = "filterwheel"
    FOCUSER = "focuser"
    OBSERVING_CONDITIONS = "observingconditions"
    ROTATOR = "rotator"
    SAFETY_MONITOR = "safetymonitor"
    SWITCH = "switch"
    TELESCOPE = "telescope"

    @classmethod
    def parse(cls, value: str | DeviceType) -> DeviceType:
        """Accept ``"FilterWheel"``, ``"filter-wheel"``, ``"filter_wheel"`` etc."""
        if isinstance(value, DeviceType):
            return value
        key = str(value).strip().lower().replace("-", "").replace("_", "").replace(" ", "")
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown device type: {value!r}") from None


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


def make_device_id(address: str, port: int, device_type: str | DeviceType, number: int) -> str:
    """Build the stable id of a discovered device: ``{address}:{port}:{type}:{number}``."""
    return f"{address}:{port}:{DeviceType.parse(device_type).value}:{int(number)}"


@dataclass(eq=False)
class Device:
    """A single controllable instrument.

    Owned exclusively by :class:`~observatory.devices.registry.DeviceRegistry`.
    ``connection_state`` is written only by the connection manager;
    ``properties`` only through the registry's ``update_properties``.
    """

    id: str
    type: DeviceType
    index: int
    endpoint: str
    name: str = ""
    unique_id: str = ""
    address: str | None = None
    port: int | None = None
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    properties: dict[str, Any] = field(default_factory=dict)
    last_error: str | None = None
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        self.type = DeviceType.parse(self.type)
        self.index = int(self.index)
        self.endpoint = self.endpoint.rstrip("/")
        if not self.name:
            self.name = f"{self.type.value} {self.index}"

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly summary (binary properties are omitted)."""
        return {
            "id": self.id,
            "type": self.type.value,
            "index": self.index,
            "name": self.name,
            "endpoint": self.endpoint,
            "address": self.address,
            "port": self.port,
            "connection_state": self.connection_state.value,
            "last_error": self.last_error,
            "properties": {
                k: v for k, v in self.properties.items()
                if isinstance(v, (str, int, float, bool)) or v is None
            },
        }
