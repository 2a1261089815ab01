"""In-process publish/subscribe for device state changes.

Producers (registry, connection manager, dispatcher, discovery) publish typed
event objects; consumers subscribe per :class:`EventKind`.  Handlers run
synchronously, in subscription order, on the loop turn that published the
event.  There is no history: late subscribers pull current state from the
registry instead of receiving replays.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Union

from observatory.devices.models import ConnectionState

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    DEVICE_ADDED = "deviceAdded"
    DEVICE_REMOVED = "deviceRemoved"
    CONNECTION_CHANGED = "connectionChanged"
    PROPERTY_CHANGED = "propertyChanged"
    ERROR = "error"


@dataclass(frozen=True)
class Event:
    kind: ClassVar[EventKind]


@dataclass(frozen=True)
class DeviceAdded(Event):
    kind: ClassVar[EventKind] = EventKind.DEVICE_ADDED
    device_id: str


@dataclass(frozen=True)
class DeviceRemoved(Event):
    kind: ClassVar[EventKind] = EventKind.DEVICE_REMOVED
    device_id: str


@dataclass(frozen=True)
class ConnectionChanged(Event):
    kind: ClassVar[EventKind] = EventKind.CONNECTION_CHANGED
    device_id: str
    state: ConnectionState
    previous: ConnectionState
    error: str | None = None


@dataclass(frozen=True)
class PropertyChanged(Event):
    kind: ClassVar[EventKind] = EventKind.PROPERTY_CHANGED
    device_id: str
    name: str
    value: Any
    previous: Any = None


@dataclass(frozen=True)
class DeviceError(Event):
    """A failure surfaced to observers.  ``device_id`` is ``None`` for discovery."""

    kind: ClassVar[EventKind] = EventKind.ERROR
    device_id: str | None
    message: str
    source: str = ""
    exception: BaseException | None = None


Handler = Callable[[Event], Any]
EventKey = Union[EventKind, str, type]


def _kind_of(key: EventKey) -> EventKind:
    if isinstance(key, EventKind):
        return key
    if isinstance(key, type) and issubclass(key, Event):
        return key.kind
    return EventKind(key)


class EventBus:
    """Typed publish/subscribe hub.

    ``on``/``off`` accept an :class:`EventKind`, its string value
    (``"propertyChanged"``) or the event class (``PropertyChanged``).
    """

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[Handler]] = {kind: [] for kind in EventKind}

    def on(self, key: EventKey, handler: Handler) -> Callable[[], None]:
        """Subscribe *handler*; returns a callable that unsubscribes it."""
        kind = _kind_of(key)
        self._handlers[kind].append(handler)
        return lambda: self.off(kind, handler)

    def off(self, key: EventKey, handler: Handler) -> None:
        """Unsubscribe *handler*.  Unknown handlers are ignored."""
        handlers = self._handlers[_kind_of(key)]
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    def publish(self, event: Event) -> None:
        # Copy so handlers may (un)subscribe while being dispatched.
        for handler in list(self._handlers[event.kind]):
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                logger.exception("Error in %s handler %r", event.kind.value, handler)

    def subscriber_count(self, key: EventKey) -> int:
        return len(self._handlers[_kind_of(key)])
