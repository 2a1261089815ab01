"""Two-phase optimistic property updates.

``apply()`` shows the caller's intent immediately; ``reconcile()`` converges
on the device's answer once the remote call settles.  Both phases are plain
registry writes, so they can be exercised without any transport.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from observatory.devices.models import DeviceType
from observatory.devices.registry import DeviceRegistry

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class OptimisticRule:
    patch: dict[str, Any]
    revert: dict[str, Any] | None = None
    confirm: dict[str, Any] = field(default_factory=dict)


OPTIMISTIC_RULES: dict[tuple[DeviceType, str], OptimisticRule] = {
    (DeviceType.CAMERA, "startexposure"): OptimisticRule(
        patch={"isExposing": True, "exposureProgress": 0, "cameraState": 2, "imageReady": False},
        revert={"isExposing": False, "exposureProgress": 0, "cameraState": 0},
    ),
    (DeviceType.CAMERA, "abortexposure"): OptimisticRule(patch={"isExposing": False}),
    (DeviceType.CAMERA, "stopexposure"): OptimisticRule(patch={"isExposing": False}),
    (DeviceType.TELESCOPE, "slewtocoordinatesasync"): OptimisticRule(
        patch={"isSlewing": True}, revert={"isSlewing": False},
    ),
    (DeviceType.TELESCOPE, "slewtoaltazasync"): OptimisticRule(
        patch={"isSlewing": True}, revert={"isSlewing": False},
    ),
    (DeviceType.TELESCOPE, "findhome"): OptimisticRule(patch={"isSlewing": True}, revert={"isSlewing": False}),
    (DeviceType.TELESCOPE, "park"): OptimisticRule(patch={"isSlewing": True}, revert={"isSlewing": False}),
    (DeviceType.TELESCOPE, "abortslew"): OptimisticRule(patch={"isSlewing": False}),
    (DeviceType.FOCUSER, "move"): OptimisticRule(patch={"isMoving": True}, revert={"isMoving": False}),
    (DeviceType.FOCUSER, "halt"): OptimisticRule(patch={"isMoving": False}),
    (DeviceType.DOME, "openshutter"): OptimisticRule(
        patch={"shutterMoving": True}, revert={"shutterMoving": False},
    ),
    (DeviceType.DOME, "closeshutter"): OptimisticRule(
        patch={"shutterMoving": True}, revert={"shutterMoving": False},
    ),
}


def rule_for(device_type: DeviceType, method: str) -> OptimisticRule | None:
    return OPTIMISTIC_RULES.get((device_type, method.lower()))


class OptimisticUpdate:
    """A pending optimistic patch on one device.

    Args:
        registry:  Registry holding the device.
        device_id: Target device.
        patch:     Properties to show immediately.
        revert:    Properties to write on failure.  When omitted the values
                   that *patch* overwrote are restored.
        confirm:   Extra properties to write on success.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        device_id: str,
        patch: dict[str, Any],
        revert: dict[str, Any] | None = None,
        confirm: dict[str, Any] | None = None,
    ) -> None:
        self._registry = registry
        self.device_id = device_id
        self.patch = dict(patch)
        self.revert = dict(revert) if revert is not None else None
        self.confirm = dict(confirm or {})
        self._previous: dict[str, Any] = {}
        self.applied = False
        self.settled = False

    @classmethod
    def from_rule(cls, registry: DeviceRegistry, device_id: str, rule: OptimisticRule) -> OptimisticUpdate:
        return cls(registry, device_id, rule.patch, rule.revert, rule.confirm)

    def apply(self) -> None:
        device = self._registry.get(self.device_id)
        if device is None:
            return
        self._previous = {k: device.properties.get(k, _MISSING) for k in self.patch}
        self._registry.update_properties(self.device_id, self.patch)
        self.applied = True

    def reconcile(self, error: BaseException | None = None, confirm: dict[str, Any] | None = None) -> None:
        """Settle the update: roll back on *error*, otherwise apply *confirm*."""
        if self.settled or not self.applied:
            return
        self.settled = True
        if error is not None:
            if self.revert is not None:
                rollback = self.revert
            else:
                rollback = {k: (None if v is _MISSING else v) for k, v in self._previous.items()}
            device = self._registry.get(self.device_id)
            if device is None:
                return
            # keys overwritten by a newer writer keep the newer value
            rollback = {
                k: v for k, v in rollback.items()
                if k not in self.patch or _same(device.properties.get(k, _MISSING), self.patch[k])
            }
            if rollback:
                logger.debug("Reverting optimistic update on %s: %s", self.device_id, rollback)
                self._registry.update_properties(self.device_id, rollback)
            return
        final = {**self.confirm, **(confirm or {})}
        if final:
            self._registry.update_properties(self.device_id, final)


def _same(current: Any, expected: Any) -> bool:
    if current is expected:
        return True
    try:
        return bool(current == expected)
    except (TypeError, ValueError):
        return False
