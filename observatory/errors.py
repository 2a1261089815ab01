"""Exception taxonomy for the device synchronisation layer.

Every failure raised by the core derives from :class:`ObservatoryError` so the
presentation layer can catch one base class.  Connection transitions never
raise these past the caller; they record ``last_error`` on the device instead.
"""

from __future__ import annotations

import enum


class ObservatoryError(Exception):
    """Base error for the device synchronisation layer."""


class DuplicateDeviceError(ObservatoryError):
    """Raised when a device id is already registered (or was bound elsewhere)."""

    def __init__(self, device_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Device already registered: {device_id}")
        self.device_id = device_id


class UnknownDeviceError(ObservatoryError, LookupError):
    """Raised when a device reference cannot be resolved."""

    def __init__(self, reference: object) -> None:
        super().__init__(f"Unknown device: {reference!r}")
        self.reference = reference


class NotConnectedError(ObservatoryError):
    """Raised when an operation needs a Connected device."""

    def __init__(self, device_id: str, state: object = None) -> None:
        detail = f" (state: {state})" if state is not None else ""
        super().__init__(f"Device {device_id} is not connected{detail}")
        self.device_id = device_id
        self.state = state


class RemoteErrorKind(str, enum.Enum):
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"


class RemoteCallError(ObservatoryError):
    """A remote call failed.

    Attributes:
        kind:         :class:`RemoteErrorKind` of the failure.
        url:          Request URL, when known.
        status:       HTTP status code, when a response was received.
        error_number: Alpaca ``ErrorNumber`` for device-reported errors.
    """

    def __init__(
        self,
        message: str,
        kind: RemoteErrorKind = RemoteErrorKind.TRANSPORT,
        *,
        url: str | None = None,
        status: int | None = None,
        error_number: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.status = status
        self.error_number = error_number

    @property
    def is_timeout(self) -> bool:
        return self.kind is RemoteErrorKind.TIMEOUT


class DiscoveryError(ObservatoryError):
    """Raised when a discovery target cannot be queried or is invalid."""

    def __init__(self, message: str, endpoint: str | None = None) -> None:
        super().__init__(f"{message} ({endpoint})" if endpoint else message)
        self.endpoint = endpoint


class DecodeError(ObservatoryError):
    """Raised for malformed ImageBytes payloads."""
