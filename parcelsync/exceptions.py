"""Errors raised by the parcelsync client."""

from typing import Optional


class ParcelSyncError(Exception):
    """Base class for parcelsync errors."""


class InvalidConfig(ParcelSyncError):
    """Error to indicate the client configuration is invalid."""


class TransportUnavailable(ParcelSyncError):
    """Error to indicate no realtime channel can be used in this environment."""


class StatusValidationError(ParcelSyncError):
    """A status submission failed client-side validation."""


class IllegalTransition(StatusValidationError):
    """The target status is not reachable from the current status."""

    def __init__(self, current, target) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move parcel from {current} to {target}")


class MissingRequiredField(StatusValidationError):
    """A field required by the target status was not provided."""

    def __init__(self, field: str, target) -> None:
        self.field = field
        self.target = target
        super().__init__(f"'{field}' is required when moving a parcel to {target}")


class LocationError(ParcelSyncError):
    """Base class for position provider failures."""


class LocationDenied(LocationError):
    """The user refused access to the device position."""


class LocationUnsupported(LocationError):
    """The device exposes no position capability."""


class LocationTransientError(LocationError):
    """A fix or its transmission failed but sampling may continue."""


class RefetchRequired(ParcelSyncError):
    """A realtime event referenced a parcel the view does not hold."""

    def __init__(self, parcel_id: Optional[str], tracking_code: Optional[str] = None) -> None:
        self.parcel_id = parcel_id
        self.tracking_code = tracking_code
        super().__init__(
            f"No held parcel matches id={parcel_id} tracking_code={tracking_code}"
        )


class InvalidPayload(ParcelSyncError):
    """A REST or realtime payload could not be converted to a model."""


class CourierApiError(ParcelSyncError):
    """A REST call to the courier API failed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)
