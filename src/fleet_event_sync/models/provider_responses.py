# fleet_event_sync/models/provider_responses.py
"""
Pydantic response models for the telematics provider's integration API.

Design Notes:
    - The provider uses PascalCase field names; models expose snake_case
      attributes through aliases and accept either form on input.
    - Identifiers are 64-bit integers that some serializers emit as strings;
      pydantic's lax mode coerces both.
    - An id of 0 means "not assigned" and is normalized to None.
    - Event models keep unknown fields (extra='allow') so the full original
      payload can be stored verbatim in telemetry_events.raw_payload.
    - Reference models use extra='ignore' to survive API additions.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'EventBatch',
    'EventPosition',
    'ProviderDriver',
    'ProviderEvent',
    'ProviderEventType',
    'ProviderVehicle',
    'ResponseModelBase',
    'TokenResponse',
]


class ResponseModelBase(BaseModel):
    """
    Base class for provider response models.

    Configuration:
        - extra='ignore': Silently ignore unknown fields.
        - populate_by_name=True: Allow initialization by field name OR alias.
        - str_strip_whitespace=True: Trim whitespace from string fields.
    """

    model_config = ConfigDict(
        extra='ignore',
        populate_by_name=True,
        str_strip_whitespace=True,
    )


def _zero_id_to_none(value: Any) -> Any:
    """Map the provider's 0 / '0' / '' placeholder ids to None."""
    if value in (0, '0', ''):
        return None
    return value


# =============================================================================
# OAuth2
# =============================================================================


class TokenResponse(ResponseModelBase):
    """Body of a successful token endpoint exchange."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int = Field(gt=0, description='Token lifetime in seconds')

    def expires_at(self, issued_at: datetime) -> datetime:
        """Absolute expiry computed from the moment the exchange completed."""
        return issued_at + timedelta(seconds=self.expires_in)


# =============================================================================
# Events
# =============================================================================


class EventPosition(ResponseModelBase):
    """Position fix attached to the start of an event."""

    model_config = ConfigDict(extra='allow', populate_by_name=True)

    latitude: float | None = Field(default=None, alias='Latitude')
    longitude: float | None = Field(default=None, alias='Longitude')
    speed_kilometres_per_hour: float | None = Field(
        default=None, alias='SpeedKilometresPerHour'
    )
    formatted_address: str | None = Field(default=None, alias='FormattedAddress')


class ProviderEvent(BaseModel):
    """
    One telemetry event as returned by the events endpoints.

    Only the fields the store indexes are typed; everything else the provider
    sends is preserved as extra data and round-trips through raw_payload().
    """

    model_config = ConfigDict(extra='allow', populate_by_name=True)

    event_id: int = Field(alias='EventId')
    driver_id: int | None = Field(default=None, alias='DriverId')
    asset_id: int | None = Field(default=None, alias='AssetId')
    event_type_id: int | None = Field(default=None, alias='EventTypeId')
    start_date_time: datetime = Field(alias='StartDateTime')
    start_position: EventPosition | None = Field(default=None, alias='StartPosition')

    @field_validator('driver_id', 'asset_id', 'event_type_id', mode='before')
    @classmethod
    def normalize_unassigned_ids(cls, value: Any) -> Any:
        """Treat 0 as 'no driver/asset/event type'."""
        return _zero_id_to_none(value)

    @field_validator('start_date_time', mode='after')
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        """Provider timestamps are UTC; attach tzinfo when it is omitted."""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def raw_payload(self) -> dict[str, Any]:
        """JSON-safe dict in the provider's own field naming."""
        return self.model_dump(mode='json', by_alias=True)

    def to_row(self) -> dict[str, Any]:
        """Map this event to a telemetry_events row dictionary."""
        position: EventPosition | None = self.start_position
        return {
            'external_id': self.event_id,
            'event_timestamp': self.start_date_time,
            'latitude': position.latitude if position else None,
            'longitude': position.longitude if position else None,
            'speed': position.speed_kilometres_per_hour if position else None,
            'location_description': position.formatted_address if position else None,
            'raw_payload': self.raw_payload(),
            'driver_external_id': self.driver_id,
            'vehicle_external_id': self.asset_id,
            'event_type_external_id': self.event_type_id,
        }


class EventBatch(BaseModel):
    """
    One page from the incremental endpoint.

    Attributes:
        events: Parsed events in provider order.
        has_more: Value of the 'hasmoreitems' header.
        next_token: Value of the 'getsincetoken' header; persist it only after
            the events are durably stored.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    events: list[ProviderEvent] = Field(default_factory=list)
    has_more: bool
    next_token: str

    @property
    def item_count(self) -> int:
        """Number of events in this page."""
        return len(self.events)


# =============================================================================
# Reference Data
# =============================================================================


class ProviderDriver(ResponseModelBase):
    """Driver master record."""

    driver_id: int = Field(alias='DriverId')
    name: str | None = Field(default=None, alias='Name')
    employee_number: str | None = Field(default=None, alias='EmployeeNumber')
    is_system_driver: bool = Field(default=False, alias='IsSystemDriver')


class ProviderVehicle(ResponseModelBase):
    """Asset (vehicle) master record."""

    asset_id: int = Field(alias='AssetId')
    description: str | None = Field(default=None, alias='Description')
    registration_number: str | None = Field(default=None, alias='RegistrationNumber')
    fleet_number: str | None = Field(default=None, alias='FleetNumber')
    make: str | None = Field(default=None, alias='Make')
    model: str | None = Field(default=None, alias='Model')
    year: str | None = Field(default=None, alias='Year')

    @field_validator('year', mode='before')
    @classmethod
    def coerce_year_to_string(cls, value: Any) -> Any:
        """Year arrives as a number for some assets and a string for others."""
        if isinstance(value, int):
            return str(value)
        return value


class ProviderEventType(ResponseModelBase):
    """Event library entry."""

    event_type_id: int = Field(alias='EventTypeId')
    description: str | None = Field(default=None, alias='Description')
    event_type: str | None = Field(default=None, alias='EventType')
    display_units: str | None = Field(default=None, alias='DisplayUnits')
