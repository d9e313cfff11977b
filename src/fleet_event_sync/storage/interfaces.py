# fleet_event_sync/storage/interfaces.py
"""
Narrow store interfaces used by the workers and services.

Workers depend on these protocols only; `stores.py` provides the SQLAlchemy
implementations and tests are free to substitute fakes. Values crossing the
boundary are immutable pydantic snapshots, never live ORM objects.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Self

from pydantic import BaseModel, ConfigDict

from fleet_event_sync.load_status import LoadStatus
from fleet_event_sync.models import (
    ProviderDriver,
    ProviderEvent,
    ProviderEventType,
    ProviderVehicle,
)

__all__: list[str] = [
    'ControlStore',
    'CredentialStore',
    'EventStore',
    'LoadSnapshot',
    'ReferenceIds',
    'ReferenceStore',
    'StoredCredential',
]


# =============================================================================
# Snapshots
# =============================================================================


class StoredCredential(BaseModel):
    """Tokens from the last successful exchange."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime


class LoadSnapshot(BaseModel):
    """Read-only copy of a historical_load_control row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    job_id: str
    status: LoadStatus
    range_start: datetime
    range_end: datetime
    cursor: datetime
    total_hours: int
    hours_processed: int
    events_processed: int
    cancel_requested: bool = False
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def progress_percent(self) -> float:
        if self.total_hours <= 0:
            return 0.0
        return round(100.0 * self.hours_processed / self.total_hours, 1)


@dataclass(slots=True)
class ReferenceIds:
    """Driver, vehicle and event-type external ids referenced by events."""

    drivers: set[int] = field(default_factory=set)
    vehicles: set[int] = field(default_factory=set)
    event_types: set[int] = field(default_factory=set)

    @classmethod
    def from_events(cls, events: Iterable[ProviderEvent]) -> Self:
        reference_ids: Self = cls()
        for event in events:
            if event.driver_id is not None:
                reference_ids.drivers.add(event.driver_id)
            if event.asset_id is not None:
                reference_ids.vehicles.add(event.asset_id)
            if event.event_type_id is not None:
                reference_ids.event_types.add(event.event_type_id)
        return reference_ids

    def update(self, other: 'ReferenceIds') -> None:
        self.drivers |= other.drivers
        self.vehicles |= other.vehicles
        self.event_types |= other.event_types

    def clear(self) -> None:
        self.drivers.clear()
        self.vehicles.clear()
        self.event_types.clear()

    def is_empty(self) -> bool:
        return not (self.drivers or self.vehicles or self.event_types)

    def __len__(self) -> int:
        return len(self.drivers) + len(self.vehicles) + len(self.event_types)


# =============================================================================
# Protocols
# =============================================================================


class CredentialStore(Protocol):
    def load(self, account: str) -> StoredCredential | None: ...

    def save(self, account: str, credential: StoredCredential) -> None: ...


class EventStore(Protocol):
    def insert_events(self, events: Sequence[ProviderEvent]) -> list[ProviderEvent]:
        """Insert-or-ignore by external id; returns the events actually inserted."""
        ...

    def store_batch_with_watermark(
        self,
        events: Sequence[ProviderEvent],
        process_name: str,
        next_token: str,
    ) -> list[ProviderEvent]:
        """Insert events and advance the watermark in one transaction."""
        ...


class ControlStore(Protocol):
    def create_load(
        self,
        job_id: str,
        range_start: datetime,
        range_end: datetime,
        total_hours: int,
        cursor: datetime | None = None,
    ) -> LoadSnapshot: ...

    def get_load(self, job_id: str) -> LoadSnapshot | None: ...

    def list_recent_loads(self, limit: int = 20) -> list[LoadSnapshot]: ...

    def find_active_load(self) -> LoadSnapshot | None: ...

    def set_load_status(
        self,
        job_id: str,
        status: LoadStatus,
        error_message: str | None = None,
    ) -> LoadSnapshot: ...

    def request_cancel(self, job_id: str) -> LoadSnapshot: ...

    def is_cancel_requested(self, job_id: str) -> bool: ...

    def record_checkpoint(
        self,
        job_id: str,
        cursor: datetime,
        events_inserted: int,
    ) -> LoadSnapshot: ...

    def get_watermark(self, process_name: str) -> str | None: ...

    def set_watermark(self, process_name: str, since_token: str) -> None: ...


class ReferenceStore(Protocol):
    def find_unknown(self, reference_ids: ReferenceIds) -> ReferenceIds: ...

    def upsert_drivers(self, drivers: Sequence[ProviderDriver]) -> int: ...

    def upsert_vehicles(self, vehicles: Sequence[ProviderVehicle]) -> int: ...

    def upsert_event_types(self, event_types: Sequence[ProviderEventType]) -> int: ...
