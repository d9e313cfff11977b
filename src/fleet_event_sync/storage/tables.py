# fleet_event_sync/storage/tables.py
"""
SQLAlchemy ORM tables for ingested events, control rows and reference data.

Tables:
    api_credential           Cached OAuth2 tokens, one row per provider account.
    telemetry_events         Append-only events; external_id is unique.
    historical_load_control  One row per backfill job, checkpointed hourly.
    etl_control              Incremental watermark per named process.
    drivers / vehicles / event_types
                             Reference data keyed by provider external_id.
    queued_jobs              Backing table for SqlJobQueue.

All datetime columns use UtcDateTime so SQLite (which has no timezone
support) and PostgreSQL hand back the same aware UTC values.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fleet_event_sync.load_status import LoadStatus

__all__: list[str] = [
    'ApiCredential',
    'Base',
    'Driver',
    'EtlControl',
    'EventType',
    'HistoricalLoadControl',
    'QueuedJob',
    'TelemetryEvent',
    'UtcDateTime',
    'Vehicle',
    'utc_now',
]


def utc_now() -> datetime:
    return datetime.now(UTC)


class UtcDateTime(TypeDecorator[datetime]):
    """
    Timezone-aware datetime stored as naive UTC.

    Naive values on the way in are assumed to already be UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.replace(tzinfo=None)

    def process_result_value(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Declarative base for all ingestion tables."""


# =============================================================================
# Authentication
# =============================================================================


class ApiCredential(Base):
    """Last successful token exchange for a provider account."""

    __tablename__ = 'api_credential'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, comment='Provider username'
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )


# =============================================================================
# Events
# =============================================================================


class TelemetryEvent(Base):
    """
    One provider event.

    external_id is the idempotence anchor: every writer inserts with
    ON CONFLICT (external_id) DO NOTHING.
    """

    __tablename__ = 'telemetry_events'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(
        BigInteger, nullable=False, unique=True, comment='Provider EventId'
    )
    event_timestamp: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed: Mapped[float | None] = mapped_column(
        Float, nullable=True, comment='km/h at event start'
    )
    location_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    driver_external_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    vehicle_external_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    event_type_external_id: Mapped[int | None] = mapped_column(
        BigInteger, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utc_now
    )

    __table_args__ = (
        Index('idx_telemetry_events_timestamp', 'event_timestamp'),
        Index('idx_telemetry_events_created_at', 'created_at'),
        Index('idx_telemetry_events_driver', 'driver_external_id'),
        Index('idx_telemetry_events_vehicle', 'vehicle_external_id'),
        Index('idx_telemetry_events_event_type', 'event_type_external_id'),
    )


# =============================================================================
# Control Rows
# =============================================================================


class HistoricalLoadControl(Base):
    """Progress and lifecycle of one backfill job."""

    __tablename__ = 'historical_load_control'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    status: Mapped[LoadStatus] = mapped_column(
        Enum(
            LoadStatus,
            native_enum=False,
            length=20,
            values_callable=lambda statuses: [status.value for status in statuses],
        ),
        nullable=False,
        default=LoadStatus.PENDING,
    )
    range_start: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    range_end: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    cursor: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, comment='End of the last processed hour'
    )
    total_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hours_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index('idx_historical_load_status', 'status'),)


class EtlControl(Base):
    """Incremental sync watermark for one named process."""

    __tablename__ = 'etl_control'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    process_name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    last_successful_since_token: Mapped[str | None] = mapped_column(
        String(100), nullable=True
    )
    last_run_timestamp: Mapped[datetime | None] = mapped_column(
        UtcDateTime, nullable=True
    )


# =============================================================================
# Reference Data
# =============================================================================


class Driver(Base):
    __tablename__ = 'drivers'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    employee_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_system_driver: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )


class Vehicle(Base):
    __tablename__ = 'vehicles'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    registration_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    fleet_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    make: Mapped[str | None] = mapped_column(String(100), nullable=True)
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    year: Mapped[str | None] = mapped_column(String(10), nullable=True)
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )


class EventType(Base):
    __tablename__ = 'event_types'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    display_units: Mapped[str | None] = mapped_column(String(50), nullable=True)
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )


# =============================================================================
# Job Queue
# =============================================================================


class QueuedJob(Base):
    """One job request in a named queue (see fleet_event_sync.queue)."""

    __tablename__ = 'queued_jobs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    dedupe_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default='waiting')
    remove_on_complete: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index('idx_queued_jobs_queue_status', 'queue_name', 'status'),
        Index('idx_queued_jobs_dedupe', 'queue_name', 'dedupe_key'),
    )
