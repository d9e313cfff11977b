# fleet_event_sync/storage/stores.py
"""
SQLAlchemy implementations of the store interfaces.

Bulk writes use the dialect's INSERT ... ON CONFLICT so that replaying a
window or a page never produces duplicate rows. SQLite and PostgreSQL are
supported; both accept ON CONFLICT and RETURNING.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Final

from sqlalchemy import Insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from fleet_event_sync.load_status import (
    ACTIVE_LOAD_STATUSES,
    BackfillError,
    LoadNotFoundError,
    LoadStatus,
)
from fleet_event_sync.models import (
    ProviderDriver,
    ProviderEvent,
    ProviderEventType,
    ProviderVehicle,
)
from fleet_event_sync.storage.database import session_scope
from fleet_event_sync.storage.interfaces import (
    LoadSnapshot,
    ReferenceIds,
    StoredCredential,
)
from fleet_event_sync.storage.tables import (
    ApiCredential,
    Base,
    Driver,
    EtlControl,
    EventType,
    HistoricalLoadControl,
    TelemetryEvent,
    Vehicle,
    utc_now,
)

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'SqlControlStore',
    'SqlCredentialStore',
    'SqlEventStore',
    'SqlReferenceStore',
    'dialect_insert',
]

DEFAULT_INSERT_CHUNK_SIZE: Final[int] = 200


def dialect_insert(session: Session, table: type[Base]) -> Insert:
    """INSERT construct that supports on_conflict_* for the session's dialect."""
    dialect_name: str = session.get_bind().dialect.name
    if dialect_name == 'sqlite':
        return sqlite_insert(table)
    if dialect_name == 'postgresql':
        return pg_insert(table)
    raise ValueError(f'Unsupported database dialect for upserts: {dialect_name!r}')


def _chunks[T](items: Sequence[T], size: int) -> list[Sequence[T]]:
    return [items[start : start + size] for start in range(0, len(items), size)]


# =============================================================================
# Credentials
# =============================================================================


class SqlCredentialStore:
    """Persists the cached OAuth2 tokens in api_credential."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory: sessionmaker[Session] = session_factory

    def load(self, account: str) -> StoredCredential | None:
        with session_scope(self._session_factory) as session:
            row: ApiCredential | None = session.scalar(
                select(ApiCredential).where(ApiCredential.account == account)
            )
            if row is None:
                return None
            return StoredCredential.model_validate(row)

    def save(self, account: str, credential: StoredCredential) -> None:
        with session_scope(self._session_factory) as session:
            row: ApiCredential | None = session.scalar(
                select(ApiCredential).where(ApiCredential.account == account)
            )
            if row is None:
                row = ApiCredential(account=account)
                session.add(row)
            row.access_token = credential.access_token
            row.refresh_token = credential.refresh_token
            row.expires_at = credential.expires_at
            row.updated_at = utc_now()


# =============================================================================
# Events
# =============================================================================


class SqlEventStore:
    """
    Append-only writer for telemetry_events.

    Args:
        session_factory: Bound sessionmaker.
        insert_chunk_size: Rows per INSERT statement; keeps statements under
            SQLite's bound-parameter limit.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        insert_chunk_size: int = DEFAULT_INSERT_CHUNK_SIZE,
    ) -> None:
        self._session_factory: sessionmaker[Session] = session_factory
        self._insert_chunk_size: int = insert_chunk_size

    def _insert_rows(
        self,
        session: Session,
        events: Sequence[ProviderEvent],
    ) -> list[ProviderEvent]:
        unique_events: dict[int, ProviderEvent] = {}
        for event in events:
            unique_events.setdefault(event.event_id, event)

        if not unique_events:
            return []

        inserted_ids: set[int] = set()
        ordered_events: list[ProviderEvent] = list(unique_events.values())

        for chunk in _chunks(ordered_events, self._insert_chunk_size):
            rows: list[dict[str, Any]] = [event.to_row() for event in chunk]
            statement = (
                dialect_insert(session, TelemetryEvent)
                .values(rows)
                .on_conflict_do_nothing(index_elements=['external_id'])
                .returning(TelemetryEvent.external_id)
            )
            inserted_ids.update(session.execute(statement).scalars().all())

        return [event for event in ordered_events if event.event_id in inserted_ids]

    def insert_events(self, events: Sequence[ProviderEvent]) -> list[ProviderEvent]:
        with session_scope(self._session_factory) as session:
            inserted: list[ProviderEvent] = self._insert_rows(session, events)

        logger.debug(
            'Inserted %d of %d events (%d already stored)',
            len(inserted),
            len(events),
            len(events) - len(inserted),
        )
        return inserted

    def store_batch_with_watermark(
        self,
        events: Sequence[ProviderEvent],
        process_name: str,
        next_token: str,
    ) -> list[ProviderEvent]:
        """
        Insert an incremental page and move the watermark atomically.

        If the insert fails the transaction rolls back and the watermark keeps
        its previous value, so the page is fetched again on the next run.
        """
        with session_scope(self._session_factory) as session:
            inserted: list[ProviderEvent] = self._insert_rows(session, events)
            _upsert_watermark(session, process_name, next_token)

        return inserted


# =============================================================================
# Control Rows
# =============================================================================


def _upsert_watermark(session: Session, process_name: str, since_token: str) -> None:
    control: EtlControl | None = session.scalar(
        select(EtlControl).where(EtlControl.process_name == process_name)
    )
    if control is None:
        control = EtlControl(process_name=process_name)
        session.add(control)
    control.last_successful_since_token = since_token
    control.last_run_timestamp = utc_now()


class SqlControlStore:
    """Job-control (historical_load_control) and watermark (etl_control) rows."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory: sessionmaker[Session] = session_factory

    @staticmethod
    def _get_row(session: Session, job_id: str) -> HistoricalLoadControl:
        row: HistoricalLoadControl | None = session.scalar(
            select(HistoricalLoadControl).where(HistoricalLoadControl.job_id == job_id)
        )
        if row is None:
            raise LoadNotFoundError(f'Historical load not found: {job_id}')
        return row

    def create_load(
        self,
        job_id: str,
        range_start: datetime,
        range_end: datetime,
        total_hours: int,
        cursor: datetime | None = None,
    ) -> LoadSnapshot:
        with session_scope(self._session_factory) as session:
            row = HistoricalLoadControl(
                job_id=job_id,
                status=LoadStatus.PENDING,
                range_start=range_start,
                range_end=range_end,
                cursor=cursor if cursor is not None else range_start,
                total_hours=total_hours,
                hours_processed=0,
                events_processed=0,
                cancel_requested=False,
            )
            session.add(row)
            session.flush()
            snapshot: LoadSnapshot = LoadSnapshot.model_validate(row)

        logger.info(
            'Created historical load %s: %s -> %s (%d hours)',
            job_id,
            range_start.isoformat(),
            range_end.isoformat(),
            total_hours,
        )
        return snapshot

    def get_load(self, job_id: str) -> LoadSnapshot | None:
        with session_scope(self._session_factory) as session:
            row: HistoricalLoadControl | None = session.scalar(
                select(HistoricalLoadControl).where(
                    HistoricalLoadControl.job_id == job_id
                )
            )
            return LoadSnapshot.model_validate(row) if row is not None else None

    def list_recent_loads(self, limit: int = 20) -> list[LoadSnapshot]:
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(HistoricalLoadControl)
                .order_by(
                    HistoricalLoadControl.created_at.desc(),
                    HistoricalLoadControl.id.desc(),
                )
                .limit(limit)
            ).all()
            return [LoadSnapshot.model_validate(row) for row in rows]

    def find_active_load(self) -> LoadSnapshot | None:
        with session_scope(self._session_factory) as session:
            row: HistoricalLoadControl | None = session.scalar(
                select(HistoricalLoadControl)
                .where(HistoricalLoadControl.status.in_(list(ACTIVE_LOAD_STATUSES)))
                .order_by(HistoricalLoadControl.id)
                .limit(1)
            )
            return LoadSnapshot.model_validate(row) if row is not None else None

    def set_load_status(
        self,
        job_id: str,
        status: LoadStatus,
        error_message: str | None = None,
    ) -> LoadSnapshot:
        """
        Move a job to a new status.

        Sets started_at on entering running and completed_at on entering any
        terminal status.

        Raises:
            LoadNotFoundError: If the job does not exist.
            InvalidStatusTransitionError: If the move is not allowed.
        """
        with session_scope(self._session_factory) as session:
            row: HistoricalLoadControl = self._get_row(session, job_id)
            row.status = LoadStatus(row.status).ensure_transition(status)

            now: datetime = utc_now()
            if status is LoadStatus.RUNNING:
                row.started_at = now
            if status.is_terminal:
                row.completed_at = now
            if error_message is not None:
                row.error_message = error_message

            session.flush()
            snapshot: LoadSnapshot = LoadSnapshot.model_validate(row)

        logger.info('Historical load %s -> %s', job_id, status.value)
        return snapshot

    def request_cancel(self, job_id: str) -> LoadSnapshot:
        """Flag a running job; the worker stops at its next hour boundary."""
        with session_scope(self._session_factory) as session:
            row: HistoricalLoadControl = self._get_row(session, job_id)
            row.cancel_requested = True
            session.flush()
            return LoadSnapshot.model_validate(row)

    def is_cancel_requested(self, job_id: str) -> bool:
        with session_scope(self._session_factory) as session:
            requested: bool | None = session.scalar(
                select(HistoricalLoadControl.cancel_requested).where(
                    HistoricalLoadControl.job_id == job_id
                )
            )
            return bool(requested)

    def record_checkpoint(
        self,
        job_id: str,
        cursor: datetime,
        events_inserted: int,
    ) -> LoadSnapshot:
        """
        Persist one processed hour.

        Raises:
            LoadNotFoundError: If the job does not exist.
            BackfillError: If the job is not running or the cursor would
                move backwards.
        """
        with session_scope(self._session_factory) as session:
            row: HistoricalLoadControl = self._get_row(session, job_id)

            if row.status is not LoadStatus.RUNNING:
                raise BackfillError(
                    f'Cannot checkpoint load {job_id} in status {row.status.value}'
                )
            if cursor < row.cursor:
                raise BackfillError(
                    f'Checkpoint cursor for {job_id} moved backwards: '
                    f'{cursor.isoformat()} < {row.cursor.isoformat()}'
                )

            row.cursor = cursor
            row.hours_processed += 1
            row.events_processed += events_inserted
            session.flush()
            return LoadSnapshot.model_validate(row)

    def get_watermark(self, process_name: str) -> str | None:
        with session_scope(self._session_factory) as session:
            return session.scalar(
                select(EtlControl.last_successful_since_token).where(
                    EtlControl.process_name == process_name
                )
            )

    def set_watermark(self, process_name: str, since_token: str) -> None:
        with session_scope(self._session_factory) as session:
            _upsert_watermark(session, process_name, since_token)


# =============================================================================
# Reference Data
# =============================================================================


class SqlReferenceStore:
    """Drivers, vehicles and event types keyed by provider external id."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory: sessionmaker[Session] = session_factory

    def find_unknown(self, reference_ids: ReferenceIds) -> ReferenceIds:
        """Subset of reference_ids with no matching local row."""
        unknown = ReferenceIds()
        if reference_ids.is_empty():
            return unknown

        with session_scope(self._session_factory) as session:
            for table, wanted, missing in (
                (Driver, reference_ids.drivers, unknown.drivers),
                (Vehicle, reference_ids.vehicles, unknown.vehicles),
                (EventType, reference_ids.event_types, unknown.event_types),
            ):
                if not wanted:
                    continue
                known: set[int] = set(
                    session.scalars(
                        select(table.external_id).where(
                            table.external_id.in_(sorted(wanted))
                        )
                    ).all()
                )
                missing.update(wanted - known)

        return unknown

    def _upsert(
        self,
        table: type[Driver] | type[Vehicle] | type[EventType],
        rows: list[dict[str, Any]],
    ) -> int:
        # Postgres refuses to update the same row twice in one statement.
        rows = list({row['external_id']: row for row in rows}.values())
        if not rows:
            return 0

        with session_scope(self._session_factory) as session:
            for chunk in _chunks(rows, DEFAULT_INSERT_CHUNK_SIZE):
                statement = dialect_insert(session, table).values(list(chunk))
                update_columns: dict[str, Any] = {
                    column: statement.excluded[column]
                    for column in chunk[0]
                    if column != 'external_id'
                }
                update_columns['updated_at'] = utc_now()
                session.execute(
                    statement.on_conflict_do_update(
                        index_elements=['external_id'],
                        set_=update_columns,
                    )
                )

        logger.info('Upserted %d rows into %s', len(rows), table.__tablename__)
        return len(rows)

    def upsert_drivers(self, drivers: Sequence[ProviderDriver]) -> int:
        return self._upsert(
            Driver,
            [
                {
                    'external_id': driver.driver_id,
                    'name': driver.name,
                    'employee_number': driver.employee_number,
                    'is_system_driver': driver.is_system_driver,
                    'raw_payload': driver.model_dump(mode='json', by_alias=True),
                }
                for driver in drivers
            ],
        )

    def upsert_vehicles(self, vehicles: Sequence[ProviderVehicle]) -> int:
        return self._upsert(
            Vehicle,
            [
                {
                    'external_id': vehicle.asset_id,
                    'description': vehicle.description,
                    'registration_number': vehicle.registration_number,
                    'fleet_number': vehicle.fleet_number,
                    'make': vehicle.make,
                    'model': vehicle.model,
                    'year': vehicle.year,
                    'raw_payload': vehicle.model_dump(mode='json', by_alias=True),
                }
                for vehicle in vehicles
            ],
        )

    def upsert_event_types(self, event_types: Sequence[ProviderEventType]) -> int:
        return self._upsert(
            EventType,
            [
                {
                    'external_id': event_type.event_type_id,
                    'description': event_type.description,
                    'event_type': event_type.event_type,
                    'display_units': event_type.display_units,
                    'raw_payload': event_type.model_dump(mode='json', by_alias=True),
                }
                for event_type in event_types
            ],
        )
