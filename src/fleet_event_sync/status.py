# fleet_event_sync/status.py
"""
Read-only ingestion monitoring.

IngestionStatusService answers two questions for operators:

- get_status(): is ingestion healthy right now? Watermark age, today's
  volume, since-token age and expiry, queue counters and overall state.
- get_metrics(): what has been ingested recently? Hourly and daily event
  counts (zero-filled, so gaps show up as zeros rather than missing rows)
  and top event types, drivers and vehicles over the trailing week.

Every call runs fresh aggregate queries; nothing is cached and nothing is
written.

Bucketing Notes:
    Hour/day truncation is dialect-specific (strftime on SQLite, date_trunc
    on PostgreSQL). Both results are normalized to UTC pandas timestamps and
    reindexed onto a complete range.
"""

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Final

import pandas as pd
from pydantic import BaseModel, ConfigDict
from sqlalchemy import ColumnElement, func, select
from sqlalchemy.orm import InstrumentedAttribute, Session, sessionmaker

from fleet_event_sync.incremental import ConsecutiveFailureBreaker
from fleet_event_sync.queue import JobQueue, QueueCounts
from fleet_event_sync.since_token import PROVIDER_TOKEN_LIFETIME_DAYS, since_token_age
from fleet_event_sync.storage import session_scope
from fleet_event_sync.storage.tables import EtlControl, TelemetryEvent

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'IngestionMetrics',
    'IngestionState',
    'IngestionStatus',
    'IngestionStatusService',
    'LastSync',
    'PerformanceStats',
    'RankedCount',
    'TimeBucket',
    'TodayStats',
    'TokenInfo',
    'WorkerQueues',
    'build_token_info',
]

# Average events per incremental page, used to estimate pages fetched today.
EVENTS_PER_PAGE_ESTIMATE: Final[int] = 120
TOP_N_WINDOW: Final[timedelta] = timedelta(days=7)
RECENT_WINDOW: Final[timedelta] = timedelta(minutes=60)
HOURLY_BUCKETS: Final[int] = 24


# =============================================================================
# Result Models
# =============================================================================


class IngestionState(str, Enum):
    CIRCUIT_BREAKER_OPEN = 'circuit_breaker_open'
    RUNNING = 'running'
    ERROR = 'error'
    IDLE = 'idle'


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class LastSync(_Frozen):
    token: str | None
    timestamp: datetime | None
    age_minutes: int | None


class TodayStats(_Frozen):
    total_events: int
    estimated_pages: int
    events_per_hour: int
    first_event_at: datetime | None
    last_event_at: datetime | None


class TokenInfo(_Frozen):
    current: str
    age_hours: float
    days_until_expiry: float
    is_expiring_soon: bool
    expires_in: str


class WorkerQueues(_Frozen):
    incremental: QueueCounts
    reference: QueueCounts


class PerformanceStats(_Frozen):
    events_last_60_minutes: int
    avg_events_per_minute: float
    total_events: int
    oldest_event_at: datetime | None
    newest_event_at: datetime | None


class IngestionStatus(_Frozen):
    status: IngestionState
    last_sync: LastSync | None
    today: TodayStats
    token: TokenInfo
    queues: WorkerQueues
    performance: PerformanceStats
    generated_at: datetime


class TimeBucket(_Frozen):
    bucket_start: datetime
    events: int


class RankedCount(_Frozen):
    external_id: int | None
    events: int


class IngestionMetrics(_Frozen):
    hourly: list[TimeBucket]
    daily: list[TimeBucket]
    top_event_types: list[RankedCount]
    top_drivers: list[RankedCount]
    top_vehicles: list[RankedCount]


# =============================================================================
# Pure helpers
# =============================================================================


def build_token_info(since_token: str | None, now: datetime) -> TokenInfo:
    """
    Age and expiry estimate for a since-token.

    days_until_expiry = 7 - age_hours / 24. Tokens without a decodable
    timestamp (missing, 'NEW', malformed) report as expiring with unknown
    lifetime.
    """
    age: timedelta | None = since_token_age(since_token, now)
    if age is None:
        return TokenInfo(
            current=since_token or 'N/A',
            age_hours=0.0,
            days_until_expiry=0.0,
            is_expiring_soon=True,
            expires_in='unknown',
        )

    age_hours: float = age.total_seconds() / 3600
    days_until_expiry: float = PROVIDER_TOKEN_LIFETIME_DAYS - age_hours / 24

    if days_until_expiry >= 1:
        expires_in: str = f'{math.floor(days_until_expiry)} days'
    else:
        expires_in = f'{math.floor(days_until_expiry * 24)} hours'

    return TokenInfo(
        current=since_token or 'N/A',
        age_hours=round(age_hours, 1),
        days_until_expiry=round(days_until_expiry, 1),
        is_expiring_soon=days_until_expiry < 1,
        expires_in=expires_in,
    )


def _derive_state(
    incremental: QueueCounts,
    breaker_open: bool = False,
) -> IngestionState:
    if breaker_open:
        return IngestionState.CIRCUIT_BREAKER_OPEN
    if incremental.active > 0:
        return IngestionState.RUNNING
    if incremental.failed > 0:
        return IngestionState.ERROR
    return IngestionState.IDLE


def _zero_filled_buckets(
    rows: list[tuple[Any, int]],
    start: pd.Timestamp,
    periods: int,
    freq: str,
) -> list[TimeBucket]:
    """Reindex (bucket, count) rows onto a complete UTC range, filling gaps with 0."""
    full_range: pd.DatetimeIndex = pd.date_range(start=start, periods=periods, freq=freq)

    if rows:
        frame = pd.DataFrame(rows, columns=['bucket', 'events'])
        frame['bucket'] = pd.to_datetime(frame['bucket'], utc=True)
        counts: pd.Series = frame.groupby('bucket')['events'].sum()
    else:
        counts = pd.Series(dtype='int64')

    filled: pd.Series = counts.reindex(full_range, fill_value=0).astype('int64')
    return [
        TimeBucket(bucket_start=bucket.to_pydatetime(), events=int(events))
        for bucket, events in filled.items()
    ]


# =============================================================================
# Service
# =============================================================================


class IngestionStatusService:
    """
    Aggregates ingestion health and history.

    Args:
        session_factory: Bound sessionmaker for the event store.
        incremental_queue: Queue of incremental sync jobs.
        reference_queue: Queue of reference-data refresh jobs.
        process_name: etl_control row holding the watermark.
        clock: Returns the current aware UTC time.
        breaker: The incremental worker's circuit breaker, when it runs in
            this process. An open breaker is reported as
            IngestionState.CIRCUIT_BREAKER_OPEN.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        incremental_queue: JobQueue,
        reference_queue: JobQueue,
        process_name: str = 'event_ingestion',
        clock: Callable[[], datetime] | None = None,
        breaker: ConsecutiveFailureBreaker | None = None,
    ) -> None:
        self._session_factory: sessionmaker[Session] = session_factory
        self._incremental_queue: JobQueue = incremental_queue
        self._reference_queue: JobQueue = reference_queue
        self._process_name: str = process_name
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(UTC))
        self._breaker: ConsecutiveFailureBreaker | None = breaker

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self) -> IngestionStatus:
        now: datetime = self._clock()

        queues = WorkerQueues(
            incremental=self._incremental_queue.counts(),
            reference=self._reference_queue.counts(),
        )

        with session_scope(self._session_factory) as session:
            last_sync: LastSync | None = self._last_sync(session, now)
            today: TodayStats = self._today_stats(session, now)
            performance: PerformanceStats = self._performance_stats(session, now)

        token_info: TokenInfo = build_token_info(
            last_sync.token if last_sync else None, now
        )
        state: IngestionState = _derive_state(
            queues.incremental,
            breaker_open=self._breaker is not None and self._breaker.is_open(),
        )

        if token_info.is_expiring_soon and last_sync is not None:
            logger.warning(
                'Since-token %s expires in %s', token_info.current, token_info.expires_in
            )

        return IngestionStatus(
            status=state,
            last_sync=last_sync,
            today=today,
            token=token_info,
            queues=queues,
            performance=performance,
            generated_at=now,
        )

    def _last_sync(self, session: Session, now: datetime) -> LastSync | None:
        control: EtlControl | None = session.scalar(
            select(EtlControl).where(EtlControl.process_name == self._process_name)
        )
        if control is None:
            return None

        age_minutes: int | None = None
        if control.last_run_timestamp is not None:
            age_minutes = int((now - control.last_run_timestamp).total_seconds() // 60)

        return LastSync(
            token=control.last_successful_since_token,
            timestamp=control.last_run_timestamp,
            age_minutes=age_minutes,
        )

    def _today_stats(self, session: Session, now: datetime) -> TodayStats:
        today_start: datetime = now.replace(hour=0, minute=0, second=0, microsecond=0)

        total, first_at, last_at = session.execute(
            select(
                func.count(TelemetryEvent.id),
                func.min(TelemetryEvent.created_at),
                func.max(TelemetryEvent.created_at),
            ).where(TelemetryEvent.created_at >= today_start)
        ).one()
        total_events: int = int(total or 0)

        hours_since_first: float = (
            (now - first_at).total_seconds() / 3600 if first_at is not None else 24.0
        )
        events_per_hour: int = (
            round(total_events / hours_since_first) if hours_since_first > 0 else 0
        )

        return TodayStats(
            total_events=total_events,
            estimated_pages=math.ceil(total_events / EVENTS_PER_PAGE_ESTIMATE),
            events_per_hour=events_per_hour,
            first_event_at=first_at,
            last_event_at=last_at,
        )

    def _performance_stats(self, session: Session, now: datetime) -> PerformanceStats:
        total, oldest, newest = session.execute(
            select(
                func.count(TelemetryEvent.id),
                func.min(TelemetryEvent.event_timestamp),
                func.max(TelemetryEvent.event_timestamp),
            )
        ).one()

        recent: int = int(
            session.scalar(
                select(func.count(TelemetryEvent.id)).where(
                    TelemetryEvent.created_at >= now - RECENT_WINDOW
                )
            )
            or 0
        )

        return PerformanceStats(
            events_last_60_minutes=recent,
            avg_events_per_minute=round(recent / 60, 2),
            total_events=int(total or 0),
            oldest_event_at=oldest,
            newest_event_at=newest,
        )

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def get_metrics(self, days: int = 7, top_n: int = 10) -> IngestionMetrics:
        """
        Time-bucketed and ranked event counts.

        Args:
            days: Number of daily buckets, ending with today (UTC).
            top_n: Entries per ranking.

        Raises:
            ValueError: If days or top_n is not positive.
        """
        if days < 1 or top_n < 1:
            raise ValueError('days and top_n must be positive')

        now = pd.Timestamp(self._clock()).tz_convert('UTC')
        hourly_start: pd.Timestamp = now.floor('h') - pd.Timedelta(
            hours=HOURLY_BUCKETS - 1
        )
        daily_start: pd.Timestamp = now.floor('D') - pd.Timedelta(days=days - 1)
        ranking_since: datetime = now.to_pydatetime() - TOP_N_WINDOW

        with session_scope(self._session_factory) as session:
            hourly_rows = self._bucket_counts(session, 'hour', hourly_start)
            daily_rows = self._bucket_counts(session, 'day', daily_start)
            top_event_types = self._top(
                session, TelemetryEvent.event_type_external_id, ranking_since, top_n
            )
            top_drivers = self._top(
                session, TelemetryEvent.driver_external_id, ranking_since, top_n
            )
            top_vehicles = self._top(
                session, TelemetryEvent.vehicle_external_id, ranking_since, top_n
            )

        return IngestionMetrics(
            hourly=_zero_filled_buckets(hourly_rows, hourly_start, HOURLY_BUCKETS, 'h'),
            daily=_zero_filled_buckets(daily_rows, daily_start, days, 'D'),
            top_event_types=top_event_types,
            top_drivers=top_drivers,
            top_vehicles=top_vehicles,
        )

    @staticmethod
    def _truncate(session: Session, unit: str) -> ColumnElement[Any]:
        dialect_name: str = session.get_bind().dialect.name
        column = TelemetryEvent.event_timestamp

        if dialect_name == 'postgresql':
            return func.date_trunc(unit, column)
        if dialect_name == 'sqlite':
            pattern: str = '%Y-%m-%d %H:00:00' if unit == 'hour' else '%Y-%m-%d 00:00:00'
            return func.strftime(pattern, column)
        raise ValueError(f'Unsupported database dialect for bucketing: {dialect_name!r}')

    def _bucket_counts(
        self,
        session: Session,
        unit: str,
        since: pd.Timestamp,
    ) -> list[tuple[Any, int]]:
        bucket = self._truncate(session, unit).label('bucket')
        rows = session.execute(
            select(bucket, func.count(TelemetryEvent.id))
            .where(TelemetryEvent.event_timestamp >= since.to_pydatetime())
            .group_by(bucket)
            .order_by(bucket)
        ).all()
        return [(row[0], int(row[1])) for row in rows]

    @staticmethod
    def _top(
        session: Session,
        column: InstrumentedAttribute[int | None],
        since: datetime,
        top_n: int,
    ) -> list[RankedCount]:
        event_count = func.count(TelemetryEvent.id).label('event_count')
        rows = session.execute(
            select(column, event_count)
            .where(TelemetryEvent.created_at >= since, column.is_not(None))
            .group_by(column)
            .order_by(event_count.desc(), column)
            .limit(top_n)
        ).all()
        return [RankedCount(external_id=row[0], events=int(row[1])) for row in rows]
