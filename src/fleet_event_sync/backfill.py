# fleet_event_sync/backfill.py
"""
Resumable historical backfill.

BackfillService creates and manages historical_load_control rows;
HistoricalBackfillWorker executes one of them hour by hour.

Worker Loop (per hour in [cursor, range_end), last window clipped):
    1. Stop if cancellation was requested (token or control row flag).
    2. Fetch the window. Any fetch failure skips the hour and is counted in
       BackfillResult.failed_hours; it never fails the job.
    3. Drop repeated event ids within the fetched page.
    4. Insert-or-ignore into telemetry_events.
    5. Checkpoint: cursor = hour end, hours_processed + 1,
       events_processed + inserted.
    6. Every N processed hours, request a reference-data refresh if the
       inserted events mention unknown drivers, vehicles or event types.
    7. Pause to stay under the provider's rate limit.

TokenUnavailableError and storage errors are fatal: the job is marked failed
with the error message and the exception is re-raised. Failed and cancelled
jobs are never resumed automatically; BackfillService.resume_from_checkpoint
starts a new job from the old cursor when the caller decides to. A load left
'running' by a crashed process is cleared with cancel_load(job_id, force=True)
and then resumed the same way.
"""

import logging
import math
import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Final

from fleet_event_sync.client import TokenUnavailableError
from fleet_event_sync.config import BackfillConfig
from fleet_event_sync.fetcher import EventFetcher
from fleet_event_sync.load_status import (
    BackfillError,
    LoadNotFoundError,
    LoadStatus,
)
from fleet_event_sync.models import ProviderEvent
from fleet_event_sync.queue import JobQueue
from fleet_event_sync.storage import (
    ControlStore,
    EventStore,
    LoadSnapshot,
    ReferenceIds,
    ReferenceStore,
)

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'REFERENCE_SYNC_JOB_NAME',
    'BackfillResult',
    'BackfillService',
    'CancellationToken',
    'HistoricalBackfillWorker',
    'LoadValidationError',
    'dedupe_events',
    'iter_hour_windows',
    'request_reference_sync',
]

REFERENCE_SYNC_JOB_NAME: Final[str] = 'sync-all-reference-data'
HISTORICAL_REFERENCE_SYNC_DEDUPE_KEY: Final[str] = 'sync-on-demand-historical'
HISTORICAL_LOAD_JOB_NAME: Final[str] = 'historical-load'

ONE_HOUR: Final[timedelta] = timedelta(hours=1)


class LoadValidationError(BackfillError):
    """Raised when a load request or state change is rejected."""


# =============================================================================
# Helpers
# =============================================================================


class CancellationToken:
    """
    Cooperative stop signal shared between a worker and whoever may stop it.

    The worker polls is_cancelled() at hour boundaries only, so the hour in
    flight always finishes and checkpoints first.
    """

    def __init__(self) -> None:
        self._event: threading.Event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout_seconds: float) -> bool:
        """Sleep up to timeout_seconds; returns early (True) once cancelled."""
        return self._event.wait(timeout_seconds)


@dataclass(frozen=True, slots=True)
class BackfillResult:
    """Summary of one worker run."""

    job_id: str
    status: LoadStatus
    hours_processed: int
    events_processed: int
    failed_hours: int
    reference_syncs_requested: int


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def iter_hour_windows(
    start: datetime,
    end: datetime,
) -> Iterator[tuple[datetime, datetime]]:
    """Yield [hour_start, hour_end) windows covering [start, end); the last is clipped."""
    window_start: datetime = start
    while window_start < end:
        window_end: datetime = min(window_start + ONE_HOUR, end)
        yield window_start, window_end
        window_start = window_end


def dedupe_events(events: Sequence[ProviderEvent]) -> list[ProviderEvent]:
    """Keep the first occurrence of each event id within one fetched page."""
    seen: dict[int, ProviderEvent] = {}
    for event in events:
        seen.setdefault(event.event_id, event)
    return list(seen.values())


def request_reference_sync(
    reference_store: ReferenceStore,
    reference_queue: JobQueue,
    pending_ids: ReferenceIds,
    dedupe_key: str,
    source: str,
) -> bool:
    """
    Enqueue one reference refresh if any pending id is unknown locally.

    pending_ids is cleared either way.

    Returns:
        True if a new job was enqueued, False if none was needed or an
        equivalent job was already pending.
    """
    if pending_ids.is_empty():
        return False

    unknown: ReferenceIds = reference_store.find_unknown(pending_ids)
    pending_ids.clear()

    if unknown.is_empty():
        return False

    enqueued: bool = reference_queue.enqueue(
        REFERENCE_SYNC_JOB_NAME,
        {
            'source': source,
            'unknown_drivers': len(unknown.drivers),
            'unknown_vehicles': len(unknown.vehicles),
            'unknown_event_types': len(unknown.event_types),
        },
        dedupe_key=dedupe_key,
        remove_on_complete=True,
    )

    logger.info(
        '%s found %d unknown reference ids (drivers=%d, vehicles=%d, '
        'event_types=%d); refresh %s',
        source,
        len(unknown),
        len(unknown.drivers),
        len(unknown.vehicles),
        len(unknown.event_types),
        'enqueued' if enqueued else 'already pending',
    )
    return enqueued


# =============================================================================
# Worker
# =============================================================================


class HistoricalBackfillWorker:
    """
    Executes one historical load, hour by hour.

    Args:
        fetcher: Provider reads.
        event_store: Insert-or-ignore event writer.
        control_store: historical_load_control persistence.
        reference_store: Lookup of known reference ids.
        reference_queue: Queue that receives reference refresh jobs.
        backfill_config: Delay and reference-check cadence.
        sleep: Pause function taking seconds. Defaults to waiting on the
            run's cancellation token, so a stop request cuts the pause short.
    """

    def __init__(
        self,
        fetcher: EventFetcher,
        event_store: EventStore,
        control_store: ControlStore,
        reference_store: ReferenceStore,
        reference_queue: JobQueue,
        backfill_config: BackfillConfig | None = None,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        self._fetcher: EventFetcher = fetcher
        self._event_store: EventStore = event_store
        self._control_store: ControlStore = control_store
        self._reference_store: ReferenceStore = reference_store
        self._reference_queue: JobQueue = reference_queue
        self._config: BackfillConfig = backfill_config or BackfillConfig()
        self._sleep: Callable[[float], Any] | None = sleep

    def run(
        self,
        job_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> BackfillResult:
        """
        Run a pending load to completion, cancellation or failure.

        Args:
            job_id: historical_load_control job id; the row must be pending.
            cancel_token: Stop signal polled at hour boundaries.

        Returns:
            BackfillResult with final status and counters.

        Raises:
            LoadNotFoundError: Unknown job id.
            InvalidStatusTransitionError: The job is not pending.
            TokenUnavailableError: No provider token; the job is marked failed.
            Exception: Storage errors; the job is marked failed.
        """
        token: CancellationToken = cancel_token or CancellationToken()
        load: LoadSnapshot | None = self._control_store.get_load(job_id)
        if load is None:
            raise LoadNotFoundError(f'Historical load not found: {job_id}')

        load = self._control_store.set_load_status(job_id, LoadStatus.RUNNING)
        logger.info(
            'Starting historical load %s: %s -> %s (%d/%d hours already done)',
            job_id,
            load.cursor.isoformat(),
            load.range_end.isoformat(),
            load.hours_processed,
            load.total_hours,
        )

        failed_hours: int = 0
        reference_syncs: int = 0
        hours_since_check: int = 0
        pending_ids = ReferenceIds()

        try:
            for hour_start, hour_end in iter_hour_windows(
                _as_utc(load.cursor), _as_utc(load.range_end)
            ):
                if self._stop_requested(job_id, token):
                    return self._finish_cancelled(job_id, failed_hours, reference_syncs)

                inserted_count, hour_failed = self._process_hour(
                    job_id, hour_start, hour_end, pending_ids
                )
                failed_hours += int(hour_failed)
                hours_since_check += 1

                if hours_since_check >= self._config.reference_check_interval_hours:
                    hours_since_check = 0
                    reference_syncs += int(self._check_references(pending_ids))

                logger.debug(
                    'Hour %s done: %d inserted', hour_start.isoformat(), inserted_count
                )

                if hour_end < load.range_end and self._config.hour_delay_seconds > 0:
                    self._pause(token)

            reference_syncs += int(self._check_references(pending_ids))
            final: LoadSnapshot = self._control_store.set_load_status(
                job_id, LoadStatus.COMPLETED
            )
        except Exception as error:
            self._mark_failed(job_id, error)
            raise

        logger.info(
            'Historical load %s completed: %d hours, %d events, %d failed hours',
            job_id,
            final.hours_processed,
            final.events_processed,
            failed_hours,
        )
        return BackfillResult(
            job_id=job_id,
            status=final.status,
            hours_processed=final.hours_processed,
            events_processed=final.events_processed,
            failed_hours=failed_hours,
            reference_syncs_requested=reference_syncs,
        )

    # -------------------------------------------------------------------------
    # Loop steps
    # -------------------------------------------------------------------------

    def _process_hour(
        self,
        job_id: str,
        hour_start: datetime,
        hour_end: datetime,
        pending_ids: ReferenceIds,
    ) -> tuple[int, bool]:
        """Fetch, store and checkpoint one hour. Returns (inserted, fetch_failed)."""
        fetch_failed: bool = False

        try:
            events: list[ProviderEvent] = self._fetcher.fetch_historical(
                hour_start, hour_end
            )
        except TokenUnavailableError:
            raise
        except Exception as error:
            logger.error(
                'Skipping hour %s of load %s after fetch failure: %s: %s',
                hour_start.isoformat(),
                job_id,
                type(error).__name__,
                error,
            )
            events = []
            fetch_failed = True

        unique_events: list[ProviderEvent] = dedupe_events(events)
        if len(unique_events) < len(events):
            logger.debug(
                'Dropped %d repeated events in hour %s',
                len(events) - len(unique_events),
                hour_start.isoformat(),
            )

        inserted: list[ProviderEvent] = (
            self._event_store.insert_events(unique_events) if unique_events else []
        )
        self._control_store.record_checkpoint(job_id, hour_end, len(inserted))
        pending_ids.update(ReferenceIds.from_events(inserted))

        return len(inserted), fetch_failed

    def _check_references(self, pending_ids: ReferenceIds) -> bool:
        return request_reference_sync(
            self._reference_store,
            self._reference_queue,
            pending_ids,
            dedupe_key=HISTORICAL_REFERENCE_SYNC_DEDUPE_KEY,
            source='historical-load',
        )

    def _stop_requested(self, job_id: str, token: CancellationToken) -> bool:
        return token.is_cancelled() or self._control_store.is_cancel_requested(job_id)

    def _pause(self, token: CancellationToken) -> None:
        if self._sleep is not None:
            self._sleep(self._config.hour_delay_seconds)
        else:
            token.wait(self._config.hour_delay_seconds)

    def _finish_cancelled(
        self,
        job_id: str,
        failed_hours: int,
        reference_syncs: int,
    ) -> BackfillResult:
        final: LoadSnapshot = self._control_store.set_load_status(
            job_id, LoadStatus.CANCELLED
        )
        logger.warning(
            'Historical load %s cancelled at %s after %d hours',
            job_id,
            final.cursor.isoformat(),
            final.hours_processed,
        )
        return BackfillResult(
            job_id=job_id,
            status=final.status,
            hours_processed=final.hours_processed,
            events_processed=final.events_processed,
            failed_hours=failed_hours,
            reference_syncs_requested=reference_syncs,
        )

    def _mark_failed(self, job_id: str, error: Exception) -> None:
        message: str = f'{type(error).__name__}: {error}'
        logger.error('Historical load %s failed: %s', job_id, message)
        try:
            self._control_store.set_load_status(
                job_id, LoadStatus.FAILED, error_message=message
            )
        except Exception:
            logger.exception('Could not record failure of historical load %s', job_id)


# =============================================================================
# Service
# =============================================================================


class BackfillService:
    """
    Creates, inspects and cancels historical loads.

    Args:
        control_store: historical_load_control persistence.
        backfill_config: Range limits.
        load_queue: Optional queue that receives a 'historical-load' job for
            every created load, for deployments where a separate consumer runs
            the worker.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        control_store: ControlStore,
        backfill_config: BackfillConfig | None = None,
        load_queue: JobQueue | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._control_store: ControlStore = control_store
        self._config: BackfillConfig = backfill_config or BackfillConfig()
        self._load_queue: JobQueue | None = load_queue
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(UTC))
        self._tokens: dict[str, CancellationToken] = {}
        self._tokens_lock: threading.Lock = threading.Lock()

    def cancellation_token(self, job_id: str) -> CancellationToken:
        """Token to pass to HistoricalBackfillWorker.run for this job."""
        with self._tokens_lock:
            return self._tokens.setdefault(job_id, CancellationToken())

    def start_load(self, range_start: datetime, range_end: datetime) -> LoadSnapshot:
        """
        Validate a range and create a pending load.

        Raises:
            LoadValidationError: start >= end, range longer than
                max_range_days, or another load is pending/running.
        """
        start: datetime = _as_utc(range_start)
        end: datetime = _as_utc(range_end)

        if start >= end:
            raise LoadValidationError('range_start must be before range_end')
        if end - start > timedelta(days=self._config.max_range_days):
            raise LoadValidationError(
                f'Range exceeds the maximum of {self._config.max_range_days} days'
            )

        return self._create_load(start, end)

    def _create_load(self, start: datetime, end: datetime) -> LoadSnapshot:
        active: LoadSnapshot | None = self._control_store.find_active_load()
        if active is not None:
            raise LoadValidationError(
                f'Historical load {active.job_id} is already {active.status.value}'
            )

        job_id: str = f'historical-{int(self._clock().timestamp() * 1000)}'
        total_hours: int = math.ceil((end - start) / ONE_HOUR)
        load: LoadSnapshot = self._control_store.create_load(
            job_id, start, end, total_hours
        )

        if self._load_queue is not None:
            self._load_queue.enqueue(
                HISTORICAL_LOAD_JOB_NAME,
                {'job_id': job_id},
                dedupe_key=job_id,
            )

        return load

    def get_load(self, job_id: str) -> LoadSnapshot:
        load: LoadSnapshot | None = self._control_store.get_load(job_id)
        if load is None:
            raise LoadNotFoundError(f'Historical load not found: {job_id}')
        return load

    def list_recent_loads(self, limit: int = 20) -> list[LoadSnapshot]:
        return self._control_store.list_recent_loads(limit)

    def cancel_load(self, job_id: str, force: bool = False) -> LoadSnapshot:
        """
        Cancel a pending load immediately, or ask a running one to stop.

        A running load reaches 'cancelled' only when its worker reaches the
        next hour boundary; the returned snapshot is still 'running' then.

        Args:
            job_id: Load to cancel.
            force: Mark a running load 'cancelled' right away. Use this for a
                load whose worker died mid-run; its checkpoint is kept, so
                resume_from_checkpoint can pick up the remaining hours.

        Raises:
            LoadNotFoundError: Unknown job id.
            LoadValidationError: The load already finished.
        """
        load: LoadSnapshot = self.get_load(job_id)

        if load.status is LoadStatus.COMPLETED:
            raise LoadValidationError('A completed load cannot be cancelled')
        if load.status.is_terminal:
            raise LoadValidationError(f'Load {job_id} is already {load.status.value}')

        if load.status is LoadStatus.PENDING:
            logger.info('Cancelling pending historical load %s', job_id)
            return self._control_store.set_load_status(job_id, LoadStatus.CANCELLED)

        self.cancellation_token(job_id).cancel()
        if force:
            logger.warning(
                'Force-cancelling running historical load %s at %s',
                job_id,
                load.cursor.isoformat(),
            )
            self._control_store.request_cancel(job_id)
            return self._control_store.set_load_status(job_id, LoadStatus.CANCELLED)

        logger.info('Requesting stop of running historical load %s', job_id)
        return self._control_store.request_cancel(job_id)

    def resume_from_checkpoint(self, job_id: str) -> LoadSnapshot:
        """
        Create a new pending load covering what a failed or cancelled one left.

        Raises:
            LoadNotFoundError: Unknown job id.
            LoadValidationError: The load is not failed/cancelled, nothing is
                left to process, or another load is active.
        """
        load: LoadSnapshot = self.get_load(job_id)

        if load.status not in (LoadStatus.FAILED, LoadStatus.CANCELLED):
            raise LoadValidationError(
                f'Only failed or cancelled loads can be resumed, {job_id} is '
                f'{load.status.value}'
            )
        if load.cursor >= load.range_end:
            raise LoadValidationError(f'Load {job_id} has no hours left to process')

        logger.info(
            'Resuming historical load %s from checkpoint %s',
            job_id,
            load.cursor.isoformat(),
        )
        return self._create_load(_as_utc(load.cursor), _as_utc(load.range_end))
