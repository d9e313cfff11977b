# fleet_event_sync/incremental.py
"""
Since-token incremental sync.

Each run continues from the etl_control watermark (or 'NEW' on first run) and
walks pages until the provider reports no more items. Every page is stored
and the watermark advanced in one transaction, so a crash or storage failure
leaves the watermark on the last durable page and the next run re-fetches
from there; the unique constraint absorbs the overlap.

A token the provider keeps failing on (after max_token_attempts tries) is
skipped: its timestamp is moved forward one second, or it is reset to 'NEW'
once older than token_expiry_days. A token that cannot be advanced ends the
run with the last error. After breaker_failure_threshold skips in a row the
worker waits breaker_cooldown_seconds before its next fetch.

A page that reports more items but hands back the same since-token ends the
run, since fetching it again would return the same page.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

from fleet_event_sync.backfill import CancellationToken, request_reference_sync
from fleet_event_sync.client import APIError, TokenUnavailableError
from fleet_event_sync.config import IncrementalConfig
from fleet_event_sync.fetcher import EventFetcher
from fleet_event_sync.models import EventBatch, ProviderEvent
from fleet_event_sync.queue import JobQueue
from fleet_event_sync.since_token import NEW_SINCE_TOKEN, advance_since_token
from fleet_event_sync.storage import (
    ControlStore,
    EventStore,
    ReferenceIds,
    ReferenceStore,
)

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'ConsecutiveFailureBreaker',
    'IncrementalResult',
    'IncrementalSyncWorker',
]

INCREMENTAL_REFERENCE_SYNC_DEDUPE_KEY: Final[str] = 'sync-on-demand'
DEFAULT_BREAKER_FAILURE_THRESHOLD: Final[int] = 5
DEFAULT_BREAKER_COOLDOWN_SECONDS: Final[float] = 120.0


@dataclass(frozen=True, slots=True)
class IncrementalResult:
    pages: int
    events_fetched: int
    events_inserted: int
    skipped_tokens: int
    reference_syncs_requested: int
    final_token: str
    cancelled: bool


# =============================================================================
# Circuit Breaker
# =============================================================================


class ConsecutiveFailureBreaker:
    """
    Pauses the incremental sync after a run of skipped tokens.

    Every skipped token counts as one failure and every fetched page resets
    the count. Reaching failure_threshold opens the breaker; the worker then
    waits out cooldown_seconds before fetching again, which closes it. The
    status service reads the same instance to report an open breaker.

    Args:
        failure_threshold: Consecutive skipped tokens that open the breaker.
        cooldown_seconds: How long an open breaker holds the sync back.
        clock: Monotonic seconds source.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_BREAKER_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_BREAKER_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold: int = failure_threshold
        self._cooldown_seconds: float = cooldown_seconds
        self._clock: Callable[[], float] = clock
        self._lock: threading.Lock = threading.Lock()
        self._consecutive_failures: int = 0
        self._opened_at: float | None = None

    @classmethod
    def from_config(cls, config: IncrementalConfig) -> 'ConsecutiveFailureBreaker':
        return cls(
            failure_threshold=config.breaker_failure_threshold,
            cooldown_seconds=config.breaker_cooldown_seconds,
        )

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def is_open(self) -> bool:
        return self._opened_at is not None

    def remaining_seconds(self) -> float:
        """Cool-down left before an open breaker lets the sync continue."""
        with self._lock:
            if self._opened_at is None:
                return 0.0
            elapsed: float = self._clock() - self._opened_at
            return max(0.0, self._cooldown_seconds - elapsed)

    def record_failure(self, since_token: str) -> bool:
        """Count one skipped token. True when this failure opened the breaker."""
        with self._lock:
            self._consecutive_failures += 1
            if (
                self._opened_at is not None
                or self._consecutive_failures < self._failure_threshold
            ):
                return False
            self._opened_at = self._clock()

        logger.error(
            'Circuit breaker opened after %d consecutive skipped tokens '
            '(last %s); pausing for %.0fs',
            self._consecutive_failures,
            since_token,
            self._cooldown_seconds,
        )
        return True

    def record_success(self) -> None:
        with self._lock:
            if self._consecutive_failures > 0:
                logger.info(
                    'Page fetched after %d consecutive skipped tokens',
                    self._consecutive_failures,
                )
            self._consecutive_failures = 0
            self._opened_at = None

    def close(self) -> None:
        """Close after the cool-down and start counting from zero."""
        with self._lock:
            if self._opened_at is None:
                return
            self._opened_at = None
            self._consecutive_failures = 0
        logger.info('Circuit breaker closed, resuming incremental sync')


# =============================================================================
# Worker
# =============================================================================


class IncrementalSyncWorker:
    """
    Pulls new events page by page and advances the watermark.

    Args:
        fetcher: Provider reads.
        event_store: Writer with atomic batch + watermark support.
        control_store: Watermark reads and skip writes.
        reference_store: Lookup of known reference ids.
        reference_queue: Queue that receives reference refresh jobs.
        incremental_config: Process name, attempt limit, delays.
        sleep: Pause function taking seconds. Defaults to waiting on the
            run's cancellation token.
        breaker: Consecutive-failure breaker, shared with the status service
            when both live in one process. Built from incremental_config
            when omitted.
    """

    def __init__(
        self,
        fetcher: EventFetcher,
        event_store: EventStore,
        control_store: ControlStore,
        reference_store: ReferenceStore,
        reference_queue: JobQueue,
        incremental_config: IncrementalConfig | None = None,
        sleep: Callable[[float], Any] | None = None,
        breaker: ConsecutiveFailureBreaker | None = None,
    ) -> None:
        self._fetcher: EventFetcher = fetcher
        self._event_store: EventStore = event_store
        self._control_store: ControlStore = control_store
        self._reference_store: ReferenceStore = reference_store
        self._reference_queue: JobQueue = reference_queue
        self._config: IncrementalConfig = incremental_config or IncrementalConfig()
        self._sleep: Callable[[float], Any] | None = sleep
        self._breaker: ConsecutiveFailureBreaker = (
            breaker or ConsecutiveFailureBreaker.from_config(self._config)
        )
        self._last_error: APIError | None = None

    @property
    def process_name(self) -> str:
        return self._config.process_name

    @property
    def breaker(self) -> ConsecutiveFailureBreaker:
        return self._breaker

    def run(self, cancel_token: CancellationToken | None = None) -> IncrementalResult:
        """
        Sync until the provider has no more items or cancellation is requested.

        Raises:
            TokenUnavailableError: No provider token could be obtained.
            APIError: A failing token could not be advanced.
        """
        token: CancellationToken = cancel_token or CancellationToken()
        since_token: str = (
            self._control_store.get_watermark(self.process_name) or NEW_SINCE_TOKEN
        )
        logger.info('Incremental sync %s starting from %s', self.process_name, since_token)

        pages: int = 0
        events_fetched: int = 0
        events_inserted: int = 0
        skipped_tokens: int = 0
        reference_syncs: int = 0
        cancelled: bool = False

        while True:
            if token.is_cancelled():
                cancelled = True
                logger.warning('Incremental sync stopped at token %s', since_token)
                break

            if self._breaker.is_open():
                self._pause(self._breaker.remaining_seconds(), token)
                if token.is_cancelled():
                    continue
                self._breaker.close()

            batch: EventBatch | None = self._fetch_with_attempts(since_token, token)

            if batch is None:
                if token.is_cancelled():
                    cancelled = True
                    logger.warning('Incremental sync stopped at token %s', since_token)
                    break
                self._breaker.record_failure(since_token)
                since_token = self._skip_token(since_token)
                skipped_tokens += 1
                continue

            self._breaker.record_success()
            inserted: list[ProviderEvent] = self._event_store.store_batch_with_watermark(
                batch.events, self.process_name, batch.next_token
            )
            pages += 1
            events_fetched += batch.item_count
            events_inserted += len(inserted)

            reference_syncs += int(
                request_reference_sync(
                    self._reference_store,
                    self._reference_queue,
                    ReferenceIds.from_events(inserted),
                    dedupe_key=INCREMENTAL_REFERENCE_SYNC_DEDUPE_KEY,
                    source='incremental-sync',
                )
            )

            logger.info(
                'Page %d: %d events, %d new, next token %s',
                pages,
                batch.item_count,
                len(inserted),
                batch.next_token,
            )
            token_unchanged: bool = batch.next_token == since_token
            since_token = batch.next_token

            if not batch.has_more:
                break
            if token_unchanged:
                logger.error(
                    'Provider reported more items but did not advance since-token %s; '
                    'ending run',
                    since_token,
                )
                break

            self._pause(self._config.page_delay_seconds, token)

        logger.info(
            'Incremental sync %s finished: %d pages, %d events fetched, %d inserted',
            self.process_name,
            pages,
            events_fetched,
            events_inserted,
        )
        return IncrementalResult(
            pages=pages,
            events_fetched=events_fetched,
            events_inserted=events_inserted,
            skipped_tokens=skipped_tokens,
            reference_syncs_requested=reference_syncs,
            final_token=since_token,
            cancelled=cancelled,
        )

    def _fetch_with_attempts(
        self,
        since_token: str,
        cancel_token: CancellationToken,
    ) -> EventBatch | None:
        """
        Fetch one page, retrying the whole call up to max_token_attempts.

        Returns:
            The page, or None when every attempt failed and the token should
            be skipped. The last error is kept for _skip_token.
        """
        self._last_error = None
        max_attempts: int = self._config.max_token_attempts

        for attempt_number in range(1, max_attempts + 1):
            try:
                return self._fetcher.fetch_since(since_token)
            except TokenUnavailableError:
                raise
            except APIError as error:
                self._last_error = error
                logger.warning(
                    'Token %s attempt %d/%d failed: %s',
                    since_token,
                    attempt_number,
                    max_attempts,
                    error,
                )

            if attempt_number < max_attempts:
                if cancel_token.is_cancelled():
                    break
                self._pause(self._config.page_delay_seconds * attempt_number, cancel_token)

        return None

    def _skip_token(self, since_token: str) -> str:
        next_token: str | None = advance_since_token(
            since_token, self._config.token_expiry_days
        )

        if next_token is None or next_token == since_token:
            logger.error('Cannot advance since-token %s, giving up', since_token)
            if self._last_error is not None:
                raise self._last_error
            raise APIError(f'Since-token {since_token} failed and cannot be advanced')

        logger.warning('Skipping since-token %s, continuing from %s', since_token, next_token)
        self._control_store.set_watermark(self.process_name, next_token)
        return next_token

    def _pause(self, seconds: float, cancel_token: CancellationToken) -> None:
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            cancel_token.wait(seconds)
