# fleet_event_sync/__init__.py
"""
Fleet Event Sync - exactly-once ingestion of telematics events.

Pulls fleet-telemetry events (speeding, harsh braking, diagnostics, ...) from
a rate-limited, OAuth2-protected telematics provider into a relational store:

1. **Incremental sync**: since-token paging with an atomic watermark
   (IncrementalSyncWorker).
2. **Historical backfill**: resumable hour-by-hour loads with checkpoints and
   cooperative cancellation (BackfillService, HistoricalBackfillWorker).
3. **Monitoring**: token health, queue counters and event metrics
   (IngestionStatusService).

Exactly-once storage rests on the unique external_id of telemetry_events;
every writer inserts with ON CONFLICT DO NOTHING.

Quick Start:
    >>> from fleet_event_sync import IngestionContext, load_config, setup_logger
    >>>
    >>> config = load_config('config/ingestion_config.yaml')
    >>> setup_logger(config=config.logging)
    >>> with IngestionContext.from_config(config) as context:
    ...     context.incremental_worker().run()
    ...     print(context.status_service().get_status().status)
"""

__version__ = '0.1.0'

from fleet_event_sync.auth import TokenManager
from fleet_event_sync.backfill import (
    BackfillResult,
    BackfillService,
    CancellationToken,
    HistoricalBackfillWorker,
    LoadValidationError,
)
from fleet_event_sync.client import (
    APIError,
    ProviderClient,
    RateLimitError,
    TokenUnavailableError,
    TransientAPIError,
    UnauthorizedError,
)
from fleet_event_sync.common import setup_logger
from fleet_event_sync.config import load_config
from fleet_event_sync.context import IngestionContext
from fleet_event_sync.fetcher import EventFetcher
from fleet_event_sync.incremental import (
    ConsecutiveFailureBreaker,
    IncrementalResult,
    IncrementalSyncWorker,
)
from fleet_event_sync.load_status import (
    BackfillError,
    InvalidStatusTransitionError,
    LoadNotFoundError,
    LoadStatus,
)
from fleet_event_sync.queue import InMemoryJobQueue, JobQueue, QueueCounts, SqlJobQueue
from fleet_event_sync.reference_sync import ReferenceDataSync
from fleet_event_sync.retry import CallResult, RetryExecutor, RetryPolicy
from fleet_event_sync.status import IngestionStatusService

__all__: list[str] = [
    'APIError',
    'BackfillError',
    'BackfillResult',
    'BackfillService',
    'CallResult',
    'CancellationToken',
    'ConsecutiveFailureBreaker',
    'EventFetcher',
    'HistoricalBackfillWorker',
    'InMemoryJobQueue',
    'IncrementalResult',
    'IncrementalSyncWorker',
    'IngestionContext',
    'IngestionStatusService',
    'InvalidStatusTransitionError',
    'JobQueue',
    'LoadNotFoundError',
    'LoadStatus',
    'LoadValidationError',
    'ProviderClient',
    'QueueCounts',
    'RateLimitError',
    'ReferenceDataSync',
    'RetryExecutor',
    'RetryPolicy',
    'SqlJobQueue',
    'TokenManager',
    'TokenUnavailableError',
    'TransientAPIError',
    'UnauthorizedError',
    '__version__',
    'load_config',
    'setup_logger',
]
