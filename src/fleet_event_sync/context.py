# fleet_event_sync/context.py
"""
Process-wide wiring.

IngestionContext is built once at process start from the validated
configuration and handed to whatever runs jobs. It owns the database engine
and the HTTP client; everything else is a cheap object assembled from those.

Example:
    >>> config = load_config('config/ingestion_config.yaml')
    >>> setup_logger(config=config.logging)
    >>> with IngestionContext.from_config(config) as context:
    ...     load = context.backfill_service.start_load(start, end)
    ...     context.backfill_worker().run(
    ...         load.job_id, context.backfill_service.cancellation_token(load.job_id)
    ...     )
"""

import logging
from types import TracebackType
from typing import Self

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from fleet_event_sync.auth import TokenManager
from fleet_event_sync.backfill import BackfillService, HistoricalBackfillWorker
from fleet_event_sync.client import ProviderClient
from fleet_event_sync.config import IngestionConfig
from fleet_event_sync.fetcher import EventFetcher
from fleet_event_sync.incremental import (
    ConsecutiveFailureBreaker,
    IncrementalSyncWorker,
)
from fleet_event_sync.queue import SqlJobQueue
from fleet_event_sync.reference_sync import ReferenceDataSync
from fleet_event_sync.retry import RetryExecutor, RetryPolicy
from fleet_event_sync.status import IngestionStatusService
from fleet_event_sync.storage import (
    SqlControlStore,
    SqlCredentialStore,
    SqlEventStore,
    SqlReferenceStore,
    create_database_engine,
    create_session_factory,
    init_db,
)

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = ['IngestionContext']

HISTORICAL_LOAD_QUEUE_NAME = 'historical-load'


class IngestionContext:
    """Shared collaborators for one ingestion process."""

    def __init__(
        self,
        config: IngestionConfig,
        engine: Engine,
        client: ProviderClient,
    ) -> None:
        self.config: IngestionConfig = config
        self.engine: Engine = engine
        self.session_factory: sessionmaker[Session] = create_session_factory(engine)
        self.client: ProviderClient = client

        self.credential_store = SqlCredentialStore(self.session_factory)
        self.event_store = SqlEventStore(
            self.session_factory, config.storage.insert_chunk_size
        )
        self.control_store = SqlControlStore(self.session_factory)
        self.reference_store = SqlReferenceStore(self.session_factory)

        self.incremental_queue = SqlJobQueue(
            self.session_factory, config.queues.incremental_queue
        )
        self.reference_queue = SqlJobQueue(
            self.session_factory, config.queues.reference_queue
        )
        self.historical_load_queue = SqlJobQueue(
            self.session_factory, HISTORICAL_LOAD_QUEUE_NAME
        )

        self.retry_executor = RetryExecutor(
            RetryPolicy.from_provider_config(config.provider)
        )
        self.token_manager = TokenManager(
            config.provider,
            client,
            self.credential_store,
            retry_executor=self.retry_executor,
        )
        self.fetcher = EventFetcher(
            config.provider,
            client,
            self.token_manager,
            retry_executor=self.retry_executor,
        )
        self.backfill_service = BackfillService(
            self.control_store,
            config.backfill,
            load_queue=self.historical_load_queue,
        )
        self.failure_breaker = ConsecutiveFailureBreaker.from_config(
            config.incremental
        )

    @classmethod
    def from_config(cls, config: IngestionConfig, init_schema: bool = True) -> Self:
        """Create the engine and HTTP client, optionally ensuring tables exist."""
        engine: Engine = create_database_engine(config.storage)
        if init_schema:
            init_db(engine)
        return cls(config, engine, ProviderClient(config.provider))

    # -------------------------------------------------------------------------
    # Job runners
    # -------------------------------------------------------------------------

    def backfill_worker(self) -> HistoricalBackfillWorker:
        return HistoricalBackfillWorker(
            fetcher=self.fetcher,
            event_store=self.event_store,
            control_store=self.control_store,
            reference_store=self.reference_store,
            reference_queue=self.reference_queue,
            backfill_config=self.config.backfill,
        )

    def incremental_worker(self) -> IncrementalSyncWorker:
        return IncrementalSyncWorker(
            fetcher=self.fetcher,
            event_store=self.event_store,
            control_store=self.control_store,
            reference_store=self.reference_store,
            reference_queue=self.reference_queue,
            incremental_config=self.config.incremental,
            breaker=self.failure_breaker,
        )

    def reference_sync(self) -> ReferenceDataSync:
        return ReferenceDataSync(self.fetcher, self.reference_store)

    def status_service(self) -> IngestionStatusService:
        return IngestionStatusService(
            self.session_factory,
            incremental_queue=self.incremental_queue,
            reference_queue=self.reference_queue,
            process_name=self.config.incremental.process_name,
            breaker=self.failure_breaker,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        self.client.close()
        self.engine.dispose()
        logger.debug('IngestionContext closed')

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
