# fleet_event_sync/reference_sync.py
"""
Refresh of driver, vehicle and event-type master data.

This is the work behind the 'sync-all-reference-data' job that the backfill
and incremental workers enqueue when they see ids the store does not know.
Each kind is fetched in full and upserted by external id; one kind failing
does not prevent the others from being refreshed.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from fleet_event_sync.client import APIError, TokenUnavailableError
from fleet_event_sync.fetcher import EventFetcher
from fleet_event_sync.storage import ReferenceStore

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = ['ReferenceDataSync', 'ReferenceSyncResult']


@dataclass(slots=True)
class ReferenceSyncResult:
    drivers: int = 0
    vehicles: int = 0
    event_types: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.errors


class ReferenceDataSync:
    """
    Fetches every reference kind and upserts it.

    Example:
        >>> result = ReferenceDataSync(fetcher, reference_store).sync_all()
        >>> result.succeeded
        True
    """

    def __init__(self, fetcher: EventFetcher, reference_store: ReferenceStore) -> None:
        self._fetcher: EventFetcher = fetcher
        self._reference_store: ReferenceStore = reference_store

    def sync_drivers(self) -> int:
        return self._reference_store.upsert_drivers(self._fetcher.fetch_drivers())

    def sync_vehicles(self) -> int:
        return self._reference_store.upsert_vehicles(self._fetcher.fetch_vehicles())

    def sync_event_types(self) -> int:
        return self._reference_store.upsert_event_types(
            self._fetcher.fetch_event_types()
        )

    def sync_all(self) -> ReferenceSyncResult:
        """
        Refresh all three kinds.

        Raises:
            TokenUnavailableError: No provider token; nothing can be refreshed.
        """
        result = ReferenceSyncResult()
        steps: Sequence[tuple[str, Callable[[], int]]] = (
            ('drivers', self.sync_drivers),
            ('vehicles', self.sync_vehicles),
            ('event_types', self.sync_event_types),
        )

        for kind, step in steps:
            try:
                setattr(result, kind, step())
            except TokenUnavailableError:
                raise
            except APIError as error:
                logger.error('Reference sync of %s failed: %s', kind, error)
                result.errors[kind] = str(error)

        logger.info(
            'Reference sync done: drivers=%d vehicles=%d event_types=%d errors=%d',
            result.drivers,
            result.vehicles,
            result.event_types,
            len(result.errors),
        )
        return result
