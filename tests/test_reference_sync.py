"""
Tests for fleet_event_sync.reference_sync module.
"""

from unittest.mock import Mock

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from fleet_event_sync.client import APIError, TokenUnavailableError
from fleet_event_sync.fetcher import EventFetcher
from fleet_event_sync.models import ProviderDriver, ProviderEventType, ProviderVehicle
from fleet_event_sync.reference_sync import ReferenceDataSync, ReferenceSyncResult
from fleet_event_sync.storage import SqlReferenceStore, session_scope
from fleet_event_sync.storage.tables import Driver


@pytest.fixture
def mock_fetcher() -> Mock:
    """Fetcher double returning one record of each kind."""
    fetcher = Mock(spec=EventFetcher)
    fetcher.fetch_drivers.return_value = [
        ProviderDriver.model_validate({'DriverId': 11, 'Name': 'Alice'}),
        ProviderDriver.model_validate({'DriverId': 12, 'Name': 'Bob'}),
    ]
    fetcher.fetch_vehicles.return_value = [
        ProviderVehicle.model_validate({'AssetId': 22, 'RegistrationNumber': 'CA 1'})
    ]
    fetcher.fetch_event_types.return_value = [
        ProviderEventType.model_validate({'EventTypeId': 33, 'Description': 'Speeding'})
    ]
    return fetcher


@pytest.fixture
def reference_sync(
    mock_fetcher: Mock,
    reference_store: SqlReferenceStore,
) -> ReferenceDataSync:
    return ReferenceDataSync(mock_fetcher, reference_store)


class TestSyncAll:
    """Test ReferenceDataSync.sync_all()."""

    def test_upserts_every_kind(
        self,
        reference_sync: ReferenceDataSync,
        session_factory: sessionmaker[Session],
    ) -> None:
        """Should store drivers, vehicles and event types."""
        result: ReferenceSyncResult = reference_sync.sync_all()

        assert result.succeeded is True
        assert (result.drivers, result.vehicles, result.event_types) == (2, 1, 1)
        with session_scope(session_factory) as session:
            names = session.scalars(select(Driver.name).order_by(Driver.external_id))
            assert list(names) == ['Alice', 'Bob']

    def test_one_failing_kind_does_not_stop_the_rest(
        self,
        reference_sync: ReferenceDataSync,
        mock_fetcher: Mock,
    ) -> None:
        """Should record the failure and refresh the other kinds."""
        mock_fetcher.fetch_vehicles.side_effect = APIError('Server error: HTTP 500', 500)

        result: ReferenceSyncResult = reference_sync.sync_all()

        assert result.succeeded is False
        assert result.errors == {'vehicles': 'Server error: HTTP 500'}
        assert result.drivers == 2  # noqa: PLR2004
        assert result.event_types == 1

    def test_token_unavailable_aborts(
        self,
        reference_sync: ReferenceDataSync,
        mock_fetcher: Mock,
    ) -> None:
        """Should propagate TokenUnavailableError immediately."""
        mock_fetcher.fetch_drivers.side_effect = TokenUnavailableError('no token')

        with pytest.raises(TokenUnavailableError):
            reference_sync.sync_all()

        mock_fetcher.fetch_vehicles.assert_not_called()

    def test_repeat_sync_updates_in_place(
        self,
        reference_sync: ReferenceDataSync,
        mock_fetcher: Mock,
        session_factory: sessionmaker[Session],
    ) -> None:
        """Should update existing rows rather than duplicate them."""
        reference_sync.sync_all()
        mock_fetcher.fetch_drivers.return_value = [
            ProviderDriver.model_validate({'DriverId': 11, 'Name': 'Alice Renamed'})
        ]

        reference_sync.sync_all()

        with session_scope(session_factory) as session:
            rows = session.execute(
                select(Driver.external_id, Driver.name).order_by(Driver.external_id)
            ).all()
        assert [tuple(row) for row in rows] == [(11, 'Alice Renamed'), (12, 'Bob')]
