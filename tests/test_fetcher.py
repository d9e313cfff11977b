"""
Tests for fleet_event_sync.fetcher module.

Tests request construction for each endpoint, since-token header handling,
the 401 refresh-and-replay flow and payload validation.
"""

from datetime import UTC, datetime
from typing import Any
from unittest.mock import Mock

import pytest

from fleet_event_sync.auth import TokenManager
from fleet_event_sync.client import (
    APIError,
    ProviderClient,
    TokenUnavailableError,
    UnauthorizedError,
)
from fleet_event_sync.config import ProviderConfig
from fleet_event_sync.fetcher import EventFetcher
from fleet_event_sync.models import (
    ApiResponse,
    EventBatch,
    ProviderDriver,
    ProviderEvent,
    RequestSpec,
)
from fleet_event_sync.retry import RetryExecutor

API_ROOT = 'https://integrate.example.com/api'


def _event_payload(event_id: int, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        'EventId': event_id,
        'DriverId': 11,
        'AssetId': 22,
        'EventTypeId': 33,
        'StartDateTime': '2024-03-15T08:30:00Z',
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def mock_client() -> Mock:
    return Mock(spec=ProviderClient)


@pytest.fixture
def mock_token_manager() -> Mock:
    """TokenManager double handing out 'token-1'."""
    manager = Mock(spec=TokenManager)
    manager.get_access_token.return_value = 'token-1'
    return manager


@pytest.fixture
def fetcher(
    provider_config: ProviderConfig,
    mock_client: Mock,
    mock_token_manager: Mock,
    retry_executor: RetryExecutor,
) -> EventFetcher:
    return EventFetcher(
        provider_config,
        mock_client,
        mock_token_manager,
        retry_executor=retry_executor,
    )


def _sent_request(mock_client: Mock, call_index: int = -1) -> RequestSpec:
    return mock_client.execute.call_args_list[call_index].args[0]


class TestFetchSince:
    """Test EventFetcher.fetch_since() incremental paging."""

    def test_builds_since_token_request(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
    ) -> None:
        """Should POST the group ids to the since-token URL with a bearer token."""
        mock_client.execute.return_value = ApiResponse(status_code=200, body=[])

        fetcher.fetch_since('NEW')

        request_spec: RequestSpec = _sent_request(mock_client)
        assert request_spec.url == (
            f'{API_ROOT}/events/groups/createdsince/entitytype/Asset'
            '/sincetoken/NEW/quantity/1000'
        )
        assert request_spec.method.value == 'POST'
        assert request_spec.json_body == [4321]
        assert request_spec.headers['Authorization'] == 'Bearer token-1'

    def test_reads_pagination_headers(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
    ) -> None:
        """Should parse events and the hasmoreitems / getsincetoken headers."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200,
            body=[_event_payload(1), _event_payload(2, DriverId=0)],
            headers={'HasMoreItems': 'True', 'GetSinceToken': '20240315090000123'},
        )

        batch: EventBatch = fetcher.fetch_since('20240315080000000')

        assert batch.item_count == 2  # noqa: PLR2004
        assert batch.has_more is True
        assert batch.next_token == '20240315090000123'
        assert batch.events[1].driver_id is None

    def test_missing_token_header_keeps_current_token(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
    ) -> None:
        """Should repeat the request token when getsincetoken is absent."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200, body=[], headers={'HasMoreItems': 'False'}
        )

        batch: EventBatch = fetcher.fetch_since('20240315080000000')

        assert batch.has_more is False
        assert batch.next_token == '20240315080000000'

    def test_missing_has_more_header_means_false(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
    ) -> None:
        """Should treat an absent hasmoreitems header as the last page."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200, body=None, headers={'GetSinceToken': 'T2'}
        )

        batch: EventBatch = fetcher.fetch_since('T1')

        assert batch.has_more is False
        assert batch.events == []

    def test_configured_group_ids_are_sent(
        self,
        provider_config: ProviderConfig,
        mock_client: Mock,
        mock_token_manager: Mock,
        retry_executor: RetryExecutor,
    ) -> None:
        """Should send group_ids instead of the organisation id when set."""
        grouped_config: ProviderConfig = provider_config.model_copy(
            update={'group_ids': [7, 8]}
        )
        grouped_fetcher = EventFetcher(
            grouped_config, mock_client, mock_token_manager, retry_executor
        )
        mock_client.execute.return_value = ApiResponse(status_code=200, body=[])

        grouped_fetcher.fetch_since('NEW')

        assert _sent_request(mock_client).json_body == [7, 8]


class TestFetchHistorical:
    """Test EventFetcher.fetch_historical() window requests."""

    def test_builds_window_url(self, fetcher: EventFetcher, mock_client: Mock) -> None:
        """Should encode the window bounds as YYYYMMDDHHMMSS in the path."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200, body=[_event_payload(5)]
        )

        events: list[ProviderEvent] = fetcher.fetch_historical(
            datetime(2024, 3, 1, 0, 0, tzinfo=UTC),
            datetime(2024, 3, 1, 1, 0, tzinfo=UTC),
        )

        assert [event.event_id for event in events] == [5]
        assert _sent_request(mock_client).url == (
            f'{API_ROOT}/events/groups/entitytype/Asset'
            '/from/20240301000000/to/20240301010000'
        )

    def test_empty_window_is_normal(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
    ) -> None:
        """Should return an empty list for an hour without events."""
        mock_client.execute.return_value = ApiResponse(status_code=200, body=[])

        assert (
            fetcher.fetch_historical(
                datetime(2024, 3, 1, 12, tzinfo=UTC),
                datetime(2024, 3, 1, 13, tzinfo=UTC),
            )
            == []
        )

    def test_non_list_body_raises(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
    ) -> None:
        """Should reject an object where an array is expected."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200, body={'Message': 'unexpected'}
        )

        with pytest.raises(APIError, match='Expected JSON array'):
            fetcher.fetch_historical(
                datetime(2024, 3, 1, tzinfo=UTC), datetime(2024, 3, 1, 1, tzinfo=UTC)
            )

    def test_malformed_event_raises(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
    ) -> None:
        """Should wrap validation failures in APIError."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200, body=[{'DriverId': 1}]
        )

        with pytest.raises(APIError, match='Malformed event payload'):
            fetcher.fetch_historical(
                datetime(2024, 3, 1, tzinfo=UTC), datetime(2024, 3, 1, 1, tzinfo=UTC)
            )


class TestAuthenticationFlow:
    """Test token acquisition and 401 handling."""

    def test_no_token_raises_before_request(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
        mock_token_manager: Mock,
    ) -> None:
        """Should raise TokenUnavailableError without calling the provider."""
        mock_token_manager.get_access_token.return_value = None

        with pytest.raises(TokenUnavailableError):
            fetcher.fetch_since('NEW')

        mock_client.execute.assert_not_called()

    def test_unauthorized_refreshes_and_replays_once(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
        mock_token_manager: Mock,
    ) -> None:
        """Should replay the request with the refreshed token after a 401."""
        mock_token_manager.refresh_after_unauthorized.return_value = 'token-2'
        mock_client.execute.side_effect = [
            UnauthorizedError('Unauthorized: HTTP 401', 401),
            ApiResponse(status_code=200, body=[]),
        ]

        fetcher.fetch_since('NEW')

        mock_token_manager.refresh_after_unauthorized.assert_called_once_with('token-1')
        assert mock_client.execute.call_count == 2  # noqa: PLR2004
        assert (
            _sent_request(mock_client, 1).headers['Authorization'] == 'Bearer token-2'
        )

    def test_failed_refresh_raises_token_unavailable(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
        mock_token_manager: Mock,
    ) -> None:
        """Should raise TokenUnavailableError when the refresh yields nothing."""
        mock_token_manager.refresh_after_unauthorized.return_value = None
        mock_client.execute.side_effect = UnauthorizedError('Unauthorized', 401)

        with pytest.raises(TokenUnavailableError):
            fetcher.fetch_since('NEW')

        assert mock_client.execute.call_count == 1

    def test_second_unauthorized_propagates(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
        mock_token_manager: Mock,
    ) -> None:
        """Should not loop when the refreshed token is rejected too."""
        mock_token_manager.refresh_after_unauthorized.return_value = 'token-2'
        mock_client.execute.side_effect = UnauthorizedError('Unauthorized', 401)

        with pytest.raises(UnauthorizedError):
            fetcher.fetch_since('NEW')

        assert mock_client.execute.call_count == 2  # noqa: PLR2004


class TestReferenceData:
    """Test driver, vehicle and event-type listing."""

    def test_fetch_drivers(self, fetcher: EventFetcher, mock_client: Mock) -> None:
        """Should GET the organisation's drivers and parse them."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200,
            body=[
                {'DriverId': 11, 'Name': ' Alice ', 'EmployeeNumber': 'E1'},
                {'DriverId': 12, 'Name': 'Bob', 'IsSystemDriver': True},
            ],
        )

        drivers: list[ProviderDriver] = fetcher.fetch_drivers()

        assert _sent_request(mock_client).url == f'{API_ROOT}/drivers/organisation/4321'
        assert _sent_request(mock_client).method.value == 'GET'
        assert [driver.driver_id for driver in drivers] == [11, 12]
        assert drivers[0].name == 'Alice'
        assert drivers[1].is_system_driver is True

    def test_fetch_vehicles_coerces_year(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
    ) -> None:
        """Should accept numeric model years."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200,
            body=[{'AssetId': 22, 'RegistrationNumber': 'CA 123-456', 'Year': 2019}],
        )

        vehicles = fetcher.fetch_vehicles()

        assert _sent_request(mock_client).url == f'{API_ROOT}/assets/group/4321'
        assert vehicles[0].year == '2019'

    def test_fetch_event_types(self, fetcher: EventFetcher, mock_client: Mock) -> None:
        """Should GET the event library."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200,
            body=[{'EventTypeId': 33, 'Description': 'Harsh braking'}],
        )

        event_types = fetcher.fetch_event_types()

        assert _sent_request(mock_client).url == (
            f'{API_ROOT}/libraryevents/organisation/4321'
        )
        assert event_types[0].description == 'Harsh braking'

    def test_malformed_reference_payload_raises(
        self,
        fetcher: EventFetcher,
        mock_client: Mock,
    ) -> None:
        """Should wrap reference validation failures in APIError."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200, body=[{'Name': 'no id'}]
        )

        with pytest.raises(APIError, match='Malformed'):
            fetcher.fetch_drivers()
