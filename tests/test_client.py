"""
Tests for fleet_event_sync.client module.

Tests ProviderClient request execution, response classification and
transport error mapping.
"""
# pyright: reportPrivateUsage=false

import ssl
from collections.abc import Callable
from typing import Any
from unittest.mock import Mock, patch

import httpx
import pytest

from fleet_event_sync.client import (
    APIError,
    ProviderClient,
    RateLimitError,
    TransientAPIError,
    UnauthorizedError,
)
from fleet_event_sync.config import ProviderConfig
from fleet_event_sync.models import ApiResponse, HTTPMethod, RequestSpec


@pytest.fixture
def drivers_request() -> RequestSpec:
    """A bodiless GET for the drivers endpoint."""
    return RequestSpec(
        url='https://integrate.example.com/api/drivers/organisation/4321',
        headers={'Authorization': 'Bearer abc', 'Accept': 'application/json'},
        timeout=(5, 30),
        label='/drivers/organisation/4321',
    )


class TestProviderClientInitialization:
    """Test ProviderClient initialization and SSL configuration."""

    def test_init_with_default_config(self, provider_config: ProviderConfig) -> None:
        """Should initialize with an httpx client and expose the config."""
        with ProviderClient(provider_config) as client:
            assert client.config is provider_config
            assert isinstance(client._http_client, httpx.Client)

    def test_init_with_truststore(self, provider_config: ProviderConfig) -> None:
        """Should build the SSL context from the OS trust store when enabled."""
        truststore_config: ProviderConfig = provider_config.model_copy(
            update={'use_truststore': True}
        )

        with patch(
            'fleet_event_sync.client.build_truststore_ssl_context',
            return_value=ssl.create_default_context(),
        ) as mock_builder:
            client = ProviderClient(truststore_config)
            client.close()

        mock_builder.assert_called_once_with()

    def test_close_is_idempotent(self, provider_config: ProviderConfig) -> None:
        """Should allow close() to be called more than once."""
        client = ProviderClient(provider_config)
        client.close()
        client.close()


class TestProviderClientSuccess:
    """Test ProviderClient.execute() on successful responses."""

    def test_returns_body_and_lowercased_headers(
        self,
        provider_config: ProviderConfig,
        drivers_request: RequestSpec,
        mock_response_factory: Callable[..., Mock],
    ) -> None:
        """Should decode the JSON body and normalize header names."""
        mock_response: Mock = mock_response_factory(
            200,
            json_body=[{'DriverId': 1, 'Name': 'Alice'}],
            headers={'HasMoreItems': 'False', 'GetSinceToken': '20240315120000000'},
        )

        with (
            ProviderClient(provider_config) as client,
            patch.object(client._http_client, 'request', return_value=mock_response),
        ):
            response: ApiResponse = client.execute(drivers_request)

        assert response.status_code == 200  # noqa: PLR2004
        assert response.body == [{'DriverId': 1, 'Name': 'Alice'}]
        assert response.header('hasmoreitems') == 'False'
        assert response.header('GETSINCETOKEN') == '20240315120000000'

    def test_empty_body_is_none(
        self,
        provider_config: ProviderConfig,
        drivers_request: RequestSpec,
        mock_response_factory: Callable[..., Mock],
    ) -> None:
        """Should return body=None for an empty response."""
        mock_response: Mock = mock_response_factory(204)

        with (
            ProviderClient(provider_config) as client,
            patch.object(client._http_client, 'request', return_value=mock_response),
        ):
            response: ApiResponse = client.execute(drivers_request)

        assert response.body is None

    def test_sends_json_body_only_when_present(
        self,
        provider_config: ProviderConfig,
        mock_response_factory: Callable[..., Mock],
    ) -> None:
        """Should pass json= for JSON specs and never data=."""
        request_spec = RequestSpec(
            url='https://integrate.example.com/api/events',
            method=HTTPMethod.POST,
            json_body=[4321],
        )

        with (
            ProviderClient(provider_config) as client,
            patch.object(
                client._http_client,
                'request',
                return_value=mock_response_factory(200, json_body=[]),
            ) as mock_request,
        ):
            client.execute(request_spec)

        call_kwargs: dict[str, Any] = mock_request.call_args.kwargs
        assert call_kwargs['method'] == 'POST'
        assert call_kwargs['json'] == [4321]
        assert 'data' not in call_kwargs

    def test_sends_form_body(
        self,
        provider_config: ProviderConfig,
        mock_response_factory: Callable[..., Mock],
    ) -> None:
        """Should pass form fields as data= for token exchanges."""
        request_spec = RequestSpec(
            url='https://identity.example.com/core/connect/token',
            method=HTTPMethod.POST,
            form_body={'grant_type': 'password'},
        )

        with (
            ProviderClient(provider_config) as client,
            patch.object(
                client._http_client,
                'request',
                return_value=mock_response_factory(
                    200, json_body={'access_token': 'a', 'expires_in': 3600}
                ),
            ) as mock_request,
        ):
            client.execute(request_spec)

        call_kwargs: dict[str, Any] = mock_request.call_args.kwargs
        assert call_kwargs['data'] == {'grant_type': 'password'}
        assert 'json' not in call_kwargs


class TestProviderClientErrors:
    """Test ProviderClient.execute() failure classification."""

    def test_unauthorized_raises(
        self,
        provider_config: ProviderConfig,
        drivers_request: RequestSpec,
        mock_response_factory: Callable[..., Mock],
    ) -> None:
        """Should raise UnauthorizedError on HTTP 401."""
        with (
            ProviderClient(provider_config) as client,
            patch.object(
                client._http_client,
                'request',
                return_value=mock_response_factory(401, text='expired'),
            ),
            pytest.raises(UnauthorizedError) as exc_info,
        ):
            client.execute(drivers_request)

        assert exc_info.value.status_code == 401  # noqa: PLR2004

    def test_rate_limit_uses_retry_after(
        self,
        provider_config: ProviderConfig,
        drivers_request: RequestSpec,
        mock_response_factory: Callable[..., Mock],
    ) -> None:
        """Should raise RateLimitError carrying the Retry-After hint."""
        mock_response: Mock = mock_response_factory(
            429, headers={'Retry-After': '5', 'X-RateLimit-Remaining': '0'}
        )

        with (
            ProviderClient(provider_config) as client,
            patch.object(client._http_client, 'request', return_value=mock_response),
            pytest.raises(RateLimitError) as exc_info,
        ):
            client.execute(drivers_request)

        info = exc_info.value.rate_limit_info
        assert info.retry_after_seconds == 5.0  # noqa: PLR2004
        assert info.remaining == 0
        assert info.wait_seconds == 5.5  # noqa: PLR2004

    def test_rate_limit_without_hint_uses_default(
        self,
        provider_config: ProviderConfig,
        drivers_request: RequestSpec,
        mock_response_factory: Callable[..., Mock],
    ) -> None:
        """Should fall back to default_rate_limit_wait_seconds."""
        with (
            ProviderClient(provider_config) as client,
            patch.object(
                client._http_client,
                'request',
                return_value=mock_response_factory(429),
            ),
            pytest.raises(RateLimitError) as exc_info,
        ):
            client.execute(drivers_request)

        assert (
            exc_info.value.rate_limit_info.retry_after_seconds
            == provider_config.default_rate_limit_wait_seconds
        )

    def test_server_error_is_transient(
        self,
        provider_config: ProviderConfig,
        drivers_request: RequestSpec,
        mock_response_factory: Callable[..., Mock],
    ) -> None:
        """Should raise TransientAPIError on HTTP 5xx."""
        with (
            ProviderClient(provider_config) as client,
            patch.object(
                client._http_client,
                'request',
                return_value=mock_response_factory(503, text='Service Unavailable'),
            ),
            pytest.raises(TransientAPIError) as exc_info,
        ):
            client.execute(drivers_request)

        assert exc_info.value.status_code == 503  # noqa: PLR2004

    def test_client_error_is_not_transient(
        self,
        provider_config: ProviderConfig,
        drivers_request: RequestSpec,
        mock_response_factory: Callable[..., Mock],
    ) -> None:
        """Should raise a plain APIError on other 4xx responses."""
        with (
            ProviderClient(provider_config) as client,
            patch.object(
                client._http_client,
                'request',
                return_value=mock_response_factory(404, text='Not Found'),
            ),
            pytest.raises(APIError) as exc_info,
        ):
            client.execute(drivers_request)

        assert not isinstance(exc_info.value, TransientAPIError)
        assert exc_info.value.status_code == 404  # noqa: PLR2004
        assert exc_info.value.response_body == 'Not Found'

    def test_invalid_json_raises_api_error(
        self,
        provider_config: ProviderConfig,
        drivers_request: RequestSpec,
        mock_response_factory: Callable[..., Mock],
    ) -> None:
        """Should reject a success response whose body is not JSON."""
        with (
            ProviderClient(provider_config) as client,
            patch.object(
                client._http_client,
                'request',
                return_value=mock_response_factory(200, text='<html>'),
            ),
            pytest.raises(APIError, match='Invalid JSON'),
        ):
            client.execute(drivers_request)

    @pytest.mark.parametrize(
        'transport_error',
        [
            httpx.ReadTimeout('timed out'),
            httpx.ConnectError('connection refused'),
        ],
    )
    def test_transport_errors_are_transient(
        self,
        provider_config: ProviderConfig,
        drivers_request: RequestSpec,
        transport_error: httpx.RequestError,
    ) -> None:
        """Should map timeouts and connection errors to TransientAPIError."""
        with (
            ProviderClient(provider_config) as client,
            patch.object(client._http_client, 'request', side_effect=transport_error),
            pytest.raises(TransientAPIError),
        ):
            client.execute(drivers_request)
