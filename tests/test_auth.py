"""
Tests for fleet_event_sync.auth module.

Tests TokenManager login, proactive refresh, fallback to login, failure
handling and single-flight refresh under concurrent callers.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any
from unittest.mock import Mock

import pytest

from fleet_event_sync.auth import TokenManager
from fleet_event_sync.client import APIError, ProviderClient, TransientAPIError
from fleet_event_sync.config import ProviderConfig
from fleet_event_sync.models import ApiResponse, RequestSpec
from fleet_event_sync.retry import RetryExecutor
from fleet_event_sync.storage import SqlCredentialStore, StoredCredential


def _token_response(
    access_token: str,
    refresh_token: str | None = 'refresh-1',
    expires_in: int = 3600,
) -> ApiResponse:
    body: dict[str, Any] = {
        'access_token': access_token,
        'expires_in': expires_in,
        'token_type': 'Bearer',
    }
    if refresh_token is not None:
        body['refresh_token'] = refresh_token
    return ApiResponse(status_code=200, body=body)


def _sent_grant(call: Any) -> str:
    request_spec: RequestSpec = call.args[0]
    assert request_spec.form_body is not None
    return request_spec.form_body['grant_type']


@pytest.fixture
def mock_client() -> Mock:
    """ProviderClient double whose execute() results each test scripts."""
    return Mock(spec=ProviderClient)


@pytest.fixture
def token_manager(
    provider_config: ProviderConfig,
    mock_client: Mock,
    credential_store: SqlCredentialStore,
    retry_executor: RetryExecutor,
    fixed_now: datetime,
) -> TokenManager:
    return TokenManager(
        provider_config,
        mock_client,
        credential_store,
        retry_executor=retry_executor,
        clock=lambda: fixed_now,
    )


class TestLogin:
    """Test the password grant when nothing usable is stored."""

    def test_logs_in_without_stored_credential(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
        credential_store: SqlCredentialStore,
        provider_config: ProviderConfig,
        fixed_now: datetime,
    ) -> None:
        """Should post a password grant and persist the result."""
        mock_client.execute.return_value = _token_response('access-1')

        assert token_manager.get_access_token() == 'access-1'

        request_spec: RequestSpec = mock_client.execute.call_args.args[0]
        assert request_spec.url == 'https://identity.example.com/core/connect/token'
        assert request_spec.headers['Authorization'] == 'Basic Y2xpZW50OnNlY3JldA=='
        assert request_spec.form_body == {
            'grant_type': 'password',
            'username': 'ingest@example.com',
            'password': 'correct-horse',
            'scope': provider_config.scope,
        }

        stored: StoredCredential | None = credential_store.load('ingest@example.com')
        assert stored is not None
        assert stored.access_token == 'access-1'
        assert stored.refresh_token == 'refresh-1'
        assert stored.expires_at == fixed_now + timedelta(hours=1)

    def test_secret_never_appears_in_label(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
    ) -> None:
        """Should keep credentials out of the log label."""
        mock_client.execute.return_value = _token_response('access-1')

        token_manager.get_access_token()

        request_spec: RequestSpec = mock_client.execute.call_args.args[0]
        assert 'correct-horse' not in request_spec.label

    def test_login_failure_returns_none(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
    ) -> None:
        """Should return None instead of raising when login is rejected."""
        mock_client.execute.side_effect = APIError('Client error: HTTP 400', 400)

        assert token_manager.get_access_token() is None

    def test_malformed_token_response_returns_none(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
    ) -> None:
        """Should treat a body without access_token as a failed login."""
        mock_client.execute.return_value = ApiResponse(
            status_code=200, body={'error': 'invalid_grant'}
        )

        assert token_manager.get_access_token() is None

    def test_transient_failure_is_retried(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
        recorded_sleeps: list[float],
    ) -> None:
        """Should retry the exchange after a server error."""
        mock_client.execute.side_effect = [
            TransientAPIError('Server error: HTTP 502', 502),
            _token_response('access-2'),
        ]

        assert token_manager.get_access_token() == 'access-2'
        assert recorded_sleeps == [1.0]


class TestProactiveRefresh:
    """Test reuse and refresh of stored credentials."""

    def test_fresh_token_is_reused(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
        credential_store: SqlCredentialStore,
        fixed_now: datetime,
    ) -> None:
        """Should return a token valid beyond the margin without any request."""
        credential_store.save(
            'ingest@example.com',
            StoredCredential(
                access_token='stored',
                refresh_token='refresh-0',
                expires_at=fixed_now + timedelta(minutes=30),
            ),
        )

        assert token_manager.get_access_token() == 'stored'
        assert token_manager.get_access_token() == 'stored'
        mock_client.execute.assert_not_called()

    def test_refreshes_within_margin(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
        credential_store: SqlCredentialStore,
        fixed_now: datetime,
    ) -> None:
        """Should use the refresh grant when the token expires within 5 minutes."""
        credential_store.save(
            'ingest@example.com',
            StoredCredential(
                access_token='expiring',
                refresh_token='refresh-0',
                expires_at=fixed_now + timedelta(minutes=4),
            ),
        )
        mock_client.execute.return_value = _token_response(
            'renewed', refresh_token=None
        )

        assert token_manager.get_access_token() == 'renewed'

        request_spec: RequestSpec = mock_client.execute.call_args.args[0]
        assert request_spec.form_body == {
            'grant_type': 'refresh_token',
            'refresh_token': 'refresh-0',
        }

        stored: StoredCredential | None = credential_store.load('ingest@example.com')
        assert stored is not None
        assert stored.access_token == 'renewed'
        # Refresh response omitted refresh_token, so the previous one is kept.
        assert stored.refresh_token == 'refresh-0'

    def test_failed_refresh_falls_back_to_login(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
        credential_store: SqlCredentialStore,
        fixed_now: datetime,
    ) -> None:
        """Should log in with the password grant when refresh is rejected."""
        credential_store.save(
            'ingest@example.com',
            StoredCredential(
                access_token='expired',
                refresh_token='revoked',
                expires_at=fixed_now - timedelta(minutes=1),
            ),
        )
        mock_client.execute.side_effect = [
            APIError('Client error: HTTP 400', 400),
            _token_response('from-login'),
        ]

        assert token_manager.get_access_token() == 'from-login'
        assert [_sent_grant(call) for call in mock_client.execute.call_args_list] == [
            'refresh_token',
            'password',
        ]

    def test_missing_refresh_token_goes_straight_to_login(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
        credential_store: SqlCredentialStore,
        fixed_now: datetime,
    ) -> None:
        """Should skip the refresh grant when no refresh token is stored."""
        credential_store.save(
            'ingest@example.com',
            StoredCredential(
                access_token='expired',
                refresh_token=None,
                expires_at=fixed_now - timedelta(minutes=1),
            ),
        )
        mock_client.execute.return_value = _token_response('from-login')

        assert token_manager.get_access_token() == 'from-login'
        assert mock_client.execute.call_count == 1
        assert _sent_grant(mock_client.execute.call_args) == 'password'


class TestRefreshAfterUnauthorized:
    """Test recovery from a 401 on a token that looked valid."""

    def test_reuses_token_refreshed_by_someone_else(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
        credential_store: SqlCredentialStore,
        fixed_now: datetime,
    ) -> None:
        """Should return the stored token without a request when it changed."""
        credential_store.save(
            'ingest@example.com',
            StoredCredential(
                access_token='already-new',
                refresh_token='refresh-1',
                expires_at=fixed_now + timedelta(hours=1),
            ),
        )

        assert token_manager.refresh_after_unauthorized('stale') == 'already-new'
        mock_client.execute.assert_not_called()

    def test_refreshes_when_stored_token_is_the_rejected_one(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
        credential_store: SqlCredentialStore,
        fixed_now: datetime,
    ) -> None:
        """Should refresh even if the rejected token is not near expiry."""
        credential_store.save(
            'ingest@example.com',
            StoredCredential(
                access_token='stale',
                refresh_token='refresh-1',
                expires_at=fixed_now + timedelta(hours=1),
            ),
        )
        mock_client.execute.return_value = _token_response('fresh')

        assert token_manager.refresh_after_unauthorized('stale') == 'fresh'
        assert _sent_grant(mock_client.execute.call_args) == 'refresh_token'

    def test_concurrent_unauthorized_refreshes_once(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
        credential_store: SqlCredentialStore,
        fixed_now: datetime,
    ) -> None:
        """Should send exactly one token request for simultaneous 401s."""
        credential_store.save(
            'ingest@example.com',
            StoredCredential(
                access_token='stale',
                refresh_token='refresh-1',
                expires_at=fixed_now + timedelta(hours=1),
            ),
        )
        mock_client.execute.return_value = _token_response('fresh')

        caller_count: int = 8
        barrier = threading.Barrier(caller_count)

        def on_unauthorized() -> str | None:
            barrier.wait()
            return token_manager.refresh_after_unauthorized('stale')

        with ThreadPoolExecutor(max_workers=caller_count) as pool:
            results: list[str | None] = list(
                pool.map(lambda _: on_unauthorized(), range(caller_count))
            )

        assert results == ['fresh'] * caller_count
        assert mock_client.execute.call_count == 1

    def test_concurrent_first_use_logs_in_once(
        self,
        token_manager: TokenManager,
        mock_client: Mock,
    ) -> None:
        """Should log in once when many callers start with an empty store."""
        mock_client.execute.return_value = _token_response('first')

        caller_count: int = 6
        barrier = threading.Barrier(caller_count)

        def get_token() -> str | None:
            barrier.wait()
            return token_manager.get_access_token()

        with ThreadPoolExecutor(max_workers=caller_count) as pool:
            results: list[str | None] = list(
                pool.map(lambda _: get_token(), range(caller_count))
            )

        assert results == ['first'] * caller_count
        assert mock_client.execute.call_count == 1
