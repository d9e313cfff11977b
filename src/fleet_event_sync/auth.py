# fleet_event_sync/auth.py
"""
OAuth2 token lifecycle for the provider account.

TokenManager hands out bearer tokens that stay valid for at least the
configured margin (five minutes by default). Tokens are cached in memory and
persisted through a CredentialStore, so a restarted worker reuses the last
exchange instead of logging in again.

Refresh Strategy:
-----------------
1. Cached token valid beyond the margin: returned as-is, no lock taken.
2. Near expiry, or rejected with a 401: one refresh-grant exchange.
3. No refresh token, or the refresh exchange fails: password-grant login.
4. Login fails: logged, None returned. The manager never raises for an
   authentication failure; callers decide what a missing token means.

Single-flight:
--------------
All exchanges happen under one lock. A caller that waited for the lock first
re-reads the stored credential; if it changed while waiting (another thread
already refreshed) the new token is reused and no request is sent.
"""

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from fleet_event_sync.client import APIError, ProviderClient
from fleet_event_sync.config import ProviderConfig
from fleet_event_sync.models import (
    ApiResponse,
    HTTPMethod,
    ProviderEndpoints,
    RequestSpec,
    TokenResponse,
)
from fleet_event_sync.retry import RetryExecutor, RetryPolicy
from fleet_event_sync.storage import CredentialStore, StoredCredential

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = ['TokenManager']


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TokenManager:
    """
    Thread-safe access-token provider with proactive refresh.

    Args:
        provider_config: Provider section of the configuration.
        client: Transport used for the token endpoint.
        credential_store: Persistence for the last successful exchange.
        retry_executor: Retry wrapper for token exchanges. Defaults to one
            built from provider_config.
        clock: Returns the current aware UTC time; injectable for tests.

    Example:
        >>> manager = TokenManager(config.provider, client, SqlCredentialStore(f))
        >>> token = manager.get_access_token()
        >>> if token is None:
        ...     raise TokenUnavailableError('provider login failed')
    """

    def __init__(
        self,
        provider_config: ProviderConfig,
        client: ProviderClient,
        credential_store: CredentialStore,
        retry_executor: RetryExecutor | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._config: ProviderConfig = provider_config
        self._client: ProviderClient = client
        self._credential_store: CredentialStore = credential_store
        self._retry_executor: RetryExecutor = retry_executor or RetryExecutor(
            RetryPolicy.from_provider_config(provider_config)
        )
        self._clock: Callable[[], datetime] = clock
        self._refresh_margin = timedelta(
            seconds=provider_config.token_refresh_margin_seconds
        )
        self._lock: threading.Lock = threading.Lock()
        self._cached: StoredCredential | None = None

    @property
    def account(self) -> str:
        return self._config.username

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def get_access_token(self) -> str | None:
        """
        Return a bearer token valid for at least the refresh margin.

        Returns:
            The access token, or None if neither refresh nor login succeeded.
        """
        credential: StoredCredential | None = self._cached
        if credential is not None and self._is_fresh(credential):
            return credential.access_token

        with self._lock:
            credential = self._load_credential()
            if credential is not None and self._is_fresh(credential):
                return credential.access_token

            if credential is None:
                logger.info('No stored credential for %s, logging in', self.account)
            else:
                logger.info(
                    'Access token expires at %s, refreshing',
                    credential.expires_at.isoformat(),
                )

            renewed: StoredCredential | None = self._refresh_or_login(credential)
            return renewed.access_token if renewed is not None else None

    def refresh_after_unauthorized(self, stale_token: str) -> str | None:
        """
        Obtain a replacement for a token the provider rejected with 401.

        If the stored token already differs from stale_token, another caller
        has refreshed in the meantime and the stored token is returned without
        a network call.

        Args:
            stale_token: The access token that was rejected.

        Returns:
            A different access token, or None if no token could be obtained.
        """
        with self._lock:
            credential: StoredCredential | None = self._load_credential()

            if credential is not None and credential.access_token != stale_token:
                logger.debug('Token already refreshed by another caller, reusing it')
                return credential.access_token

            logger.info('Access token rejected by provider, refreshing')
            renewed: StoredCredential | None = self._refresh_or_login(credential)
            return renewed.access_token if renewed is not None else None

    # -------------------------------------------------------------------------
    # Internals (callers hold self._lock)
    # -------------------------------------------------------------------------

    def _is_fresh(self, credential: StoredCredential) -> bool:
        return credential.expires_at - self._refresh_margin > self._clock()

    def _load_credential(self) -> StoredCredential | None:
        stored: StoredCredential | None = self._credential_store.load(self.account)
        self._cached = stored
        return stored

    def _refresh_or_login(
        self,
        credential: StoredCredential | None,
    ) -> StoredCredential | None:
        if credential is not None and credential.refresh_token:
            try:
                return self._exchange(
                    {
                        'grant_type': 'refresh_token',
                        'refresh_token': credential.refresh_token,
                    },
                    previous=credential,
                )
            except (APIError, ValidationError) as error:
                logger.warning('Token refresh failed, falling back to login: %s', error)
        elif credential is not None:
            logger.info('No refresh token stored, falling back to login')

        try:
            return self._exchange(
                {
                    'grant_type': 'password',
                    'username': self._config.username,
                    'password': self._config.password.get_secret_value(),
                    'scope': self._config.scope,
                },
                previous=None,
            )
        except (APIError, ValidationError) as error:
            logger.error('Login failed for %s: %s', self.account, error)
            return None

    def _build_token_request(self, form_body: dict[str, str]) -> RequestSpec:
        return RequestSpec(
            url=ProviderEndpoints.TOKEN.build_url(self._config.identity_url),
            method=HTTPMethod.POST,
            headers={
                'Authorization': (
                    f'Basic {self._config.basic_auth_token.get_secret_value()}'
                ),
                'Accept': 'application/json',
            },
            form_body=form_body,
            timeout=self._config.request_timeout,
            label=f'token exchange ({form_body["grant_type"]})',
        )

    def _exchange(
        self,
        form_body: dict[str, str],
        previous: StoredCredential | None,
    ) -> StoredCredential:
        """
        Post one grant to the token endpoint and persist the result.

        Raises:
            APIError: The exchange failed (after retries for transient errors).
            ValidationError: The response body is not a token response.
        """
        request_spec: RequestSpec = self._build_token_request(form_body)
        response: ApiResponse = self._retry_executor.run(
            lambda: self._client.execute(request_spec),
            label=request_spec.label,
        ).value

        token_response: TokenResponse = TokenResponse.model_validate(response.body)

        # Some refresh responses omit refresh_token; keep the one we had.
        refresh_token: str | None = token_response.refresh_token
        if refresh_token is None and previous is not None:
            refresh_token = previous.refresh_token

        credential = StoredCredential(
            access_token=token_response.access_token,
            refresh_token=refresh_token,
            expires_at=token_response.expires_at(self._clock()),
        )
        self._credential_store.save(self.account, credential)
        self._cached = credential

        logger.info(
            'Obtained access token via %s grant, expires at %s',
            form_body['grant_type'],
            credential.expires_at.isoformat(),
        )
        return credential
