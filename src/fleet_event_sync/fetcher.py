# fleet_event_sync/fetcher.py
"""
Event and reference-data retrieval from the provider.

EventFetcher knows the provider's URL layout and response conventions; the
ProviderClient below it only moves bytes, and the RetryExecutor around each
attempt handles transient failures.

Authentication Flow:
    1. Ask TokenManager for a token; None raises TokenUnavailableError.
    2. Execute the request under the retry policy.
    3. On a 401, ask TokenManager.refresh_after_unauthorized() once and
       replay the request once with the new token. A second 401 propagates.

Incremental Pagination:
    The since-token endpoint returns a JSON array and signals pagination in
    response headers: 'hasmoreitems' ("True"/"False") and 'getsincetoken'
    (the cursor for the next call). Callers must persist next_token only after
    the batch is stored.
"""

import logging
from datetime import datetime
from typing import Any, Final

from pydantic import BaseModel, TypeAdapter, ValidationError

from fleet_event_sync.auth import TokenManager
from fleet_event_sync.client import (
    APIError,
    ProviderClient,
    TokenUnavailableError,
    UnauthorizedError,
)
from fleet_event_sync.config import ProviderConfig
from fleet_event_sync.models import (
    ApiResponse,
    EventBatch,
    ProviderDriver,
    ProviderEndpoint,
    ProviderEndpoints,
    ProviderEvent,
    ProviderEventType,
    ProviderVehicle,
    RequestSpec,
)
from fleet_event_sync.retry import RetryExecutor, RetryPolicy
from fleet_event_sync.since_token import format_since_timestamp

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = ['EventFetcher']

HAS_MORE_ITEMS_HEADER: Final[str] = 'hasmoreitems'
NEXT_SINCE_TOKEN_HEADER: Final[str] = 'getsincetoken'

_EVENT_LIST_ADAPTER: TypeAdapter[list[ProviderEvent]] = TypeAdapter(list[ProviderEvent])


class EventFetcher:
    """
    Authenticated provider reads: incremental, historical and reference data.

    Args:
        provider_config: Provider section of the configuration.
        client: Single-attempt transport.
        token_manager: Source of bearer tokens.
        retry_executor: Retry wrapper. Defaults to one built from
            provider_config.
    """

    def __init__(
        self,
        provider_config: ProviderConfig,
        client: ProviderClient,
        token_manager: TokenManager,
        retry_executor: RetryExecutor | None = None,
    ) -> None:
        self._config: ProviderConfig = provider_config
        self._client: ProviderClient = client
        self._token_manager: TokenManager = token_manager
        self._retry_executor: RetryExecutor = retry_executor or RetryExecutor(
            RetryPolicy.from_provider_config(provider_config)
        )

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def fetch_since(self, since_token: str) -> EventBatch:
        """
        Fetch one page of events created after since_token.

        Args:
            since_token: Cursor from the previous page, or 'NEW'.

        Returns:
            EventBatch with the page's events, has_more and next_token. When
            the provider omits the cursor header, next_token repeats
            since_token.

        Raises:
            TokenUnavailableError: No token could be obtained.
            APIError: Non-retryable failure or malformed body.
            TransientAPIError: Retries exhausted.
        """
        request_spec: RequestSpec = self._build_request(
            ProviderEndpoints.EVENTS_SINCE,
            json_body=self._config.effective_group_ids(),
            since_token=since_token,
            quantity=self._config.events_page_quantity,
        )
        response: ApiResponse = self._execute_authenticated(request_spec)

        events: list[ProviderEvent] = self._parse_events(response, request_spec.label)
        has_more_raw: str = response.header(HAS_MORE_ITEMS_HEADER) or 'False'
        next_token: str | None = response.header(NEXT_SINCE_TOKEN_HEADER)

        if not next_token:
            logger.warning(
                'Provider omitted %s header, keeping token %s',
                NEXT_SINCE_TOKEN_HEADER,
                since_token,
            )
            next_token = since_token

        batch = EventBatch(
            events=events,
            has_more=has_more_raw.strip().lower() == 'true',
            next_token=next_token,
        )
        logger.debug(
            'Since-token page %s: %d events, has_more=%s, next=%s',
            since_token,
            batch.item_count,
            batch.has_more,
            batch.next_token,
        )
        return batch

    def fetch_historical(
        self,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ProviderEvent]:
        """
        Fetch all events in the half-open window [window_start, window_end).

        An empty list is a normal result.

        Raises:
            TokenUnavailableError: No token could be obtained.
            APIError: Non-retryable failure or malformed body.
            TransientAPIError: Retries exhausted.
        """
        request_spec: RequestSpec = self._build_request(
            ProviderEndpoints.HISTORICAL_EVENTS,
            json_body=self._config.effective_group_ids(),
            from_time=format_since_timestamp(window_start),
            to_time=format_since_timestamp(window_end),
        )
        response: ApiResponse = self._execute_authenticated(request_spec)
        return self._parse_events(response, request_spec.label)

    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------

    def fetch_drivers(self) -> list[ProviderDriver]:
        return self._fetch_reference(ProviderEndpoints.DRIVERS, ProviderDriver)

    def fetch_vehicles(self) -> list[ProviderVehicle]:
        return self._fetch_reference(ProviderEndpoints.VEHICLES, ProviderVehicle)

    def fetch_event_types(self) -> list[ProviderEventType]:
        return self._fetch_reference(ProviderEndpoints.EVENT_TYPES, ProviderEventType)

    def _fetch_reference[ItemT: BaseModel](
        self,
        endpoint: ProviderEndpoint,
        item_type: type[ItemT],
    ) -> list[ItemT]:
        request_spec: RequestSpec = self._build_request(
            endpoint,
            organisation_id=self._config.organisation_id,
        )
        response: ApiResponse = self._execute_authenticated(request_spec)
        items: list[Any] = self._require_list(response, request_spec.label)

        try:
            parsed: list[ItemT] = [item_type.model_validate(item) for item in items]
        except ValidationError as error:
            raise APIError(
                message=f'Malformed {endpoint.description.lower()} payload: {error}',
                status_code=response.status_code,
            ) from error

        logger.info('Fetched %d items: %s', len(parsed), endpoint.description)
        return parsed

    # -------------------------------------------------------------------------
    # Request plumbing
    # -------------------------------------------------------------------------

    def _build_request(
        self,
        endpoint: ProviderEndpoint,
        json_body: list[Any] | None = None,
        **path_params: Any,
    ) -> RequestSpec:
        return RequestSpec(
            url=endpoint.build_url(self._config.base_url, **path_params),
            method=endpoint.http_method,
            headers={'Accept': 'application/json'},
            json_body=json_body,
            timeout=self._config.request_timeout,
            label=endpoint.build_resource_path(**path_params),
        )

    def _run(self, request_spec: RequestSpec) -> ApiResponse:
        return self._retry_executor.run(
            lambda: self._client.execute(request_spec),
            label=request_spec.label,
        ).value

    def _execute_authenticated(self, request_spec: RequestSpec) -> ApiResponse:
        access_token: str | None = self._token_manager.get_access_token()
        if access_token is None:
            raise TokenUnavailableError('No access token available from provider')

        try:
            return self._run(request_spec.with_bearer_token(access_token))
        except UnauthorizedError:
            logger.info('401 on %s, refreshing token and replaying', request_spec.label)

        refreshed_token: str | None = self._token_manager.refresh_after_unauthorized(
            access_token
        )
        if refreshed_token is None:
            raise TokenUnavailableError(
                f'Token refresh after 401 failed for {request_spec.label}'
            )

        return self._run(request_spec.with_bearer_token(refreshed_token))

    @staticmethod
    def _require_list(response: ApiResponse, label: str) -> list[Any]:
        if response.body is None:
            return []
        if not isinstance(response.body, list):
            raise APIError(
                message=(
                    f'Expected JSON array from {label}, '
                    f'got {type(response.body).__name__}'
                ),
                status_code=response.status_code,
            )
        return response.body

    def _parse_events(self, response: ApiResponse, label: str) -> list[ProviderEvent]:
        items: list[Any] = self._require_list(response, label)
        try:
            return _EVENT_LIST_ADAPTER.validate_python(items)
        except ValidationError as error:
            raise APIError(
                message=f'Malformed event payload from {label}: {error}',
                status_code=response.status_code,
            ) from error
