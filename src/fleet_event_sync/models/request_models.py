# fleet_event_sync/models/request_models.py
"""
Request specification models shared by the transport and the fetchers.

This module defines the contract between the code that knows the provider's
URL layout (EventFetcher, TokenManager) and the ProviderClient that executes
HTTP calls. The client never needs to know which endpoint it is talking to;
it only sees a fully-formed RequestSpec and returns an ApiResponse.
"""

import logging
from enum import Enum
from typing import Any, Final, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'ApiResponse',
    'HTTPMethod',
    'ProviderEndpoint',
    'ProviderEndpoints',
    'RateLimitInfo',
    'RequestSpec',
]

# Buffer added on top of the provider's Retry-After hint so the next call does
# not land exactly on the window edge.
RATE_LIMIT_WAIT_BUFFER_SECONDS: Final[float] = 0.5


class HTTPMethod(str, Enum):
    """Supported HTTP methods for provider requests."""

    GET = 'GET'
    POST = 'POST'


class RequestSpec(BaseModel):
    """
    Complete specification for one HTTP request.

    Exactly one of json_body and form_body may be set. The token endpoint is
    form-encoded; the historical events endpoint takes a JSON array of group
    ids; everything else is a bodiless GET.

    Attributes:
        url: Complete URL ready for HTTP request.
        method: HTTP method.
        headers: All headers including authentication.
        query_params: Serialized query parameters (all strings).
        json_body: JSON request body (object or array), or None.
        form_body: Form fields sent as application/x-www-form-urlencoded.
        timeout: Tuple of (connect_timeout, read_timeout) in seconds.
        label: Short name used in log lines (never contains secrets).
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    url: str
    method: HTTPMethod = HTTPMethod.GET
    headers: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    json_body: dict[str, Any] | list[Any] | None = None
    form_body: dict[str, str] | None = None
    timeout: tuple[int, int] = Field(
        default=(30, 120),
        description='(connect_timeout, read_timeout) in seconds',
    )
    label: str = ''

    @model_validator(mode='after')
    def validate_single_body(self) -> Self:
        """Reject specs that carry both a JSON and a form body."""
        if self.form_body is not None and self.json_body is not None:
            raise ValueError('RequestSpec cannot have both json_body and form_body')
        return self

    def with_bearer_token(self, access_token: str) -> 'RequestSpec':
        """Return a copy of this spec with the Authorization header replaced."""
        headers: dict[str, str] = dict(self.headers)
        headers['Authorization'] = f'Bearer {access_token}'
        return self.model_copy(update={'headers': headers})


class ApiResponse(BaseModel):
    """
    Successful provider response: decoded body plus headers.

    Headers are stored with lowercase keys; the incremental endpoint signals
    pagination through headers rather than the body.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    status_code: int
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator('headers', mode='before')
    @classmethod
    def normalize_header_names(cls, headers: dict[str, str]) -> dict[str, str]:
        """Lowercase header names for case-insensitive lookup."""
        return {key.lower(): value for key, value in dict(headers).items()}

    def header(self, name: str, default: str | None = None) -> str | None:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)


class RateLimitInfo(BaseModel):
    """
    Rate limit metadata extracted from a 429 response.

    Attributes:
        retry_after_seconds: Seconds the provider asked us to wait.
        remaining: Requests remaining in the current window, if reported.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    retry_after_seconds: float = 1.0
    remaining: int | None = None

    @classmethod
    def from_response_headers(
        cls,
        headers: dict[str, str],
        default_retry_after: float = 1.0,
    ) -> 'RateLimitInfo':
        """
        Extract rate limit information from HTTP response headers.

        A missing or unparseable Retry-After (the HTTP-date form is not
        supported by the provider) falls back to default_retry_after.

        Args:
            headers: HTTP response headers dictionary.
            default_retry_after: Wait used when no usable hint is present.

        Returns:
            RateLimitInfo with parsed values.
        """
        normalized_headers: dict[str, str] = {
            key.lower(): value for key, value in headers.items()
        }

        retry_after: float = default_retry_after
        retry_after_raw: str | None = normalized_headers.get('retry-after')
        if retry_after_raw is not None:
            try:
                retry_after = max(float(retry_after_raw), 0.0)
            except ValueError:
                logger.debug(
                    'Ignoring non-numeric Retry-After %r, using default %.1fs',
                    retry_after_raw,
                    default_retry_after,
                )

        remaining_raw: str | None = normalized_headers.get('x-ratelimit-remaining')
        remaining: int | None = None
        if remaining_raw is not None and remaining_raw.isdigit():
            remaining = int(remaining_raw)

        return cls(retry_after_seconds=retry_after, remaining=remaining)

    @property
    def wait_seconds(self) -> float:
        """Seconds to actually sleep before retrying."""
        return self.retry_after_seconds + RATE_LIMIT_WAIT_BUFFER_SECONDS


class ProviderEndpoint(BaseModel):
    """
    Self-describing provider endpoint: path template plus HTTP method.

    Attributes:
        endpoint_path: Relative URL path with {placeholders}.
        http_method: HTTP verb for requests.
        description: Human-readable description, used in log lines.
        path_parameters: Names of the placeholders in endpoint_path.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    endpoint_path: str
    http_method: HTTPMethod = HTTPMethod.GET
    description: str
    path_parameters: tuple[str, ...] = Field(default_factory=tuple)

    @field_validator('endpoint_path')
    @classmethod
    def validate_endpoint_path_format(cls, endpoint_path: str) -> str:
        """Ensure endpoint path starts with forward slash."""
        if not endpoint_path:
            raise ValueError('endpoint_path cannot be empty')
        if not endpoint_path.startswith('/'):
            endpoint_path = f'/{endpoint_path}'
        return endpoint_path

    def build_resource_path(self, **path_params: Any) -> str:
        """
        Construct the relative resource path with placeholders replaced.

        Raises:
            ValueError: If a required path parameter is missing.
        """
        resolved_path: str = self.endpoint_path

        for param_name in self.path_parameters:
            if param_name not in path_params:
                raise ValueError(f'Missing required path parameter: {param_name}')
            resolved_path = resolved_path.replace(
                f'{{{param_name}}}', str(path_params[param_name])
            )

        return resolved_path

    def build_url(self, base_url: str, **path_params: Any) -> str:
        """Construct the full URL (base_url has no trailing slash)."""
        return f'{base_url}{self.build_resource_path(**path_params)}'


class ProviderEndpoints:
    """Endpoint catalogue for the provider's integration API."""

    EVENTS_SINCE = ProviderEndpoint(
        endpoint_path=(
            '/events/groups/createdsince/entitytype/Asset'
            '/sincetoken/{since_token}/quantity/{quantity}'
        ),
        http_method=HTTPMethod.POST,
        description='Events created since a continuation token',
        path_parameters=('since_token', 'quantity'),
    )
    HISTORICAL_EVENTS = ProviderEndpoint(
        endpoint_path='/events/groups/entitytype/Asset/from/{from_time}/to/{to_time}',
        http_method=HTTPMethod.POST,
        description='Events in a fixed time window',
        path_parameters=('from_time', 'to_time'),
    )
    DRIVERS = ProviderEndpoint(
        endpoint_path='/drivers/organisation/{organisation_id}',
        description='All drivers of an organisation',
        path_parameters=('organisation_id',),
    )
    VEHICLES = ProviderEndpoint(
        endpoint_path='/assets/group/{organisation_id}',
        description='All assets (vehicles) of an organisation',
        path_parameters=('organisation_id',),
    )
    EVENT_TYPES = ProviderEndpoint(
        endpoint_path='/libraryevents/organisation/{organisation_id}',
        description='Event type library of an organisation',
        path_parameters=('organisation_id',),
    )
    TOKEN = ProviderEndpoint(
        endpoint_path='/token',
        http_method=HTTPMethod.POST,
        description='OAuth2 token exchange',
    )
