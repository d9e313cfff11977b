# fleet_event_sync/client.py
"""
HTTP transport for the telematics provider.

This client executes RequestSpec objects without knowing which endpoint they
target. URL layout, authentication headers and response parsing belong to
EventFetcher and TokenManager; retries belong to RetryExecutor. One call to
`execute()` is exactly one HTTP attempt.

Failure Classification:
-----------------------
- 401: UnauthorizedError (not retried here; EventFetcher refreshes and replays)
- 429: RateLimitError, carrying the parsed Retry-After hint
- 5xx, timeouts, connection errors: TransientAPIError
- Other 4xx and unparseable bodies: APIError (fail fast)

SSL/TLS Handling:
-----------------
Supports the verification modes of ProviderConfig:
- Standard verification (verify_ssl=True)
- Disabled verification (verify_ssl=False) for development
- Custom CA bundle (verify_ssl='/path/to/cert.pem') for proxied environments
- Truststore integration (use_truststore=True) for the OS certificate store
"""

import logging
from ssl import SSLContext
from types import TracebackType
from typing import Any, Final, Self

import httpx

from fleet_event_sync.common import build_truststore_ssl_context
from fleet_event_sync.config import ProviderConfig
from fleet_event_sync.models import ApiResponse, RateLimitInfo, RequestSpec

__all__: list[str] = [
    'APIError',
    'ProviderClient',
    'RateLimitError',
    'TokenUnavailableError',
    'TransientAPIError',
    'UnauthorizedError',
]

logger: logging.Logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_STATUS_UNAUTHORIZED: Final[int] = 401
HTTP_STATUS_RATE_LIMITED: Final[int] = 429
HTTP_STATUS_SERVER_ERROR_MIN: Final[int] = 500
HTTP_STATUS_SERVER_ERROR_MAX: Final[int] = 599

ERROR_BODY_PREVIEW_CHARS: Final[int] = 500


# =============================================================================
# Exception Hierarchy
# =============================================================================


class APIError(Exception):
    """
    Base exception for provider API errors.

    Catch this to handle every API-related failure. Plain APIError instances
    are never retried.

    Attributes:
        status_code: HTTP status code if available, None for connection errors.
        response_body: Raw response body for debugging, None if unavailable.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code: int | None = status_code
        self.response_body: str | None = response_body


class UnauthorizedError(APIError):
    """Raised on HTTP 401: the bearer token was rejected."""


class TokenUnavailableError(APIError):
    """Raised when neither the cache, a refresh nor a login produced a token."""


class TransientAPIError(APIError):
    """
    Raised for transient errors that should be retried.

    This includes timeouts, connection errors, and server errors (5xx).
    """


class RateLimitError(TransientAPIError):
    """
    Raised when the provider rate limit is exceeded (HTTP 429).

    Attributes:
        rate_limit_info: Parsed headers including retry_after_seconds.
    """

    def __init__(
        self,
        rate_limit_info: RateLimitInfo,
        response_body: str | None = None,
    ) -> None:
        super().__init__(
            f'Rate limit exceeded, retry after {rate_limit_info.retry_after_seconds}s',
            status_code=HTTP_STATUS_RATE_LIMITED,
            response_body=response_body,
        )
        self.rate_limit_info: RateLimitInfo = rate_limit_info


# =============================================================================
# HTTP Client
# =============================================================================


class ProviderClient:
    """
    Single-attempt HTTP executor for provider requests.

    Thread Safety:
        httpx.Client is safe for concurrent requests, so one ProviderClient
        can be shared by the token manager and the fetchers of one process.

    Example:
        >>> with ProviderClient(config.provider) as client:
        ...     response = client.execute(request_spec)
        ...     response.header('hasmoreitems')
        'False'
    """

    def __init__(
        self,
        provider_config: ProviderConfig,
        pool_connections: int = 5,
        pool_maxsize: int = 10,
    ) -> None:
        """
        Initialize the transport.

        Args:
            provider_config: Validated provider section of the configuration.
            pool_connections: Maximum keepalive connections in the pool.
            pool_maxsize: Maximum total connections allowed in the pool.

        Raises:
            RuntimeError: If use_truststore is set but truststore is missing.
        """
        self._config: ProviderConfig = provider_config

        ssl_verify: SSLContext | bool | str = self._build_ssl_context()

        connect_timeout, read_timeout = provider_config.request_timeout
        self._http_client: httpx.Client = httpx.Client(
            timeout=httpx.Timeout(
                connect=connect_timeout,
                read=read_timeout,
                write=connect_timeout,
                pool=connect_timeout,
            ),
            verify=ssl_verify,
            limits=httpx.Limits(
                max_keepalive_connections=pool_connections,
                max_connections=pool_maxsize,
            ),
        )

        logger.info(
            'Initialized ProviderClient: base_url=%r, identity_url=%r',
            provider_config.base_url,
            provider_config.identity_url,
        )

    @property
    def config(self) -> ProviderConfig:
        return self._config

    def _build_ssl_context(self) -> SSLContext | bool | str:
        if self._config.use_truststore:
            logger.debug('Building SSLContext from the OS trust store')
            return build_truststore_ssl_context()

        logger.debug('Using SSL verification setting: %r', self._config.verify_ssl)
        return self._config.verify_ssl

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Release pooled connections. Safe to call more than once."""
        self._http_client.close()
        logger.debug('ProviderClient closed')

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # HTTP Execution Layer
    # -------------------------------------------------------------------------

    def execute(self, request_spec: RequestSpec) -> ApiResponse:
        """
        Perform one HTTP attempt and classify the outcome.

        Args:
            request_spec: Complete request specification.

        Returns:
            ApiResponse with the decoded JSON body (None for an empty body)
            and the response headers.

        Raises:
            UnauthorizedError: On HTTP 401.
            RateLimitError: On HTTP 429.
            TransientAPIError: On 5xx, timeouts and connection errors.
            APIError: On other 4xx responses or a malformed body.
        """
        response: httpx.Response = self._send_http_request(request_spec)
        return self._handle_response(request_spec, response)

    def _send_http_request(self, request_spec: RequestSpec) -> httpx.Response:
        """Send the request, converting transport errors to TransientAPIError."""
        connect_timeout, read_timeout = request_spec.timeout
        timeout = httpx.Timeout(
            connect=connect_timeout,
            read=read_timeout,
            write=connect_timeout,
            pool=connect_timeout,
        )

        request_kwargs: dict[str, Any] = {
            'method': request_spec.method.value,
            'url': request_spec.url,
            'params': request_spec.query_params,
            'headers': request_spec.headers,
            'timeout': timeout,
        }
        if request_spec.json_body is not None:
            request_kwargs['json'] = request_spec.json_body
        if request_spec.form_body is not None:
            request_kwargs['data'] = request_spec.form_body

        try:
            return self._http_client.request(**request_kwargs)
        except httpx.TimeoutException as error:
            logger.warning('Request timeout: %s', request_spec.label or request_spec.url)
            raise TransientAPIError(f'Request timeout: {error}') from error
        except httpx.RequestError as error:
            logger.warning(
                'Connection error: %s - %s',
                request_spec.label or request_spec.url,
                error,
            )
            raise TransientAPIError(f'Connection error: {error}') from error

    def _handle_response(
        self,
        request_spec: RequestSpec,
        response: httpx.Response,
    ) -> ApiResponse:
        status_code: int = response.status_code
        label: str = request_spec.label or request_spec.url

        if status_code == HTTP_STATUS_UNAUTHORIZED:
            logger.info('Unauthorized (401) for %s', label)
            raise UnauthorizedError(
                message='Unauthorized: HTTP 401',
                status_code=status_code,
                response_body=response.text[:ERROR_BODY_PREVIEW_CHARS],
            )

        if status_code == HTTP_STATUS_RATE_LIMITED:
            rate_limit_info: RateLimitInfo = RateLimitInfo.from_response_headers(
                dict(response.headers),
                default_retry_after=self._config.default_rate_limit_wait_seconds,
            )
            logger.warning(
                'Rate limited on %s: retry after %.1fs, remaining=%s',
                label,
                rate_limit_info.retry_after_seconds,
                rate_limit_info.remaining,
            )
            raise RateLimitError(
                rate_limit_info,
                response_body=response.text[:ERROR_BODY_PREVIEW_CHARS],
            )

        if HTTP_STATUS_SERVER_ERROR_MIN <= status_code <= HTTP_STATUS_SERVER_ERROR_MAX:
            logger.warning(
                'Server error %d on %s: %s',
                status_code,
                label,
                response.text[:200],
            )
            raise TransientAPIError(
                message=f'Server error: HTTP {status_code}',
                status_code=status_code,
                response_body=response.text[:ERROR_BODY_PREVIEW_CHARS],
            )

        if not response.is_success:
            logger.error(
                'Client error %d on %s (not retryable): %s',
                status_code,
                label,
                response.text[:ERROR_BODY_PREVIEW_CHARS],
            )
            raise APIError(
                message=f'Client error: HTTP {status_code}',
                status_code=status_code,
                response_body=response.text[:ERROR_BODY_PREVIEW_CHARS],
            )

        body: Any = None
        if response.content:
            try:
                body = response.json()
            except ValueError as parse_error:
                raise APIError(
                    message=f'Invalid JSON in response: {parse_error}',
                    status_code=status_code,
                    response_body=response.text[:ERROR_BODY_PREVIEW_CHARS],
                ) from parse_error

        return ApiResponse(
            status_code=status_code,
            body=body,
            headers=dict(response.headers),
        )
