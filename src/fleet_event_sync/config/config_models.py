# fleet_event_sync/config/config_models.py
"""
Configuration management for fleet event ingestion.

This module provides Pydantic models for the master configuration file that
controls how events are pulled from the telematics provider and written to
the relational store.

Design Decisions:
-----------------
- All models use `extra='forbid'` to catch typos and invalid fields in YAML
  configuration files early, preventing silent misconfiguration.

- No logging occurs within this module because the logging configuration itself
  is defined here. Logging must be configured by the caller after loading config.

- SSL verification supports three modes to handle corporate proxy environments:
  1. `True` - Standard verification using system CA bundle
  2. `False` - Disabled verification (use with caution, required for some proxies)
  3. String path - Custom CA bundle (e.g., exported Zscaler root certificate)

- SecretStr is used for the account password and the client's Basic auth
  token to prevent accidental exposure in logs, repr(), or error messages.
  The actual value must be accessed via `.get_secret_value()`.

Usage:
------
    import yaml
    from fleet_event_sync.config.config_models import IngestionConfig

    with open('config.yaml', 'r') as config_file:
        raw_config = yaml.safe_load(config_file)

    config = IngestionConfig.model_validate(raw_config)
"""

from pathlib import Path
from typing import Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

# =============================================================================
# Public API
# =============================================================================

__all__: list[str] = [
    'BackfillConfig',
    'IncrementalConfig',
    'IngestionConfig',
    'LogLevelName',
    'LoggingConfig',
    'ProviderConfig',
    'QueueConfig',
    'StorageConfig',
]

# =============================================================================
# Type Aliases
# =============================================================================

# Valid logging level names recognized by Python's logging module.
LogLevelName = Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

LOG_LEVEL_VALUES: frozenset[int] = frozenset({10, 20, 30, 40, 50})

LOG_LEVEL_NAME_TO_INT: dict[LogLevelName, int] = {
    'DEBUG': 10,
    'INFO': 20,
    'WARNING': 30,
    'ERROR': 40,
    'CRITICAL': 50,
}


def _normalize_url(url: str, field_name: str) -> str:
    """Require an http(s) scheme and strip any trailing slash."""
    if not url:
        raise ValueError(f'{field_name} cannot be empty')
    if not url.startswith(('http://', 'https://')):
        raise ValueError(
            f"{field_name} must start with 'http://' or 'https://', got: {url!r}"
        )
    return url.rstrip('/')


# =============================================================================
# Provider Configuration
# =============================================================================


class ProviderConfig(BaseModel):
    """Connection, authentication and retry settings for the provider.

    Authentication:
        The provider uses OAuth2 with a password grant for the first login and
        a refresh grant afterwards. Both exchanges are posted to
        `{identity_url}/token` with an HTTP Basic header built from the
        client credentials (basic_auth_token is the pre-encoded value).

    Network Resilience:
        Failed calls are retried up to max_attempts times in total. The delay
        between attempts follows
        `delay = min(retry_backoff_factor * (2 ** (attempt - 1)), max_backoff_seconds)`

        Example with backoff_factor=1.0, max_backoff_seconds=30:
          After attempt 1: 1 second
          After attempt 2: 2 seconds
          After attempt 6: 30 seconds (capped)

        HTTP 429 responses wait for the provider's Retry-After hint instead,
        or default_rate_limit_wait_seconds when the hint is missing.

    Attributes:
        base_url: Integration API root, e.g. https://integrate.example.com/api.
        identity_url: OAuth2 root; the token endpoint is `{identity_url}/token`.
        username: Account user for the password grant.
        password: Account password (masked).
        basic_auth_token: Base64 "client_id:client_secret" for the Basic header.
        scope: OAuth2 scope requested on login.
        organisation_id: Organisation whose reference data is listed.
        group_ids: Entity group ids sent to the events endpoints. Empty means
            [organisation_id].
        events_page_quantity: Maximum events requested per incremental page.
        request_timeout: [connect, read] timeout in seconds.
        max_attempts: Total attempts per call, including the first one.
        retry_backoff_factor: Exponential backoff multiplier.
        max_backoff_seconds: Upper bound on a single backoff wait.
        default_rate_limit_wait_seconds: 429 wait when Retry-After is absent.
        slow_call_threshold_seconds: Calls slower than this are logged.
        token_refresh_margin_seconds: Refresh the access token when it expires
            within this many seconds.
        verify_ssl: SSL certificate verification mode.
        use_truststore: Build the SSLContext from the OS trust store.
    """

    model_config = ConfigDict(extra='forbid')

    base_url: str = Field(description='Integration API root URL')
    identity_url: str = Field(description='OAuth2 identity root URL')
    username: str = Field(min_length=1, description='Account username')
    password: SecretStr = Field(description='Account password (masked)')
    basic_auth_token: SecretStr = Field(
        description='Pre-encoded HTTP Basic credentials for the token endpoint',
    )
    scope: str = Field(default='offline_access MiX.Integrate')
    organisation_id: int = Field(gt=0)
    group_ids: list[int] = Field(default_factory=list)
    events_page_quantity: int = Field(default=1000, ge=1, le=1000)
    request_timeout: tuple[int, int] = Field(
        default=(10, 60),
        description='[connect_timeout, read_timeout] in seconds',
    )
    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_backoff_factor: float = Field(default=1.0, gt=0.0, le=60.0)
    max_backoff_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    default_rate_limit_wait_seconds: float = Field(default=30.0, ge=0.0, le=600.0)
    slow_call_threshold_seconds: float = Field(default=10.0, gt=0.0)
    token_refresh_margin_seconds: int = Field(default=300, ge=0, le=3600)
    verify_ssl: bool | str = Field(default=True)
    use_truststore: bool = Field(default=False)

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, base_url: str) -> str:
        """Validate scheme and remove trailing slash."""
        return _normalize_url(base_url, 'base_url')

    @field_validator('identity_url')
    @classmethod
    def validate_identity_url(cls, identity_url: str) -> str:
        """Validate scheme and remove trailing slash."""
        return _normalize_url(identity_url, 'identity_url')

    @field_validator('password', 'basic_auth_token')
    @classmethod
    def validate_secret_not_empty(cls, secret: SecretStr) -> SecretStr:
        """Ensure secrets are not empty or whitespace-only."""
        secret_value: str = secret.get_secret_value()
        if not secret_value or not secret_value.strip():
            raise ValueError('secret values cannot be empty or whitespace-only')
        return secret

    @field_validator('request_timeout')
    @classmethod
    def validate_timeout_values_positive(
        cls, timeout: tuple[int, int]
    ) -> tuple[int, int]:
        """Ensure both timeout values are positive integers."""
        connect_timeout, read_timeout = timeout

        if connect_timeout <= 0:
            raise ValueError(
                f'connect_timeout must be positive, got: {connect_timeout}'
            )
        if read_timeout <= 0:
            raise ValueError(f'read_timeout must be positive, got: {read_timeout}')

        return timeout

    @field_validator('verify_ssl')
    @classmethod
    def validate_ssl_configuration(cls, verify_ssl: bool | str) -> bool | str:
        """When a CA bundle path is given, it must be an existing file."""
        if isinstance(verify_ssl, str):
            cert_path = Path(verify_ssl)

            if not cert_path.exists():
                raise ValueError(f'SSL certificate bundle file not found: {verify_ssl}')
            if not cert_path.is_file():
                raise ValueError(
                    f'SSL certificate path must be a file, not directory: {verify_ssl}'
                )

        return verify_ssl

    def effective_group_ids(self) -> list[int]:
        """Group ids for the events endpoints, defaulting to the organisation."""
        return list(self.group_ids) if self.group_ids else [self.organisation_id]


# =============================================================================
# Backfill / Incremental Configuration
# =============================================================================


class BackfillConfig(BaseModel):
    """Settings for the historical backfill worker.

    Attributes:
        hour_delay_seconds: Pause after each processed hour. The provider
            allows roughly 20 requests per minute, so the default of 3
            seconds keeps a single worker under the limit.
        reference_check_interval_hours: How often (in processed hours) the
            worker checks inserted events for unknown reference ids.
        max_range_days: Largest range a single load may cover.
    """

    model_config = ConfigDict(extra='forbid')

    hour_delay_seconds: float = Field(default=3.0, ge=0.0, le=60.0)
    reference_check_interval_hours: int = Field(default=10, ge=1)
    max_range_days: int = Field(default=90, ge=1, le=366)


class IncrementalConfig(BaseModel):
    """Settings for the since-token incremental sync.

    Attributes:
        process_name: etl_control row that holds the watermark.
        max_token_attempts: Fetch attempts for one token before it is skipped.
        token_expiry_days: A since-token older than this is reset to 'NEW'.
        page_delay_seconds: Pause between pages while has_more is true.
        breaker_failure_threshold: Consecutive skipped tokens that open the
            circuit breaker.
        breaker_cooldown_seconds: How long an open breaker pauses the sync.
    """

    model_config = ConfigDict(extra='forbid')

    process_name: str = Field(default='event_ingestion', min_length=1)
    max_token_attempts: int = Field(default=3, ge=1, le=10)
    token_expiry_days: float = Field(default=6.0, gt=0.0, le=7.0)
    page_delay_seconds: float = Field(default=3.0, ge=0.0, le=60.0)
    breaker_failure_threshold: int = Field(default=5, ge=1, le=100)
    breaker_cooldown_seconds: float = Field(default=120.0, ge=0.0, le=3600.0)


# =============================================================================
# Storage / Queue Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Relational store settings.

    Attributes:
        database_url: SQLAlchemy URL, e.g. 'postgresql+psycopg://...' or
            'sqlite:///data/events.db'.
        echo: Log every SQL statement (debugging only).
        insert_chunk_size: Rows per INSERT ... ON CONFLICT statement.
    """

    model_config = ConfigDict(extra='forbid')

    database_url: str = Field(min_length=1)
    echo: bool = Field(default=False)
    insert_chunk_size: int = Field(default=200, ge=1, le=5000)


class QueueConfig(BaseModel):
    """Names of the job queues the core reads from or writes to."""

    model_config = ConfigDict(extra='forbid')

    incremental_queue: str = Field(default='event-ingestion', min_length=1)
    reference_queue: str = Field(default='master-data-sync', min_length=1)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Configuration for application logging output.

    Supports dual-destination logging: console (always enabled) and optional
    file output.

    Attributes:
        file_path: Path to log file. None disables file logging.
            Extension .log is appended automatically if missing.
        console_level: Minimum log level for console output.
        file_level: Minimum log level for file output. Defaults to DEBUG if
            file_path is provided.
    """

    model_config = ConfigDict(extra='forbid')

    file_path: Path | None = Field(default=None)
    console_level: LogLevelName | int = Field(default='INFO')
    file_level: LogLevelName | int | None = Field(default=None)

    @field_validator('file_path', mode='before')
    @classmethod
    def normalize_log_file_path(cls, path_value: str | Path | None) -> Path | None:
        """Normalize path and ensure .log extension."""
        if path_value is None:
            return None

        path_string: str = str(path_value)

        if not path_string.lower().endswith('.log'):
            path_string = f'{path_string}.log'

        return Path(path_string)

    @field_validator('console_level', 'file_level', mode='after')
    @classmethod
    def validate_numeric_log_level(
        cls, level_value: LogLevelName | int | None
    ) -> LogLevelName | int | None:
        """Numeric levels must be one of the standard logging constants."""
        if level_value is None or isinstance(level_value, str):
            return level_value

        if level_value not in LOG_LEVEL_VALUES:
            raise ValueError(
                f'Numeric log level must be one of {sorted(LOG_LEVEL_VALUES)}, '
                f'got: {level_value}'
            )

        return level_value

    @model_validator(mode='after')
    def ensure_file_logging_configuration_consistency(self) -> Self:
        """Default file_level to DEBUG; reject file_level without file_path."""
        has_file_path: bool = self.file_path is not None
        has_file_level: bool = self.file_level is not None

        if has_file_path and not has_file_level:
            self.file_level = 'DEBUG'

        if has_file_level and not has_file_path:
            raise ValueError(
                'file_level is specified but file_path is missing. '
                'Provide file_path to enable file logging, or remove file_level.'
            )

        return self

    def get_console_level_int(self) -> int:
        """Convert console_level to numeric value for logging module."""
        if isinstance(self.console_level, int):
            return self.console_level
        return LOG_LEVEL_NAME_TO_INT[self.console_level]

    def get_file_level_int(self) -> int | None:
        """Convert file_level to numeric value, or None if disabled."""
        if self.file_level is None:
            return None
        if isinstance(self.file_level, int):
            return self.file_level
        return LOG_LEVEL_NAME_TO_INT[self.file_level]


# =============================================================================
# Root Configuration
# =============================================================================


class IngestionConfig(BaseModel):
    """Root configuration model.

    Attributes:
        provider: Provider connection and authentication settings.
        backfill: Historical backfill worker settings.
        incremental: Incremental sync settings.
        storage: Relational store settings.
        queues: Job queue names.
        logging: Application logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    provider: ProviderConfig
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    incremental: IncrementalConfig = Field(default_factory=IncrementalConfig)
    storage: StorageConfig
    queues: QueueConfig = Field(default_factory=QueueConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode='after')
    def validate_queue_names_distinct(self) -> Self:
        """Monitoring reads both queues separately, so they must differ."""
        if self.queues.incremental_queue == self.queues.reference_queue:
            raise ValueError(
                'queues.incremental_queue and queues.reference_queue must differ, '
                f'both are {self.queues.incremental_queue!r}'
            )
        return self
