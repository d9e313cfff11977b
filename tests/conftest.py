"""
Shared pytest fixtures for fleet_event_sync tests.

Every database fixture runs against a private in-memory SQLite engine, so
tests never share rows. HTTP is never touched: transport tests patch the
underlying httpx.Client, everything above it gets fakes.
"""

import json
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import Mock

import httpx
import pytest
from pydantic import SecretStr
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from fleet_event_sync.config import (
    BackfillConfig,
    IncrementalConfig,
    ProviderConfig,
    StorageConfig,
)
from fleet_event_sync.models import ProviderEvent
from fleet_event_sync.retry import RetryExecutor, RetryPolicy
from fleet_event_sync.storage import (
    SqlControlStore,
    SqlCredentialStore,
    SqlEventStore,
    SqlReferenceStore,
    create_database_engine,
    create_session_factory,
    init_db,
)

# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def provider_config() -> ProviderConfig:
    """
    Provide a valid provider configuration.

    The default rate-limit wait is short so that tests which fall back to it
    stay readable; sleeps are always injected anyway.
    """
    return ProviderConfig(
        base_url='https://integrate.example.com/api/',
        identity_url='https://identity.example.com/core/connect',
        username='ingest@example.com',
        password=SecretStr('correct-horse'),
        basic_auth_token=SecretStr('Y2xpZW50OnNlY3JldA=='),
        organisation_id=4321,
        default_rate_limit_wait_seconds=2.0,
    )


@pytest.fixture
def storage_config() -> StorageConfig:
    """In-memory SQLite storage with a small chunk size to exercise chunking."""
    return StorageConfig(database_url='sqlite://', insert_chunk_size=2)


@pytest.fixture
def backfill_config() -> BackfillConfig:
    """Backfill settings with no pause between hours."""
    return BackfillConfig(hour_delay_seconds=0.0, reference_check_interval_hours=10)


@pytest.fixture
def incremental_config() -> IncrementalConfig:
    """Incremental settings with no pause between pages or attempts."""
    return IncrementalConfig(page_delay_seconds=0.0, max_token_attempts=3)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def engine(storage_config: StorageConfig) -> Iterator[Engine]:
    """
    Provide an initialized in-memory database engine.

    Yields:
        Engine with all tables created; disposed after the test.
    """
    database_engine: Engine = create_database_engine(storage_config)
    init_db(database_engine)
    yield database_engine
    database_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    """Provide a sessionmaker bound to the test engine."""
    return create_session_factory(engine)


@pytest.fixture
def event_store(
    session_factory: sessionmaker[Session],
    storage_config: StorageConfig,
) -> SqlEventStore:
    return SqlEventStore(session_factory, storage_config.insert_chunk_size)


@pytest.fixture
def control_store(session_factory: sessionmaker[Session]) -> SqlControlStore:
    return SqlControlStore(session_factory)


@pytest.fixture
def reference_store(session_factory: sessionmaker[Session]) -> SqlReferenceStore:
    return SqlReferenceStore(session_factory)


@pytest.fixture
def credential_store(session_factory: sessionmaker[Session]) -> SqlCredentialStore:
    return SqlCredentialStore(session_factory)


# =============================================================================
# Retry / Time Fixtures
# =============================================================================


@pytest.fixture
def recorded_sleeps() -> list[float]:
    """Collects every pause requested through the no_sleep fixture."""
    return []


@pytest.fixture
def no_sleep(recorded_sleeps: list[float]) -> Callable[[float], None]:
    """
    Provide a sleep replacement that records instead of waiting.

    Returns:
        Callable appending the requested seconds to recorded_sleeps.
    """
    return recorded_sleeps.append


@pytest.fixture
def retry_executor(no_sleep: Callable[[float], None]) -> RetryExecutor:
    """RetryExecutor with three attempts and recorded (not real) sleeps."""
    return RetryExecutor(RetryPolicy(max_attempts=3), sleep=no_sleep)


@pytest.fixture
def fixed_now() -> datetime:
    """A fixed 'current time' for time-dependent assertions."""
    return datetime(2024, 3, 16, 12, 0, 0, tzinfo=UTC)


# =============================================================================
# Event Fixtures
# =============================================================================


@pytest.fixture
def event_factory() -> Callable[..., ProviderEvent]:
    """
    Provide a factory building provider events from PascalCase payloads.

    The factory mirrors what the provider returns, including a field the
    models do not type (TotalOccurances) so raw payload handling is covered.

    Returns:
        Callable(event_id, start=..., driver_id=..., asset_id=...,
        event_type_id=...) -> ProviderEvent.
    """

    def build_event(
        event_id: int,
        start: datetime | None = None,
        driver_id: int | None = 11,
        asset_id: int | None = 22,
        event_type_id: int | None = 33,
    ) -> ProviderEvent:
        start_time: datetime = start or datetime(2024, 3, 15, 8, 30, tzinfo=UTC)
        return ProviderEvent.model_validate(
            {
                'EventId': event_id,
                'DriverId': driver_id if driver_id is not None else 0,
                'AssetId': asset_id if asset_id is not None else 0,
                'EventTypeId': event_type_id if event_type_id is not None else 0,
                'StartDateTime': start_time.isoformat(),
                'StartPosition': {
                    'Latitude': -33.92,
                    'Longitude': 18.42,
                    'SpeedKilometresPerHour': 64.0,
                    'FormattedAddress': 'N1, Cape Town',
                },
                'TotalOccurances': 1,
            }
        )

    return build_event


# =============================================================================
# HTTP Response Fixtures
# =============================================================================


@pytest.fixture
def mock_response_factory() -> Callable[..., Mock]:
    """
    Provide a factory for Mock httpx.Response objects.

    Returns:
        Callable(status_code, json_body=None, headers=None, text='') -> Mock.
        A json_body produces matching content/text; otherwise json() raises.
    """

    def build_response(
        status_code: int = 200,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        text: str = '',
    ) -> Mock:
        response = Mock(spec=httpx.Response)
        response.status_code = status_code
        response.is_success = 200 <= status_code < 300  # noqa: PLR2004
        response.headers = headers or {}

        if json_body is not None:
            serialized: str = json.dumps(json_body)
            response.content = serialized.encode('utf-8')
            response.text = serialized
            response.json.return_value = json_body
        else:
            response.content = text.encode('utf-8')
            response.text = text
            response.json.side_effect = ValueError('Expecting value')

        return response

    return build_response
