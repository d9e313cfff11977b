# fleet_event_sync/models/__init__.py

from fleet_event_sync.models.provider_responses import (
    EventBatch,
    EventPosition,
    ProviderDriver,
    ProviderEvent,
    ProviderEventType,
    ProviderVehicle,
    TokenResponse,
)
from fleet_event_sync.models.request_models import (
    ApiResponse,
    HTTPMethod,
    ProviderEndpoint,
    ProviderEndpoints,
    RateLimitInfo,
    RequestSpec,
)

__all__: list[str] = [
    'ApiResponse',
    'EventBatch',
    'EventPosition',
    'HTTPMethod',
    'ProviderDriver',
    'ProviderEndpoint',
    'ProviderEndpoints',
    'ProviderEvent',
    'ProviderEventType',
    'ProviderVehicle',
    'RateLimitInfo',
    'RequestSpec',
    'TokenResponse',
]
