"""
Configuration Package for Fleet Event Sync.

Exposes the configuration models and the loader function.
"""

from fleet_event_sync.config.config_models import (
    BackfillConfig,
    IncrementalConfig,
    IngestionConfig,
    LoggingConfig,
    ProviderConfig,
    QueueConfig,
    StorageConfig,
)
from fleet_event_sync.config.loader import load_config

__all__: list[str] = [
    'BackfillConfig',
    'IncrementalConfig',
    'IngestionConfig',
    'LoggingConfig',
    'ProviderConfig',
    'QueueConfig',
    'StorageConfig',
    'load_config',
]
