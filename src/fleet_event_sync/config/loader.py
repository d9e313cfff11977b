# fleet_event_sync/config/loader.py
"""
Configuration Loading Logic.

Bridges the YAML file on disk and the typed models in `config_models.py`.

Responsibilities:
    1.  File I/O: Locating and reading the configuration file.
    2.  Parsing: Converting YAML text into Python dictionaries.
    3.  Validation: Instantiating `IngestionConfig` to enforce types.
    4.  Error Handling: Logging low-level I/O, parsing and validation errors
        with context before re-raising.
"""

import logging
from pathlib import Path
from typing import Any, Final

import yaml
from pydantic import ValidationError

from fleet_event_sync.config.config_models import IngestionConfig

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = ['DEFAULT_CONFIG_PATH', 'load_config']

DEFAULT_CONFIG_PATH: Final[Path] = Path('config/ingestion_config.yaml')


def load_config(config_path: Path | str | None = None) -> IngestionConfig:
    """Load and validate the ingestion configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file. If None, defaults to
            'config/ingestion_config.yaml' relative to the working directory.

    Returns:
        Validated IngestionConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the YAML file is malformed.
        ValueError: If the file is empty or fails validation.

    Example:
        >>> config = load_config('config/ingestion_config.yaml')
        >>> config.provider.base_url
        'https://integrate.us.mixtelematics.com/api'
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        logger.debug('No config path provided, using default: %s', config_path)
    else:
        config_path = Path(config_path)

    logger.info('Loading ingestion configuration from: %s', config_path)

    if not config_path.exists():
        error_message: str = f'Configuration file not found: {config_path}'
        logger.error(error_message)
        raise FileNotFoundError(error_message)

    try:
        with Path.open(config_path, encoding='utf-8') as config_file:
            raw_config_data: Any = yaml.safe_load(config_file)
    except yaml.YAMLError as error:
        error_message = f'Failed to parse YAML configuration: {error}'
        logger.error(error_message)
        raise yaml.YAMLError(error_message) from error

    if not isinstance(raw_config_data, dict):
        error_message = (
            f'Configuration root must be a mapping, got {type(raw_config_data).__name__}'
        )
        logger.error(error_message)
        raise ValueError(error_message)

    try:
        validated_config: IngestionConfig = IngestionConfig.model_validate(
            raw_config_data
        )
    except ValidationError as error:
        error_message = f'Configuration validation failed: {error}'
        logger.error(error_message)
        raise ValueError(error_message) from error

    logger.info('Configuration loaded and validated successfully')
    return validated_config
