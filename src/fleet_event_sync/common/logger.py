# fleet_event_sync/common/logger.py
"""
Logging configuration for the fleet_event_sync package.

All modules create their logger with `logging.getLogger(__name__)`, so
configuring the 'fleet_event_sync' package logger once is enough for the
workers, the client and the stores to share one format and destination.
"""

import logging
import sys
from pathlib import Path
from typing import Final

from fleet_event_sync.config import LoggingConfig

__all__: list[str] = ['PACKAGE_LOGGER_NAME', 'setup_logger']

PACKAGE_LOGGER_NAME: Final[str] = 'fleet_event_sync'

LOG_FORMAT: Final[str] = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
LOG_DATE_FORMAT: Final[str] = '%Y-%m-%d %H:%M:%S'


def _build_file_handler(
    log_file_path: Path,
    file_level: int,
    formatter: logging.Formatter,
) -> logging.FileHandler:
    """Create an append-mode UTF-8 file handler, creating parent directories."""
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(
        filename=str(log_file_path),
        mode='a',
        encoding='utf-8',
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(file_level)
    return file_handler


def setup_logger(
    logging_level: int | None = None,
    config: LoggingConfig | None = None,
) -> logging.Logger:
    """
    Configure the package-level logger.

    Idempotent: existing handlers are removed before new ones are attached, so
    a worker process can call this again after reloading its configuration
    without duplicating output.

    Args:
        logging_level: Console level used when no config is given.
            Defaults to logging.INFO.
        config: Validated logging configuration. When provided, console level
            comes from config.console_level and a file handler is attached if
            config.file_path is set; logging_level is ignored.

    Returns:
        The 'fleet_event_sync' logger.

    Example:
        >>> setup_logger(logging_level=logging.DEBUG)
        >>> setup_logger(config=load_config().logging)
    """
    package_logger: logging.Logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    package_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if config is not None:
        console_level: int = config.get_console_level_int()
    else:
        console_level = logging_level if logging_level is not None else logging.INFO

    console_handler: logging.Handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(console_level)
    package_logger.addHandler(console_handler)

    file_level: int | None = config.get_file_level_int() if config else None

    if config is not None and config.file_path is not None and file_level is not None:
        package_logger.addHandler(
            _build_file_handler(config.file_path, file_level, formatter)
        )
        # The console may be quieter than INFO, so announce the file on stderr.
        if console_level <= logging.INFO:
            print(f'Logging to file: {config.file_path}', file=sys.stderr)

    # The logger must pass records down to its most verbose handler.
    effective_level: int = console_level
    if file_level is not None:
        effective_level = min(console_level, file_level)

    package_logger.setLevel(effective_level)
    return package_logger
