# fleet_event_sync/storage/database.py
"""
Engine and session management for the relational store.

SQLite URLs get `check_same_thread=False` and, for in-memory databases, a
StaticPool so every session shares the one connection that holds the data.
Other backends (PostgreSQL in production) use SQLAlchemy's default pool.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fleet_event_sync.config import StorageConfig
from fleet_event_sync.storage.tables import Base

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'create_database_engine',
    'create_session_factory',
    'init_db',
    'session_scope',
]


def _is_in_memory_sqlite(database_url: str) -> bool:
    return database_url in ('sqlite://', 'sqlite:///:memory:') or (
        database_url.startswith('sqlite') and 'mode=memory' in database_url
    )


def create_database_engine(storage_config: StorageConfig) -> Engine:
    """Build an Engine for the configured database URL."""
    database_url: str = storage_config.database_url

    if database_url.startswith('sqlite'):
        engine_kwargs: dict[str, object] = {
            'connect_args': {'check_same_thread': False, 'timeout': 30},
            'echo': storage_config.echo,
        }
        if _is_in_memory_sqlite(database_url):
            engine_kwargs['poolclass'] = StaticPool
        engine: Engine = create_engine(database_url, **engine_kwargs)
    else:
        engine = create_engine(
            database_url,
            echo=storage_config.echo,
            pool_pre_ping=True,
        )

    logger.info('Created database engine for dialect %r', engine.dialect.name)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    # expire_on_commit=False lets stores return ORM-derived snapshots after commit.
    return sessionmaker(
        bind=engine, autoflush=False, expire_on_commit=False
    )


def init_db(engine: Engine) -> None:
    """Create any missing tables. Existing tables are left untouched."""
    Base.metadata.create_all(bind=engine)
    logger.info('Database tables ensured: %s', ', '.join(sorted(Base.metadata.tables)))


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    Transactional scope: commit on success, roll back and re-raise on error.

    Example:
        >>> with session_scope(factory) as session:
        ...     session.add(row)
    """
    session: Session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
