# fleet_event_sync/storage/__init__.py

from fleet_event_sync.storage.database import (
    create_database_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from fleet_event_sync.storage.interfaces import (
    ControlStore,
    CredentialStore,
    EventStore,
    LoadSnapshot,
    ReferenceIds,
    ReferenceStore,
    StoredCredential,
)
from fleet_event_sync.storage.stores import (
    SqlControlStore,
    SqlCredentialStore,
    SqlEventStore,
    SqlReferenceStore,
)

__all__: list[str] = [
    'ControlStore',
    'CredentialStore',
    'EventStore',
    'LoadSnapshot',
    'ReferenceIds',
    'ReferenceStore',
    'SqlControlStore',
    'SqlCredentialStore',
    'SqlEventStore',
    'SqlReferenceStore',
    'StoredCredential',
    'create_database_engine',
    'create_session_factory',
    'init_db',
    'session_scope',
]
