from .records import StateRecord, StateDocument, STATE_FORMAT_VERSION
from .locks import UnitLockManager
from .store import (
    StateStore,
    InMemoryStateStore,
    load_state_snapshot,
    export_state,
    import_state,
)
from .mongodb import MongoStateStore, MongoStateConfig
from .factory import create_state_store, clear_store_cache

__all__ = [
    'StateRecord',
    'StateDocument',
    'STATE_FORMAT_VERSION',
    'UnitLockManager',
    'StateStore',
    'InMemoryStateStore',
    'load_state_snapshot',
    'export_state',
    'import_state',
    'MongoStateStore',
    'MongoStateConfig',
    'create_state_store',
    'clear_store_cache',
]
