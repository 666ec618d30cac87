# src/infraplan/state/factory.py

from typing import Any, Dict

from .mongodb import MongoStateConfig, MongoStateStore
from .store import InMemoryStateStore, StateStore

_STORE_CACHE: Dict[tuple, StateStore] = {}


def _freeze_cfg(d: Dict[str, Any]) -> tuple:
    return tuple(sorted(d.items()))


def create_state_store(config: Dict[str, Any]) -> StateStore:
    """
    Factory function to create a state store from a configuration dictionary.

    Parameters:
    -----------
    config : Dict[str, Any]
        The backend name plus its parameters.
        Example: {"backend": "memory"}
        Example: {"backend": "mongodb", "uri": "mongodb://db:27017", "collection": "prod"}

    Returns:
    --------
    StateStore
        The same instance is returned for identical configurations, so
        planning and apply in one process share one store.

    Raises:
    -------
    ValueError
        If the backend is unknown.
    """
    backend = config.get("backend", "memory").lower()
    key = (backend, _freeze_cfg({k: v for k, v in config.items() if k != "backend"}))

    if key in _STORE_CACHE:
        return _STORE_CACHE[key]

    if backend == "memory":
        inst: StateStore = InMemoryStateStore()

    elif backend == "mongodb":
        mongo_config = config.copy(); mongo_config.pop("backend", None)
        inst = MongoStateStore(MongoStateConfig(**mongo_config))

    else:
        raise ValueError(f"Unknown state backend: '{backend}'")

    _STORE_CACHE[key] = inst
    return inst


def clear_store_cache() -> None:
    _STORE_CACHE.clear()
