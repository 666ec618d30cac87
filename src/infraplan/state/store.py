# infraplan/state/store.py
from __future__ import annotations
import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Set, runtime_checkable

from .locks import UnitLockManager
from .records import StateDocument, StateRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class StateStore(Protocol):
    """
    Holds the last-applied StateRecord of every unit.

    Implementations must make each per-id write atomic; the executor writes
    different ids concurrently from its worker tasks.
    """

    async def get(self, unit_id: str) -> Optional[StateRecord]: ...
    async def put(self, unit_id: str, record: StateRecord) -> None: ...
    async def delete(self, unit_id: str) -> None: ...
    async def list_all(self) -> Set[str]: ...


class InMemoryStateStore:
    """Process-local store; per-unit locks serialize writes to the same id."""

    def __init__(self, records: Optional[Mapping[str, StateRecord]] = None):
        self._records: Dict[str, StateRecord] = dict(records or {})
        self._locks = UnitLockManager()

    async def get(self, unit_id: str) -> Optional[StateRecord]:
        async with self._locks.read(unit_id):
            return self._records.get(unit_id)

    async def put(self, unit_id: str, record: StateRecord) -> None:
        if record.unit_id != unit_id:
            raise ValueError(f"Record for {record.unit_id!r} stored under {unit_id!r}")
        async with self._locks.write(unit_id):
            self._records[unit_id] = record
        logger.debug(f"[STATE] put {unit_id}")

    async def delete(self, unit_id: str) -> None:
        async with self._locks.write(unit_id):
            self._records.pop(unit_id, None)
        logger.debug(f"[STATE] delete {unit_id}")

    async def list_all(self) -> Set[str]:
        return set(self._records)

    def __len__(self) -> int:
        return len(self._records)


async def load_state_snapshot(store: StateStore) -> Dict[str, StateRecord]:
    """Read every record into an immutable-by-convention dict for planning."""
    snapshot: Dict[str, StateRecord] = {}
    for unit_id in sorted(await store.list_all()):
        record = await store.get(unit_id)
        if record is not None:
            snapshot[unit_id] = record
    logger.debug(f"[STATE] Loaded snapshot with {len(snapshot)} records")
    return snapshot


async def export_state(store: StateStore) -> Dict[str, Any]:
    """Dump a store into a JSON-compatible dict."""
    snapshot = await load_state_snapshot(store)
    document = StateDocument(records=list(snapshot.values()))
    return document.model_dump(mode="json")


async def import_state(store: StateStore, data: Mapping[str, Any]) -> int:
    """
    Load a dump produced by export_state() into a store.

    Existing records with the same ids are overwritten; others are left
    untouched. Returns the number of records written.
    """
    document = StateDocument.model_validate(data)
    for record in document.records:
        await store.put(record.unit_id, record)
    logger.info(f"[STATE] Imported {len(document.records)} records")
    return len(document.records)
