"""
Per-unit read-write locks.

Any number of readers may hold a unit's lock at once; a writer is
exclusive. Locks are created lazily the first time a unit id is seen.
"""
from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class UnitLockManager:
    """Manages read-write locks keyed by unit id."""

    def __init__(self):
        self._reader_counts: Dict[str, int] = {}
        self._writer_active: Dict[str, bool] = {}
        self._condition: Dict[str, asyncio.Condition] = {}

    def _ensure(self, unit_id: str) -> asyncio.Condition:
        if unit_id not in self._condition:
            logger.debug(f"[LOCK] Initializing lock for '{unit_id}'")
            self._condition[unit_id] = asyncio.Condition()
            self._reader_counts[unit_id] = 0
            self._writer_active[unit_id] = False
        return self._condition[unit_id]

    async def acquire_read(self, unit_id: str) -> None:
        condition = self._ensure(unit_id)
        async with condition:
            while self._writer_active[unit_id]:
                await condition.wait()
            self._reader_counts[unit_id] += 1

    async def release_read(self, unit_id: str) -> None:
        condition = self._condition[unit_id]
        async with condition:
            self._reader_counts[unit_id] -= 1
            if self._reader_counts[unit_id] == 0:
                condition.notify_all()

    async def acquire_write(self, unit_id: str) -> None:
        condition = self._ensure(unit_id)
        async with condition:
            if self._reader_counts[unit_id] > 0 or self._writer_active[unit_id]:
                logger.debug(
                    f"[LOCK] Waiting for '{unit_id}' - "
                    f"readers={self._reader_counts[unit_id]}, writer_active={self._writer_active[unit_id]}"
                )
            while self._reader_counts[unit_id] > 0 or self._writer_active[unit_id]:
                await condition.wait()
            self._writer_active[unit_id] = True

    async def release_write(self, unit_id: str) -> None:
        condition = self._condition[unit_id]
        async with condition:
            self._writer_active[unit_id] = False
            condition.notify_all()

    @asynccontextmanager
    async def read(self, unit_id: str) -> AsyncIterator[None]:
        await self.acquire_read(unit_id)
        try:
            yield
        finally:
            await self.release_read(unit_id)

    @asynccontextmanager
    async def write(self, unit_id: str) -> AsyncIterator[None]:
        await self.acquire_write(unit_id)
        try:
            yield
        finally:
            await self.release_write(unit_id)

    def is_write_locked(self, unit_id: str) -> bool:
        return self._writer_active.get(unit_id, False)
