"""Per-project serialization of pipeline operations."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache

import structlog

logger = structlog.get_logger()


class ProjectLocks:
    """One asyncio.Lock per project id.

    Operations on the same project wait for each other; operations on
    different projects run concurrently.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, project_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(project_id, asyncio.Lock())
        if lock.locked():
            logger.info("project_busy_waiting", project_id=project_id)
        async with lock:
            yield

    def discard(self, project_id: int) -> None:
        """Forget the lock of a deleted project."""
        self._locks.pop(project_id, None)

    def is_locked(self, project_id: int) -> bool:
        lock = self._locks.get(project_id)
        return lock is not None and lock.locked()


@lru_cache
def get_project_locks() -> ProjectLocks:
    """Process-wide lock registry."""
    return ProjectLocks()
