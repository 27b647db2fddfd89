"""
Workspace Lock
==============
At most one active poll/fix pair per working tree.

Locks are keyed by the tree's real path, so two spellings of the same
checkout share one lock while separate checkouts run independently.
In-process only: the registry lives on one event loop.
"""
import os
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from ci_engine.core.errors import WorkspaceBusyError

logger = logging.getLogger(__name__)


class WorkspaceLockRegistry:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def key(workspace_path: str) -> str:
        return os.path.realpath(workspace_path)

    def is_locked(self, workspace_path: str) -> bool:
        lock = self._locks.get(self.key(workspace_path))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, workspace_path: str) -> AsyncIterator[None]:
        """
        Hold the tree's lock for the duration of the block.

        Raises
        ------
        WorkspaceBusyError
            Another run already holds this tree.
        """
        key = self.key(workspace_path)
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            raise WorkspaceBusyError(
                f"Working tree {key} is already in use by another run",
                details={"workspace": key},
            )
        await lock.acquire()
        logger.debug("Acquired workspace lock %s", key)
        try:
            yield
        finally:
            lock.release()
            logger.debug("Released workspace lock %s", key)


# Shared by every Orchestrator in the process
workspace_locks = WorkspaceLockRegistry()
