"""
talosvirt/deployment/state.py

Persistence for ClusterState. Writes go to a temporary file next to the target
and are moved into place, so an interrupted run leaves either the previous or
the new state, never a torn file. An asyncio lock serializes updates made by
concurrently running tasks.
"""

from __future__ import annotations

import asyncio
import os
from typing import Callable, Optional

import aiofiles
import aiofiles.os

from talosvirt.models.cluster_state import ClusterState


class ClusterStateStore:
    def __init__(self, path: str) -> None:
        self._path = path
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._state: Optional[ClusterState] = None

    def _guard(self) -> asyncio.Lock:
        """Lock bound to the running event loop."""
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    @property
    def path(self) -> str:
        return self._path

    async def load(self) -> ClusterState:
        """Read the state file; a missing file means a fresh cluster."""
        if not await aiofiles.os.path.exists(self._path):
            self._state = ClusterState()
            return self._state.model_copy(deep=True)

        async with aiofiles.open(self._path, "r", encoding="utf-8") as f:
            self._state = ClusterState.model_validate_json(await f.read())
        return self._state.model_copy(deep=True)

    async def snapshot(self) -> ClusterState:
        """Copy of the current in-memory state (loaded on first use)."""
        async with self._guard():
            if self._state is None:
                await self.load()
            assert self._state is not None
            return self._state.model_copy(deep=True)

    async def _write(self, state: ClusterState) -> None:
        os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
        tmp_path = f"{self._path}.tmp"
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(state.model_dump_json(indent=2))
        await aiofiles.os.replace(tmp_path, self._path)

    async def update(self, mutate: Callable[[ClusterState], None]) -> ClusterState:
        """Apply `mutate` to the current state and persist it immediately."""
        async with self._guard():
            if self._state is None:
                await self.load()
            assert self._state is not None
            mutate(self._state)
            await self._write(self._state)
            return self._state.model_copy(deep=True)

    async def clear(self) -> None:
        """Forget the cluster (teardown)."""
        async with self._guard():
            if await aiofiles.os.path.exists(self._path):
                await aiofiles.os.remove(self._path)
            self._state = ClusterState()
