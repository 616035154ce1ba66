"""Keyed writer sections.

A ``LockArena`` hands out one ``asyncio.Lock`` per key (room id, workspace id,
user id). Entries are created on first use and discarded once no coroutine
holds or waits on them, so the arena only ever holds locks for keys with
in-flight work.

Lock order: workspace before room; user before room. No code path holding a
room lock acquires a user or workspace lock.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class LockArena:
    """Arena of per-key asyncio locks."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the exclusive section for ``key``."""
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)

    def is_held(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
