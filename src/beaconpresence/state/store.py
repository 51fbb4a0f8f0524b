"""In-memory presence store.

This is the only component that holds presence state.  One
:class:`PresenceEntry` exists per (agent, beacon) pair currently judged
in range; an agent with no entries is not tracked at all.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from beaconpresence.models.detection import BeaconKey


class PresenceEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    beacon_key: BeaconKey
    last_seen_time: datetime
    last_proximity: float


class PresenceStore:
    """Per-agent presence sets guarded by one lock per agent.

    Mutating methods are synchronous and never suspend, so callers that
    hold :meth:`locked` for an agent get an atomic view of that agent's
    set.  Different agents never share a lock.
    """

    def __init__(self) -> None:
        self._agents: dict[str, dict[BeaconKey, PresenceEntry]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, agent_id: str) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[agent_id] = lock
        return lock

    @contextlib.asynccontextmanager
    async def locked(self, agent_id: str) -> AsyncIterator[None]:
        """Hold the single-writer lock for *agent_id*."""
        async with self._lock(agent_id):
            yield

    def get(self, agent_id: str) -> list[PresenceEntry]:
        """Entries for an agent in first-seen order (empty if untracked)."""
        entries = self._agents.get(agent_id)
        if entries is None:
            return []
        return list(entries.values())

    async def snapshot(self, agent_id: str) -> list[PresenceEntry]:
        """Like :meth:`get`, but waits out any in-flight write for the agent."""
        async with self._lock(agent_id):
            return self.get(agent_id)

    def upsert(self, agent_id: str, beacon_key: BeaconKey, proximity: float, time: datetime) -> PresenceEntry:
        entries = self._agents.get(agent_id)
        if entries is None:
            entries = {}
            self._agents[agent_id] = entries
        entry = PresenceEntry(beacon_key=beacon_key, last_seen_time=time, last_proximity=proximity)
        entries[beacon_key] = entry
        return entry

    def remove(self, agent_id: str, beacon_key: BeaconKey) -> PresenceEntry | None:
        """Delete one entry.  An agent left with nothing is dropped."""
        entries = self._agents.get(agent_id)
        if entries is None:
            return None
        removed = entries.pop(beacon_key, None)
        if not entries:
            del self._agents[agent_id]
        return removed

    def replace(self, agent_id: str, entries: list[PresenceEntry]) -> None:
        """Set an agent's entries wholesale.  An empty list drops the agent."""
        if not entries:
            self._agents.pop(agent_id, None)
            return
        self._agents[agent_id] = {entry.beacon_key: entry for entry in entries}

    def drop_agent(self, agent_id: str) -> list[PresenceEntry]:
        """Forget an agent entirely, returning what it was tracking."""
        entries = self._agents.pop(agent_id, None)
        if entries is None:
            return []
        return list(entries.values())

    def agent_ids(self) -> set[str]:
        return set(self._agents)

    def beacon_keys(self, agent_id: str) -> set[BeaconKey]:
        entries = self._agents.get(agent_id)
        if entries is None:
            return set()
        return set(entries)

    def clear(self) -> None:
        self._agents.clear()

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._agents.values())
