"""Proximity arbitration.

Answers "which beacons are near this agent" when the same beacon can be
in range of several agents at once: a beacon is only reported for an
agent if no other agent currently holds it at a strictly smaller
proximity.  On an exact tie both agents keep it; which one a consumer
treats as authoritative then depends on query order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from beaconpresence.directory import AgentDirectory, BeaconDirectory
from beaconpresence.models.agent import Agent, Beacon
from beaconpresence.models.detection import BeaconKey
from beaconpresence.state.store import PresenceStore

_logger = logging.getLogger(__name__)


class ProximityArbiter:
    """Resolve the beacons effectively near one agent.

    Reads :class:`~beaconpresence.state.store.PresenceStore` one agent at a
    time under that agent's lock, so a query may see other agents either
    before or after a concurrently running cycle.
    """

    def __init__(self, store: PresenceStore, agents: AgentDirectory, beacons: BeaconDirectory) -> None:
        self._store = store
        self._agents = agents
        self._beacons = beacons

    async def resolve_keys(self, agent_id: str) -> list[BeaconKey]:
        """Beacon keys in range of *agent_id* that no other agent holds closer."""
        own = {entry.beacon_key: entry.last_proximity for entry in await self._store.snapshot(agent_id)}
        if not own:
            return []

        excluded: set[BeaconKey] = set()
        for other_id in sorted(self._store.agent_ids()):
            if other_id == agent_id:
                continue
            for other in await self._store.snapshot(other_id):
                proximity = own.get(other.beacon_key)
                if proximity is not None and other.last_proximity < proximity:
                    _logger.debug(
                        "Beacon %s closer to agent=%s (%.3f) than agent=%s (%.3f)",
                        other.beacon_key,
                        other_id,
                        other.last_proximity,
                        agent_id,
                        proximity,
                    )
                    excluded.add(other.beacon_key)

        return [key for key in own if key not in excluded]

    async def resolve_for_agent(
        self,
        agent_id: str | None = None,
        *,
        location: str | None = None,
    ) -> list[Beacon]:
        """Beacon records near an agent, addressed by custom id or by location.

        Beacons the directory cannot resolve are logged and left out.
        An unknown agent yields an empty list.
        """
        return [beacon async for beacon in self.iter_for_agent(agent_id, location=location)]

    async def iter_for_agent(
        self,
        agent_id: str | None = None,
        *,
        location: str | None = None,
    ) -> AsyncIterator[Beacon]:
        """Streaming form of :meth:`resolve_for_agent` over one snapshot of keys."""
        agent = await self._find_agent(agent_id, location)
        if agent is None:
            return
        keys = await self.resolve_keys(agent.custom_id)
        if not keys:
            return

        lookups = await asyncio.gather(
            *(self._beacons.find_by_unique_key(key) for key in keys),
            return_exceptions=True,
        )
        for key, result in zip(keys, lookups, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                _logger.warning("Beacon lookup failed for key=%s", key, exc_info=result)
                continue
            if result is None:
                _logger.warning("Beacon %s is in range of agent=%s but not registered", key, agent.custom_id)
                continue
            yield result

    async def _find_agent(self, agent_id: str | None, location: str | None) -> Agent | None:
        if agent_id is None and location is None:
            raise ValueError("agent_id or location is required")
        try:
            if agent_id is not None:
                agent = await self._agents.find_by_custom_id(agent_id)
            else:
                assert location is not None  # noqa: S101
                agent = await self._agents.find_by_location(location)
        except Exception:
            _logger.warning("Agent lookup failed id=%s location=%r", agent_id, location, exc_info=True)
            return None
        if agent is None:
            _logger.info("No agent registered for id=%s location=%r", agent_id, location)
        return agent
