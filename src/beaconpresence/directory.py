"""Agent and beacon directories.

The engine only reads reference data from these (plus the heartbeat
write-back).  Implementations:

* ``Http*Directory`` talk to the REST service that owns the records.
* ``InMemory*Directory`` hold records in process, for embedding and tests.
* :class:`CachedAgentDirectory` puts a TTL cache in front of any agent
  directory so a busy ingest loop does not list agents on every cycle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any, Protocol
from urllib.parse import quote

from pydantic import ValidationError

from beaconpresence._constants import AGENTS_PATH, BEACON_BY_KEY_PATH
from beaconpresence._transport import Transport
from beaconpresence.models.agent import Agent, Beacon
from beaconpresence.models.detection import BeaconKey

_logger = logging.getLogger(__name__)


class AgentDirectory(Protocol):
    async def find_by_custom_id(self, custom_id: str) -> Agent | None: ...

    async def find_by_location(self, location: str) -> Agent | None: ...

    async def find_all(self) -> list[Agent]: ...

    async def update(self, agent: Agent) -> Agent: ...


class BeaconDirectory(Protocol):
    async def find_by_unique_key(self, key: BeaconKey) -> Beacon | None: ...


def _parse_agents(payload: Any) -> list[Agent]:
    if not isinstance(payload, list):
        return []
    agents: list[Agent] = []
    for item in payload:
        try:
            agents.append(Agent.model_validate(item))
        except ValidationError:
            _logger.debug("Skipping unparseable agent record: %r", item, exc_info=True)
    return agents


def _first_matching(agents: Iterable[Agent], predicate: Callable[[Agent], bool]) -> Agent | None:
    return next((agent for agent in agents if predicate(agent)), None)


# ------------------------------------------------------------------
# HTTP
# ------------------------------------------------------------------


class HttpAgentDirectory:
    """Agent directory backed by ``GET/PUT /api/agents``."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    async def find_all(self) -> list[Agent]:
        return _parse_agents(await self._transport.get_json(AGENTS_PATH))

    async def find_by_custom_id(self, custom_id: str) -> Agent | None:
        return _first_matching(await self.find_all(), lambda agent: agent.custom_id == custom_id)

    async def find_by_location(self, location: str) -> Agent | None:
        return _first_matching(await self.find_all(), lambda agent: agent.location == location)

    async def update(self, agent: Agent) -> Agent:
        # The service addresses stored agents by their database id when it has one.
        record_id = str(agent.raw.get("_id") or agent.custom_id)
        response = await self._transport.put_json(f"{AGENTS_PATH}/{quote(record_id, safe='')}", agent.to_payload())
        if isinstance(response, dict):
            try:
                return Agent.model_validate(response)
            except ValidationError:
                _logger.debug("Agent update response not parseable; keeping local copy", exc_info=True)
        return agent


class HttpBeaconDirectory:
    """Beacon directory backed by ``GET /api/beacons/uniquekey/{uuid:major:minor}``."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    async def find_by_unique_key(self, key: BeaconKey) -> Beacon | None:
        payload = await self._transport.get_json(f"{BEACON_BY_KEY_PATH}/{quote(str(key), safe='')}")
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not isinstance(payload, dict):
            return None
        return Beacon.model_validate(payload)


# ------------------------------------------------------------------
# In memory
# ------------------------------------------------------------------


class InMemoryAgentDirectory:
    """Agent directory over a plain dict keyed by custom id."""

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self._agents: dict[str, Agent] = {agent.custom_id: agent for agent in agents}

    def add(self, agent: Agent) -> None:
        self._agents[agent.custom_id] = agent

    async def find_all(self) -> list[Agent]:
        return list(self._agents.values())

    async def find_by_custom_id(self, custom_id: str) -> Agent | None:
        return self._agents.get(custom_id)

    async def find_by_location(self, location: str) -> Agent | None:
        return _first_matching(self._agents.values(), lambda agent: agent.location == location)

    async def update(self, agent: Agent) -> Agent:
        self._agents[agent.custom_id] = agent
        return agent


class InMemoryBeaconDirectory:
    def __init__(self, beacons: Iterable[Beacon] = ()) -> None:
        self._beacons: dict[BeaconKey, Beacon] = {beacon.unique_key: beacon for beacon in beacons}

    def add(self, beacon: Beacon) -> None:
        self._beacons[beacon.unique_key] = beacon

    async def find_by_unique_key(self, key: BeaconKey) -> Beacon | None:
        return self._beacons.get(key)


# ------------------------------------------------------------------
# Caching
# ------------------------------------------------------------------


class CachedAgentDirectory:
    """TTL cache over another agent directory.

    The full agent list is fetched at most once per *ttl* seconds and all
    lookups are answered from it; concurrent refreshes collapse into one
    fetch.  Updates write through and refresh the cached record.  A *ttl*
    of ``0`` disables caching.
    """

    def __init__(
        self,
        inner: AgentDirectory,
        *,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inner = inner
        self._ttl = ttl
        self._clock = clock
        self._agents: list[Agent] | None = None
        self._fetched_at = 0.0
        self._refresh_lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._agents = None

    async def find_all(self) -> list[Agent]:
        if self._ttl <= 0:
            return await self._inner.find_all()
        async with self._refresh_lock:
            now = self._clock()
            if self._agents is None or (now - self._fetched_at) >= self._ttl:
                self._agents = await self._inner.find_all()
                self._fetched_at = now
            return list(self._agents)

    async def find_by_custom_id(self, custom_id: str) -> Agent | None:
        return _first_matching(await self.find_all(), lambda agent: agent.custom_id == custom_id)

    async def find_by_location(self, location: str) -> Agent | None:
        return _first_matching(await self.find_all(), lambda agent: agent.location == location)

    async def update(self, agent: Agent) -> Agent:
        updated = await self._inner.update(agent)
        if self._agents is not None:
            self._agents = [updated if cached.custom_id == updated.custom_id else cached for cached in self._agents]
        return updated
