"""High-level async presence engine."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict
from typing import Any

import aiohttp
import paho.mqtt.client as mqtt
from pydantic import ValidationError

from beaconpresence._constants import DETECTIONS_LOGGER_NAME
from beaconpresence._mqtt import MqttEventPublisher
from beaconpresence._redact import redact_for_log
from beaconpresence._transport import HttpTransport
from beaconpresence.arbiter import ProximityArbiter
from beaconpresence.classifier import CycleReport, EventClassifier
from beaconpresence.config import PresenceConfig
from beaconpresence.directory import (
    AgentDirectory,
    BeaconDirectory,
    CachedAgentDirectory,
    HttpAgentDirectory,
    HttpBeaconDirectory,
)
from beaconpresence.exceptions import PresenceError
from beaconpresence.models.agent import Beacon
from beaconpresence.models.detection import Detection
from beaconpresence.publisher import EventBus, EventPublisher, Subscriber
from beaconpresence.state.store import PresenceStore

_logger = logging.getLogger(__name__)
_detections_logger = logging.getLogger(DETECTIONS_LOGGER_NAME)


def detections_from_report(payload: Mapping[str, Any]) -> list[Detection]:
    """Parse an agent report envelope into detections.

    ``{"agentId": "...", "detections": [...]}``.  The envelope's agent id
    is stamped onto detections that carry none.  Unparseable detections
    are logged and skipped so one bad reading cannot sink the report.
    """
    agent_id = payload.get("agentId")
    raw_detections = payload.get("detections")
    if not isinstance(raw_detections, list):
        return []

    detections: list[Detection] = []
    for raw in raw_detections:
        if not isinstance(raw, Mapping):
            _logger.debug("Skipping non-object detection: %r", raw)
            continue
        item = dict(raw)
        if agent_id and not item.get("agentId"):
            item["agentId"] = agent_id
        try:
            detections.append(Detection.model_validate(item))
        except ValidationError:
            _logger.warning("Skipping invalid detection from agent=%s: %r", agent_id, raw, exc_info=True)
    return detections


class PresenceEngine:
    """Live beacon presence tracking.

    Owns one :class:`~beaconpresence.state.store.PresenceStore` for its
    lifetime.  Presence knowledge is not persisted: after a restart the
    first reading of every beacon is an ``enter``.

    Usage::

        async with PresenceEngine(PresenceConfig.from_env()) as engine:
            engine.subscribe(print)
            await engine.ingest_report(payload)
            beacons = await engine.beacons_near_location("entry way")

    Directories and the downstream publisher may be injected; otherwise
    HTTP directories (and, when enabled, an MQTT publisher) are built from
    *config* on entry.
    """

    def __init__(
        self,
        config: PresenceConfig | None = None,
        *,
        agents: AgentDirectory | None = None,
        beacons: BeaconDirectory | None = None,
        publisher: EventPublisher | None = None,
        session: aiohttp.ClientSession | None = None,
        mqtt_client_factory: Callable[[str], mqtt.Client] | None = None,
    ) -> None:
        self._config = config or PresenceConfig()
        self._external_session = session is not None
        self._http_session = session
        self._agents_override = agents
        self._beacons_override = beacons
        self._publisher_override = publisher
        self._mqtt_client_factory = mqtt_client_factory
        self._mqtt: MqttEventPublisher | None = None
        self._store = PresenceStore()
        self._bus = EventBus()
        self._classifier: EventClassifier | None = None
        self._arbiter: ProximityArbiter | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> PresenceEngine:
        try:
            await self._start()
        except BaseException:
            await self._shutdown()
            raise
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._classifier is not None:
            await self._classifier.flush_heartbeats()
        await self._shutdown()

    async def _start(self) -> None:
        agents = self._agents_override
        beacons = self._beacons_override
        if agents is None or beacons is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            transport = HttpTransport(self._config, self._http_session)
            if agents is None:
                agents = HttpAgentDirectory(transport)
            if beacons is None:
                beacons = HttpBeaconDirectory(transport)
        if self._config.agent_cache_ttl > 0:
            agents = CachedAgentDirectory(agents, ttl=self._config.agent_cache_ttl)

        downstream = self._publisher_override
        if downstream is None and self._config.mqtt_enabled:
            mqtt_kwargs: dict[str, Any] = {}
            if self._mqtt_client_factory is not None:
                mqtt_kwargs["client_factory"] = self._mqtt_client_factory
            self._mqtt = MqttEventPublisher.from_config(self._config, **mqtt_kwargs)
            await asyncio.to_thread(self._mqtt.start)
            downstream = self._mqtt

        self._bus.downstream = downstream

        self._classifier = EventClassifier(
            self._store,
            agents,
            self._bus,
            event_type=self._config.event_type,
            heartbeat_enabled=self._config.heartbeat_enabled,
        )
        self._arbiter = ProximityArbiter(self._store, agents, beacons)
        _logger.debug("Presence engine started config=%s", self._config_for_log())

    async def _shutdown(self) -> None:
        publisher = self._mqtt
        self._mqtt = None
        try:
            if publisher is not None:
                await asyncio.to_thread(publisher.stop)
        finally:
            if not self._external_session and self._http_session is not None:
                await self._http_session.close()
                self._http_session = None
            self._classifier = None
            self._arbiter = None
            self._bus.downstream = None
            self._store.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_classifier(self) -> EventClassifier:
        if self._classifier is None:
            raise PresenceError("Engine not started. Use 'async with PresenceEngine(...) as engine:'")
        return self._classifier

    def _require_arbiter(self) -> ProximityArbiter:
        if self._arbiter is None:
            raise PresenceError("Engine not started. Use 'async with PresenceEngine(...) as engine:'")
        return self._arbiter

    def _config_for_log(self) -> dict[str, Any]:
        return redact_for_log(asdict(self._config))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def store(self) -> PresenceStore:
        return self._store

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Receive every classified event as ``subscriber(event_type, event)``."""
        return self._bus.subscribe(subscriber)

    async def ingest_batch(self, detections: Iterable[Detection]) -> CycleReport:
        """Classify one reporting cycle of detections."""
        return await self._require_classifier().ingest_batch(list(detections))

    async def ingest_report(self, payload: Mapping[str, Any]) -> CycleReport:
        """Classify a raw agent report (``{"agentId": ..., "detections": [...]}``)."""
        if self._config.log_detections:
            _detections_logger.info("%s", json.dumps(payload, default=str, separators=(",", ":")))
        return await self.ingest_batch(detections_from_report(payload))

    async def beacons_near_agent(self, agent_id: str) -> list[Beacon]:
        return await self._require_arbiter().resolve_for_agent(agent_id)

    async def beacons_near_location(self, location: str) -> list[Beacon]:
        """Beacons effectively in range of the agent registered at *location*."""
        return await self._require_arbiter().resolve_for_agent(location=location)
