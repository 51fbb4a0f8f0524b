"""Detection classification.

Turns one reporting cycle's detections into ``enter`` / ``alive`` /
``exit`` events and keeps :class:`~beaconpresence.state.store.PresenceStore`
in step with them.

Per cycle:

1. Detections are grouped by agent; detections without an agent are dropped.
2. Each reporting agent is classified in its own task.  Decisions are made
   against the agent's presence set as it was at cycle start, so a beacon
   reported twice in one batch yields one event (the later reading wins).
   Beacons the agent tracked but did not report this cycle exit.
3. Agents tracked before the cycle that reported nothing exit all their
   beacons and are dropped.
4. Agent heartbeats are pushed to the directory in a background task,
   best-effort; the cycle does not wait for them.  Heartbeat writes from
   consecutive cycles run in order.

A failure while classifying one agent is logged and recorded in the
returned :class:`CycleReport`; the other agents are unaffected.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from beaconpresence._constants import DETECTION_EVENT_TYPE
from beaconpresence.directory import AgentDirectory
from beaconpresence.models.detection import BeaconKey, Detection
from beaconpresence.publisher import EventPublisher
from beaconpresence.state.events import DetectionEvent, EventType
from beaconpresence.state.policy import classify_transition, in_range
from beaconpresence.state.store import PresenceStore

_logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentOutcome:
    """Result of classifying one agent within a cycle."""

    agent_id: str
    events: list[DetectionEvent] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class CycleReport:
    """Everything one call to :meth:`EventClassifier.ingest_batch` produced."""

    outcomes: list[AgentOutcome] = field(default_factory=list)

    @property
    def events(self) -> list[DetectionEvent]:
        return [event for outcome in self.outcomes for event in outcome.events]

    @property
    def failed_agents(self) -> list[str]:
        return [outcome.agent_id for outcome in self.outcomes if not outcome.ok]


@dataclass(slots=True)
class _Decision:
    key: BeaconKey
    detection: Detection
    event_type: EventType | None


def group_by_agent(detections: Iterable[Detection]) -> dict[str, list[Detection]]:
    """Partition detections by agent id, in first-seen order.

    Detections without an agent id cannot be attributed and are dropped.
    """
    grouped: dict[str, list[Detection]] = {}
    for detection in detections:
        if detection.agent_id is None:
            continue
        grouped.setdefault(detection.agent_id, []).append(detection)
    return grouped


class EventClassifier:
    """Classify detection batches into presence events.

    Parameters
    ----------
    store
        Presence state owned by the caller; the classifier is its only writer.
    agents
        Directory used for range thresholds and heartbeats.
    publisher
        Sink for every produced event.
    event_type
        Event type string handed to the publisher.
    heartbeat_enabled
        Whether to push ``lastSeen`` updates to the agent directory.
    """

    def __init__(
        self,
        store: PresenceStore,
        agents: AgentDirectory,
        publisher: EventPublisher,
        *,
        event_type: str = DETECTION_EVENT_TYPE,
        heartbeat_enabled: bool = True,
    ) -> None:
        self._store = store
        self._agents = agents
        self._publisher = publisher
        self._event_type = event_type
        self._heartbeat_enabled = heartbeat_enabled
        self._cycle_lock = asyncio.Lock()
        self._heartbeat_task: asyncio.Task[None] | None = None

    async def ingest_batch(self, detections: Sequence[Detection]) -> CycleReport:
        """Classify one reporting cycle.

        Cycles are serialized; a call waits for any cycle already running.
        """
        async with self._cycle_lock:
            grouped = group_by_agent(detections)
            previously_tracked = self._store.agent_ids()
            inactive = [agent_id for agent_id in sorted(previously_tracked) if agent_id not in grouped]

            _logger.debug(
                "Cycle start detections=%d active_agents=%d inactive_agents=%d",
                len(detections),
                len(grouped),
                len(inactive),
            )

            tasks = [self._run_agent(agent_id, batch) for agent_id, batch in grouped.items()]
            tasks.extend(self._run_inactive_agent(agent_id) for agent_id in inactive)

            if self._heartbeat_enabled and grouped:
                self._heartbeat_task = asyncio.create_task(self._update_heartbeats(grouped, self._heartbeat_task))
            outcomes = await asyncio.gather(*tasks)

            report = CycleReport(outcomes=list(outcomes))
            if report.failed_agents:
                _logger.warning("Cycle finished with failed agents: %s", report.failed_agents)
            _logger.debug("Cycle done events=%d", len(report.events))
            return report

    # ------------------------------------------------------------------
    # Per-agent classification
    # ------------------------------------------------------------------

    async def _run_agent(self, agent_id: str, detections: list[Detection]) -> AgentOutcome:
        try:
            events = await self._classify_agent(agent_id, detections)
        except Exception as exc:
            _logger.warning("Classification failed for agent=%s", agent_id, exc_info=True)
            return AgentOutcome(agent_id=agent_id, error=exc)
        await self._publish_all(events)
        return AgentOutcome(agent_id=agent_id, events=events)

    async def _run_inactive_agent(self, agent_id: str) -> AgentOutcome:
        try:
            async with self._store.locked(agent_id):
                dropped = self._store.drop_agent(agent_id)
        except Exception as exc:
            _logger.warning("Dropping inactive agent=%s failed", agent_id, exc_info=True)
            return AgentOutcome(agent_id=agent_id, error=exc)
        events = [
            DetectionEvent(agent_id=agent_id, beacon_key=entry.beacon_key, event_type=EventType.EXIT)
            for entry in dropped
        ]
        if events:
            _logger.debug("Agent %s went silent; %d beacon(s) exit", agent_id, len(events))
        await self._publish_all(events)
        return AgentOutcome(agent_id=agent_id, events=events)

    async def _classify_agent(self, agent_id: str, detections: list[Detection]) -> list[DetectionEvent]:
        threshold = await self._range_threshold(agent_id)

        async with self._store.locked(agent_id):
            prior = self._store.get(agent_id)
            prior_keys = [entry.beacon_key for entry in prior]
            was_present = set(prior_keys)

            # Later readings of the same beacon replace earlier ones.
            latest: dict[BeaconKey, Detection] = {}
            for detection in detections:
                latest[detection.beacon_key] = detection

            decisions = [
                _Decision(
                    key=key,
                    detection=detection,
                    event_type=classify_transition(
                        was_present=key in was_present,
                        is_in_range=in_range(detection.proximity, threshold),
                    ),
                )
                for key, detection in latest.items()
            ]
            missing = [key for key in prior_keys if key not in latest]

            applied = [decision for decision in decisions if decision.event_type is not None]
            events = [
                DetectionEvent(
                    agent_id=agent_id,
                    beacon_key=decision.key,
                    event_type=decision.event_type,
                    proximity=decision.detection.proximity,
                    time=decision.detection.time,
                )
                for decision in applied
            ]
            events.extend(
                DetectionEvent(agent_id=agent_id, beacon_key=key, event_type=EventType.EXIT) for key in missing
            )

            # All or nothing: a failed write restores the agent's prior set.
            try:
                for decision in applied:
                    if decision.event_type is EventType.EXIT:
                        self._store.remove(agent_id, decision.key)
                    else:
                        self._store.upsert(
                            agent_id, decision.key, decision.detection.proximity, decision.detection.time
                        )
                for key in missing:
                    self._store.remove(agent_id, key)
            except Exception:
                self._store.replace(agent_id, prior)
                raise

        return events

    async def _range_threshold(self, agent_id: str) -> float | None:
        """Registered range for the agent; lookup failures fail open (no range)."""
        try:
            agent = await self._agents.find_by_custom_id(agent_id)
        except Exception:
            _logger.warning(
                "Range lookup failed for agent=%s; treating all readings as in range",
                agent_id,
                exc_info=True,
            )
            return None
        if agent is None:
            _logger.debug("Agent %s not registered; no range filtering", agent_id)
            return None
        return agent.range_threshold

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _publish_all(self, events: list[DetectionEvent]) -> None:
        for event in events:
            try:
                await self._publisher.publish(self._event_type, event)
            except Exception:
                _logger.warning(
                    "Publishing %s event failed agent=%s beacon=%s",
                    event.event_type,
                    event.agent_id,
                    event.beacon_key,
                    exc_info=True,
                )

    async def flush_heartbeats(self) -> None:
        """Wait for heartbeat writes still in flight."""
        task = self._heartbeat_task
        if task is not None:
            await task

    async def _update_heartbeats(
        self,
        grouped: dict[str, list[Detection]],
        previous: asyncio.Task[None] | None,
    ) -> None:
        if previous is not None:
            await previous
        await asyncio.gather(*(self._update_heartbeat(agent_id, batch) for agent_id, batch in grouped.items()))

    async def _update_heartbeat(self, agent_id: str, detections: list[Detection]) -> None:
        most_recent = max(detections, key=lambda detection: detection.time)
        try:
            agent = await self._agents.find_by_custom_id(agent_id)
            if agent is None:
                _logger.warning("Heartbeat skipped: could not find agent with id=%s", agent_id)
                return
            if agent.last_seen is not None and most_recent.time <= agent.last_seen:
                return
            await self._agents.update(
                agent.model_copy(update={"last_seen": most_recent.time, "last_seen_by": most_recent.uuid})
            )
        except Exception:
            _logger.warning("Heartbeat update failed for agent=%s", agent_id, exc_info=True)
