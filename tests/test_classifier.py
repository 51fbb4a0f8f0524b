from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime

import pytest

from beaconpresence.classifier import EventClassifier, group_by_agent
from beaconpresence.directory import InMemoryAgentDirectory
from beaconpresence.models import Agent, BeaconKey, Detection
from beaconpresence.state.events import DetectionEvent, EventType
from beaconpresence.state.store import PresenceEntry, PresenceStore

K = "u:1:1"
K2 = "u:1:2"
_T0 = 1_700_000_000_000


def _detection(agent_id: str | None, key: str = K, proximity: float = 1.0, time: int = _T0) -> Detection:
    beacon = BeaconKey.parse(key)
    return Detection(
        agent_id=agent_id,
        uuid=beacon.uuid,
        major=beacon.major,
        minor=beacon.minor,
        proximity=proximity,
        time=time,
    )


def _summary(events: list[DetectionEvent]) -> list[tuple[str, str, EventType]]:
    return [(event.agent_id, str(event.beacon_key), event.event_type) for event in events]


@dataclass
class _RecordingPublisher:
    published: list[tuple[str, DetectionEvent]] = field(default_factory=list)

    async def publish(self, event_type: str, payload: DetectionEvent) -> None:
        self.published.append((event_type, payload))


class _FailingPublisher:
    async def publish(self, event_type: str, payload: DetectionEvent) -> None:
        raise RuntimeError("broker down")


class _FailingAgentDirectory(InMemoryAgentDirectory):
    async def find_by_custom_id(self, custom_id: str) -> Agent | None:
        raise ConnectionError("directory unreachable")


class _CountingAgentDirectory(InMemoryAgentDirectory):
    def __init__(self) -> None:
        super().__init__()
        self.updates: list[Agent] = []

    async def update(self, agent: Agent) -> Agent:
        self.updates.append(agent)
        return await super().update(agent)


class _BrokenUpdateDirectory(InMemoryAgentDirectory):
    async def update(self, agent: Agent) -> Agent:
        raise ConnectionError("write rejected")


class _SlowUpdateDirectory(InMemoryAgentDirectory):
    def __init__(self, agents: list[Agent]) -> None:
        super().__init__(agents)
        self.release = asyncio.Event()
        self.updates: list[Agent] = []

    async def update(self, agent: Agent) -> Agent:
        await self.release.wait()
        self.updates.append(agent)
        return await super().update(agent)


class _RejectingKeyStore(PresenceStore):
    def upsert(self, agent_id: str, beacon_key: BeaconKey, proximity: float, time: datetime) -> PresenceEntry:
        if beacon_key == BeaconKey.parse(K2):
            raise RuntimeError("write rejected")
        return super().upsert(agent_id, beacon_key, proximity, time)


class _ExplodingStore(PresenceStore):
    def upsert(self, agent_id: str, beacon_key: BeaconKey, proximity: float, time: datetime) -> PresenceEntry:
        if agent_id == "A2":
            raise RuntimeError("store corrupted")
        return super().upsert(agent_id, beacon_key, proximity, time)


def _classifier(
    store: PresenceStore | None = None,
    agents: InMemoryAgentDirectory | None = None,
    publisher: _RecordingPublisher | None = None,
    **kwargs: object,
) -> tuple[EventClassifier, PresenceStore, _RecordingPublisher]:
    store = store if store is not None else PresenceStore()
    publisher = publisher if publisher is not None else _RecordingPublisher()
    classifier = EventClassifier(
        store,
        agents if agents is not None else InMemoryAgentDirectory(),
        publisher,
        **kwargs,  # type: ignore[arg-type]
    )
    return classifier, store, publisher


def _ranged(range_threshold: float | None, custom_id: str = "A1") -> InMemoryAgentDirectory:
    return InMemoryAgentDirectory([Agent(custom_id=custom_id, range_threshold=range_threshold)])


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_sighting_enters() -> None:
    classifier, store, publisher = _classifier()

    report = await classifier.ingest_batch([_detection("A1", proximity=1.0)])

    assert _summary(report.events) == [("A1", K, EventType.ENTER)]
    assert report.events[0].proximity == 1.0
    assert report.events[0].time == datetime.fromtimestamp(_T0 / 1000, tz=UTC)
    [entry] = store.get("A1")
    assert entry.last_proximity == 1.0
    assert [event_type for event_type, _ in publisher.published] == ["com.makeandbuild.detection"]


@pytest.mark.asyncio
async def test_second_sighting_is_alive_and_updates_entry() -> None:
    classifier, store, _ = _classifier()
    await classifier.ingest_batch([_detection("A1", proximity=1.0)])

    report = await classifier.ingest_batch([_detection("A1", proximity=1.2, time=_T0 + 1000)])

    assert _summary(report.events) == [("A1", K, EventType.ALIVE)]
    [entry] = store.get("A1")
    assert entry.last_proximity == 1.2
    assert entry.last_seen_time == datetime.fromtimestamp((_T0 + 1000) / 1000, tz=UTC)


@pytest.mark.asyncio
async def test_leaving_range_exits() -> None:
    classifier, store, _ = _classifier(agents=_ranged(2.0))
    await classifier.ingest_batch([_detection("A1", proximity=1.0)])

    report = await classifier.ingest_batch([_detection("A1", proximity=2.5)])

    assert _summary(report.events) == [("A1", K, EventType.EXIT)]
    assert report.events[0].proximity == 2.5
    assert store.get("A1") == []


@pytest.mark.asyncio
async def test_out_of_range_first_sighting_is_ignored() -> None:
    classifier, store, publisher = _classifier(agents=_ranged(2.0))

    report = await classifier.ingest_batch([_detection("A1", proximity=2.5)])

    assert report.events == []
    assert publisher.published == []
    assert store.agent_ids() == set()


@pytest.mark.asyncio
async def test_threshold_is_inclusive() -> None:
    classifier, _, _ = _classifier(agents=_ranged(2.0))

    report = await classifier.ingest_batch([_detection("A1", proximity=2.0)])

    assert _summary(report.events) == [("A1", K, EventType.ENTER)]


@pytest.mark.asyncio
async def test_agent_without_threshold_accepts_any_proximity() -> None:
    classifier, _, _ = _classifier(agents=_ranged(None))

    report = await classifier.ingest_batch([_detection("A1", proximity=500.0)])

    assert _summary(report.events) == [("A1", K, EventType.ENTER)]


@pytest.mark.asyncio
async def test_silent_agent_exits_everything() -> None:
    classifier, store, publisher = _classifier()
    await classifier.ingest_batch([_detection("A1", key=K), _detection("A1", key=K2)])

    report = await classifier.ingest_batch([])

    assert _summary(report.events) == [("A1", K, EventType.EXIT), ("A1", K2, EventType.EXIT)]
    assert all(event.proximity is None for event in report.events)
    assert store.agent_ids() == set()
    assert len(publisher.published) == 4


@pytest.mark.asyncio
async def test_unreported_beacon_exits_while_agent_keeps_reporting() -> None:
    classifier, store, _ = _classifier()
    await classifier.ingest_batch([_detection("A1", key=K), _detection("A1", key=K2)])

    report = await classifier.ingest_batch([_detection("A1", key=K)])

    assert _summary(report.events) == [("A1", K, EventType.ALIVE), ("A1", K2, EventType.EXIT)]
    assert store.beacon_keys("A1") == {BeaconKey.parse(K)}


@pytest.mark.asyncio
async def test_other_agents_are_unaffected_by_a_silent_agent() -> None:
    classifier, store, _ = _classifier()
    await classifier.ingest_batch([_detection("A1")])

    report = await classifier.ingest_batch([_detection("A2")])

    assert sorted(_summary(report.events)) == [("A1", K, EventType.EXIT), ("A2", K, EventType.ENTER)]
    assert store.agent_ids() == {"A2"}


@pytest.mark.asyncio
async def test_replaying_a_batch_only_produces_alive() -> None:
    classifier, _, _ = _classifier()
    batch = [_detection("A1", key=K), _detection("A1", key=K2), _detection("A2", key=K)]
    await classifier.ingest_batch(batch)

    report = await classifier.ingest_batch(batch)

    assert {event.event_type for event in report.events} == {EventType.ALIVE}
    assert len(report.events) == 3


# ------------------------------------------------------------------
# Batch semantics
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_duplicate_reading_in_batch_yields_one_event_latest_wins() -> None:
    classifier, store, _ = _classifier()

    report = await classifier.ingest_batch([_detection("A1", proximity=1.0), _detection("A1", proximity=1.5)])

    assert _summary(report.events) == [("A1", K, EventType.ENTER)]
    assert store.get("A1")[0].last_proximity == 1.5


@pytest.mark.asyncio
async def test_duplicate_reading_leaving_range_in_batch() -> None:
    classifier, store, _ = _classifier(agents=_ranged(2.0))
    await classifier.ingest_batch([_detection("A1", proximity=1.0)])

    report = await classifier.ingest_batch([_detection("A1", proximity=1.0), _detection("A1", proximity=2.5)])

    assert _summary(report.events) == [("A1", K, EventType.EXIT)]
    assert store.get("A1") == []


@pytest.mark.asyncio
async def test_detections_without_agent_are_dropped() -> None:
    classifier, store, _ = _classifier()

    report = await classifier.ingest_batch([_detection(None)])

    assert report.events == []
    assert report.outcomes == []
    assert len(store) == 0


def test_group_by_agent_keeps_first_seen_order() -> None:
    grouped = group_by_agent([_detection("B"), _detection(None), _detection("A"), _detection("B", key=K2)])

    assert list(grouped) == ["B", "A"]
    assert [str(detection.beacon_key) for detection in grouped["B"]] == [K, K2]


@pytest.mark.asyncio
async def test_cycle_waits_for_agent_lock() -> None:
    classifier, store, _ = _classifier()

    async with store.locked("A1"):
        task = asyncio.create_task(classifier.ingest_batch([_detection("A1")]))
        await asyncio.sleep(0.01)
        assert not task.done()
        assert store.get("A1") == []

    report = await task
    assert _summary(report.events) == [("A1", K, EventType.ENTER)]


# ------------------------------------------------------------------
# Failure isolation
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_range_lookup_failure_fails_open() -> None:
    classifier, _, _ = _classifier(agents=_FailingAgentDirectory([Agent(custom_id="A1", range_threshold=2.0)]))

    report = await classifier.ingest_batch([_detection("A1", proximity=99.0)])

    assert _summary(report.events) == [("A1", K, EventType.ENTER)]
    assert report.failed_agents == []


@pytest.mark.asyncio
async def test_one_agent_failure_does_not_block_others() -> None:
    classifier, store, publisher = _classifier(store=_ExplodingStore())

    report = await classifier.ingest_batch([_detection("A1"), _detection("A2")])

    assert report.failed_agents == ["A2"]
    assert _summary(report.events) == [("A1", K, EventType.ENTER)]
    assert [event.agent_id for _, event in publisher.published] == ["A1"]
    assert store.agent_ids() == {"A1"}


@pytest.mark.asyncio
async def test_publisher_failure_keeps_state_and_events() -> None:
    store = PresenceStore()
    classifier = EventClassifier(store, InMemoryAgentDirectory(), _FailingPublisher())

    report = await classifier.ingest_batch([_detection("A1")])

    assert _summary(report.events) == [("A1", K, EventType.ENTER)]
    assert report.failed_agents == []
    assert store.beacon_keys("A1") == {BeaconKey.parse(K)}


@pytest.mark.asyncio
async def test_custom_event_type_is_published() -> None:
    classifier, _, publisher = _classifier(event_type="org.example.presence")

    await classifier.ingest_batch([_detection("A1")])

    assert [event_type for event_type, _ in publisher.published] == ["org.example.presence"]


# ------------------------------------------------------------------
# Heartbeat
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_heartbeat_records_most_recent_detection() -> None:
    agents = InMemoryAgentDirectory([Agent(custom_id="A1", last_seen=1_000)])
    classifier, _, _ = _classifier(agents=agents)

    await classifier.ingest_batch(
        [
            _detection("A1", key="early:1:1", time=_T0),
            _detection("A1", key="late:1:1", time=_T0 + 5000),
        ]
    )
    await classifier.flush_heartbeats()

    agent = await agents.find_by_custom_id("A1")
    assert agent is not None
    assert agent.last_seen == datetime.fromtimestamp((_T0 + 5000) / 1000, tz=UTC)
    assert agent.last_seen_by == "late"


@pytest.mark.asyncio
async def test_heartbeat_skipped_when_directory_is_newer() -> None:
    agents = _CountingAgentDirectory()
    agents.add(Agent(custom_id="A1", last_seen=_T0 + 60_000))
    classifier, _, _ = _classifier(agents=agents)

    await classifier.ingest_batch([_detection("A1")])
    await classifier.flush_heartbeats()

    assert agents.updates == []


@pytest.mark.asyncio
async def test_heartbeat_disabled() -> None:
    agents = _CountingAgentDirectory()
    agents.add(Agent(custom_id="A1"))
    classifier, _, _ = _classifier(agents=agents, heartbeat_enabled=False)

    await classifier.ingest_batch([_detection("A1")])
    await classifier.flush_heartbeats()

    assert agents.updates == []


@pytest.mark.asyncio
async def test_heartbeat_failure_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    classifier, _, _ = _classifier(agents=_BrokenUpdateDirectory([Agent(custom_id="A1")]))

    report = await classifier.ingest_batch([_detection("A1")])
    await classifier.flush_heartbeats()

    assert _summary(report.events) == [("A1", K, EventType.ENTER)]
    assert "Heartbeat update failed for agent=A1" in caplog.text


@pytest.mark.asyncio
async def test_slow_heartbeat_does_not_hold_up_cycles() -> None:
    agents = _SlowUpdateDirectory([Agent(custom_id="A1")])
    classifier, _, _ = _classifier(agents=agents)

    first = await asyncio.wait_for(classifier.ingest_batch([_detection("A1")]), timeout=1.0)
    second = await asyncio.wait_for(classifier.ingest_batch([_detection("A1")]), timeout=1.0)

    assert _summary(first.events) == [("A1", K, EventType.ENTER)]
    assert _summary(second.events) == [("A1", K, EventType.ALIVE)]
    assert agents.updates == []

    agents.release.set()
    await classifier.flush_heartbeats()

    # The second cycle's heartbeat runs after the first and finds nothing newer.
    assert len(agents.updates) == 1


# ------------------------------------------------------------------
# Agent id normalisation and atomic commits
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_padded_agent_id_uses_registered_threshold() -> None:
    classifier, store, _ = _classifier(agents=_ranged(2.0))

    ignored = await classifier.ingest_batch([_detection(" A1 ", proximity=5.0)])
    entered = await classifier.ingest_batch([_detection(" A1", proximity=1.0)])

    assert ignored.events == []
    assert _summary(entered.events) == [("A1", K, EventType.ENTER)]
    assert store.agent_ids() == {"A1"}


@pytest.mark.asyncio
async def test_failed_write_restores_agent_presence() -> None:
    classifier, store, publisher = _classifier(store=_RejectingKeyStore())
    await classifier.ingest_batch([_detection("A1", proximity=1.0)])

    report = await classifier.ingest_batch([_detection("A1", proximity=1.4), _detection("A1", key=K2)])

    assert report.failed_agents == ["A1"]
    assert report.events == []
    [entry] = store.get("A1")
    assert entry.beacon_key == BeaconKey.parse(K)
    assert entry.last_proximity == 1.0
    assert len(publisher.published) == 1
