"""beaconpresence - Live beacon presence tracking from agent proximity readings."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("beaconpresence")
except PackageNotFoundError:
    __version__ = "0+local"
from beaconpresence._mqtt import MqttEventPublisher
from beaconpresence.arbiter import ProximityArbiter
from beaconpresence.classifier import AgentOutcome, CycleReport, EventClassifier
from beaconpresence.config import PresenceConfig
from beaconpresence.directory import (
    AgentDirectory,
    BeaconDirectory,
    CachedAgentDirectory,
    HttpAgentDirectory,
    HttpBeaconDirectory,
    InMemoryAgentDirectory,
    InMemoryBeaconDirectory,
)
from beaconpresence.engine import PresenceEngine, detections_from_report
from beaconpresence.exceptions import (
    DirectoryError,
    DirectoryTransportError,
    PresenceConfigError,
    PresenceError,
    PublishError,
)
from beaconpresence.models import Agent, Beacon, BeaconKey, Detection
from beaconpresence.publisher import EventBus, EventPublisher
from beaconpresence.state.events import DetectionEvent, EventType
from beaconpresence.state.store import PresenceEntry, PresenceStore

__all__ = [
    "__version__",
    "Agent",
    "AgentDirectory",
    "AgentOutcome",
    "Beacon",
    "BeaconDirectory",
    "BeaconKey",
    "CachedAgentDirectory",
    "CycleReport",
    "Detection",
    "DetectionEvent",
    "DirectoryError",
    "DirectoryTransportError",
    "EventBus",
    "EventClassifier",
    "EventPublisher",
    "EventType",
    "HttpAgentDirectory",
    "HttpBeaconDirectory",
    "InMemoryAgentDirectory",
    "InMemoryBeaconDirectory",
    "MqttEventPublisher",
    "PresenceConfig",
    "PresenceConfigError",
    "PresenceEngine",
    "PresenceEntry",
    "PresenceError",
    "PresenceStore",
    "ProximityArbiter",
    "PublishError",
    "detections_from_report",
]
