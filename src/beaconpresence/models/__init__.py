"""Data models for detections and directory records."""

from beaconpresence.models._base import EpochTimestamp, PresenceBaseModel, parse_timestamp
from beaconpresence.models.agent import Agent, Beacon
from beaconpresence.models.detection import BeaconKey, Detection

__all__ = [
    "Agent",
    "Beacon",
    "BeaconKey",
    "Detection",
    "EpochTimestamp",
    "PresenceBaseModel",
    "parse_timestamp",
]
