"""Presence lifecycle events.

The classifier converts raw detections into these events.  They are
only ever published, never stored by the engine.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from beaconpresence.models.detection import BeaconKey


class EventType(StrEnum):
    ENTER = "enter"
    ALIVE = "alive"
    EXIT = "exit"


class DetectionEvent(BaseModel):
    """A beacon entering, staying in, or leaving an agent's range."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    agent_id: str = Field(..., alias="agentId")
    beacon_key: BeaconKey = Field(..., alias="beaconKey")
    event_type: EventType = Field(..., alias="eventType")
    proximity: float | None = Field(
        default=None,
        description="Proximity of the reading that triggered the event; None for inferred exits.",
    )
    time: datetime | None = Field(default=None, description="Time of the triggering reading, if any.")

    @field_validator("agent_id")
    @classmethod
    def _normalize_agent_id(cls, value: str) -> str:
        agent_id = value.strip()
        if not agent_id:
            raise ValueError("agent_id must be non-empty")
        return agent_id
