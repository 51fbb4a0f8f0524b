"""Detection models: beacon identity, raw readings and agent reports."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

from pydantic import AliasChoices, Field, field_validator, model_serializer, model_validator

from beaconpresence._constants import BEACON_KEY_SEPARATOR
from beaconpresence.models._base import EpochTimestamp, PresenceBaseModel


class BeaconKey(PresenceBaseModel):
    """Composite beacon identity ``uuid:major:minor``.

    Validates from either the rendered string form or a mapping and
    always serializes back to the string form.
    """

    uuid: str
    major: int
    minor: int

    @model_validator(mode="before")
    @classmethod
    def _parse_string_form(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        parts = value.strip().rsplit(BEACON_KEY_SEPARATOR, 2)
        if len(parts) != 3 or not parts[0]:
            raise ValueError(f"beacon key must look like 'uuid:major:minor', got {value!r}")
        uuid, major, minor = parts
        return {"uuid": uuid, "major": major, "minor": minor}

    @field_validator("uuid")
    @classmethod
    def _strip_uuid(cls, value: str) -> str:
        uuid = value.strip()
        if not uuid:
            raise ValueError("uuid must be non-empty")
        return uuid

    @model_serializer
    def _as_string(self) -> str:
        return str(self)

    @classmethod
    def parse(cls, value: str) -> BeaconKey:
        return cls.model_validate(value)

    def __str__(self) -> str:
        return f"{self.uuid}{BEACON_KEY_SEPARATOR}{self.major}{BEACON_KEY_SEPARATOR}{self.minor}"


class Detection(PresenceBaseModel):
    """One proximity reading of a beacon by an agent.

    Parameters
    ----------
    time : datetime
        When the reading was taken.  Epoch milliseconds on the wire.
        Defaults to *now* when the agent omits it.
    uuid, major, minor
        Beacon identity.
    proximity : float
        Distance estimate.  Agents send it as ``distance``.
    agent_id : str or None
        Reporting agent.  Readings without one cannot be attributed.
    tx, rssi
        Radio metadata, carried through untouched.
    """

    time: EpochTimestamp = Field(default_factory=lambda: datetime.now(UTC))
    uuid: str
    major: int
    minor: int
    proximity: float = Field(validation_alias=AliasChoices("proximity", "distance"))
    agent_id: str | None = None
    tx: float | None = None
    rssi: float | None = None

    @field_validator("proximity")
    @classmethod
    def _finite_proximity(cls, value: float) -> float:
        if math.isnan(value) or math.isinf(value):
            raise ValueError("proximity must be a finite number")
        return value

    @field_validator("agent_id", mode="before")
    @classmethod
    def _normalize_agent_id(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @property
    def beacon_key(self) -> BeaconKey:
        return BeaconKey(uuid=self.uuid, major=self.major, minor=self.minor)

