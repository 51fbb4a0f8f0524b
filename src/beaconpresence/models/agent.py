"""Agent and beacon directory records."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic.fields import FieldInfo

from beaconpresence.models._base import OptionalTimestamp, PresenceBaseModel
from beaconpresence.models.detection import BeaconKey


def _wire_keys(name: str, info: FieldInfo) -> set[str]:
    """Every key a field may arrive under: its name and all of its aliases."""
    keys = {name}
    for alias in (info.alias, info.serialization_alias):
        if alias:
            keys.add(alias)
    validation_alias = info.validation_alias
    if isinstance(validation_alias, str):
        keys.add(validation_alias)
    elif isinstance(validation_alias, AliasChoices):
        keys.update(choice for choice in validation_alias.choices if isinstance(choice, str))
    return keys


class _DirectoryRecord(PresenceBaseModel):
    """Directory record that keeps the payload it was built from.

    Directory records round-trip through ``update`` calls, so fields the
    engine does not model (``_id``, ``registered``, ...) must survive.
    """

    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _stash_raw(cls, values: Any) -> Any:
        if not isinstance(values, dict) or "raw" in values:
            return values
        return {**values, "raw": dict(values)}


class Agent(_DirectoryRecord):
    """A fixed sensing point.

    Parameters
    ----------
    custom_id : str
        Identifier the agent reports detections under (``customId``,
        or ``id`` on registration payloads).
    location : str or None
        Human readable location used for "what is near X" queries.
    range_threshold : float or None
        Maximum proximity still considered in range.  ``None`` disables
        range filtering for the agent.
    last_seen, last_seen_by
        Heartbeat: time of the most recent detection and the beacon uuid
        that produced it.
    """

    custom_id: str = Field(validation_alias=AliasChoices("customId", "custom_id", "id"))
    name: str | None = None
    location: str | None = None
    range_threshold: float | None = Field(
        default=None,
        validation_alias=AliasChoices("rangeThreshold", "range_threshold", "range"),
        serialization_alias="range",
    )
    last_seen: OptionalTimestamp = None
    last_seen_by: str | None = None
    capabilities: list[str] = Field(default_factory=list)
    approved_status: str | None = None
    operational_status: str | None = None

    @field_validator("range_threshold", mode="before")
    @classmethod
    def _blank_range_is_unset(cls, value: Any) -> Any:
        if value == "" or value is False:
            return None
        return value

    def to_payload(self) -> dict[str, Any]:
        """Wire form for directory updates, preserving unmodelled fields."""
        modelled: set[str] = set()
        for name, info in type(self).model_fields.items():
            modelled |= _wire_keys(name, info)
        payload = {key: value for key, value in self.raw.items() if key not in modelled}
        payload.update(self.model_dump(mode="json", by_alias=True, exclude_none=True))
        return payload


class Beacon(_DirectoryRecord):
    """Descriptive beacon record resolved by unique key."""

    uuid: str
    major: int
    minor: int
    name: str | None = None
    description: str | None = None

    @property
    def unique_key(self) -> BeaconKey:
        return BeaconKey(uuid=self.uuid, major=self.major, minor=self.minor)
