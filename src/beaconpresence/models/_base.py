"""Base model for presence records.

Every record inherits from :class:`PresenceBaseModel` which provides:

* ``alias_generator=to_camel`` so camelCase wire keys map
  automatically to snake_case fields.
* ``extra="ignore"`` so directory payloads can carry fields the
  engine does not care about (``_id``, ``__v``, ...).

Timestamps go through :data:`EpochTimestamp`, which accepts epoch
seconds, epoch milliseconds, ISO strings and datetimes and always
yields a tz-aware UTC datetime.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 100_000_000_000


def parse_timestamp(value: Any) -> datetime | None:
    """Convert an epoch timestamp (seconds **or** milliseconds) to a UTC datetime.

    Strings that are not numeric are parsed as ISO 8601.  Naive datetimes
    are assumed to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    ts = float(value)
    if ts >= _MS_THRESHOLD:
        ts /= 1000.0
    return datetime.fromtimestamp(ts, tz=UTC)


EpochTimestamp = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces epoch numbers (seconds or ms) and ISO strings to UTC datetimes."""

OptionalTimestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]


class PresenceBaseModel(BaseModel):
    """Base for all records exchanged with agents and directories."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )
