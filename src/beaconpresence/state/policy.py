"""Deterministic presence transition policy.

This module intentionally contains *no* I/O and no cache access.  The
classifier feeds it a snapshot bit ("was this key present at cycle
start") plus the range verdict and applies the result.
"""

from __future__ import annotations

from beaconpresence.state.events import EventType


def in_range(proximity: float, threshold: float | None) -> bool:
    """Whether a reading counts as in range.

    No threshold means no range filtering: everything is in range.
    The threshold itself is inclusive.
    """
    if threshold is None:
        return True
    return proximity <= threshold


def classify_transition(*, was_present: bool, is_in_range: bool) -> EventType | None:
    """Map (prior presence, current range verdict) to an event.

    =============  ===========  ========
    was present    in range     event
    =============  ===========  ========
    no             yes          enter
    no             no           (none)
    yes            yes          alive
    yes            no           exit
    =============  ===========  ========
    """
    if not was_present:
        return EventType.ENTER if is_in_range else None
    return EventType.ALIVE if is_in_range else EventType.EXIT
