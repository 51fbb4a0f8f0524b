"""Event publishing.

The classifier hands every event to an :class:`EventPublisher` and does
not wait for anyone to act on it.  :class:`EventBus` is the in-process
fan-out; it can forward to a downstream sink such as
:class:`beaconpresence._mqtt.MqttEventPublisher`.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from beaconpresence.state.events import DetectionEvent

_logger = logging.getLogger(__name__)

Subscriber = Callable[[str, DetectionEvent], Awaitable[None] | None]


class EventPublisher(Protocol):
    async def publish(self, event_type: str, payload: DetectionEvent) -> None: ...


class EventBus:
    """Fan events out to local subscribers, then to an optional downstream sink.

    Subscribers may be plain or async callables.  A failing subscriber is
    logged and skipped; it never stops delivery to the others.  Errors
    from the downstream sink propagate to the caller.
    """

    def __init__(self, downstream: EventPublisher | None = None) -> None:
        self._subscribers: list[Subscriber] = []
        self.downstream = downstream

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register *subscriber*; returns a callable that unregisters it."""
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    async def publish(self, event_type: str, payload: DetectionEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event_type, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _logger.warning(
                    "Subscriber %r failed for %s event agent=%s beacon=%s",
                    subscriber,
                    payload.event_type,
                    payload.agent_id,
                    payload.beacon_key,
                    exc_info=True,
                )
        if self.downstream is not None:
            await self.downstream.publish(event_type, payload)
