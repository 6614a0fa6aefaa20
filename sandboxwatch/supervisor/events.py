"""Typed lifecycle events and a non-blocking event bus.

Subscribers get a bounded queue. Publishing never waits: when a
subscriber falls behind, its oldest pending event is dropped so the
monitor keeps going.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from sandboxwatch.logging_config import get_logger
from sandboxwatch.supervisor.models import ParsedError, utc_now

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 256


class _Event(BaseModel):
    instance_id: str
    process_id: str
    timestamp: dt.datetime = Field(default_factory=utc_now)


class ProcessStarted(_Event):
    type: Literal["process_started"] = "process_started"
    pid: int
    restart_count: int = 0


class ProcessStopped(_Event):
    type: Literal["process_stopped"] = "process_stopped"
    exit_code: Optional[int] = None
    reason: str = "exited"   # exited, stopped, killed


class ProcessCrashed(_Event):
    type: Literal["process_crashed"] = "process_crashed"
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    will_restart: bool
    restart_count: int = 0


class ProcessRestarting(_Event):
    type: Literal["process_restarting"] = "process_restarting"
    attempt: int
    delay: float


class ErrorDetected(_Event):
    type: Literal["error_detected"] = "error_detected"
    error: ParsedError
    error_hash: Optional[str] = None
    is_new: bool = True


LifecycleEvent = Union[ProcessStarted, ProcessStopped, ProcessCrashed, ProcessRestarting, ErrorDetected]


class Subscription:
    """A subscriber's view of the bus. Iterate with ``async for`` or call ``get()``."""

    def __init__(self, bus: EventBus, maxsize: int) -> None:
        self._bus = bus
        self.queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: LifecycleEvent) -> None:
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self.queue.get_nowait()
                self.dropped += 1

    async def get(self, timeout: Optional[float] = None) -> LifecycleEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def drain(self) -> list[LifecycleEvent]:
        """Everything currently queued, without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> LifecycleEvent:
        return await self.queue.get()


class EventBus:
    """Fan-out of lifecycle events to any number of subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscription] = []

    def subscribe(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> Subscription:
        subscription = Subscription(self, maxsize)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, event: LifecycleEvent) -> None:
        for subscription in list(self._subscribers):
            subscription.offer(event)
        logger.debug("event_published", type=event.type, instance_id=event.instance_id,
                     subscribers=len(self._subscribers))
