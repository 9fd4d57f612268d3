"""
Resyncing Observers

Event delivery is best-effort, so every observer also re-synchronizes on a
fixed interval whether or not an event arrived. A missed event then only
delays convergence by at most one interval.

    iter_events_with_resync()  async stream of events interleaved with ResyncTick
    ResyncingObserver          runs a refresh coroutine on every event and tick
    to_sse_frame()             text/event-stream framing for the HTTP stream
    sse_frames()               the frame sequence of one SSE client
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from fulfillment.services.events.base import (
    BaseEventBroadcaster,
    EventPredicate,
    LifecycleEvent,
    Subscription,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResyncTick:
    """Marker telling an observer to refetch regardless of events."""
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {"type": "resync", "at": self.at.isoformat()}


StreamItem = Union[LifecycleEvent, ResyncTick]


async def iter_events_with_resync(
    subscription: Subscription,
    interval: float,
) -> AsyncIterator[StreamItem]:
    """
    Yield events as they arrive plus a ResyncTick every ``interval`` seconds.

    Ticks are scheduled on a fixed cadence, independent of event traffic.
    Ends when the subscription is closed.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + interval
    while not subscription.closed:
        event = await subscription.get(timeout=max(0.0, deadline - loop.time()))
        if event is not None:
            yield event
        if loop.time() >= deadline:
            yield ResyncTick()
            deadline = loop.time() + interval


RefreshCallback = Callable[[StreamItem], Awaitable[None]]


class ResyncingObserver:
    """
    Keep some view of order state converged.

    ``refresh`` is awaited for every matching event and on every tick. A
    failing refresh is logged and retried on the next event or tick.

    Example:
        observer = ResyncingObserver(broadcaster, reload_orders,
                                     predicate=scope_predicate(vendor_id=7))
        observer.start()
        ...
        await observer.stop()
    """

    def __init__(
        self,
        broadcaster: BaseEventBroadcaster,
        refresh: RefreshCallback,
        predicate: Optional[EventPredicate] = None,
        interval: float = 5.0,
    ):
        self.broadcaster = broadcaster
        self.refresh = refresh
        self.predicate = predicate
        self.interval = interval
        self.refresh_count = 0
        self.failures = 0
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        self._subscription = self.broadcaster.subscribe(self.predicate)
        try:
            async for item in iter_events_with_resync(self._subscription, self.interval):
                try:
                    await self.refresh(item)
                    self.refresh_count += 1
                except Exception as e:
                    self.failures += 1
                    logger.warning(f"Observer refresh failed ({type(item).__name__}): {e}")
        finally:
            self._subscription.unsubscribe()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


def to_sse_frame(payload: dict[str, Any]) -> str:
    """
    Encode one unnamed server-sent event. The payload carries its own
    ``type``, so browsers receive every frame through ``onmessage``.
    """
    return f"data: {json.dumps(payload)}\n\n"


async def sse_frames(
    subscription: Subscription,
    interval: float,
    hello: Optional[dict[str, Any]] = None,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """
    Frames for one SSE client: ``connected``, then events and ``resync``
    ticks until the client goes away. Always unsubscribes on exit.
    """
    try:
        yield to_sse_frame({"type": "connected", **(hello or {})})
        async for item in iter_events_with_resync(subscription, interval):
            if is_disconnected is not None and await is_disconnected():
                break
            yield to_sse_frame(item.to_dict())
    finally:
        subscription.unsubscribe()
