"""
Event Broadcaster Abstract Base Class

Defines lifecycle events and the broadcaster interface shared by the
in-memory (development) and Redis (production) implementations.

Delivery contract:
    - publish() never blocks and never raises into the caller
    - every matching subscriber receives the event at least once while
      connected; ordering across subscribers is not guaranteed
    - a slow subscriber whose buffer is full misses the event; periodic
      re-sync (see observer.py) covers the gap
    - the broadcaster forwards globally, scoping is each subscriber's predicate
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    ORDER_CREATED = "order-created"
    ORDER_STATUS_CHANGED = "order-status-changed"
    ORDER_UPDATED = "order-updated"
    KOT_CREATED = "kot-created"
    TABLE_STATUS_CHANGED = "table-status-changed"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass(frozen=True)
class LifecycleEvent:
    """Base for all events: carries just enough ids for a subscriber to decide whether to refetch."""
    type: ClassVar[EventType]
    vendor_id: int

    def to_dict(self) -> dict[str, Any]:
        """Wire format: ``type`` plus camelCase fields."""
        payload = {"type": self.type.value}
        payload.update({_camel(k): v for k, v in asdict(self).items()})
        return payload


@dataclass(frozen=True)
class OrderCreated(LifecycleEvent):
    type: ClassVar[EventType] = EventType.ORDER_CREATED
    order_id: int = 0
    channel: str = ""
    table_id: Optional[int] = None


@dataclass(frozen=True)
class OrderStatusChanged(LifecycleEvent):
    type: ClassVar[EventType] = EventType.ORDER_STATUS_CHANGED
    order_id: int = 0
    status: str = ""
    table_id: Optional[int] = None


@dataclass(frozen=True)
class OrderUpdated(LifecycleEvent):
    type: ClassVar[EventType] = EventType.ORDER_UPDATED
    order_id: int = 0
    table_id: Optional[int] = None


@dataclass(frozen=True)
class KotCreated(LifecycleEvent):
    type: ClassVar[EventType] = EventType.KOT_CREATED
    order_id: int = 0
    kot_id: int = 0
    ticket_number: str = ""
    table_id: Optional[int] = None


@dataclass(frozen=True)
class TableStatusChanged(LifecycleEvent):
    type: ClassVar[EventType] = EventType.TABLE_STATUS_CHANGED
    table_id: int = 0
    is_active: bool = True


EVENT_CLASSES: dict[str, type[LifecycleEvent]] = {
    cls.type.value: cls
    for cls in (OrderCreated, OrderStatusChanged, OrderUpdated, KotCreated, TableStatusChanged)
}


def event_from_dict(data: dict[str, Any]) -> LifecycleEvent:
    """
    Rebuild an event from its wire format.

    Raises:
        ValueError: Unknown event type or missing fields
    """
    cls = EVENT_CLASSES.get(data.get("type", ""))
    if cls is None:
        raise ValueError(f"Unknown event type: {data.get('type')!r}")
    fields = {k: v for k, v in data.items() if k != "type"}
    by_camel = {_camel(name): name for name in cls.__dataclass_fields__}
    try:
        return cls(**{by_camel[k]: v for k, v in fields.items() if k in by_camel})
    except TypeError as e:
        raise ValueError(f"Malformed {cls.type.value} event: {e}")


EventPredicate = Callable[[LifecycleEvent], bool]


def scope_predicate(vendor_id: Optional[int] = None, table_id: Optional[int] = None) -> EventPredicate:
    """
    Build a subscriber-side filter.

    Events for other vendors are rejected. With ``table_id`` set, events
    naming a different table are rejected; events naming no table pass.
    """
    def matches(event: LifecycleEvent) -> bool:
        if vendor_id is not None and event.vendor_id != vendor_id:
            return False
        if table_id is not None:
            event_table = getattr(event, "table_id", None)
            if event_table is not None and event_table != table_id:
                return False
        return True

    return matches


class Subscription:
    """
    One observer's registration.

    Holds a bounded buffer; when it is full new events are dropped for this
    subscriber only and counted in ``dropped``.
    """

    def __init__(
        self,
        broadcaster: "BaseEventBroadcaster",
        predicate: Optional[EventPredicate] = None,
        max_queue: int = 100,
    ):
        self._broadcaster = broadcaster
        self.predicate = predicate
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.dropped = 0
        self.closed = False
        self._closed = asyncio.Event()

    def deliver(self, event: LifecycleEvent) -> bool:
        """Offer an event. Returns True if it was queued."""
        if self.closed:
            return False
        if self.predicate is not None:
            try:
                if not self.predicate(event):
                    return False
            except Exception as e:
                logger.warning(f"Subscriber predicate failed on {event.type.value}: {e}")
                return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Subscriber buffer full, dropped {event.type.value} (total dropped: {self.dropped})")
            return False
        return True

    async def get(self, timeout: Optional[float] = None) -> Optional[LifecycleEvent]:
        """Next event, or None after ``timeout`` seconds."""
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def unsubscribe(self) -> None:
        if not self.closed:
            self.closed = True
            self._closed.set()
            self._broadcaster._remove(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> LifecycleEvent:
        if self.closed:
            raise StopAsyncIteration
        getter = asyncio.ensure_future(self.queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (getter, closer):
                if not waiter.done():
                    waiter.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        raise StopAsyncIteration


class BaseEventBroadcaster(ABC):
    """Abstract base class for lifecycle event broadcasters."""

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._subscriptions: list[Subscription] = []

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    def publish(self, event: LifecycleEvent) -> None:
        """Fan an event out to every subscriber. Must not block or raise."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check transport connectivity."""
        pass

    async def start(self) -> None:
        """Open transport resources. No-op by default."""

    async def close(self) -> None:
        """Release transport resources and drop all subscribers."""
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, predicate: Optional[EventPredicate] = None) -> Subscription:
        """Register interest. Call ``unsubscribe()`` on the result to stop."""
        subscription = Subscription(self, predicate, max_queue=self.max_queue)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscriber added ({self.subscriber_count} active)")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass
        logger.debug(f"Subscriber removed ({self.subscriber_count} active)")

    def _fan_out(self, event: LifecycleEvent) -> int:
        """Deliver to local subscribers. Returns how many accepted the event."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.deliver(event):
                delivered += 1
        return delivered
