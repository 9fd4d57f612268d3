"""
Event Broadcaster Factory

Returns the in-memory or Redis broadcaster based on ENV_MODE.

Usage:
    from fulfillment.services.events import get_event_broadcaster

    broadcaster = get_event_broadcaster()
    subscription = broadcaster.subscribe(scope_predicate(vendor_id=7))
    broadcaster.publish(OrderCreated(vendor_id=7, order_id=42, channel="dining"))

Environment Switching:
    - ENV_MODE=development → InMemoryEventBroadcaster
    - ENV_MODE=staging/production → RedisEventBroadcaster
"""

import logging
from functools import lru_cache

from fulfillment.core.config import get_settings
from fulfillment.services.events.base import (
    BaseEventBroadcaster,
    EventPredicate,
    EventType,
    KotCreated,
    LifecycleEvent,
    OrderCreated,
    OrderStatusChanged,
    OrderUpdated,
    Subscription,
    TableStatusChanged,
    event_from_dict,
    scope_predicate,
)
from fulfillment.services.events.memory import InMemoryEventBroadcaster
from fulfillment.services.events.observer import (
    ResyncTick,
    ResyncingObserver,
    iter_events_with_resync,
    sse_frames,
    to_sse_frame,
)
from fulfillment.services.events.redis_pubsub import RedisEventBroadcaster

logger = logging.getLogger(__name__)


@lru_cache()
def get_event_broadcaster() -> BaseEventBroadcaster:
    """Get the configured event broadcaster (one per process)."""
    settings = get_settings()

    if settings.use_redis_events:
        logger.info(f"Event Broadcaster: Using RedisEventBroadcaster ({settings.env_mode.value} mode)")
        return RedisEventBroadcaster(max_queue=settings.event_queue_size)

    logger.info("Event Broadcaster: Using InMemoryEventBroadcaster (development mode)")
    return InMemoryEventBroadcaster(max_queue=settings.event_queue_size)


def reset_event_broadcaster() -> None:
    """Clear the cached broadcaster instance."""
    get_event_broadcaster.cache_clear()
    logger.debug("Event broadcaster cache cleared")


__all__ = [
    "get_event_broadcaster",
    "reset_event_broadcaster",
    "BaseEventBroadcaster",
    "InMemoryEventBroadcaster",
    "RedisEventBroadcaster",
    "EventPredicate",
    "EventType",
    "LifecycleEvent",
    "OrderCreated",
    "OrderStatusChanged",
    "OrderUpdated",
    "KotCreated",
    "TableStatusChanged",
    "Subscription",
    "event_from_dict",
    "scope_predicate",
    "ResyncTick",
    "ResyncingObserver",
    "iter_events_with_resync",
    "sse_frames",
    "to_sse_frame",
]
