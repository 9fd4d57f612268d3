"""
In-Memory Event Broadcaster

Single-process fan-out for development and tests. Events reach only
subscribers living in the same worker, which is exactly what a
single-worker dev server has.
"""

import logging

from fulfillment.services.events.base import BaseEventBroadcaster, LifecycleEvent

logger = logging.getLogger(__name__)


class InMemoryEventBroadcaster(BaseEventBroadcaster):
    """Fan-out through per-subscriber asyncio queues."""

    def __init__(self, max_queue: int = 100):
        super().__init__(max_queue=max_queue)
        self.published = 0
        logger.info(f"InMemoryEventBroadcaster initialized (max_queue={max_queue})")

    @property
    def provider_name(self) -> str:
        return "memory"

    def publish(self, event: LifecycleEvent) -> None:
        try:
            delivered = self._fan_out(event)
            self.published += 1
            logger.debug(f"Published {event.type.value} to {delivered}/{self.subscriber_count} subscribers")
        except Exception as e:
            logger.exception(f"Failed to publish {event.type.value}: {e}")

    async def health_check(self) -> bool:
        """In-memory fan-out is always available."""
        return True
