"""
Redis Event Broadcaster

Production fan-out across API workers. Every worker publishes to one Redis
pub/sub channel and runs a listener that forwards whatever arrives on that
channel to its own in-process subscribers, so an event raised on worker A
reaches an SSE stream held open by worker B.

Publishing is scheduled as a background task: the request that triggered
the event never waits on Redis. If Redis is unreachable the event is
delivered locally and the failure is logged; observers' periodic re-sync
converges the other workers. A dropped subscription is re-established
with backoff, delivering locally in the meantime.
"""

import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from fulfillment.core.config import get_settings
from fulfillment.services.events.base import (
    BaseEventBroadcaster,
    LifecycleEvent,
    event_from_dict,
)

logger = logging.getLogger(__name__)
settings = get_settings()

MAX_RECONNECT_DELAY = 30.0


class RedisEventBroadcaster(BaseEventBroadcaster):
    """Fan-out through a Redis pub/sub channel."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        channel: Optional[str] = None,
        max_queue: int = 100,
        client: Optional[aioredis.Redis] = None,
        reconnect_delay: float = 1.0,
    ):
        super().__init__(max_queue=max_queue)
        self.redis_url = redis_url or settings.redis_url
        self.channel = channel or settings.event_channel
        self._client = client
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._listening = False
        self.reconnect_delay = reconnect_delay
        self._pending: set[asyncio.Task] = set()
        logger.info(f"RedisEventBroadcaster initialized (channel={self.channel})")

    @property
    def provider_name(self) -> str:
        return "redis"

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self.redis_url, decode_responses=True)
        return self._client

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Subscribe to the channel and start forwarding to local subscribers."""
        if self._listener is not None:
            return
        await self._subscribe()
        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Listening for lifecycle events on '{self.channel}'")

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._drop_pubsub()
        if self._client is not None:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing Redis client: {e}")
            self._client = None
        await super().close()

    async def _subscribe(self) -> None:
        self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.subscribe(self.channel)
        self._listening = True

    async def _drop_pubsub(self) -> None:
        self._listening = False
        if self._pubsub is None:
            return
        pubsub, self._pubsub = self._pubsub, None
        try:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing Redis subscription: {e}")

    async def _listen(self) -> None:
        """Forward channel messages; on a lost connection, resubscribe with backoff."""
        delay = self.reconnect_delay
        while True:
            try:
                if self._pubsub is None:
                    await self._subscribe()
                    logger.info(f"Resubscribed to '{self.channel}'")
                    delay = self.reconnect_delay
                async for message in self._pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        event = event_from_dict(json.loads(message["data"]))
                    except (TypeError, ValueError) as e:
                        logger.warning(f"Ignoring malformed event on '{self.channel}': {e}")
                        continue
                    self._fan_out(event)
                return
            except (RedisError, OSError) as e:
                logger.error(f"Lost Redis subscription on '{self.channel}', delivering locally "
                             f"and retrying in {delay:.1f}s: {e}")
                await self._drop_pubsub()
            await asyncio.sleep(delay)
            delay = min(delay * 2, MAX_RECONNECT_DELAY)

    # =========================================================================
    # PUBLISHING
    # =========================================================================

    def publish(self, event: LifecycleEvent) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._publish(event))
        except RuntimeError:
            logger.warning(f"No running event loop, delivering {event.type.value} locally only")
            self._fan_out(event)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, event: LifecycleEvent) -> None:
        payload = json.dumps(event.to_dict())
        try:
            receivers = await self.client.publish(self.channel, payload)
            logger.debug(f"Published {event.type.value} to {receivers} Redis subscribers")
            if not self._listening:
                # Not subscribed: local subscribers would never see our own message
                self._fan_out(event)
        except (RedisError, OSError) as e:
            logger.error(f"Redis publish failed for {event.type.value}, delivering locally: {e}")
            self._fan_out(event)

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as e:
            logger.error(f"Redis health check failed: {e}")
            return False
