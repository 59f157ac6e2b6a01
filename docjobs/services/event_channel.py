import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Set, Tuple

import redis.asyncio as redis

from docjobs.config import settings

logger = logging.getLogger(__name__)

RESOURCE_TYPES = ("job", "library")


class RedisEventChannel:
    """
    Per-resource publish/subscribe over Redis channels.

    Delivery is fire-and-forget: a payload reaches the observers subscribed at
    the moment it is published, at most once. Observers that need the full
    picture re-read status from the Job Store.
    """

    def __init__(self, redis_url: Optional[str] = None, prefix: Optional[str] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.prefix = prefix or settings.EVENTS_CHANNEL_PREFIX
        self._redis_client: Optional[redis.Redis] = None
        # Coalescing buffers: latest payload and pending flush per channel key
        self._coalesced_payloads: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._coalesced_timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._flush_tasks: Set[asyncio.Task] = set()

    @property
    def client(self) -> redis.Redis:
        if self._redis_client is None:
            self._redis_client = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis_client

    def channel_name(self, resource_type: str, resource_id: str) -> str:
        return f"{self.prefix}:{resource_type}:{resource_id}"

    async def publish(self, resource_type: str, resource_id: str, payload: Dict[str, Any]) -> None:
        """Publishes one event. Failures are logged, never raised."""
        channel = self.channel_name(resource_type, resource_id)
        try:
            await self.client.publish(channel, json.dumps(payload, default=str))
            logger.debug(f"[Event {resource_type}/{resource_id}]: {payload}")
        except Exception as e:
            logger.warning(f"Failed to publish event on {channel}: {e}")

    def publish_coalesced(
        self,
        resource_type: str,
        resource_id: str,
        payload: Dict[str, Any],
        interval_ms: Optional[int] = None,
    ) -> None:
        """
        Schedules a publish that keeps only the latest payload per channel
        within the interval, so frequent progress reports do not flood observers.
        """
        key = (resource_type, resource_id)
        self._coalesced_payloads[key] = payload
        if key in self._coalesced_timers:
            return

        interval = (interval_ms if interval_ms is not None else settings.PROGRESS_COALESCE_MS) / 1000
        loop = asyncio.get_running_loop()
        self._coalesced_timers[key] = loop.call_later(interval, self._flush_coalesced, key)

    def _flush_coalesced(self, key: Tuple[str, str]) -> None:
        self._coalesced_timers.pop(key, None)
        latest = self._coalesced_payloads.pop(key, None)
        if latest is not None:
            task = asyncio.ensure_future(self.publish(key[0], key[1], latest))
            self._flush_tasks.add(task)
            task.add_done_callback(self._flush_tasks.discard)

    def discard_coalesced(self, resource_type: str, resource_id: str) -> None:
        """Drops a pending coalesced payload, e.g. once the batch has finished."""
        key = (resource_type, resource_id)
        timer = self._coalesced_timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._coalesced_payloads.pop(key, None)

    async def subscribe(
        self,
        resource_type: str,
        resource_id: str,
        idle_timeout: float = 30.0,
    ) -> AsyncIterator[Optional[Dict[str, Any]]]:
        """
        Yields payloads published for one resource until the consumer stops
        iterating. Yields None whenever `idle_timeout` seconds pass without an
        event, so the consumer can send a keep-alive.
        """
        channel = self.channel_name(resource_type, resource_id)
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel)
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=idle_timeout)
                if message is None:
                    yield None
                    continue
                try:
                    yield json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning(f"Dropping malformed event on {channel}: {message.get('data')!r}")
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def close(self) -> None:
        for timer in self._coalesced_timers.values():
            timer.cancel()
        self._coalesced_timers.clear()
        self._coalesced_payloads.clear()
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks)
        if self._redis_client is not None:
            await self._redis_client.aclose()
            self._redis_client = None
