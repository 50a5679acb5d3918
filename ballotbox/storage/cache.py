"""
Short-lived cache of event definitions.

Submissions read the event (status, end_time, vote mode) and its item ids on
every request, while these change only on administrative writes. Entries
expire after a short TTL and are dropped on every write to the event.
"""
import abc
import json
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from ballotbox.shared.models import EventDefinition

logger = logging.getLogger(__name__)


# Redis key prefixes for different data types
REDIS_KEYS = {
    'event_definition': 'ballotbox:event_definition:{}',
}


def get_redis_key(key_type: str, *args) -> str:
    """
    Get formatted Redis key.

    Args:
        key_type: Type of key from REDIS_KEYS
        *args: Arguments to format into key

    Returns:
        str: Formatted Redis key
    """
    key_template = REDIS_KEYS.get(key_type)
    if key_template and '{}' in key_template:
        return key_template.format(*args)
    return key_template


class EventCache(abc.ABC):
    """Cache interface used by the session state machine."""

    name: str = "cache"

    @abc.abstractmethod
    async def get(self, event_id: str) -> Optional[EventDefinition]:
        """Return a cached definition or None."""

    @abc.abstractmethod
    async def set(self, definition: EventDefinition) -> None:
        """Store a definition for the configured TTL."""

    @abc.abstractmethod
    async def invalidate(self, event_id: str) -> None:
        """Drop the cached definition."""

    async def check_health(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class MemoryEventCache(EventCache):
    """Per-process TTL cache."""

    name = "memory_cache"

    def __init__(self, ttl_seconds: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, Tuple[float, EventDefinition]] = {}

    async def get(self, event_id: str) -> Optional[EventDefinition]:
        entry = self._entries.get(event_id)
        if entry is None:
            return None
        expires_at, definition = entry
        if self.clock() >= expires_at:
            self._entries.pop(event_id, None)
            return None
        return definition

    async def set(self, definition: EventDefinition) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[definition.event.id] = (self.clock() + self.ttl_seconds, definition)

    async def invalidate(self, event_id: str) -> None:
        self._entries.pop(event_id, None)


class RedisEventCache(EventCache):
    """
    Cache shared by every API replica.

    A cache outage degrades to store reads: errors are logged and treated as
    misses, except on invalidation where a stale entry could reopen a paused
    event, so those errors propagate.
    """

    name = "redis"

    def __init__(self, client: redis.Redis, ttl_seconds: float = 2.0):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: float = 2.0) -> 'RedisEventCache':
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, ttl_seconds)

    async def get(self, event_id: str) -> Optional[EventDefinition]:
        try:
            raw = await self.client.get(get_redis_key('event_definition', event_id))
        except RedisError as e:
            logger.error(f"Redis error reading event definition {event_id}: {e}")
            return None
        if raw is None:
            return None
        return EventDefinition.from_dict(json.loads(raw))

    async def set(self, definition: EventDefinition) -> None:
        if self.ttl_seconds <= 0:
            return
        try:
            await self.client.set(
                get_redis_key('event_definition', definition.event.id),
                json.dumps(definition.to_dict()),
                px=int(self.ttl_seconds * 1000)
            )
        except RedisError as e:
            logger.error(f"Redis error caching event definition {definition.event.id}: {e}")

    async def invalidate(self, event_id: str) -> None:
        try:
            await self.client.delete(get_redis_key('event_definition', event_id))
        except RedisError as e:
            logger.error(f"Redis error invalidating event definition {event_id}: {e}")
            raise

    async def check_health(self) -> bool:
        try:
            await self.client.ping()
            return True
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
