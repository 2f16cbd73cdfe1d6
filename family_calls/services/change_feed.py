"""
Redis change feed for call records.

Publishes every successful store write on a pub/sub channel. Pub/sub is
fire-and-forget, which matches the best-effort contract of the push feed:
subscribers that are disconnected simply miss events and polling recovers.
"""

import logging
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError
from pydantic import ValidationError

from family_calls.services.record_store import ChangeEvent, RecordQuery
from family_calls.utils.exceptions import StoreException

logger = logging.getLogger(__name__)


class RedisChangeFeed:
    """Publishes and streams ChangeEvents over Redis pub/sub."""

    def __init__(self, redis_url: str, channel: str = "call_records"):
        """
        Initialize change feed.

        Args:
            redis_url: Redis connection string
            channel: Pub/sub channel name
        """
        self.redis_url = redis_url
        self.channel = channel
        self.redis_client: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize Redis connection."""
        try:
            self.redis_client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self.redis_client.ping()
            logger.info("Redis change feed connected")

        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise StoreException(f"Redis connection failed: {e}")

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("Redis change feed closed")

    async def publish(self, event: ChangeEvent) -> int:
        """
        Publish a change event.

        Returns:
            Number of subscribers that received it
        """
        if not self.redis_client:
            raise StoreException("Redis not connected")
        try:
            return await self.redis_client.publish(self.channel, event.model_dump_json())
        except RedisError as e:
            logger.error(f"Redis error publishing {event.kind} for {event.record.id}: {e}")
            raise StoreException(f"Failed to publish change event: {e}")

    async def subscribe(self, filters: RecordQuery) -> AsyncIterator[ChangeEvent]:
        """Stream events matching the filter until the consumer stops."""
        if not self.redis_client:
            raise StoreException("Redis not connected")

        pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(self.channel)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = ChangeEvent.model_validate_json(message["data"])
                except ValidationError as e:
                    logger.warning(f"Discarding malformed change event: {e}")
                    continue
                if filters.matches(event.record):
                    yield event
        except RedisError as e:
            logger.error(f"Redis change feed interrupted: {e}")
            raise StoreException(f"Change feed interrupted: {e}")
        finally:
            await pubsub.aclose()
