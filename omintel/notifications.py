# omintel/notifications.py
"""
Row change notifications over Redis pub/sub.

Message schema (JSON string published to Redis channel):
{
  "table": "documents",
  "type": "UPDATE" | "INSERT" | "DELETE",
  "record": { ... row fields ... }
}

Channel naming convention: documents:<owner_id>

Publishing never raises to the caller: a lost notification only delays a
client that can still poll the row. Subscribers get a Subscription handle
that must be closed; use it as an async context manager.
"""
import json
import logging
from typing import Any, AsyncIterator, Dict

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


def documents_channel(owner_id: str) -> str:
    return f"documents:{owner_id}"


class Subscription:
    """Handle over one pub/sub subscription. Iterate for change events."""

    def __init__(self, pubsub, channel: str):
        self._pubsub = pubsub
        self.channel = channel
        self.closed = False

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._events()

    async def _events(self) -> AsyncIterator[Dict[str, Any]]:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                yield json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("Dropping malformed change event on %s", self.channel)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        finally:
            await self._pubsub.aclose()
        logger.debug("Closed subscription %s", self.channel)


class ChangeNotifier:
    def __init__(self, redis_client):
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "ChangeNotifier":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def publish(self, owner_id: str, record: Dict[str, Any], change: str = "UPDATE",
                      table: str = "documents") -> None:
        message = {"table": table, "type": change, "record": record}
        channel = documents_channel(owner_id)
        try:
            await self.redis.publish(channel, json.dumps(message, default=str))
            logger.debug("Published %s %s on %s", table, change, channel)
        except Exception as e:
            logger.warning("Redis publish failed on %s: %s", channel, e)

    async def subscribe(self, owner_id: str) -> Subscription:
        pubsub = self.redis.pubsub()
        channel = documents_channel(owner_id)
        await pubsub.subscribe(channel)
        logger.debug("Subscribed to %s", channel)
        return Subscription(pubsub, channel)

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except Exception:
            logger.exception("Failed to close redis on shutdown")

