from unittest.mock import AsyncMock

import pytest

from omintel.notifications import ChangeNotifier, Subscription, documents_channel
from omintel.ratelimit import RateLimiter


@pytest.mark.asyncio
async def test_publish_wraps_record(fake_redis):
    notifier = ChangeNotifier(fake_redis)

    await notifier.publish("user-1", {"id": "doc-1", "status": "ready"})

    assert fake_redis.published == [
        ("documents:user-1", {"table": "documents", "type": "UPDATE", "record": {"id": "doc-1", "status": "ready"}})
    ]


@pytest.mark.asyncio
async def test_publish_failure_is_swallowed():
    redis_client = AsyncMock()
    redis_client.publish.side_effect = ConnectionError("redis down")

    await ChangeNotifier(redis_client).publish("user-1", {"id": "doc-1"})

    redis_client.publish.assert_awaited_once()


@pytest.mark.asyncio
async def test_subscription_yields_messages_and_closes(fake_redis):
    fake_redis.pending_messages = [
        {"type": "subscribe", "data": 1},
        {"type": "message", "data": '{"type": "UPDATE", "record": {"id": "a"}}'},
        {"type": "message", "data": "not json"},
        {"type": "message", "data": '{"type": "DELETE", "record": {"id": "a"}}'},
    ]
    notifier = ChangeNotifier(fake_redis)

    async with await notifier.subscribe("user-1") as subscription:
        events = [event async for event in subscription]

    assert [e["type"] for e in events] == ["UPDATE", "DELETE"]
    fake_redis.pubsub_obj.subscribe.assert_awaited_once_with(documents_channel("user-1"))
    fake_redis.pubsub_obj.unsubscribe.assert_awaited_once_with("documents:user-1")
    fake_redis.pubsub_obj.aclose.assert_awaited_once()
    assert subscription.closed is True


@pytest.mark.asyncio
async def test_subscription_close_is_idempotent(fake_redis):
    subscription = Subscription(fake_redis.pubsub_obj, "documents:x")

    await subscription.close()
    await subscription.close()

    fake_redis.pubsub_obj.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_rate_limiter_fixed_window(fake_redis):
    limiter = RateLimiter(fake_redis)

    results = [await limiter.allow_request("chat:user-1", limit=2, period=3600) for _ in range(3)]

    assert results == [True, True, False]
    fake_redis.expire.assert_awaited_once()


@pytest.mark.asyncio
async def test_rate_limiter_fails_open():
    redis_client = AsyncMock()
    redis_client.incr.side_effect = ConnectionError("redis down")

    assert await RateLimiter(redis_client).allow_request("chat:user-1", limit=1) is True
