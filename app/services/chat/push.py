"""Push channel for live UI updates (served as SSE).

One interface, two implementations picked once at startup from
``settings.push_backend``:

- InMemoryPushChannel: per-process fan-out to asyncio queues.
- RedisPushChannel: Redis pub/sub on ``push:{tenant_id}:{topic}`` so every
  worker process sees every event.

Push is a convenience. Publish problems are logged and dropped; the
database row stays the source of truth.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable

import structlog
from redis.asyncio.client import PubSub

from app.core.exceptions import RedisConnectionError
from app.db.redis import RedisClient

logger = structlog.get_logger(__name__)

KNOWLEDGE_TOPIC = "knowledge"


def conversation_topic(conversation_id: Any) -> str:
    return f"chat:{conversation_id}"


def channel_name(tenant_id: str, topic: str) -> str:
    return f"push:{tenant_id}:{topic}"


class Subscription(ABC):
    """A live feed of events for one (tenant, topic)."""

    @abstractmethod
    async def next_event(self, timeout: float) -> dict[str, Any] | None:
        """Next event, or None if nothing arrived within ``timeout`` seconds."""

    @abstractmethod
    async def close(self) -> None:
        ...


class PushChannel(ABC):
    @abstractmethod
    async def publish(self, tenant_id: str, topic: str, event: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def subscribe(self, tenant_id: str, topic: str) -> Subscription:
        ...

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-process
# ---------------------------------------------------------------------------

class _QueueSubscription(Subscription):
    def __init__(self, queue: asyncio.Queue, on_close: Callable[[], None]) -> None:
        self._queue = queue
        self._on_close = on_close
        self._closed = False

    async def next_event(self, timeout: float) -> dict[str, Any] | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._on_close()


class InMemoryPushChannel(PushChannel):
    """Fan-out to every subscriber of the same (tenant, topic) in this process."""

    def __init__(self, max_queue_size: int = 100) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: dict[tuple[str, str], set[asyncio.Queue]] = defaultdict(set)

    def subscriber_count(self, tenant_id: str, topic: str) -> int:
        return len(self._subscribers.get((tenant_id, topic), ()))

    async def publish(self, tenant_id: str, topic: str, event: dict[str, Any]) -> None:
        key = (tenant_id, topic)
        for queue in list(self._subscribers.get(key, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("push_subscriber_lagging", tenant_id=tenant_id, topic=topic)

    async def subscribe(self, tenant_id: str, topic: str) -> Subscription:
        key = (tenant_id, topic)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[key].add(queue)

        def _discard() -> None:
            subscribers = self._subscribers.get(key)
            if subscribers is None:
                return
            subscribers.discard(queue)
            if not subscribers:
                del self._subscribers[key]

        return _QueueSubscription(queue, _discard)


# ---------------------------------------------------------------------------
# Redis pub/sub
# ---------------------------------------------------------------------------

class _RedisSubscription(Subscription):
    def __init__(self, pubsub: PubSub, channel: str) -> None:
        self._pubsub = pubsub
        self._channel = channel

    async def next_event(self, timeout: float) -> dict[str, Any] | None:
        message = await self._pubsub.get_message(
            ignore_subscribe_messages=True, timeout=timeout
        )
        if message is None:
            return None
        try:
            return json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("push_message_undecodable", channel=self._channel)
            return None

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe(self._channel)
        finally:
            await self._pubsub.aclose()


class RedisPushChannel(PushChannel):
    """Cross-process push over Redis pub/sub."""

    def __init__(self, redis: RedisClient) -> None:
        self._redis = redis

    async def publish(self, tenant_id: str, topic: str, event: dict[str, Any]) -> None:
        channel = channel_name(tenant_id, topic)
        try:
            await self._redis.publish(channel, json.dumps(event, default=str))
        except RedisConnectionError as e:
            logger.warning("push_publish_failed", channel=channel, error=e.message)

    async def subscribe(self, tenant_id: str, topic: str) -> Subscription:
        channel = channel_name(tenant_id, topic)
        pubsub = await self._redis.subscribe(channel)
        return _RedisSubscription(pubsub, channel)


async def publish_quietly(
    push: PushChannel | None,
    tenant_id: str,
    topic: str,
    event: dict[str, Any],
) -> None:
    """Publish if a channel is wired; never lets a push problem reach the caller."""
    if push is None:
        return
    try:
        await push.publish(tenant_id, topic, event)
    except Exception as e:
        logger.warning(
            "push_publish_failed",
            tenant_id=tenant_id,
            topic=topic,
            event_type=event.get("type"),
            error=str(e),
        )
