"""Redis async client used as the cross-process push-channel broker.

Only needed when ``push_backend = "redis"``: chat and knowledge events are
published on ``push:{tenant_id}:{topic}`` so every API worker can fan them
out to its own SSE connections. All connection/command errors are caught
and re-raised as RedisConnectionError.
"""

import structlog
from redis.asyncio import Redis
from redis.asyncio import from_url as redis_from_url
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.exceptions import RedisConnectionError

logger = structlog.get_logger(__name__)

_client: Redis = redis_from_url(
    settings.redis_url,
    decode_responses=True,
    encoding="utf-8",
)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_redis() -> "RedisClient":
    """Return the singleton RedisClient wrapper."""
    return RedisClient(_client)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def close_redis() -> None:
    """Gracefully close the Redis connection pool."""
    logger.info("redis_shutdown")
    await _client.aclose()


# ---------------------------------------------------------------------------
# Helper wrapper
# ---------------------------------------------------------------------------

class RedisClient:
    """Thin wrapper over redis.asyncio.Redis with typed helpers.

    Every public method catches RedisError and re-raises as
    RedisConnectionError so the API layer gets a structured error.
    """

    def __init__(self, client: Redis) -> None:
        self._r = client

    @property
    def raw(self) -> Redis:
        """Escape hatch for advanced operations not covered by helpers."""
        return self._r

    async def ping(self) -> bool:
        try:
            return bool(await self._r.ping())
        except RedisError as e:
            logger.error("redis_ping_failed", error=str(e))
            raise RedisConnectionError(f"Redis PING failed: {e}") from e

    async def publish(self, channel: str, message: str) -> int:
        """PUBLISH a message. Returns the number of subscribers that received it."""
        try:
            return await self._r.publish(channel, message)
        except RedisError as e:
            logger.error("redis_publish_failed", channel=channel, error=str(e))
            raise RedisConnectionError(f"Redis PUBLISH failed: {e}") from e

    async def subscribe(self, channel: str) -> PubSub:
        """Open a dedicated pub/sub connection subscribed to ``channel``."""
        pubsub = self._r.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as e:
            await pubsub.aclose()
            logger.error("redis_subscribe_failed", channel=channel, error=str(e))
            raise RedisConnectionError(f"Redis SUBSCRIBE failed: {e}") from e
        return pubsub
