"""
Redis Cache Service
===================

Redis connection management and the subscription snapshot cache.

Writers store each committed snapshot, guarded by its row version so
a late writer never replaces a newer entry. Readers only fill a
missing entry. Only snapshots are cached, never the derived
``isActive`` flag, so a cached entry cannot go stale across an expiry
boundary.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import WatchError

from app.config import settings
from app.schemas.subscription import SubscriptionSnapshot

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None

# WATCH retries before a write-through gives up
STORE_ATTEMPTS = 3


async def init_redis() -> Redis:
    """
    Initialize Redis connection pool and pre-warm a connection.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = await redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    """Get Redis client, initializing if necessary."""
    if _redis_client is None:
        return await init_redis()
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None
        logger.info("Redis connection closed")


class CacheManager:
    """
    Redis cache manager with common operations.

    Errors are logged and reported as a miss; the database stays the
    source of truth.
    """

    TTL_SHORT = 300  # 5 minutes
    TTL_HOUR = 3600  # 1 hour

    @staticmethod
    async def get(key: str) -> Optional[Any]:
        try:
            client = await get_redis()
            value = await client.get(key)
            if value is None:
                return None
            return json.loads(value)
        except Exception as e:
            logger.warning("Cache get error for key %s: %s", key, e)
            return None

    @staticmethod
    async def set_if_absent(key: str, value: Any, ttl: int = TTL_SHORT) -> bool:
        """Set only when the key does not exist. Returns True if written."""
        try:
            client = await get_redis()
            result = await client.set(key, json.dumps(value, default=str), ex=ttl, nx=True)
            return result is True
        except Exception as e:
            logger.warning("Cache set error for key %s: %s", key, e)
            return False

    @staticmethod
    async def delete(key: str) -> bool:
        try:
            client = await get_redis()
            return await client.delete(key) > 0
        except Exception as e:
            logger.warning("Cache delete error for key %s: %s", key, e)
            return False


# =============================================================================
# Cache Key Builders
# =============================================================================

class CacheKeys:
    """Cache key builders for consistent naming."""

    @staticmethod
    def subscription(user_id: str) -> str:
        """User subscription snapshot cache key."""
        return f"cache:subscription:{user_id}"

    @staticmethod
    def webhook_stream() -> str:
        """Redis Stream carrying normalized webhook events to the worker."""
        return "stream:subscription:webhooks"

    @staticmethod
    def webhook_dead_letter() -> str:
        """Dead letter stream for events the worker gave up on."""
        return "stream:subscription:webhooks:dlq"


# =============================================================================
# Subscription Cache
# =============================================================================

class SubscriptionCache:
    """Snapshot cache keyed by user id."""

    def __init__(self, ttl: int = CacheManager.TTL_HOUR):
        self.ttl = ttl

    async def get(self, user_id: str) -> Optional[SubscriptionSnapshot]:
        cached = await CacheManager.get(CacheKeys.subscription(user_id))
        if cached is None:
            return None
        try:
            return SubscriptionSnapshot.model_validate(cached)
        except ValueError:
            logger.warning("Discarding unreadable cached subscription for %s", user_id)
            await self.invalidate(user_id)
            return None

    async def populate(self, snapshot: SubscriptionSnapshot) -> bool:
        """
        Fill the cache after a database read.

        Never replaces an existing entry: a reader may hold a snapshot
        that a writer has superseded since.
        """
        return await CacheManager.set_if_absent(
            CacheKeys.subscription(snapshot.user_id),
            snapshot.model_dump(mode="json"),
            self.ttl,
        )

    async def store(self, snapshot: SubscriptionSnapshot) -> bool:
        """
        Write through a committed snapshot.

        The entry is replaced only when it holds an older row version,
        so writers finishing out of order keep the newest state.

        Returns:
            False if Redis could not be updated; the caller should then
            invalidate.
        """
        key = CacheKeys.subscription(snapshot.user_id)
        payload = json.dumps(snapshot.model_dump(mode="json"))
        version = snapshot.version or 0

        try:
            client = await get_redis()
            async with client.pipeline(transaction=True) as pipe:
                for _ in range(STORE_ATTEMPTS):
                    try:
                        await pipe.watch(key)
                        if _cached_version(await pipe.get(key)) >= version:
                            return True
                        pipe.multi()
                        pipe.set(key, payload, ex=self.ttl)
                        await pipe.execute()
                        return True
                    except WatchError:
                        continue
        except Exception as e:
            logger.warning("Cache store error for key %s: %s", key, e)
            return False

        logger.warning("Cache store for key %s kept losing to concurrent writers", key)
        return False

    async def invalidate(self, user_id: str) -> bool:
        """Drop the cached snapshot after a subscription change."""
        return await CacheManager.delete(CacheKeys.subscription(user_id))


def _cached_version(raw: Optional[str]) -> int:
    """Row version of a cached entry; -1 when absent or unreadable."""
    if raw is None:
        return -1
    try:
        version = json.loads(raw).get("version")
    except (ValueError, AttributeError):
        return -1
    return version if isinstance(version, int) else -1
