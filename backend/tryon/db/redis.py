"""Process-wide Redis client shared by AccountLock and ProviderRegistry."""

import redis.asyncio as redis
import structlog

from tryon.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> None:
    global _redis

    if _redis is not None:
        return

    settings = get_settings()
    client = redis.from_url(
        url or settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
    )
    # Locks are mandatory for balance changes; refuse to start without Redis
    await client.ping()
    _redis = client
    logger.info("redis_connected")


def set_redis(client: redis.Redis | None) -> None:
    """Install an already-built client (fakeredis in tests)."""
    global _redis
    _redis = client


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    if _redis is None:
        raise RuntimeError("Redis not initialized; call init_redis() first")
    return _redis
