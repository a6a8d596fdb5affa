"""
Redis client factory.

Purpose:
- Build one async Redis client at process start (see core/container.py)
- Ping on startup so a misconfigured REDIS_URL fails fast

Production notes:
- Use a dedicated logical DB (or key prefix) for reminder history
- Monitor memory and eviction policies: history keys must never be evicted
  (use noeviction or volatile-* with enough headroom)
"""
import logging
import redis.asyncio as redis

logger = logging.getLogger(__name__)


def create_redis(url: str) -> redis.Redis:
    """Create an async Redis client (connections are opened lazily)."""
    logger.info("Creating Redis client for %s", url)
    return redis.Redis.from_url(url, encoding="utf-8", decode_responses=True)


async def ping(client: redis.Redis) -> bool:
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.error("Redis ping failed: %s", e)
        return False
