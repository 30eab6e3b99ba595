"""Redis cache for the latest index rates.

Rates are cached as one JSON document keyed by index code, e.g.
{"SOFR": {"code": "SOFR", "rate_pct": 5.31, "as_of": "2026-10-16", "source": "nyfed"}}.
Reads degrade to a miss when Redis is not configured, unreachable or holds
a document that no longer decodes; the database stays the source of truth.
"""

from typing import Any, Optional

import orjson
import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from app.core.config import get_settings

logger = structlog.get_logger()


INDEX_RATES_KEY = "rates:index:latest"


_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get Redis client, creating if needed."""
    global _redis_client

    settings = get_settings()
    if not settings.redis_url:
        return None

    if _redis_client is None:
        _redis_client = redis.from_url(settings.redis_url, decode_responses=False)

    return _redis_client


async def close_redis():
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None


async def get_cached_index_rates() -> Optional[dict[str, dict[str, Any]]]:
    """Cached quotes by index code, or None on a miss."""
    client = await get_redis()
    if client is None:
        return None
    try:
        raw = await client.get(INDEX_RATES_KEY)
    except RedisError as e:
        logger.warning("cache.index_rates.read_failed", error=str(e))
        return None
    if raw is None:
        return None
    try:
        rates = orjson.loads(raw)
    except orjson.JSONDecodeError:
        logger.warning("cache.index_rates.undecodable", key=INDEX_RATES_KEY)
        return None
    return rates if isinstance(rates, dict) and rates else None


async def cache_index_rates(rates: dict[str, dict[str, Any]]) -> bool:
    client = await get_redis()
    if client is None:
        return False
    try:
        await client.setex(INDEX_RATES_KEY, get_settings().index_rate_cache_ttl, orjson.dumps(rates))
        return True
    except RedisError as e:
        logger.warning("cache.index_rates.write_failed", error=str(e))
        return False


async def invalidate_index_rates() -> bool:
    """Drop the cached document after new observations are stored."""
    client = await get_redis()
    if client is None:
        return False
    try:
        await client.delete(INDEX_RATES_KEY)
        return True
    except RedisError as e:
        logger.warning("cache.index_rates.invalidate_failed", error=str(e))
        return False


async def cache_ping() -> tuple[bool, str]:
    """Check if Redis is reachable. Returns (success, message)."""
    client = await get_redis()
    if client is None:
        return False, "no client"
    try:
        await client.ping()
        return True, "connected"
    except RedisError as e:
        return False, str(e)
