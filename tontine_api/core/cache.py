"""
Best-effort Redis cache.

Disabled when REDIS_URL is empty. Every operation swallows backend failures
and logs them, so a missing or broken Redis only costs latency.

Usage:
    from tontine_api.core import cache

    catalog = await cache.get_json(key)
    if catalog is None:
        catalog = await load_catalog()
        await cache.set_json(key, catalog)
"""
import json
from typing import Any, Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from tontine_api.core import config
from tontine_api.utils import get_logger


log = get_logger(__name__)

KEY_PREFIX = "tontine:"

_client: Optional[redis_async.Redis] = None


def _get_client() -> Optional[redis_async.Redis]:
    global _client
    if not config.REDIS_URL:
        return None
    if _client is None:
        _client = redis_async.from_url(
            config.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=1.0,
            socket_connect_timeout=1.0,
        )
    return _client


def catalog_key(association_id: str) -> str:
    return f"{KEY_PREFIX}catalog:{association_id}"


async def get_json(key: str) -> Optional[Any]:
    client = _get_client()
    if client is None:
        return None
    try:
        value = await client.get(key)
    except (RedisError, OSError) as e:
        log.warning("Cache get failed for %s: %s", key, e)
        return None
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError:
        log.warning("Discarding undecodable cache entry %s", key)
        return None


async def set_json(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    client = _get_client()
    if client is None:
        return False
    try:
        await client.set(key, json.dumps(value), ex=ttl or config.CACHE_TTL_SECONDS)
        return True
    except (RedisError, OSError) as e:
        log.warning("Cache set failed for %s: %s", key, e)
        return False


async def invalidate(key: str) -> None:
    client = _get_client()
    if client is None:
        return
    try:
        await client.delete(key)
    except (RedisError, OSError) as e:
        log.warning("Cache invalidate failed for %s: %s", key, e)
