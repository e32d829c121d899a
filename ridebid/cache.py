import json
import logging
from typing import Any, Optional

from redis.asyncio import Redis
from .config import settings

logger = logging.getLogger(__name__)

redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)


async def ping() -> bool:
    try:
        return await redis_client.ping()
    except Exception:
        return False


async def get_json(key: str) -> Optional[Any]:
    """Cached value for ``key``; a redis outage reads as a miss."""
    try:
        raw = await redis_client.get(key)
    except Exception as e:
        logger.warning("cache_get_failed: key=%s error=%s", key, e)
        return None
    return json.loads(raw) if raw is not None else None


async def set_json(key: str, value: Any, ttl_sec: int):
    try:
        await redis_client.set(key, json.dumps(value), ex=ttl_sec)
    except Exception as e:
        logger.warning("cache_set_failed: key=%s error=%s", key, e)
