import json
from datetime import date
from uuid import UUID

from loguru import logger
from redis.asyncio import Redis

from dispatch.settings import REDIS_URL

_redis: Redis | None = None
SCHEDULE_TTL = 60  # 1 minute


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


def _schedule_key(supplier_id: UUID, day: date) -> str:
    return f"schedule:{supplier_id}:{day.isoformat()}"


async def get_schedule_cache(supplier_id: UUID, day: date) -> list | None:
    try:
        data = await get_redis().get(_schedule_key(supplier_id, day))
        return json.loads(data) if data else None
    except Exception:
        logger.warning("Redis get failed, serving schedule from the database", exc_info=True)
        return None


async def set_schedule_cache(supplier_id: UUID, day: date, slots: list) -> None:
    try:
        await get_redis().setex(
            _schedule_key(supplier_id, day), SCHEDULE_TTL, json.dumps(slots)
        )
    except Exception:
        logger.warning("Redis set failed, schedule left uncached", exc_info=True)


async def invalidate_schedule_cache(supplier_ids, day: date) -> None:
    """Drop cached schedules of every supplier touched by a booking change."""
    keys = [_schedule_key(s, day) for s in supplier_ids if s is not None]
    if not keys:
        return
    try:
        await get_redis().delete(*keys)
    except Exception:
        logger.warning("Redis invalidate failed for schedule cache", exc_info=True)
