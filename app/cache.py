import json
from datetime import date
from uuid import UUID

from loguru import logger
from redis.asyncio import Redis

from app.settings import REDIS_URL

_redis: Redis | None = None
SLOTS_TTL = 60  # 1 minute


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


def _slots_key(listing_id: UUID, day: date) -> str:
    return f"slots:{listing_id}:{day.isoformat()}"


async def get_slots_cache(listing_id: UUID, day: date) -> list | None:
    """Booked ranges for (listing, day), or None on a miss."""
    try:
        data = await get_redis().get(_slots_key(listing_id, day))
        return json.loads(data) if data else None
    except Exception:
        logger.warning("Redis get failed, skipping slots cache", exc_info=True)
        return None


async def set_slots_cache(listing_id: UUID, day: date, booked: list) -> None:
    try:
        await get_redis().setex(_slots_key(listing_id, day), SLOTS_TTL, json.dumps(booked))
    except Exception:
        logger.warning("Redis set failed, skipping slots cache", exc_info=True)


async def invalidate_slots_cache(listing_id: UUID, *days: date) -> None:
    if not days:
        return
    try:
        await get_redis().delete(*(_slots_key(listing_id, day) for day in days))
    except Exception:
        logger.warning("Redis invalidate failed for slots cache", exc_info=True)
