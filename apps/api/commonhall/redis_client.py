from __future__ import annotations

from redis import Redis

from .settings import settings


def get_redis_client() -> Redis | None:
    """Client for the lock store, or None when REDIS_URL is blank."""
    if not settings.lock_store_configured:
        return None
    return Redis.from_url(settings.redis_url, decode_responses=True)
