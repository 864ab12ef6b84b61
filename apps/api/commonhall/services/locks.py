from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from redis import Redis
from redis.exceptions import RedisError

from ..redis_client import get_redis_client

logger = structlog.get_logger()

# Compare-and-delete: only the holder of the token may remove the key.
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""

EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
else
    return 0
end
"""


class MutexLock:
    """Named, TTL-bound lock shared by every worker instance.

    Without a client the lock runs degraded: every acquire succeeds, which is only
    correct when exactly one instance is deployed.
    """

    def __init__(self, client: Redis | None) -> None:
        self.client = client
        if client is None:
            logger.warning(
                "distributed_lock_degraded",
                reason="no lock store configured",
                consequence="mutual exclusion assumes a single instance",
            )

    @property
    def degraded(self) -> bool:
        return self.client is None

    def try_acquire(self, key: str, owner_token: str, ttl_seconds: float) -> bool:
        if self.client is None:
            return True
        ttl_ms = max(1, int(ttl_seconds * 1000))
        try:
            acquired = self.client.set(key, owner_token, nx=True, px=ttl_ms)
        except RedisError as exc:
            logger.error("lock_acquire_failed", key=key, error=str(exc))
            return False
        return bool(acquired)

    def release(self, key: str, owner_token: str) -> None:
        if self.client is None:
            return
        try:
            self.client.eval(RELEASE_SCRIPT, 1, key, owner_token)
        except RedisError as exc:
            # The TTL reclaims the key.
            logger.warning("lock_release_failed", key=key, error=str(exc))

    def extend(self, key: str, owner_token: str, ttl_seconds: float) -> bool:
        """Reset the TTL of a lock this caller still holds. False means it was lost."""
        if self.client is None:
            return True
        ttl_ms = max(1, int(ttl_seconds * 1000))
        try:
            extended = self.client.eval(EXTEND_SCRIPT, 1, key, owner_token, ttl_ms)
        except RedisError as exc:
            logger.warning("lock_extend_failed", key=key, error=str(exc))
            return False
        return bool(extended)

    @contextmanager
    def guard(self, key: str, ttl_seconds: float) -> Iterator[bool]:
        token = uuid.uuid4().hex
        acquired = self.try_acquire(key, token, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key, token)


def build_mutex_lock() -> MutexLock:
    return MutexLock(get_redis_client())
