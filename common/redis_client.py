"""
Redis client utilities for per-order locking and notification dedupe
"""
import uuid
import logging
import redis
from typing import Optional
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return self.client.ping()
        except redis.RedisError:
            return False

    # Per-order single flight
    def acquire_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        """Take ``lock:<name>``; returns the owner token, or None if held elsewhere.

        Raises redis.RedisError when Redis itself is unreachable so callers can
        decide whether to fail open.
        """
        token = uuid.uuid4().hex
        if self.client.set(f"lock:{name}", token, nx=True, ex=ttl_seconds):
            return token
        return None

    def extend_lock(self, name: str, token: str, ttl_seconds: int) -> bool:
        """Push the lock's expiry out to ``ttl_seconds``; False if we no longer own it"""
        key = f"lock:{name}"
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(key)
                if pipe.get(key) != token:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.expire(key, ttl_seconds)
                pipe.execute()
                return True
        except redis.WatchError:
            return False

    def release_lock(self, name: str, token: str) -> bool:
        """Release a lock only if we still own it"""
        key = f"lock:{name}"
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(key)
                if pipe.get(key) != token:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
                return True
        except redis.WatchError:
            return False
        except redis.RedisError as e:
            logger.warning(f"Failed to release lock {key}: {e}")
            return False

    # Delivery dedupe
    def was_sent(self, event_id: str) -> bool:
        return bool(self.client.exists(f"notif:{event_id}"))

    def mark_sent(self, event_id: str, ttl_seconds: int = 7 * 24 * 3600) -> None:
        self.client.set(f"notif:{event_id}", 1, ex=ttl_seconds)

# Global Redis client instance
redis_client = RedisClient()
