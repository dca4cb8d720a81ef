"""
Advisory key/value cache on Redis.

The cache memoises expensive read aggregations with a TTL and keeps rate-limit
counters. It is never the source of truth: any Redis error is logged and
treated as a miss.
"""

import json
import logging
from typing import Any, Optional

import redis
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class Cache:
    def __init__(self, client, default_ttl: int = 3600):
        self.client = client
        self.default_ttl = default_ttl

    @classmethod
    def from_url(cls, url: str, default_ttl: int = 3600) -> "Cache":
        return cls(redis.Redis.from_url(url, decode_responses=True), default_ttl)

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning("Cache get %s failed: %s", key, e)
            return None
        if raw is None:
            return None
        logger.debug("Cache hit: %s", key)
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            self.client.setex(key, ttl or self.default_ttl, json.dumps(jsonable_encoder(value)))
            return True
        except redis.RedisError as e:
            logger.warning("Cache set %s failed: %s", key, e)
            return False

    def delete(self, key: str) -> bool:
        try:
            self.client.delete(key)
            return True
        except redis.RedisError as e:
            logger.warning("Cache delete %s failed: %s", key, e)
            return False

    def invalidate(self, pattern: str) -> int:
        removed = 0
        try:
            for key in self.client.scan_iter(match=pattern, count=100):
                removed += self.client.delete(key)
        except redis.RedisError as e:
            logger.warning("Cache invalidation %s failed: %s", pattern, e)
        if removed:
            logger.debug("Cache invalidated %s (%d keys)", pattern, removed)
        return removed

    def hit(self, key: str, window: int) -> Optional[int]:
        """Increment a fixed-window counter; None when the store is unreachable."""
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, window)
            count, _ = pipe.execute()
            return int(count)
        except redis.RedisError as e:
            logger.warning("Rate counter %s failed: %s", key, e)
            return None

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        try:
            self.client.close()
        except redis.RedisError as e:
            logger.warning("Closing cache connection failed: %s", e)


def invalidate(cache: Optional[Cache], *patterns: str) -> None:
    if cache is None:
        return
    for pattern in patterns:
        cache.invalidate(pattern)
