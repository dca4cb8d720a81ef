import fakeredis
import pytest
import redis

import cache as cache_mod
from cache import Cache


@pytest.fixture
def cache():
    return Cache(fakeredis.FakeRedis(decode_responses=True), default_ttl=60)


def test_set_get_and_ttl(cache):
    cache.set("analytics:dashboard", {"orders": 3, "revenue": 270.0})
    assert cache.get("analytics:dashboard") == {"orders": 3, "revenue": 270.0}
    assert 0 < cache.client.ttl("analytics:dashboard") <= 60
    assert cache.get("missing") is None


def test_invalidate_by_pattern(cache):
    cache.set("products:list:a", [1])
    cache.set("products:list:b", [2])
    cache.set("categories:list:all", [3])

    cache_mod.invalidate(cache, "products:*")
    assert cache.get("products:list:a") is None
    assert cache.get("products:list:b") is None
    assert cache.get("categories:list:all") == [3]


def test_invalidate_without_cache_is_a_no_op():
    cache_mod.invalidate(None, "products:*")


def test_hit_counts_within_window(cache):
    assert cache.hit("ratelimit:1.2.3.4:1", 900) == 1
    assert cache.hit("ratelimit:1.2.3.4:1", 900) == 2


class BrokenRedis:
    def get(self, key):
        raise redis.ConnectionError("down")

    def setex(self, key, ttl, value):
        raise redis.ConnectionError("down")

    def pipeline(self):
        raise redis.ConnectionError("down")


def test_unreachable_redis_is_a_miss():
    cache = Cache(BrokenRedis())
    assert cache.get("analytics:dashboard") is None
    assert cache.set("analytics:dashboard", {}) is False
    assert cache.hit("ratelimit:x:1", 60) is None
