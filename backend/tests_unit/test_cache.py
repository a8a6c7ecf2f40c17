"""
TTL Cache Tests (Unit)
======================

WHAT: Unit tests for the in-memory and Redis-backed TTL caches.
WHY: Gap reports are memoized; stale entries must expire and a Redis outage
     must degrade to cache misses instead of failing requests.

REFERENCES:
- backend/adpulse/services/cache.py
"""

import redis

from adpulse.services.cache import InMemoryTTLCache, RedisTTLCache


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.store = {}
        self.ttls = {}
        self.fail = fail

    def _maybe_fail(self):
        if self.fail:
            raise redis.ConnectionError("redis down")

    def get(self, key):
        self._maybe_fail()
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self._maybe_fail()
        self.store[key] = value
        self.ttls[key] = ttl

    def scan_iter(self, match=None):
        self._maybe_fail()
        prefix = (match or "*").rstrip("*")
        return [key for key in list(self.store) if key.startswith(prefix)]

    def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)

    def ping(self):
        self._maybe_fail()
        return True


def test_in_memory_cache_expires_entries() -> None:
    clock = _Clock()
    cache = InMemoryTTLCache(default_ttl_seconds=10, clock=clock)

    cache.set("a", {"x": 1})
    cache.set("b", 2, ttl_seconds=100)
    assert cache.get("a") == {"x": 1}

    clock.now = 10
    assert cache.get("a") is None
    assert cache.get("b") == 2


def test_in_memory_cache_clear() -> None:
    cache = InMemoryTTLCache()
    cache.set("a", 1)
    cache.set("b", 2)

    cache.clear()

    assert len(cache) == 0
    assert cache.get("a") is None


def test_redis_cache_stores_json_with_prefix_and_ttl() -> None:
    client = _FakeRedis()
    cache = RedisTTLCache(client, default_ttl_seconds=300)

    cache.set("gaps:1", {"daysMissing": 2})

    assert client.ttls["adpulse:cache:gaps:1"] == 300
    assert cache.get("gaps:1") == {"daysMissing": 2}
    assert cache.get("missing") is None


def test_redis_cache_clear_only_touches_prefix() -> None:
    client = _FakeRedis()
    client.store["other:key"] = "keep"
    cache = RedisTTLCache(client)
    cache.set("a", 1, ttl_seconds=5)

    cache.clear()

    assert cache.get("a") is None
    assert client.store == {"other:key": "keep"}


def test_redis_errors_degrade_to_misses() -> None:
    cache = RedisTTLCache(_FakeRedis(fail=True))

    cache.set("a", 1)
    cache.clear()

    assert cache.get("a") is None
    assert cache.health_check() is False
