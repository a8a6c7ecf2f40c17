"""TTL cache implementations.

WHAT:
    A small cache interface (`get` / `set` / `clear` with TTL) and two
    implementations: in-process (`InMemoryTTLCache`) and Redis-backed
    (`RedisTTLCache`).

WHY:
    Services that memoize lookups (gap detection, sync status) receive a
    cache instance explicitly. The instance is built once in `create_app`
    and stored on `app.state`, so tests can pass their own.

REFERENCES:
    - adpulse/main.py (_build_cache)
    - adpulse/services/sync_status_service.py (consumer)
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis

logger = logging.getLogger(__name__)


class TTLCache(Protocol):
    """Minimal cache contract used by the services."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemoryTTLCache:
    """Thread-safe dict cache with per-entry expiry."""

    def __init__(
        self,
        default_ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisTTLCache:
    """Redis-backed cache storing JSON values under a key prefix.

    Redis errors are logged and treated as cache misses; the cache is an
    optimization, never a source of truth.
    """

    def __init__(
        self,
        client: "redis.Redis",
        default_ttl_seconds: int = 300,
        prefix: str = "adpulse:cache:",
    ) -> None:
        self._client = client
        self.default_ttl_seconds = default_ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, default_ttl_seconds: int = 300) -> "RedisTTLCache":
        return cls(redis.Redis.from_url(url, decode_responses=True), default_ttl_seconds)

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self._client.get(self.prefix + key)
        except redis.RedisError as exc:
            logger.warning("[CACHE] Redis get failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        try:
            self._client.setex(self.prefix + key, ttl, json.dumps(value, default=str))
        except redis.RedisError as exc:
            logger.warning("[CACHE] Redis set failed for %s: %s", key, exc)

    def clear(self) -> None:
        try:
            keys = list(self._client.scan_iter(match=f"{self.prefix}*"))
            if keys:
                self._client.delete(*keys)
        except redis.RedisError as exc:
            logger.warning("[CACHE] Redis clear failed: %s", exc)

    def health_check(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False
