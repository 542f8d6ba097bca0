"""
services/cache.py — KeyValueCache implementations.

RedisCache   shared across workers; the production cache.
MemoryCache  process-local; development and tests (REDIS_URL unset).

Both honour the same contract: plain string values, TTLs in whole seconds,
and every failure to reach the backing service surfaces as CacheUnavailable.
The multi-step primitives (sliding window, concurrency slots) are Lua scripts
on Redis so each one is a single atomic server-side operation.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time

from redis import Redis
from redis.exceptions import RedisError

from backend.authority.errors import CacheUnavailable

logger = logging.getLogger(__name__)


class RedisCache:
    """Thin synchronous Redis wrapper with an explicit per-call deadline."""

    # Trim hits older than the window, then admit if under the limit.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  return 0
end
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
return 1
"""

    _ACQUIRE_SLOT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local max_allowed = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
if current < max_allowed then
  redis.call('INCR', KEYS[1])
  redis.call('EXPIRE', KEYS[1], ttl)
  return 1
end
return 0
"""

    _RELEASE_SLOT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current > 0 then
  return redis.call('DECR', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0) -> None:
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._acquire_slot = self.client.register_script(self._ACQUIRE_SLOT_SCRIPT)
        self._release_slot = self.client.register_script(self._RELEASE_SLOT_SCRIPT)

    def get(self, key: str) -> str | None:
        try:
            return self.client.get(key)
        except RedisError as exc:
            raise self._unavailable("get", exc)

    def set(self, key: str, value: str) -> None:
        try:
            self.client.set(key, value)
        except RedisError as exc:
            raise self._unavailable("set", exc)

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self.client.set(key, value, ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise self._unavailable("set_with_ttl", exc)

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            self.client.delete(*keys)
        except RedisError as exc:
            raise self._unavailable("delete", exc)

    def hit_window(self, key: str, now: float, window_seconds: int, limit: int) -> bool:
        try:
            allowed = self._sliding_window(
                keys=[key],
                args=[now, window_seconds, limit, f"{now}:{secrets.token_hex(8)}"],
            )
        except RedisError as exc:
            raise self._unavailable("hit_window", exc)
        return bool(int(allowed))

    def acquire_slot(self, key: str, limit: int, ttl_seconds: int) -> bool:
        try:
            acquired = self._acquire_slot(keys=[key], args=[limit, ttl_seconds])
        except RedisError as exc:
            raise self._unavailable("acquire_slot", exc)
        return bool(int(acquired))

    def release_slot(self, key: str) -> None:
        try:
            self._release_slot(keys=[key])
        except RedisError as exc:
            raise self._unavailable("release_slot", exc)

    def ping(self) -> None:
        try:
            self.client.ping()
        except RedisError as exc:
            raise self._unavailable("ping", exc)

    @staticmethod
    def _unavailable(operation: str, exc: RedisError) -> CacheUnavailable:
        logger.warning("Redis %s failed: %s", operation, type(exc).__name__)
        error = CacheUnavailable(f"cache {operation} failed")
        error.__cause__ = exc
        return error


class MemoryCache:
    """
    Process-local cache with the same semantics as RedisCache.

    Expiry uses time.monotonic(); `now` passed to hit_window is only used as
    the window's time base, exactly as the Redis script uses it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, tuple[str, float | None]] = {}
        self._windows: dict[str, list[float]] = {}
        self._slots: dict[str, int] = {}

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, deadline = entry
            if deadline is not None and deadline <= time.monotonic():
                del self._values[key]
                return None
            return value

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = (value, None)

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, time.monotonic() + max(1, int(ttl_seconds)))

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._values.pop(key, None)

    def hit_window(self, key: str, now: float, window_seconds: int, limit: int) -> bool:
        with self._lock:
            hits = [t for t in self._windows.get(key, []) if t > now - window_seconds]
            if len(hits) >= limit:
                self._windows[key] = hits
                return False
            hits.append(now)
            self._windows[key] = hits
            return True

    def acquire_slot(self, key: str, limit: int, ttl_seconds: int) -> bool:
        with self._lock:
            current = self._slots.get(key, 0)
            if current >= limit:
                return False
            self._slots[key] = current + 1
            return True

    def release_slot(self, key: str) -> None:
        with self._lock:
            current = self._slots.get(key, 0)
            if current > 1:
                self._slots[key] = current - 1
            else:
                self._slots.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
            self._windows.clear()
            self._slots.clear()
