from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Callable, Protocol

from redis.asyncio import Redis

from stockgate.core.config import get_settings


logger = logging.getLogger(__name__)


# Increment and arm the expiry in one server-side step so instances never race on read-then-write.
_INCR_WITH_TTL_LUA = r"""
local count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
local ttl = redis.call("PTTL", KEYS[1])
if ttl < 0 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


@dataclass(frozen=True)
class CounterHit:
    count: int
    ttl_ms: int


class CounterStore(Protocol):
    async def incr_with_ttl(self, key: str, ttl_ms: int) -> CounterHit: ...

    async def aclose(self) -> None: ...


class RedisCounterStore:
    # Shared across gateway instances; the counter lives in Redis, never in process memory.
    def __init__(self, redis: Redis | None = None, *, url: str | None = None) -> None:
        self._redis = redis
        self._url = url
        self._owns_client = redis is None
        self._lock = asyncio.Lock()

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        async with self._lock:
            if self._redis is None:
                settings = get_settings()
                self._redis = Redis.from_url(
                    self._url or settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
        return self._redis

    async def incr_with_ttl(self, key: str, ttl_ms: int) -> CounterHit:
        redis = await self._client()
        result = await redis.eval(_INCR_WITH_TTL_LUA, 1, key, int(ttl_ms))
        return CounterHit(count=int(result[0]), ttl_ms=int(result[1]))

    async def aclose(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None


class MemoryCounterStore:
    # Single-process fallback for local development and tests; not shared across instances.
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time
        self._counters: dict[str, tuple[int, float]] = {}

    async def incr_with_ttl(self, key: str, ttl_ms: int) -> CounterHit:
        now = self._time_provider()
        count, expires_at = self._counters.get(key, (0, 0.0))
        if expires_at <= now:
            count, expires_at = 0, now + ttl_ms / 1000.0
        count += 1
        self._counters[key] = (count, expires_at)
        self._purge(now)
        return CounterHit(count=count, ttl_ms=max(0, int((expires_at - now) * 1000)))

    def _purge(self, now: float) -> None:
        # Keep memory bounded by dropping expired windows opportunistically.
        if len(self._counters) < 10000:
            return
        for key in [key for key, (_count, expires) in self._counters.items() if expires <= now]:
            del self._counters[key]

    async def aclose(self) -> None:
        self._counters.clear()


def build_counter_store() -> CounterStore:
    settings = get_settings()
    if settings.rl_store.lower() == "memory":
        logger.info("rate_limit_store backend=memory")
        return MemoryCounterStore()
    logger.info("rate_limit_store backend=redis")
    return RedisCounterStore(url=settings.redis_url)
