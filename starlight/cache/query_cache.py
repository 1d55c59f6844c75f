import asyncio
import json
import time
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import redis

from starlight.obs.logger import log_event
from starlight.obs.metrics import inc_counter


class CacheTTL:
    """Seconds each query kind stays fresh."""
    AUTOCOMPLETE = 5 * 60
    COUNTRIES = 30 * 60
    CITIES = 15 * 60
    CONNECTIONS = 10 * 60
    STATIONS = 20 * 60
    ROUTES = 2 * 60
    SEATS = 60
    DISCOUNTS = 60
    BAGGAGE = 60
    PLAN = 30 * 60


def create_cache_key(kind: str, params: Dict[str, Any]) -> str:
    # sorted keys so argument order never splits the cache
    return f"{kind}:{json.dumps(params, sort_keys=True, default=str, ensure_ascii=False)}"


def _kind(key: str) -> str:
    return key.split(":", 1)[0]


class QueryCache:
    """In-process TTL cache for provider query results.

    Values must be JSON-compatible (lists/dicts of plain data) so the Redis
    implementation can stand in without changing callers. Concurrent writers
    to the same key are last-writer-wins.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float, float]] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._miss(key)
            return None
        value, stored_at, ttl = entry
        if self._clock() - stored_at > ttl:
            del self._entries[key]
            self._miss(key)
            return None
        self._hits += 1
        inc_counter("cache_hits_total", {"kind": _kind(key)})
        return value

    def _miss(self, key: str) -> None:
        self._misses += 1
        inc_counter("cache_misses_total", {"kind": _kind(key)})

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = (value, self._clock(), float(ttl_seconds))

    def clear(self) -> None:
        self._entries.clear()

    def clear_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, stored_at, ttl) in self._entries.items() if now - stored_at > ttl]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "backend": "memory",
            "size": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": f"{(self._hits / total * 100) if total else 0:.1f}%",
        }


class RedisQueryCache:
    """Same interface as QueryCache, stored in Redis with SETEX.

    Falls back to an in-process QueryCache if Redis can't be reached at
    startup or fails mid-flight.
    """

    def __init__(self, redis_url: str, prefix: str = "qc:", clock: Callable[[], float] = time.monotonic):
        self.prefix = prefix
        self._fallback = QueryCache(clock=clock)
        self._hits = 0
        self._misses = 0
        try:
            self.client: Optional[redis.Redis] = redis.from_url(redis_url, decode_responses=True)
            self.client.ping()
        except redis.RedisError as e:
            log_event("cache_redis_unavailable", level="WARNING", error=str(e))
            self.client = None

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _degrade(self, op: str, error: Exception) -> None:
        log_event("cache_redis_error", level="WARNING", op=op, error=str(error))
        self.client = None

    def get(self, key: str) -> Optional[Any]:
        if self.client is None:
            return self._fallback.get(key)
        try:
            data = self.client.get(self._key(key))
        except redis.RedisError as e:
            self._degrade("get", e)
            return self._fallback.get(key)
        if data is None:
            self._misses += 1
            inc_counter("cache_misses_total", {"kind": _kind(key)})
            return None
        self._hits += 1
        inc_counter("cache_hits_total", {"kind": _kind(key)})
        return json.loads(data)

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if self.client is None:
            self._fallback.set(key, value, ttl_seconds)
            return
        try:
            self.client.setex(self._key(key), max(1, int(ttl_seconds)), json.dumps(value, default=str))
        except redis.RedisError as e:
            self._degrade("set", e)
            self._fallback.set(key, value, ttl_seconds)

    def clear(self) -> None:
        self._fallback.clear()
        if self.client is None:
            return
        try:
            keys = list(self.client.scan_iter(f"{self.prefix}*"))
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as e:
            self._degrade("clear", e)

    def clear_expired(self) -> int:
        # Redis expires keys itself
        return self._fallback.clear_expired()

    def stats(self) -> Dict[str, Any]:
        if self.client is None:
            return self._fallback.stats()
        total = self._hits + self._misses
        return {
            "backend": "redis",
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": f"{(self._hits / total * 100) if total else 0:.1f}%",
        }


class CacheSweeper:
    """Background task that periodically drops expired cache entries.

    ``housekeeping`` jobs (session sweeps, pruning finished reservations) run
    on the same tick; a failing job is logged and does not stop the loop.
    """

    def __init__(self, cache, interval_seconds: float = 300,
                 housekeeping: Sequence[Callable[[], Any]] = ()):
        self.cache = cache
        self.interval_seconds = interval_seconds
        self.housekeeping = list(housekeeping)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    def sweep_once(self) -> int:
        removed = self.cache.clear_expired()
        if removed:
            log_event("cache_sweep", removed=removed)
        for job in self.housekeeping:
            try:
                job()
            except Exception as e:
                log_event("housekeeping_failed", level="ERROR", job=getattr(job, "__name__", repr(job)),
                          error=f"{type(e).__name__}: {e}")
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.sweep_once()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
