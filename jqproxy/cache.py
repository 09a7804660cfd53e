"""In-process response cache with per-endpoint TTLs.

Entries live for the lifetime of the (warm) process. Keys encode the full
request, so two requests differing only in a query value never share an entry;
expired entries are dropped lazily when the cache is next touched.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from cachetools import TLRUCache

logger = logging.getLogger(__name__)

DEFAULT_TTL = 5 * 60

# Longest matching prefix wins
ENDPOINT_TTLS: dict[str, float] = {
    "/v1/listed/info": 24 * 60 * 60,
    "/v1/markets/trading_calendar": 12 * 60 * 60,
    "/v1/prices/daily_quotes": 10 * 60,
    "/v1/fins/statements": 6 * 60 * 60,
    "/v1/markets/weekly_margin_interest": 60 * 60,
    "/v1/markets/daily_margin_interest": 30 * 60,
}


def ttl_for_path(path: str, ttls: Mapping[str, float] = ENDPOINT_TTLS) -> float:
    """Return the cache TTL in seconds for an upstream path."""
    best = ""
    for prefix in ttls:
        if path.startswith(prefix) and len(prefix) > len(best):
            best = prefix
    return ttls[best] if best else DEFAULT_TTL


def make_cache_key(method: str, path: str, params: Mapping[str, Any] | None = None) -> str:
    """Build a deterministic key from method, path and query.

    Parameter order does not matter; None values are skipped and list values
    expand to repeated parameters.

    Examples:
        >>> make_cache_key("get", "/v1/prices/daily_quotes", {"date": "2024-01-15", "code": "7203"})
        'GET /v1/prices/daily_quotes?code=7203&date=2024-01-15'
    """
    pairs: list[tuple[str, str]] = []
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            pairs.extend((str(key), str(v)) for v in value)
        else:
            pairs.append((str(key), str(value)))
    query = urlencode(sorted(pairs))
    path = "/" + path.strip("/")
    return f"{method.upper()} {path}?{query}" if query else f"{method.upper()} {path}"


@dataclass(frozen=True)
class CacheEntry:
    body: Any
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


class ResponseCache:
    """TTL cache for upstream JSON bodies.

    Args:
        maxsize: Maximum number of entries; least recently used entries are
            evicted first when full.
        timer: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(self, maxsize: int = 1024, timer: Callable[[], float] = time.monotonic) -> None:
        self._timer = timer
        self._entries: TLRUCache[str, CacheEntry] = TLRUCache(
            maxsize=maxsize, ttu=self._time_to_use, timer=timer
        )
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _time_to_use(_key: str, entry: CacheEntry, _now: float) -> float:
        return entry.stored_at + entry.ttl

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)

    def lookup(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key``, or None if missing or expired."""
        self._entries.expire()
        entry = self._entries.get(key)
        if entry is None or entry.expired(self._timer()):
            return None
        return entry

    def set(self, key: str, body: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        self._entries[key] = CacheEntry(body=body, stored_at=self._timer(), ttl=ttl)

    async def get_or_fetch(
        self, key: str, ttl: float, fetch: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Serve ``key`` from cache or await ``fetch`` and store its result.

        Failures are not cached. Concurrent misses may both fetch; the last
        writer wins.
        """
        entry = self.lookup(key)
        if entry is not None:
            self.hits += 1
            return entry.body
        self.misses += 1
        logger.debug(f"Cache miss: {key}")
        body = await fetch()
        self.set(key, body, ttl)
        return body

    def stats(self) -> dict[str, int]:
        return {"entries": len(self), "hits": self.hits, "misses": self.misses}
