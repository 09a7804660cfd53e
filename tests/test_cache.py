from __future__ import annotations

import asyncio

import pytest

from jqproxy.cache import DEFAULT_TTL, CacheEntry, ResponseCache, make_cache_key, ttl_for_path


class TestMakeCacheKey:
    def test_parameter_order_does_not_matter(self):
        a = make_cache_key("GET", "/v1/prices/daily_quotes", {"date": "2024-01-15", "code": "7203"})
        b = make_cache_key("get", "/v1/prices/daily_quotes", {"code": "7203", "date": "2024-01-15"})

        assert a == b == "GET /v1/prices/daily_quotes?code=7203&date=2024-01-15"

    def test_different_values_give_different_keys(self):
        a = make_cache_key("GET", "/v1/fins/statements", {"code": "7203"})
        b = make_cache_key("GET", "/v1/fins/statements", {"code": "6758"})

        assert a != b

    def test_none_values_are_skipped(self):
        key = make_cache_key("GET", "/v1/prices/daily_quotes", {"code": "7203", "from": None})

        assert key == make_cache_key("GET", "/v1/prices/daily_quotes", {"code": "7203"})

    def test_without_params(self):
        assert make_cache_key("GET", "v1/listed/info/") == "GET /v1/listed/info"

    def test_list_values_expand_and_are_encoded(self):
        key = make_cache_key("GET", "/x", {"codes": ["b", "a"], "q": "a b&c"})

        assert key == "GET /x?codes=a&codes=b&q=a+b%26c"


class TestTtlForPath:
    @pytest.mark.parametrize(
        "path, ttl",
        [
            ("/v1/listed/info", 24 * 60 * 60),
            ("/v1/markets/trading_calendar", 12 * 60 * 60),
            ("/v1/prices/daily_quotes", 10 * 60),
            ("/v1/fins/statements", 6 * 60 * 60),
            ("/v1/markets/weekly_margin_interest", 60 * 60),
            ("/v1/markets/daily_margin_interest", 30 * 60),
            ("/v1/fins/announcement", DEFAULT_TTL),
        ],
    )
    def test_endpoint_ttls(self, path, ttl):
        assert ttl_for_path(path) == ttl


class TestCacheEntry:
    def test_expiry_boundary(self):
        entry = CacheEntry(body={}, stored_at=100.0, ttl=10.0)

        assert not entry.expired(109.999)
        assert entry.expired(110.0)


class TestResponseCache:
    def test_served_until_ttl_boundary(self, clock):
        cache = ResponseCache(timer=clock)
        cache.set("k", {"v": 1}, ttl=600)

        clock.advance(600 - 0.001)
        assert cache.lookup("k").body == {"v": 1}

        clock.advance(0.002)
        assert cache.lookup("k") is None
        assert len(cache) == 0

    def test_non_positive_ttl_is_not_stored(self, clock):
        cache = ResponseCache(timer=clock)
        cache.set("k", {"v": 1}, ttl=0)

        assert len(cache) == 0

    def test_lru_eviction(self, clock):
        cache = ResponseCache(maxsize=2, timer=clock)
        cache.set("a", 1, ttl=60)
        cache.set("b", 2, ttl=60)
        cache.lookup("a")
        cache.set("c", 3, ttl=60)

        assert cache.lookup("a") is not None
        assert cache.lookup("b") is None
        assert cache.lookup("c") is not None

    def test_get_or_fetch_hits_and_misses(self, clock):
        cache = ResponseCache(timer=clock)
        calls = []

        async def fetch():
            calls.append(1)
            return {"n": len(calls)}

        async def scenario():
            first = await cache.get_or_fetch("k", 60, fetch)
            second = await cache.get_or_fetch("k", 60, fetch)
            clock.advance(60.001)
            third = await cache.get_or_fetch("k", 60, fetch)
            return first, second, third

        assert asyncio.run(scenario()) == ({"n": 1}, {"n": 1}, {"n": 2})
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 2}

    def test_failures_are_not_cached(self, clock):
        cache = ResponseCache(timer=clock)

        async def boom():
            raise RuntimeError("upstream down")

        with pytest.raises(RuntimeError):
            asyncio.run(cache.get_or_fetch("k", 60, boom))
        assert cache.lookup("k") is None
        assert cache.stats() == {"entries": 0, "hits": 0, "misses": 1}
