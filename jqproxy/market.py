"""Cached reads of J-Quants market data.

:class:`MarketData` is the only component that talks to the upstream client
on behalf of the metrics and screening code. Every read goes through the
response cache with the TTL of its endpoint; an explicit idToken override
shares the cache, since the data does not depend on who fetched it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import date, timedelta
from typing import Any

from jqproxy.cache import ResponseCache, make_cache_key, ttl_for_path
from jqproxy.client import JQuantsClient
from jqproxy.metrics import trading_days
from jqproxy.normalize import (
    ListedInstrument,
    MarginRecord,
    PriceBar,
    canonical_code,
    map_daily_public_margin,
    map_daily_quote,
    map_listed_info,
    map_weekly_margin,
)

logger = logging.getLogger(__name__)

LISTED_INFO_PATH = "/v1/listed/info"
TRADING_CALENDAR_PATH = "/v1/markets/trading_calendar"
DAILY_QUOTES_PATH = "/v1/prices/daily_quotes"
STATEMENTS_PATH = "/v1/fins/statements"
WEEKLY_MARGIN_PATH = "/v1/markets/weekly_margin_interest"
DAILY_MARGIN_PATH = "/v1/markets/daily_margin_interest"

CALENDAR_LOOKBACK_DAYS = 400


class NoDataError(LookupError):
    """The upstream answered, but holds nothing for the request."""

    pass


class MarketData:
    def __init__(
        self,
        client: JQuantsClient,
        cache: ResponseCache,
        *,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.client = client
        self.cache = cache
        self._today = today

    # ------------------------------------------------------------------
    # Cached transport
    # ------------------------------------------------------------------
    async def fetch_all(
        self,
        path: str,
        data_key: str,
        params: dict[str, Any] | None = None,
        *,
        id_token: str | None = None,
    ) -> list[dict[str, Any]]:
        """All pages of a collection endpoint, cached as one list."""
        key = "ALL " + make_cache_key("GET", path, params)
        return await self.cache.get_or_fetch(
            key,
            ttl_for_path(path),
            lambda: self.client.get_paginated(path, data_key, params, id_token=id_token),
        )

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------
    async def listed_instruments(
        self, *, id_token: str | None = None
    ) -> dict[str, ListedInstrument]:
        """Listed instruments keyed by canonical code."""
        records = await self.fetch_all(LISTED_INFO_PATH, "info", id_token=id_token)
        instruments: dict[str, ListedInstrument] = {}
        for record in records:
            item = map_listed_info(record)
            if item.code != canonical_code(None):
                instruments.setdefault(item.code, item)
        return instruments

    async def trading_days(
        self, n: int, *, lookback_days: int = CALENDAR_LOOKBACK_DAYS, id_token: str | None = None
    ) -> list[str]:
        """The last ``n`` business days up to today, ascending."""
        today = self._today()
        params = {
            "from": (today - timedelta(days=lookback_days)).isoformat(),
            "to": today.isoformat(),
        }
        calendar = await self.fetch_all(
            TRADING_CALENDAR_PATH, "trading_calendar", params, id_token=id_token
        )
        return trading_days(calendar, n)

    async def latest_trading_day(self, *, id_token: str | None = None) -> str:
        days = await self.trading_days(1, id_token=id_token)
        if not days:
            raise NoDataError("Trading calendar returned no business days")
        return days[-1]

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------
    async def daily_quotes_by_date(
        self, day: str, *, id_token: str | None = None
    ) -> list[PriceBar]:
        records = await self.fetch_all(
            DAILY_QUOTES_PATH, "daily_quotes", {"date": day}, id_token=id_token
        )
        return [map_daily_quote(r) for r in records]

    async def quotes_for_days(
        self, days: Sequence[str], *, id_token: str | None = None
    ) -> dict[str, list[PriceBar]]:
        """Bars for several days, fetched concurrently (bounded by the client limiter)."""
        unique = list(dict.fromkeys(days))
        results = await asyncio.gather(
            *(self.daily_quotes_by_date(d, id_token=id_token) for d in unique)
        )
        return dict(zip(unique, results))

    async def daily_quotes(
        self,
        code: str,
        date_from: str | None = None,
        date_to: str | None = None,
        *,
        id_token: str | None = None,
    ) -> dict[str, Any]:
        """Raw daily quotes for one code, in the upstream shape."""
        params = {"code": code, "from": date_from, "to": date_to}
        items = await self.fetch_all(DAILY_QUOTES_PATH, "daily_quotes", params, id_token=id_token)
        return {"daily_quotes": items}

    # ------------------------------------------------------------------
    # Fundamentals and margin
    # ------------------------------------------------------------------
    async def statements(self, code: str, *, id_token: str | None = None) -> list[dict[str, Any]]:
        return await self.fetch_all(
            STATEMENTS_PATH, "statements", {"code": canonical_code(code)}, id_token=id_token
        )

    async def weekly_margin(self, code: str, *, id_token: str | None = None) -> list[MarginRecord]:
        """Weekly margin balances for ``code``, oldest first."""
        records = await self.fetch_all(
            WEEKLY_MARGIN_PATH,
            "weekly_margin_interest",
            {"code": canonical_code(code)},
            id_token=id_token,
        )
        return sorted((map_weekly_margin(r) for r in records), key=lambda m: m.date)

    async def daily_public_margin(
        self, code: str, days: int, *, id_token: str | None = None
    ) -> list[MarginRecord]:
        """Daily published margin balances covering roughly the last ``days`` days."""
        today = self._today()
        # Publication lags and skips holidays; widen the window a little
        params = {
            "code": canonical_code(code),
            "from": (today - timedelta(days=days + 20)).isoformat(),
            "to": today.isoformat(),
        }
        records = await self.fetch_all(
            DAILY_MARGIN_PATH, "daily_margin_interest", params, id_token=id_token
        )
        return sorted((map_daily_public_margin(r) for r in records), key=lambda m: m.date)
