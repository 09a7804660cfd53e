"""Process-wide proxy state.

A :class:`ProxyContext` bundles everything that must outlive a single request
in a warm process: the HTTP connection pool, credentials, the response cache
and the upstream concurrency limiter (inside the client). It is built once
and handed to request handlers; tests build a fresh one per case.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date

import httpx

from jqproxy.auth import TokenManager
from jqproxy.cache import ResponseCache
from jqproxy.client import JQuantsClient
from jqproxy.config import ProxySettings
from jqproxy.market import MarketData
from jqproxy.metrics import DEFAULT_WEIGHTS, ScoreWeights
from jqproxy.portfolio import PortfolioService
from jqproxy.screening import Screener

logger = logging.getLogger(__name__)


@dataclass
class ProxyContext:
    settings: ProxySettings
    http: httpx.AsyncClient
    tokens: TokenManager
    client: JQuantsClient
    cache: ResponseCache
    market: MarketData
    screener: Screener
    portfolio: PortfolioService

    @classmethod
    def create(
        cls,
        settings: ProxySettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        timer: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        today: Callable[[], date] = date.today,
        weights: ScoreWeights = DEFAULT_WEIGHTS,
    ) -> ProxyContext:
        """Wire up all components from ``settings``.

        Args:
            transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
            http: Pre-built client; takes precedence over ``transport``.
            clock: Wall clock for token expiry.
            timer: Monotonic clock for cache ages and screening budgets.
        """
        if http is None:
            http = httpx.AsyncClient(transport=transport, timeout=settings.timeout)
        tokens = TokenManager(settings, http, clock=clock)
        client = JQuantsClient.from_settings(settings, http, tokens, sleep=sleep)
        cache = ResponseCache(maxsize=settings.cache_maxsize, timer=timer)
        market = MarketData(client, cache, today=today)
        logger.info(
            f"Proxy context ready (api={settings.api_url}, "
            f"concurrency={settings.max_concurrency}, retries={settings.max_retries})"
        )
        return cls(
            settings=settings,
            http=http,
            tokens=tokens,
            client=client,
            cache=cache,
            market=market,
            screener=Screener(market, weights=weights, clock=timer),
            portfolio=PortfolioService(market),
        )

    async def aclose(self) -> None:
        await self.http.aclose()
