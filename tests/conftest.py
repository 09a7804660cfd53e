from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import replace
from datetime import date
from typing import Any

import httpx
import pytest

from jqproxy.config import ProxySettings
from jqproxy.context import ProxyContext

TODAY = date(2024, 1, 19)
BUSINESS_DAYS = ["2024-01-15", "2024-01-16", "2024-01-17", "2024-01-18", "2024-01-19"]

Handler = Callable[[httpx.Request], httpx.Response]


class FakeClock:
    """Manually advanced clock usable as both wall clock and monotonic timer."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeUpstream:
    """httpx.MockTransport handler routing by method and path.

    Unrouted requests get a 404, and every request is recorded.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Handler] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, response: Any, status: int = 200) -> None:
        if callable(response):
            self.routes[(method, path)] = response
        else:
            self.routes[(method, path)] = lambda request: httpx.Response(status, json=response)

    def calls(self, path: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.path == path and (method is None or r.method == method)
        ]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": f"no route {request.url.path}"})
        return handler(request)


@pytest.fixture
def clean_env(monkeypatch):
    """Clean environment fixture to isolate tests."""
    env_keys = [k for k in os.environ if k.startswith("JQ_")] + [
        "PROXY_BEARER",
        "LOG_LEVEL",
        "API_PREFIX",
    ]
    for key in env_keys:
        monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def settings():
    return ProxySettings(
        refresh_token="refresh-token",
        proxy_bearer="proxy-secret",
        page_delay=0.0,
    )


@pytest.fixture
def upstream():
    fake = FakeUpstream()
    fake.on("POST", "/v1/token/auth_refresh", {"idToken": "id-token"})
    return fake


@pytest.fixture
def make_context(upstream, settings, clock, sleeper):
    """Factory for fresh proxy contexts wired to the fake upstream."""

    def factory(**overrides: Any) -> ProxyContext:
        return ProxyContext.create(
            replace(settings, **overrides) if overrides else settings,
            transport=upstream.transport(),
            clock=clock,
            timer=clock,
            sleep=sleeper,
            today=lambda: TODAY,
        )

    return factory


@pytest.fixture
def sample_daily_quotes_data():
    """Sample daily quotes data matching J-Quants API structure."""
    return {
        "daily_quotes": [
            {
                "Code": "86970",
                "Date": "2024-01-15",
                "Open": 2845.0,
                "High": 2870.0,
                "Low": 2835.0,
                "Close": 2865.0,
                "Volume": 1234567,
                "TurnoverValue": 3.54e9,
                "AdjustmentClose": 2865.0,
            },
            {
                "Code": "13010",
                "Date": "2024-01-15",
                "Open": 4200.0,
                "High": 4250.0,
                "Low": 4180.0,
                "Close": 4230.0,
                "Volume": 567890,
                "TurnoverValue": 2.4e9,
                "AdjustmentClose": 4230.0,
            },
        ]
    }


@pytest.fixture
def sample_listed_info_data():
    """Sample listed info data matching J-Quants API structure."""
    return {
        "info": [
            {
                "Code": "13010",
                "CompanyName": "極洋",
                "CompanyNameEnglish": "KYOKUYO CO.,LTD.",
                "MarketCode": "0111",
                "MarketCodeName": "プライム",
            },
            {
                "Code": "86970",
                "CompanyName": "日本取引所グループ",
                "CompanyNameEnglish": "Japan Exchange Group, Inc.",
                "MarketCode": "0111",
                "MarketCodeName": "プライム",
            },
            {
                "Code": "41990",
                "CompanyName": "ワンダープラネット",
                "CompanyNameEnglish": "Wonder Planet Inc.",
                "MarketCode": "0113",
                "MarketCodeName": "グロース",
            },
        ]
    }


@pytest.fixture
def sample_trading_calendar_data():
    """Trading calendar covering BUSINESS_DAYS plus the surrounding weekends."""
    return {
        "trading_calendar": [
            {"Date": "2024-01-13", "HolidayDivision": "0"},
            {"Date": "2024-01-14", "HolidayDivision": "0"},
            *({"Date": d, "HolidayDivision": "1"} for d in BUSINESS_DAYS),
            {"Date": "2024-01-20", "HolidayDivision": "0"},
        ]
    }


@pytest.fixture
def sample_statements_data():
    """Two disclosures for 7203 in J-Quants statements shape."""
    return {
        "statements": [
            {
                "DisclosedDate": "2023-11-01",
                "DisclosedTime": "13:25:00",
                "LocalCode": "72030",
                "TypeOfCurrentPeriod": "2Q",
                "EarningsPerShare": "95.5",
                "BookValuePerShare": "2000",
                "ResultDividendPerShareAnnual": "",
                "ForecastDividendPerShareAnnual": "60",
                "Equity": "30000000",
                "TotalAssets": "90000000",
                "Profit": "1300000",
            },
            {
                "DisclosedDate": "2023-08-01",
                "DisclosedTime": "13:25:00",
                "LocalCode": "72030",
                "TypeOfCurrentPeriod": "1Q",
                "EarningsPerShare": "100.5",
                "BookValuePerShare": "1900",
                "ResultDividendPerShareAnnual": "-",
                "ForecastDividendPerShareAnnual": "60",
                "Equity": "28000000",
                "TotalAssets": "86000000",
                "Profit": "1310000",
            },
        ]
    }


def calendar_route(calendar: dict[str, Any]) -> Handler:
    return lambda request: httpx.Response(200, json=calendar)


def quotes_by_date_route(bars: dict[str, list[dict[str, Any]]]) -> Handler:
    """Serve ``daily_quotes`` for the requested ``date`` (empty if unknown)."""

    def handler(request: httpx.Request) -> httpx.Response:
        day = request.url.params.get("date", "")
        return httpx.Response(200, json={"daily_quotes": bars.get(day, [])})

    return handler
