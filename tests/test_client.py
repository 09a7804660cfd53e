from __future__ import annotations

import asyncio
from dataclasses import replace

import httpx
import pytest

from jqproxy.auth import AuthError, TokenManager
from jqproxy.client import JQuantsClient, UpstreamError

QUOTES_PATH = "/v1/prices/daily_quotes"


def make_client(upstream, sleeper, **kwargs) -> JQuantsClient:
    http = httpx.AsyncClient(transport=upstream.transport())
    return JQuantsClient(http, sleep=sleeper, page_delay=0.0, **kwargs)


class TestJQuantsClient:
    def test_from_settings(self, settings, sleeper):
        http = httpx.AsyncClient()
        custom = replace(settings, api_url="https://custom.api.com", timeout=60.0, max_retries=1)

        client = JQuantsClient.from_settings(custom, http, TokenManager(custom, http))

        assert client.api_url == "https://custom.api.com"
        assert client.timeout == 60.0
        assert client.max_retries == 1
        assert client.max_concurrency == settings.max_concurrency

    def test_get_request(self, upstream, sleeper):
        upstream.on("GET", QUOTES_PATH, {"daily_quotes": [{"Code": "72030"}]})
        client = make_client(upstream, sleeper)

        result = asyncio.run(
            client.get(QUOTES_PATH, params={"code": "7203", "date": None}, id_token="test_token")
        )

        assert result == {"daily_quotes": [{"Code": "72030"}]}
        request = upstream.requests[-1]
        assert str(request.url) == "https://api.jquants.com/v1/prices/daily_quotes?code=7203"
        assert request.headers["Authorization"] == "Bearer test_token"

    def test_uses_managed_token(self, upstream, settings, clock, sleeper):
        upstream.on("GET", QUOTES_PATH, {"daily_quotes": []})
        http = httpx.AsyncClient(transport=upstream.transport())
        client = JQuantsClient(http, TokenManager(settings, http, clock=clock), sleep=sleeper)

        asyncio.run(client.get(QUOTES_PATH))

        assert upstream.calls(QUOTES_PATH)[0].headers["Authorization"] == "Bearer id-token"

    def test_without_token_source_raises(self, upstream, sleeper):
        client = make_client(upstream, sleeper)

        with pytest.raises(AuthError):
            asyncio.run(client.get(QUOTES_PATH))


class TestRetries:
    def test_always_429_exhausts_retries(self, upstream, sleeper):
        upstream.on("GET", QUOTES_PATH, {"message": "rate limited"}, status=429)
        client = make_client(upstream, sleeper, max_retries=3, backoff_base=0.3)

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(client.get(QUOTES_PATH, id_token="t"))

        assert excinfo.value.status == 429
        assert excinfo.value.retryable
        assert len(upstream.calls(QUOTES_PATH)) == 4
        assert sleeper.delays == pytest.approx([0.3, 0.6, 1.2])
        assert sleeper.delays == sorted(sleeper.delays)

    def test_transient_then_success(self, upstream, sleeper):
        statuses = iter([503, 500, 200])

        def flaky(request):
            status = next(statuses)
            body = {"daily_quotes": [{"Code": "13010"}]} if status == 200 else {"message": "oops"}
            return httpx.Response(status, json=body)

        upstream.on("GET", QUOTES_PATH, flaky)
        client = make_client(upstream, sleeper)

        result = asyncio.run(client.get(QUOTES_PATH, id_token="t"))

        assert result["daily_quotes"] == [{"Code": "13010"}]
        assert len(sleeper.delays) == 2

    def test_client_error_is_not_retried(self, upstream, sleeper):
        upstream.on("GET", QUOTES_PATH, {"message": "bad request"}, status=400)
        client = make_client(upstream, sleeper)

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(client.get(QUOTES_PATH, id_token="t"))

        assert excinfo.value.status == 400
        assert not excinfo.value.retryable
        assert "bad request" in excinfo.value.body
        assert len(upstream.calls(QUOTES_PATH)) == 1
        assert sleeper.delays == []

    def test_transport_errors_are_retried(self, upstream, sleeper):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        upstream.on("GET", QUOTES_PATH, refuse)
        client = make_client(upstream, sleeper, max_retries=2)

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(client.get(QUOTES_PATH, id_token="t"))

        assert excinfo.value.status is None
        assert len(upstream.calls(QUOTES_PATH)) == 3

    def test_body_is_truncated(self, upstream, sleeper):
        upstream.on("GET", QUOTES_PATH, lambda r: httpx.Response(404, text="x" * 2000))
        client = make_client(upstream, sleeper)

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(client.get(QUOTES_PATH, id_token="t"))

        assert len(excinfo.value.body) == 500

    def test_non_object_payload_is_an_error(self, upstream, sleeper):
        upstream.on("GET", QUOTES_PATH, [1, 2, 3])
        client = make_client(upstream, sleeper)

        with pytest.raises(UpstreamError, match="unexpected payload"):
            asyncio.run(client.get(QUOTES_PATH, id_token="t"))


class TestConcurrencyLimit:
    def test_outstanding_requests_are_bounded(self, upstream, sleeper):
        state = {"active": 0, "peak": 0}

        async def slow(request):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.01)
            state["active"] -= 1
            return httpx.Response(200, json={"daily_quotes": []})

        upstream.on("GET", QUOTES_PATH, slow)
        client = make_client(upstream, sleeper, max_concurrency=2)

        async def burst():
            await asyncio.gather(*(client.get(QUOTES_PATH, id_token="t") for _ in range(8)))

        asyncio.run(burst())

        assert state["peak"] == 2
        assert len(upstream.calls(QUOTES_PATH)) == 8


class TestGetPaginated:
    def test_single_page_response(self, upstream, sleeper):
        upstream.on("GET", QUOTES_PATH, {"daily_quotes": [{"Code": "1234"}, {"Code": "5678"}]})
        client = make_client(upstream, sleeper)

        result = asyncio.run(client.get_paginated(QUOTES_PATH, "daily_quotes", id_token="t"))

        assert result == [{"Code": "1234"}, {"Code": "5678"}]

    def test_multi_page_response(self, upstream, sleeper):
        def pages(request):
            if request.url.params.get("pagination_key") == "next_page_key":
                return httpx.Response(200, json={"daily_quotes": [{"Code": "5678"}]})
            return httpx.Response(
                200,
                json={"daily_quotes": [{"Code": "1234"}], "pagination_key": "next_page_key"},
            )

        upstream.on("GET", QUOTES_PATH, pages)
        client = make_client(upstream, sleeper)

        result = asyncio.run(
            client.get_paginated(
                QUOTES_PATH, "daily_quotes", {"date": "2024-01-15"}, id_token="t", page_delay=0.5
            )
        )

        assert result == [{"Code": "1234"}, {"Code": "5678"}]
        calls = upstream.calls(QUOTES_PATH)
        assert len(calls) == 2
        assert dict(calls[0].url.params) == {"date": "2024-01-15"}
        assert dict(calls[1].url.params) == {
            "date": "2024-01-15",
            "pagination_key": "next_page_key",
        }
        assert sleeper.delays == [0.5]

    def test_stops_at_max_pages(self, upstream, sleeper):
        upstream.on("GET", QUOTES_PATH, {"daily_quotes": [{"Code": "1"}], "pagination_key": "k"})
        client = make_client(upstream, sleeper)

        result = asyncio.run(
            client.get_paginated(QUOTES_PATH, "daily_quotes", id_token="t", max_pages=3)
        )

        assert len(result) == 3
        assert len(upstream.calls(QUOTES_PATH)) == 3

    def test_empty_response(self, upstream, sleeper):
        upstream.on("GET", QUOTES_PATH, {})
        client = make_client(upstream, sleeper)

        assert asyncio.run(client.get_paginated(QUOTES_PATH, "missing_key", id_token="t")) == []

    def test_http_error_raises_exception(self, upstream, sleeper):
        upstream.on("GET", QUOTES_PATH, {"message": "forbidden"}, status=403)
        client = make_client(upstream, sleeper)

        with pytest.raises(UpstreamError, match="403"):
            asyncio.run(client.get_paginated(QUOTES_PATH, "daily_quotes", id_token="t"))
