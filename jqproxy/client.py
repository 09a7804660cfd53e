from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from jqproxy.auth import AuthError, TokenManager, build_auth_headers
from jqproxy.config import API_URL, ProxySettings

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})
BODY_PREVIEW_CHARS = 500


class UpstreamError(RuntimeError):
    """A J-Quants data request that failed for good.

    ``status`` is the last HTTP status seen, or None when the request never got
    a response (connection error, timeout).
    """

    def __init__(self, status: int | None, body: Any = "", path: str = "") -> None:
        self.status = status
        self.body = str(body)[:BODY_PREVIEW_CHARS]
        self.path = path
        super().__init__(f"J-Quants GET {path} failed: {status} {self.body}".rstrip())

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status in TRANSIENT_STATUS


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and exc.retryable


def _body_of(res: httpx.Response) -> Any:
    try:
        return res.json()
    except ValueError:
        return res.text


class JQuantsClient:
    """Async J-Quants data client.

    Every request carries a valid idToken from the :class:`TokenManager` (or an
    explicit override), is retried on 429/5xx with exponential backoff, and
    counts against a concurrency limit shared by all callers of this client.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        tokens: TokenManager | None = None,
        *,
        api_url: str = API_URL,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 0.3,
        max_concurrency: int = 5,
        max_pages: int = 50,
        page_delay: float = 0.12,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = http
        self._tokens = tokens
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_concurrency = max_concurrency
        self.max_pages = max_pages
        self.page_delay = page_delay
        self._sleep = sleep
        self._limiter = asyncio.Semaphore(max_concurrency)

    @classmethod
    def from_settings(
        cls,
        settings: ProxySettings,
        http: httpx.AsyncClient,
        tokens: TokenManager,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> JQuantsClient:
        return cls(
            http,
            tokens,
            api_url=settings.api_url,
            timeout=settings.timeout,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            max_concurrency=settings.max_concurrency,
            max_pages=settings.max_pages,
            page_delay=settings.page_delay,
            sleep=sleep,
        )

    async def _resolve_token(self, id_token: str | None) -> str:
        if id_token:
            return id_token
        if self._tokens is None:
            raise AuthError("No idToken given and no token manager configured")
        return await self._tokens.ensure_id_token()

    def _log_retry(self, path: str) -> Callable[[RetryCallState], None]:
        def log(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"GET {path} attempt {retry_state.attempt_number}/{self.max_retries + 1} "
                f"failed ({exc}); retrying in {delay:.2f}s"
            )

        return log

    async def _get_once(
        self, url: str, path: str, params: dict[str, Any], headers: dict[str, str]
    ) -> dict[str, Any]:
        # The limiter covers the request only; backoff sleeps happen outside it
        async with self._limiter:
            try:
                res = await self._http.get(
                    url, params=params, headers=headers, timeout=self.timeout
                )
            except httpx.TransportError as e:
                raise UpstreamError(None, e, path) from e

        if not res.is_success:
            raise UpstreamError(res.status_code, _body_of(res), path)
        try:
            payload = res.json()
        except ValueError as e:
            raise UpstreamError(res.status_code, f"invalid JSON: {res.text}", path) from e
        if not isinstance(payload, dict):
            raise UpstreamError(res.status_code, f"unexpected payload: {payload!r}", path)
        return payload

    async def get(
        self, path: str, params: dict[str, Any] | None = None, *, id_token: str | None = None
    ) -> dict[str, Any]:
        """GET a J-Quants endpoint and return the decoded JSON object.

        Args:
            path: API path including the version prefix, e.g. ``/v1/listed/info``.
            params: Query parameters; None values are dropped.
            id_token: Caller-supplied idToken used instead of the managed one.

        Raises:
            UpstreamError: On a non-retryable status, or once retries are exhausted.
            AuthError: If no idToken can be obtained.
        """
        token = await self._resolve_token(id_token)
        query = {k: v for k, v in (params or {}).items() if v is not None}
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base, exp_base=2),
            retry=retry_if_exception(_is_transient),
            before_sleep=self._log_retry(path),
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(
            self._get_once, f"{self.api_url}{path}", path, query, build_auth_headers(token)
        )

    async def get_paginated(
        self,
        path: str,
        data_key: str,
        params: dict[str, Any] | None = None,
        *,
        id_token: str | None = None,
        max_pages: int | None = None,
        page_delay: float | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all pages accumulating items under `data_key`.

        J-Quants uses `pagination_key` in response; pass it back in params to continue.
        Paging stops after ``max_pages`` pages even if more are available.
        """
        max_pages = self.max_pages if max_pages is None else max(1, max_pages)
        page_delay = self.page_delay if page_delay is None else max(0.0, page_delay)
        params = dict(params or {})

        payload = await self.get(path, params=params.copy(), id_token=id_token)
        data: list[dict[str, Any]] = list(payload.get(data_key) or [])
        pages = 1
        while payload.get("pagination_key") and pages < max_pages:
            if page_delay > 0:
                await self._sleep(page_delay)
            params["pagination_key"] = payload["pagination_key"]
            payload = await self.get(path, params=params.copy(), id_token=id_token)
            data += payload.get(data_key) or []
            pages += 1

        if payload.get("pagination_key"):
            logger.warning(f"Stopped paging {path} at {pages} pages; {len(data)} rows kept")
        return data
