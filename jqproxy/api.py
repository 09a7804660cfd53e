"""HTTP routing layer.

All routes except ``/health`` require ``Authorization: Bearer <PROXY_BEARER>``.
Callers may pass their own J-Quants idToken in ``X-ID-TOKEN``; otherwise the
proxy's managed token is used. Every response, including errors, is JSON.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Awaitable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from jqproxy import __version__
from jqproxy.auth import AuthError
from jqproxy.client import UpstreamError
from jqproxy.config import ProxySettings
from jqproxy.context import ProxyContext
from jqproxy.market import NoDataError
from jqproxy.metrics import LiquidityMode
from jqproxy.portfolio import DEFAULT_DAYS, DEFAULT_WEEKS
from jqproxy.screening import DEFAULT_LIQUIDITY_MIN, ScreenCriteria, parse_codes

logger = logging.getLogger(__name__)

CORS_HEADERS = ["Content-Type", "Authorization", "X-ID-TOKEN"]


def _flag(value: str | None) -> bool | None:
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message, **extra})


async def _partial(call: Awaitable[dict[str, Any]], empty: dict[str, Any]) -> dict[str, Any]:
    """Await a batch computation; on failure answer ``empty`` plus the error."""
    try:
        return await call
    except Exception as e:
        logger.exception(f"Batch request failed: {e}")
        return {**empty, "error": str(e)}


def create_app(
    settings: ProxySettings | None = None, context: ProxyContext | None = None
) -> FastAPI:
    """Build the proxy application.

    Args:
        settings: Proxy settings; read from the environment when omitted.
        context: Pre-built process state (tests). When omitted, one is created
            on first use and closed on shutdown.
    """
    if settings is None:
        settings = context.settings if context is not None else ProxySettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            owned = app.state.context if app.state.owns_context else None
            if owned is not None:
                await owned.aclose()
                app.state.context = None

    app = FastAPI(title="jqproxy", version=__version__, lifespan=lifespan)
    app.state.context = context
    app.state.owns_context = False
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=CORS_HEADERS,
    )

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------
    def get_context(request: Request) -> ProxyContext:
        if request.app.state.context is None:
            request.app.state.context = ProxyContext.create(settings)
            request.app.state.owns_context = True
        return request.app.state.context

    def require_bearer(authorization: str | None = Header(default=None)) -> None:
        expected = settings.proxy_bearer
        scheme, _, token = (authorization or "").partition(" ")
        if (
            not expected
            or scheme.lower() != "bearer"
            or not secrets.compare_digest(token.strip(), expected)
        ):
            raise StarletteHTTPException(status_code=401, detail="Unauthorized")

    def id_token_override(x_id_token: str | None = Header(default=None)) -> str | None:
        return x_id_token.strip() if x_id_token and x_id_token.strip() else None

    # ------------------------------------------------------------------
    # Error envelope
    # ------------------------------------------------------------------
    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error(404, f"No route for {request.method} {request.url.path}")
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_req: Request, exc: RequestValidationError):
        problems = [
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
            for err in exc.errors()
        ]
        return _error(400, "Invalid request", detail=problems)

    @app.exception_handler(ValueError)
    async def _value_error(_req: Request, exc: ValueError):
        return _error(400, str(exc))

    @app.exception_handler(AuthError)
    async def _auth_error(_req: Request, exc: AuthError):
        logger.warning(f"J-Quants authentication failed: {exc}")
        return _error(401, str(exc))

    @app.exception_handler(UpstreamError)
    async def _upstream_error(_req: Request, exc: UpstreamError):
        status = 404 if exc.status == 404 else 502
        return _error(status, str(exc), upstream_status=exc.status)

    @app.exception_handler(NoDataError)
    async def _no_data(_req: Request, exc: NoDataError):
        return _error(404, str(exc))

    @app.exception_handler(Exception)
    async def _unhandled(_req: Request, exc: Exception):
        logger.exception(f"Unhandled error: {exc}")
        return _error(500, str(exc) or "Internal error")

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------
    public = APIRouter(prefix=settings.api_prefix)
    protected = APIRouter(prefix=settings.api_prefix, dependencies=[Depends(require_bearer)])

    @public.get("/health")
    async def health(ctx: ProxyContext = Depends(get_context)):
        return {
            "ok": True,
            "ts": datetime.now(timezone.utc).isoformat(),
            "id_token_valid_ms": ctx.tokens.ms_until_expiry(),
            "cache": ctx.cache.stats(),
            "version": __version__,
        }

    @protected.post("/auth/refresh")
    async def auth_refresh(request: Request, ctx: ProxyContext = Depends(get_context)):
        body: Any = {}
        if await request.body():
            try:
                body = await request.json()
            except ValueError:
                raise ValueError("Request body must be JSON") from None
        override = None
        if isinstance(body, dict):
            override = body.get("refreshToken") or body.get("refreshtoken")
        state = await ctx.tokens.refresh_id_token(override)
        return {
            "ok": True,
            "idToken": state.id_token,
            "id_token_valid_ms": ctx.tokens.ms_until_expiry(),
        }

    @protected.get("/prices/daily")
    async def prices_daily(
        code: str,
        date_from: str | None = Query(default=None, alias="from"),
        date_to: str | None = Query(default=None, alias="to"),
        ctx: ProxyContext = Depends(get_context),
        id_token: str | None = Depends(id_token_override),
    ):
        return await ctx.market.daily_quotes(code, date_from, date_to, id_token=id_token)

    @protected.get("/fins/statements")
    async def fins_statements(
        code: str,
        ctx: ProxyContext = Depends(get_context),
        id_token: str | None = Depends(id_token_override),
    ):
        return await ctx.portfolio.statements_summary(code, id_token=id_token)

    @protected.get("/credit/weekly")
    async def credit_weekly(
        code: str,
        weeks: int = DEFAULT_WEEKS,
        ctx: ProxyContext = Depends(get_context),
        id_token: str | None = Depends(id_token_override),
    ):
        return await ctx.portfolio.weekly_margin(code, weeks, id_token=id_token)

    @protected.get("/credit/daily_public")
    async def credit_daily_public(
        code: str,
        days: int = DEFAULT_DAYS,
        ctx: ProxyContext = Depends(get_context),
        id_token: str | None = Depends(id_token_override),
    ):
        return await ctx.portfolio.daily_public_margin(code, days, id_token=id_token)

    @protected.get("/universe")
    async def universe(
        market: str = "All",
        liquidity_min: float = DEFAULT_LIQUIDITY_MIN,
        offset: int = 0,
        limit: int = 150,
        ctx: ProxyContext = Depends(get_context),
        id_token: str | None = Depends(id_token_override),
    ):
        return await _partial(
            ctx.screener.universe(market, liquidity_min, offset, limit, id_token=id_token),
            {"total": 0, "offset": 0, "limit": 0, "codes": []},
        )

    @protected.get("/screen/liquidity")
    async def screen_liquidity(
        market: str = "All",
        min_avg_trading_value: float = DEFAULT_LIQUIDITY_MIN,
        days: int | None = None,
        fast: str | None = None,
        liquidity_mode: str | None = None,
        ctx: ProxyContext = Depends(get_context),
        id_token: str | None = Depends(id_token_override),
    ):
        mode = LiquidityMode.parse(liquidity_mode, fast=_flag(fast))
        return await _partial(
            ctx.screener.liquidity_screen(
                market, min_avg_trading_value, mode, days, id_token=id_token
            ),
            {"count": 0, "items": []},
        )

    @protected.get("/screen/basic")
    async def screen_basic(
        market: str = "All",
        limit: int = 30,
        liquidity_min: float = DEFAULT_LIQUIDITY_MIN,
        per_lt: float | None = None,
        pbr_lt: float | None = None,
        div_yield_gt: float | None = None,
        mom3m_gt: float | None = None,
        fast: str = "1",
        liquidity_mode: str | None = None,
        days: int | None = None,
        budget_ms: int = 25_000,
        max_scan: int = 500,
        universe: list[str] | None = Query(default=None),
        debug: str | None = None,
        ctx: ProxyContext = Depends(get_context),
        id_token: str | None = Depends(id_token_override),
    ):
        codes = parse_codes(universe)
        criteria = ScreenCriteria(
            market=market,
            limit=limit,
            liquidity_min=liquidity_min,
            per_lt=per_lt,
            pbr_lt=pbr_lt,
            div_yield_gt=div_yield_gt,
            mom3m_gt=mom3m_gt,
            liquidity_mode=LiquidityMode.parse(liquidity_mode, fast=_flag(fast)),
            days=days,
            budget_ms=budget_ms,
            max_scan=max_scan,
            universe=frozenset(codes) if codes else None,
            debug=bool(_flag(debug)),
        )
        return await _partial(
            ctx.screener.screen(criteria, id_token=id_token), {"count": 0, "items": []}
        )

    @protected.get("/portfolio/summary")
    async def portfolio_summary(
        codes: list[str] | None = Query(default=None),
        with_credit: str | None = None,
        ctx: ProxyContext = Depends(get_context),
        id_token: str | None = Depends(id_token_override),
    ):
        parsed = parse_codes(codes)
        if not parsed:
            raise StarletteHTTPException(status_code=400, detail="codes is required")
        return await ctx.portfolio.summary(parsed, bool(_flag(with_credit)), id_token=id_token)

    app.include_router(public)
    app.include_router(protected)
    return app
