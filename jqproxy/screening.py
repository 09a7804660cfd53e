"""Liquidity-first stock screening.

The basic screen walks candidates in descending turnover order and applies the
cheap filters (market, liquidity, momentum; all in memory) before the
expensive one (valuation, one statements read per instrument). Time and scan
budgets cut the walk short, so the order decides which names make it into a
truncated result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from jqproxy.market import MarketData
from jqproxy.metrics import (
    DEFAULT_WEIGHTS,
    MOMENTUM_HORIZONS,
    MOMENTUM_LOOKBACK_DAYS,
    LiquidityMode,
    LiquiditySnapshot,
    ScoreWeights,
    Valuation,
    average_turnover,
    latest_closes,
    passes_threshold,
    score_row,
    snapshot_dates,
    trailing_return,
    valuation_ratios,
)
from jqproxy.normalize import ListedInstrument, canonical_code, summarize_statements

logger = logging.getLogger(__name__)

MARKET_KEYWORDS: dict[str, tuple[str, ...]] = {
    "prime": ("プライム", "prime", "tse prime", "prime market"),
    "standard": ("スタンダード", "standard", "tse standard", "standard market"),
    "growth": ("グロース", "growth", "tse growth", "growth market"),
}

DEFAULT_LIQUIDITY_MIN = 100_000_000
MAX_LIMIT = 200
MIN_BUDGET_MS = 5_000
PRECISE_WINDOW_DAYS = 20


def market_matches(wanted: str | None, market_name: str | None) -> bool:
    """Match a segment filter (``All``/``prime``/``standard``/``growth``) to a market name.

    Unknown filters and instruments without a market name pass, so sparse
    reference data never empties a screen.
    """
    if not wanted or wanted.strip().lower() == "all":
        return True
    keywords = MARKET_KEYWORDS.get(wanted.strip().lower())
    if keywords is None:
        return True
    name = (market_name or "").strip().lower()
    if not name:
        return True
    return any(k in name for k in keywords)


def parse_codes(values: Iterable[str] | None) -> list[str]:
    """Canonical codes from comma-separated and/or repeated values, de-duplicated."""
    codes: list[str] = []
    for value in values or ():
        for token in str(value).split(","):
            token = token.strip()
            if token:
                codes.append(canonical_code(token))
    return list(dict.fromkeys(codes))


@dataclass
class ScreenCriteria:
    """Inputs of :meth:`Screener.screen`. Out-of-range values are clamped."""

    market: str = "All"
    limit: int = 30
    liquidity_min: float = DEFAULT_LIQUIDITY_MIN
    per_lt: float | None = None
    pbr_lt: float | None = None
    div_yield_gt: float | None = None
    mom3m_gt: float | None = None
    liquidity_mode: LiquidityMode = LiquidityMode.FAST
    days: int | None = None
    budget_ms: int = 25_000
    max_scan: int = 500
    universe: frozenset[str] | None = None
    debug: bool = False

    def __post_init__(self) -> None:
        self.limit = min(max(int(self.limit), 1), MAX_LIMIT)
        self.budget_ms = max(MIN_BUDGET_MS, int(self.budget_ms))
        self.max_scan = max(0, int(self.max_scan))
        # 2.5 means 2.5 %
        if self.div_yield_gt is not None and 1 < self.div_yield_gt <= 100:
            self.div_yield_gt = self.div_yield_gt / 100
        # The window only applies to the precise average
        if self.liquidity_mode is LiquidityMode.FAST:
            self.days = None
        elif self.days is None:
            self.days = PRECISE_WINDOW_DAYS
        if self.universe is not None:
            self.universe = frozenset(canonical_code(c) for c in self.universe)

    @property
    def needs_momentum(self) -> bool:
        return self.mom3m_gt is not None

    @property
    def needs_valuation(self) -> bool:
        return self.per_lt is not None or self.pbr_lt is not None or self.div_yield_gt is not None

    def accepts_valuation(self, valuation: Valuation) -> bool:
        return (
            passes_threshold(valuation.per, lt=self.per_lt)
            and passes_threshold(valuation.pbr, lt=self.pbr_lt)
            and passes_threshold(valuation.dividend_yield, gt=self.div_yield_gt)
        )


@dataclass(frozen=True)
class ScreeningRow:
    code: str
    name: str
    market: str
    avg_trading_value: float
    momentum_3m: float | None = None
    momentum_6m: float | None = None
    momentum_12m: float | None = None
    per: float | None = None
    pbr: float | None = None
    dividend_yield: float | None = None
    score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MomentumSnapshots:
    """Closes on the latest day and on each horizon's snapshot day."""

    dates: dict[str, str] = field(default_factory=dict)
    closes: dict[str, dict[str, float | None]] = field(default_factory=dict)

    def returns(self, code: str) -> dict[str, float | None]:
        latest = self.closes.get("latest", {}).get(code)
        return {
            name: trailing_return(latest, self.closes.get(name, {}).get(code))
            for name in MOMENTUM_HORIZONS
        }


class Screener:
    def __init__(
        self,
        market: MarketData,
        *,
        weights: ScoreWeights = DEFAULT_WEIGHTS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.market = market
        self.weights = weights
        self._clock = clock

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------
    async def liquidity(
        self,
        mode: LiquidityMode = LiquidityMode.FAST,
        days: int | None = None,
        *,
        id_token: str | None = None,
    ) -> LiquiditySnapshot:
        """Average turnover and latest close per code.

        ``days`` sets the precise window (default 20); the fast mode always
        reads the latest trading day only.
        """
        if mode is LiquidityMode.FAST:
            window = 1
        else:
            window = max(1, days or PRECISE_WINDOW_DAYS)
        trading_days = await self.market.trading_days(window, id_token=id_token)
        if not trading_days:
            logger.warning("No trading days available for liquidity")
            return LiquiditySnapshot(avg_turnover={}, latest_close={})
        bars = await self.market.quotes_for_days(trading_days, id_token=id_token)
        return average_turnover(bars)

    async def momentum_snapshots(self, *, id_token: str | None = None) -> MomentumSnapshots:
        days = await self.market.trading_days(MOMENTUM_LOOKBACK_DAYS, id_token=id_token)
        picked = snapshot_dates(days)
        if not picked:
            return MomentumSnapshots()
        bars = await self.market.quotes_for_days(list(picked.values()), id_token=id_token)
        closes = {name: latest_closes(bars[day]) for name, day in picked.items()}
        return MomentumSnapshots(dates=picked, closes=closes)

    @staticmethod
    def rank_candidates(
        liquidity: LiquiditySnapshot,
        listed: Mapping[str, ListedInstrument],
        market: str | None = "All",
        liquidity_min: float = DEFAULT_LIQUIDITY_MIN,
        allow: frozenset[str] | None = None,
    ) -> list[tuple[str, float]]:
        """``(code, turnover)`` pairs passing the cheap filters, most liquid first."""
        ranked = []
        for code, turnover in liquidity.avg_turnover.items():
            if allow is not None and code not in allow:
                continue
            if turnover is None or turnover < liquidity_min:
                continue
            meta = listed.get(code)
            if not market_matches(market, meta.market if meta else ""):
                continue
            ranked.append((code, turnover))
        ranked.sort(key=lambda item: (-item[1], item[0]))
        return ranked

    # ------------------------------------------------------------------
    # Screens
    # ------------------------------------------------------------------
    async def universe(
        self,
        market: str | None = "All",
        liquidity_min: float = DEFAULT_LIQUIDITY_MIN,
        offset: int = 0,
        limit: int = 150,
        *,
        id_token: str | None = None,
    ) -> dict[str, Any]:
        """Codes passing market and liquidity filters, most liquid first, one page."""
        offset = max(0, offset)
        limit = min(max(limit, 1), MAX_LIMIT)
        listed, liquidity = await asyncio.gather(
            self.market.listed_instruments(id_token=id_token),
            self.liquidity(LiquidityMode.FAST, id_token=id_token),
        )
        ranked = self.rank_candidates(liquidity, listed, market, liquidity_min)
        page = [code for code, _ in ranked[offset : offset + limit]]
        return {"total": len(ranked), "offset": offset, "limit": limit, "codes": page}

    async def liquidity_screen(
        self,
        market: str | None = "All",
        min_avg_trading_value: float = DEFAULT_LIQUIDITY_MIN,
        mode: LiquidityMode = LiquidityMode.FAST,
        days: int | None = None,
        *,
        id_token: str | None = None,
    ) -> dict[str, Any]:
        """Every instrument above a turnover threshold, with name and market."""
        listed, liquidity = await asyncio.gather(
            self.market.listed_instruments(id_token=id_token),
            self.liquidity(mode, days, id_token=id_token),
        )
        items = []
        for code, turnover in self.rank_candidates(
            liquidity, listed, market, min_avg_trading_value
        ):
            meta = listed.get(code)
            items.append(
                {
                    "code": code,
                    "name": meta.name if meta else "",
                    "market": meta.market if meta else "",
                    "avg_trading_value": round(turnover),
                }
            )
        return {"count": len(items), "items": items}

    async def screen(
        self, criteria: ScreenCriteria, *, id_token: str | None = None
    ) -> dict[str, Any]:
        """Run the staged screen and return ``{count, items}`` ranked by score.

        Candidates are visited by descending turnover. The walk stops when
        ``limit`` rows are kept, the time budget runs out, or ``max_scan``
        statements have been read; whatever was kept so far is returned.
        Instruments whose statements cannot be read are logged and skipped.
        """
        started = self._clock()
        deadline = started + criteria.budget_ms / 1000

        pending = [
            self.market.listed_instruments(id_token=id_token),
            self.liquidity(criteria.liquidity_mode, criteria.days, id_token=id_token),
        ]
        if criteria.needs_momentum:
            pending.append(self.momentum_snapshots(id_token=id_token))
        results = await asyncio.gather(*pending)
        listed, liquidity = results[0], results[1]
        snapshots = results[2] if criteria.needs_momentum else MomentumSnapshots()

        candidates = self.rank_candidates(
            liquidity, listed, criteria.market, criteria.liquidity_min, criteria.universe
        )

        rows: list[ScreeningRow] = []
        processed = scanned = failed = 0
        stop_reason = "exhausted" if candidates else "no_candidates"
        for code, turnover in candidates:
            if len(rows) >= criteria.limit:
                stop_reason = "limit"
                break
            if self._clock() >= deadline:
                stop_reason = "budget"
                break
            processed += 1

            returns = dict.fromkeys(MOMENTUM_HORIZONS)
            if criteria.needs_momentum:
                returns = snapshots.returns(code)
                if not passes_threshold(returns["3m"], gt=criteria.mom3m_gt):
                    continue

            valuation = Valuation()
            if criteria.needs_valuation:
                if scanned >= criteria.max_scan:
                    stop_reason = "max_scan"
                    break
                scanned += 1
                try:
                    statements = await self.market.statements(code, id_token=id_token)
                except Exception as e:
                    failed += 1
                    logger.warning(f"Skipping {code}: statements unavailable ({e})")
                    continue
                summary = summarize_statements(code, statements)
                valuation = valuation_ratios(liquidity.latest_close.get(code), summary)
                if not criteria.accepts_valuation(valuation):
                    continue

            meta = listed.get(code)
            rows.append(
                ScreeningRow(
                    code=code,
                    name=meta.name if meta else "",
                    market=meta.market if meta else "",
                    avg_trading_value=round(turnover),
                    momentum_3m=returns["3m"],
                    momentum_6m=returns["6m"],
                    momentum_12m=returns["12m"],
                    per=valuation.per,
                    pbr=valuation.pbr,
                    dividend_yield=valuation.dividend_yield,
                    score=score_row(
                        turnover,
                        returns["3m"],
                        valuation.per,
                        valuation.pbr,
                        valuation.dividend_yield,
                        self.weights,
                    ),
                )
            )

        rows.sort(key=lambda r: r.score, reverse=True)
        items = [r.to_dict() for r in rows[: criteria.limit]]
        elapsed_ms = int((self._clock() - started) * 1000)
        logger.info(
            f"Screen kept {len(items)} of {len(candidates)} candidates "
            f"(scanned={scanned}, failed={failed}, stop={stop_reason}, {elapsed_ms}ms)"
        )

        payload: dict[str, Any] = {"count": len(items), "items": items}
        if criteria.debug:
            payload["_debug"] = {
                "candidates": len(candidates),
                "processed": processed,
                "scanned": scanned,
                "kept": len(rows),
                "failed": failed,
                "stop_reason": stop_reason,
                "truncated": stop_reason in ("budget", "max_scan"),
                "momentum_dates": snapshots.dates,
                "liquidity_dates": list(liquidity.dates),
                "budget_ms": criteria.budget_ms,
                "ms": elapsed_ms,
            }
        return payload
