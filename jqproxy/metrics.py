"""Derived trading metrics: liquidity, momentum, valuation ratios and scoring.

Everything here is pure; upstream reads happen in :mod:`jqproxy.market` and
the results are passed in. Missing inputs yield None rather than raising, so
one incomplete instrument never breaks a batch computation.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import numpy as np
import polars as pl

from jqproxy.normalize import FinancialSummary, PriceBar, is_business_day, map_calendar_day

MOMENTUM_HORIZONS: dict[str, int] = {"3m": 63, "6m": 126, "12m": 252}
# Enough history for the longest horizon plus a little slack
MOMENTUM_LOOKBACK_DAYS = 260

_BAR_SCHEMA = {"date": pl.Utf8, "code": pl.Utf8, "close": pl.Float64, "turnover": pl.Float64}


def _finite(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


# ----------------------------------------------------------------------
# Liquidity
# ----------------------------------------------------------------------
class LiquidityMode(str, Enum):
    """How average turnover is estimated.

    ``FAST`` uses the most recent trading day only (one upstream read);
    ``PRECISE`` averages over the last N trading days (N reads).
    """

    FAST = "latest"
    PRECISE = "avg"

    @classmethod
    def parse(cls, value: str | None = None, fast: bool | None = None) -> LiquidityMode:
        """Resolve a mode from an explicit name or a fast flag (default fast).

        Raises:
            ValueError: If ``value`` names no known mode.
        """
        if value is not None and value.strip():
            key = value.strip().lower()
            if key in ("latest", "fast"):
                return cls.FAST
            if key in ("avg", "average", "precise"):
                return cls.PRECISE
            raise ValueError(f"Unknown liquidity mode: {value!r}")
        if fast is False:
            return cls.PRECISE
        return cls.FAST


@dataclass(frozen=True)
class LiquiditySnapshot:
    avg_turnover: dict[str, float]
    latest_close: dict[str, float | None]
    dates: tuple[str, ...] = ()


def bars_frame(bars: Iterable[PriceBar]) -> pl.DataFrame:
    rows = [(b.date, b.code, b.close, b.turnover) for b in bars]
    return pl.DataFrame(rows, schema=_BAR_SCHEMA, orient="row")


def average_turnover(bars_by_date: Mapping[str, Sequence[PriceBar]]) -> LiquiditySnapshot:
    """Average per-code turnover across the given trading days.

    A code absent on a day (or with no turnover reported) counts as zero for
    that day; the divisor is always the number of days. The close is taken
    from the most recent day in which the code has one.

    Examples:
        >>> snap = average_turnover({"2024-01-15": [PriceBar("2024-01-15", "7203", 10.0, 1e8)],
        ...                          "2024-01-16": [PriceBar("2024-01-16", "7203", 11.0, 3e8)]})
        >>> snap.avg_turnover["7203"]
        200000000.0
    """
    dates = tuple(sorted(bars_by_date))
    if not dates:
        return LiquiditySnapshot(avg_turnover={}, latest_close={})

    df = bars_frame(bar for d in dates for bar in bars_by_date[d])
    if df.is_empty():
        return LiquiditySnapshot(avg_turnover={}, latest_close={}, dates=dates)

    summary = (
        df.sort("date")
        .group_by("code", maintain_order=True)
        .agg(
            pl.col("turnover").fill_null(0.0).sum().alias("turnover_sum"),
            pl.col("close").drop_nulls().last().alias("latest_close"),
        )
        .with_columns((pl.col("turnover_sum") / len(dates)).alias("avg_turnover"))
    )

    avg: dict[str, float] = {}
    closes: dict[str, float | None] = {}
    for row in summary.iter_rows(named=True):
        avg[row["code"]] = float(row["avg_turnover"])
        closes[row["code"]] = row["latest_close"]
    return LiquiditySnapshot(avg_turnover=avg, latest_close=closes, dates=dates)


def latest_closes(bars: Iterable[PriceBar]) -> dict[str, float | None]:
    """Map code -> close for a single day's bars (first bar per code wins)."""
    closes: dict[str, float | None] = {}
    for bar in bars:
        closes.setdefault(bar.code, bar.close)
    return closes


def trading_days(calendar: Iterable[Mapping[str, Any]], n: int) -> list[str]:
    """Return the last ``n`` business days (full or half sessions), ascending."""
    days = {
        map_calendar_day(r)[0]
        for r in calendar
        if isinstance(r, Mapping) and is_business_day(r)
    }
    days.discard("")
    ordered = sorted(days)
    return ordered[max(0, len(ordered) - n) :] if n > 0 else []


# ----------------------------------------------------------------------
# Momentum
# ----------------------------------------------------------------------
def horizon_index(n_days: int, horizon: int) -> int:
    """Index of the snapshot day ``horizon`` days back, clamped to 0."""
    return max(0, n_days - horizon)


def snapshot_dates(days: Sequence[str]) -> dict[str, str]:
    """Pick the latest day and one day per momentum horizon from ``days``."""
    if not days:
        return {}
    picked = {"latest": days[-1]}
    for name, horizon in MOMENTUM_HORIZONS.items():
        picked[name] = days[horizon_index(len(days), horizon)]
    return picked


def trailing_return(latest: Any, past: Any) -> float | None:
    """``latest / past - 1``; None if either close is unusable or past is zero."""
    a = _finite(latest)
    b = _finite(past)
    if a is None or b is None or b == 0:
        return None
    value = a / b - 1
    return value if math.isfinite(value) else None


# ----------------------------------------------------------------------
# Valuation
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class Valuation:
    per: float | None = None
    pbr: float | None = None
    dividend_yield: float | None = None


def valuation_ratios(close: Any, summary: FinancialSummary | None) -> Valuation:
    """P/E, P/B and dividend yield at ``close``.

    Without a usable close every ratio is None. With one, a missing dividend
    yields 0.0 so that "pays nothing" stays distinguishable from "no price".
    """
    price = _finite(close)
    if price is None or price <= 0:
        return Valuation()
    summary = summary or FinancialSummary(code="")

    eps = _finite(summary.trailing_eps)
    bps = _finite(summary.book_value_per_share)
    dps = _finite(summary.dividend_per_share)
    return Valuation(
        per=price / eps if eps is not None and eps > 0 else None,
        pbr=price / bps if bps is not None and bps > 0 else None,
        dividend_yield=dps / price if dps is not None and dps > 0 else 0.0,
    )


def passes_threshold(value: Any, lt: float | None = None, gt: float | None = None) -> bool:
    """Check ``value`` against optional bounds; an unknown value fails any bound."""
    if lt is None and gt is None:
        return True
    number = _finite(value)
    if number is None:
        return False
    if lt is not None and not number < lt:
        return False
    if gt is not None and not number > gt:
        return False
    return True


# ----------------------------------------------------------------------
# Scoring
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ScoreWeights:
    """Weights and clip bands of the screening score.

    Each component is first mapped into its band: liquidity as log10 of the
    turnover, momentum clipped linearly, P/E and P/B as ``1 - value / cap``
    clipped to [0, 1], dividend yield clipped. Missing components contribute 0.
    """

    liquidity: float = 10.0
    momentum: float = 100.0
    per: float = 20.0
    pbr: float = 20.0
    dividend_yield: float = 500.0

    momentum_band: tuple[float, float] = (-0.5, 1.0)
    per_cap: float = 50.0
    pbr_cap: float = 5.0
    dividend_band: tuple[float, float] = (0.0, 0.08)


DEFAULT_WEIGHTS = ScoreWeights()


def _inverted(value: float | None, cap: float) -> float:
    if value is None or value <= 0 or cap <= 0:
        return 0.0
    return float(np.clip(1.0 - value / cap, 0.0, 1.0))


def score_row(
    avg_trading_value: Any,
    momentum_3m: Any = None,
    per: Any = None,
    pbr: Any = None,
    dividend_yield: Any = None,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> float:
    """Weighted screening score; always a finite float."""
    tv = _finite(avg_trading_value)
    mom = _finite(momentum_3m)
    dy = _finite(dividend_yield)

    components = np.array(
        [
            np.log10(max(1.0, tv)) if tv is not None else 0.0,
            np.clip(mom, *weights.momentum_band) if mom is not None else 0.0,
            _inverted(_finite(per), weights.per_cap),
            _inverted(_finite(pbr), weights.pbr_cap),
            np.clip(dy, *weights.dividend_band) if dy is not None else 0.0,
        ],
        dtype=float,
    )
    vector = np.array(
        [weights.liquidity, weights.momentum, weights.per, weights.pbr, weights.dividend_yield],
        dtype=float,
    )
    score = float(np.dot(np.nan_to_num(components), vector))
    return round(score, 4) if math.isfinite(score) else 0.0
