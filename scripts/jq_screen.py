#!/usr/bin/env python
"""Run the basic screen from the terminal and print the ranked rows."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

import polars as pl

from jqproxy.config import ProxySettings, configure_logging
from jqproxy.context import ProxyContext
from jqproxy.metrics import LiquidityMode
from jqproxy.screening import DEFAULT_LIQUIDITY_MIN, ScreenCriteria, parse_codes

logger = logging.getLogger(__name__)


async def _screen(settings: ProxySettings, criteria: ScreenCriteria) -> dict:
    ctx = ProxyContext.create(settings)
    try:
        return await ctx.screener.screen(criteria)
    finally:
        await ctx.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Liquidity-first stock screen over J-Quants data")
    parser.add_argument("--market", default="All", help="All, prime, standard or growth")
    parser.add_argument("--limit", type=int, default=30, help="Rows to return (1-200)")
    parser.add_argument(
        "--liquidity-min", type=float, default=DEFAULT_LIQUIDITY_MIN, help="Minimum turnover"
    )
    parser.add_argument("--per-lt", type=float, default=None, help="Keep P/E below this")
    parser.add_argument("--pbr-lt", type=float, default=None, help="Keep P/B below this")
    parser.add_argument(
        "--div-yield-gt", type=float, default=None, help="Keep dividend yield above (0.03 or 3)"
    )
    parser.add_argument("--mom3m-gt", type=float, default=None, help="Keep 3m return above")
    parser.add_argument(
        "--precise",
        action="store_true",
        help="Average turnover over --days trading days instead of the latest day",
    )
    parser.add_argument("--days", type=int, default=None, help="Liquidity window (precise mode)")
    parser.add_argument("--budget-ms", type=int, default=25_000, help="Time budget")
    parser.add_argument("--max-scan", type=int, default=500, help="Max statements lookups")
    parser.add_argument("--universe", action="append", default=None, help="Restrict to codes")
    parser.add_argument("--save", default="", help="Path to save the rows as CSV")
    parser.add_argument("--debug", action="store_true", help="Print screening diagnostics")
    args = parser.parse_args()

    settings = ProxySettings.from_env()
    configure_logging(settings.log_level)

    codes = parse_codes(args.universe)
    criteria = ScreenCriteria(
        market=args.market,
        limit=args.limit,
        liquidity_min=args.liquidity_min,
        per_lt=args.per_lt,
        pbr_lt=args.pbr_lt,
        div_yield_gt=args.div_yield_gt,
        mom3m_gt=args.mom3m_gt,
        liquidity_mode=LiquidityMode.PRECISE if args.precise else LiquidityMode.FAST,
        days=args.days,
        budget_ms=args.budget_ms,
        max_scan=args.max_scan,
        universe=frozenset(codes) if codes else None,
        debug=args.debug,
    )
    result = asyncio.run(_screen(settings, criteria))

    df = pl.DataFrame(result["items"], infer_schema_length=None)
    if df.is_empty():
        logger.warning("Screen returned no rows")
    else:
        with pl.Config(tbl_rows=criteria.limit, tbl_cols=-1):
            print(df)

    if args.save and not df.is_empty():
        df.write_csv(args.save)
        print(f"Saved {df.height} rows to {args.save}")
    if args.debug:
        print(json.dumps(result.get("_debug", {}), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
