#!/usr/bin/env python
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

import polars as pl

from jqproxy.config import ProxySettings, configure_logging
from jqproxy.context import ProxyContext
from jqproxy.market import DAILY_QUOTES_PATH
from jqproxy.normalize import normalize_date


async def _fetch(settings: ProxySettings, params: dict[str, str]) -> list[dict]:
    ctx = ProxyContext.create(settings)
    try:
        return await ctx.client.get_paginated(DAILY_QUOTES_PATH, "daily_quotes", params)
    finally:
        await ctx.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Fetch daily stock prices (/v1/prices/daily_quotes)"
    )
    parser.add_argument("--code", help="Issue code (optional if date is provided)", default="")
    parser.add_argument("--date", help="Date YYYYMMDD or YYYY-MM-DD (optional)", default="")
    parser.add_argument("--from", dest="from_", help="From date", default="")
    parser.add_argument("--to", help="To date", default="")
    parser.add_argument("--save", help="Path to save CSV/Parquet (by extension)", default="")
    parser.add_argument("--limit", type=int, default=20, help="Rows to display")
    args = parser.parse_args()

    if not args.code and not args.date:
        parser.error("one of --code or --date is required")

    settings = ProxySettings.from_env()
    configure_logging(settings.log_level)

    params = {}
    if args.code:
        params["code"] = args.code
    if args.date:
        params["date"] = normalize_date(args.date)
    if args.from_:
        params["from"] = normalize_date(args.from_)
    if args.to:
        params["to"] = normalize_date(args.to)

    rows = asyncio.run(_fetch(settings, params))
    df = pl.DataFrame(rows, infer_schema_length=None)

    if args.save:
        out = Path(args.save)
        out.parent.mkdir(parents=True, exist_ok=True)
        if out.suffix.lower() == ".parquet":
            df.write_parquet(out)
        else:
            df.write_csv(out)
        print(f"Saved {df.height} rows to {out}")

    print(df.head(args.limit) if args.limit else df)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
