#!/usr/bin/env python
from __future__ import annotations

import argparse
import asyncio
import json
import logging

from jqproxy.config import ProxySettings, configure_logging
from jqproxy.context import ProxyContext


async def _refresh(settings: ProxySettings, refresh_token: str | None) -> dict:
    ctx = ProxyContext.create(settings)
    try:
        state = await ctx.tokens.refresh_id_token(refresh_token)
    finally:
        await ctx.aclose()
    id_token = state.id_token or ""
    return {
        "ok": True,
        "idToken_prefix": id_token[:16] + "...",
        "len": len(id_token),
        "valid_ms": ctx.tokens.ms_until_expiry(),
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Exchange J-Quants refresh token for idToken")
    parser.add_argument(
        "--refresh-token",
        dest="refresh_token",
        default=None,
        help="Refresh token (defaults to $JQ_REFRESH_TOKEN or .env, then JQ_EMAIL/JQ_PASSWORD)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    settings = ProxySettings.from_env()  # populates env from .env if present
    configure_logging(logging.DEBUG if args.verbose else settings.log_level)
    print(json.dumps(asyncio.run(_refresh(settings, args.refresh_token))))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
