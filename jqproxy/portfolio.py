"""Per-code fundamentals, margin summaries and portfolio snapshots."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import asdict
from typing import Any

from jqproxy.market import MarketData, NoDataError
from jqproxy.metrics import latest_closes, valuation_ratios
from jqproxy.normalize import MarginRecord, canonical_code, summarize_statements

logger = logging.getLogger(__name__)

DEFAULT_WEEKS = 26
MIN_WEEKS = 4
DEFAULT_DAYS = 60
MIN_DAYS = 7


def _delta(latest: float | None, previous: float | None) -> float | None:
    if latest is None or previous is None:
        return None
    return latest - previous


def week_over_week(records: Sequence[MarginRecord]) -> dict[str, float | None]:
    """Change of the last weekly record against the one before it."""
    if len(records) < 2:
        return {"long_volume": None, "short_volume": None, "net": None}
    latest, previous = records[-1], records[-2]
    return {
        "long_volume": _delta(latest.long_volume, previous.long_volume),
        "short_volume": _delta(latest.short_volume, previous.short_volume),
        "net": _delta(latest.net, previous.net),
    }


class PortfolioService:
    def __init__(self, market: MarketData) -> None:
        self.market = market

    async def _close_map(self, *, id_token: str | None = None) -> dict[str, float | None]:
        day = await self.market.latest_trading_day(id_token=id_token)
        return latest_closes(await self.market.daily_quotes_by_date(day, id_token=id_token))

    async def _closes_or_empty(self, *, id_token: str | None = None) -> dict[str, float | None]:
        """Latest closes, or an empty map when there is no trading day to price at."""
        try:
            return await self._close_map(id_token=id_token)
        except NoDataError as e:
            logger.warning(f"No closing prices available, valuing without them: {e}")
            return {}

    async def statements_summary(self, code: str, *, id_token: str | None = None) -> dict[str, Any]:
        """Financial summary of ``code`` valued at the latest close.

        Raises:
            NoDataError: If the upstream has no statements for ``code``.
        """
        code = canonical_code(code)
        statements, closes = await asyncio.gather(
            self.market.statements(code, id_token=id_token),
            self._closes_or_empty(id_token=id_token),
        )
        if not statements:
            raise NoDataError(f"No financial statements for {code}")

        summary = summarize_statements(code, statements)
        close = closes.get(code)
        valuation = valuation_ratios(close, summary)
        return {
            "summary": {
                **asdict(summary),
                "close": close,
                **asdict(valuation),
            },
            "raw_count": len(statements),
        }

    async def weekly_margin(
        self, code: str, weeks: int = DEFAULT_WEEKS, *, id_token: str | None = None
    ) -> dict[str, Any]:
        code = canonical_code(code)
        weeks = max(MIN_WEEKS, weeks)
        records = (await self.market.weekly_margin(code, id_token=id_token))[-weeks:]
        latest = asdict(records[-1]) if records else None
        return {
            "code": code,
            "count": len(records),
            "latest": latest,
            "wow_change": week_over_week(records),
            "items": [asdict(r) for r in records],
        }

    async def daily_public_margin(
        self, code: str, days: int = DEFAULT_DAYS, *, id_token: str | None = None
    ) -> dict[str, Any]:
        code = canonical_code(code)
        days = max(MIN_DAYS, days)
        # Codes outside the daily publication scheme legitimately come back empty
        records = (await self.market.daily_public_margin(code, days, id_token=id_token))[-days:]
        return {"code": code, "count": len(records), "items": [asdict(r) for r in records]}

    async def _holding(
        self,
        code: str,
        close: float | None,
        with_credit: bool,
        id_token: str | None,
    ) -> dict[str, Any]:
        item: dict[str, Any] = {
            "code": code,
            "close": close,
            "per": None,
            "pbr": None,
            "dividend_yield": None,
            "trailing_eps": None,
            "book_value_per_share": None,
            "dividend_per_share": None,
            "credit_latest": None,
            "error": None,
        }
        errors = []
        try:
            summary = summarize_statements(
                code, await self.market.statements(code, id_token=id_token)
            )
        except Exception as e:
            logger.warning(f"Portfolio: statements for {code} failed: {e}")
            errors.append(str(e))
        else:
            item.update(
                trailing_eps=summary.trailing_eps,
                book_value_per_share=summary.book_value_per_share,
                dividend_per_share=summary.dividend_per_share,
                **asdict(valuation_ratios(close, summary)),
            )

        if with_credit:
            try:
                records = await self.market.weekly_margin(code, id_token=id_token)
            except Exception as e:
                logger.warning(f"Portfolio: weekly margin for {code} failed: {e}")
                errors.append(str(e))
            else:
                item["credit_latest"] = asdict(records[-1]) if records else None

        if errors:
            item["error"] = "; ".join(errors)
        return item

    async def summary(
        self, codes: Sequence[str], with_credit: bool = False, *, id_token: str | None = None
    ) -> dict[str, Any]:
        """Snapshot of each holding; one failing code never fails the batch."""
        codes = list(dict.fromkeys(canonical_code(c) for c in codes))
        closes = await self._closes_or_empty(id_token=id_token)
        items = await asyncio.gather(
            *(self._holding(c, closes.get(c), with_credit, id_token) for c in codes)
        )
        return {"count": len(items), "items": list(items)}
