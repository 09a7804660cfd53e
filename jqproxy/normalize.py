"""Normalization of J-Quants JSON records.

The upstream schema has shifted across API versions: the same attribute shows
up as ``TurnoverValue``, ``turnover_value`` or the abbreviated ``Va``, numbers
arrive as strings, and ``"-"`` / ``"*"`` / ``""`` stand for "no data". Each
logical attribute therefore has a ranked alias list; the first alias present
with a usable value wins, and anything unparseable becomes None rather than an
exception or a zero. New naming variants are handled by extending the alias
tuples below.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SENTINELS = frozenset({"", "-", "*"})

_FIVE_DIGIT_CODE = re.compile(r"^(\d{4})\d$")
_LEADING_FOUR_DIGITS = re.compile(r"^(\d{4})")
_COMPACT_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")

# Logical attribute -> accepted upstream field names, most preferred first
CODE_ALIASES = ("Code", "LocalCode")
DATE_ALIASES = ("Date",)

DAILY_QUOTE_ALIASES: dict[str, tuple[str, ...]] = {
    "date": DATE_ALIASES,
    "code": CODE_ALIASES,
    "close": ("Close", "C", "EndPrice", "AdjustmentClose", "AdjC", "AdjustedClose"),
    "turnover": ("TurnoverValue", "Va", "TradingValue"),
}

WEEKLY_MARGIN_ALIASES: dict[str, tuple[str, ...]] = {
    "date": DATE_ALIASES,
    "code": CODE_ALIASES,
    "long": ("LongMarginTradeVolume", "LongVol", "Buying"),
    "short": ("ShortMarginTradeVolume", "ShrtVol", "Selling"),
}

DAILY_PUBLIC_MARGIN_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("PublishedDate", "PubDate", "Date"),
    "code": CODE_ALIASES,
    "long": ("LongMarginOutstanding", "LongOut", "BuyingOnMargin"),
    "short": ("ShortMarginOutstanding", "ShrtOut", "SellingOnMargin"),
    "rate": ("ShortLongRatio", "SLRatio", "MarginRate"),
}

LISTED_INFO_ALIASES: dict[str, tuple[str, ...]] = {
    "code": CODE_ALIASES,
    "name": ("CompanyName", "CoName", "Name"),
    "market": ("MarketCodeName", "MktNm", "Market"),
}

CALENDAR_ALIASES: dict[str, tuple[str, ...]] = {
    "date": DATE_ALIASES,
    "division": ("HolidayDivision", "HolDiv", "Holiday"),
}

# Financial statement line items
EPS_ALIASES = ("EarningsPerShare", "EPS")
EPS_PATTERNS = (r"^(?!forecast|nextyear).*earnings.*per.*share",)
NET_INCOME_ALIASES = (
    "Profit",
    "ProfitLossAttributableToOwnersOfParent",
    "NetIncomeAttributableToOwnersOfParent",
    "NetIncome",
)
NET_INCOME_PATTERNS = (r"profit.*owners.*parent", r"^net.?income")
BPS_ALIASES = ("BookValuePerShare", "NetAssetsPerShare", "BPS", "EquityPerShare")
BPS_PATTERNS = (r"^(?!forecast).*book.*value.*per.*share", r"net.*assets.*per.*share")
DPS_ALIASES = (
    "ResultDividendPerShareAnnual",
    "ForecastDividendPerShareAnnual",
    "NextYearForecastDividendPerShareAnnual",
    "DividendPerShare",
    "DPS",
)
QUARTERLY_CASH_DIVIDEND_ALIASES = ("CashDividendsPaidPerShare",)
EQUITY_ALIASES = ("Equity", "NetAssets", "TotalEquity", "EquityAttributableToOwnersOfParent")
EQUITY_PATTERNS = (r"^(equity|net.?assets|total.?equity|equity.?attributable.*parent)$",)
TOTAL_ASSETS_ALIASES = ("TotalAssets",)
ISSUED_SHARES_ALIASES = (
    "NumberOfIssuedAndOutstandingSharesAtTheEndOfFiscalYearIncludingTreasuryStock",
    "NumberOfIssuedAndOutstandingSharesAtEndOfFiscalYearIncludingTreasuryStock",
    "NumberOfIssuedAndOutstandingSharesAtEndOfFiscalYear",
    "IssuedShares",
    "CommonSharesOutstanding",
    "NumberOfShares",
)
ISSUED_SHARES_PATTERNS = (r"issued.*outstanding.*shares", r"common.*shares.*outstanding")
TREASURY_SHARES_ALIASES = (
    "NumberOfTreasuryStockAtTheEndOfFiscalYear",
    "NumberOfTreasuryStockAtEndOfFiscalYear",
)
DISCLOSED_DATE_ALIASES = ("DisclosedDate", "DiscDate")
DISCLOSED_TIME_ALIASES = ("DisclosedTime", "DiscTime")

BUSINESS_DAY_DIVISIONS = frozenset({"1", "2"})


# ----------------------------------------------------------------------
# Scalar coercion
# ----------------------------------------------------------------------
def is_sentinel(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() in SENTINELS)


def to_number(value: Any) -> float | None:
    """Coerce an upstream scalar to float, or None for sentinels and garbage.

    Examples:
        >>> to_number("1,234.5")
        1234.5
        >>> to_number("-") is None
        True
    """
    if is_sentinel(value) or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "")
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def canonical_code(raw: Any) -> str:
    """Return the 4-character root code for an instrument.

    J-Quants emits 5-digit codes whose last digit is a share-class suffix
    (``72030`` -> ``7203``). Longer tokens keep their leading 4 digits; anything
    else is zero-padded to 4 characters. Applying it twice is a no-op.
    """
    s = "" if raw is None else str(raw).strip()
    match = _FIVE_DIGIT_CODE.match(s) or _LEADING_FOUR_DIGITS.match(s)
    if match:
        return match.group(1)
    return s.rjust(4, "0")


def normalize_date(value: Any) -> str:
    """Render a date as ``YYYY-MM-DD``; compact ``YYYYMMDD`` is expanded."""
    if value is None:
        return ""
    s = str(value).strip()
    match = _COMPACT_DATE.match(s)
    if match:
        return "-".join(match.groups())
    return s[:10] if len(s) > 10 and s[4:5] == "-" else s


# ----------------------------------------------------------------------
# Alias lookup
# ----------------------------------------------------------------------
def _fold(key: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", str(key).lower())


def _folded_keys(record: Mapping[str, Any]) -> dict[str, str]:
    index: dict[str, str] = {}
    for key in record:
        index.setdefault(_fold(key), key)
    return index


def pick(record: Any, aliases: Iterable[str]) -> Any:
    """Return the first non-sentinel value among ``aliases``.

    Keys match case- and separator-insensitively, so ``TurnoverValue`` also
    finds ``turnover_value``.
    """
    if not isinstance(record, Mapping):
        return None
    index = _folded_keys(record)
    for alias in aliases:
        key = index.get(_fold(alias))
        if key is not None and not is_sentinel(record[key]):
            return record[key]
    return None


def pick_number(
    record: Any, aliases: Iterable[str], patterns: Sequence[str] = ()
) -> float | None:
    """Return the first alias (then regex-matched key) holding a usable number."""
    if not isinstance(record, Mapping):
        return None
    index = _folded_keys(record)
    for alias in aliases:
        key = index.get(_fold(alias))
        if key is not None:
            number = to_number(record[key])
            if number is not None:
                return number
    for pattern in patterns:
        regex = re.compile(pattern, re.IGNORECASE)
        for key, value in record.items():
            if regex.search(str(key)):
                number = to_number(value)
                if number is not None:
                    return number
    return None


def pick_str(record: Any, aliases: Iterable[str], default: str = "") -> str:
    value = pick(record, aliases)
    return default if value is None else str(value).strip()


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class PriceBar:
    date: str
    code: str
    close: float | None
    turnover: float | None


@dataclass(frozen=True)
class MarginRecord:
    date: str
    code: str
    long_volume: float | None
    short_volume: float | None
    net: float | None
    ratio: float | None
    margin_rate: float | None = None


@dataclass(frozen=True)
class ListedInstrument:
    code: str
    name: str
    market: str


@dataclass(frozen=True)
class FinancialSummary:
    """Per-share figures derived from disclosed statements; None means not disclosed."""

    code: str
    trailing_eps: float | None = None
    book_value_per_share: float | None = None
    dividend_per_share: float | None = None
    return_on_equity: float | None = None
    return_on_assets: float | None = None


def map_daily_quote(record: Mapping[str, Any]) -> PriceBar:
    aliases = DAILY_QUOTE_ALIASES
    return PriceBar(
        date=normalize_date(pick(record, aliases["date"])),
        code=canonical_code(pick(record, aliases["code"])),
        close=pick_number(record, aliases["close"]),
        turnover=pick_number(record, aliases["turnover"]),
    )


def _margin(
    date: str, code: str, long: float | None, short: float | None, **extra: Any
) -> MarginRecord:
    net = long - short if long is not None and short is not None else None
    ratio = short / long if long and short is not None else None
    return MarginRecord(
        date=date, code=code, long_volume=long, short_volume=short, net=net, ratio=ratio, **extra
    )


def map_weekly_margin(record: Mapping[str, Any]) -> MarginRecord:
    aliases = WEEKLY_MARGIN_ALIASES
    return _margin(
        normalize_date(pick(record, aliases["date"])),
        canonical_code(pick(record, aliases["code"])),
        pick_number(record, aliases["long"]),
        pick_number(record, aliases["short"]),
    )


def map_daily_public_margin(record: Mapping[str, Any]) -> MarginRecord:
    aliases = DAILY_PUBLIC_MARGIN_ALIASES
    rate = pick_number(record, aliases["rate"])
    if rate is not None and rate > 1:
        # Published as a percentage
        rate = rate / 100
    return _margin(
        normalize_date(pick(record, aliases["date"])),
        canonical_code(pick(record, aliases["code"])),
        pick_number(record, aliases["long"]),
        pick_number(record, aliases["short"]),
        margin_rate=rate,
    )


def map_listed_info(record: Mapping[str, Any]) -> ListedInstrument:
    aliases = LISTED_INFO_ALIASES
    return ListedInstrument(
        code=canonical_code(pick(record, aliases["code"])),
        name=pick_str(record, aliases["name"]),
        market=pick_str(record, aliases["market"]),
    )


def map_calendar_day(record: Mapping[str, Any]) -> tuple[str, str]:
    """Return ``(date, holiday_division)`` for a trading calendar entry."""
    return (
        normalize_date(pick(record, CALENDAR_ALIASES["date"])),
        pick_str(record, CALENDAR_ALIASES["division"]),
    )


def is_business_day(record: Mapping[str, Any]) -> bool:
    """Full (``1``) and half (``2``) trading sessions count as business days."""
    return map_calendar_day(record)[1] in BUSINESS_DAY_DIVISIONS


# ----------------------------------------------------------------------
# Financial statements
# ----------------------------------------------------------------------
def _shares_outstanding(statement: Mapping[str, Any]) -> float | None:
    issued = pick_number(statement, ISSUED_SHARES_ALIASES, ISSUED_SHARES_PATTERNS)
    if issued is None or issued <= 0:
        return None
    treasury = pick_number(statement, TREASURY_SHARES_ALIASES)
    if treasury is not None and 0 <= treasury < issued:
        return issued - treasury
    return issued


def _book_value_from_equity(statement: Mapping[str, Any]) -> float | None:
    equity = pick_number(statement, EQUITY_ALIASES, EQUITY_PATTERNS)
    shares = _shares_outstanding(statement)
    if equity is None or shares is None:
        return None
    # Some filings report share counts in thousands or millions; take the
    # first unit giving a per-share value between 1 yen and 10 million yen.
    for scale in (1, 1e3, 1e6):
        per_share = equity / (shares * scale)
        if 1 <= per_share < 1e7:
            return per_share
    return None


def _sort_key(statement: Mapping[str, Any]) -> tuple[str, str]:
    return (
        normalize_date(pick(statement, DISCLOSED_DATE_ALIASES)),
        pick_str(statement, DISCLOSED_TIME_ALIASES),
    )


def _sum_recent(
    statements: Sequence[Mapping[str, Any]], aliases: Sequence[str], patterns: Sequence[str] = ()
) -> float | None:
    values = [pick_number(s, aliases, patterns) for s in statements[:4]]
    present = [v for v in values if v is not None]
    return sum(present) if present else None


def _average(a: float | None, b: float | None) -> float | None:
    if a is None or b is None:
        return None
    return (a + b) / 2


def summarize_statements(code: str, statements: Iterable[Mapping[str, Any]]) -> FinancialSummary:
    """Derive trailing per-share figures from a company's disclosed statements.

    Statements are ordered by disclosure date, newest first. Trailing EPS sums
    the EPS of up to four most recent disclosures, or, when none disclose EPS,
    trailing net income over shares outstanding. ROE and ROA divide trailing
    net income by the average of the latest and previous equity / total assets.
    """
    items = sorted(
        (s for s in statements if isinstance(s, Mapping)), key=_sort_key, reverse=True
    )
    code = canonical_code(code)
    if not items:
        return FinancialSummary(code=code)

    latest = items[0]
    previous = items[1] if len(items) > 1 else {}

    net_income = _sum_recent(items, NET_INCOME_ALIASES, NET_INCOME_PATTERNS)
    trailing_eps = _sum_recent(items, EPS_ALIASES, EPS_PATTERNS)
    if trailing_eps is None and net_income is not None:
        shares = _shares_outstanding(latest)
        if shares:
            trailing_eps = net_income / shares

    bps = pick_number(latest, BPS_ALIASES, BPS_PATTERNS)
    if bps is None:
        bps = _book_value_from_equity(latest)

    dps = pick_number(latest, DPS_ALIASES)
    if dps is None:
        dps = _sum_recent(items, QUARTERLY_CASH_DIVIDEND_ALIASES)

    avg_equity = _average(
        pick_number(latest, EQUITY_ALIASES, EQUITY_PATTERNS),
        pick_number(previous, EQUITY_ALIASES, EQUITY_PATTERNS),
    )
    avg_assets = _average(
        pick_number(latest, TOTAL_ASSETS_ALIASES),
        pick_number(previous, TOTAL_ASSETS_ALIASES),
    )
    roe = net_income / avg_equity if net_income is not None and avg_equity else None
    roa = net_income / avg_assets if net_income is not None and avg_assets else None

    return FinancialSummary(
        code=code,
        trailing_eps=trailing_eps,
        book_value_per_share=bps,
        dividend_per_share=dps,
        return_on_equity=roe,
        return_on_assets=roa,
    )
