from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

import numpy as np
import pandas as pd
import yfinance as yf
from dateutil.relativedelta import relativedelta

from stock_errors import UpstreamError, ValidationError
from stock_fields import ProfileBundle, normalize


LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL = "1d"
LOOKBACK = relativedelta(years=3)
MISSING_DATA = "Data saknas"

QUOTE_SUMMARY_URL = "https://query2.finance.yahoo.com/v10/finance/quoteSummary"
PROFILE_MODULES = (
    "assetProfile",
    "price",
    "summaryDetail",
    "defaultKeyStatistics",
    "financialData",
    "recommendationTrend",
)

# Ordered lookbacks used for the Development and HistoricalData maps.
TARGET_PERIODS: Tuple[Tuple[str, relativedelta], ...] = (
    ("1 Month", relativedelta(months=1)),
    ("3 Months", relativedelta(months=3)),
    ("1 Year", relativedelta(years=1)),
    ("3 Years", relativedelta(years=3)),
)

MARKET_SUFFIXES = {"SE": ".ST"}


@dataclass(frozen=True)
class DailyQuote:
    date: date
    close: Optional[float]
    adj_close: Optional[float] = None


@dataclass(frozen=True)
class MatchResult:
    period: str
    target: date
    quote: DailyQuote

    @property
    def deviation_days(self) -> int:
        return (self.quote.date - self.target).days

    @property
    def label(self) -> str:
        return label_with_deviation(self.period, self.target, self.quote.date)


def _normalize_symbol(symbol: Optional[str], market: Optional[str] = None) -> str:
    sym = re.sub(r"\s+", "-", (symbol or "").strip().upper())
    if not sym:
        raise ValidationError("symbol is required")
    suffix = MARKET_SUFFIXES.get((market or "").strip().upper())
    if suffix and not sym.endswith(suffix):
        sym += suffix
    return sym


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None or (isinstance(value, float) and np.isnan(value)):
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_date(value: Any) -> Optional[date]:
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return pd.to_datetime(value).date()
    except (TypeError, ValueError):
        return None


def _history_to_quotes(history: pd.DataFrame) -> List[DailyQuote]:
    if history.empty:
        return []
    data = history.reset_index()
    quotes: List[DailyQuote] = []
    for _, row in data.iterrows():
        quote_date = _to_date(row.get("Date"))
        close = _safe_float(row.get("Close"))
        adj_close = _safe_float(row.get("Adj Close"))
        if quote_date is None or (close is None and adj_close is None):
            continue
        quotes.append(DailyQuote(date=quote_date, close=close, adj_close=adj_close))
    quotes.sort(key=lambda quote: quote.date)
    return quotes


class YahooFinanceProvider:
    """Profile modules and daily history from Yahoo Finance through yfinance."""

    def fetch_quote_summary(self, symbol: str, modules: Iterable[str] = PROFILE_MODULES) -> ProfileBundle:
        ticker = yf.Ticker(symbol)
        params = {
            "modules": ",".join(modules),
            "corsDomain": "finance.yahoo.com",
            "formatted": "false",
            "symbol": symbol,
        }
        # Reuses the cookie/crumb session yfinance maintains for its own quote calls.
        payload = ticker._data.get_raw_json(f"{QUOTE_SUMMARY_URL}/{symbol}", params=params)
        return ProfileBundle.from_quote_summary(payload)

    def fetch_historical_series(
        self, symbol: str, start: date, end: date, interval: str = DEFAULT_INTERVAL
    ) -> List[DailyQuote]:
        ticker = yf.Ticker(symbol)
        # yfinance treats `end` as exclusive.
        history = ticker.history(start=start, end=end + timedelta(days=1), interval=interval, auto_adjust=False)
        return _history_to_quotes(history.astype(float, errors="ignore"))


def effective_price(quote: DailyQuote) -> Optional[float]:
    if quote.adj_close is not None:
        return quote.adj_close
    return quote.close


def find_closest(series: Sequence[DailyQuote], target: date) -> DailyQuote:
    if not series:
        raise ValueError("series must not be empty")
    closest = series[0]
    closest_gap = abs((closest.date - target).days)
    for quote in series[1:]:
        gap = abs((quote.date - target).days)
        if gap < closest_gap:
            closest, closest_gap = quote, gap
    return closest


def label_with_deviation(period: str, target: date, matched: date) -> str:
    days = (matched - target).days
    if days == 0:
        return period
    if days > 0:
        return f"{period} + {days} days"
    return f"{period} - {abs(days)} days"


def match_period(series: Sequence[DailyQuote], period: str, target: date) -> MatchResult:
    return MatchResult(period=period, target=target, quote=find_closest(series, target))


def percent_change(latest_price: Optional[float], reference_price: Optional[float]) -> str:
    if reference_price in (None, 0) or latest_price is None:
        return MISSING_DATA
    change = ((latest_price - reference_price) / reference_price) * 100.0
    return f"{change:.2f}%"


def target_dates(today: date) -> List[Tuple[str, date]]:
    return [(name, today - offset) for name, offset in TARGET_PERIODS]


def _fetch(provider: Any, symbol: str, start: date, end: date) -> Tuple[ProfileBundle, List[DailyQuote]]:
    try:
        bundle = provider.fetch_quote_summary(symbol, PROFILE_MODULES)
        series = provider.fetch_historical_series(symbol, start, end, DEFAULT_INTERVAL)
    except UpstreamError:
        raise
    except Exception as exc:
        LOGGER.warning("Upstream fetch failed for %s: %s", symbol, exc)
        raise UpstreamError(f"Failed to fetch stock data for {symbol}.") from exc
    if not series:
        LOGGER.error("No historical data found for %s", symbol)
        raise UpstreamError("Historical data not available. Please try again later.")
    return bundle, list(series)


def enrich_stock(
    symbol: str,
    provider: Any = None,
    today: Optional[date] = None,
    market: Optional[str] = None,
) -> Dict[str, Any]:
    """Fetch profile and three years of daily history for ``symbol`` and build its record.

    The record carries the normalized profile fields plus ``RealtimePrice``
    (the latest historical point), ``Development`` and ``HistoricalData``
    keyed by period labels that note any day deviation from the exact target.
    Nothing is persisted here.
    """
    sym = _normalize_symbol(symbol, market)
    provider = provider or YahooFinanceProvider()
    today = today or date.today()
    start = today - LOOKBACK
    LOGGER.info("Fetching %s history from %s to %s", sym, start.isoformat(), today.isoformat())

    bundle, series = _fetch(provider, sym, start, today)

    latest = series[-1]
    latest_price = effective_price(latest)

    development: Dict[str, str] = {}
    historical: Dict[str, Dict[str, Any]] = {}
    for period, target in target_dates(today):
        match = match_period(series, period, target)
        price = effective_price(match.quote)
        development[match.label] = percent_change(latest_price, price)
        historical[match.label] = {"date": match.quote.date.isoformat(), "close": price}

    record = normalize(sym, bundle, latest_price)
    record["RealtimePrice"] = {
        "timestamp": datetime.combine(latest.date, time(), tzinfo=timezone.utc).isoformat(),
        "price": latest_price,
    }
    record["Development"] = development
    record["HistoricalData"] = historical
    LOGGER.info("Enriched %s from %d daily quotes, latest %s", sym, len(series), latest.date.isoformat())
    return record
