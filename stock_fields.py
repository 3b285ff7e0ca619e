"""Canonical stock record fields built from Yahoo quoteSummary modules.

Every field is described by a :class:`FieldRule`: where it lands in the
record and the ordered ``(module, key)`` sources to try. The first usable
value wins; when none is usable the field holds :data:`UNKNOWN`.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone


UNKNOWN = "Unknown"

Source = Tuple[str, str]


@dataclass(frozen=True)
class ProfileBundle:
    assetProfile: Mapping[str, Any] = field(default_factory=dict)
    price: Mapping[str, Any] = field(default_factory=dict)
    summaryDetail: Mapping[str, Any] = field(default_factory=dict)
    defaultKeyStatistics: Mapping[str, Any] = field(default_factory=dict)
    financialData: Mapping[str, Any] = field(default_factory=dict)
    recommendationTrend: Optional[Mapping[str, Any]] = None

    @classmethod
    def from_modules(cls, modules: Mapping[str, Any]) -> "ProfileBundle":
        def module(name: str) -> Mapping[str, Any]:
            value = modules.get(name)
            return value if isinstance(value, Mapping) else {}

        trend = modules.get("recommendationTrend")
        return cls(
            assetProfile=module("assetProfile"),
            price=module("price"),
            summaryDetail=module("summaryDetail"),
            defaultKeyStatistics=module("defaultKeyStatistics"),
            financialData=module("financialData"),
            recommendationTrend=trend if isinstance(trend, Mapping) else None,
        )

    @classmethod
    def from_quote_summary(cls, payload: Any) -> "ProfileBundle":
        """Build a bundle from the raw ``{"quoteSummary": {"result": [...]}}`` response."""
        summary = payload.get("quoteSummary") if isinstance(payload, Mapping) else None
        if not isinstance(summary, Mapping):
            raise ValueError("quoteSummary response is malformed")
        error = summary.get("error")
        if error:
            description = error.get("description") if isinstance(error, Mapping) else error
            raise ValueError(f"quoteSummary error: {description}")
        results = summary.get("result") or []
        if not results or not isinstance(results[0], Mapping):
            raise ValueError("quoteSummary returned no result")
        return cls.from_modules(results[0])

    def get(self, module: str, key: str) -> Any:
        data = getattr(self, module, None)
        if not isinstance(data, Mapping):
            return None
        return data.get(key)


@dataclass(frozen=True)
class FieldRule:
    path: Tuple[str, ...]
    sources: Tuple[Source, ...] = ()
    transform: Optional[Callable[[Any], Any]] = None


def _timestamp_to_iso(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).date().isoformat()
    except (OverflowError, OSError, ValueError):
        return value


# TrailingPE and Recommendation have no sources; they are computed in normalize().
FIELD_RULES: Tuple[FieldRule, ...] = (
    FieldRule(("Name",), (("price", "longName"), ("price", "shortName"))),
    FieldRule(("ShortName",), (("price", "shortName"),)),
    FieldRule(("Website",), (("assetProfile", "website"),)),
    FieldRule(("Sector",), (("assetProfile", "sector"),)),
    FieldRule(("Industry",), (("assetProfile", "industry"),)),
    FieldRule(("Country",), (("assetProfile", "country"),)),
    FieldRule(("Address", "Street"), (("assetProfile", "address1"),)),
    FieldRule(("Address", "City"), (("assetProfile", "city"),)),
    FieldRule(("Address", "State"), (("assetProfile", "state"),)),
    FieldRule(("Address", "Zip"), (("assetProfile", "zip"),)),
    FieldRule(("MarketCapitalization",), (("price", "marketCap"),)),
    FieldRule(("TrailingPE",)),
    FieldRule(("ForwardPE",), (("defaultKeyStatistics", "forwardPE"), ("financialData", "forwardPE"))),
    FieldRule(("EPS",), (("defaultKeyStatistics", "trailingEps"),)),
    FieldRule(
        ("epsTrailingTwelveMonths",),
        (("price", "epsTrailingTwelveMonths"), ("defaultKeyStatistics", "trailingEps")),
    ),
    FieldRule(("epsForward",), (("price", "epsForward"),)),
    FieldRule(("Beta",), (("defaultKeyStatistics", "beta"), ("financialData", "beta"))),
    FieldRule(("BookValue",), (("defaultKeyStatistics", "bookValue"), ("price", "bookValue"))),
    FieldRule(("PriceToBook",), (("defaultKeyStatistics", "priceToBook"), ("price", "priceToBook"))),
    FieldRule(("TotalRevenue",), (("financialData", "totalRevenue"),)),
    FieldRule(("GrossMargins",), (("financialData", "grossMargins"), ("summaryDetail", "grossMargins"))),
    FieldRule(
        ("OperatingMargins",),
        (("financialData", "operatingMargins"), ("summaryDetail", "operatingMargins")),
    ),
    FieldRule(("Recommendation",)),
    FieldRule(
        ("AnalystTargetMeanPrice",),
        (("financialData", "targetMeanPrice"), ("price", "targetMeanPrice")),
    ),
    FieldRule(("Dividend", "DividendRate"), (("financialData", "dividendRate"), ("summaryDetail", "dividendRate"))),
    FieldRule(
        ("Dividend", "DividendYield"),
        (("financialData", "dividendYield"), ("summaryDetail", "dividendYield")),
    ),
    FieldRule(
        ("Dividend", "ExDividendDate"),
        (("financialData", "exDividendDate"), ("summaryDetail", "exDividendDate")),
        _timestamp_to_iso,
    ),
    FieldRule(("52WeekHigh",), (("financialData", "targetHighPrice"), ("summaryDetail", "fiftyTwoWeekHigh"))),
    FieldRule(("52WeekLow",), (("financialData", "targetLowPrice"), ("summaryDetail", "fiftyTwoWeekLow"))),
)

RECOMMENDATION_FALLBACKS: Tuple[Source, ...] = (
    ("defaultKeyStatistics", "recommendationMean"),
    ("price", "recommendationKey"),
)


def _usable(value: Any) -> Any:
    """Unwrap Yahoo ``{"raw": ...}`` values; return None for anything that should fall through."""
    if isinstance(value, Mapping):
        if not value:
            return None
        if "raw" in value:
            value = value["raw"]
    if value is None or value == "" or value is False:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, (int, float)) and value == 0:
        return None
    return value


def resolve(bundle: ProfileBundle, sources: Sequence[Source], default: Any = UNKNOWN) -> Any:
    for module, key in sources:
        value = _usable(bundle.get(module, key))
        if value is not None:
            return value
    return default


def compute_trailing_pe(latest_price: Optional[float], trailing_eps: Any) -> Any:
    eps = _usable(trailing_eps)
    if eps is None or latest_price is None:
        return UNKNOWN
    try:
        return round(float(latest_price) / float(eps), 2)
    except (TypeError, ValueError):
        return UNKNOWN


def format_recommendation(bundle: ProfileBundle) -> Any:
    if bundle.recommendationTrend is not None:
        # A present module is authoritative even when its trend list is empty.
        trend: List[Any] = [
            entry for entry in bundle.recommendationTrend.get("trend") or [] if isinstance(entry, Mapping)
        ]
        if not trend:
            return UNKNOWN
        latest = trend[0]
        counts = [latest.get(key) or 0 for key in ("strongBuy", "buy", "hold", "sell", "strongSell")]
        return "({}) {} strong buy, {} buy, {} hold, {} sell, {} strong sell".format(latest.get("period"), *counts)
    return resolve(bundle, RECOMMENDATION_FALLBACKS)


def _assign(record: Dict[str, Any], path: Tuple[str, ...], value: Any) -> None:
    target = record
    for key in path[:-1]:
        target = target.setdefault(key, {})
    target[path[-1]] = value


def normalize(symbol: str, bundle: ProfileBundle, latest_price: Optional[float]) -> Dict[str, Any]:
    record: Dict[str, Any] = {"Symbol": symbol}
    for rule in FIELD_RULES:
        value = resolve(bundle, rule.sources)
        if rule.transform is not None and value != UNKNOWN:
            value = rule.transform(value)
        _assign(record, rule.path, value)
    record["TrailingPE"] = compute_trailing_pe(latest_price, bundle.get("defaultKeyStatistics", "trailingEps"))
    record["Recommendation"] = format_recommendation(bundle)
    return record
