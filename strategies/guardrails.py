from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from data.chain import SearchResult
from data.gateway import FetchGateway
from data.providers import SearchProvider
from signals.news import (
    EARNINGS_TERMS,
    MACRO_EVENT_TERMS,
    count_published_since,
    mentions_any,
    news_z_score,
)
from storage.macro_calendar import events_within

logger = logging.getLogger(__name__)

GUARDRAIL_LOOKAHEAD_DAYS = 10
NEWS_LOOKBACK_DAYS = 90
NEWS_MAX_RESULTS = 50
NEWS_SPIKE_Z = 2.0
MACRO_QUERY = "FOMC CPI NFP rate decision calendar next 10 days"


@dataclass
class SymbolGuardrails:
    symbol: str
    earnings_risk: bool = False
    news_spike: bool = False
    news: list[SearchResult] = field(default_factory=list)
    news_z: Optional[float] = None
    errors: list[str] = field(default_factory=list)


@dataclass
class MacroGuardrail:
    macro_event: bool = False
    calendar_events: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


async def check_macro(
    gateway: FetchGateway,
    search: Optional[SearchProvider],
    calendar: Sequence[dict[str, Any]],
    as_of: dt.datetime,
    lookahead_days: int = GUARDRAIL_LOOKAHEAD_DAYS,
) -> MacroGuardrail:
    out = MacroGuardrail()
    out.calendar_events = events_within(list(calendar), as_of.date(), lookahead_days)
    mentioned = False
    if search is not None:
        try:
            results = await gateway.call("search:macro", search.search, MACRO_QUERY, lookahead_days, "basic", 5)
            mentioned = mentions_any(results, MACRO_EVENT_TERMS)
        except Exception as exc:
            logger.warning("macro event search failed: %s", exc)
            out.errors.append(f"guardrails: macro: {exc}")
    out.macro_event = mentioned or bool(out.calendar_events)
    return out


async def check_symbol(
    gateway: FetchGateway,
    search: Optional[SearchProvider],
    symbol: str,
    as_of: dt.datetime,
) -> SymbolGuardrails:
    """Earnings and news-volume checks; a failed query leaves its flag False (unknown)."""
    out = SymbolGuardrails(symbol=symbol)
    if search is None:
        return out

    earnings_q, news_q = await asyncio.gather(
        gateway.call(f"search:{symbol}:earnings", search.search, f"{symbol} earnings date next 10 days", GUARDRAIL_LOOKAHEAD_DAYS, "basic", 5),
        gateway.call(f"search:{symbol}:news", search.search, f"{symbol} stock news", NEWS_LOOKBACK_DAYS, "basic", NEWS_MAX_RESULTS),
        return_exceptions=True,
    )

    if isinstance(earnings_q, BaseException):
        logger.warning("%s: earnings search failed: %s", symbol, earnings_q)
        out.errors.append(f"guardrails: {symbol}: earnings search: {earnings_q}")
    else:
        out.earnings_risk = mentions_any(earnings_q, EARNINGS_TERMS)

    if isinstance(news_q, BaseException):
        logger.warning("%s: news search failed: %s", symbol, news_q)
        out.errors.append(f"guardrails: {symbol}: news search: {news_q}")
    else:
        out.news = list(news_q)
        out.news_z = news_z_score(
            count_published_since(out.news, as_of, 7),
            count_published_since(out.news, as_of, NEWS_LOOKBACK_DAYS),
        )
        out.news_spike = out.news_z is not None and out.news_z > NEWS_SPIKE_Z
    return out


def flags_for(symbol_check: SymbolGuardrails, macro: MacroGuardrail) -> dict[str, bool]:
    return {
        "earnings_risk": symbol_check.earnings_risk,
        "macro_event": macro.macro_event,
        "news_spike": symbol_check.news_spike,
    }
