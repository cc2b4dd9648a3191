from __future__ import annotations

import asyncio
import datetime as dt

from data.chain import UTC, SearchResult
from data.gateway import FetchGateway, RateLimiter
from strategies.guardrails import check_macro, check_symbol, flags_for
from strategies.models import Candidate, ContractLeg
from strategies.rationale import main_risk, short_summary

AS_OF = dt.datetime(2026, 3, 9, 15, 0, tzinfo=UTC)


class _Search:
    def __init__(self, by_prefix: dict[str, list[SearchResult]], failing: tuple[str, ...] = ()) -> None:
        self.by_prefix = by_prefix
        self.failing = failing
        self.queries: list[tuple[str, int, int]] = []

    def search(self, query: str, recency_days: int = 7, depth: str = "basic", max_results: int = 5) -> list[SearchResult]:
        self.queries.append((query, recency_days, max_results))
        for prefix in self.failing:
            if query.startswith(prefix):
                raise ConnectionError("search down")
        for prefix, results in self.by_prefix.items():
            if query.startswith(prefix):
                return results
        return []


def _gateway() -> FetchGateway:
    return FetchGateway(RateLimiter(max_calls=1000), retries=0, backoff_s=0.0)


def _dated(title: str, days_ago: float) -> SearchResult:
    return SearchResult(title, "", published_at=AS_OF - dt.timedelta(days=days_ago))


def test_earnings_mention_sets_flag() -> None:
    search = _Search({"XYZ earnings": [SearchResult("XYZ to report earnings on March 12", "")]})
    check = asyncio.run(check_symbol(_gateway(), search, "XYZ", AS_OF))
    assert check.earnings_risk
    assert not check.news_spike
    assert ("XYZ stock news", 90, 50) in search.queries


def test_news_volume_spike_sets_flag() -> None:
    burst = [_dated(f"burst {i}", 1) for i in range(20)]
    baseline = [_dated(f"old {i}", 30 + i) for i in range(25)]
    search = _Search({"XYZ stock news": burst + baseline})
    check = asyncio.run(check_symbol(_gateway(), search, "XYZ", AS_OF))
    assert check.news_z is not None and check.news_z > 2.0
    assert check.news_spike
    assert len(check.news) == 45


def test_failed_query_leaves_flag_false_and_records_error() -> None:
    search = _Search({"XYZ stock news": [_dated("quiet day", 2)]}, failing=("XYZ earnings",))
    check = asyncio.run(check_symbol(_gateway(), search, "XYZ", AS_OF))
    assert not check.earnings_risk
    assert check.news
    assert check.errors and check.errors[0].startswith("guardrails: XYZ: earnings search:")


def test_no_search_provider_means_no_flags() -> None:
    check = asyncio.run(check_symbol(_gateway(), None, "XYZ", AS_OF))
    assert (check.earnings_risk, check.news_spike, check.news_z) == (False, False, None)


def test_macro_event_from_calendar_or_search() -> None:
    calendar = [{"date": dt.date(2026, 3, 18), "name": "FOMC rate decision", "time_et": "14:00"}]
    from_calendar = asyncio.run(check_macro(_gateway(), None, calendar, AS_OF))
    assert from_calendar.macro_event
    assert from_calendar.calendar_events == ["2026-03-18 - FOMC rate decision (14:00 ET)"]

    search = _Search({"FOMC": [SearchResult("CPI report due Wednesday", "")]})
    from_search = asyncio.run(check_macro(_gateway(), search, [], AS_OF))
    assert from_search.macro_event

    quiet = asyncio.run(check_macro(_gateway(), _Search({}), [], AS_OF))
    assert not quiet.macro_event


def _candidate(flags: dict[str, bool]) -> Candidate:
    leg = ContractLeg("SELL", "P", 90.0, dt.date(2026, 3, 20), 1.0, 1.1, delta=-0.12)
    return Candidate(
        id="cand_g",
        symbol="XYZ",
        strategy="put_credit_spread",
        short=leg,
        long=ContractLeg("BUY", "P", 88.0, dt.date(2026, 3, 20), 0.5, 0.6, delta=-0.08),
        entry_credit=0.5,
        max_profit=0.5,
        max_loss=1.5,
        breakeven=89.5,
        est_pop=0.88,
        dte=11,
        underlying_price=100.0,
        guardrail_flags=flags,
        default_score=72.4,
    )


def test_flags_and_rationale() -> None:
    search = _Search({"XYZ earnings": [SearchResult("earnings next week", "")]})
    check = asyncio.run(check_symbol(_gateway(), search, "XYZ", AS_OF))
    macro = asyncio.run(check_macro(_gateway(), None, [], AS_OF))
    flags = flags_for(check, macro)
    assert flags == {"earnings_risk": True, "macro_event": False, "news_spike": False}

    cand = _candidate(flags)
    assert main_risk(cand) == "an upcoming earnings release"
    summary = short_summary(cand, 62.0, [SearchResult("XYZ beats estimates", "")])
    assert summary == (
        "This trade is 72% aligned with your policy and benefits from high IV rank. "
        "Recent news is positive. The main risk is an upcoming earnings release."
    )
    assert "balanced IV" in short_summary(_candidate({}), None, [])
    assert "general market volatility" in short_summary(_candidate({}), None, [])
