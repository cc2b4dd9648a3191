from __future__ import annotations

import datetime as dt
import json
from pathlib import Path
from typing import Optional

import pytest

from backend.pipeline import CandidatePipeline, PipelineError, Providers, RunState, build_providers
from backend.services.env import Settings
from data.chain import UTC, ChainSnapshot, CompanyOverview, OptionContract, Quote, SearchResult
from data.gateway import FetchGateway, RateLimiter
from data.providers import TradeOutcome
from storage.runs import JsonRunStore
from strategies import factors
from strategies.policy import Policy, PolicyFactor, PolicyNotFound
from strategies.selector import select_candidates

AS_OF = dt.datetime(2026, 3, 2, 15, 0, tzinfo=UTC)
EXPIRATIONS = (dt.date(2026, 3, 12), dt.date(2026, 3, 19))


def _put(symbol: str, strike: int, expiration: dt.date) -> OptionContract:
    mid = 0.05 + 0.25 * (strike - 80)
    return OptionContract(
        underlying=symbol,
        option_symbol=f"{symbol}_{expiration}_P{strike}",
        right="P",
        strike=float(strike),
        expiration=expiration,
        bid=round(mid - 0.05, 4),
        ask=round(mid + 0.05, 4),
        delta=-max(0.02, round(0.02 * (strike - 88) + 0.10, 4)),
        theta=-(0.01 + 0.004 * (strike - 80)),
        vega=0.02 + 0.004 * (strike - 80),
        iv=0.20 + 0.01 * (98 - strike),
        open_interest=1000,
        volume=200,
    )


def _call(symbol: str, strike: int, expiration: dt.date) -> OptionContract:
    return OptionContract(symbol, f"{symbol}_{expiration}_C{strike}", "C", float(strike), expiration, 0.5, 0.6, iv=0.25, open_interest=800, volume=100)


class _Market:
    """Chains, quotes, fundamentals, macro, and search from memory; symbols in `failing` always error."""

    def __init__(self, failing: tuple[str, ...] = (), search_fails: bool = False) -> None:
        self.failing = set(failing)
        self.search_fails = search_fails
        self.calls: list[str] = []

    def fetch_chain(self, symbol: str) -> ChainSnapshot:
        self.calls.append(f"chain:{symbol}")
        if symbol in self.failing:
            raise ConnectionError(f"{symbol} chain endpoint down")
        contracts = [_put(symbol, k, e) for e in EXPIRATIONS for k in range(80, 99)]
        contracts += [_call(symbol, k, e) for e in EXPIRATIONS for k in range(102, 110)]
        return ChainSnapshot(symbol=symbol, as_of=AS_OF, contracts=contracts)

    def fetch_quote(self, symbol: str) -> Quote:
        return Quote(symbol=symbol, price=100.0, as_of=AS_OF, closes=[97.0 + 0.5 * i for i in range(7)])

    def fetch_overview(self, symbol: str) -> CompanyOverview:
        return CompanyOverview(symbol=symbol, market_cap=5e10, ma_50=96.0, ma_200=90.0, beta=1.1)

    def fetch_series(self, series_ids: list[str]) -> dict:
        return {}

    def search(self, query: str, recency_days: int = 7, depth: str = "basic", max_results: int = 5) -> list[SearchResult]:
        if self.search_fails:
            raise TimeoutError("search timed out")
        if query.startswith("FOMC"):
            return []
        return [
            SearchResult("Shares rally on strong demand", "analysts upgrade", published_at=AS_OF - dt.timedelta(days=d))
            for d in (3, 20, 45, 70)
        ]


class _Policies:
    def __init__(self, policy: Policy) -> None:
        self.policy = policy

    def load(self, policy_id: str) -> Policy:
        if policy_id != self.policy.id:
            raise PolicyNotFound(f"policy {policy_id!r} not found")
        return self.policy


class _Outcomes:
    def query_closed_trades(self, symbol: str, limit: int = 50) -> list[TradeOutcome]:
        return [TradeOutcome(symbol, 150.0, "closed", closed=dt.date(2026, 2, d)) for d in range(1, 6)]


class _BrokenPersistence:
    def __getattr__(self, name: str):
        def fail(*args, **kwargs):
            raise OSError("disk full")

        return fail


def _policy(*extra: PolicyFactor) -> Policy:
    return Policy(
        id="pcs",
        name="PCS",
        factors=(
            PolicyFactor("delta", "Short delta", 0.3, "lte", 0.15),
            PolicyFactor("iv_rank", "IV rank", 0.3, "gte", 40.0),
            PolicyFactor("credit_to_width", "Credit/width", 0.2, "gte", 0.20),
            PolicyFactor("market_cap", "Market cap", 0.2, "gte", 1e10),
        )
        + extra,
    )


def _pipeline(market: _Market, policy: Optional[Policy] = None, persistence: object = None) -> CandidatePipeline:
    providers = Providers(
        chains=market,
        quotes=market,
        fundamentals=market,
        macro=market,
        search=market,
        outcomes=_Outcomes(),
        policies=_Policies(policy or _policy()),
        persistence=persistence,
    )
    gateway = FetchGateway(RateLimiter(max_concurrent=2, max_calls=1000), retries=1, backoff_s=0.0)
    return CandidatePipeline(providers, settings=Settings(), gateway=gateway)


def test_failed_symbol_does_not_block_others() -> None:
    result = _pipeline(_Market(failing=("BAD",))).run(["GOOD", "BAD"], policy_id="pcs", as_of=AS_OF)

    assert result.selected
    assert {c.symbol for c in result.candidates} == {"GOOD"}
    assert any(e.startswith("market_data: BAD:") for e in result.errors)
    assert all(c.policy_fit is not None for c in result.candidates)


def test_fetches_are_retried_before_giving_up() -> None:
    market = _Market(failing=("BAD",))
    _pipeline(market).run(["BAD"], as_of=AS_OF)
    assert market.calls.count("chain:BAD") == 2


def test_policy_run_scores_every_candidate() -> None:
    result = _pipeline(_Market()).run(["GOOD"], policy_id="pcs", as_of=AS_OF)

    assert result.policy_loaded
    assert len(result.candidates) == 2
    for c in result.candidates:
        assert c.reasoning is not None and c.reasoning.error is None
        assert c.reasoning.historical.trade_count == 5
        assert c.evaluation is not None
        assert c.risk_adjusted is not None
        assert c.recommendation in {"ACCEPT", "REVIEW", "REJECT"}
        assert c.rationale.startswith("This trade is")
        assert c.guardrail_flags == {"earnings_risk": False, "macro_event": False, "news_spike": False}
    assert [c.selection["rank"] for c in result.selected] == [1, 2]


def test_missing_policy_falls_back_to_default_score() -> None:
    result = _pipeline(_Market()).run(["GOOD"], policy_id="ghost", as_of=AS_OF)

    assert not result.policy_loaded
    assert any(e.startswith("load_policy:") for e in result.errors)
    assert result.selected
    for c in result.candidates:
        assert c.policy_fit is None
        assert c.reasoning is None
        assert c.default_score is not None
        assert c.fit_score == c.default_score


def test_reasoning_failure_assigns_neutral_review(monkeypatch: pytest.MonkeyPatch) -> None:
    def explode(ctx: factors.FactorContext) -> float:
        raise RuntimeError("extractor blew up")

    monkeypatch.setitem(factors.EXTRACTORS, "exploding", explode)
    policy = _policy(PolicyFactor("exploding", "Exploding", 0.1, "gte", 1.0))
    result = _pipeline(_Market(), policy=policy).run(["GOOD"], policy_id="pcs", as_of=AS_OF)

    assert result.candidates
    for c in result.candidates:
        assert c.recommendation == "REVIEW"
        assert c.reasoning.error == "extractor blew up"
        assert c.error.startswith("deep_reasoning:")
        assert c.fit_score == 50.0
    assert result.selected


def test_search_failure_leaves_flags_unset() -> None:
    result = _pipeline(_Market(search_fails=True)).run(["GOOD"], policy_id="pcs", as_of=AS_OF)

    assert result.candidates
    assert all(not any(c.guardrail_flags.values()) for c in result.candidates)
    assert any(e.startswith("guardrails: GOOD: earnings search:") for e in result.errors)
    assert any(e.startswith("guardrails: macro:") for e in result.errors)


def test_diagnostics_are_recorded_but_not_used_for_ranking() -> None:
    result = _pipeline(_Market()).run(["GOOD"], policy_id="pcs", as_of=AS_OF)
    order = [c.id for c in result.selected]

    stages = {entry["stage"] for entry in result.selected[0].diagnostics.export()}
    assert {"candidates", "guardrails", "deep_reasoning", "scoring", "rationale"} <= stages

    for c in result.candidates:
        c.diagnostics.record("test", "noise", {"fit_score": 0})
    assert [c.id for c in select_candidates(result.candidates)] == order


def test_persistence_failures_are_not_fatal() -> None:
    result = _pipeline(_Market(), persistence=_BrokenPersistence()).run(["GOOD"], policy_id="pcs", as_of=AS_OF)
    assert result.selected
    assert not any("disk full" in e for e in result.errors)


def test_run_is_persisted(tmp_path: Path) -> None:
    store = JsonRunStore(str(tmp_path))
    result = _pipeline(_Market(), persistence=store).run(["GOOD"], policy_id="pcs", as_of=AS_OF)

    saved = store.load(result.run_id)
    assert saved["status"] == "closed"
    assert "GOOD" in saved["contracts"] and "GOOD" in saved["features"]
    assert len(saved["scores"]) == len(result.candidates)
    assert len(saved["candidates"]) == len(result.selected)
    assert saved["summary"]["selected_count"] == len(result.selected)


def test_invalid_run_arguments_are_rejected() -> None:
    pipeline = _pipeline(_Market())
    with pytest.raises(PipelineError):
        pipeline.run([" ", ""])
    with pytest.raises(PipelineError):
        pipeline.run(["GOOD"], mode="yolo")


def test_run_state_merge_rejects_unknown_keys() -> None:
    state = RunState(run_id="r", mode="backtest", symbols=["GOOD"], policy_id=None, as_of=AS_OF)
    state.merge({"errors": ["a"]})
    state.merge({"errors": ["b"], "policy": None})
    assert state.errors == ["a", "b"]
    with pytest.raises(KeyError):
        state.merge({"surprise": 1})


def _write_snapshots(root: Path, as_of: dt.datetime) -> None:
    symbol_dir = root / "XYZ"
    symbol_dir.mkdir(parents=True)
    expiration = (as_of.date() + dt.timedelta(days=10)).isoformat()
    contracts = [
        {
            "option_type": "put",
            "strike": k,
            "expiration": expiration,
            "bid": round(0.25 * (k - 80), 2),
            "ask": round(0.25 * (k - 80) + 0.1, 2),
            "delta": -max(0.02, round(0.02 * (k - 88) + 0.10, 4)),
            "theta": -0.02,
            "vega": 0.05,
            "iv": 0.30,
            "open_interest": 1000,
            "volume": 150,
        }
        for k in range(80, 99)
    ]
    (symbol_dir / "chain.json").write_text(json.dumps({"as_of": as_of.isoformat(), "contracts": contracts}))
    (symbol_dir / "quote.json").write_text(json.dumps({"price": 100.0, "closes": [99, 99.5, 100]}))
    (symbol_dir / "overview.json").write_text(json.dumps({"market_cap": 4.2e10}))
    news = [
        {"title": "XYZ to report earnings on March 7", "published_at": (as_of - dt.timedelta(days=2)).isoformat()},
        {"title": "XYZ guidance cut", "published_at": (as_of + dt.timedelta(days=4)).isoformat()},
    ]
    (symbol_dir / "news.json").write_text(json.dumps({"results": news}))


def test_backtest_news_is_read_as_of_the_run_date(tmp_path: Path) -> None:
    run_as_of = dt.datetime(2024, 3, 1, 15, 0, tzinfo=UTC)
    _write_snapshots(tmp_path / "snapshots", run_as_of)
    settings = Settings(
        snapshot_dir=str(tmp_path / "snapshots"),
        policy_dir=str(tmp_path / "policies"),
        outcomes_path=str(tmp_path / "outcomes.json"),
        macro_calendar_path=str(tmp_path / "macro_events.json"),
        persist_runs=False,
    )
    providers = build_providers(settings)

    pinned = providers.search.pinned(run_as_of)
    assert [r.title for r in pinned.search("XYZ stock news", 90, "basic", 50)] == ["XYZ to report earnings on March 7"]

    gateway = FetchGateway(RateLimiter(max_concurrent=2, max_calls=1000), retries=0, backoff_s=0.0)
    result = CandidatePipeline(providers, settings=settings, gateway=gateway).run(["XYZ"], as_of=run_as_of)

    assert result.candidates
    assert all(c.guardrail_flags["earnings_risk"] for c in result.candidates)
    assert providers.search.as_of is None
