from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from backend.services.env import VALID_MODES, Settings, load_settings
from data.chain import UTC, ChainSnapshot, CompanyOverview, MacroObservation, Quote, parse_datetime
from data.fred import DEFAULT_MACRO_SERIES, FredClient
from data.gateway import FetchGateway, RateLimiter
from data.providers import (
    FundamentalsProvider,
    MacroSeriesProvider,
    OptionChainProvider,
    OutcomesStore,
    QuoteProvider,
    RunPersistence,
    SearchProvider,
)
from data.snapshots import SnapshotDirectory
from signals.features import engineer_features, macro_features
from storage.macro_calendar import load_macro_events
from storage.outcomes import JsonOutcomesStore
from storage.policy_loader import JsonPolicyLoader, PolicyLoader
from storage.runs import JsonRunStore
from strategies.compliance import default_score
from strategies.credit_spreads import generate_put_credit_spreads
from strategies.factors import FactorContext, candidate_iv_rank
from strategies.guardrails import MacroGuardrail, SymbolGuardrails, check_macro, check_symbol, flags_for
from strategies.models import Candidate
from strategies.pcs_evaluator import evaluate_pcs, metrics_for
from strategies.policy import Policy, PolicyError
from strategies.rationale import headline_digest, short_summary
from strategies.reasoning import (
    DELTA_KEYS,
    HISTORY_LIMIT,
    HistoricalContext,
    analyze_history,
    build_reasoning_chain,
    neutral_chain,
    recommendation_for,
)
from strategies.risk_adjusted import TradeEconomics, score_trade
from strategies.selector import select_candidates

logger = logging.getLogger(__name__)

STAGES = (
    "load_policy",
    "market_data",
    "macro_data",
    "features",
    "candidates",
    "guardrails",
    "deep_reasoning",
    "scoring",
    "rationale",
    "selection",
)

NEUTRAL_SCORE = 50.0


class PipelineError(Exception):
    pass


@dataclass
class Providers:
    chains: OptionChainProvider
    quotes: QuoteProvider
    fundamentals: Optional[FundamentalsProvider] = None
    macro: Optional[MacroSeriesProvider] = None
    search: Optional[SearchProvider] = None
    outcomes: Optional[OutcomesStore] = None
    policies: Optional[PolicyLoader] = None
    persistence: Optional[RunPersistence] = None
    macro_calendar: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class RunState:
    run_id: str
    mode: str
    symbols: list[str]
    policy_id: Optional[str]
    as_of: dt.datetime
    policy: Optional[Policy] = None
    chains: dict[str, ChainSnapshot] = field(default_factory=dict)
    quotes: dict[str, Quote] = field(default_factory=dict)
    overviews: dict[str, CompanyOverview] = field(default_factory=dict)
    macro: dict[str, list[MacroObservation]] = field(default_factory=dict)
    features: dict[str, dict[str, Any]] = field(default_factory=dict)
    guardrails: dict[str, SymbolGuardrails] = field(default_factory=dict)
    macro_guardrail: Optional[MacroGuardrail] = None
    history: dict[str, HistoricalContext] = field(default_factory=dict)
    candidates: list[Candidate] = field(default_factory=list)
    selected: list[Candidate] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def merge(self, update: dict[str, Any]) -> None:
        for key, value in update.items():
            if key == "errors":
                self.errors.extend(value)
            elif hasattr(self, key):
                setattr(self, key, value)
            else:
                raise KeyError(f"unknown run-state key {key!r}")


@dataclass
class RunResult:
    run_id: str
    mode: str
    symbols: list[str]
    as_of: dt.datetime
    policy_id: Optional[str]
    policy_loaded: bool
    selected: list[Candidate]
    candidates: list[Candidate]
    errors: list[str]

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "symbols": self.symbols,
            "as_of": self.as_of.isoformat(),
            "policy_id": self.policy_id,
            "policy_loaded": self.policy_loaded,
            "candidate_count": len(self.candidates),
            "selected": [c.as_dict() for c in self.selected],
            "errors": list(self.errors),
        }


def build_providers(settings: Settings) -> Providers:
    snapshots = SnapshotDirectory(settings.snapshot_dir)
    macro: MacroSeriesProvider = FredClient(settings.fred_api_key) if settings.fred_api_key else snapshots
    return Providers(
        chains=snapshots,
        quotes=snapshots,
        fundamentals=snapshots,
        macro=macro,
        search=snapshots,
        outcomes=JsonOutcomesStore(settings.outcomes_path),
        policies=JsonPolicyLoader(settings.policy_dir),
        persistence=JsonRunStore(settings.runs_dir) if settings.persist_runs else None,
        macro_calendar=load_macro_events(settings.macro_calendar_path),
    )


class CandidatePipeline:
    """Runs the staged candidate pipeline; every stage returns a partial update merged into RunState."""

    def __init__(
        self,
        providers: Providers,
        settings: Optional[Settings] = None,
        gateway: Optional[FetchGateway] = None,
    ) -> None:
        self.providers = providers
        self.settings = settings or load_settings()
        self._gateway = gateway

    def run(
        self,
        symbols: Sequence[str],
        mode: str = "backtest",
        policy_id: Optional[str] = None,
        as_of: Optional[dt.datetime] = None,
    ) -> RunResult:
        return asyncio.run(self.run_async(symbols, mode=mode, policy_id=policy_id, as_of=as_of))

    async def run_async(
        self,
        symbols: Sequence[str],
        mode: str = "backtest",
        policy_id: Optional[str] = None,
        as_of: Optional[dt.datetime] = None,
    ) -> RunResult:
        cleaned = list(dict.fromkeys(s.strip().upper() for s in symbols if s and s.strip()))
        if not cleaned:
            raise PipelineError("run needs at least one symbol")
        if mode not in VALID_MODES:
            raise PipelineError(f"mode must be one of {', '.join(VALID_MODES)}; got {mode!r}")

        state = RunState(
            run_id=str(uuid.uuid4()),
            mode=mode,
            symbols=cleaned,
            policy_id=policy_id,
            as_of=parse_datetime(as_of) or dt.datetime.now(UTC),
        )
        gateway = self._gateway or self._build_gateway()
        logger.info("run %s start mode=%s symbols=%s policy=%s", state.run_id, mode, cleaned, policy_id)
        self._persist("open_run", state.run_id, state.mode, state.symbols, state.as_of)

        try:
            for name in STAGES:
                started = time.perf_counter()
                try:
                    update = await getattr(self, f"_stage_{name}")(state, gateway)
                except Exception as exc:
                    logger.exception("stage %s failed", name)
                    update = {"errors": [f"{name}: {exc}"]}
                state.merge(update or {})
                logger.info("stage %s done in %.2fs", name, time.perf_counter() - started)
        finally:
            self._persist(
                "close_run",
                state.run_id,
                {
                    "candidate_count": len(state.candidates),
                    "selected_count": len(state.selected),
                    "error_count": len(state.errors),
                    "policy_loaded": state.policy is not None,
                    "errors": list(state.errors),
                },
            )

        logger.info(
            "run %s done: %d candidates, %d selected, %d errors",
            state.run_id,
            len(state.candidates),
            len(state.selected),
            len(state.errors),
        )
        return RunResult(
            run_id=state.run_id,
            mode=state.mode,
            symbols=state.symbols,
            as_of=state.as_of,
            policy_id=state.policy_id,
            policy_loaded=state.policy is not None,
            selected=state.selected,
            candidates=state.candidates,
            errors=state.errors,
        )

    def _build_gateway(self) -> FetchGateway:
        limiter = RateLimiter(
            max_concurrent=self.settings.max_concurrent,
            max_calls=self.settings.calls_per_second,
            period_s=1.0,
        )
        return FetchGateway(limiter, retries=self.settings.fetch_retries, backoff_s=self.settings.backoff_s)

    def _persist(self, method: str, *args: Any) -> None:
        store = self.providers.persistence
        if store is None:
            return
        try:
            getattr(store, method)(*args)
        except Exception as exc:
            logger.warning("persistence %s failed: %s", method, exc)

    def _context(self, state: RunState, candidate: Candidate) -> FactorContext:
        symbol = candidate.symbol
        check = state.guardrails.get(symbol)
        return FactorContext(
            candidate=candidate,
            chain=state.chains.get(symbol),
            quote=state.quotes.get(symbol),
            overview=state.overviews.get(symbol),
            features=state.features.get(symbol, {}),
            news=check.news if check else (),
        )

    # ------------------------
    # Stages
    # ------------------------
    async def _stage_load_policy(self, state: RunState, gateway: FetchGateway) -> dict[str, Any]:
        if not state.policy_id:
            logger.info("no policy requested; using unweighted default scoring")
            return {"policy": None}
        if self.providers.policies is None:
            return {"policy": None, "errors": ["load_policy: no policy loader configured"]}
        try:
            policy = self.providers.policies.load(state.policy_id)
        except PolicyError as exc:
            logger.warning("policy %s unavailable, falling back to default scoring: %s", state.policy_id, exc)
            return {"policy": None, "errors": [f"load_policy: {exc}"]}
        logger.info("loaded policy %s with %d enabled factors", policy.id, len(policy.enabled_factors()))
        return {"policy": policy}

    async def _stage_market_data(self, state: RunState, gateway: FetchGateway) -> dict[str, Any]:
        results = await asyncio.gather(
            *(self._fetch_market(symbol, gateway) for symbol in state.symbols),
            return_exceptions=True,
        )
        chains: dict[str, ChainSnapshot] = {}
        quotes: dict[str, Quote] = {}
        overviews: dict[str, CompanyOverview] = {}
        errors: list[str] = []
        for symbol, result in zip(state.symbols, results):
            if isinstance(result, BaseException):
                logger.warning("%s: market data unavailable: %s", symbol, result)
                errors.append(f"market_data: {symbol}: {result}")
                continue
            chain, quote, overview, overview_error = result
            chains[symbol] = chain
            quotes[symbol] = quote
            if overview is not None:
                overviews[symbol] = overview
            if overview_error:
                errors.append(f"market_data: {symbol}: fundamentals: {overview_error}")
            self._persist(
                "persist_contracts",
                state.run_id,
                symbol,
                [dataclasses.asdict(c) for c in chain.contracts],
            )
        return {"chains": chains, "quotes": quotes, "overviews": overviews, "errors": errors}

    async def _fetch_market(
        self, symbol: str, gateway: FetchGateway
    ) -> tuple[ChainSnapshot, Quote, Optional[CompanyOverview], Optional[str]]:
        chain, quote = await asyncio.gather(
            gateway.call(f"chain:{symbol}", self.providers.chains.fetch_chain, symbol),
            gateway.call(f"quote:{symbol}", self.providers.quotes.fetch_quote, symbol),
        )
        overview = None
        overview_error = None
        if self.providers.fundamentals is not None:
            try:
                overview = await gateway.call(f"overview:{symbol}", self.providers.fundamentals.fetch_overview, symbol)
            except Exception as exc:
                logger.warning("%s: fundamentals unavailable: %s", symbol, exc)
                overview_error = str(exc)
        logger.info("%s: %d contracts, price %.2f", symbol, len(chain.contracts), quote.price)
        return chain, quote, overview, overview_error

    async def _stage_macro_data(self, state: RunState, gateway: FetchGateway) -> dict[str, Any]:
        if self.providers.macro is None:
            return {"macro": {}}
        try:
            macro = await gateway.call("macro", self.providers.macro.fetch_series, list(DEFAULT_MACRO_SERIES))
        except Exception as exc:
            logger.warning("macro series unavailable: %s", exc)
            return {"macro": {}, "errors": [f"macro_data: {exc}"]}
        return {"macro": macro}

    async def _stage_features(self, state: RunState, gateway: FetchGateway) -> dict[str, Any]:
        features: dict[str, dict[str, Any]] = {}
        errors: list[str] = []
        for symbol, chain in state.chains.items():
            try:
                features[symbol] = engineer_features(chain, state.quotes.get(symbol), state.macro)
            except Exception as exc:
                logger.warning("%s: feature engineering failed: %s", symbol, exc)
                errors.append(f"features: {symbol}: {exc}")
                continue
            self._persist("persist_features", state.run_id, symbol, features[symbol])
        return {"features": features, "errors": errors}

    async def _stage_candidates(self, state: RunState, gateway: FetchGateway) -> dict[str, Any]:
        delta_factor = state.policy.factor(*DELTA_KEYS) if state.policy else None
        candidates: list[Candidate] = []
        errors: list[str] = []
        for symbol in state.symbols:
            chain = state.chains.get(symbol)
            quote = state.quotes.get(symbol)
            if chain is None or quote is None:
                continue
            try:
                generated = generate_put_credit_spreads(
                    chain,
                    quote.price,
                    as_of=state.as_of.date(),
                    delta_threshold=delta_factor.threshold if delta_factor else None,
                    expiration_lookahead=self.settings.expiration_lookahead,
                    candidates_per_expiry=self.settings.candidates_per_expiry,
                    min_risk_reward=self.settings.min_risk_reward,
                    min_dte=state.policy.min_dte if state.policy else None,
                    max_dte=state.policy.max_dte if state.policy else None,
                )
            except Exception as exc:
                logger.warning("%s: candidate generation failed: %s", symbol, exc)
                errors.append(f"candidates: {symbol}: {exc}")
                continue
            for c in generated:
                c.diagnostics.record("candidates", "market_snapshot", {"price": quote.price, "chain_as_of": chain.as_of.isoformat()})
            candidates.extend(generated)
        return {"candidates": candidates, "errors": errors}

    async def _stage_guardrails(self, state: RunState, gateway: FetchGateway) -> dict[str, Any]:
        symbols = sorted({c.symbol for c in state.candidates})
        search = self.providers.search
        if isinstance(search, SnapshotDirectory):
            search = search.pinned(state.as_of)
        macro = await check_macro(gateway, search, self.providers.macro_calendar, state.as_of)
        checks = await asyncio.gather(
            *(check_symbol(gateway, search, symbol, state.as_of) for symbol in symbols)
        )
        by_symbol = dict(zip(symbols, checks))
        errors = list(macro.errors)
        for check in checks:
            errors.extend(check.errors)

        for c in state.candidates:
            check = by_symbol[c.symbol]
            c.guardrail_flags = flags_for(check, macro)
            c.diagnostics.record("guardrails", "flags", dict(c.guardrail_flags))
            c.diagnostics.record("guardrails", "news_z", check.news_z)
        return {"guardrails": by_symbol, "macro_guardrail": macro, "errors": errors}

    async def _stage_deep_reasoning(self, state: RunState, gateway: FetchGateway) -> dict[str, Any]:
        if state.policy is None:
            logger.info("no policy loaded; skipping deep reasoning")
            return {}

        symbols = sorted({c.symbol for c in state.candidates})
        histories = await asyncio.gather(
            *(self._fetch_history(symbol, gateway) for symbol in symbols),
            return_exceptions=True,
        )
        history: dict[str, HistoricalContext] = {}
        errors: list[str] = []
        for symbol, result in zip(symbols, histories):
            if isinstance(result, BaseException):
                logger.warning("%s: trade history unavailable: %s", symbol, result)
                errors.append(f"deep_reasoning: {symbol}: history: {result}")
                history[symbol] = HistoricalContext(has_data=False)
            else:
                history[symbol] = result

        for c in state.candidates:
            try:
                chain = build_reasoning_chain(state.policy, self._context(state, c), history[c.symbol])
                c.policy_fit = chain.compliance
            except Exception as exc:
                logger.warning("%s: reasoning failed for %s: %s", c.symbol, c.id, exc)
                chain = neutral_chain(str(exc))
                c.error = f"deep_reasoning: {exc}"
            c.reasoning = chain
            c.recommendation = chain.recommendation
            c.diagnostics.record("deep_reasoning", "adjusted_score", chain.adjusted_score)
        return {"history": history, "errors": errors}

    async def _fetch_history(self, symbol: str, gateway: FetchGateway) -> HistoricalContext:
        if self.providers.outcomes is None:
            return HistoricalContext(has_data=False)
        rows = await gateway.call(f"history:{symbol}", self.providers.outcomes.query_closed_trades, symbol, HISTORY_LIMIT)
        return analyze_history(rows)

    async def _stage_scoring(self, state: RunState, gateway: FetchGateway) -> dict[str, Any]:
        for c in state.candidates:
            ctx = self._context(state, c)
            check = state.guardrails.get(c.symbol)
            try:
                if state.policy is None:
                    c.default_score = default_score(ctx)
                    c.recommendation = recommendation_for(c.default_score)
                metrics = metrics_for(ctx, news_z=check.news_z if check else None)
                c.evaluation = evaluate_pcs(metrics) if metrics is not None else None
                c.risk_adjusted = score_trade(
                    TradeEconomics(
                        max_profit=c.max_profit,
                        max_loss=c.max_loss,
                        est_pop=c.est_pop,
                        delta=c.short.delta,
                        dte=c.dte,
                    ),
                    account_equity=self.settings.account_equity,
                )
            except Exception as exc:
                logger.warning("%s: scoring failed for %s: %s", c.symbol, c.id, exc)
                c.policy_fit = None
                c.default_score = NEUTRAL_SCORE
                c.recommendation = "REVIEW"
                c.error = f"scoring: {exc}"

            if c.policy_fit is not None:
                c.diagnostics.record("scoring", "factor_comparison", [f.as_dict() for f in c.policy_fit.factors])
            self._persist(
                "persist_score",
                state.run_id,
                c.id,
                {
                    "fit_score": c.fit_score,
                    "policy_fit": c.policy_fit.as_dict() if c.policy_fit else None,
                    "evaluation": c.evaluation.as_dict() if c.evaluation else None,
                    "risk_adjusted": c.risk_adjusted.as_dict() if c.risk_adjusted else None,
                    "recommendation": c.recommendation,
                },
            )
        return {}

    async def _stage_rationale(self, state: RunState, gateway: FetchGateway) -> dict[str, Any]:
        macro_context = macro_features(state.macro)
        if state.macro_guardrail is not None:
            macro_context["calendar_events"] = list(state.macro_guardrail.calendar_events)
        for c in state.candidates:
            ctx = self._context(state, c)
            c.rationale = short_summary(c, candidate_iv_rank(ctx), ctx.news)
            c.diagnostics.record("rationale", "headlines", headline_digest(ctx.news))
            c.diagnostics.record("rationale", "macro_context", macro_context)
        return {}

    async def _stage_selection(self, state: RunState, gateway: FetchGateway) -> dict[str, Any]:
        selected = select_candidates(state.candidates, top_k=self.settings.top_k)
        for c in selected:
            self._persist("persist_candidate", state.run_id, c.as_dict())
        return {"selected": selected}
