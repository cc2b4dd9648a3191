from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import pandas as pd

from data.providers import TradeOutcome
from signals.news import sentiment_label, sentiment_score
from strategies.compliance import PolicyFitResult, score_policy_fit
from strategies.factors import FactorContext, candidate_iv_rank
from strategies.policy import Policy

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
CLOSED_STATUSES = {"closed", "expired"}

DELTA_KEYS = ("delta", "delta_max", "short_delta")
IV_RANK_KEYS = ("iv_rank",)

ACCEPT_AT = 60.0
REJECT_BELOW = 40.0


@dataclass(frozen=True)
class HistoricalContext:
    has_data: bool
    trade_count: int = 0
    success_rate: Optional[float] = None
    avg_pnl: Optional[float] = None
    patterns: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "has_data": self.has_data,
            "trade_count": self.trade_count,
            "success_rate": None if self.success_rate is None else round(self.success_rate, 2),
            "avg_pnl": None if self.avg_pnl is None else round(self.avg_pnl, 2),
            "patterns": list(self.patterns),
        }


@dataclass(frozen=True)
class MarketFactors:
    iv_regime: str
    news_sentiment: str
    macro_regime: str
    iv_rank: Optional[float] = None
    key_insights: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "iv_regime": self.iv_regime,
            "iv_rank": self.iv_rank,
            "news_sentiment": self.news_sentiment,
            "macro_regime": self.macro_regime,
            "key_insights": list(self.key_insights),
        }


@dataclass(frozen=True)
class ThresholdAdjustment:
    factor: str
    original: float
    adjusted: float
    reason: str

    def as_dict(self) -> dict[str, Any]:
        return {"factor": self.factor, "original": self.original, "adjusted": round(self.adjusted, 4), "reason": self.reason}


@dataclass(frozen=True)
class ReasoningChain:
    baseline_score: float
    adjusted_score: float
    recommendation: str
    recommendation_reason: str
    compliance: Optional[PolicyFitResult] = None
    historical: Optional[HistoricalContext] = None
    market: Optional[MarketFactors] = None
    adjustments: tuple[ThresholdAdjustment, ...] = ()
    error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "baseline_score": round(self.baseline_score, 2),
            "adjusted_score": round(self.adjusted_score, 2),
            "recommendation": self.recommendation,
            "recommendation_reason": self.recommendation_reason,
            "historical": self.historical.as_dict() if self.historical else None,
            "market": self.market.as_dict() if self.market else None,
            "adjustments": [a.as_dict() for a in self.adjustments],
            "error": self.error,
        }


def analyze_history(outcomes: Sequence[TradeOutcome], limit: int = HISTORY_LIMIT) -> HistoricalContext:
    rows = [o for o in outcomes if str(o.status).lower() in CLOSED_STATUSES]
    if not rows:
        return HistoricalContext(has_data=False)

    frame = pd.DataFrame([{"pnl": o.pnl, "closed": o.closed} for o in rows])
    frame = frame.sort_values("closed", ascending=False, na_position="last").head(limit)
    count = int(len(frame))
    success_rate = float((frame["pnl"] > 0).sum()) / count * 100.0
    avg_pnl = float(frame["pnl"].mean())

    patterns: list[str] = []
    if success_rate > 70:
        patterns.append("Strong historical win rate on this symbol")
    elif success_rate < 40:
        patterns.append("Below-average historical performance on this symbol")
    if avg_pnl > 100:
        patterns.append("Historically profitable with good average P&L")
    elif avg_pnl < 0:
        patterns.append("Warning: historical losses on similar setups")

    return HistoricalContext(
        has_data=True,
        trade_count=count,
        success_rate=success_rate,
        avg_pnl=avg_pnl,
        patterns=tuple(patterns),
    )


def synthesize_market(ctx: FactorContext) -> MarketFactors:
    iv_rank = candidate_iv_rank(ctx)
    if iv_rank is None:
        iv_regime = "unknown"
    elif iv_rank > 70:
        iv_regime = "elevated"
    elif iv_rank < 30:
        iv_regime = "compressed"
    else:
        iv_regime = "normal"

    features = ctx.features
    macro_regime = features.get("macro_regime") or "neutral"
    insights: list[str] = []
    if iv_regime == "elevated":
        insights.append(f"IV rank {iv_rank:.0f}: premium is rich relative to the chain")
    elif iv_regime == "compressed":
        insights.append(f"IV rank {iv_rank:.0f}: premium is thin relative to the chain")
    spread = features.get("term_spread")
    if spread is not None:
        if spread < 0:
            insights.append("Inverted yield curve signals recession risk")
        elif spread > 2:
            insights.append("Steep yield curve suggests growth expectations")
    fed_funds = features.get("fed_funds_rate")
    if fed_funds is not None and fed_funds > 5:
        insights.append("High interest rate environment")

    return MarketFactors(
        iv_regime=iv_regime,
        news_sentiment=sentiment_label(sentiment_score(ctx.news)),
        macro_regime=macro_regime,
        iv_rank=iv_rank,
        key_insights=tuple(insights),
    )


def adjust_thresholds(
    policy: Policy,
    market: MarketFactors,
    history: HistoricalContext,
    flags: dict[str, bool],
) -> list[ThresholdAdjustment]:
    adjustments: list[ThresholdAdjustment] = []
    success = history.success_rate if history.has_data else None

    delta = policy.factor(*DELTA_KEYS)
    if delta is not None and delta.threshold is not None:
        original = abs(delta.threshold)
        if market.news_sentiment == "negative" or flags.get("earnings_risk"):
            adjusted = max(0.10, original * 0.75)
            reason = "Tightened delta due to negative sentiment or earnings risk"
            adjustments.append(ThresholdAdjustment(delta.key, original, adjusted, reason))
        elif success is not None and success > 75:
            adjusted = min(0.40, original * 1.15)
            reason = f"Relaxed delta on strong historical success ({success:.0f}%)"
            adjustments.append(ThresholdAdjustment(delta.key, original, adjusted, reason))

    iv_rank = policy.factor(*IV_RANK_KEYS)
    if iv_rank is not None and iv_rank.threshold is not None:
        original = iv_rank.threshold
        if success is not None and success > 70:
            reason = "Lowered IV rank requirement on strong historical success"
            adjustments.append(ThresholdAdjustment(iv_rank.key, original, max(30.0, original - 10.0), reason))
        elif market.macro_regime == "risk_off":
            reason = "Raised IV rank requirement in risk-off macro regime"
            adjustments.append(ThresholdAdjustment(iv_rank.key, original, min(80.0, original + 10.0), reason))

    return adjustments


def adjusted_score(baseline: float, history: HistoricalContext, market: MarketFactors) -> float:
    score = baseline
    if history.has_data and history.success_rate is not None:
        if history.success_rate > 70:
            score += 10
        elif history.success_rate < 40:
            score -= 10
    if market.iv_regime == "elevated":
        score += 5
    elif market.iv_regime == "compressed":
        score -= 5
    if market.news_sentiment == "positive":
        score += 5
    elif market.news_sentiment == "negative":
        score -= 10
    return max(0.0, min(100.0, score))


def recommendation_for(score: float) -> str:
    if score >= ACCEPT_AT:
        return "ACCEPT"
    if score < REJECT_BELOW:
        return "REJECT"
    return "REVIEW"


def recommend(score: float, history: HistoricalContext, market: MarketFactors) -> tuple[str, str]:
    decision = recommendation_for(score)
    if decision == "ACCEPT":
        reason = f"Adjusted score {score:.1f} clears the acceptance bar"
    elif decision == "REJECT":
        reason = f"Adjusted score {score:.1f} is below the rejection floor"
    else:
        reason = f"Adjusted score {score:.1f} is borderline"

    context = []
    if history.has_data:
        context.append(f"{history.trade_count} prior trades, {history.success_rate:.0f}% win rate")
    else:
        context.append("no trade history for this symbol")
    if market.iv_regime != "unknown":
        context.append(f"IV {market.iv_regime}")
    if market.news_sentiment != "unknown":
        context.append(f"news {market.news_sentiment}")
    return decision, f"{reason} ({'; '.join(context)})"


def build_reasoning_chain(policy: Policy, ctx: FactorContext, history: HistoricalContext) -> ReasoningChain:
    compliance = score_policy_fit(policy, ctx)
    market = synthesize_market(ctx)
    adjustments = adjust_thresholds(policy, market, history, ctx.candidate.guardrail_flags)
    score = adjusted_score(compliance.score, history, market)
    decision, reason = recommend(score, history, market)
    return ReasoningChain(
        baseline_score=compliance.score,
        adjusted_score=score,
        recommendation=decision,
        recommendation_reason=reason,
        compliance=compliance,
        historical=history,
        market=market,
        adjustments=tuple(adjustments),
    )


def neutral_chain(error: str) -> ReasoningChain:
    return ReasoningChain(
        baseline_score=50.0,
        adjusted_score=50.0,
        recommendation="REVIEW",
        recommendation_reason="Reasoning failed; neutral default assigned",
        error=error,
    )
