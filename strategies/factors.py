from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from data.chain import ChainSnapshot, CompanyOverview, Quote, SearchResult
from signals.features import chain_iv_percentile
from signals.news import sentiment_score
from strategies.models import CONTRACT_MULTIPLIER, Candidate


@dataclass
class FactorContext:
    """Everything an extractor may read for one candidate."""

    candidate: Candidate
    chain: Optional[ChainSnapshot] = None
    quote: Optional[Quote] = None
    overview: Optional[CompanyOverview] = None
    features: dict[str, Any] = field(default_factory=dict)
    news: Sequence[SearchResult] = field(default_factory=tuple)

    @property
    def price(self) -> Optional[float]:
        if self.quote is not None and self.quote.price:
            return self.quote.price
        return self.candidate.underlying_price or None


Extractor = Callable[[FactorContext], Optional[float]]

EXTRACTORS: dict[str, Extractor] = {}


def register(*keys: str) -> Callable[[Extractor], Extractor]:
    def decorator(fn: Extractor) -> Extractor:
        for key in keys:
            EXTRACTORS[key] = fn
        return fn

    return decorator


def extract(key: str, ctx: FactorContext) -> Optional[float]:
    """Resolves a factor's real value; None means unknown, never a guess."""
    fn = EXTRACTORS.get(key)
    value = fn(ctx) if fn is not None else ctx.features.get(key)
    return _finite(value)


def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


def candidate_iv_rank(ctx: FactorContext) -> Optional[float]:
    return chain_iv_percentile(ctx.chain, ctx.candidate.short.iv)


@register("delta", "delta_max", "short_delta")
def _delta(ctx: FactorContext) -> Optional[float]:
    delta = ctx.candidate.short.delta
    return abs(delta) if delta is not None else None


@register("iv_rank", "iv_percentile")
def _iv_rank(ctx: FactorContext) -> Optional[float]:
    return candidate_iv_rank(ctx)


@register("iv", "implied_volatility")
def _iv(ctx: FactorContext) -> Optional[float]:
    return ctx.candidate.short.iv


@register("theta")
def _theta(ctx: FactorContext) -> Optional[float]:
    return ctx.candidate.short.theta


@register("vega")
def _vega(ctx: FactorContext) -> Optional[float]:
    return ctx.candidate.short.vega


@register("net_theta")
def _net_theta(ctx: FactorContext) -> Optional[float]:
    return net_theta_dollars(ctx.candidate)


@register("net_vega")
def _net_vega(ctx: FactorContext) -> Optional[float]:
    return net_vega_dollars(ctx.candidate)


@register("open_interest")
def _open_interest(ctx: FactorContext) -> Optional[float]:
    return ctx.candidate.short.open_interest


@register("volume", "option_volume")
def _volume(ctx: FactorContext) -> Optional[float]:
    return ctx.candidate.short.volume


@register("bid_ask_spread")
def _bid_ask_spread(ctx: FactorContext) -> Optional[float]:
    short = ctx.candidate.short
    if short.bid is None or short.ask is None:
        return None
    return short.ask - short.bid


@register("credit_to_width", "credit_width_ratio")
def _credit_to_width(ctx: FactorContext) -> Optional[float]:
    return ctx.candidate.credit_to_width


@register("return_on_risk", "risk_reward")
def _return_on_risk(ctx: FactorContext) -> Optional[float]:
    return ctx.candidate.risk_reward


@register("pop", "probability_of_profit")
def _pop(ctx: FactorContext) -> Optional[float]:
    return ctx.candidate.est_pop


@register("dte")
def _dte(ctx: FactorContext) -> Optional[float]:
    return ctx.candidate.dte


@register("market_cap")
def _market_cap(ctx: FactorContext) -> Optional[float]:
    return ctx.overview.market_cap if ctx.overview else None


@register("pe_ratio")
def _pe_ratio(ctx: FactorContext) -> Optional[float]:
    return ctx.overview.pe_ratio if ctx.overview else None


@register("beta")
def _beta(ctx: FactorContext) -> Optional[float]:
    return ctx.overview.beta if ctx.overview else None


@register("analyst_target", "analyst_target_upside")
def _analyst_upside(ctx: FactorContext) -> Optional[float]:
    price = ctx.price
    if ctx.overview is None or ctx.overview.analyst_target is None or not price:
        return None
    return (ctx.overview.analyst_target - price) / price * 100.0


@register("momentum_50d")
def _momentum_50d(ctx: FactorContext) -> Optional[float]:
    return _vs_average(ctx.price, ctx.overview.ma_50 if ctx.overview else None)


@register("momentum_200d")
def _momentum_200d(ctx: FactorContext) -> Optional[float]:
    return _vs_average(ctx.price, ctx.overview.ma_200 if ctx.overview else None)


@register("momentum_5d")
def _momentum_5d(ctx: FactorContext) -> Optional[float]:
    return ctx.features.get("momentum_5d")


@register("range_52w_position")
def _range_position(ctx: FactorContext) -> Optional[float]:
    price = ctx.price
    ov = ctx.overview
    if ov is None or price is None or ov.high_52w is None or ov.low_52w is None:
        return None
    span = ov.high_52w - ov.low_52w
    if span <= 0:
        return None
    return (price - ov.low_52w) / span * 100.0


@register("distance_from_52w_high")
def _distance_from_high(ctx: FactorContext) -> Optional[float]:
    price = ctx.price
    ov = ctx.overview
    if ov is None or price is None or not ov.high_52w:
        return None
    return (ov.high_52w - price) / ov.high_52w * 100.0


@register("sentiment_score", "news_sentiment")
def _sentiment(ctx: FactorContext) -> Optional[float]:
    return sentiment_score(ctx.news)


@register("news_volume")
def _news_volume(ctx: FactorContext) -> Optional[float]:
    return float(len(ctx.news))


@register("put_call_ratio")
def _put_call_ratio(ctx: FactorContext) -> Optional[float]:
    return ctx.features.get("put_call_ratio")


@register("put_call_oi_ratio")
def _put_call_oi_ratio(ctx: FactorContext) -> Optional[float]:
    return ctx.features.get("put_call_oi_ratio")


@register("inflation_yoy", "inflation_rate")
def _inflation(ctx: FactorContext) -> Optional[float]:
    return ctx.features.get("inflation_yoy")


@register("earnings_risk")
def _earnings_flag(ctx: FactorContext) -> Optional[float]:
    return _flag(ctx, "earnings_risk")


@register("macro_event")
def _macro_flag(ctx: FactorContext) -> Optional[float]:
    return _flag(ctx, "macro_event")


def net_theta_dollars(candidate: Candidate) -> Optional[float]:
    if candidate.short.theta is None or candidate.long.theta is None:
        return None
    return (candidate.long.theta - candidate.short.theta) * CONTRACT_MULTIPLIER


def net_vega_dollars(candidate: Candidate) -> Optional[float]:
    if candidate.short.vega is None or candidate.long.vega is None:
        return None
    return (candidate.long.vega - candidate.short.vega) * CONTRACT_MULTIPLIER


def _vs_average(price: Optional[float], average: Optional[float]) -> Optional[float]:
    if price is None or not average:
        return None
    return (price - average) / average * 100.0


def _flag(ctx: FactorContext, name: str) -> Optional[float]:
    if name not in ctx.candidate.guardrail_flags:
        return None
    return 1.0 if ctx.candidate.guardrail_flags[name] else 0.0
