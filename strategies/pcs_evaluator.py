from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional

from strategies.credit_spreads import STRATEGY_PUT_CREDIT_SPREAD
from strategies.factors import FactorContext, candidate_iv_rank, net_theta_dollars, net_vega_dollars
from strategies.models import Candidate

CONFIG: dict[str, dict[str, float]] = {
    "0-7": {
        "credit_width_min": 0.20,
        "credit_width_target": 0.28,
        "ror_min": 0.25,
        "theta_min": 1.00,
        "time_exit_dte": 1,
    },
    "8-14": {
        "credit_width_min": 0.25,
        "credit_width_target": 0.30,
        "ror_min": 0.33,
        "theta_min": 0.80,
        "time_exit_dte": 2,
    },
}

IVR_THRESHOLDS = {"target": 50.0, "low_caution": 40.0, "low_avoid": 35.0, "critical": 30.0}
DELTA_CAPS = {"max": 0.18, "ivr_low": 0.15, "ivr_critical": 0.12}
NEWS_Z = {"hard_fail": 2.0, "caution": 1.5}
LIQUIDITY = {"max_spread_pct_of_strike": 0.005, "min_open_interest": 500}
COMPENSATION = {"ret_5d_min": 0.005, "credit_width_min": 0.28, "news_z_max": 1.5, "delta_max": 0.15}
POINTS = {
    "credit_to_width": 15,
    "return_on_risk": 10,
    "theta": 15,
    "vega": 10,
    "delta": 15,
    "iv_rank": 15,
    "momentum": 10,
    "news_z": 5,
    "liquidity": 5,
}


@dataclass(frozen=True)
class SpreadMetrics:
    """Inputs of the hard-gate evaluation, in per-contract dollars for theta/vega."""

    short_strike: float
    long_strike: float
    credit: float
    dte: int
    short_delta: float
    theta: float
    vega: float
    current_price: float
    iv_rank: Optional[float] = None
    ret_5d: Optional[float] = None
    ma_20: Optional[float] = None
    ma_50: Optional[float] = None
    news_z: Optional[float] = None
    short_bid: Optional[float] = None
    short_ask: Optional[float] = None
    long_bid: Optional[float] = None
    long_ask: Optional[float] = None
    short_open_interest: Optional[int] = None
    long_open_interest: Optional[int] = None


@dataclass(frozen=True)
class GateFactor:
    value: Any
    passed: bool
    target: Any = None

    def as_dict(self) -> dict[str, Any]:
        value = round(self.value, 4) if isinstance(self.value, float) else self.value
        return {"value": value, "pass": self.passed, "target": self.target}


@dataclass(frozen=True)
class Evaluation:
    hard_gates: str
    bottom_line: str
    score: int
    dte_bucket: str
    factors: dict[str, GateFactor] = field(default_factory=dict)
    whats_good: tuple[str, ...] = ()
    whats_concerning: tuple[str, ...] = ()
    specific_fixes: tuple[str, ...] = ()
    management_rules: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "hard_gates": self.hard_gates,
            "bottom_line": self.bottom_line,
            "score": self.score,
            "dte_bucket": self.dte_bucket,
            "factors": {k: v.as_dict() for k, v in self.factors.items()},
            "whats_good": list(self.whats_good),
            "whats_concerning": list(self.whats_concerning),
            "specific_fixes": list(self.specific_fixes),
            "management_rules": list(self.management_rules),
        }


def dte_bucket(dte: int) -> tuple[str, dict[str, float]]:
    key = "0-7" if dte <= 7 else "8-14"
    return key, CONFIG[key]


def delta_cap(iv_rank: Optional[float]) -> float:
    if iv_rank is None:
        return DELTA_CAPS["max"]
    if iv_rank < IVR_THRESHOLDS["critical"]:
        return DELTA_CAPS["ivr_critical"]
    if iv_rank < IVR_THRESHOLDS["low_caution"]:
        return DELTA_CAPS["ivr_low"]
    return DELTA_CAPS["max"]


def metrics_for(ctx: FactorContext, news_z: Optional[float] = None) -> Optional[SpreadMetrics]:
    """Builds evaluator inputs; None when the candidate is not an evaluable put credit spread."""
    cand: Candidate = ctx.candidate
    if cand.strategy != STRATEGY_PUT_CREDIT_SPREAD or not ctx.price:
        return None
    theta = net_theta_dollars(cand)
    vega = net_vega_dollars(cand)
    if cand.short.delta is None or theta is None or vega is None:
        return None
    momentum_pct = ctx.features.get("momentum_5d")
    return SpreadMetrics(
        short_strike=cand.short.strike,
        long_strike=cand.long.strike,
        credit=cand.entry_credit,
        dte=cand.dte,
        short_delta=cand.short.delta,
        theta=theta,
        vega=vega,
        current_price=ctx.price,
        iv_rank=candidate_iv_rank(ctx),
        ret_5d=None if momentum_pct is None else momentum_pct / 100.0,
        ma_20=ctx.features.get("ma_20"),
        ma_50=ctx.overview.ma_50 if ctx.overview else None,
        news_z=news_z,
        short_bid=cand.short.bid,
        short_ask=cand.short.ask,
        long_bid=cand.long.bid,
        long_ask=cand.long.ask,
        short_open_interest=cand.short.open_interest,
        long_open_interest=cand.long.open_interest,
    )


def evaluate_pcs(m: SpreadMetrics) -> Evaluation:
    width = m.short_strike - m.long_strike
    bucket, cfg = dte_bucket(m.dte)

    credit_to_width = m.credit / width if width > 0 else 0.0
    cw_pass = credit_to_width >= cfg["credit_width_min"]

    max_loss = width - m.credit
    ror = m.credit / max_loss if max_loss > 0 else math.inf
    ror_pass = ror >= cfg["ror_min"]

    theta_pass = m.theta >= cfg["theta_min"]
    vega_pass = m.vega <= 0

    ivr = m.iv_rank
    cap = delta_cap(ivr)
    abs_delta = abs(m.short_delta)
    delta_pass = abs_delta <= cap

    ivr_pass = ivr is None or ivr >= IVR_THRESHOLDS["low_avoid"]
    ivr_target = IVR_THRESHOLDS["target"] if ivr is not None and ivr < IVR_THRESHOLDS["low_caution"] else IVR_THRESHOLDS["low_avoid"]

    above_20 = m.ma_20 is None or m.current_price >= m.ma_20
    above_50 = m.ma_50 is None or m.current_price >= m.ma_50
    momentum_pass = (m.ret_5d is None or m.ret_5d >= 0) and above_20 and above_50

    news_pass = m.news_z is None or m.news_z <= NEWS_Z["hard_fail"]
    liquidity_issues = _liquidity_issues(m)
    liquidity_pass = not liquidity_issues

    hard_gates = theta_pass and vega_pass and delta_pass and news_pass and liquidity_pass

    compensation: list[str] = []
    if ivr is not None and IVR_THRESHOLDS["low_avoid"] <= ivr < IVR_THRESHOLDS["low_caution"]:
        if m.ret_5d is None or m.ret_5d < COMPENSATION["ret_5d_min"]:
            compensation.append("5-day return >= +0.5%")
        if credit_to_width < COMPENSATION["credit_width_min"]:
            compensation.append("credit/width >= 28%")
        if m.news_z is None or m.news_z > COMPENSATION["news_z_max"]:
            compensation.append("news z-score <= 1.5")
        if abs_delta > COMPENSATION["delta_max"]:
            compensation.append("delta <= 0.15")
    elif ivr is not None and ivr < IVR_THRESHOLDS["low_avoid"]:
        compensation.append("IV rank below 35; consider skipping or switching ticker")

    good: list[str] = []
    concerns: list[str] = []
    fixes: list[str] = []

    if delta_pass:
        good.append(f"Delta {abs_delta:.2f} within cap (<= {cap:.2f})")
    else:
        concerns.append(f"Delta {abs_delta:.2f} above cap {cap:.2f}")
        fixes.append(f"Move short strike further OTM to bring delta under {cap:.2f}")
    if liquidity_pass:
        good.append("Liquidity clean on both legs")
    else:
        concerns.append(f"Liquidity concerns: {'; '.join(liquidity_issues)}")
        fixes.append("Use more liquid strikes or skip this trade")
    if theta_pass:
        good.append(f"Theta +${m.theta:.2f}/day (min ${cfg['theta_min']:.2f})")
    else:
        concerns.append(f"Theta ${m.theta:.2f}/day below minimum ${cfg['theta_min']:.2f}")
        fixes.append("Widen the spread or adjust DTE to improve theta")
    if not vega_pass:
        concerns.append(f"Vega positive (+{m.vega:.2f}); a put credit spread should be net short vega")
        fixes.append("Widen the spread or move strikes to flip vega negative")
    if cw_pass:
        good.append(f"Credit/width {credit_to_width:.1%} (min {cfg['credit_width_min']:.0%})")
    else:
        concerns.append(f"Credit too thin: {credit_to_width:.1%} of width (target {cfg['credit_width_target']:.0%})")
        fixes.append(f"Move short strike closer to ATM to improve credit while keeping delta <= {cap:.2f}")
    if momentum_pass and m.ret_5d is not None:
        good.append(f"Momentum supportive (5d return {m.ret_5d:.1%})")
    elif not momentum_pass:
        soft = []
        if m.ret_5d is not None and m.ret_5d < 0:
            soft.append(f"5d return {m.ret_5d:.1%}")
        if not above_20:
            soft.append("below 20-DMA")
        if not above_50:
            soft.append("below 50-DMA")
        concerns.append(f"Momentum soft: {', '.join(soft)}")
        fixes.append("Wait for price to recover above its moving averages")
    if m.news_z is not None and m.news_z > NEWS_Z["caution"]:
        concerns.append(f"News volume spike: z-score {m.news_z:.1f}")
        fixes.append(f"Wait until news z-score <= {NEWS_Z['caution']}")
    if not ivr_pass:
        concerns.append(f"IV rank {ivr:.0f} below minimum {IVR_THRESHOLDS['low_avoid']:.0f}")
        fixes.append("Switch to a ticker with higher IV rank")
    if compensation:
        concerns.append(f"IV rank {ivr:.0f} requires compensation: {', '.join(compensation)}")

    if not hard_gates:
        bottom_line = "PASS"
    elif compensation or not cw_pass or not momentum_pass:
        bottom_line = "TWEAK"
    else:
        bottom_line = "TAKE"

    passes = {
        "credit_to_width": cw_pass,
        "return_on_risk": ror_pass,
        "theta": theta_pass,
        "vega": vega_pass,
        "delta": delta_pass,
        "iv_rank": ivr_pass,
        "momentum": momentum_pass,
        "news_z": news_pass,
        "liquidity": liquidity_pass,
    }
    score = sum(POINTS[name] for name, ok in passes.items() if ok)

    return Evaluation(
        hard_gates="PASS" if hard_gates else "FAIL",
        bottom_line=bottom_line,
        score=score,
        dte_bucket=bucket,
        factors={
            "credit_to_width": GateFactor(credit_to_width, cw_pass, cfg["credit_width_target"]),
            "return_on_risk": GateFactor(ror, ror_pass, cfg["ror_min"]),
            "theta": GateFactor(m.theta, theta_pass, cfg["theta_min"]),
            "vega": GateFactor(m.vega, vega_pass, 0.0),
            "delta": GateFactor(abs_delta, delta_pass, cap),
            "iv_rank": GateFactor(ivr, ivr_pass, ivr_target),
            "momentum": GateFactor(m.ret_5d, momentum_pass, "price above 20/50-DMA"),
            "news_z": GateFactor(m.news_z, news_pass, NEWS_Z["hard_fail"]),
            "liquidity": GateFactor("; ".join(liquidity_issues) or "clean", liquidity_pass),
        },
        whats_good=tuple(good),
        whats_concerning=tuple(concerns),
        specific_fixes=tuple(fixes),
        management_rules=_management_rules(cfg),
    )


def _liquidity_issues(m: SpreadMetrics) -> list[str]:
    issues: list[str] = []
    legs = (
        ("Short", m.short_strike, m.short_bid, m.short_ask, m.short_open_interest),
        ("Long", m.long_strike, m.long_bid, m.long_ask, m.long_open_interest),
    )
    for label, strike, bid, ask, oi in legs:
        if bid is not None and ask is not None and strike > 0:
            spread_pct = (ask - bid) / strike
            if spread_pct > LIQUIDITY["max_spread_pct_of_strike"]:
                issues.append(f"{label} leg bid-ask {spread_pct:.2%} of strike (max 0.50%)")
        if oi is not None and oi < LIQUIDITY["min_open_interest"]:
            issues.append(f"{label} leg OI {oi} (min {LIQUIDITY['min_open_interest']})")
    return issues


def _management_rules(cfg: dict[str, float]) -> tuple[str, ...]:
    return (
        "Profit-take: 50-60% of max profit or when short delta < 0.06",
        "Risk cap: roll or close if short delta > 0.30",
        "Momentum break: close on a close below the 50-DMA with a news spike",
        f"Time: close at T-{int(cfg['time_exit_dte'])} if profit < 30% to avoid gamma risk",
        "No earnings or ex-dividend dates within the trade life",
    )
