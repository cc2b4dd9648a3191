from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from strategies.models import CONTRACT_MULTIPLIER

RISK_FREE_RATE = 0.05
DEFAULT_DTE = 30
DEFAULT_ACCOUNT_EQUITY = 25_000.0
RUIN_PENALTY_CAP = 10.0
NOISE_FLOOR = 3.0
EV_NOISE = 0.05

WEIGHTS = {
    "risk_reward": 0.50,
    "capital_efficiency": 0.25,
    "probability_weighted": 0.15,
    "expected_value": 0.10,
}


@dataclass(frozen=True)
class TradeEconomics:
    max_profit: float
    max_loss: float
    est_pop: Optional[float] = None
    delta: Optional[float] = None
    dte: Optional[int] = None


@dataclass(frozen=True)
class RiskAdjustedScore:
    composite: float
    prob_profit: float
    expected_value: float
    ev_per_dollar: float
    ev_score: float
    roi_pct: float
    annualized_roi: float
    capital_efficiency_score: float
    risk_reward_score: float
    probability_weighted_score: float
    sharpe_like: float
    kelly_fraction: float
    ruin_adjusted_roi: float
    ruin_penalty: float
    explanation: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "composite": self.composite,
            "prob_profit": round(self.prob_profit, 4),
            "expected_value": round(self.expected_value, 4),
            "ev_per_dollar": round(self.ev_per_dollar, 4),
            "ev_score": round(self.ev_score, 2),
            "roi_pct": round(self.roi_pct, 2),
            "annualized_roi": round(self.annualized_roi, 2),
            "capital_efficiency_score": round(self.capital_efficiency_score, 2),
            "risk_reward_score": round(self.risk_reward_score, 2),
            "probability_weighted_score": round(self.probability_weighted_score, 2),
            "sharpe_like": round(self.sharpe_like, 4),
            "kelly_fraction": round(self.kelly_fraction, 4),
            "ruin_adjusted_roi": round(self.ruin_adjusted_roi, 2),
            "ruin_penalty": round(self.ruin_penalty, 4),
            "explanation": self.explanation,
        }


@dataclass(frozen=True)
class Comparison:
    winner: str
    reason: str
    score_diff: float
    preferred: Optional[str] = None


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def kelly_fraction(prob_profit: float, odds: float) -> float:
    if odds <= 0:
        return 0.0
    return max(0.0, (prob_profit * odds - (1.0 - prob_profit)) / odds)


def score_trade(trade: TradeEconomics, account_equity: float = DEFAULT_ACCOUNT_EQUITY) -> RiskAdjustedScore:
    """Policy-independent economics of a defined-risk trade (per-share dollars)."""
    if trade.max_loss <= 0:
        raise ValueError("max_loss must be positive")

    if trade.est_pop:
        p = trade.est_pop
    else:
        p = 1.0 - abs(trade.delta if trade.delta is not None else 0.25)
    p = max(0.0, min(1.0, p))
    q = 1.0 - p
    mp = trade.max_profit
    ml = trade.max_loss
    dte = trade.dte or DEFAULT_DTE

    expected_value = p * mp - q * ml
    ev_per_dollar = expected_value / ml
    ev_score = _clamp(50.0 + (ev_per_dollar - 0.10) * 250.0)

    odds = mp / ml
    roi_pct = odds * 100.0
    periods = 365.0 / dte
    annualized_roi = roi_pct * periods
    capital_efficiency = min(100.0, annualized_roi / 200.0 * 100.0)

    rr_score = min(100.0, odds * 100.0)
    prob_weighted = min(100.0, p * roi_pct * 1.5)

    excess = ev_per_dollar - RISK_FREE_RATE / periods
    sharpe_like = excess / (ml / (ml + mp))

    kelly = kelly_fraction(p, odds)
    ruin_adjusted_roi = roi_pct * min(1.0, odds)
    ruin_penalty = min(RUIN_PENALTY_CAP, RUIN_PENALTY_CAP * ml * CONTRACT_MULTIPLIER / account_equity)

    composite = (
        rr_score * WEIGHTS["risk_reward"]
        + capital_efficiency * WEIGHTS["capital_efficiency"]
        + prob_weighted * WEIGHTS["probability_weighted"]
        + ev_score * WEIGHTS["expected_value"]
        - ruin_penalty
    )

    return RiskAdjustedScore(
        composite=round(_clamp(composite), 2),
        prob_profit=p,
        expected_value=expected_value,
        ev_per_dollar=ev_per_dollar,
        ev_score=ev_score,
        roi_pct=roi_pct,
        annualized_roi=annualized_roi,
        capital_efficiency_score=capital_efficiency,
        risk_reward_score=rr_score,
        probability_weighted_score=prob_weighted,
        sharpe_like=sharpe_like,
        kelly_fraction=kelly,
        ruin_adjusted_roi=ruin_adjusted_roi,
        ruin_penalty=ruin_penalty,
        explanation=_explain(ev_score, ev_per_dollar, p, capital_efficiency, kelly),
    )


def _explain(ev_score: float, ev_per_dollar: float, p: float, capital_efficiency: float, kelly: float) -> str:
    strengths: list[str] = []
    weaknesses: list[str] = []

    if ev_score >= 80:
        strengths.append(f"Excellent expected value (${ev_per_dollar:.2f} per $1 at risk)")
    elif ev_score < 50:
        weaknesses.append(f"Low expected value (${ev_per_dollar:.2f} per $1 at risk)")

    if p >= 0.75:
        strengths.append(f"High win probability ({p:.0%})")
    elif p < 0.65:
        weaknesses.append(f"Lower win probability ({p:.0%})")

    if capital_efficiency >= 80:
        strengths.append("Efficient use of capital")
    elif capital_efficiency < 50:
        weaknesses.append("Capital-intensive setup")

    if kelly >= 0.15:
        strengths.append(f"Strong edge ({kelly:.0%} Kelly)")
    elif kelly == 0:
        weaknesses.append("No statistical edge")

    if strengths and not weaknesses:
        return ". ".join(strengths) + "."
    if strengths:
        return f"{'. '.join(strengths)}. However: {', '.join(weaknesses)}."
    if weaknesses:
        return ". ".join(weaknesses) + "."
    return "Balanced risk/reward profile."


def compare_trades(a: RiskAdjustedScore, b: RiskAdjustedScore, noise_floor: float = NOISE_FLOOR) -> Comparison:
    diff = a.composite - b.composite
    ev_gap = a.ev_per_dollar - b.ev_per_dollar

    if abs(diff) < noise_floor:
        if abs(ev_gap) <= EV_NOISE:
            preferred = "A" if a.prob_profit >= b.prob_profit else "B"
            reason = (
                f"Scores within {noise_floor:g} points and expected values within ${EV_NOISE:.2f} per $1 "
                f"(${a.ev_per_dollar:.2f} vs ${b.ev_per_dollar:.2f}); prefer the higher-probability trade {preferred}"
            )
        else:
            preferred = "A" if ev_gap > 0 else "B"
            reason = (
                f"Scores within {noise_floor:g} points, but trade {preferred} has the better expected value "
                f"(${a.ev_per_dollar:.2f} vs ${b.ev_per_dollar:.2f} per $1 at risk)"
            )
        return Comparison(winner="tie", reason=reason, score_diff=abs(diff), preferred=preferred)

    winner = "A" if diff > 0 else "B"
    better, worse = (a, b) if winner == "A" else (b, a)
    reasons: list[str] = []
    if abs(better.ev_per_dollar - worse.ev_per_dollar) > EV_NOISE:
        reasons.append(
            f"better expected value (${better.ev_per_dollar:.2f} vs ${worse.ev_per_dollar:.2f} per $1)"
        )
    if abs(better.kelly_fraction - worse.kelly_fraction) > 0.05:
        reasons.append(f"stronger statistical edge ({better.kelly_fraction:.0%} vs {worse.kelly_fraction:.0%} Kelly)")
    if abs(better.capital_efficiency_score - worse.capital_efficiency_score) > 15:
        reasons.append("more capital efficient")

    if reasons:
        reason = f"Trade {winner} is better due to {' and '.join(reasons)}"
    else:
        reason = f"Trade {winner} has a higher overall risk-adjusted score"
    return Comparison(winner=winner, reason=reason, score_diff=abs(diff), preferred=winner)
