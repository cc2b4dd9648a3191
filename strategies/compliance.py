from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from strategies.factors import FactorContext, candidate_iv_rank, extract
from strategies.policy import Policy, classify_tier, factor_passes, score_factor

NEUTRAL_SCORE = 50.0


@dataclass(frozen=True)
class FactorScore:
    key: str
    name: str
    weight: float
    value: Optional[float]
    target: str
    score: Optional[float]
    passed: Optional[bool]

    @property
    def missing(self) -> bool:
        return self.value is None

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "weight": self.weight,
            "value": self.value,
            "target": self.target,
            "score": None if self.score is None else round(self.score, 2),
            "passed": self.passed,
        }


@dataclass(frozen=True)
class PolicyFitResult:
    score: float
    factors: tuple[FactorScore, ...] = field(default_factory=tuple)
    weight_evaluated: float = 0.0
    weight_missing: float = 0.0

    @property
    def weight_total(self) -> float:
        return self.weight_evaluated + self.weight_missing

    @property
    def missing_fraction(self) -> float:
        return self.weight_missing / self.weight_total if self.weight_total > 0 else 0.0

    @property
    def passes(self) -> list[FactorScore]:
        return [f for f in self.factors if f.passed is True]

    @property
    def violations(self) -> list[FactorScore]:
        return [f for f in self.factors if f.passed is False]

    @property
    def tier(self) -> str:
        return classify_tier(self.score)

    def top_failing(self, limit: int = 2) -> list[FactorScore]:
        return sorted(self.violations, key=lambda f: -f.weight)[:limit]

    def as_dict(self) -> dict[str, Any]:
        return {
            "score": round(self.score, 2),
            "tier": self.tier,
            "weight_evaluated": round(self.weight_evaluated, 4),
            "weight_missing": round(self.weight_missing, 4),
            "passes": [f.key for f in self.passes],
            "violations": [f.key for f in self.violations],
            "factors": [f.as_dict() for f in self.factors],
        }


def score_policy_fit(policy: Policy, ctx: FactorContext) -> PolicyFitResult:
    """Weighted 0-100 fit of one candidate against the enabled policy factors."""
    rows: list[FactorScore] = []
    weighted = 0.0
    weight_evaluated = 0.0
    weight_missing = 0.0

    for factor in policy.enabled_factors():
        value = extract(factor.key, ctx)
        if value is None:
            weight_missing += factor.weight
            rows.append(FactorScore(factor.key, factor.display_name, factor.weight, None, factor.target_label(), None, None))
            continue

        if factor.threshold is None:
            score = NEUTRAL_SCORE
            passed = None
        else:
            score = score_factor(factor, value)
            passed = factor_passes(factor, value)

        weighted += score * factor.weight
        weight_evaluated += factor.weight
        rows.append(FactorScore(factor.key, factor.display_name, factor.weight, value, factor.target_label(), score, passed))

    total = weighted / weight_evaluated if weight_evaluated > 0 else 0.0
    return PolicyFitResult(
        score=max(0.0, min(100.0, total)),
        factors=tuple(rows),
        weight_evaluated=weight_evaluated,
        weight_missing=weight_missing,
    )


def default_score(ctx: FactorContext) -> float:
    """Unweighted heuristic used when no policy could be loaded."""
    candidate = ctx.candidate
    score = 50.0 + 5.0 * min(candidate.risk_reward, 2.0)
    iv_rank = candidate_iv_rank(ctx)
    if iv_rank is not None:
        if iv_rank > 50:
            score += 10.0
        elif iv_rank < 30:
            score -= 5.0
    if candidate.guardrail_flags.get("earnings_risk"):
        score -= 15.0
    if candidate.guardrail_flags.get("macro_event"):
        score -= 10.0
    return round(max(0.0, min(100.0, score)), 2)
