from __future__ import annotations

from typing import Any, Sequence

from strategies.models import Candidate

PERFECT_FIT = 99.9
HARD_GATE_CAP = 40.0
FIT_WEIGHT = 0.7
RR_WEIGHT = 0.3
MISSING_WEIGHT_PENALTY = 20.0
DEFAULT_TOP_K = 10


def _hard_gate_failed(candidate: Candidate) -> bool:
    return candidate.evaluation is not None and candidate.evaluation.hard_gates == "FAIL"


def _missing_fraction(candidate: Candidate) -> float:
    return candidate.policy_fit.missing_fraction if candidate.policy_fit is not None else 0.0


def _failing_factors(candidate: Candidate) -> list[dict[str, Any]]:
    if candidate.policy_fit is None:
        return []
    return [
        {"key": f.key, "name": f.name, "weight": f.weight, "value": f.value, "target": f.target}
        for f in candidate.policy_fit.top_failing(2)
    ]


def select_candidates(candidates: Sequence[Candidate], top_k: int = DEFAULT_TOP_K) -> list[Candidate]:
    """Ranks candidates into perfect-fit and composite groups and annotates the top K."""
    perfect = [c for c in candidates if c.fit_score >= PERFECT_FIT]
    composite = [c for c in candidates if c.fit_score < PERFECT_FIT]

    perfect.sort(key=lambda c: (-c.risk_reward, -c.max_profit))

    best_rr = max((c.risk_reward for c in composite), default=0.0)
    blended: dict[str, float] = {}
    for c in composite:
        normalized_rr = c.risk_reward / best_rr * 100.0 if best_rr > 0 else 0.0
        score = FIT_WEIGHT * c.fit_score + RR_WEIGHT * normalized_rr - MISSING_WEIGHT_PENALTY * _missing_fraction(c)
        if _hard_gate_failed(c):
            score = min(score, HARD_GATE_CAP)
        blended[c.id] = max(0.0, min(100.0, score))
    composite.sort(key=lambda c: (-blended[c.id], -c.fit_score, -c.risk_reward, -c.max_profit))

    ranked = [(c, "perfect") for c in perfect] + [(c, "composite") for c in composite]
    selected: list[Candidate] = []
    for rank, (c, group) in enumerate(ranked[: max(0, top_k)], start=1):
        if group == "perfect":
            overall = min(c.fit_score, HARD_GATE_CAP) if _hard_gate_failed(c) else c.fit_score
        else:
            overall = blended[c.id]
        failing = _failing_factors(c)
        c.selection = {
            "group": group,
            "rank": rank,
            "overall_score": round(overall, 2),
            "reason": _reason(c, group, overall, failing),
            "failing_factors": failing,
        }
        selected.append(c)
    return selected


def _reason(c: Candidate, group: str, overall: float, failing: list[dict[str, Any]]) -> str:
    if group == "perfect":
        text = (
            f"Meets every policy factor (fit {c.fit_score:.1f}); ranked by risk/reward "
            f"{c.risk_reward:.2f} and max profit ${c.max_profit * 100:.0f}"
        )
    else:
        text = f"Composite {overall:.1f} from policy fit {c.fit_score:.1f} and risk/reward {c.risk_reward:.2f}"
        missing = _missing_fraction(c)
        if missing > 0:
            text += f"; {missing:.0%} of policy weight had no data"
    if _hard_gate_failed(c):
        text += f"; hard gates failed, score capped at {HARD_GATE_CAP:.0f}"
    if failing:
        text += "; main gaps: " + ", ".join(f["name"] for f in failing)
    return text
