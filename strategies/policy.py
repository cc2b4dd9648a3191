from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

DIRECTION_ALIASES: dict[str, str] = {
    "gte": "gte",
    "gt": "gte",
    ">=": "gte",
    "lte": "lte",
    "lt": "lte",
    "<=": "lte",
    "range": "range",
    "between": "range",
    "eq": "eq",
    "equals": "eq",
    "==": "eq",
}

PASSING_SCORE = 70.0


class PolicyError(Exception):
    pass


class PolicyNotFound(PolicyError):
    pass


class PolicyShapeError(PolicyError):
    pass


@dataclass(frozen=True)
class PolicyFactor:
    key: str
    display_name: str
    weight: float
    direction: str
    threshold: Optional[float] = None
    threshold_max: Optional[float] = None
    enabled: bool = True

    def validate(self) -> None:
        if self.direction not in {"gte", "lte", "range", "eq"}:
            raise PolicyShapeError(f"factor {self.key!r}: unknown direction {self.direction!r}")
        if not 0.0 <= self.weight <= 1.0:
            raise PolicyShapeError(f"factor {self.key!r}: weight {self.weight} outside [0, 1]")
        if self.direction == "range" and (self.threshold is None or self.threshold_max is None):
            raise PolicyShapeError(f"factor {self.key!r}: range needs threshold and threshold_max")
        if self.direction == "range" and self.threshold_max < self.threshold:
            raise PolicyShapeError(f"factor {self.key!r}: threshold_max below threshold")

    def target_label(self) -> str:
        if self.threshold is None:
            return "n/a"
        if self.direction == "range":
            return f"{self.threshold:g}-{self.threshold_max:g}"
        symbol = {"gte": ">=", "lte": "<=", "eq": "="}[self.direction]
        return f"{symbol} {self.threshold:g}"


@dataclass(frozen=True)
class Policy:
    id: str
    name: str
    factors: tuple[PolicyFactor, ...] = field(default_factory=tuple)
    min_dte: Optional[int] = None
    max_dte: Optional[int] = None

    def enabled_factors(self) -> list[PolicyFactor]:
        return [f for f in self.factors if f.enabled]

    def factor(self, *keys: str) -> Optional[PolicyFactor]:
        for f in self.enabled_factors():
            if f.key in keys:
                return f
        return None


def normalize_direction(raw: Any) -> str:
    key = str(raw or "").strip().lower()
    if key not in DIRECTION_ALIASES:
        raise PolicyShapeError(f"unknown factor direction {raw!r}")
    return DIRECTION_ALIASES[key]


def _scale(threshold: float) -> float:
    return max(abs(threshold), 1.0)


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def score_gte(value: float, threshold: float) -> float:
    scale = _scale(threshold)
    if value >= threshold:
        return _clamp(PASSING_SCORE + (value - threshold) / scale * 30.0)
    if threshold > 0:
        return _clamp(PASSING_SCORE * value / threshold, 0.0, PASSING_SCORE)
    return _clamp(PASSING_SCORE - (threshold - value) / scale * PASSING_SCORE, 0.0, PASSING_SCORE)


def score_lte(value: float, threshold: float) -> float:
    scale = _scale(threshold)
    if value <= threshold:
        return _clamp(PASSING_SCORE + (threshold - value) / scale * 30.0)
    return _clamp(PASSING_SCORE - (value - threshold) / scale * PASSING_SCORE, 0.0, PASSING_SCORE)


def score_range(value: float, low: float, high: float) -> float:
    if low <= value <= high:
        span = high - low
        if span == 0:
            return 100.0
        position = (value - low) / span
        return _clamp(PASSING_SCORE + (1.0 - abs(position - 0.5) * 2.0) * 30.0)
    if value < low:
        return _clamp(PASSING_SCORE - (low - value) / _scale(low) * PASSING_SCORE)
    return _clamp(PASSING_SCORE - (value - high) / _scale(high) * PASSING_SCORE)


def relative_error(value: float, threshold: float) -> float:
    return abs(value - threshold) / _scale(threshold)


def score_eq(value: float, threshold: float) -> float:
    err = relative_error(value, threshold)
    if err <= 0.05:
        return 100.0
    if err <= 0.10:
        return 90.0
    if err <= 0.20:
        return 75.0
    if err <= 0.50:
        return 50.0 + (0.50 - err) / 0.30 * 25.0
    return _clamp(50.0 - (err - 0.50) * 50.0)


def score_factor(factor: PolicyFactor, value: float) -> float:
    if factor.direction == "gte":
        return score_gte(value, factor.threshold)
    if factor.direction == "lte":
        return score_lte(value, factor.threshold)
    if factor.direction == "range":
        return score_range(value, factor.threshold, factor.threshold_max)
    return score_eq(value, factor.threshold)


def factor_passes(factor: PolicyFactor, value: float) -> bool:
    if factor.direction == "gte":
        return value >= factor.threshold
    if factor.direction == "lte":
        return value <= factor.threshold
    if factor.direction == "range":
        return factor.threshold <= value <= factor.threshold_max
    return relative_error(value, factor.threshold) <= 0.20


def classify_tier(score: float) -> str:
    if score >= 90:
        return "elite"
    if score >= 75:
        return "quality"
    if score >= 60:
        return "speculative"
    return "below_threshold"
