from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Optional

from data.chain import OptionContract

CONTRACT_MULTIPLIER = 100.0


@dataclass(frozen=True)
class ContractLeg:
    side: str
    right: str
    strike: float
    expiration: dt.date
    bid: Optional[float]
    ask: Optional[float]
    delta: Optional[float] = None
    gamma: Optional[float] = None
    theta: Optional[float] = None
    vega: Optional[float] = None
    iv: Optional[float] = None
    open_interest: Optional[int] = None
    volume: Optional[int] = None
    option_symbol: str = ""

    @classmethod
    def from_contract(cls, contract: OptionContract, side: str) -> "ContractLeg":
        return cls(
            side=side,
            right=contract.right,
            strike=contract.strike,
            expiration=contract.expiration,
            bid=contract.bid,
            ask=contract.ask,
            delta=contract.delta,
            gamma=contract.gamma,
            theta=contract.theta,
            vega=contract.vega,
            iv=contract.iv,
            open_interest=contract.open_interest,
            volume=contract.volume,
            option_symbol=contract.option_symbol,
        )

    @property
    def mid(self) -> Optional[float]:
        if self.bid is None or self.ask is None:
            return None
        return (self.bid + self.ask) / 2.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "side": self.side,
            "right": self.right,
            "strike": self.strike,
            "expiration": self.expiration.isoformat(),
            "bid": self.bid,
            "ask": self.ask,
            "mid": self.mid,
            "delta": self.delta,
            "gamma": self.gamma,
            "theta": self.theta,
            "vega": self.vega,
            "iv": self.iv,
            "open_interest": self.open_interest,
            "volume": self.volume,
            "option_symbol": self.option_symbol,
        }


class DiagnosticLog:
    """Append-only audit trail of stage outputs; only exported, never consulted by scoring."""

    def __init__(self) -> None:
        self._entries: list[tuple[str, str, Any]] = []

    def record(self, stage: str, key: str, value: Any) -> None:
        self._entries.append((stage, key, value))

    def __len__(self) -> int:
        return len(self._entries)

    def export(self) -> list[dict[str, Any]]:
        return [{"stage": stage, "key": key, "value": value} for stage, key, value in self._entries]


@dataclass
class Candidate:
    id: str
    symbol: str
    strategy: str
    short: ContractLeg
    long: ContractLeg
    entry_credit: float
    max_profit: float
    max_loss: float
    breakeven: float
    est_pop: float
    dte: int
    underlying_price: float
    guardrail_flags: dict[str, bool] = field(default_factory=dict)
    reasoning: Optional[Any] = None
    policy_fit: Optional[Any] = None
    default_score: Optional[float] = None
    evaluation: Optional[Any] = None
    risk_adjusted: Optional[Any] = None
    recommendation: Optional[str] = None
    rationale: str = ""
    error: Optional[str] = None
    selection: Optional[dict[str, Any]] = None
    diagnostics: DiagnosticLog = field(default_factory=DiagnosticLog)

    @property
    def width(self) -> float:
        return self.short.strike - self.long.strike

    @property
    def credit_to_width(self) -> float:
        return self.entry_credit / self.width if self.width > 0 else 0.0

    @property
    def risk_reward(self) -> float:
        return self.max_profit / self.max_loss if self.max_loss > 0 else 0.0

    @property
    def fit_score(self) -> float:
        """Policy-fit score used for ranking; falls back to the unweighted default score."""
        if self.policy_fit is not None:
            return float(self.policy_fit.score)
        if self.default_score is not None:
            return float(self.default_score)
        return 50.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "strategy": self.strategy,
            "short": self.short.as_dict(),
            "long": self.long.as_dict(),
            "width": round(self.width, 4),
            "entry_credit": round(self.entry_credit, 4),
            "credit_to_width": round(self.credit_to_width, 4),
            "max_profit": round(self.max_profit, 4),
            "max_loss": round(self.max_loss, 4),
            "breakeven": round(self.breakeven, 4),
            "est_pop": round(self.est_pop, 4),
            "dte": self.dte,
            "underlying_price": self.underlying_price,
            "guardrail_flags": dict(self.guardrail_flags),
            "fit_score": round(self.fit_score, 2),
            "policy_fit": self.policy_fit.as_dict() if self.policy_fit is not None else None,
            "default_score": self.default_score,
            "reasoning": self.reasoning.as_dict() if self.reasoning is not None else None,
            "evaluation": self.evaluation.as_dict() if self.evaluation is not None else None,
            "risk_adjusted": self.risk_adjusted.as_dict() if self.risk_adjusted is not None else None,
            "recommendation": self.recommendation,
            "rationale": self.rationale,
            "error": self.error,
            "selection": self.selection,
            "diagnostics": self.diagnostics.export(),
        }
