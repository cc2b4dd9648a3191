from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field
from typing import Any, Optional

UTC = dt.timezone.utc


@dataclass(frozen=True)
class OptionContract:
    underlying: str
    option_symbol: str
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

    @property
    def mid(self) -> Optional[float]:
        if self.bid is None or self.ask is None:
            return None
        return (self.bid + self.ask) / 2.0


@dataclass
class ChainSnapshot:
    symbol: str
    as_of: dt.datetime
    contracts: list[OptionContract] = field(default_factory=list)

    def puts(self) -> list[OptionContract]:
        return [c for c in self.contracts if c.right == "P"]

    def expirations(self) -> list[dt.date]:
        return sorted({c.expiration for c in self.contracts})


@dataclass
class Quote:
    symbol: str
    price: float
    as_of: Optional[dt.datetime] = None
    closes: list[float] = field(default_factory=list)


@dataclass
class CompanyOverview:
    symbol: str
    name: Optional[str] = None
    sector: Optional[str] = None
    market_cap: Optional[float] = None
    pe_ratio: Optional[float] = None
    beta: Optional[float] = None
    analyst_target: Optional[float] = None
    ma_50: Optional[float] = None
    ma_200: Optional[float] = None
    high_52w: Optional[float] = None
    low_52w: Optional[float] = None


@dataclass
class SearchResult:
    title: str
    snippet: str
    url: str = ""
    published_at: Optional[dt.datetime] = None
    score: Optional[float] = None

    @property
    def text(self) -> str:
        return f"{self.title} {self.snippet}".strip()


@dataclass(frozen=True)
class MacroObservation:
    date: dt.date
    value: float


def contract_from_dict(underlying: str, row: dict[str, Any]) -> Optional[OptionContract]:
    """Normalizes one provider row; returns None when strike/expiry/right are unusable."""
    right = _normalize_right(row.get("right") or row.get("option_type") or row.get("type"))
    strike = to_float(row.get("strike"))
    expiration = parse_date(row.get("expiration") or row.get("expiry"))
    if right is None or strike is None or expiration is None:
        return None
    iv = to_float(row.get("iv", row.get("implied_volatility")))
    return OptionContract(
        underlying=underlying.upper(),
        option_symbol=str(row.get("option_symbol") or row.get("symbol") or f"{underlying}_{expiration}_{right}{strike:g}"),
        right=right,
        strike=strike,
        expiration=expiration,
        bid=to_float(row.get("bid")),
        ask=to_float(row.get("ask")),
        delta=to_float(row.get("delta")),
        gamma=to_float(row.get("gamma")),
        theta=to_float(row.get("theta")),
        vega=to_float(row.get("vega")),
        iv=iv,
        open_interest=_to_int(row.get("open_interest", row.get("oi"))),
        volume=_to_int(row.get("volume")),
    )


def chain_from_dict(symbol: str, payload: dict[str, Any]) -> ChainSnapshot:
    as_of = parse_datetime(payload.get("as_of")) or dt.datetime.now(UTC)
    contracts = []
    for row in payload.get("contracts", []):
        if not isinstance(row, dict):
            continue
        contract = contract_from_dict(symbol, row)
        if contract is not None:
            contracts.append(contract)
    return ChainSnapshot(symbol=symbol.upper(), as_of=as_of, contracts=contracts)


def to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(out):
        return None
    return out


def _to_int(value: Any) -> Optional[int]:
    out = to_float(value)
    return None if out is None else int(out)


def _normalize_right(value: Any) -> Optional[str]:
    text = str(value or "").strip().upper()
    if text in {"P", "PUT"}:
        return "P"
    if text in {"C", "CALL"}:
        return "C"
    return None


def parse_date(value: Any) -> dt.date | None:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str):
        try:
            return dt.date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def parse_datetime(value: Any) -> dt.datetime | None:
    if isinstance(value, dt.datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value:
        try:
            parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            day = parse_date(value)
            if day is None:
                return None
            parsed = dt.datetime.combine(day, dt.time(0, 0))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None
