from __future__ import annotations

from typing import Any, Optional, Sequence

import pandas as pd

from data.chain import ChainSnapshot, MacroObservation, Quote

MIN_IVS_FOR_PERCENTILE = 10


def engineer_features(
    chain: ChainSnapshot,
    quote: Optional[Quote],
    macro: Optional[dict[str, list[MacroObservation]]] = None,
) -> dict[str, Any]:
    """
    Per-symbol features derived from the chain, quote, and macro series.

    Volatility fields that cannot be derived from a single chain snapshot
    (symbol-level IV rank, term slope, put skew) are reported as None rather
    than estimated.
    """
    frame = _chain_frame(chain)
    features: dict[str, Any] = {
        "symbol": chain.symbol,
        "contract_count": int(len(frame)),
        "expiration_count": len(chain.expirations()),
        "iv_rank": None,
        "term_slope": None,
        "put_skew": None,
        "volume_oi_ratio": None,
        "put_call_ratio": None,
        "put_call_oi_ratio": None,
        "chain_iv_median": None,
        "price": quote.price if quote else None,
        "momentum_5d": None,
        "ma_20": None,
    }

    if not frame.empty:
        total_volume = frame["volume"].sum(min_count=1)
        total_oi = frame["open_interest"].sum(min_count=1)
        features["volume_oi_ratio"] = _ratio(total_volume, total_oi)

        by_right = frame.groupby("right")[["volume", "open_interest"]].sum(min_count=1)
        features["put_call_ratio"] = _ratio(_cell(by_right, "P", "volume"), _cell(by_right, "C", "volume"))
        features["put_call_oi_ratio"] = _ratio(
            _cell(by_right, "P", "open_interest"), _cell(by_right, "C", "open_interest")
        )
        ivs = frame["iv"].dropna()
        if not ivs.empty:
            features["chain_iv_median"] = float(ivs.median())

    if quote is not None and quote.closes:
        closes = pd.Series(quote.closes, dtype="float64")
        if len(closes) >= 6 and closes.iloc[-6] > 0:
            features["momentum_5d"] = float((closes.iloc[-1] / closes.iloc[-6] - 1.0) * 100.0)
        if len(closes) >= 20:
            features["ma_20"] = float(closes.iloc[-20:].mean())

    features.update(macro_features(macro or {}))
    return features


def macro_features(macro: dict[str, list[MacroObservation]]) -> dict[str, Any]:
    fed_funds = _latest(macro.get("DFF"))
    unemployment = _latest(macro.get("UNRATE"))
    term_spread = _latest(macro.get("T10Y3M"))
    return {
        "fed_funds_rate": fed_funds,
        "unemployment_rate": unemployment,
        "term_spread": term_spread,
        "inflation_yoy": inflation_yoy(macro.get("CPIAUCSL")),
        "macro_regime": macro_regime(term_spread),
    }


def macro_regime(term_spread: Optional[float]) -> str:
    if term_spread is None:
        return "neutral"
    if term_spread < 0:
        return "risk_off"
    if term_spread > 1:
        return "risk_on"
    return "neutral"


def inflation_yoy(series: Optional[Sequence[MacroObservation]]) -> Optional[float]:
    """Year-over-year percent change of a monthly index (12 observations back)."""
    if not series or len(series) < 13:
        return None
    latest = series[-1].value
    prior = series[-13].value
    if prior == 0:
        return None
    return (latest / prior - 1.0) * 100.0


def chain_iv_percentile(chain: Optional[ChainSnapshot], iv: Optional[float]) -> Optional[float]:
    """Percentile (0-100) of `iv` among the chain's IVs; None with fewer than 10 IVs."""
    if chain is None or iv is None:
        return None
    ivs = [c.iv for c in chain.contracts if c.iv is not None and c.iv > 0]
    if len(ivs) < MIN_IVS_FOR_PERCENTILE:
        return None
    below = sum(1 for v in ivs if v <= iv)
    return round(below / len(ivs) * 100.0, 1)


def _chain_frame(chain: ChainSnapshot) -> pd.DataFrame:
    rows = [
        {
            "right": c.right,
            "expiration": c.expiration,
            "strike": c.strike,
            "iv": c.iv,
            "volume": c.volume,
            "open_interest": c.open_interest,
        }
        for c in chain.contracts
    ]
    frame = pd.DataFrame(rows, columns=["right", "expiration", "strike", "iv", "volume", "open_interest"])
    for col in ("iv", "volume", "open_interest"):
        frame[col] = pd.to_numeric(frame[col], errors="coerce")
    return frame


def _cell(frame: pd.DataFrame, row: str, col: str) -> Optional[float]:
    if row not in frame.index:
        return None
    value = frame.at[row, col]
    return None if pd.isna(value) else float(value)


def _ratio(num: Any, den: Any) -> Optional[float]:
    if num is None or den is None or pd.isna(num) or pd.isna(den) or float(den) == 0:
        return None
    return round(float(num) / float(den), 4)


def _latest(series: Optional[Sequence[MacroObservation]]) -> Optional[float]:
    if not series:
        return None
    return float(series[-1].value)
