from __future__ import annotations

import datetime as dt
import hashlib
import logging
import statistics
from typing import Optional, Sequence

from data.chain import ChainSnapshot, OptionContract
from strategies.models import Candidate, ContractLeg

logger = logging.getLogger(__name__)

STRATEGY_PUT_CREDIT_SPREAD = "put_credit_spread"

DEFAULT_DELTA_MAX = 0.15
DELTA_MIN_FRACTION = 0.67
DELTA_SANITY_FLOOR = 0.01
MONEYNESS_BAND = (0.75, 0.92)
MONEYNESS_TARGET = 0.86
LONG_STRIKE_OFFSET = 2
DEFAULT_POP = 0.7


def delta_band(delta_threshold: Optional[float]) -> tuple[float, float]:
    delta_max = abs(delta_threshold) if delta_threshold else DEFAULT_DELTA_MAX
    return delta_max * DELTA_MIN_FRACTION, delta_max


def generate_put_credit_spreads(
    chain: ChainSnapshot,
    price: Optional[float],
    as_of: dt.date,
    delta_threshold: Optional[float] = None,
    expiration_lookahead: int = 3,
    candidates_per_expiry: int = 3,
    min_risk_reward: float = 0.15,
    min_dte: Optional[int] = None,
    max_dte: Optional[int] = None,
) -> list[Candidate]:
    if not price or price <= 0:
        logger.info("%s: no usable price, skipping candidate generation", chain.symbol)
        return []

    delta_min, delta_max = delta_band(delta_threshold)
    expirations = []
    for expiration in sorted({c.expiration for c in chain.puts()}):
        dte = (expiration - as_of).days
        if dte < 0:
            continue
        if min_dte is not None and dte < min_dte:
            continue
        if max_dte is not None and dte > max_dte:
            continue
        expirations.append(expiration)

    candidates: list[Candidate] = []
    for expiration in expirations[: max(0, expiration_lookahead)]:
        puts = [c for c in chain.puts() if c.expiration == expiration]
        ladder = _otm_ladder(puts, price)
        if len(ladder) < 2:
            continue

        shorts = _rank_short_strikes(ladder, price, delta_min, delta_max)
        per_expiry = min(candidates_per_expiry, (len(shorts) + 1) // 2)
        for i in range(per_expiry):
            short = shorts[i * 2]
            long_leg = _long_for(short, ladder)
            if long_leg is None:
                continue
            candidate = _build_candidate(chain.symbol, short, long_leg, price, as_of, min_risk_reward)
            if candidate is not None:
                candidates.append(candidate)

    logger.info("%s: generated %d put credit spread candidates", chain.symbol, len(candidates))
    return candidates


def deltas_reliable(puts: Sequence[OptionContract]) -> bool:
    sample = [abs(c.delta) for c in puts if c.delta is not None]
    if not sample:
        return False
    return statistics.median(sample) > DELTA_SANITY_FLOOR


def _otm_ladder(puts: Sequence[OptionContract], price: float) -> list[OptionContract]:
    eligible = [c for c in puts if c.strike < price and c.bid is not None and c.ask is not None and c.ask > 0]
    return sorted(eligible, key=lambda c: c.strike, reverse=True)


def _rank_short_strikes(
    ladder: Sequence[OptionContract],
    price: float,
    delta_min: float,
    delta_max: float,
) -> list[OptionContract]:
    if deltas_reliable(ladder):
        target = (delta_min + delta_max) / 2.0
        in_band = [c for c in ladder if c.delta is not None and delta_min <= abs(c.delta) <= delta_max]
        return sorted(in_band, key=lambda c: abs(abs(c.delta) - target))

    lo, hi = MONEYNESS_BAND
    in_band = [c for c in ladder if lo <= c.strike / price <= hi]
    return sorted(in_band, key=lambda c: abs(c.strike / price - MONEYNESS_TARGET))


def _long_for(short: OptionContract, ladder: Sequence[OptionContract]) -> Optional[OptionContract]:
    idx = ladder.index(short)
    if idx + 1 >= len(ladder):
        return None
    return ladder[min(idx + LONG_STRIKE_OFFSET, len(ladder) - 1)]


def _build_candidate(
    symbol: str,
    short: OptionContract,
    long_leg: OptionContract,
    price: float,
    as_of: dt.date,
    min_risk_reward: float,
) -> Optional[Candidate]:
    width = short.strike - long_leg.strike
    if width <= 0 or short.mid is None or long_leg.mid is None:
        return None

    credit = short.mid - long_leg.mid
    if credit <= 0:
        return None

    max_loss = width - credit
    if max_loss <= 0 or credit / max_loss < min_risk_reward:
        return None

    est_pop = 1.0 - abs(short.delta) if short.delta else DEFAULT_POP
    return Candidate(
        id=_build_candidate_id(symbol, short.expiration, short.strike, long_leg.strike),
        symbol=symbol,
        strategy=STRATEGY_PUT_CREDIT_SPREAD,
        short=ContractLeg.from_contract(short, "SELL"),
        long=ContractLeg.from_contract(long_leg, "BUY"),
        entry_credit=credit,
        max_profit=credit,
        max_loss=max_loss,
        breakeven=short.strike - credit,
        est_pop=max(0.0, min(1.0, est_pop)),
        dte=(short.expiration - as_of).days,
        underlying_price=price,
    )


def _build_candidate_id(symbol: str, expiration: dt.date, short_strike: float, long_strike: float) -> str:
    raw = "|".join(
        [
            symbol.upper(),
            STRATEGY_PUT_CREDIT_SPREAD,
            expiration.isoformat(),
            f"{float(short_strike):.2f}",
            f"{float(long_strike):.2f}",
        ]
    )
    digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]
    return f"cand_{digest}"
