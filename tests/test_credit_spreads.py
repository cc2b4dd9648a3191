from __future__ import annotations

import dataclasses
import datetime as dt

import pytest

from data.chain import UTC, ChainSnapshot, OptionContract
from strategies.credit_spreads import delta_band, deltas_reliable, generate_put_credit_spreads

AS_OF = dt.date(2026, 3, 2)
EXP = dt.date(2026, 3, 12)


def _put(strike: float, expiration: dt.date = EXP, delta: float | None = None, mid: float | None = None) -> OptionContract:
    if delta is None:
        delta = -max(0.02, round(0.02 * (strike - 88) + 0.10, 4))
    if mid is None:
        mid = 0.05 + 0.25 * (strike - 80)
    return OptionContract(
        underlying="XYZ",
        option_symbol=f"XYZ_{expiration}_P{strike:g}",
        right="P",
        strike=float(strike),
        expiration=expiration,
        bid=round(mid - 0.05, 4),
        ask=round(mid + 0.05, 4),
        delta=delta,
        theta=-0.02,
        vega=0.05,
        iv=0.30,
        open_interest=1000,
        volume=100,
    )


def _chain(contracts: list[OptionContract]) -> ChainSnapshot:
    return ChainSnapshot(symbol="XYZ", as_of=dt.datetime(2026, 3, 2, 15, tzinfo=UTC), contracts=contracts)


def test_delta_band_derives_from_policy_threshold() -> None:
    lo, hi = delta_band(-0.18)
    assert hi == pytest.approx(0.18)
    assert lo == pytest.approx(0.18 * 0.67)
    assert delta_band(None) == (pytest.approx(0.15 * 0.67), 0.15)


def test_generates_spread_closest_to_target_delta() -> None:
    chain = _chain([_put(k) for k in range(80, 99)])
    out = generate_put_credit_spreads(chain, 100.0, as_of=AS_OF)

    assert len(out) == 1
    cand = out[0]
    assert cand.short.strike == 89
    assert cand.long.strike == 87
    assert cand.short.side == "SELL" and cand.long.side == "BUY"
    assert cand.entry_credit == pytest.approx(0.50)
    assert cand.max_loss == pytest.approx(1.50)
    assert cand.breakeven == pytest.approx(88.5)
    assert cand.est_pop == pytest.approx(0.88)
    assert cand.dte == 10
    assert cand.id.startswith("cand_")


def test_credit_to_width_reconstructs_credit() -> None:
    contracts = [_put(k) for k in range(70, 99)] + [_put(k, expiration=EXP + dt.timedelta(days=7)) for k in range(70, 99)]
    out = generate_put_credit_spreads(_chain(contracts), 100.0, as_of=AS_OF, delta_threshold=0.30)
    assert out
    for cand in out:
        assert cand.width > 0
        assert cand.width * cand.credit_to_width == pytest.approx(cand.entry_credit, rel=1e-9)


def test_falls_back_to_moneyness_when_deltas_are_tiny() -> None:
    contracts = [_put(k, delta=-0.001) for k in range(70, 99)]
    assert not deltas_reliable(contracts)

    out = generate_put_credit_spreads(_chain(contracts), 100.0, as_of=AS_OF)
    assert out
    assert out[0].short.strike == 86
    for cand in out:
        assert 0.75 <= cand.short.strike / 100.0 <= 0.92
        assert cand.long.strike < cand.short.strike


def test_missing_delta_uses_default_pop() -> None:
    contracts = [dataclasses.replace(_put(k), delta=None) for k in range(70, 99)]
    out = generate_put_credit_spreads(_chain(contracts), 100.0, as_of=AS_OF)
    assert out
    assert all(c.est_pop == pytest.approx(0.7) for c in out)


def test_drops_spreads_below_risk_reward_floor() -> None:
    chain = _chain([_put(k) for k in range(80, 99)])
    assert generate_put_credit_spreads(chain, 100.0, as_of=AS_OF, min_risk_reward=1.0) == []


def test_drops_spreads_without_positive_credit() -> None:
    chain = _chain([_put(k, mid=1.0) for k in range(80, 99)])
    assert generate_put_credit_spreads(chain, 100.0, as_of=AS_OF) == []


def test_only_first_expirations_within_lookahead_are_used() -> None:
    expirations = [EXP + dt.timedelta(days=7 * i) for i in range(4)]
    contracts = [_put(k, expiration=e) for e in expirations for k in range(80, 99)]
    out = generate_put_credit_spreads(_chain(contracts), 100.0, as_of=AS_OF, expiration_lookahead=3)
    used = {c.short.expiration for c in out}
    assert used
    assert used <= set(expirations[:3])


def test_policy_dte_window_filters_expirations() -> None:
    near = EXP
    far = EXP + dt.timedelta(days=30)
    contracts = [_put(k, expiration=e) for e in (near, far) for k in range(80, 99)]
    out = generate_put_credit_spreads(_chain(contracts), 100.0, as_of=AS_OF, min_dte=20)
    assert {c.short.expiration for c in out} == {far}


def test_no_price_yields_no_candidates() -> None:
    chain = _chain([_put(k) for k in range(80, 99)])
    assert generate_put_credit_spreads(chain, None, as_of=AS_OF) == []
