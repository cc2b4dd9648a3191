from __future__ import annotations

import dataclasses
import datetime as dt

import pytest

from data.chain import CompanyOverview, Quote
from strategies.factors import FactorContext
from strategies.models import Candidate, ContractLeg
from strategies.pcs_evaluator import SpreadMetrics, delta_cap, dte_bucket, evaluate_pcs, metrics_for


def _metrics(**overrides) -> SpreadMetrics:
    base = SpreadMetrics(
        short_strike=100.0,
        long_strike=95.0,
        credit=1.50,
        dte=10,
        short_delta=-0.13,
        theta=1.2,
        vega=-0.1,
        current_price=105.0,
        iv_rank=55.0,
    )
    return dataclasses.replace(base, **overrides)


def test_clean_setup_is_take() -> None:
    ev = evaluate_pcs(_metrics())
    assert ev.hard_gates == "PASS"
    assert ev.bottom_line == "TAKE"
    assert ev.dte_bucket == "8-14"
    assert ev.score == 100
    assert ev.factors["delta"].target == 0.18
    assert ev.factors["credit_to_width"].value == 0.30
    assert len(ev.management_rules) == 5


def test_positive_vega_fails_hard_gates() -> None:
    ev = evaluate_pcs(_metrics(vega=0.05))
    assert ev.hard_gates == "FAIL"
    assert ev.bottom_line == "PASS"
    assert ev.score == 90
    assert any("Vega positive" in c for c in ev.whats_concerning)


def test_delta_cap_tightens_with_low_iv_rank() -> None:
    assert delta_cap(None) == 0.18
    assert delta_cap(55.0) == 0.18
    assert delta_cap(39.0) == 0.15
    assert delta_cap(25.0) == 0.12

    ev = evaluate_pcs(_metrics(iv_rank=25.0))
    assert ev.hard_gates == "FAIL"
    assert not ev.factors["delta"].passed
    assert not ev.factors["iv_rank"].passed


def test_caution_band_requires_compensation() -> None:
    ev = evaluate_pcs(_metrics(iv_rank=37.0))
    assert ev.hard_gates == "PASS"
    assert ev.bottom_line == "TWEAK"
    assert any("requires compensation" in c for c in ev.whats_concerning)


def test_news_spike_fails_hard_gates() -> None:
    ev = evaluate_pcs(_metrics(news_z=2.5))
    assert ev.hard_gates == "FAIL"
    assert ev.bottom_line == "PASS"
    assert any("News volume spike" in c for c in ev.whats_concerning)
    assert evaluate_pcs(_metrics(news_z=1.8)).hard_gates == "PASS"


def test_illiquid_legs_fail_hard_gates() -> None:
    ev = evaluate_pcs(_metrics(short_open_interest=100, long_bid=0.50, long_ask=1.10))
    assert ev.hard_gates == "FAIL"
    assert "Short leg OI 100" in ev.factors["liquidity"].value
    assert "Long leg bid-ask" in ev.factors["liquidity"].value


def test_dte_bucket_sets_theta_minimum() -> None:
    assert dte_bucket(5)[0] == "0-7"
    assert dte_bucket(21)[0] == "8-14"
    assert evaluate_pcs(_metrics(theta=0.9)).hard_gates == "PASS"
    assert evaluate_pcs(_metrics(theta=0.9, dte=5)).hard_gates == "FAIL"


def test_soft_momentum_is_tweak_not_fail() -> None:
    ev = evaluate_pcs(_metrics(ret_5d=-0.02, ma_20=110.0))
    assert ev.hard_gates == "PASS"
    assert ev.bottom_line == "TWEAK"
    assert not ev.factors["momentum"].passed


def test_thin_credit_is_tweak() -> None:
    ev = evaluate_pcs(_metrics(credit=0.75))
    assert ev.hard_gates == "PASS"
    assert ev.bottom_line == "TWEAK"
    assert any("Credit too thin" in c for c in ev.whats_concerning)


def _leg(side: str, strike: float, delta: float, theta: float, vega: float) -> ContractLeg:
    return ContractLeg(side, "P", strike, dt.date(2026, 3, 12), 1.0, 1.02, delta=delta, theta=theta, vega=vega, open_interest=900)


def _candidate(strategy: str = "put_credit_spread") -> Candidate:
    return Candidate(
        id="cand_eval",
        symbol="XYZ",
        strategy=strategy,
        short=_leg("SELL", 100.0, -0.13, -0.05, 0.10),
        long=_leg("BUY", 95.0, -0.07, -0.035, 0.11),
        entry_credit=1.5,
        max_profit=1.5,
        max_loss=3.5,
        breakeven=98.5,
        est_pop=0.87,
        dte=10,
        underlying_price=105.0,
    )


def test_metrics_built_from_candidate_context() -> None:
    ctx = FactorContext(
        candidate=_candidate(),
        quote=Quote("XYZ", 105.0),
        overview=CompanyOverview(symbol="XYZ", ma_50=100.0),
        features={"momentum_5d": 1.5, "ma_20": 103.0},
    )
    m = metrics_for(ctx, news_z=0.4)
    assert m is not None
    assert m.theta == pytest.approx(1.5)
    assert m.vega == pytest.approx(1.0)
    assert m.ret_5d == pytest.approx(0.015)
    assert m.ma_50 == 100.0
    assert m.news_z == 0.4
    assert m.iv_rank is None


def test_metrics_skip_other_strategies() -> None:
    assert metrics_for(FactorContext(candidate=_candidate("iron_condor"))) is None
