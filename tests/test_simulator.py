import math
from datetime import date, timedelta

import pytest

from band_rebalance_engine.prices import PriceBar
from band_rebalance_engine.simulator import (
    BUY_COST_MULTIPLIER,
    EmptySeries,
    SimulationError,
    SimulationResult,
    initial_state,
    StrategyParams,
    ladder_steps,
    simulate,
)

D0 = date(2024, 1, 2)


def _params(**kw):
    base = dict(
        init_cash=10_000,
        init_stock_pct=0.5,
        target_annual_rate=0.0,
        upper_band_pct=0.1,
        lower_band_pct=0.1,
        unit_gap_pct=0.05,
    )
    base.update(kw)
    return StrategyParams(**base)


def _flat(day, price):
    return PriceBar(date=day, open=price, high=price, low=price, close=price)


def _sine(n=200):
    bars = []
    for i in range(n):
        close = 100 + 30 * math.sin(i / 5)
        bars.append(
            PriceBar(
                date=D0 + timedelta(days=i),
                open=close * 0.99,
                high=close * 1.03,
                low=close * 0.96,
                close=close,
            )
        )
    return bars


def test_day_zero_split():
    res = simulate([_flat(D0, 100)], _params(init_cash=1000))

    assert isinstance(res, SimulationResult)
    row = res.rows[0]
    assert row.v_basis == 500
    assert row.cash == 500
    assert row.shares == 5
    assert row.asset == 1000
    assert row.drawdown == 0
    assert row.buy_qty == 0 and row.sell_qty == 0


def test_empty_inputs_are_not_errors():
    assert isinstance(simulate([], _params()), EmptySeries)
    bad = [{"date": "nope", "open": 1, "high": 1, "low": 1, "close": 1}]
    assert simulate(bad, _params()).reason == "no_data"


def test_flat_series_never_trades():
    bars = [_flat(D0 + timedelta(days=i), 100) for i in range(10)]
    res = simulate(bars, _params(init_cash=1000))

    assert all(r.buy_qty == 0 and r.sell_qty == 0 for r in res.rows)
    assert all(r.asset == pytest.approx(1000) for r in res.rows)
    assert res.summary["max_mdd_rate"] == 0


@pytest.mark.parametrize(
    "price,kw",
    [
        (100, dict(init_cash=1000, init_stock_pct=0.55, lower_band_pct=0.05, upper_band_pct=0.1, unit_gap_pct=0.01)),
        (47.3, dict(init_cash=12345, init_stock_pct=0.37, target_annual_rate=0.1)),
        (3.7, dict(init_cash=999, init_stock_pct=0.9, lower_band_pct=0.02, upper_band_pct=0.02, unit_gap_pct=0.01)),
    ],
)
def test_flat_series_with_odd_lot_remainder_never_trades(price, kw):
    bars = [_flat(D0 + timedelta(days=i), price) for i in range(10)]
    res = simulate(bars, _params(**kw))
    first = res.rows[0]

    assert first.v_basis == first.shares * price
    assert first.asset == pytest.approx(kw["init_cash"])
    assert all(r.buy_qty == 0 and r.sell_qty == 0 for r in res.rows)
    assert all(r.asset == first.asset for r in res.rows)
    assert res.summary["max_mdd_rate"] == 0


def test_oscillating_series_keeps_books_consistent():
    res = simulate(_sine(), _params(target_annual_rate=0.1))

    for row in res.rows:
        assert row.shares >= 0
        assert row.cash >= -1e-9
        assert row.asset == row.cash + row.shares * row.close
        assert row.drawdown <= 0
    assert res.summary["total_buy_count"] > 0
    assert res.summary["total_sell_count"] > 0


def test_deterministic():
    a = simulate(_sine(), _params())
    b = simulate(_sine(), _params())
    assert a.summary == b.summary
    assert [r.asset for r in a.rows] == [r.asset for r in b.rows]


def test_max_drawdown_matches_ledger():
    res = simulate(_sine(), _params())

    worst = min(r.drawdown for r in res.rows)
    assert res.max_mdd_rate == worst
    assert res.max_mdd_rate <= 0
    assert res.summary["max_mdd_rate"] == round(worst, 2)


def test_v_basis_compounds_monotonically():
    res = simulate(_sine(60), _params(target_annual_rate=0.1))
    vb = [r.v_basis for r in res.rows]

    assert all(b >= a for a, b in zip(vb, vb[1:]))
    daily = 1.1 ** (1 / 365) - 1
    assert vb[-1] == pytest.approx(vb[0] * (1 + daily) ** 59)


def test_weekend_gap_compounds_three_days():
    bars = [_flat(date(2024, 3, 1), 100), _flat(date(2024, 3, 4), 100)]
    res = simulate(bars, _params(target_annual_rate=0.1))

    assert res.rows[1].diff_days == 3
    daily = 1.1 ** (1 / 365) - 1
    assert res.rows[1].v_basis == pytest.approx(5000 * (1 + daily) ** 3)


@pytest.mark.parametrize(
    "target,reference,gap,has_position",
    [
        (120, 100, 0.0, True),
        (120, 100, 0.05, False),
        (0, 100, 0.05, True),
        (120, 0, 0.05, True),
        (90, 100, 0.05, True),
    ],
)
def test_ladder_steps_guards(target, reference, gap, has_position):
    assert ladder_steps(target, reference, gap, has_position) == 0


def test_ladder_steps_counts_whole_steps():
    assert ladder_steps(120, 100, 0.05) == 3
    assert ladder_steps(90, 80, 0.05) == 2


def test_open_buy_fills_at_open():
    # day 0: 50 shares @100, lower band 4500 -> reference 90, unit 2
    res = simulate([_flat(D0, 100), _flat(D0 + timedelta(days=1), 80)], _params())
    row = res.rows[1]

    assert row.unit_shares == 2
    assert row.open_buy.count == 2
    assert row.open_buy.qty == 4
    assert row.open_buy.price == 80
    assert row.open_buy.amount == pytest.approx(4 * 80 * BUY_COST_MULTIPLIER)
    assert row.low_buy.qty == 0
    assert row.shares == 54
    assert row.cash == pytest.approx(5000 - 4 * 80 * BUY_COST_MULTIPLIER)


def test_low_buy_fills_at_ladder_midpoint():
    day1 = PriceBar(date=D0 + timedelta(days=1), open=95, high=95, low=70, close=75)
    res = simulate([_flat(D0, 100), day1], _params())
    row = res.rows[1]

    assert row.open_buy.qty == 0
    assert row.low_buy.count == 5
    assert row.low_buy.qty == 10
    assert row.low_buy.price == pytest.approx((90 * 0.95 + 90 * 0.95 ** 5) / 2)
    assert row.shares == 60


def test_open_sell_reduces_cost_basis_proportionally():
    res = simulate([_flat(D0, 100), _flat(D0 + timedelta(days=1), 125)], _params())
    row = res.rows[1]

    assert row.open_sell.count == 2
    assert row.sell_qty == 4
    assert row.sell_amt == 500
    assert row.shares == 46
    assert row.cash == pytest.approx(5500)
    assert row.total_purchase_amt == pytest.approx(4600)
    assert row.avg_price == pytest.approx(100)


def test_buys_capped_by_cash():
    res = simulate([_flat(D0, 100), _flat(D0 + timedelta(days=1), 80)], _params(init_stock_pct=1.0))
    row = res.rows[1]

    assert row.start_cash == 0
    assert row.buy_qty == 0
    assert row.shares == 100


def test_no_position_never_trades():
    bars = [_flat(D0, 100), _flat(D0 + timedelta(days=1), 50), _flat(D0 + timedelta(days=2), 200)]
    res = simulate(bars, _params(init_stock_pct=0.0))

    assert all(r.shares == 0 for r in res.rows)
    assert all(r.asset == 10_000 for r in res.rows)


def test_invalid_params_raise():
    with pytest.raises(SimulationError):
        simulate([_flat(D0, 100)], _params(init_cash=0))
    with pytest.raises(SimulationError):
        simulate([_flat(D0, 100)], _params(init_stock_pct=1.5))
    with pytest.raises(SimulationError):
        simulate([_flat(D0, 100)], _params(unit_gap_pct=1.0))


def test_non_positive_first_close_raises():
    bar = PriceBar(date=D0, open=100, high=100, low=100, close=0)
    with pytest.raises(SimulationError):
        initial_state(bar, _params())


def test_non_positive_bars_are_dropped_before_simulating():
    bars = [
        PriceBar(date=D0, open=100, high=100, low=100, close=0),
        _flat(D0 + timedelta(days=1), 100),
        PriceBar(date=D0 + timedelta(days=2), open=100, high=100, low=float("nan"), close=100),
    ]
    res = simulate(bars, _params())

    assert [r.date for r in res.rows] == [D0 + timedelta(days=1)]
    assert isinstance(simulate(bars[:1], _params()), EmptySeries)


def test_views():
    res = simulate(_sine(30), _params())

    arrays = res.chart_arrays()
    assert set(arrays) == {"dates", "closes", "assets", "dds", "shares", "lowers", "uppers", "ratios"}
    assert all(len(v) == 30 for v in arrays.values())
    assert len(res.chart["labels"]) == 30
    assert len(res.recent_history(14)) == 14
    assert res.recent_history(14)[-1]["date"] == res.rows[-1].date.isoformat()
    assert res.recent_history(0) == []


def test_yearly_snapshots_at_year_end():
    bars = [_flat(date(2023, 12, 27) + timedelta(days=i), 100) for i in range(10)]
    res = simulate(bars, _params())

    assert [y["date"] for y in res.yearly] == ["2023-12-31", "2024-01-05"]
    assert res.yearly[-1] == res.summary


def test_summary_fields_rounded():
    res = simulate(_sine(), _params(target_annual_rate=0.1))
    s = res.summary

    for key in ("asset", "cash", "final_cagr", "cumulative_return", "avg_stock_ratio"):
        assert s[key] == round(s[key], 2)
    assert s["total_days"] == 200
    assert s["date"] == res.rows[-1].date.isoformat()
