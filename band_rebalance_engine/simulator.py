"""Band rebalancing simulator (LONG only, daily bars).

Core idea:
- v_basis is the target stock allocation; it compounds every calendar day at
  the daily equivalent of `target_annual_rate`.
- Bands: upper = v_basis * (1 + upper_band_pct), lower = v_basis * (1 - lower_band_pct)
- When the position value falls below the (previous day's) lower band, buy in
  unit lots along a descending ladder of limit prices spaced `unit_gap_pct`
  apart; above the upper band, sell along an ascending ladder.
- Each side has two triggers per day, evaluated in order:
    * open: the bar opens through the band -> fill at open
    * low/high: the intraday extreme reaches further ladder levels
      -> fill at the mean of the first and last crossed level
- Buys pay a fixed 0.07% cost; sells pay nothing (one-sided fee policy).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Dict, List, Optional, Tuple, Union

from .metrics import calculate_cagr, stock_ratio, years_between
from .prices import BarsLike, PriceBar, days_between, to_bars

BUY_COST_RATE = 0.0007
BUY_COST_MULTIPLIER = 1.0 + BUY_COST_RATE


class SimulationError(ValueError):
    """Invalid parameters or price data that make the run meaningless."""


@dataclass(frozen=True)
class StrategyParams:
    init_cash: float
    init_stock_pct: float
    target_annual_rate: float
    upper_band_pct: float
    lower_band_pct: float
    unit_gap_pct: float
    # alarm when the previous close is within this fraction of the first ladder price (0 = off)
    alarm_buy_pct: float = 0.0
    alarm_sell_pct: float = 0.0

    @property
    def target_daily_rate(self) -> float:
        return (1.0 + self.target_annual_rate) ** (1.0 / 365.0) - 1.0

    def validate(self) -> None:
        if not self.init_cash > 0:
            raise SimulationError(f"init_cash must be positive: {self.init_cash}")
        if not 0.0 <= self.init_stock_pct <= 1.0:
            raise SimulationError(f"init_stock_pct must be within [0, 1]: {self.init_stock_pct}")
        if self.target_annual_rate <= -1.0:
            raise SimulationError(f"target_annual_rate must be > -1: {self.target_annual_rate}")
        if not 0.0 <= self.upper_band_pct:
            raise SimulationError(f"upper_band_pct must be >= 0: {self.upper_band_pct}")
        if not 0.0 <= self.lower_band_pct < 1.0:
            raise SimulationError(f"lower_band_pct must be within [0, 1): {self.lower_band_pct}")
        if not 0.0 <= self.unit_gap_pct < 1.0:
            raise SimulationError(f"unit_gap_pct must be within [0, 1): {self.unit_gap_pct}")


def ladder_steps(target: float, reference: float, gap: float, has_position: bool = True) -> int:
    """Number of whole geometric `gap` steps separating `reference` from `target`.

    floor(log(target / reference) / log(1 + gap)), clamped at 0.

    Preconditions (any violation returns 0, i.e. the trigger does not fire):
      - an existing position (has_position)
      - gap > 0
      - target > 0 and reference > 0 (so the ratio is positive)
    """
    if not has_position or not gap > 0:
        return 0
    if not (target > 0 and reference > 0):
        return 0
    ratio = target / reference
    if not (ratio > 0 and math.isfinite(ratio)):
        return 0
    steps = math.floor(math.log(ratio) / math.log1p(gap))
    return max(0, int(steps))


@dataclass(frozen=True)
class Fill:
    count: int = 0
    price: float = 0.0
    qty: int = 0
    amount: float = 0.0


@dataclass(frozen=True)
class SimState:
    """Loop-carried accumulator; one instance per processed bar."""

    index: int
    date: date
    close: float
    v_basis: float
    cur_upper: float
    cur_lower: float
    cash: float
    shares: int
    total_purchase_amt: float
    high_asset: float
    max_mdd_rate: float
    # run statistics
    high_asset_index: int = 0
    max_recovery_days: int = 0
    total_buy_count: int = 0
    total_sell_count: int = 0
    total_buy_amt: float = 0.0
    total_sell_amt: float = 0.0
    total_fee: float = 0.0
    buy_alarm_count: int = 0
    sell_alarm_count: int = 0
    sum_stock_ratio: float = 0.0
    max_stock_ratio: float = 0.0
    min_stock_ratio: float = 100.0


@dataclass(frozen=True)
class LedgerRow:
    date: date
    open: float
    high: float
    low: float
    close: float
    diff_days: int
    v_basis: float
    cur_upper: float
    cur_lower: float
    unit_shares: int
    open_buy: Fill
    low_buy: Fill
    open_sell: Fill
    high_sell: Fill
    buy_qty: int
    buy_amt: float
    sell_qty: int
    sell_amt: float
    start_cash: float
    cash: float
    shares: int
    eval_amt: float
    asset: float
    total_purchase_amt: float
    avg_price: float
    stock_ratio: float
    high_asset: float
    drawdown: float
    recovery_days: int
    buy_alarm: bool = False
    sell_alarm: bool = False

    def as_dict(self, digits: Optional[int] = None) -> Dict[str, Any]:
        """Flat dict; `digits` rounds floats for display."""
        out: Dict[str, Any] = {}
        for key, value in self.__dict__.items():
            if isinstance(value, Fill):
                out[f"{key}_count"] = value.count
                out[f"{key}_qty"] = value.qty
                out[f"{key}_price"] = _r(value.price, digits)
                out[f"{key}_amt"] = _r(value.amount, digits)
            elif isinstance(value, date):
                out[key] = value.isoformat()
            elif isinstance(value, float):
                out[key] = _r(value, digits)
            else:
                out[key] = value
        return out


def _r(value: float, digits: Optional[int]) -> float:
    return value if digits is None else round(value, digits)


@dataclass(frozen=True)
class EmptySeries:
    reason: str = "no_data"


@dataclass
class SimulationResult:
    rows: List[LedgerRow]
    chart: Dict[str, List[Any]]
    summary: Dict[str, Any]
    yearly: List[Dict[str, Any]] = field(default_factory=list)
    max_mdd_rate: float = 0.0

    def chart_arrays(self) -> Dict[str, List[Any]]:
        """Lightweight per-day arrays for charting."""
        return {
            "dates": [r.date.isoformat() for r in self.rows],
            "closes": [r.close for r in self.rows],
            "assets": [round(r.asset) for r in self.rows],
            "dds": [round(r.drawdown, 2) for r in self.rows],
            "shares": [r.shares for r in self.rows],
            "lowers": [round(r.cur_lower) for r in self.rows],
            "uppers": [round(r.cur_upper) for r in self.rows],
            "ratios": [round(r.stock_ratio, 1) for r in self.rows],
        }

    def recent_history(self, n: int = 14) -> List[Dict[str, Any]]:
        return [
            {
                "date": r.date.isoformat(),
                "open": r.open,
                "high": r.high,
                "low": r.low,
                "close": r.close,
                "asset": round(r.asset),
                "stock_ratio": round(r.stock_ratio, 1),
                "shares": r.shares,
                "cur_lower": round(r.cur_lower),
                "cur_upper": round(r.cur_upper),
            }
            for r in self.rows[-n:]
        ] if n > 0 else []


SimOutcome = Union[SimulationResult, EmptySeries]


# ---------------------------------------------------------------------------
# trade triggers
# ---------------------------------------------------------------------------

def _affordable_count(count: int, unit: int, price: float, cash: float) -> int:
    if count <= 0 or price <= 0 or cash <= 0:
        return 0
    lot_cost = unit * price * BUY_COST_MULTIPLIER
    return max(0, min(count, int(math.floor(cash / lot_cost))))


def _buy_side(prev: SimState, bar: PriceBar, unit: int, gap: float) -> Tuple[Fill, Fill]:
    has_position = prev.shares > 0
    if not has_position:
        return Fill(), Fill()

    ref = prev.cur_lower / prev.shares
    cash = prev.cash

    open_fill = Fill()
    if prev.shares * bar.open < prev.cur_lower * (1.0 - gap):
        count = ladder_steps(ref, bar.open, gap, has_position)
        count = _affordable_count(count, unit, bar.open, cash)
        if count > 0:
            qty = count * unit
            amount = qty * bar.open * BUY_COST_MULTIPLIER
            open_fill = Fill(count=count, price=bar.open, qty=qty, amount=amount)
            cash -= amount

    low_fill = Fill()
    n_open = open_fill.count
    residual = ref * (1.0 - gap) ** (n_open + 1)
    if bar.low < residual:
        count = ladder_steps(ref * (1.0 - gap) ** n_open, bar.low, gap, has_position)
        if count > 0:
            first = ref * (1.0 - gap) ** (n_open + 1)
            last = ref * (1.0 - gap) ** (n_open + count)
            price = (first + last) / 2.0
            count = _affordable_count(count, unit, price, cash)
            if count > 0:
                qty = count * unit
                low_fill = Fill(count=count, price=price, qty=qty, amount=qty * price * BUY_COST_MULTIPLIER)

    return open_fill, low_fill


def _sell_side(prev: SimState, bar: PriceBar, unit: int, gap: float) -> Tuple[Fill, Fill]:
    has_position = prev.shares > 0
    if not has_position:
        return Fill(), Fill()

    ref = prev.cur_upper / prev.shares
    left = prev.shares

    open_fill = Fill()
    if prev.shares * bar.open > prev.cur_upper * (1.0 + gap):
        count = ladder_steps(bar.open, ref, gap, has_position)
        if count > 0:
            qty = min(count * unit, left)
            open_fill = Fill(count=count, price=bar.open, qty=qty, amount=qty * bar.open)
            left -= qty

    high_fill = Fill()
    n_open = open_fill.count
    residual = ref * (1.0 + gap) ** (n_open + 1)
    if left > 0 and bar.high > residual:
        count = ladder_steps(bar.high, ref * (1.0 + gap) ** n_open, gap, has_position)
        if count > 0:
            first = ref * (1.0 + gap) ** (n_open + 1)
            last = ref * (1.0 + gap) ** (n_open + count)
            price = (first + last) / 2.0
            qty = min(count * unit, left)
            high_fill = Fill(count=count, price=price, qty=qty, amount=qty * price)

    return open_fill, high_fill


def _alarms(prev: SimState, unit_gap: float, params: StrategyParams) -> Tuple[bool, bool]:
    if prev.shares <= 0 or prev.close <= 0:
        return False, False
    buy_alarm = sell_alarm = False
    if params.alarm_buy_pct > 0:
        buy_start = prev.cur_lower * (1.0 - unit_gap) / prev.shares
        buy_alarm = (prev.close - buy_start) / prev.close < params.alarm_buy_pct
    if params.alarm_sell_pct > 0:
        sell_start = prev.cur_upper * (1.0 + unit_gap) / prev.shares
        sell_alarm = (sell_start - prev.close) / prev.close < params.alarm_sell_pct
    return buy_alarm, sell_alarm


# ---------------------------------------------------------------------------
# fold
# ---------------------------------------------------------------------------

def _unit_shares(shares: int, gap: float) -> int:
    return max(1, int(math.floor(shares * gap)))


def _book(
    prev: SimState,
    bar: PriceBar,
    *,
    index: int,
    v_basis: float,
    cur_upper: float,
    cur_lower: float,
    cash: float,
    shares: int,
    total_purchase_amt: float,
    buy_count: int = 0,
    sell_count: int = 0,
    buy_amt: float = 0.0,
    sell_amt: float = 0.0,
    buy_alarm: bool = False,
    sell_alarm: bool = False,
) -> Tuple[SimState, float, float, float, int]:
    """Peak/drawdown/statistics bookkeeping shared by day 0 and later days."""
    asset = cash + shares * bar.close
    high_asset = max(prev.high_asset, asset)
    drawdown = (asset - high_asset) / high_asset * 100.0 if high_asset > 0 else 0.0

    if asset >= high_asset:
        high_idx = index
        recovery = 0
    else:
        high_idx = prev.high_asset_index
        recovery = index - high_idx
    ratio = stock_ratio(shares, bar.close, asset)

    state = replace(
        prev,
        index=index,
        date=bar.date,
        close=bar.close,
        v_basis=v_basis,
        cur_upper=cur_upper,
        cur_lower=cur_lower,
        cash=cash,
        shares=shares,
        total_purchase_amt=total_purchase_amt,
        high_asset=high_asset,
        max_mdd_rate=min(prev.max_mdd_rate, drawdown),
        high_asset_index=high_idx,
        max_recovery_days=max(prev.max_recovery_days, recovery),
        total_buy_count=prev.total_buy_count + buy_count,
        total_sell_count=prev.total_sell_count + sell_count,
        total_buy_amt=prev.total_buy_amt + buy_amt,
        total_sell_amt=prev.total_sell_amt + sell_amt,
        total_fee=prev.total_fee + (buy_amt - buy_amt / BUY_COST_MULTIPLIER),
        buy_alarm_count=prev.buy_alarm_count + int(buy_alarm),
        sell_alarm_count=prev.sell_alarm_count + int(sell_alarm),
        sum_stock_ratio=prev.sum_stock_ratio + ratio,
        max_stock_ratio=max(prev.max_stock_ratio, ratio),
        min_stock_ratio=min(prev.min_stock_ratio, ratio),
    )
    return state, asset, drawdown, ratio, recovery


def initial_state(bar: PriceBar, params: StrategyParams) -> Tuple[SimState, LedgerRow]:
    """Day 0: split init_cash into the target stock allocation and cash.

    v_basis is reset to the value of the whole shares actually bought, so the
    bands start centred on the real position; the lot remainder stays in cash.
    """
    params.validate()
    if not bar.close > 0:
        raise SimulationError(f"non-positive close on {bar.date}: {bar.close}")

    shares = int(math.floor(params.init_cash * params.init_stock_pct / bar.close))
    v_basis = shares * bar.close
    cash = params.init_cash - v_basis
    total_purchase_amt = v_basis
    cur_upper = v_basis * (1.0 + params.upper_band_pct)
    cur_lower = v_basis * (1.0 - params.lower_band_pct)

    seed = SimState(
        index=0,
        date=bar.date,
        close=bar.close,
        v_basis=v_basis,
        cur_upper=cur_upper,
        cur_lower=cur_lower,
        cash=cash,
        shares=shares,
        total_purchase_amt=total_purchase_amt,
        high_asset=params.init_cash,
        max_mdd_rate=0.0,
    )
    state, asset, drawdown, ratio, recovery = _book(
        seed,
        bar,
        index=0,
        v_basis=v_basis,
        cur_upper=cur_upper,
        cur_lower=cur_lower,
        cash=cash,
        shares=shares,
        total_purchase_amt=total_purchase_amt,
    )
    row = LedgerRow(
        date=bar.date,
        open=bar.open,
        high=bar.high,
        low=bar.low,
        close=bar.close,
        diff_days=0,
        v_basis=v_basis,
        cur_upper=cur_upper,
        cur_lower=cur_lower,
        unit_shares=_unit_shares(shares, params.unit_gap_pct),
        open_buy=Fill(),
        low_buy=Fill(),
        open_sell=Fill(),
        high_sell=Fill(),
        buy_qty=0,
        buy_amt=0.0,
        sell_qty=0,
        sell_amt=0.0,
        start_cash=cash,
        cash=cash,
        shares=shares,
        eval_amt=shares * bar.close,
        asset=asset,
        total_purchase_amt=total_purchase_amt,
        avg_price=total_purchase_amt / shares if shares > 0 else 0.0,
        stock_ratio=ratio,
        high_asset=state.high_asset,
        drawdown=drawdown,
        recovery_days=recovery,
    )
    return state, row


def step(prev: SimState, bar: PriceBar, params: StrategyParams) -> Tuple[SimState, LedgerRow]:
    """Advance one bar: compound v_basis, run the ladders, book the result."""
    gap = params.unit_gap_pct
    diff_days = days_between(prev.date, bar.date)

    v_basis = prev.v_basis * (1.0 + params.target_daily_rate) ** diff_days
    cur_upper = v_basis * (1.0 + params.upper_band_pct)
    cur_lower = v_basis * (1.0 - params.lower_band_pct)
    unit = _unit_shares(prev.shares, gap)

    buy_alarm, sell_alarm = _alarms(prev, gap, params)
    open_buy, low_buy = _buy_side(prev, bar, unit, gap)
    open_sell, high_sell = _sell_side(prev, bar, unit, gap)

    buy_qty = open_buy.qty + low_buy.qty
    buy_amt = open_buy.amount + low_buy.amount
    sell_qty = open_sell.qty + high_sell.qty
    sell_amt = open_sell.amount + high_sell.amount

    shares = prev.shares + buy_qty - sell_qty
    cash = prev.cash - buy_amt + sell_amt

    total_purchase_amt = prev.total_purchase_amt
    if sell_qty > 0 and prev.shares > 0:
        total_purchase_amt -= sell_qty * (total_purchase_amt / prev.shares)
    if buy_qty > 0:
        total_purchase_amt += buy_amt

    state, asset, drawdown, ratio, recovery = _book(
        prev,
        bar,
        index=prev.index + 1,
        v_basis=v_basis,
        cur_upper=cur_upper,
        cur_lower=cur_lower,
        cash=cash,
        shares=shares,
        total_purchase_amt=total_purchase_amt,
        buy_count=int(open_buy.qty > 0) + int(low_buy.qty > 0),
        sell_count=int(open_sell.qty > 0) + int(high_sell.qty > 0),
        buy_amt=buy_amt,
        sell_amt=sell_amt,
        buy_alarm=buy_alarm,
        sell_alarm=sell_alarm,
    )
    row = LedgerRow(
        date=bar.date,
        open=bar.open,
        high=bar.high,
        low=bar.low,
        close=bar.close,
        diff_days=diff_days,
        v_basis=v_basis,
        cur_upper=cur_upper,
        cur_lower=cur_lower,
        unit_shares=unit,
        open_buy=open_buy,
        low_buy=low_buy,
        open_sell=open_sell,
        high_sell=high_sell,
        buy_qty=buy_qty,
        buy_amt=buy_amt,
        sell_qty=sell_qty,
        sell_amt=sell_amt,
        start_cash=prev.cash,
        cash=cash,
        shares=shares,
        eval_amt=shares * bar.close,
        asset=asset,
        total_purchase_amt=total_purchase_amt,
        avg_price=total_purchase_amt / shares if shares > 0 else 0.0,
        stock_ratio=ratio,
        high_asset=state.high_asset,
        drawdown=drawdown,
        recovery_days=recovery,
        buy_alarm=buy_alarm,
        sell_alarm=sell_alarm,
    )
    return state, row


# ---------------------------------------------------------------------------
# summary
# ---------------------------------------------------------------------------

def _run_stats(state: SimState, first: LedgerRow, row: LedgerRow, params: StrategyParams) -> Dict[str, Any]:
    days = state.index + 1
    cagr = calculate_cagr(params.init_cash, row.asset, years_between(first.date, row.date))
    return {
        "max_mdd_rate": state.max_mdd_rate,
        "final_cagr": cagr,
        "cumulative_return": (row.asset - params.init_cash) / params.init_cash * 100.0,
        "risk_reward_ratio": abs(cagr / state.max_mdd_rate) if state.max_mdd_rate != 0 else 0.0,
        "total_buy_count": state.total_buy_count,
        "total_sell_count": state.total_sell_count,
        "total_buy_amt": state.total_buy_amt,
        "total_sell_amt": state.total_sell_amt,
        "total_fee": state.total_fee,
        "total_days": days,
        "avg_stock_ratio": state.sum_stock_ratio / days,
        "max_stock_ratio": state.max_stock_ratio,
        "min_stock_ratio": state.min_stock_ratio,
        "max_recovery_days": state.max_recovery_days,
        "buy_alarm_count": state.buy_alarm_count,
        "sell_alarm_count": state.sell_alarm_count,
    }


def _display(stats: Dict[str, Any], row: LedgerRow) -> Dict[str, Any]:
    out = row.as_dict(digits=2)
    for key, value in stats.items():
        out[key] = round(value, 2) if isinstance(value, float) else value
    return out


def simulate(bars: BarsLike, params: StrategyParams) -> SimOutcome:
    """Run the band rebalancing fold over `bars` (already windowed to the start date).

    Returns EmptySeries when there are no usable bars; raises SimulationError
    for invalid parameters or a non-positive first close.
    """
    series = to_bars(bars)
    if not series:
        return EmptySeries()

    state, row = initial_state(series[0], params)
    rows = [row]
    chart: Dict[str, List[Any]] = {"labels": [], "ev": [], "v_basis": [], "upper": [], "lower": []}
    yearly: List[Dict[str, Any]] = []

    for i in range(len(series)):
        if i > 0:
            state, row = step(state, series[i], params)
            rows.append(row)

        chart["labels"].append(row.date.isoformat())
        chart["ev"].append(round(row.eval_amt))
        chart["v_basis"].append(round(row.v_basis))
        chart["upper"].append(round(row.cur_upper))
        chart["lower"].append(round(row.cur_lower))

        is_year_end = i == len(series) - 1 or series[i + 1].date.year != row.date.year
        if is_year_end:
            yearly.append(_display(_run_stats(state, rows[0], row, params), row))

    summary = _display(_run_stats(state, rows[0], rows[-1], params), rows[-1])
    return SimulationResult(rows=rows, chart=chart, summary=summary, yearly=yearly, max_mdd_rate=state.max_mdd_rate)
