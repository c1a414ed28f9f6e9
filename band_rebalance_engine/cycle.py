"""Pivot/cycle tracker over daily bars.

Classifies a price series into alternating up/down regimes:
- pivots r_max/r_min are seeded from the first bar's high/low
- a drop of `lower_pct` from r_max turns the cycle DOWN (checked first)
- a rise of `upper_pct` from r_min turns the cycle UP
- on UP->DOWN r_min is reseeded from the bar low; on DOWN->UP r_max from the bar high
- otherwise the pivots only ratchet outward ("renewed")
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, List, Optional

from .prices import BarsLike, parse_date, to_bars


class CycleStatus(str, Enum):
    UNSET = "-"
    UP = "up"
    DOWN = "down"


@dataclass
class CycleState:
    running_max: float
    running_min: float
    historic_max: Optional[float] = None
    status: CycleStatus = CycleStatus.UNSET


@dataclass(frozen=True)
class CycleRow:
    date: date
    open: float
    high: float
    low: float
    close: float
    historic_max: float
    drop_from_hmax: float
    running_max: float
    running_min: float
    close_from_rmax: float
    close_from_rmin: float
    min_from_rmax: float
    max_from_rmin: float
    renewed_high: bool
    renewed_low: bool
    turn_to_up: bool
    turn_to_down: bool
    cycle_status: CycleStatus

    def as_dict(self) -> dict:
        d = dict(self.__dict__)
        d["date"] = self.date.isoformat()
        d["cycle_status"] = self.cycle_status.value
        return d


def _pct(value: float, base: float) -> float:
    return (value - base) / base * 100.0


def track_cycles(
    bars: BarsLike,
    upper_pct: float = 30.0,
    lower_pct: float = 15.0,
    start: Any = None,
) -> List[CycleRow]:
    series = to_bars(bars)
    if not series:
        return []

    start_d = parse_date(start) if start else None
    state = CycleState(running_max=series[0].high, running_min=series[0].low)
    out: List[CycleRow] = []

    for bar in series:
        if start_d is not None and bar.date < start_d:
            continue

        if state.historic_max is None or bar.high > state.historic_max:
            state.historic_max = bar.high

        judge_drop = _pct(bar.low, state.running_max)
        judge_rise = _pct(bar.high, state.running_min)
        prev_status = state.status
        turn_to_down = turn_to_up = False

        if state.status != CycleStatus.DOWN and abs(judge_drop) >= lower_pct:
            state.status = CycleStatus.DOWN
            turn_to_down = True
        elif state.status != CycleStatus.UP and abs(judge_rise) >= upper_pct:
            state.status = CycleStatus.UP
            turn_to_up = True

        renewed_high = renewed_low = False
        if prev_status == CycleStatus.UP and state.status == CycleStatus.DOWN:
            state.running_min = bar.low
        elif prev_status == CycleStatus.DOWN and state.status == CycleStatus.UP:
            state.running_max = bar.high
        else:
            if bar.high > state.running_max:
                state.running_max = bar.high
                renewed_high = True
            if bar.low < state.running_min:
                state.running_min = bar.low
                renewed_low = True

        hmax = state.historic_max
        out.append(
            CycleRow(
                date=bar.date,
                open=bar.open,
                high=bar.high,
                low=bar.low,
                close=bar.close,
                historic_max=hmax,
                drop_from_hmax=round(_pct(bar.close, hmax), 2),
                running_max=state.running_max,
                running_min=state.running_min,
                close_from_rmax=round(_pct(bar.close, state.running_max), 2),
                close_from_rmin=round(_pct(bar.close, state.running_min), 2),
                min_from_rmax=round(_pct(bar.low, state.running_max), 2),
                max_from_rmin=round(_pct(bar.high, state.running_min), 2),
                renewed_high=renewed_high,
                renewed_low=renewed_low,
                turn_to_up=turn_to_up,
                turn_to_down=turn_to_down,
                cycle_status=state.status,
            )
        )
    return out
