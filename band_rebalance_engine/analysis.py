"""Per-ticker buy-and-hold performance analysis over daily closes.

For one close series:
- drawdown from the running peak: worst and average, plus how many times
  each threshold (10%..60%) was breached (one count per underwater episode)
- recovery days between successive new highs, with a bucketed distribution
- rolling CAGR over two look-back windows (years), min/max/median
- trailing period CAGRs (total, 30y .. 1m) ending at the last bar
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .batch import PriceSource
from .metrics import calculate_cagr, median, years_between
from .prices import BarsLike, PriceBar, to_bars

DRAWDOWN_THRESHOLDS = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6)

# (label, years); sub-year periods are shifted by whole months
PERIODS = (
    ("30y", 30), ("25y", 25), ("20y", 20), ("15y", 15), ("10y", 10), ("7y", 7),
    ("5y", 5), ("3y", 3), ("1y", 1), ("6m", 0.5), ("3m", 0.25), ("1m", 1 / 12),
)

# a trailing period needs a bar within this many days after its start
PERIOD_TOLERANCE_DAYS = 15


def _years_back(d: date, years: int) -> date:
    try:
        return d.replace(year=d.year - years)
    except ValueError:
        # Feb 29 into a non-leap year
        return date(d.year - years, 3, 1)


def _months_back(d: date, months: int) -> date:
    total = d.year * 12 + (d.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    return date(year, month, min(d.day, calendar.monthrange(year, month)[1]))


def _recovery_bucket(days: int) -> str:
    if days <= 30:
        return "under30"
    if days <= 90:
        return "under90"
    if days <= 180:
        return "under180"
    if days <= 365:
        return "under365"
    return "over365"


def _rolling_cagrs(bars: Sequence[PriceBar], years: int) -> List[Optional[float]]:
    """CAGR from the first bar on/after `date - years` to each bar.

    A bar only gets a value when the window start lands within `years + 1`
    days of an actual bar; otherwise the entry is None.
    """
    out: List[Optional[float]] = []
    j = 0
    for i, cur in enumerate(bars):
        anchor = _years_back(cur.date, years)
        while j < i and bars[j].date < anchor:
            j += 1
        past = bars[j]
        if past.date >= anchor and (past.date - anchor).days < years + 1:
            out.append(calculate_cagr(past.close, cur.close, years))
        else:
            out.append(None)
    return out


def _rolling_stats(values: Iterable[Optional[float]], years: int) -> Dict[str, Any]:
    vals = [v for v in values if v is not None]
    return {
        "years": years,
        "min": min(vals) if vals else None,
        "max": max(vals) if vals else None,
        "med": median(vals),
    }


def _period_cagrs(bars: Sequence[PriceBar]) -> Dict[str, Optional[float]]:
    first, last = bars[0], bars[-1]
    out: Dict[str, Optional[float]] = {
        "total": calculate_cagr(first.close, last.close, years_between(first.date, last.date)),
    }
    for label, years in PERIODS:
        if years < 1:
            anchor = _months_back(last.date, int(round(years * 12)))
        else:
            anchor = _years_back(last.date, int(years))
        past = next((b for b in bars if b.date >= anchor), None)
        if past is not None and past.date <= anchor + timedelta(days=PERIOD_TOLERANCE_DAYS):
            out[label] = calculate_cagr(past.close, last.close, years)
        else:
            out[label] = None
    return out


def analyze_ticker(ticker: str, bars: BarsLike, rolling_years: Tuple[int, int] = (10, 5)) -> Dict[str, Any]:
    series = to_bars(bars)
    if len(series) < 2:
        return {"ticker": ticker, "error": "insufficient_data"}

    c = np.asarray([b.close for b in series], dtype=float)
    peak = np.maximum.accumulate(c)
    dd = (c - peak) / peak

    dd_counts = {th: 0 for th in DRAWDOWN_THRESHOLDS}
    underwater = {th: False for th in DRAWDOWN_THRESHOLDS}
    recovery_days: List[int] = []
    recovery_dist = {"under30": 0, "under90": 0, "under180": 0, "under365": 0, "over365": 0}
    last_peak = series[0].date

    for i, bar in enumerate(series):
        if i == 0 or c[i] > peak[i - 1]:
            if i > 0:
                days = (bar.date - last_peak).days
                if days > 0:
                    recovery_days.append(days)
                    recovery_dist[_recovery_bucket(days)] += 1
            last_peak = bar.date
            underwater = {th: False for th in DRAWDOWN_THRESHOLDS}
        for th in DRAWDOWN_THRESHOLDS:
            if dd[i] <= -th and not underwater[th]:
                dd_counts[th] += 1
                underwater[th] = True

    rp1, rp2 = rolling_years
    roll1 = _rolling_cagrs(series, rp1)
    roll2 = _rolling_cagrs(series, rp2)

    base = c[0]
    history = [
        {
            "d": bar.date.isoformat(),
            "y": round(float((c[i] - base) / base * 100.0), 2),
            "m": round(float(dd[i] * 100.0), 2),
            "r1": roll1[i],
            "r2": roll2[i],
        }
        for i, bar in enumerate(series)
    ]

    return {
        "ticker": ticker,
        "period": {"start": series[0].date.isoformat(), "end": series[-1].date.isoformat()},
        "dd": {"max": float(dd.min() * 100.0), "avg": float(dd.mean() * 100.0)},
        "dd_counts": {f"{int(round(th * 100))}": n for th, n in dd_counts.items()},
        "recovery": {
            "max": max(recovery_days) if recovery_days else 0,
            "avg": float(np.mean(recovery_days)) if recovery_days else 0.0,
        },
        "recovery_dist": recovery_dist,
        "rolling": {"r1": _rolling_stats(roll1, rp1), "r2": _rolling_stats(roll2, rp2)},
        "period_cagrs": _period_cagrs(series),
        "history": history,
    }


def analyze_tickers(
    tickers: Iterable[str],
    price_source: PriceSource,
    start: Optional[str] = None,
    end: Optional[str] = None,
    rolling_years: Tuple[int, int] = (10, 5),
) -> List[Dict[str, Any]]:
    """Analyze several tickers; a failed price read yields an error entry, not an abort."""
    results: List[Dict[str, Any]] = []
    for ticker in tickers:
        try:
            bars = price_source.fetch_bars(ticker, start, end)
        except Exception as exc:
            logging.exception("analyze %s: price read failed", ticker)
            results.append({"ticker": ticker, "error": f"price_read_failed: {exc}"})
            continue
        results.append(analyze_ticker(ticker, bars, rolling_years=rolling_years))
    return results
