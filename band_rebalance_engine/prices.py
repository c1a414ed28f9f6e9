from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, List, Mapping, Union

import numpy as np
import pandas as pd

PRICE_COLUMNS = ("open", "high", "low", "close")

# legacy store column names -> canonical
_COLUMN_ALIASES = {
    "open_price": "open",
    "high_price": "high",
    "low_price": "low",
    "close_price": "close",
}


@dataclass(frozen=True)
class PriceBar:
    date: date
    open: float
    high: float
    low: float
    close: float


BarsLike = Union[pd.DataFrame, Iterable[Union[PriceBar, Mapping[str, Any]]]]


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()


def parse_date(value: Any) -> date:
    """Public date coercion (YYYY-MM-DD strings, date or datetime)."""
    return _as_date(value)


def _frame_from(data: BarsLike) -> pd.DataFrame:
    if isinstance(data, pd.DataFrame):
        return data.copy()
    records = []
    for item in data:
        if isinstance(item, PriceBar):
            records.append(
                {"date": item.date, "open": item.open, "high": item.high, "low": item.low, "close": item.close}
            )
        else:
            records.append(dict(item))
    return pd.DataFrame.from_records(records)


def _usable(bar: PriceBar) -> bool:
    prices = (bar.open, bar.high, bar.low, bar.close)
    return all(isinstance(p, (int, float)) and math.isfinite(p) and p > 0 for p in prices)


def to_bars(data: BarsLike) -> List[PriceBar]:
    """Normalize raw rows into an ascending, date-unique list of PriceBar.

    Rows with an unparsable date or price (or a non-finite or non-positive price)
    are dropped. Duplicate dates keep the last row.
    """
    if isinstance(data, list) and all(isinstance(b, PriceBar) for b in data):
        bars = data
        ordered = all(bars[i].date < bars[i + 1].date for i in range(len(bars) - 1))
        if ordered and all(_usable(b) for b in bars):
            return list(bars)

    df = _frame_from(data)
    if df.empty:
        return []
    df = df.rename(columns=_COLUMN_ALIASES)
    missing = [c for c in ("date",) + PRICE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"price rows missing columns: {missing}")

    df = df[["date", *PRICE_COLUMNS]].copy()
    df["date"] = pd.to_datetime(df["date"].astype(str).str[:10], format="%Y-%m-%d", errors="coerce")
    for col in PRICE_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.dropna(subset=["date", *PRICE_COLUMNS])
    prices = df[list(PRICE_COLUMNS)]
    df = df[(np.isfinite(prices) & (prices > 0)).all(axis=1)]
    if df.empty:
        return []
    df = df.sort_values("date", kind="mergesort").drop_duplicates(subset=["date"], keep="last")

    o = np.asarray(df["open"], dtype=float)
    h = np.asarray(df["high"], dtype=float)
    l = np.asarray(df["low"], dtype=float)
    c = np.asarray(df["close"], dtype=float)
    dates = [ts.date() for ts in df["date"]]
    return [
        PriceBar(date=d, open=float(o[i]), high=float(h[i]), low=float(l[i]), close=float(c[i]))
        for i, d in enumerate(dates)
    ]


def days_between(prev: date, cur: date) -> int:
    """Calendar days from prev to cur (weekend/holiday gaps included)."""
    return (cur - prev).days


def window(bars: List[PriceBar], start: Any = None, end: Any = None) -> List[PriceBar]:
    s = _as_date(start) if start else None
    e = _as_date(end) if end else None
    return [b for b in bars if (s is None or b.date >= s) and (e is None or b.date <= e)]
