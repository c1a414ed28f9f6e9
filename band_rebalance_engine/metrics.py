from __future__ import annotations

from datetime import date
from typing import Optional, Sequence

import numpy as np


def calculate_cagr(start_value: float, end_value: float, years: float) -> float:
    """Compound annual growth rate in percent. 0.0 for non-positive inputs."""
    if years <= 0 or start_value <= 0 or end_value <= 0:
        return 0.0
    return (float(end_value / start_value) ** (1.0 / years) - 1.0) * 100.0


def median(values: Sequence[float]) -> Optional[float]:
    if len(values) == 0:
        return None
    return float(np.median(np.asarray(values, dtype=float)))


def years_between(start: date, end: date) -> float:
    return (end - start).days / 365.25


def stock_ratio(shares: float, close: float, asset: float) -> float:
    """Stock weight of the position in percent (0 when flat or asset is 0)."""
    if shares <= 0 or asset <= 0:
        return 0.0
    return shares * close / asset * 100.0
