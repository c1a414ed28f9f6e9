"""Cycle tracker and band rebalancing simulator (LONG only, daily bars).

Core idea:
- cycle: classify a daily series into alternating up/down regimes from
  running pivots (drop of 15% from r_max -> DOWN, rise of 30% from r_min -> UP)
- simulator: keep a stock allocation around a compounding target (v_basis)
    * buy along a descending ladder when the position falls below the lower band
    * sell along an ascending ladder above the upper band
    * buys pay 0.07%, sells are free
- batch: re-run the simulator for every start date in a window and persist
  one summary row per run
- analysis: buy-and-hold drawdown, recovery and CAGR statistics per ticker
"""

__all__ = [
    "config",
    "settings",
    "prices",
    "metrics",
    "db",
    "cycle",
    "simulator",
    "batch",
    "analysis",
    "notifier",
]
