from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .simulator import StrategyParams

PathLike = Union[str, Path]


def load_yaml(path: PathLike) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def load_settings(path: PathLike = "config/settings.yaml") -> Dict[str, Any]:
    """Notifier channels, database path and optional inline `strategy` section."""
    return load_yaml(path)


def _frac(cfg: Dict[str, Any], key: str, pct_key: str, default: float) -> float:
    """Read a fraction from `key`, or from a percent-style `pct_key` (50 -> 0.5)."""
    if cfg.get(key) is not None:
        return float(cfg[key])
    if cfg.get(pct_key) is not None:
        return float(cfg[pct_key]) / 100.0
    return default


def strategy_from_dict(strat: Dict[str, Any]) -> StrategyParams:
    return StrategyParams(
        init_cash=float(strat.get("init_cash", 10_000_000) or 10_000_000),
        init_stock_pct=_frac(strat, "init_stock_pct", "init_stock", 0.5),
        target_annual_rate=_frac(strat, "target_annual_rate", "target_rate", 0.10),
        upper_band_pct=_frac(strat, "upper_band_pct", "upper_rate", 0.10),
        lower_band_pct=_frac(strat, "lower_band_pct", "lower_rate", 0.10),
        unit_gap_pct=_frac(strat, "unit_gap_pct", "unit_gap", 0.05),
        alarm_buy_pct=_frac(strat, "alarm_buy_pct", "alarm_buy", 0.0),
        alarm_sell_pct=_frac(strat, "alarm_sell_pct", "alarm_sell", 0.0),
    )


def load_strategy(
    settings: Optional[Dict[str, Any]] = None,
    path: PathLike = "config/strategy.yaml",
) -> Tuple[str, StrategyParams]:
    """Return (strategy_code, params) from the strategy file, else the settings section."""
    strat_file = Path(path)
    strat = load_yaml(strat_file) if strat_file.exists() else (settings or {}).get("strategy", {})
    strat = strat or {}
    code = str(strat.get("strategy_code", "default") or "default")
    return code, strategy_from_dict(strat)


def load_strategy_list(path: PathLike) -> List[Dict[str, Any]]:
    """Multi-strategy file: `strategies: [{strategy_code, ticker, ...params}]`."""
    data = load_yaml(path)
    out: List[Dict[str, Any]] = []
    for item in data.get("strategies", []) or []:
        if not isinstance(item, dict) or not item.get("ticker"):
            continue
        out.append(
            {
                "strategy_code": str(item.get("strategy_code") or item["ticker"]),
                "ticker": str(item["ticker"]),
                "params": strategy_from_dict(item),
            }
        )
    return out
