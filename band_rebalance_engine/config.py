from __future__ import annotations

import os
from dataclasses import dataclass

def _env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default

def _env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default

def _env_str(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v not in (None, "") else default

def _env_bool(key: str, default: bool = True) -> bool:
    v = os.getenv(key)
    if v is None or v == "":
        return default
    return v.strip().lower() not in ("0", "false", "no", "off")

@dataclass(frozen=True)
class EngineConfig:
    # Data
    db_path: str = _env_str("STOCK_DB_PATH", "market_data.db")
    table: str = _env_str("STOCK_DB_TABLE", "daily_price")
    result_table: str = _env_str("BATCH_RESULT_TABLE", "simulation_batch_result")

    # Cycle tracker thresholds (percent)
    cycle_upper_pct: float = _env_float("CYCLE_UPPER_PCT", 30.0)
    cycle_lower_pct: float = _env_float("CYCLE_LOWER_PCT", 15.0)

    # Recent-history view length (bars)
    recent_history_bars: int = _env_int("SIM_RECENT_HISTORY_BARS", 14)

    # Batch start/finish notices through the notifier
    batch_notify: bool = _env_bool("BATCH_NOTIFY", True)

    settings_path: str = _env_str("ENGINE_SETTINGS_PATH", "config/settings.yaml")
    strategy_path: str = _env_str("ENGINE_STRATEGY_PATH", "config/strategy.yaml")
