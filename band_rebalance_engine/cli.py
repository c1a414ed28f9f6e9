from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict

from .analysis import analyze_tickers
from .batch import BatchRunner, simulate_strategies
from .config import EngineConfig
from .cycle import track_cycles
from .db import SQLitePriceSource, SQLiteResultStore, ensure_schema, fetch_ohlc
from .settings import load_settings, load_strategy, load_strategy_list
from .simulator import EmptySeries, SimulationError, simulate

def _p(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))

def _cfg(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig(db_path=args.db, table=args.table)

def cmd_cycle(args: argparse.Namespace) -> None:
    cfg = _cfg(args)
    # fetch from the beginning so the pivots are seeded the same way for any --start
    bars = fetch_ohlc(cfg.db_path, args.code, table=cfg.table, end=args.end)
    upper = cfg.cycle_upper_pct if args.upper is None else args.upper
    lower = cfg.cycle_lower_pct if args.lower is None else args.lower
    rows = track_cycles(bars, upper_pct=upper, lower_pct=lower, start=args.start)
    _p({"ok": True, "code": args.code, "n": len(rows), "rows": [r.as_dict() for r in rows]})

def cmd_simulate(args: argparse.Namespace) -> None:
    cfg = _cfg(args)
    _code, params = load_strategy(load_settings(cfg.settings_path), path=args.strategy or cfg.strategy_path)
    bars = fetch_ohlc(cfg.db_path, args.code, table=cfg.table, start=args.start, end=args.end)
    try:
        outcome = simulate(bars, params)
    except SimulationError as exc:
        _p({"ok": False, "error": "invalid_params", "message": str(exc)})
        return
    if isinstance(outcome, EmptySeries):
        _p({"ok": False, "error": outcome.reason, "code": args.code})
        return

    out: Dict[str, Any] = {"ok": True, "code": args.code, "summary": outcome.summary, "yearly": outcome.yearly}
    if args.view == "detail":
        out["rows"] = [r.as_dict(digits=2) for r in outcome.rows]
        out["chart"] = outcome.chart
    elif args.view == "chart":
        out["chart"] = outcome.chart_arrays()
    elif args.view == "recent":
        out["recent_history"] = outcome.recent_history(cfg.recent_history_bars)
    _p(out)

def cmd_batch(args: argparse.Namespace) -> None:
    cfg = _cfg(args)
    settings = load_settings(cfg.settings_path)
    strategy_code, params = load_strategy(settings, path=args.strategy or cfg.strategy_path)
    ensure_schema(cfg.db_path, table=cfg.table, result_table=cfg.result_table)

    runner = BatchRunner(
        SQLitePriceSource(cfg.db_path, table=cfg.table),
        SQLiteResultStore(cfg.db_path, table=cfg.result_table),
        settings=settings,
        notify=cfg.batch_notify,
    )
    saved = runner.run(
        args.code,
        args.bulk_start,
        args.bulk_end,
        args.target_end,
        params,
        strategy_code=args.strategy_code or strategy_code,
    )
    _p({
        "ok": True,
        "code": args.code,
        "saved": saved,
        "skipped": runner.skipped,
        "failures": [{"start_date": d, "error": e} for d, e in runner.failures],
    })

def cmd_simulate_many(args: argparse.Namespace) -> None:
    cfg = _cfg(args)
    strategies = load_strategy_list(args.file)
    if not strategies:
        _p({"ok": False, "error": "no_strategies"})
        return
    results = simulate_strategies(
        strategies,
        SQLitePriceSource(cfg.db_path, table=cfg.table),
        start=args.start,
        end=args.end,
        view=args.view,
        recent_bars=cfg.recent_history_bars,
    )
    _p({"ok": True, "results": results})

def cmd_analyze(args: argparse.Namespace) -> None:
    cfg = _cfg(args)
    results = analyze_tickers(
        args.codes,
        SQLitePriceSource(cfg.db_path, table=cfg.table),
        start=args.start,
        end=args.end,
        rolling_years=(args.rolling1, args.rolling2),
    )
    if not args.history:
        for item in results:
            item.pop("history", None)
    _p({"ok": True, "results": results})

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="band_rebalance_engine", description="Cycle tracker and band rebalancing simulator (daily bars).")
    p.add_argument("--db", default=EngineConfig.db_path, help="SQLite DB path (default: STOCK_DB_PATH or market_data.db)")
    p.add_argument("--table", default=EngineConfig.table, help="Price table (default: daily_price)")

    sub = p.add_subparsers(dest="cmd", required=True)

    p_cyc = sub.add_parser("cycle", help="Pivot/cycle annotation for one code")
    p_cyc.add_argument("--code", required=True)
    p_cyc.add_argument("--start", default=None, help="First date to emit (YYYY-MM-DD)")
    p_cyc.add_argument("--end", default=None)
    p_cyc.add_argument("--upper", type=float, default=None, help="Rise threshold percent (default: config, 30)")
    p_cyc.add_argument("--lower", type=float, default=None, help="Drop threshold percent (default: config, 15)")
    p_cyc.set_defaults(func=cmd_cycle)

    p_sim = sub.add_parser("simulate", help="Band rebalancing simulation for one code")
    p_sim.add_argument("--code", required=True)
    p_sim.add_argument("--start", default=None)
    p_sim.add_argument("--end", default=None)
    p_sim.add_argument("--strategy", default=None, help="Strategy YAML (default: config/strategy.yaml)")
    p_sim.add_argument("--view", choices=("detail", "chart", "recent", "summary"), default="summary")
    p_sim.set_defaults(func=cmd_simulate)

    p_bat = sub.add_parser("batch", help="Re-run the simulation for every start date in a window and persist summaries")
    p_bat.add_argument("--code", required=True)
    p_bat.add_argument("--bulk-start", required=True)
    p_bat.add_argument("--bulk-end", required=True)
    p_bat.add_argument("--target-end", required=True)
    p_bat.add_argument("--strategy", default=None)
    p_bat.add_argument("--strategy-code", default=None)
    p_bat.set_defaults(func=cmd_batch)

    p_many = sub.add_parser("simulate-many", help="Run several strategies from one YAML file")
    p_many.add_argument("--file", required=True)
    p_many.add_argument("--start", default=None)
    p_many.add_argument("--end", default=None)
    p_many.add_argument("--view", choices=("detail", "chart", "recent", "summary"), default="summary")
    p_many.set_defaults(func=cmd_simulate_many)

    p_an = sub.add_parser("analyze", help="Buy-and-hold drawdown/recovery/CAGR analysis per code")
    p_an.add_argument("--codes", nargs="+", required=True)
    p_an.add_argument("--start", default=None)
    p_an.add_argument("--end", default=None)
    p_an.add_argument("--rolling1", type=int, default=10, help="First rolling CAGR window in years")
    p_an.add_argument("--rolling2", type=int, default=5, help="Second rolling CAGR window in years")
    p_an.add_argument("--history", action="store_true", help="Include the per-day history series")
    p_an.set_defaults(func=cmd_analyze)

    return p

def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    p = build_parser()
    args = p.parse_args()
    args.func(args)

if __name__ == "__main__":
    main()
