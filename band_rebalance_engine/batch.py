"""Sliding start-date batch over the rebalancing simulator.

For every distinct trading date in [bulk_start, bulk_end] the simulator is run
from that date to a common `target_end`, and one summary row per run is
persisted. Existing rows for the same strategy/date range are deleted first
(delete-then-insert, not transactional; the batch is idempotent, re-run it
after a crash).

Items run strictly sequentially. A per-date failure (price read, simulation,
storage write) is logged and recorded in `failures`; the loop continues.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from .db import BatchResultRow
from .notifier import maybe_notify
from .prices import PriceBar, parse_date
from .simulator import EmptySeries, SimulationError, StrategyParams, simulate


class PriceSource(Protocol):
    def fetch_bars(self, ticker: str, start: Optional[str] = None, end: Optional[str] = None) -> List[PriceBar]:
        ...


class ResultStorage(Protocol):
    def delete_results(self, strategy_code: str, start: str, end: str) -> int:
        ...

    def insert_result(self, row: BatchResultRow) -> None:
        ...

    def start_job(self, name: str) -> int:
        ...

    def finish_job(self, job_id: int, status: str, message: str = "") -> None:
        ...


def _iso(value: Any) -> str:
    return parse_date(value).isoformat()


class BatchRunner:
    def __init__(
        self,
        price_source: PriceSource,
        storage: ResultStorage,
        settings: Optional[Dict[str, Any]] = None,
        notify: bool = True,
    ):
        self.price_source = price_source
        self.storage = storage
        self.settings = settings or {}
        self.notify = notify
        self.failures: List[Tuple[str, str]] = []
        self.skipped: List[str] = []

    def _notify(self, message: str) -> None:
        if self.notify:
            maybe_notify(self.settings, message)

    def run(
        self,
        ticker: str,
        bulk_start: Any,
        bulk_end: Any,
        target_end: Any,
        params: StrategyParams,
        strategy_code: Optional[str] = None,
    ) -> int:
        """Run one simulation per trading date in the window; return persisted row count."""
        code = strategy_code or ticker
        start_s, end_s, target_s = _iso(bulk_start), _iso(bulk_end), _iso(target_end)
        self.failures = []
        self.skipped = []

        window = self.price_source.fetch_bars(ticker, start_s, end_s)
        dates = sorted({bar.date.isoformat() for bar in window})

        removed = self.storage.delete_results(code, start_s, end_s)
        job_id = self.storage.start_job(f"batch:{code}")
        logging.info(
            "batch %s ticker=%s window=%s~%s target_end=%s dates=%d removed=%d",
            code, ticker, start_s, end_s, target_s, len(dates), removed,
        )
        self._notify(f"[batch] start {code} {ticker} {start_s}~{end_s} -> {target_s} dates={len(dates)}")

        saved = 0
        for day in dates:
            try:
                bars = self.price_source.fetch_bars(ticker, day, target_s)
                outcome = simulate(bars, params)
                if isinstance(outcome, EmptySeries):
                    logging.info("batch %s skip %s: %s", code, day, outcome.reason)
                    self.skipped.append(day)
                    continue
                summary = outcome.summary
                self.storage.insert_result(
                    BatchResultRow(
                        strategy_code=code,
                        start_date=day,
                        end_date=outcome.rows[-1].date.isoformat(),
                        end_asset=summary["asset"],
                        end_stock_rate=summary["stock_ratio"],
                        max_mdd_rate=summary["max_mdd_rate"],
                        average_price=summary["avg_price"],
                    )
                )
                saved += 1
            except Exception as exc:
                logging.exception("batch %s failed for start %s", code, day)
                self.failures.append((day, str(exc)))
                continue

        status = "SUCCESS" if not self.failures else "PARTIAL"
        message = f"dates={len(dates)} saved={saved} skipped={len(self.skipped)} errors={len(self.failures)}"
        self.storage.finish_job(job_id, status, message)
        logging.info("batch %s %s %s", code, status, message)
        self._notify(f"[batch] completed {code} {status} {message}")
        return saved


def _ticker_stats(bars: List[PriceBar]) -> Dict[str, Any]:
    last = bars[-1]
    return {
        "max": max(b.close for b in bars),
        "last": last.close,
        "date": last.date.isoformat(),
    }


def simulate_strategies(
    strategies: Iterable[Dict[str, Any]],
    price_source: PriceSource,
    start: Any = None,
    end: Any = None,
    view: str = "detail",
    recent_bars: int = 14,
) -> List[Dict[str, Any]]:
    """Run several strategies, loading each ticker's bars once.

    Each strategy is a dict with `strategy_code`, `ticker` and `params`
    (StrategyParams). `view` selects the payload: "detail" (rows + chart),
    "chart" (chart arrays + recent history) or "recent" (recent history only).
    """
    strategies = list(strategies)
    start_s = _iso(start) if start else None
    end_s = _iso(end) if end else None

    price_map: Dict[str, List[PriceBar]] = {}
    for strat in strategies:
        ticker = strat["ticker"]
        if ticker not in price_map:
            price_map[ticker] = price_source.fetch_bars(ticker, start_s, end_s) or []

    results: List[Dict[str, Any]] = []
    for strat in strategies:
        code = strat.get("strategy_code") or strat["ticker"]
        bars = price_map[strat["ticker"]]
        if not bars:
            results.append({"strategy_code": code, "success": False, "message": "no_data"})
            continue

        try:
            outcome = simulate(bars, strat["params"])
        except SimulationError as exc:
            logging.warning("simulate %s failed: %s", code, exc)
            results.append({"strategy_code": code, "success": False, "message": str(exc)})
            continue
        if isinstance(outcome, EmptySeries):
            results.append({"strategy_code": code, "success": False, "message": outcome.reason})
            continue

        item: Dict[str, Any] = {
            "strategy_code": code,
            "success": True,
            "ticker_stats": _ticker_stats(bars),
            "summary": outcome.summary,
        }
        if view == "detail":
            item["rows"] = [r.as_dict(digits=2) for r in outcome.rows]
            item["chart"] = outcome.chart
        elif view == "chart":
            item["chart"] = outcome.chart_arrays()
            item["recent_history"] = outcome.recent_history(recent_bars)
        elif view == "recent":
            item["recent_history"] = outcome.recent_history(recent_bars)
        results.append(item)
    return results
