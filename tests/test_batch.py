from datetime import date, timedelta

import pytest

from band_rebalance_engine.batch import BatchRunner, simulate_strategies
from band_rebalance_engine.prices import PriceBar, window
from band_rebalance_engine.simulator import StrategyParams

PARAMS = StrategyParams(
    init_cash=10_000,
    init_stock_pct=0.5,
    target_annual_rate=0.1,
    upper_band_pct=0.1,
    lower_band_pct=0.1,
    unit_gap_pct=0.05,
)


def _bars(n=10, start=date(2024, 1, 1)):
    return [
        PriceBar(date=start + timedelta(days=i), open=100 + i, high=102 + i, low=98 + i, close=100 + i)
        for i in range(n)
    ]


class FakeSource:
    def __init__(self, bars, empty_for=(), fail_for=()):
        self.bars = bars
        self.empty_for = set(empty_for)
        self.fail_for = set(fail_for)
        self.calls = []

    def fetch_bars(self, ticker, start=None, end=None):
        self.calls.append((ticker, start, end))
        if start in self.fail_for:
            raise RuntimeError(f"read failed for {start}")
        if start in self.empty_for:
            return []
        return window(self.bars, start, end)


class FakeStorage:
    def __init__(self):
        self.events = []
        self.rows = []
        self.jobs = {}

    def delete_results(self, strategy_code, start, end):
        self.events.append(("delete", strategy_code, start, end))
        return 0

    def insert_result(self, row):
        self.events.append(("insert", row.start_date))
        self.rows.append(row)

    def start_job(self, name):
        job_id = len(self.jobs) + 1
        self.jobs[job_id] = {"name": name, "status": "RUNNING"}
        return job_id

    def finish_job(self, job_id, status, message=""):
        self.jobs[job_id].update(status=status, message=message)


def test_one_row_per_start_date_and_empty_dates_skipped():
    source = FakeSource(_bars(), empty_for={"2024-01-02"})
    storage = FakeStorage()
    runner = BatchRunner(source, storage, notify=False)

    saved = runner.run("SPY", "2024-01-01", "2024-01-03", "2024-01-10", PARAMS, strategy_code="qg1")

    assert saved == 2
    assert [r.start_date for r in storage.rows] == ["2024-01-01", "2024-01-03"]
    assert runner.skipped == ["2024-01-02"]
    assert runner.failures == []
    assert storage.jobs[1]["status"] == "SUCCESS"
    assert storage.jobs[1]["name"] == "batch:qg1"


def test_delete_runs_before_inserts():
    storage = FakeStorage()
    BatchRunner(FakeSource(_bars()), storage, notify=False).run(
        "SPY", "2024-01-01", "2024-01-03", "2024-01-10", PARAMS, strategy_code="qg1"
    )

    assert storage.events[0] == ("delete", "qg1", "2024-01-01", "2024-01-03")
    assert all(e[0] == "insert" for e in storage.events[1:])


def test_failure_is_recorded_and_loop_continues():
    source = FakeSource(_bars(), fail_for={"2024-01-02"})
    storage = FakeStorage()
    runner = BatchRunner(source, storage, notify=False)

    saved = runner.run("SPY", "2024-01-01", "2024-01-03", "2024-01-10", PARAMS)

    assert saved == 2
    assert len(runner.failures) == 1
    assert runner.failures[0][0] == "2024-01-02"
    assert "read failed" in runner.failures[0][1]
    assert storage.jobs[1]["status"] == "PARTIAL"


def test_row_contents_match_simulation_end():
    storage = FakeStorage()
    BatchRunner(FakeSource(_bars()), storage, notify=False).run(
        "SPY", date(2024, 1, 1), date(2024, 1, 1), date(2024, 1, 10), PARAMS
    )

    (row,) = storage.rows
    assert row.strategy_code == "SPY"
    assert row.start_date == "2024-01-01"
    assert row.end_date == "2024-01-10"
    assert row.end_asset > 0
    assert 0 <= row.end_stock_rate <= 100
    assert row.max_mdd_rate <= 0
    assert row.average_price > 0


def test_window_without_trading_dates_saves_nothing():
    storage = FakeStorage()
    runner = BatchRunner(FakeSource(_bars()), storage, notify=False)

    assert runner.run("SPY", "2023-01-01", "2023-01-31", "2024-01-10", PARAMS) == 0
    assert storage.rows == []
    assert storage.jobs[1]["status"] == "SUCCESS"


def test_notifier_receives_start_and_completion(monkeypatch):
    sent = []
    monkeypatch.setattr("band_rebalance_engine.batch.maybe_notify", lambda settings, msg: sent.append(msg) or True)

    BatchRunner(FakeSource(_bars()), FakeStorage(), settings={}, notify=True).run(
        "SPY", "2024-01-01", "2024-01-02", "2024-01-10", PARAMS
    )

    assert len(sent) == 2
    assert sent[0].startswith("[batch] start")
    assert "SUCCESS" in sent[1]


def _strategies():
    return [
        {"strategy_code": "a", "ticker": "SPY", "params": PARAMS},
        {"strategy_code": "b", "ticker": "SPY", "params": PARAMS},
        {"strategy_code": "c", "ticker": "NONE", "params": PARAMS},
    ]


class MultiSource(FakeSource):
    def fetch_bars(self, ticker, start=None, end=None):
        self.calls.append((ticker, start, end))
        return window(self.bars, start, end) if ticker == "SPY" else []


def test_simulate_strategies_loads_each_ticker_once():
    source = MultiSource(_bars())
    results = simulate_strategies(_strategies(), source, view="summary")

    assert [c[0] for c in source.calls] == ["SPY", "NONE"]
    assert [r["success"] for r in results] == [True, True, False]
    assert results[2] == {"strategy_code": "c", "success": False, "message": "no_data"}
    assert results[0]["ticker_stats"] == {"max": 109, "last": 109, "date": "2024-01-10"}
    assert "rows" not in results[0]


@pytest.mark.parametrize(
    "view,keys",
    [
        ("detail", {"rows", "chart"}),
        ("chart", {"chart", "recent_history"}),
        ("recent", {"recent_history"}),
    ],
)
def test_simulate_strategies_views(view, keys):
    results = simulate_strategies(_strategies()[:1], MultiSource(_bars()), view=view, recent_bars=3)
    item = results[0]

    assert keys <= set(item)
    if "recent_history" in keys:
        assert len(item["recent_history"]) == 3


def test_simulate_strategies_reports_invalid_params_per_item():
    bad = StrategyParams(
        init_cash=10_000,
        init_stock_pct=1.5,
        target_annual_rate=0.1,
        upper_band_pct=0.1,
        lower_band_pct=0.1,
        unit_gap_pct=0.05,
    )
    strategies = [
        {"strategy_code": "bad", "ticker": "SPY", "params": bad},
        {"strategy_code": "good", "ticker": "SPY", "params": PARAMS},
    ]
    results = simulate_strategies(strategies, MultiSource(_bars()), view="summary")

    assert results[0]["strategy_code"] == "bad"
    assert results[0]["success"] is False
    assert "init_stock_pct" in results[0]["message"]
    assert results[1]["success"] is True
