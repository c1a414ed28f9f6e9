from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, List, Optional

from .prices import PriceBar, to_bars


@dataclass(frozen=True)
class BatchResultRow:
    strategy_code: str
    start_date: str
    end_date: str
    end_asset: float
    end_stock_rate: float
    max_mdd_rate: float
    average_price: float


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout=5000;")
    return conn


def ensure_schema(db_path: str, table: str = "daily_price", result_table: str = "simulation_batch_result") -> None:
    conn = connect(db_path)
    try:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                code TEXT NOT NULL,
                date TEXT NOT NULL,
                open REAL,
                high REAL,
                low REAL,
                close REAL,
                PRIMARY KEY (code, date)
            )
            """
        )
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {result_table} (
                strategy_code TEXT NOT NULL,
                start_date TEXT NOT NULL,
                end_date TEXT NOT NULL,
                end_asset REAL,
                end_stock_rate REAL,
                max_mdd_rate REAL,
                average_price REAL,
                created_at TEXT,
                PRIMARY KEY (strategy_code, start_date)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS batch_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                message TEXT,
                started_at TEXT,
                finished_at TEXT
            )
            """
        )
        conn.commit()
    finally:
        conn.close()


def fetch_ohlc(
    db_path: str,
    code: str,
    table: str = "daily_price",
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> List[PriceBar]:
    """Fetch OHLC bars for a code within [start, end] (inclusive, ISO dates).

    Malformed rows are dropped by `to_bars`; the result is ascending by date.
    """
    conn = connect(db_path)
    try:
        where = ["code=?"]
        args: List[Any] = [code]
        if start:
            where.append("date >= ?")
            args.append(str(start))
        if end:
            where.append("date <= ?")
            args.append(str(end))
        cur = conn.execute(
            f"SELECT date, open, high, low, close FROM {table} WHERE {' AND '.join(where)} ORDER BY date ASC",
            tuple(args),
        )
        rows = [dict(r) for r in cur.fetchall()]
    finally:
        conn.close()
    return to_bars(rows)


class SQLitePriceSource:
    """PriceSeries collaborator backed by the daily price table."""

    def __init__(self, db_path: str, table: str = "daily_price"):
        self.db_path = db_path
        self.table = table

    def fetch_bars(self, ticker: str, start: Optional[str] = None, end: Optional[str] = None) -> List[PriceBar]:
        return fetch_ohlc(self.db_path, ticker, table=self.table, start=start, end=end)


class SQLiteResultStore:
    """Storage collaborator: batch result rows (replace-then-append) and job log."""

    def __init__(self, db_path: str, table: str = "simulation_batch_result"):
        self.db_path = db_path
        self.table = table
        ensure_schema(db_path, result_table=table)

    def delete_results(self, strategy_code: str, start: str, end: str) -> int:
        conn = connect(self.db_path)
        try:
            cur = conn.execute(
                f"DELETE FROM {self.table} WHERE strategy_code=? AND start_date >= ? AND start_date <= ?",
                (strategy_code, str(start), str(end)),
            )
            conn.commit()
            return int(cur.rowcount or 0)
        finally:
            conn.close()

    def insert_result(self, row: BatchResultRow) -> None:
        payload = asdict(row)
        payload["created_at"] = datetime.now().isoformat(timespec="seconds")
        cols = list(payload.keys())
        conn = connect(self.db_path)
        try:
            conn.execute(
                f"INSERT OR REPLACE INTO {self.table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                tuple(payload[c] for c in cols),
            )
            conn.commit()
        finally:
            conn.close()

    def load_results(self, strategy_code: str) -> List[dict]:
        conn = connect(self.db_path)
        try:
            cur = conn.execute(
                f"SELECT * FROM {self.table} WHERE strategy_code=? ORDER BY start_date ASC",
                (strategy_code,),
            )
            return [dict(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def start_job(self, name: str) -> int:
        conn = connect(self.db_path)
        try:
            cur = conn.execute(
                "INSERT INTO batch_jobs (name, status, started_at) VALUES (?, 'RUNNING', ?)",
                (name, datetime.now().isoformat(timespec="seconds")),
            )
            conn.commit()
            return int(cur.lastrowid)
        finally:
            conn.close()

    def finish_job(self, job_id: int, status: str, message: str = "") -> None:
        conn = connect(self.db_path)
        try:
            conn.execute(
                "UPDATE batch_jobs SET status=?, message=?, finished_at=? WHERE id=?",
                (status, message, datetime.now().isoformat(timespec="seconds"), int(job_id)),
            )
            conn.commit()
        finally:
            conn.close()
