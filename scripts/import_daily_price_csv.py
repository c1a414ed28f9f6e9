#!/usr/bin/env python3
from __future__ import annotations

import argparse
import csv
import logging
import sys
import time
from pathlib import Path
from typing import Optional

# Ensure repo root is on sys.path when executed from scripts/
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from band_rebalance_engine.config import EngineConfig  # noqa: E402
from band_rebalance_engine.db import connect, ensure_schema  # noqa: E402
from band_rebalance_engine.notifier import maybe_notify  # noqa: E402
from band_rebalance_engine.settings import load_settings  # noqa: E402


def _to_float(val: Optional[str]) -> Optional[float]:
    if val is None:
        return None
    text = str(val).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _norm_code(val: Optional[str]) -> str:
    text = (val or "").strip()
    return text.zfill(6) if text.isdigit() else text.upper()


def main():
    ap = argparse.ArgumentParser(description="Import daily price CSV (code,date,open,high,low,close) into SQLite with upsert.")
    ap.add_argument("--csv", required=True, help="CSV file path")
    ap.add_argument("--db", default=None, help="SQLite DB path (default: STOCK_DB_PATH or settings)")
    ap.add_argument("--code", default=None, help="Code for CSVs without a code column")
    ap.add_argument("--chunk-size", type=int, default=20000, help="Rows per batch commit")
    ap.add_argument("--notify-every", type=int, default=0, help="Notify every N rows (0 to disable)")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    cfg = EngineConfig()
    settings = load_settings(cfg.settings_path)
    db_path = args.db or settings.get("database", {}).get("path") or cfg.db_path
    csv_path = Path(args.csv)
    if not csv_path.exists():
        raise SystemExit(f"CSV not found: {csv_path}")

    ensure_schema(db_path, table=cfg.table, result_table=cfg.result_table)
    conn = connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")

    insert_sql = (
        f"INSERT OR REPLACE INTO {cfg.table}"
        "(code, date, open, high, low, close) "
        "VALUES (?,?,?,?,?,?)"
    )

    start_ts = time.time()
    total = 0
    skipped = 0
    batch = []
    last_notify = 0

    maybe_notify(settings, f"[import] start file={csv_path} chunk={args.chunk_size}")

    try:
        with csv_path.open("r", encoding="utf-8", newline="") as f:
            reader = csv.DictReader(f)
            for row in reader:
                code = _norm_code(row.get("code") or args.code)
                day = (row.get("date") or "").strip()[:10]
                if not code or not day:
                    skipped += 1
                    continue
                rec = (
                    code,
                    day,
                    _to_float(row.get("open")),
                    _to_float(row.get("high")),
                    _to_float(row.get("low")),
                    _to_float(row.get("close")),
                )
                batch.append(rec)
                if len(batch) >= args.chunk_size:
                    conn.executemany(insert_sql, batch)
                    conn.commit()
                    total += len(batch)
                    batch = []
                    if args.notify_every and (total - last_notify) >= args.notify_every:
                        elapsed = int(time.time() - start_ts)
                        maybe_notify(settings, f"[import] rows={total} elapsed={elapsed}s")
                        last_notify = total

        if batch:
            conn.executemany(insert_sql, batch)
            conn.commit()
            total += len(batch)
    finally:
        conn.close()

    elapsed = int(time.time() - start_ts)
    maybe_notify(settings, f"[import] completed rows={total} skipped={skipped} elapsed={elapsed}s")
    logging.info("imported %d rows (skipped %d) in %ds", total, skipped, elapsed)


if __name__ == "__main__":
    main()
