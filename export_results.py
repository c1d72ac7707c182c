#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Export one sink of an assignment scan to CSV chunks.

- Reads every part-NNNNNN.ndjson of the sink in part order
- De-dup by global index (first occurrence wins): a crash between the data write
  and the checkpoint write replays a window, so sinks are at-least-once
- Sorted by index, written as results_<ts>_<NNNNNN>.csv (default 1000 rows per file)

Columns:
  success: index,key,at,standby_count,data
  audit  : index,key,at,outcome,response
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from assignment_scan import DEFAULT_DATA_DIR, DataLayout, configure_logging
from ndjson_store import iter_part_records

SUCCESS_COLUMNS = ["index", "key", "at", "standby_count", "data"]
AUDIT_COLUMNS = ["index", "key", "at", "outcome", "response"]

log = logging.getLogger("export_results")


def audit_outcome(response: Any) -> str:
    if isinstance(response, dict):
        data = response.get("data")
        if isinstance(data, dict) and isinstance(data.get("list_standby"), list):
            return "success"
        if isinstance(response.get("message"), str) and response["message"]:
            return "message"
        if "error" in response:
            return "error"
    return "unknown"


def success_rows(records: Iterable[Dict[str, Any]]) -> Iterable[Tuple[int, List[Any]]]:
    for obj in records:
        idx = obj.get("index")
        if not isinstance(idx, int):
            continue
        data = obj.get("data")
        count = len(data) if isinstance(data, list) else ""
        yield idx, [idx, obj.get("fullID", ""), obj.get("at", ""), count,
                    json.dumps(data, ensure_ascii=False)]


def audit_rows(records: Iterable[Dict[str, Any]]) -> Iterable[Tuple[int, List[Any]]]:
    # audit lines look like {"<key>": {"index": ..., "at": ..., "response": ...}}
    for obj in records:
        for key, entry in obj.items():
            if not isinstance(entry, dict) or not isinstance(entry.get("index"), int):
                continue
            response = entry.get("response")
            yield entry["index"], [entry["index"], key, entry.get("at", ""), audit_outcome(response),
                                   json.dumps(response, ensure_ascii=False)]


def dedupe_by_index(rows: Iterable[Tuple[int, List[Any]]]) -> List[List[Any]]:
    seen: Dict[int, List[Any]] = {}
    dupes = 0
    for idx, row in rows:
        if idx in seen:
            dupes += 1
            continue
        seen[idx] = row
    if dupes:
        log.info("Dropped %s duplicate entries (replayed windows)", dupes)
    return [seen[i] for i in sorted(seen)]


def write_csv_chunks(rows: List[List[Any]], columns: List[str], out_dir: Path, chunk_size: int = 1000) -> List[Path]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    out_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    written: List[Path] = []

    file_index = 1
    for i in range(0, len(rows), chunk_size):
        out_path = out_dir / f"results_{ts}_{file_index:06d}.csv"
        with out_path.open("w", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow(columns)
            w.writerows(rows[i:i + chunk_size])
        written.append(out_path)
        file_index += 1

    return written


def export_sink(data_dir: Path, sink: str, out_dir: Path, chunk_size: int = 1000) -> List[Path]:
    layout = DataLayout(Path(data_dir))
    if sink == "success":
        rows = dedupe_by_index(success_rows(iter_part_records(layout.success_dir)))
        columns = SUCCESS_COLUMNS
    elif sink == "audit":
        rows = dedupe_by_index(audit_rows(iter_part_records(layout.audit_dir)))
        columns = AUDIT_COLUMNS
    else:
        raise ValueError("sink must be success|audit")

    log.info("Unique %s records: %s", sink, len(rows))
    return write_csv_chunks(rows, columns, Path(out_dir), chunk_size)


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        "export_results.py",
        description="Export assignment scan NDJSON parts to CSV chunks, de-duplicated by index.",
    )
    ap.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help=f"Data root (default: {DEFAULT_DATA_DIR})")
    ap.add_argument("--sink", choices=["success", "audit"], default="success")
    ap.add_argument("--output", default="out_export", help="Output folder for CSV files (default: out_export)")
    ap.add_argument("--chunk", type=int, default=1000, help="Rows per CSV file (default: 1000)")
    ap.add_argument("-v", "--verbose", action="count", default=1)
    args = ap.parse_args(argv)

    configure_logging(args.verbose)

    data_dir = Path(args.data_dir)
    if not data_dir.is_dir():
        raise SystemExit(f"[ERR] Data folder not found: {data_dir.resolve()}")

    written = export_sink(data_dir, args.sink, Path(args.output), args.chunk)
    log.info("CSV written: %s -> %s", len(written), Path(args.output).resolve())
    if written:
        log.info("Example output: %s", written[0].name)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
