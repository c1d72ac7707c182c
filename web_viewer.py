#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Mini web viewer for assignment scan results (Flask)

- /api/progress    checkpoint, keyspace coverage, advisory meta.json of both sinks
- /api/results     success records (dataResults/), de-duplicated by index,
                   search by key + pagination

meta.json is shown as-is and flagged advisory: it may lag the part files after a crash.

Run:
  python web_viewer.py --data-dir ./data/assignment --host 127.0.0.1 --port 8080
"""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, jsonify, request

from assignment_scan import DEFAULT_DATA_DIR, DataLayout
from keyspace import DEFAULT_ALPHABET, DEFAULT_DEPTH, DEFAULT_PREFIX, KeySpace
from ndjson_store import (
    ProgressCheckpoint,
    iter_part_records,
    list_part_numbers,
    part_file_name,
    read_advisory_meta,
)

app = Flask(__name__)


# ----------------------------
# Data cache (reload on change)
# ----------------------------


def _parts_signature(directory: Path) -> Tuple[Tuple[int, int, float], ...]:
    sig = []
    for num in list_part_numbers(directory):
        st = (directory / part_file_name(num)).stat()
        sig.append((num, st.st_size, st.st_mtime))
    return tuple(sig)


@dataclass
class ResultsCache:
    directory: Path
    signature: Tuple[Tuple[int, int, float], ...] = ()
    records: List[Dict[str, Any]] = field(default_factory=list)
    updated_at: Optional[str] = None

    def refresh_if_needed(self) -> None:
        sig = _parts_signature(self.directory)
        if sig == self.signature and self.records:
            return

        by_index: Dict[int, Dict[str, Any]] = {}
        for obj in iter_part_records(self.directory):
            idx = obj.get("index")
            if not isinstance(idx, int) or idx in by_index:
                continue
            by_index[idx] = obj

        self.records = [by_index[i] for i in sorted(by_index)]
        self.signature = sig
        self.updated_at = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())


@dataclass
class ViewerState:
    layout: DataLayout
    keyspace: KeySpace
    cache: ResultsCache


STATE: Optional[ViewerState] = None


def configure(data_dir: Path, keyspace: KeySpace) -> ViewerState:
    global STATE
    layout = DataLayout(Path(data_dir))
    layout.success_dir.mkdir(parents=True, exist_ok=True)
    layout.audit_dir.mkdir(parents=True, exist_ok=True)
    STATE = ViewerState(layout=layout, keyspace=keyspace, cache=ResultsCache(layout.success_dir))
    return STATE


# ----------------------------
# Routes
# ----------------------------


def _sink_info(directory: Path) -> Dict[str, Any]:
    return {
        "parts": len(list_part_numbers(directory)),
        "advisory_meta": read_advisory_meta(directory),
    }


@app.get("/")
@app.get("/api/progress")
def api_progress():
    assert STATE is not None
    last_index = ProgressCheckpoint(STATE.layout.progress_file).read()
    size = STATE.keyspace.size
    return jsonify(
        {
            "lastIndex": last_index,
            "next_key": STATE.keyspace.key_at(last_index) if last_index < size else None,
            "keyspace_size": size,
            "percent": round(100.0 * last_index / size, 4) if size else 0.0,
            "sinks": {
                "audit": _sink_info(STATE.layout.audit_dir),
                "success": _sink_info(STATE.layout.success_dir),
            },
        }
    )


@app.get("/api/results")
def api_results():
    assert STATE is not None
    cache = STATE.cache
    cache.refresh_if_needed()

    q = (request.args.get("q") or "").strip().lower()
    try:
        page = int(request.args.get("page") or "1")
        per_page = int(request.args.get("per_page") or "200")
    except ValueError:
        return jsonify({"error": "page and per_page must be integers"}), 400
    page = max(page, 1)
    per_page = min(max(per_page, 1), 5000)

    items = cache.records
    if q:
        items = [r for r in items if q in str(r.get("fullID", "")).lower()]

    total = len(items)
    start = (page - 1) * per_page
    page_items = items[start:start + per_page]

    note = None
    if not cache.signature:
        note = "No result parts found yet. Run assignment_scan.py to generate data."

    return jsonify(
        {
            "total": total,
            "page": page,
            "per_page": per_page,
            "items": page_items,
            "source_dir": str(cache.directory),
            "updated_at": cache.updated_at,
            "note": note,
        }
    )


# ----------------------------
# Main
# ----------------------------


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        "web_viewer.py",
        description="Mini web UI for assignment scan progress and results.",
    )
    p.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Data root used by assignment_scan.py")
    p.add_argument("--prefix", default=DEFAULT_PREFIX)
    p.add_argument("--alphabet", default=DEFAULT_ALPHABET)
    p.add_argument("--depth", type=int, default=DEFAULT_DEPTH)
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8080)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    state = configure(Path(args.data_dir), KeySpace(alphabet=args.alphabet, depth=args.depth, prefix=args.prefix))
    state.cache.refresh_if_needed()

    print(f"Serving on http://{args.host}:{args.port}")
    print(f"Reading from: {state.layout.root}")

    app.run(host=args.host, port=args.port, debug=False)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
