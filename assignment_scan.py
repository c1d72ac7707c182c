#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Exhaustive scanner for the assignment lookup endpoint.

Key features:
- Deterministic keyspace <prefix><suffix> (suffix = base-A counter over the alphabet)
- One POST per key, classified; transient failures retried with exponential backoff
- Bounded concurrency: up to --window-size requests in flight, then a settle-all barrier
- Two rotating NDJSON sinks under --data-dir:
    allIDs/       every attempted key (audit trail)
    dataResults/  only keys whose response carries data.list_standby
- Resume from progress.json, which only advances after both sinks are flushed.
  A crash mid-window replays that window (audit may hold duplicates, nothing is lost).
- Bearer token from login, refreshed in the background every --refresh-interval-s

Credentials (ENV or .env):
  ASSIGNMENT_USERNAME, ASSIGNMENT_PASSWORD

Example:
  python assignment_scan.py --data-dir ./data/assignment --window-size 1000 -v
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp
from dotenv import load_dotenv

from keyspace import DEFAULT_ALPHABET, DEFAULT_DEPTH, DEFAULT_PREFIX, KeySpace
from lookup_client import (
    DEFAULT_BACKOFF_BASE_S,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_SENTINEL,
    LookupClient,
    Outcome,
    OutcomeKind,
    audit_entry,
    now_iso,
)
from ndjson_store import (
    DEFAULT_MAX_BYTES_PER_PART,
    DEFAULT_MAX_LINES_PER_PART,
    ProgressCheckpoint,
    RotatingNdjsonWriter,
)
from session_provider import (
    DEFAULT_API_BASE,
    DEFAULT_REFRESH_INTERVAL_S,
    DEFAULT_USER_AGENT,
    ClientMeta,
    CredentialCell,
    SessionError,
    SessionProvider,
    TokenRefresher,
)

DEFAULT_DATA_DIR = os.path.join("data", "assignment")
AUDIT_DIR_NAME = "allIDs"
SUCCESS_DIR_NAME = "dataResults"
PROGRESS_FILE_NAME = "progress.json"

DEFAULT_WINDOW_SIZE = 1000


# ---------------------------
# Data layout
# ---------------------------

@dataclass(frozen=True)
class DataLayout:
    root: Path

    @property
    def audit_dir(self) -> Path:
        return self.root / AUDIT_DIR_NAME

    @property
    def success_dir(self) -> Path:
        return self.root / SUCCESS_DIR_NAME

    @property
    def progress_file(self) -> Path:
        return self.root / PROGRESS_FILE_NAME

    def ensure(self) -> None:
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        self.success_dir.mkdir(parents=True, exist_ok=True)
        ProgressCheckpoint(self.progress_file).ensure()


# ---------------------------
# Batch scheduler
# ---------------------------

@dataclass
class RunSummary:
    start_index: int
    next_index: int
    dispatched: int = 0
    successes: int = 0
    windows: int = 0


class BatchScheduler:
    def __init__(
        self,
        keyspace: KeySpace,
        client: LookupClient,
        audit_writer: RotatingNdjsonWriter,
        success_writer: RotatingNdjsonWriter,
        checkpoint: ProgressCheckpoint,
        window_size: int = DEFAULT_WINDOW_SIZE,
        max_keys: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.keyspace = keyspace
        self.client = client
        self.audit_writer = audit_writer
        self.success_writer = success_writer
        self.checkpoint = checkpoint
        self.window_size = window_size
        self.max_keys = max_keys or None
        self.log = logger or logging.getLogger(__name__)

    async def run(self) -> RunSummary:
        start_index = self.checkpoint.read()
        if start_index > 0:
            self.log.info("Resuming from lastIndex=%s", start_index)

        summary = RunSummary(start_index=start_index, next_index=start_index)
        started = time.time()
        pending: List[Tuple[int, str, "asyncio.Task[Outcome]"]] = []

        for index, key in self.keyspace.iter_keys(start_index):
            if self.max_keys and summary.dispatched >= self.max_keys:
                break
            task = asyncio.ensure_future(self.client.attempt(key, index))
            pending.append((index, key, task))
            summary.dispatched += 1

            if len(pending) >= self.window_size:
                await self._flush_window(pending, index + 1, summary, started)
                pending = []

        if pending:
            await self._flush_window(pending, pending[-1][0] + 1, summary, started)

        self.log.info("Done. next_index=%s dispatched=%s successes=%s windows=%s",
                      summary.next_index, summary.dispatched, summary.successes, summary.windows)
        return summary

    async def _flush_window(
        self,
        pending: Sequence[Tuple[int, str, "asyncio.Task[Outcome]"]],
        next_index: int,
        summary: RunSummary,
        started: float,
    ) -> None:
        results = await asyncio.gather(*(t for _, _, t in pending), return_exceptions=True)

        audit_batch: List[Dict[str, Any]] = []
        success_batch: List[Dict[str, Any]] = []
        for (index, key, _), r in zip(pending, results):
            if isinstance(r, BaseException):
                self.log.error("Dispatch for %s [%s] raised: %s: %s", key, index, type(r).__name__, r)
                audit_batch.append(audit_entry(key, index, now_iso(),
                                               {"error": f"unexpected error: {type(r).__name__}: {r}"}))
                continue
            audit_batch.append(r.audit)
            if r.kind is OutcomeKind.SUCCESS and r.success is not None:
                success_batch.append(r.success)

        self.audit_writer.append_batch(audit_batch)
        self.success_writer.append_batch(success_batch)
        self.checkpoint.write(next_index)

        summary.next_index = next_index
        summary.successes += len(success_batch)
        summary.windows += 1

        elapsed = max(time.time() - started, 1e-6)
        self.log.info(
            "Progress: next_index=%s/%s window=%s successes=%s rate=%.2f keys/s",
            next_index, self.keyspace.size, len(pending), len(success_batch),
            summary.dispatched / elapsed,
        )


# ---------------------------
# CLI
# ---------------------------

def configure_logging(verbosity: int) -> logging.Logger:
    level = logging.INFO
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 0:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger("assignment_scan")


def require_env(var: str) -> str:
    v = os.getenv(var, "").strip()
    if not v:
        raise SystemExit(f"Missing required environment variable: {var}")
    return v


async def main_async(args: argparse.Namespace, log: logging.Logger) -> int:
    keyspace = KeySpace(alphabet=args.alphabet, depth=args.depth, prefix=args.prefix)

    layout = DataLayout(Path(args.data_dir))
    layout.ensure()

    credentials = CredentialCell()
    provider = SessionProvider(
        username=require_env("ASSIGNMENT_USERNAME"),
        password=require_env("ASSIGNMENT_PASSWORD"),
        api_base=args.api_base,
        credentials=credentials,
        timeout_s=args.timeout_s,
        logger=log,
    )
    meta = ClientMeta(user_agent=args.user_agent, platform=args.client_os, screen_size=args.screen_size)
    try:
        provider.login(meta)
    except SessionError as e:
        log.error("Login failed: %s", e)
        return 2

    refresher = TokenRefresher(provider, interval_s=args.refresh_interval_s)
    refresher.start()

    audit_writer = RotatingNdjsonWriter(layout.audit_dir, args.max_bytes_per_part, args.max_lines_per_part)
    success_writer = RotatingNdjsonWriter(layout.success_dir, args.max_bytes_per_part, args.max_lines_per_part)
    audit_writer.recover_state()
    success_writer.recover_state()

    connector = aiohttp.TCPConnector(limit=0)
    headers = {"User-Agent": args.user_agent, "Accept": "application/json"}

    try:
        async with aiohttp.ClientSession(connector=connector, headers=headers) as session:
            client = LookupClient(
                session,
                credentials,
                api_base=args.api_base,
                sentinel=args.sentinel,
                max_attempts=args.max_attempts,
                backoff_base_s=args.backoff_base_s,
                timeout_s=args.timeout_s,
                logger=log,
            )
            scheduler = BatchScheduler(
                keyspace,
                client,
                audit_writer,
                success_writer,
                ProgressCheckpoint(layout.progress_file),
                window_size=args.window_size,
                max_keys=args.max_keys,
                logger=log,
            )
            await scheduler.run()
    finally:
        refresher.stop()

    log.info("Outputs: %s, %s, %s", layout.audit_dir, layout.success_dir, layout.progress_file)
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        "assignment_scan.py",
        description="Enumerate every assignment key, query the lookup API, store NDJSON results with resume.",
    )
    # keyspace
    p.add_argument("--prefix", default=DEFAULT_PREFIX, help=f"Fixed key prefix (default: {DEFAULT_PREFIX})")
    p.add_argument("--alphabet", default=DEFAULT_ALPHABET, help=f"Ordered suffix alphabet (default: {DEFAULT_ALPHABET})")
    p.add_argument("--depth", type=int, default=DEFAULT_DEPTH, help=f"Suffix length (default: {DEFAULT_DEPTH})")
    p.add_argument("--max-keys", type=int, default=0, help="Stop after N keys in this run (0 = no limit)")

    # runtime
    p.add_argument("--window-size", type=int, default=DEFAULT_WINDOW_SIZE,
                   help=f"Concurrent requests per window (default: {DEFAULT_WINDOW_SIZE})")
    p.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS)
    p.add_argument("--backoff-base-s", type=float, default=DEFAULT_BACKOFF_BASE_S,
                   help="Retry n sleeps backoff_base * 2**n seconds (default: 1.0)")
    p.add_argument("--sentinel", default=DEFAULT_SENTINEL,
                   help="Message substring marking a terminal 'not assigned' response")
    p.add_argument("--timeout-s", type=float, default=30.0)

    # storage
    p.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help=f"Data root (default: {DEFAULT_DATA_DIR})")
    p.add_argument("--max-bytes-per-part", type=int, default=DEFAULT_MAX_BYTES_PER_PART)
    p.add_argument("--max-lines-per-part", type=int, default=DEFAULT_MAX_LINES_PER_PART)

    # session
    p.add_argument("--api-base", default=DEFAULT_API_BASE, help=f"API base URL (default: {DEFAULT_API_BASE})")
    p.add_argument("--refresh-interval-s", type=float, default=DEFAULT_REFRESH_INTERVAL_S)
    p.add_argument("--user-agent", default=DEFAULT_USER_AGENT)
    p.add_argument("--client-os", default="Win32")
    p.add_argument("--screen-size", default="1920 x 1080")
    p.add_argument("--dotenv", default=None, help="Path to .env file (default: search upwards for .env)")

    p.add_argument("-v", "--verbose", action="count", default=1, help="Increase verbosity (use -vv for debug)")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    log = configure_logging(args.verbose)
    load_dotenv(dotenv_path=args.dotenv, override=False)

    if args.window_size < 1:
        raise SystemExit("--window-size must be >= 1")
    if args.max_attempts < 1:
        raise SystemExit("--max-attempts must be >= 1")

    return asyncio.run(main_async(args, log))


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        raise SystemExit(130)
