#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Durable storage for scan results.

Layout under one log directory:
  part-000001.ndjson, part-000002.ndjson, ...   (append-only, never reused)
  meta.json                                      (advisory: {part, lines, bytes})

Rules:
- State is always recovered from the part files themselves (size on disk and a
  literal count of b"\\n" bytes). meta.json is written for humans / the viewer
  only; data and meta writes are not atomic together, so it may lag after a crash.
- Rotation is decided once per batch. A batch is never split across parts.

The checkpoint (progress.json) lives next to the log directories and holds the
next global index to dispatch.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

PART_RE = re.compile(r"^part-(\d{6})\.ndjson$")
META_NAME = "meta.json"

DEFAULT_MAX_BYTES_PER_PART = 250 * 1024 * 1024
DEFAULT_MAX_LINES_PER_PART = 500_000

_READ_CHUNK = 1024 * 1024

log = logging.getLogger(__name__)


# ---------------------------
# Helpers
# ---------------------------

def part_file_name(part: int) -> str:
    return f"part-{part:06d}.ndjson"


def list_part_numbers(directory: Path) -> List[int]:
    if not directory.is_dir():
        return []
    nums: List[int] = []
    for p in directory.iterdir():
        m = PART_RE.match(p.name)
        if m and p.is_file():
            nums.append(int(m.group(1)))
    return sorted(nums)


def count_newlines(path: Path) -> int:
    count = 0
    with path.open("rb") as f:
        while True:
            chunk = f.read(_READ_CHUNK)
            if not chunk:
                break
            count += chunk.count(b"\n")
    return count


def terminate_torn_tail(path: Path) -> bool:
    """Close a half-written last line left by a crash, so the next append starts clean.

    The torn line stays on disk (and is skipped by readers); its record is
    replayed because the checkpoint never moved past it.
    """
    size = path.stat().st_size
    if size == 0:
        return False
    with path.open("rb+") as f:
        f.seek(size - 1)
        if f.read(1) == b"\n":
            return False
        f.seek(0, os.SEEK_END)
        f.write(b"\n")
        f.flush()
        os.fsync(f.fileno())
    log.warning("Terminated torn last line in %s", path)
    return True


def atomic_write_json(path: Path, data: dict) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)


def dumps_line(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def read_advisory_meta(directory: Path) -> Optional[Dict[str, Any]]:
    """Return meta.json content, or None. Never used for recovery."""
    p = directory / META_NAME
    try:
        d = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return d if isinstance(d, dict) else None


def iter_part_records(directory: Path) -> Iterator[Dict[str, Any]]:
    """Yield every JSON object from every part, in part order."""
    for num in list_part_numbers(directory):
        path = directory / part_file_name(num)
        with path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except ValueError as e:
                    log.warning("Skipping undecodable line %s:%s (%s)", path.name, lineno, e)
                    continue
                if isinstance(obj, dict):
                    yield obj


# ---------------------------
# Rotating NDJSON writer
# ---------------------------

@dataclass
class LogDirectoryState:
    part: int = 1
    lines: int = 0
    bytes: int = 0


class RotatingNdjsonWriter:
    """Append-only NDJSON log directory with size/line rotation."""

    def __init__(self,
                 directory: Path,
                 max_bytes_per_part: int = DEFAULT_MAX_BYTES_PER_PART,
                 max_lines_per_part: int = DEFAULT_MAX_LINES_PER_PART):
        if max_bytes_per_part < 1 or max_lines_per_part < 1:
            raise ValueError("max_bytes_per_part and max_lines_per_part must be >= 1")
        self.directory = Path(directory)
        self.meta_path = self.directory / META_NAME
        self.max_bytes_per_part = max_bytes_per_part
        self.max_lines_per_part = max_lines_per_part
        self.state = LogDirectoryState()
        self.directory.mkdir(parents=True, exist_ok=True)

    def current_part_path(self) -> Path:
        return self.directory / part_file_name(self.state.part)

    def recover_state(self) -> LogDirectoryState:
        """Re-derive part/bytes/lines from the newest part file on disk."""
        nums = list_part_numbers(self.directory)
        if not nums:
            self.state = LogDirectoryState(part=1, lines=0, bytes=0)
            self.current_part_path().touch()
            self.write_advisory_meta()
            return self.state

        part = nums[-1]
        path = self.directory / part_file_name(part)
        terminate_torn_tail(path)
        self.state = LogDirectoryState(
            part=part,
            lines=count_newlines(path),
            bytes=path.stat().st_size,
        )
        self.write_advisory_meta()
        log.debug("Recovered %s: part=%s lines=%s bytes=%s",
                  self.directory, self.state.part, self.state.lines, self.state.bytes)
        return self.state

    def write_advisory_meta(self) -> None:
        self.meta_path.write_text(json.dumps(asdict(self.state), indent=2), encoding="utf-8")

    def needs_rotate(self, incoming_bytes: int, incoming_lines: int) -> bool:
        over_bytes = self.state.bytes + incoming_bytes > self.max_bytes_per_part
        over_lines = self.state.lines + incoming_lines > self.max_lines_per_part
        return over_bytes or over_lines

    def rotate(self) -> None:
        self.state = LogDirectoryState(part=self.state.part + 1, lines=0, bytes=0)
        path = self.current_part_path()
        if not path.exists():
            path.touch()
        log.info("Rotated %s to %s", self.directory, path.name)
        self.write_advisory_meta()

    def append_batch(self, records: Sequence[Dict[str, Any]]) -> None:
        if not records:
            return

        payload = "".join(dumps_line(r) + "\n" for r in records).encode("utf-8")
        incoming_bytes = len(payload)
        incoming_lines = len(records)

        if self.needs_rotate(incoming_bytes, incoming_lines):
            self.rotate()

        with self.current_part_path().open("ab") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())

        self.state.bytes += incoming_bytes
        self.state.lines += incoming_lines
        self.write_advisory_meta()


# ---------------------------
# Checkpoint
# ---------------------------

class ProgressCheckpoint:
    """progress.json = {"lastIndex": <next global index to dispatch>}"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def ensure(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_json(self.path, {"lastIndex": 0})

    def read(self) -> int:
        try:
            d = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return 0
        if not isinstance(d, dict):
            return 0
        n = d.get("lastIndex", 0)
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            return 0
        return n

    def write(self, index: int) -> None:
        atomic_write_json(self.path, {"lastIndex": int(index)})
