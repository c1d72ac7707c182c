"""Tests for the rotating NDJSON writer and the progress checkpoint"""

import json

import pytest

from ndjson_store import (
    ProgressCheckpoint,
    RotatingNdjsonWriter,
    count_newlines,
    dumps_line,
    iter_part_records,
    list_part_numbers,
    part_file_name,
    read_advisory_meta,
)


def records(n, start=0):
    return [{"index": i, "value": f"v{i}"} for i in range(start, start + n)]


def batch_bytes(recs):
    return len("".join(dumps_line(r) + "\n" for r in recs).encode("utf-8"))


def test_recover_empty_dir_creates_part_one(tmp_path):
    w = RotatingNdjsonWriter(tmp_path / "sink")
    state = w.recover_state()
    assert (state.part, state.lines, state.bytes) == (1, 0, 0)
    assert (tmp_path / "sink" / "part-000001.ndjson").exists()
    assert read_advisory_meta(tmp_path / "sink") == {"part": 1, "lines": 0, "bytes": 0}


def test_two_batches_same_part(tmp_path):
    w = RotatingNdjsonWriter(tmp_path)
    w.recover_state()
    w.append_batch(records(3))
    w.append_batch(records(4, start=3))

    part = tmp_path / part_file_name(1)
    assert count_newlines(part) == 7
    assert read_advisory_meta(tmp_path)["lines"] == 7
    assert read_advisory_meta(tmp_path)["bytes"] == part.stat().st_size
    assert [r["index"] for r in iter_part_records(tmp_path)] == list(range(7))


def test_empty_batch_is_noop(tmp_path):
    w = RotatingNdjsonWriter(tmp_path)
    w.recover_state()
    w.append_batch([])
    assert (tmp_path / part_file_name(1)).stat().st_size == 0
    assert w.state.lines == 0


def test_lines_are_compact_json(tmp_path):
    w = RotatingNdjsonWriter(tmp_path)
    w.recover_state()
    w.append_batch([{"a": 1, "b": "ñ"}])
    assert (tmp_path / part_file_name(1)).read_text(encoding="utf-8") == '{"a":1,"b":"ñ"}\n'


def test_recover_is_idempotent(tmp_path):
    w = RotatingNdjsonWriter(tmp_path, max_lines_per_part=5)
    w.recover_state()
    w.append_batch(records(4))
    w.append_batch(records(3))

    fresh = RotatingNdjsonWriter(tmp_path, max_lines_per_part=5)
    first = fresh.recover_state()
    first = (first.part, first.lines, first.bytes)
    second = fresh.recover_state()
    assert first == (second.part, second.lines, second.bytes)


def test_line_rotation_and_recovery_matches_disk(tmp_path):
    w = RotatingNdjsonWriter(tmp_path, max_lines_per_part=5)
    w.recover_state()
    w.append_batch(records(4))
    w.append_batch(records(3, start=4))
    w.append_batch(records(2, start=7))

    assert list_part_numbers(tmp_path) == [1, 2]
    assert count_newlines(tmp_path / part_file_name(1)) == 4
    assert count_newlines(tmp_path / part_file_name(2)) == 5

    state = RotatingNdjsonWriter(tmp_path, max_lines_per_part=5).recover_state()
    assert state.part == 2
    assert state.lines == 5
    assert state.bytes == (tmp_path / part_file_name(2)).stat().st_size

    total_lines = sum(count_newlines(tmp_path / part_file_name(n)) for n in list_part_numbers(tmp_path))
    total_bytes = sum((tmp_path / part_file_name(n)).stat().st_size for n in list_part_numbers(tmp_path))
    assert total_lines == 9
    assert total_bytes == batch_bytes(records(4)) + batch_bytes(records(3, 4)) + batch_bytes(records(2, 7))


def test_batch_over_byte_cap_goes_whole_to_new_part(tmp_path):
    first = records(2)
    cap = batch_bytes(first) + 10
    w = RotatingNdjsonWriter(tmp_path, max_bytes_per_part=cap)
    w.recover_state()
    w.append_batch(first)
    size_before = (tmp_path / part_file_name(1)).stat().st_size

    big = records(10, start=2)
    assert batch_bytes(big) > cap
    w.append_batch(big)

    assert (tmp_path / part_file_name(1)).stat().st_size == size_before
    assert count_newlines(tmp_path / part_file_name(2)) == 10
    assert w.state.part == 2
    assert w.state.bytes == batch_bytes(big)


def test_recovery_ignores_stale_meta(tmp_path):
    w = RotatingNdjsonWriter(tmp_path)
    w.recover_state()
    w.append_batch(records(3))
    (tmp_path / "meta.json").write_text(json.dumps({"part": 9, "lines": 999, "bytes": 1}))

    state = RotatingNdjsonWriter(tmp_path).recover_state()
    assert (state.part, state.lines) == (1, 3)
    assert read_advisory_meta(tmp_path)["lines"] == 3


def test_recovery_with_corrupt_meta_and_partial_tail(tmp_path):
    (tmp_path / part_file_name(1)).write_text('{"a":1}\n')
    (tmp_path / part_file_name(2)).write_text('{"a":2}\n{"a":3}\n{"a":')
    (tmp_path / "meta.json").write_text("{not json")
    (tmp_path / "notes.txt").write_text("ignored\n")

    state = RotatingNdjsonWriter(tmp_path).recover_state()
    part2 = tmp_path / part_file_name(2)
    assert state.part == 2
    # torn tail is closed with a newline and counted as a (skipped) line
    assert part2.read_bytes().endswith(b'{"a":\n')
    assert state.lines == 3
    assert state.bytes == part2.stat().st_size


def test_append_after_torn_tail_keeps_every_record(tmp_path):
    (tmp_path / part_file_name(1)).write_text('{"index":0}\n{"index":1,"va')

    w = RotatingNdjsonWriter(tmp_path)
    w.recover_state()
    # the checkpoint never passed index 1, so the window is replayed
    w.append_batch([{"index": 1}, {"index": 2}])

    assert [r["index"] for r in iter_part_records(tmp_path)] == [0, 1, 2]
    path = tmp_path / part_file_name(1)
    assert w.state.lines == count_newlines(path) == 4
    assert w.state.bytes == path.stat().st_size


def test_recover_leaves_clean_tail_untouched(tmp_path):
    path = tmp_path / part_file_name(1)
    path.write_text('{"index":0}\n')

    state = RotatingNdjsonWriter(tmp_path).recover_state()

    assert path.read_text() == '{"index":0}\n'
    assert (state.lines, state.bytes) == (1, 12)


def test_iter_part_records_skips_bad_lines(tmp_path):
    (tmp_path / part_file_name(1)).write_text('{"a":1}\n\nnot-json\n')
    (tmp_path / part_file_name(2)).write_text('{"a":2}\n')
    assert list(iter_part_records(tmp_path)) == [{"a": 1}, {"a": 2}]


def test_invalid_caps_rejected(tmp_path):
    with pytest.raises(ValueError):
        RotatingNdjsonWriter(tmp_path, max_bytes_per_part=0)


# ---------------------------
# Checkpoint
# ---------------------------

def test_checkpoint_missing_reads_zero(tmp_path):
    assert ProgressCheckpoint(tmp_path / "progress.json").read() == 0


@pytest.mark.parametrize("content", ["", "{oops", "[]", '{"lastIndex": -4}', '{"lastIndex": "7"}', '{"other": 1}'])
def test_checkpoint_corrupt_reads_zero(tmp_path, content):
    p = tmp_path / "progress.json"
    p.write_text(content)
    assert ProgressCheckpoint(p).read() == 0


def test_checkpoint_write_then_read(tmp_path):
    cp = ProgressCheckpoint(tmp_path / "progress.json")
    cp.write(2000)
    assert cp.read() == 2000
    assert json.loads((tmp_path / "progress.json").read_text()) == {"lastIndex": 2000}
    assert not (tmp_path / "progress.json.tmp").exists()


def test_checkpoint_ensure_keeps_existing(tmp_path):
    cp = ProgressCheckpoint(tmp_path / "data" / "progress.json")
    cp.ensure()
    assert cp.read() == 0
    cp.write(5)
    cp.ensure()
    assert cp.read() == 5
