"""Tests for trace parsing, cursors and operation mapping."""

import sys
import os
import asyncio
import gzip
import tempfile
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

import pytest
import zstandard

from raft_bench.core import (
    KeyNotFoundError,
    Operation,
    ReadMode,
    TraceError,
    TraceWorkload,
    load_trace,
    parse_trace_lines,
)
from raft_bench.core.trace_replay import filler_value

SAMPLE_LINES = [
    "0,a,1,10,c1,set,0",
    "1,b,1,20,c1,get,0",
    "2,a,1,30,c2,add,0",
    "3,c,1,5,c2,delete,0",
    "4,b,1,0,c3,incr,0",
    "5,d,1,7,c3,flush,0",
]


class RecordingWorker:
    """Collects the calls a TraceWorkload makes."""

    def __init__(self, missing=()):
        self.calls = []
        self.missing = set(missing)

    async def update(self, key, value):
        self.calls.append(("update", key, value))

    async def insert(self, key, value):
        self.calls.append(("insert", key, value))

    async def delete(self, key):
        self.calls.append(("delete", key, b""))

    async def read(self, key):
        self.calls.append(("read", key, None))
        if key in self.missing:
            raise KeyNotFoundError(key)
        return b"v"


def replay(workload, worker):
    async def go():
        actions = []
        while True:
            record = workload.claim()
            if record is None:
                return actions
            actions.append(await workload.apply(record, worker))
    return asyncio.run(go())


def test_malformed_lines_skipped():
    """Short and unparsable lines are dropped, the next line still parses."""
    print("Testing malformed lines...")
    records = parse_trace_lines([
        "0,a,1,10,c1",
        "1,b,1,10,c1,get,0",
        "x,c,1,10,c1,get,0",
        "2,d,one,10,c1,get,0",
        "3,e,1,10,c1,SET,0",
    ])

    assert [r.key for r in records] == ["b", "e"]
    assert records[0].operation == Operation.GET
    assert records[1].operation == Operation.SET
    assert records[1].timestamp == 3.0
    print("  ✓ Malformed lines test passed\n")


def test_max_records_cap():
    """max_records counts accepted records, not lines read."""
    print("Testing max records cap...")
    lines = ["bad"] + SAMPLE_LINES
    records = parse_trace_lines(lines, max_records=2)

    assert [r.key for r in records] == ["a", "b"]
    assert len(parse_trace_lines(lines, max_records=0)) == len(SAMPLE_LINES)
    print("  ✓ Max records cap test passed\n")


def test_compressed_traces():
    """Plain, gzip and zstd traces load to the same records."""
    print("Testing compressed traces...")
    data = ("\n".join(SAMPLE_LINES) + "\n").encode()
    with tempfile.TemporaryDirectory() as tmp:
        plain = os.path.join(tmp, "trace.csv")
        with open(plain, "wb") as f:
            f.write(data)
        gz = os.path.join(tmp, "trace.csv.gz")
        with gzip.open(gz, "wb") as f:
            f.write(data)
        zst = os.path.join(tmp, "trace.csv.zst")
        with open(zst, "wb") as f:
            f.write(zstandard.ZstdCompressor().compress(data))

        expected = load_trace(plain)
        assert len(expected) == len(SAMPLE_LINES)
        assert load_trace(gz) == expected
        assert load_trace(zst) == expected
        assert load_trace(zst, max_records=3) == expected[:3]
    print("  ✓ Compressed traces test passed\n")


def test_missing_or_empty_trace():
    """Unreadable or record-less traces are trace errors."""
    print("Testing missing and empty traces...")
    with tempfile.TemporaryDirectory() as tmp:
        with pytest.raises(TraceError):
            load_trace(os.path.join(tmp, "nope.csv"))
        empty = os.path.join(tmp, "empty.csv")
        with open(empty, "w") as f:
            f.write("garbage\n")
        with pytest.raises(TraceError):
            load_trace(empty)
    print("  ✓ Missing and empty traces test passed\n")


def test_cursor_claims_each_record_once():
    """Concurrent claimers see every record exactly once per pass."""
    print("Testing cursor claims...")
    records = parse_trace_lines(SAMPLE_LINES * 50)
    workload = TraceWorkload(records)

    async def claimer(out):
        while True:
            record = workload.claim()
            if record is None:
                return
            out.append(id(record))
            await asyncio.sleep(0)

    async def go():
        outs = [[] for _ in range(8)]
        await asyncio.gather(*(claimer(o) for o in outs))
        return outs

    outs = asyncio.run(go())
    claimed = [i for out in outs for i in out]
    assert sorted(claimed) == sorted(id(r) for r in records)
    assert workload.cursor == workload.num_records
    assert workload.claim() is None
    print("  ✓ Cursor claims test passed\n")


def test_looping_replays_identically():
    """With looping on, the second pass repeats the first one."""
    print("Testing looping replay...")
    workload = TraceWorkload(parse_trace_lines(SAMPLE_LINES), loop_replay=True)
    n = workload.num_records
    first = [workload.claim() for _ in range(n)]
    second = [workload.claim() for _ in range(n)]

    assert first == second
    assert workload.passes == 1
    assert workload.cursor <= n
    print("  ✓ Looping replay test passed\n")


def test_write_mode_converts_reads():
    """set then get in write mode issues two writes and no reads."""
    print("Testing write read mode...")
    workload = TraceWorkload(
        parse_trace_lines(["0,a,1,1,c1,set,0", "1,a,1,1,c1,get,0"]),
        read_mode=ReadMode.WRITE,
    )
    worker = RecordingWorker()
    actions = replay(workload, worker)

    assert actions == ["update", "update"]
    assert [(c[0], c[1]) for c in worker.calls] == [("update", b"a"), ("update", b"a")]
    assert not any(c[0] == "read" for c in worker.calls)
    print("  ✓ Write read mode test passed\n")


def test_operation_mapping():
    """Each trace operation maps to its backend call."""
    print("Testing operation mapping...")
    workload = TraceWorkload(parse_trace_lines(SAMPLE_LINES))
    worker = RecordingWorker()
    actions = replay(workload, worker)

    assert actions == ["update", "read", "insert", "delete", "read-modify-write", "skip"]
    assert worker.calls == [
        ("update", b"a", b"x" * 10),
        ("read", b"b", None),
        ("insert", b"a", b"x" * 30),
        ("delete", b"c", b""),
        ("read", b"b", None),
        ("update", b"b", b"1"),
    ]
    print("  ✓ Operation mapping test passed\n")


def test_skip_mode_and_failed_reads():
    """Skipped reads issue nothing; a failed read aborts its read-modify-write."""
    print("Testing skip mode and failed reads...")
    skip = TraceWorkload(parse_trace_lines(["0,a,1,1,c1,get,0", "1,a,1,1,c1,gets,0"]),
                         read_mode="skip")
    worker = RecordingWorker()
    assert replay(skip, worker) == ["skip", "skip"]
    assert worker.calls == []

    incr = TraceWorkload(parse_trace_lines(["0,z,1,1,c1,incr,0"]))
    worker = RecordingWorker(missing={b"z"})
    with pytest.raises(KeyNotFoundError):
        replay(incr, worker)
    assert worker.calls == [("read", b"z", None)]
    print("  ✓ Skip mode and failed reads test passed\n")


def test_load_keys():
    """The load phase sees each key once, sized to its largest value."""
    print("Testing load keys...")
    workload = TraceWorkload(parse_trace_lines(SAMPLE_LINES))
    keys = []
    while True:
        claimed = workload.claim_load_key()
        if claimed is None:
            break
        keys.append(claimed)

    assert keys == [("a", 30), ("b", 20), ("c", 5), ("d", 7)]
    assert filler_value(0) == b"x" * 100
    assert filler_value(3) == b"xxx"
    print("  ✓ Load keys test passed\n")


def test_operation_breakdown():
    """Records are bucketed into reads, writes, deletes and other."""
    print("Testing operation breakdown...")
    workload = TraceWorkload(parse_trace_lines(SAMPLE_LINES))

    assert workload.operation_breakdown() == {"reads": 1, "writes": 2, "deletes": 1, "other": 2}
    assert "read mode: read" in workload.describe()
    print("  ✓ Operation breakdown test passed\n")


if __name__ == "__main__":
    print("="*60)
    print("TRACE REPLAY - TEST SUITE")
    print("="*60)
    print()

    test_malformed_lines_skipped()
    test_max_records_cap()
    test_compressed_traces()
    test_missing_or_empty_trace()
    test_cursor_claims_each_record_once()
    test_looping_replays_identically()
    test_write_mode_converts_reads()
    test_operation_mapping()
    test_skip_mode_and_failed_reads()
    test_load_keys()
    test_operation_breakdown()

    print("="*60)
    print("ALL TESTS PASSED!")
    print("="*60)
