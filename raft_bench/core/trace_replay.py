"""Twemcache trace replay.

Replays traces from Twitter's cache-trace repository
(https://github.com/twitter/cache-trace). Each CSV line holds::

    timestamp, anonymized key, key size, value size, client id, operation, ttl

The trace is loaded into memory once; replay workers then claim records
through a shared cursor so every record is issued by exactly one worker per
pass.
"""

import csv
import gzip
import io
import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

import zstandard

from .errors import TraceError
from .types import Operation, ReadMode, TraceRecord

logger = logging.getLogger(__name__)

TRACE_FIELDS = 7
DEFAULT_VALUE_SIZE = 100
INCR_PLACEHOLDER = b"1"

READ_OPS = {Operation.GET, Operation.GETS}
WRITE_OPS = {Operation.SET, Operation.ADD, Operation.REPLACE, Operation.CAS,
             Operation.APPEND, Operation.PREPEND}


def open_trace(path: str) -> io.TextIOBase:
    """Open a plain, gzip or zstd compressed trace as text."""
    if path.endswith((".zst", ".zstd")):
        raw = open(path, "rb")
        reader = zstandard.ZstdDecompressor().stream_reader(raw, read_across_frames=True, closefd=True)
        return io.TextIOWrapper(reader, encoding="utf-8", errors="replace", newline="")
    if path.endswith(".gz"):
        return gzip.open(path, "rt", encoding="utf-8", errors="replace", newline="")
    return open(path, "r", encoding="utf-8", errors="replace", newline="")


def parse_row(row: List[str]) -> Optional[TraceRecord]:
    if len(row) < TRACE_FIELDS:
        return None
    try:
        return TraceRecord(
            timestamp=float(row[0]),
            key=row[1],
            key_size=int(row[2]),
            value_size=int(row[3]),
            client_id=row[4],
            operation=Operation.parse(row[5]),
            ttl=int(row[6]),
        )
    except ValueError:
        return None


def parse_trace_lines(lines: Iterable[str], max_records: int = 0) -> List[TraceRecord]:
    """Parse trace lines, skipping malformed ones. ``max_records`` 0 means no cap."""
    records: List[TraceRecord] = []
    reader = csv.reader(lines)
    skipped = 0
    while max_records <= 0 or len(records) < max_records:
        try:
            row = next(reader)
        except StopIteration:
            break
        except csv.Error:
            skipped += 1
            continue
        record = parse_row(row)
        if record is None:
            skipped += 1
            continue
        records.append(record)
    if skipped:
        logger.debug(f"Skipped {skipped} malformed trace lines")
    return records


def load_trace(path: str, max_records: int = 0) -> List[TraceRecord]:
    logger.info(f"Loading trace file: {path}")
    try:
        with open_trace(path) as f:
            records = parse_trace_lines(f, max_records)
    except (OSError, zstandard.ZstdError) as e:
        raise TraceError(f"failed to read trace file {path}: {e}") from e
    if not records:
        raise TraceError(f"no records found in trace file {path}")
    logger.info(f"Loaded {len(records)} records from trace")
    return records


def filler_value(size: int) -> bytes:
    """Dummy payload of ``size`` bytes, or the default size when unknown."""
    return b"x" * (size if size > 0 else DEFAULT_VALUE_SIZE)


class TraceWorkload:
    """In-memory trace plus the shared replay and load cursors.

    ``claim`` and ``claim_load_key`` never suspend, so on a single event loop
    each call is an indivisible fetch-and-increment.
    """

    def __init__(self, records: List[TraceRecord],
                 read_mode: ReadMode = ReadMode.READ,
                 loop_replay: bool = False,
                 write_value_size: int = 1):
        self.records = records
        self.read_mode = ReadMode(read_mode)
        self.loop_replay = loop_replay
        self.write_value_size = write_value_size
        self.cursor = 0
        self.passes = 0

        # key -> largest value size seen for it, in first-seen order
        self.unique_keys: Dict[str, int] = {}
        for r in records:
            if r.key not in self.unique_keys or r.value_size > self.unique_keys[r.key]:
                self.unique_keys[r.key] = r.value_size
        self._load_keys = list(self.unique_keys)
        self.load_cursor = 0

    @classmethod
    def from_file(cls, path: str, max_records: int = 0, **kwargs) -> "TraceWorkload":
        workload = cls(load_trace(path, max_records), **kwargs)
        logger.info(f"Found {len(workload.unique_keys)} unique keys in trace")
        logger.info(workload.describe())
        return workload

    @property
    def num_records(self) -> int:
        return len(self.records)

    def claim(self) -> Optional[TraceRecord]:
        """Claim the next record, or ``None`` once a non-looping trace is exhausted."""
        idx = self.cursor
        if idx >= self.num_records:
            if not self.loop_replay or not self.records:
                return None
            idx = 0
            self.passes += 1
        self.cursor = idx + 1
        return self.records[idx]

    def claim_load_key(self) -> Optional[Tuple[str, int]]:
        idx = self.load_cursor
        if idx >= len(self._load_keys):
            return None
        self.load_cursor = idx + 1
        key = self._load_keys[idx]
        return key, self.unique_keys[key]

    def operation_breakdown(self) -> Dict[str, int]:
        counts = Counter()
        for r in self.records:
            if r.operation in READ_OPS:
                counts["reads"] += 1
            elif r.operation in WRITE_OPS:
                counts["writes"] += 1
            elif r.operation == Operation.DELETE:
                counts["deletes"] += 1
            else:
                counts["other"] += 1
        return {k: counts.get(k, 0) for k in ("reads", "writes", "deletes", "other")}

    def describe(self) -> str:
        b = self.operation_breakdown()
        n = max(1, self.num_records)
        return (f"Operation breakdown: reads={b['reads']} ({b['reads'] * 100 / n:.1f}%), "
                f"writes={b['writes']} ({b['writes'] * 100 / n:.1f}%), "
                f"deletes={b['deletes']}, other={b['other']}; read mode: {self.read_mode.value}")

    async def apply(self, record: TraceRecord, worker) -> str:
        """Issue ``record`` on ``worker`` and return the action taken.

        Read failures (including a missing key) propagate to the caller.
        """
        op = record.operation
        key = record.key.encode()

        if op in READ_OPS:
            if self.read_mode == ReadMode.SKIP:
                return "skip"
            if self.read_mode == ReadMode.WRITE:
                await worker.update(key, filler_value(self.write_value_size))
                return "update"
            await worker.read(key)
            return "read"

        if op == Operation.ADD:
            await worker.insert(key, filler_value(record.value_size))
            return "insert"

        if op in WRITE_OPS:
            # set/replace/cas, and append/prepend without partial-value semantics
            await worker.update(key, filler_value(record.value_size))
            return "update"

        if op == Operation.DELETE:
            await worker.delete(key)
            return "delete"

        if op in (Operation.INCR, Operation.DECR):
            # Read-modify-write; the read value is discarded.
            await worker.read(key)
            await worker.update(key, INCR_PLACEHOLDER)
            return "read-modify-write"

        return "skip"

