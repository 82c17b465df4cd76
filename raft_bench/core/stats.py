"""Run timing, throughput and server-side counters."""

import json
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import grpc
import numpy as np

from .errors import SetupError
from .rpc import DEFAULT_WINDOW_SIZE, RaftKVClient

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Complete results of one benchmark run."""
    name: str
    config: Dict
    start_time: str = ""
    end_time: str = ""

    total_ops: int = 0
    submitted: int = 0
    elapsed_s: float = 0.0
    throughput_ops_s: float = 0.0

    per_worker_sent: List[int] = field(default_factory=list)
    per_worker_acks: List[int] = field(default_factory=list)
    send_errors: int = 0
    op_errors: int = 0
    operations: Dict[str, int] = field(default_factory=dict)

    cache_hits_before: Optional[int] = None
    cache_hits_after: Optional[int] = None
    stats_errors: List[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def total_acks(self) -> int:
        return sum(self.per_worker_acks)

    @property
    def cache_hits_delta(self) -> Optional[int]:
        if self.cache_hits_before is None or self.cache_hits_after is None:
            return None
        return self.cache_hits_after - self.cache_hits_before

    def ack_distribution(self) -> Dict[str, float]:
        if not self.per_worker_acks:
            return {}
        acks = np.asarray(self.per_worker_acks, dtype=np.float64)
        return {
            "min": float(acks.min()),
            "p50": float(np.percentile(acks, 50)),
            "p99": float(np.percentile(acks, 99)),
            "max": float(acks.max()),
        }

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["total_acks"] = self.total_acks
        data["cache_hits_delta"] = self.cache_hits_delta
        data["ack_distribution"] = self.ack_distribution()
        return data

    def save(self, filepath: str):
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2, default=str)

    def summary_lines(self) -> List[str]:
        lines = [
            f"Done {self.submitted} ops in {self.elapsed_s:.3f}s → {self.throughput_ops_s:.2f} ops/sec",
            f"Acks: {self.total_acks} across {len(self.per_worker_acks)} workers"
            + (" (timed out)" if self.timed_out else ""),
        ]
        if self.send_errors or self.op_errors:
            lines.append(f"Errors: send={self.send_errors}, operation={self.op_errors}")
        if self.operations:
            ops = ", ".join(f"{k}={v}" for k, v in sorted(self.operations.items()))
            lines.append(f"Operations: {ops}")
        if self.cache_hits_after is not None:
            line = f"Cache hits: {self.cache_hits_after}"
            if self.cache_hits_delta is not None:
                line += f" (delta {self.cache_hits_delta:+d})"
            lines.append(line)
        for err in self.stats_errors:
            lines.append(f"Stats error: {err}")
        return lines


class StatsCollector:
    """Times a run from first to last submission and fetches server counters.

    Timing is open-loop: the clock stops at the last submission, not when
    the last acknowledgment arrives.
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self.clock = clock
        self.first_submission: Optional[float] = None
        self.last_submission: Optional[float] = None
        self.start_time = ""
        self.cache_hits: Dict[str, int] = {}
        self.errors: List[str] = []

    def mark_submission(self) -> None:
        now = self.clock()
        if self.first_submission is None:
            self.first_submission = now
            self.start_time = datetime.now().isoformat()
        self.last_submission = now

    @property
    def elapsed_seconds(self) -> float:
        if self.first_submission is None:
            return 0.0
        return self.last_submission - self.first_submission

    def throughput(self, ops: int) -> float:
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return ops / elapsed

    def _record_error(self, message: str) -> None:
        logger.warning(message)
        self.errors.append(message)

    async def fetch_cache_hits(self, client: RaftKVClient, phase: str) -> Optional[int]:
        try:
            hits = await client.get_cache_hits()
        except grpc.RpcError as e:
            self._record_error(f"GetCacheHits ({phase}) failed: {e}")
            return None
        self.cache_hits[phase] = hits
        logger.info(f"<<< cache hits ({phase}): {hits}")
        return hits

    async def reset_cache_hits(self, client: RaftKVClient) -> bool:
        try:
            await client.reset_cache_hits()
        except grpc.RpcError as e:
            self._record_error(f"ResetCacheHits failed: {e}")
            return False
        return True

    async def snapshot(self, address: str, phase: str, connect=None,
                       dial_timeout: float = 2.0, reset: bool = False) -> Optional[int]:
        """Fetch (and optionally first reset) the cache-hit counter on a
        dedicated connection, outside the benchmark's hot path."""
        connect = connect or RaftKVClient.dial
        try:
            client = await connect(address, dial_timeout, DEFAULT_WINDOW_SIZE)
        except SetupError as e:
            self._record_error(f"stats connection ({phase}) failed: {e}")
            return None
        try:
            if reset:
                await self.reset_cache_hits(client)
            return await self.fetch_cache_hits(client, phase)
        finally:
            await client.close()

    def report(self, name: str, config: Dict, total_ops: int, submitted: int,
               workers: Sequence, operations: Optional[Dict[str, int]] = None,
               op_errors: int = 0, timed_out: bool = False) -> RunReport:
        return RunReport(
            name=name,
            config=config,
            start_time=self.start_time,
            end_time=datetime.now().isoformat(),
            total_ops=total_ops,
            submitted=submitted,
            elapsed_s=self.elapsed_seconds,
            throughput_ops_s=self.throughput(submitted),
            per_worker_sent=[w.sent for w in workers],
            per_worker_acks=[w.acks for w in workers],
            send_errors=sum(w.send_errors for w in workers),
            op_errors=op_errors,
            operations=dict(operations or {}),
            cache_hits_before=self.cache_hits.get("before"),
            cache_hits_after=self.cache_hits.get("after"),
            stats_errors=list(self.errors),
            timed_out=timed_out,
        )
