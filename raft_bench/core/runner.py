"""Benchmark driver: wires workloads, the dispatcher and the worker pool."""

import asyncio
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Type

import grpc

from .config import BenchConfig
from .dispatcher import Dispatcher
from .errors import ConfigError, KeyNotFoundError, SetupError
from .keygen import KeySynthesizer, generate_work_items, make_value
from .rpc import RaftKVClient
from .stats import RunReport, StatsCollector
from .trace_replay import TraceWorkload, filler_value
from .worker import Connector, Worker, default_bindings

logger = logging.getLogger(__name__)

# Per-request failures absorbed at the worker boundary.
TRANSIENT_ERRORS = (KeyNotFoundError, grpc.RpcError)


@dataclass
class _ReplayState:
    claimed: int = 0
    op_errors: int = 0
    counts: Counter = field(default_factory=Counter)


class BenchmarkRunner:
    """Runs the put benchmark and the trace load/replay phases."""

    def __init__(self, config: BenchConfig,
                 bindings: Optional[Dict[str, Type[Worker]]] = None,
                 connect: Optional[Connector] = None):
        self.bindings = bindings if bindings is not None else default_bindings()
        self.config = config.validate(self.bindings)
        self.connect = connect or RaftKVClient.dial
        self.rng = random.Random(config.seed)

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    def make_worker(self, worker_id: int) -> Worker:
        cfg = self.config
        worker_cls = self.bindings[cfg.binding]
        return worker_cls(
            worker_id,
            cfg.endpoints[worker_id % len(cfg.endpoints)],
            dial_timeout=cfg.dial_timeout,
            connect=self.connect,
            window_size=cfg.window_size,
            drain_grace=cfg.drain_grace,
        )

    async def open_workers(self) -> List[Worker]:
        """Start every worker; any failure closes the started ones and aborts."""
        workers = [self.make_worker(i) for i in range(self.config.parallel)]
        results = await asyncio.gather(*(w.start() for w in workers), return_exceptions=True)
        failures = [(w, r) for w, r in zip(workers, results) if isinstance(r, BaseException)]
        if failures:
            await self.close_workers(workers)
            worker, err = failures[0]
            logger.error(f"{len(failures)} of {len(workers)} workers failed to start")
            if isinstance(err, SetupError):
                raise err
            raise SetupError(f"failed to create client {worker.worker_id}: {err}") from err
        logger.info(f"Started {len(workers)} {self.config.binding} workers")
        return workers

    async def close_workers(self, workers: List[Worker]) -> None:
        results = await asyncio.gather(*(w.close() for w in workers), return_exceptions=True)
        for worker, result in zip(workers, results):
            if isinstance(result, Exception):
                logger.warning(f"[Worker {worker.worker_id}] close failed: {result}")

    def check_workers(self, workers: List[Worker]) -> None:
        """A stream rejected before its first ack fails the whole run."""
        for worker in workers:
            worker.check_setup()

    async def _drive(self, tasks: List[asyncio.Task], stop_event: asyncio.Event) -> bool:
        """Await ``tasks`` under the max execution time; True if it expired."""
        timeout = self.config.max_execution_time or None
        timed_out = False
        try:
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"Max execution time of {timeout}s reached, stopping run")
        finally:
            stop_event.set()
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return timed_out

    async def _cache_snapshot(self, stats: StatsCollector, phase: str, reset: bool = False):
        cfg = self.config
        await stats.snapshot(cfg.endpoints[0], phase, self.connect, cfg.dial_timeout, reset=reset)

    # ------------------------------------------------------------------
    # Open-loop put benchmark
    # ------------------------------------------------------------------

    async def run_put(self, progress: Optional[Callable[[int], None]] = None) -> RunReport:
        cfg = self.config
        stats = StatsCollector()
        keygen = KeySynthesizer(cfg.key_size, cfg.key_space, self.rng)
        value = make_value(cfg.value_size, self.rng)

        await self._cache_snapshot(stats, "before", reset=cfg.reset_cache_hits)
        workers = await self.open_workers()
        stop_event = asyncio.Event()
        dispatcher = Dispatcher(cfg.parallel, stats=stats, progress=progress)
        try:
            tasks = [asyncio.create_task(w.run(dispatcher.queue, stop_event)) for w in workers]
            tasks.append(asyncio.create_task(
                dispatcher.produce(generate_work_items(cfg.total_ops, keygen, value))))
            timed_out = await self._drive(tasks, stop_event)
        finally:
            await self.close_workers(workers)
        self.check_workers(workers)
        await self._cache_snapshot(stats, "after")

        return stats.report("raft-put", cfg.to_dict(), cfg.total_ops, dispatcher.submitted,
                            workers, timed_out=timed_out)

    # ------------------------------------------------------------------
    # Trace replay
    # ------------------------------------------------------------------

    def load_workload(self) -> TraceWorkload:
        cfg = self.config
        if not cfg.trace_file:
            raise ConfigError("trace.file property is required for trace workload")
        return TraceWorkload.from_file(
            cfg.trace_file,
            cfg.trace_max_records,
            read_mode=cfg.read_mode,
            loop_replay=cfg.loop_replay,
            write_value_size=cfg.write_value_size,
        )

    async def _replay_loop(self, worker: Worker, step: Callable[[Worker], Awaitable[Optional[str]]],
                           stop_event: asyncio.Event, state: _ReplayState) -> None:
        while not stop_event.is_set() and not worker.cancelled:
            try:
                action = await step(worker)
            except TRANSIENT_ERRORS as e:
                state.op_errors += 1
                logger.debug(f"[Worker {worker.worker_id}] operation failed: {e}")
            else:
                if action is None:
                    return
                state.counts[action] += 1
            # skipped records and failed reads can finish without suspending
            await asyncio.sleep(0)

    async def _run_replay(self, name: str, step_factory, total_ops: int) -> RunReport:
        cfg = self.config
        stats = StatsCollector()
        state = _ReplayState()
        step = step_factory(stats, state)

        await self._cache_snapshot(stats, "before", reset=cfg.reset_cache_hits)
        workers = await self.open_workers()
        stop_event = asyncio.Event()
        try:
            tasks = [asyncio.create_task(self._replay_loop(w, step, stop_event, state))
                     for w in workers]
            timed_out = await self._drive(tasks, stop_event)
        finally:
            await self.close_workers(workers)
        self.check_workers(workers)
        await self._cache_snapshot(stats, "after")

        if state.op_errors:
            logger.warning(f"{state.op_errors} operations failed during {name}")
        return stats.report(name, cfg.to_dict(), total_ops, state.claimed, workers,
                            operations=state.counts, op_errors=state.op_errors,
                            timed_out=timed_out)

    async def run_trace_load(self, workload: Optional[TraceWorkload] = None) -> RunReport:
        """Insert every unique trace key once, sized to its largest value."""
        workload = workload or self.load_workload()

        def step_factory(stats, state):
            async def step(worker):
                claimed = workload.claim_load_key()
                if claimed is None:
                    return None
                state.claimed += 1
                stats.mark_submission()
                key, value_size = claimed
                await worker.insert(key.encode(), filler_value(value_size))
                return "insert"
            return step

        return await self._run_replay("trace-load", step_factory, len(workload.unique_keys))

    async def run_trace(self, workload: Optional[TraceWorkload] = None) -> RunReport:
        """Replay trace records until exhausted, ``total_ops`` claims, or timeout."""
        workload = workload or self.load_workload()
        limit = self.config.total_ops

        def step_factory(stats, state):
            async def step(worker):
                if limit and state.claimed >= limit:
                    return None
                record = workload.claim()
                if record is None:
                    return None
                state.claimed += 1
                stats.mark_submission()
                return await workload.apply(record, worker)
            return step

        total = limit or workload.num_records
        if not workload.loop_replay:
            total = min(total, workload.num_records)
        return await self._run_replay("trace-run", step_factory, total)
