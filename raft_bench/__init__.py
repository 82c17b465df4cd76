"""
raft_bench: Open-loop load generator for a raft-replicated key-value service

Drives synthetic puts or replayed twemcache traces against a RaftKVService
gRPC endpoint over per-worker persistent streams, and reports offered
throughput alongside server-side cache-hit counters.
"""

__version__ = "1.0.0"

from .core import (
    BenchConfig,
    BenchmarkRunner,
    RunReport,
    KeySynthesizer,
    TraceWorkload,
    StreamWorker,
    UnaryWorker,
    RaftKVClient,
    ConfigError,
    SetupError,
)

__all__ = [
    "BenchConfig",
    "BenchmarkRunner",
    "RunReport",
    "KeySynthesizer",
    "TraceWorkload",
    "StreamWorker",
    "UnaryWorker",
    "RaftKVClient",
    "ConfigError",
    "SetupError",
]
