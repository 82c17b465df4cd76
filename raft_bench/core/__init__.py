"""Core modules for the raft benchmark client."""

from .types import (
    Operation,
    ReadMode,
    WorkerState,
    WorkItem,
    TraceRecord,
)

from .errors import RaftBenchError, ConfigError, SetupError, KeyNotFoundError, TraceError
from .config import BenchConfig, load_properties, parse_property, parse_duration
from .keygen import KeySynthesizer, make_value, generate_work_items
from .rpc import RaftKVClient, add_raft_kv_servicer_to_server
from .worker import Worker, StreamWorker, UnaryWorker, default_bindings
from .dispatcher import Dispatcher
from .stats import StatsCollector, RunReport
from .trace_replay import TraceWorkload, load_trace, parse_trace_lines
from .runner import BenchmarkRunner

__all__ = [
    "Operation",
    "ReadMode",
    "WorkerState",
    "WorkItem",
    "TraceRecord",
    "RaftBenchError",
    "ConfigError",
    "SetupError",
    "KeyNotFoundError",
    "TraceError",
    "BenchConfig",
    "load_properties",
    "parse_property",
    "parse_duration",
    "KeySynthesizer",
    "make_value",
    "generate_work_items",
    "RaftKVClient",
    "add_raft_kv_servicer_to_server",
    "Worker",
    "StreamWorker",
    "UnaryWorker",
    "default_bindings",
    "Dispatcher",
    "StatsCollector",
    "RunReport",
    "TraceWorkload",
    "load_trace",
    "parse_trace_lines",
    "BenchmarkRunner",
]
