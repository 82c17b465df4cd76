"""Benchmark configuration.

Settings come from dataclass defaults, an optional JSON config file and
go-ycsb style ``key=value`` properties (``-p raft.address=...`` on the
command line or a ``-P`` properties file), applied in that order.
"""

import json
import re
from dataclasses import dataclass, field, asdict, fields
from typing import Any, Dict, Iterable, List, Optional

from .errors import ConfigError
from .rpc import DEFAULT_WINDOW_SIZE
from .types import ReadMode

_DURATION_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Any) -> float:
    """Seconds from ``2``, ``2.5``, ``"500ms"``, ``"2s"``, ``"1m"`` or ``"1h"``."""
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigError(f"invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"invalid boolean: {value!r}")


def parse_endpoints(value: Any) -> List[str]:
    if isinstance(value, str):
        endpoints = [e.strip() for e in value.split(",")]
    else:
        endpoints = [str(e).strip() for e in value]
    return [e for e in endpoints if e]


@dataclass
class BenchConfig:
    """Complete run configuration."""
    endpoints: List[str] = field(default_factory=lambda: ["localhost:12380"])
    dial_timeout: float = 2.0
    binding: str = "stream"

    # Open-loop put benchmark
    total_ops: int = 1_000_000
    parallel: int = 256
    key_size: int = 8
    value_size: int = 8
    key_space: int = 1

    # Trace replay
    trace_file: Optional[str] = None
    trace_max_records: int = 0
    read_mode: ReadMode = ReadMode.READ
    write_value_size: int = 1
    loop_replay: bool = False

    # Run control
    max_execution_time: float = 0.0
    drain_grace: float = 5.0
    window_size: int = DEFAULT_WINDOW_SIZE
    reset_cache_hits: bool = False
    seed: Optional[int] = None

    def __post_init__(self):
        self.endpoints = parse_endpoints(self.endpoints)
        try:
            self.read_mode = ReadMode(str(getattr(self.read_mode, "value", self.read_mode)).lower())
        except ValueError:
            raise ConfigError(
                f"invalid read mode '{self.read_mode}', must be 'read', 'skip', or 'write'") from None

    def validate(self, bindings: Optional[Iterable[str]] = None) -> "BenchConfig":
        if not self.endpoints:
            raise ConfigError("at least one endpoint is required")
        if self.dial_timeout <= 0:
            raise ConfigError(f"dial timeout must be positive, got {self.dial_timeout}")
        if bindings is not None and self.binding not in bindings:
            raise ConfigError(
                f"unknown binding '{self.binding}', expected one of {sorted(bindings)}")
        for name in ("parallel", "key_size", "value_size", "key_space", "write_value_size"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1, got {getattr(self, name)}")
        for name in ("total_ops", "trace_max_records", "max_execution_time"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.loop_replay and self.total_ops == 0 and self.max_execution_time == 0:
            raise ConfigError("loop replay needs an operation count or a max execution time")
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["read_mode"] = self.read_mode.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BenchConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def from_file(cls, path: str, defaults: Optional[Dict[str, Any]] = None) -> "BenchConfig":
        """Load a JSON config; keys it leaves out fall back to ``defaults``."""
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"could not read config file {path}: {e}") from e
        return cls.from_dict({**(defaults or {}), **data})

    def apply_properties(self, props: Dict[str, str]) -> "BenchConfig":
        """Apply go-ycsb style property overrides in place."""
        for key, raw in props.items():
            if key not in PROPERTY_KEYS:
                raise ConfigError(f"unknown property '{key}'")
            attr, convert = PROPERTY_KEYS[key]
            try:
                setattr(self, attr, convert(raw))
            except (TypeError, ValueError) as e:
                raise ConfigError(f"invalid value for {key}: {raw!r}") from e
        self.__post_init__()
        return self


PROPERTY_KEYS = {
    "raft.address": ("endpoints", parse_endpoints),
    "raft.dial_timeout": ("dial_timeout", parse_duration),
    "raft.binding": ("binding", str),
    "operationcount": ("total_ops", int),
    "threadcount": ("parallel", int),
    "keysize": ("key_size", int),
    "valuesize": ("value_size", int),
    "keyspace": ("key_space", int),
    "trace.file": ("trace_file", str),
    "trace.maxrecords": ("trace_max_records", int),
    "trace.readmode": ("read_mode", str),
    "trace.writevaluesize": ("write_value_size", int),
    "trace.loop": ("loop_replay", parse_bool),
    "maxexecutiontime": ("max_execution_time", parse_duration),
    "drain.grace": ("drain_grace", parse_duration),
}


def parse_property(text: str) -> Dict[str, str]:
    if "=" not in text:
        raise ConfigError(f"property must be key=value, got {text!r}")
    key, value = text.split("=", 1)
    return {key.strip(): value.strip()}


def load_properties(path: str) -> Dict[str, str]:
    """Read a properties file: ``key=value`` lines, ``#`` comments."""
    props: Dict[str, str] = {}
    try:
        with open(path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith(("#", "!")):
                    continue
                props.update(parse_property(line))
    except OSError as e:
        raise ConfigError(f"could not read properties file {path}: {e}") from e
    return props
