"""Exception types raised by the benchmark engine."""


class RaftBenchError(Exception):
    """Base class for all benchmark errors."""


class ConfigError(RaftBenchError, ValueError):
    """Invalid configuration, detected before a run starts."""


class SetupError(RaftBenchError):
    """A worker could not dial the backend or open its stream.

    Fatal: no partial result is meaningful without every configured worker.
    """


class KeyNotFoundError(RaftBenchError):
    """A point read reported the key as missing."""

    def __init__(self, key: bytes):
        self.key = key
        super().__init__(f"could not find value for key [{key!r}]")


class TraceError(RaftBenchError):
    """The trace file could not be opened or held no usable records."""
