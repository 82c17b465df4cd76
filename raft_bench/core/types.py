"""Type definitions for the raft benchmark client."""

from dataclasses import dataclass
from enum import Enum


class Operation(str, Enum):
    GET = "get"
    GETS = "gets"
    SET = "set"
    ADD = "add"
    REPLACE = "replace"
    CAS = "cas"
    DELETE = "delete"
    APPEND = "append"
    PREPEND = "prepend"
    INCR = "incr"
    DECR = "decr"
    OTHER = "other"

    @classmethod
    def parse(cls, text: str) -> "Operation":
        try:
            return cls(text.strip().lower())
        except ValueError:
            return cls.OTHER


class ReadMode(str, Enum):
    READ = "read"
    SKIP = "skip"
    WRITE = "write"


class WorkerState(str, Enum):
    """Lifecycle of one worker connection.

    ``STREAMING`` covers the whole active phase, during which the drain task
    consumes acknowledgments alongside the send loop (see
    ``StreamWorker.draining``). ``DRAINING`` is the shutdown phase: the
    stream is half-closed and only outstanding acknowledgments are awaited.
    """
    IDLE = "idle"
    CONNECTED = "connected"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(frozen=True)
class WorkItem:
    """A single put handed from the producer to a worker."""
    key: bytes
    value: bytes

    @property
    def is_delete(self) -> bool:
        return len(self.value) == 0


@dataclass(frozen=True)
class TraceRecord:
    """One line of a twemcache-style cache trace."""
    timestamp: float
    key: str
    key_size: int
    value_size: int
    client_id: str
    operation: Operation
    ttl: int
