"""Key and value synthesis for the open-loop put benchmark."""

import random
from typing import Iterator, Optional

from .errors import ConfigError
from .types import WorkItem

ID_WIDTH = 8


class KeySynthesizer:
    """Produces fixed-width keys drawn from a bounded key space.

    With a key space of one every key is the same all-zero buffer, which
    turns the run into a single-key write contention test. Otherwise each
    key carries a uniformly drawn id encoded as an 8-byte big-endian
    integer, zero padded on the left or truncated to its low-order bytes
    to fit ``key_size``.
    """

    def __init__(self, key_size: int, key_space: int,
                 rng: Optional[random.Random] = None):
        if key_size < 1:
            raise ConfigError(f"key size must be >= 1, got {key_size}")
        if key_space < 1:
            raise ConfigError(f"key space must be >= 1, got {key_space}")
        self.key_size = key_size
        self.key_space = key_space
        self.rng = rng or random.Random()
        self._const_key = bytes(key_size)

    def encode(self, key_id: int) -> bytes:
        id8 = key_id.to_bytes(ID_WIDTH, "big")
        if self.key_size >= ID_WIDTH:
            return bytes(self.key_size - ID_WIDTH) + id8
        return id8[ID_WIDTH - self.key_size:]

    def next_key(self) -> bytes:
        if self.key_space <= 1:
            return self._const_key
        return self.encode(self.rng.randrange(self.key_space))


def make_value(size: int, rng: Optional[random.Random] = None) -> bytes:
    """Random payload shared by every put of a run."""
    if size < 1:
        raise ConfigError(f"value size must be >= 1, got {size}")
    return (rng or random.Random()).randbytes(size)


def generate_work_items(total: int, keygen: KeySynthesizer,
                        value: bytes) -> Iterator[WorkItem]:
    for _ in range(total):
        yield WorkItem(key=keygen.next_key(), value=value)
