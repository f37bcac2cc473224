# Copyright (c) Syntropy Systems
"""Random streams for simulation runs.

There is no process-wide generator. A run either threads one explicitly
seeded generator through its rows in order (``shared``), or gives every
row its own generator seeded from ``base_seed ^ row_index``
(``per_row``). Only ``per_row`` is reproducible under parallel execution.
"""
from __future__ import annotations

from enum import Enum

import numpy as np

SEED_MASK = 2**63 - 1


class StreamPolicy(str, Enum):
    """How rows obtain their random generator."""

    PER_ROW = "per_row"
    SHARED = "shared"


def row_seed(base_seed: int, index: int) -> int:
    """Seed of the independent sub-stream for one row or outer iteration."""
    return (base_seed ^ index) & SEED_MASK


def make_generator(seed: int) -> np.random.Generator:
    """Create a generator for an explicit seed."""
    return np.random.default_rng(seed & SEED_MASK)


class RandomStreams:
    """Hands out generators for rows according to a stream policy."""

    base_seed: int
    policy: StreamPolicy
    _shared: np.random.Generator | None

    def __init__(self, base_seed: int, policy: StreamPolicy | str = StreamPolicy.PER_ROW) -> None:
        self.base_seed = base_seed
        self.policy = StreamPolicy(policy)
        # Seeded exactly once, before any row is realized.
        self._shared = make_generator(base_seed) if self.policy is StreamPolicy.SHARED else None

    @property
    def parallel_safe(self) -> bool:
        """Whether rows may be executed concurrently."""
        return self.policy is StreamPolicy.PER_ROW

    def for_row(self, index: int) -> np.random.Generator:
        """Generator a row at ``index`` must draw from."""
        if self._shared is not None:
            return self._shared
        return make_generator(row_seed(self.base_seed, index))
