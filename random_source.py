"""Injectable uniform random sources."""

from typing import Protocol, Union

import numpy as np


class UniformRandomSource(Protocol):
    """Anything that can hand out uniform doubles and bounded integers."""

    def next_double(self) -> float:
        """Return a float in [0, 1)."""
        ...

    def next_int(self, bound: int) -> int:
        """Return an int in [0, bound)."""
        ...


class NumpyRandomSource:
    """UniformRandomSource backed by a numpy Generator.

    One instance belongs to one clustering invocation (or one thread);
    instances are not shared across concurrent runs.
    """

    def __init__(self, seed: Union[None, int, np.random.SeedSequence] = None):
        self.generator = np.random.default_rng(seed)

    def next_double(self) -> float:
        return float(self.generator.random())

    def next_int(self, bound: int) -> int:
        if bound <= 0:
            raise ValueError(f"bound must be positive, got {bound}")
        return int(self.generator.integers(bound))
