"""Random source shared by the engine, the cycle updaters and the tool inventory.

Every probability draw in the simulation goes through a ``RandomSource`` so
that a fleet can be seeded for reproducible runs, and tests can replace the
draws with scripted values.
"""

import random
from typing import Optional, Sequence, TypeVar

from faker import Faker

T = TypeVar("T")


class RandomSource:
    """Uniform draws backed by a Faker generator."""

    def __init__(self, seed: Optional[int] = None):
        self._fake = Faker()
        if seed is not None:
            self._fake.seed_instance(seed)

    @property
    def random(self) -> random.Random:
        return self._fake.random

    def chance(self, probability: float) -> bool:
        """Return True with the given per-draw probability."""
        return self.random.random() < probability

    def uniform(self, low: float, high: float) -> float:
        """Uniform sample in ``[low, high)``."""
        return low + self.random.random() * (high - low)

    def randint(self, low: int, high: int) -> int:
        """Uniform integer in ``[low, high]``."""
        return self.random.randint(low, high)

    def choice(self, options: Sequence[T]) -> T:
        return self.random.choice(options)

    def program_number(self) -> str:
        """Haas-style program number, O1000 to O9999."""
        return self._fake.bothify("O%###")
