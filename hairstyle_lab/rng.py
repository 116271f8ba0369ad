from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional, Sequence, TypeVar

T = TypeVar("T")


@dataclass(slots=True)
class DeterministicRNG:
    """Seedable randomness for genome breeding; ``seed=None`` draws from the OS."""

    seed: Optional[int]
    _random: random.Random = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._random = random.Random(self.seed)

    def choice(self, seq: Sequence[T]) -> T:
        if not seq:
            raise ValueError("choice on empty sequence")
        return self._random.choice(seq)

    def maybe(self, probability: float) -> bool:
        return self._random.random() < probability

    def parents(self, pool: Sequence[T]) -> tuple[T, T]:
        """Pick two parents, distinct whenever the pool allows it."""

        if not pool:
            raise ValueError("parents from empty pool")
        if len(pool) == 1:
            return pool[0], pool[0]
        first, second = self._random.sample(range(len(pool)), 2)
        return pool[first], pool[second]
