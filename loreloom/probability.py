"""
Stochastic activation gate.

Each candidate entry survives independently with probability
``entry.probability / 100``. The random source is injected so tests can pin
the outcome; pass a seeded ``random.Random`` or any object with a
``random()`` method.
"""

import random
from typing import Optional

from loreloom.models import WorldBookEntry


class ProbabilityGate:
    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def passes(self, entry: WorldBookEntry) -> bool:
        if entry.probability >= 100:
            return True
        if entry.probability <= 0:
            return False
        return self.rng.random() * 100 < entry.probability


class AlwaysAccept(ProbabilityGate):
    """Gate that accepts every candidate, regardless of probability."""

    def passes(self, entry: WorldBookEntry) -> bool:
        return True
