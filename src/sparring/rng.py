"""Random sources for the move picker.

Every stochastic decision the picker makes (book exit, imperfection rolls,
weighted sampling) draws from one of these. A seeded source replays the
same stream for the same seed; the entropy source is for live play.
"""

from __future__ import annotations

import random
from typing import Protocol

UINT32_MASK = 0xFFFF_FFFF
# Substitute for a zero seed so every seed yields a distinct stream.
ZERO_SEED_SUBSTITUTE = 0x9E37_79B9


class Rng(Protocol):
    seed_value: int | None

    def random(self) -> float: ...


def hash_seed(text: str) -> int:
    """31-multiplier rolling hash, truncated to 32 bits."""
    h = 0
    for ch in text:
        h = (31 * h + ord(ch)) & UINT32_MASK
    return h


def normalize_seed(seed: int | str) -> int:
    if isinstance(seed, str):
        value = hash_seed(seed)
    else:
        value = int(seed) & UINT32_MASK
    return value or ZERO_SEED_SUBSTITUTE


class SeededRandom(random.Random):
    """Reproducible stream keyed by a 32-bit integer or a string."""

    def __init__(self, seed: int | str):
        self.seed_value = normalize_seed(seed)
        super().__init__(self.seed_value)


class EntropyRandom(random.SystemRandom):
    """OS-entropy stream; never reproducible."""

    seed_value = None


def create_rng(seed: int | str | None = None) -> Rng:
    if seed is None:
        return EntropyRandom()
    return SeededRandom(seed)


def weighted_index(weights: list[float], rng: Rng) -> int:
    """Draw an index with probability proportional to its weight.

    Falls back to the last index when rounding leaves a remainder.
    """
    total = sum(weights)
    r = rng.random() * total
    for i, w in enumerate(weights):
        r -= w
        if r <= 0:
            return i
    return len(weights) - 1


def uniform_index(n: int, rng: Rng) -> int:
    return min(n - 1, int(rng.random() * n))
