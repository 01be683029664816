"""
Seeded pseudo-random generator for reproducible simulations.

The generator keeps a single 32-bit integer of state.  The seed string is
folded into that integer with a multiply-rotate hash and every draw mixes
the state with a murmur-style finaliser.  Because the state is one
integer it can be written to a checkpoint and restored exactly: a
generator rebuilt with ``from_state(rng.state)`` yields the same
remaining sequence as the original.
"""

from __future__ import annotations

MASK32 = 0xFFFFFFFF


def _imul(a: int, b: int) -> int:
    return (a * b) & MASK32


def fold_seed(seed: str) -> int:
    """Fold a seed string into a 32-bit state."""
    h = (1779033703 ^ len(seed)) & MASK32
    for ch in seed:
        h = _imul(h ^ ord(ch), 3432918353)
        h = ((h << 13) | (h >> 19)) & MASK32
    return h


class DeterministicRandom:
    """Uniform floats in ``[0, 1)`` from a seed string."""

    def __init__(self, seed: str) -> None:
        self._state = fold_seed(seed)

    @classmethod
    def from_state(cls, state: int) -> "DeterministicRandom":
        rng = cls.__new__(cls)
        rng._state = int(state) & MASK32
        return rng

    @property
    def state(self) -> int:
        return self._state

    def random(self) -> float:
        h = self._state
        h = _imul(h ^ (h >> 16), 2246822507)
        h = _imul(h ^ (h >> 13), 3266489909)
        h ^= h >> 16
        self._state = h
        return h / 4294967296.0

    def uniform(self, low: float, high: float) -> float:
        return low + (high - low) * self.random()
