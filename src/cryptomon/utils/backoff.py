from __future__ import annotations

import random
from typing import Iterator


def next_backoff(prev: float, cap: float) -> float:
    """Exponential backoff progression with cap (no jitter)."""
    return min(prev * 2.0, cap)


def jitter(v: float, *, ratio: float = 0.2) -> float:
    """
    Add ±ratio jitter. ratio=0.2 -> multiply by [0.8, 1.2].
    """
    return v * random.uniform(1.0 - ratio, 1.0 + ratio)


def backoff_iter(initial: float = 0.25, cap: float = 30.0) -> Iterator[float]:
    """
    Deterministic (no jitter) iterator of backoff values:
    0.25, 0.5, 1, 2, 4, ... (capped).
    """
    v = min(initial, cap)
    while True:
        yield v
        v = next_backoff(v, cap)


class Backoff:
    """
    Stateful counterpart of backoff_iter for code that backs off across calls
    (provider cooldowns, delivery retries). `current` is 0 until the first
    step and goes back to 0 on reset().
    """
    __slots__ = ("initial", "cap", "current")

    def __init__(self, initial: float, cap: float):
        self.initial = max(0.0, initial)
        self.cap = max(cap, self.initial)
        self.current = 0.0

    def step(self) -> float:
        self.current = self.initial if self.current <= 0 else next_backoff(self.current, self.cap)
        return self.current

    def reset(self) -> None:
        self.current = 0.0
