"""Weighted sampling without replacement."""

from __future__ import annotations

import math
import random
from typing import Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")


def _safe_weight(value: object) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


class WeightedSampler:
    """Draws distinct items one at a time, proportionally to their weight.

    Weights are recomputed on every draw because the weight function may carry
    fresh jitter per call. When every remaining weight is zero the draw falls
    back to a uniform pick so that sampling always makes progress.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()

    def sample(self, pool: Sequence[T], k: int, weight_fn: Callable[[T], float]) -> List[T]:
        remaining = list(pool)
        picked: List[T] = []
        for _ in range(max(0, int(k))):
            if not remaining:
                break
            weights = [_safe_weight(weight_fn(item)) for item in remaining]
            index = self._draw(weights)
            picked.append(remaining.pop(index))
        return picked

    def _draw(self, weights: Sequence[float]) -> int:
        total = sum(weights)
        if total <= 0:
            return self.rng.randrange(len(weights))

        target = self.rng.random() * total
        running = 0.0
        last_positive = 0
        for index, weight in enumerate(weights):
            if weight <= 0:
                continue
            last_positive = index
            running += weight
            if running > target:
                return index
        # float rounding can leave the target just past the final sum
        return last_positive


def weighted_sample(
    pool: Sequence[T],
    k: int,
    weight_fn: Callable[[T], float],
    rng: Optional[random.Random] = None,
) -> List[T]:
    return WeightedSampler(rng).sample(pool, k, weight_fn)
