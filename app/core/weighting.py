"""
Multi-touch weighting: 40/20/40 split over an ordered chain.

  N = 0   → first 1.0, last 0.0 (organic)
  N = 1   → first 0.0, last 0.6 (the single touch is NOT boosted to 1.0)
  N = 2   → first 0.4, last 0.4
  N >= 3  → first 0.4, last 0.4, each middle 0.2 / (N - 2)

Pure: the weights depend only on the chain length, never on how the chain
was obtained.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field

FIRST_TOUCH_WEIGHT = 0.4
LAST_TOUCH_WEIGHT = 0.4
MIDDLE_POOL_WEIGHT = 0.2
SINGLE_TOUCH_WEIGHT = 0.6
ORGANIC_FIRST_TOUCH_WEIGHT = 1.0


@dataclass(frozen=True)
class TouchWeights:
    first: float
    last: float
    middles: tuple[float, ...] = field(default_factory=tuple)

    @property
    def total(self) -> float:
        return self.first + self.last + sum(self.middles)


def allocate_weights(chain: Sequence) -> TouchWeights:
    n = len(chain)
    if n == 0:
        return TouchWeights(first=ORGANIC_FIRST_TOUCH_WEIGHT, last=0.0)
    if n == 1:
        return TouchWeights(first=0.0, last=SINGLE_TOUCH_WEIGHT)
    if n == 2:
        return TouchWeights(first=FIRST_TOUCH_WEIGHT, last=LAST_TOUCH_WEIGHT)

    middle = MIDDLE_POOL_WEIGHT / (n - 2)
    return TouchWeights(
        first=FIRST_TOUCH_WEIGHT,
        last=LAST_TOUCH_WEIGHT,
        middles=tuple(middle for _ in range(n - 2)),
    )
