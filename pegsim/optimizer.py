"""
Bounded search for the trade size that lands price closest to target.

The search assumes the probed price responds monotonically to the amount in
the given direction (true for a one-sided trade against a single
constant-product pool). It is not checked at runtime.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
import logging

from .core import TARGET_PRICE
from .simulator import ProbeResult

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    RAISES_PRICE = "raises_price"
    LOWERS_PRICE = "lowers_price"


@dataclass(frozen=True)
class OptimizationResult:
    score: Optional[int]
    amount: int
    probes: int

    def improves_on(self, current_score: int) -> bool:
        return self.score is not None and self.score < current_score


def peg_distance(price: int, target: int = TARGET_PRICE) -> int:
    return abs(int(price) - int(target))


def optimize(
    probe: Callable[[int], ProbeResult],
    max_amount: int,
    direction: Direction,
    target: int = TARGET_PRICE,
) -> OptimizationResult:
    max_amount = max(0, int(max_amount))
    probes = 0
    best_score: Optional[int] = None
    best_amount = 0

    # upper boundary seeds the optimum
    result = probe(max_amount)
    probes += 1
    if result.ok:
        best_score = peg_distance(result.price, target)
        best_amount = max_amount

    lo, hi = 0, max_amount
    while lo <= hi:
        mid = (lo + hi) // 2
        res = probe(mid)
        probes += 1
        if not res.ok:
            if res.undersized:
                lo = mid + 1
            else:
                hi = mid - 1
            continue
        score = peg_distance(res.price, target)
        if best_score is None or score < best_score:
            best_score = score
            best_amount = mid
        if direction is Direction.RAISES_PRICE:
            too_far = res.price > target
        else:
            too_far = res.price <= target
        if too_far:
            hi = mid - 1
        else:
            lo = mid + 1

    logger.debug("optimize direction=%s max=%d best_amount=%d best_score=%s probes=%d",
                 direction.value, max_amount, best_amount, best_score, probes)
    return OptimizationResult(score=best_score, amount=best_amount, probes=probes)
