"""Price sources: pool-derived spot price and a time-weighted reference price."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Tuple
import logging

from .core import Clock, Pair, Token, spot_price
from .errors import InvalidPair

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceSnapshot:
    twap: int
    spot: int

    def below(self, floor_price: int) -> bool:
        return self.twap < floor_price and self.spot < floor_price

    def above(self, cap_price: int) -> bool:
        return self.twap > cap_price and self.spot > cap_price


class SpotOracle:
    """Instantaneous managed-token price read off the pair's reserves."""

    def __init__(self, pair: Pair, reference: Token, clock: Clock) -> None:
        if reference is pair.token0:
            self.reference_is_token0 = True
        elif reference is pair.token1:
            self.reference_is_token0 = False
        else:
            raise InvalidPair("reference_not_in_pair", {"pair": pair.address, "token": reference.symbol})
        self.pair = pair
        self.clock = clock

    def oriented_reserves(self) -> Tuple[int, int]:
        r0, r1 = self.pair.reserves()
        return (r0, r1) if self.reference_is_token0 else (r1, r0)

    def current_spot_price(self) -> Tuple[int, int]:
        reserve_ref, reserve_managed = self.oriented_reserves()
        return self.clock.now, spot_price(reserve_ref, reserve_managed)


class TwapOracle:
    """
    Round-based TWAP over recorded spot observations.

    Each observation holds until the next one; the last one holds until now.
    A pinned price overrides the computed average.
    """

    def __init__(self, spot_oracle: SpotOracle, window: int, max_observations: int = 512) -> None:
        self.spot_oracle = spot_oracle
        self.clock = spot_oracle.clock
        self.window = max(1, int(window))
        self.observations: Deque[Tuple[int, int]] = deque(maxlen=max_observations)
        self.round_id = 0
        self.started_at = self.clock.now
        self.pinned_price: Optional[int] = None

    def record(self) -> None:
        ts, price = self.spot_oracle.current_spot_price()
        if self.observations and self.observations[-1][0] == ts:
            self.observations[-1] = (ts, price)
        else:
            self.observations.append((ts, price))
        self.round_id += 1

    def set_price(self, price: Optional[int]) -> None:
        self.pinned_price = None if price is None else int(price)
        self.round_id += 1

    def _average(self) -> int:
        now = self.clock.now
        if not self.observations:
            return self.spot_oracle.current_spot_price()[1]
        start = now - self.window
        weighted = 0
        elapsed = 0
        obs = list(self.observations)
        for idx, (ts, price) in enumerate(obs):
            end = obs[idx + 1][0] if idx + 1 < len(obs) else now
            lo = max(ts, start)
            if end <= lo:
                continue
            weighted += price * (end - lo)
            elapsed += end - lo
        if elapsed == 0:
            return obs[-1][1]
        return weighted // elapsed

    def latest_twap(self) -> Tuple[int, int, int, int, int]:
        price = self.pinned_price if self.pinned_price is not None else self._average()
        updated_at = self.observations[-1][0] if self.observations else self.started_at
        return self.round_id, price, self.started_at, updated_at, self.round_id


def read_snapshot(spot_oracle: SpotOracle, twap_oracle: TwapOracle) -> PriceSnapshot:
    _ts, spot = spot_oracle.current_spot_price()
    _round, twap, _started, _updated, _answered = twap_oracle.latest_twap()
    return PriceSnapshot(twap=int(twap), spot=int(spot))
