"""Regime classification and next-action selection. Nothing here mutates state."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging

from .actions import ActionKind, NO_ACTION, Proposal
from .optimizer import Direction, optimize, peg_distance
from .oracle import PriceSnapshot
from .simulator import MarketSnapshot, Simulator, simulate_liquidity_deposit

logger = logging.getLogger(__name__)


class Regime(str, Enum):
    PAUSED = "paused"
    BELOW_FLOOR = "below_floor"
    ABOVE_CAP = "above_cap"
    IN_BAND = "in_band"


def classify(prices: PriceSnapshot, floor_price: int, cap_price: int, paused: bool = False) -> Regime:
    """Both twap and spot must agree before a price counts as out of band."""
    if paused:
        return Regime.PAUSED
    if prices.below(floor_price):
        return Regime.BELOW_FLOOR
    if prices.above(cap_price):
        return Regime.ABOVE_CAP
    return Regime.IN_BAND


@dataclass(frozen=True)
class DecisionInputs:
    prices: PriceSnapshot
    market: MarketSnapshot
    floor_price: int
    cap_price: int
    paused: bool
    now: int
    last_harvest: int
    harvest_cooldown: int


def _rebalance(inputs: DecisionInputs, regime: Regime) -> Proposal:
    market = inputs.market
    current_score = peg_distance(inputs.prices.spot)
    sim = Simulator(market)

    if regime is Regime.BELOW_FLOOR:
        best = optimize(sim.bind(ActionKind.BUY_AND_BURN), market.idle_reference, Direction.RAISES_PRICE)
        if best.improves_on(current_score) and best.amount > 0:
            return Proposal(ActionKind.BUY_AND_BURN, best.amount)
        best = optimize(sim.bind(ActionKind.WITHDRAW_BUY_AND_BURN), market.lp_balance, Direction.RAISES_PRICE)
        if best.improves_on(current_score) and best.amount > 0:
            return Proposal(ActionKind.WITHDRAW_BUY_AND_BURN, best.amount)
        return NO_ACTION

    if regime is Regime.ABOVE_CAP:
        # one managed unit trades for one reference unit at peg
        ceiling = market.reserve_reference
        best = optimize(sim.bind(ActionKind.MINT_AND_SELL), ceiling, Direction.LOWERS_PRICE)
        if best.improves_on(current_score) and best.amount > 0:
            return Proposal(ActionKind.MINT_AND_SELL, best.amount)
        return NO_ACTION

    # dust that cannot mint LP is left idle
    if regime is Regime.IN_BAND and simulate_liquidity_deposit(market, market.idle_reference) > 0:
        return Proposal(ActionKind.MINT_AND_ADD_LIQUIDITY, market.idle_reference)

    return NO_ACTION


def determine_next_action(inputs: DecisionInputs) -> Proposal:
    regime = classify(inputs.prices, inputs.floor_price, inputs.cap_price, inputs.paused)
    proposal = NO_ACTION if regime is Regime.PAUSED else _rebalance(inputs, regime)

    if proposal.empty and inputs.now - inputs.last_harvest >= inputs.harvest_cooldown:
        proposal = Proposal(ActionKind.HARVEST, 0)

    logger.debug(
        "decision regime=%s twap=%d spot=%d proposal=%s",
        regime.value,
        inputs.prices.twap,
        inputs.prices.spot,
        proposal.to_dict(),
    )
    return proposal
