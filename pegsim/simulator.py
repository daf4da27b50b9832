"""
Dry-run pricing of rebalancing actions.

Every probe is a pure function of a frozen MarketSnapshot: nothing live is
touched, so any number of probes leaves balances, reserves and configuration
exactly as they were. A probe that cannot run returns a failed ProbeResult
rather than a zero price.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional
import logging

from .actions import ActionKind
from .core import get_amount_out, spot_price

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketSnapshot:
    reserve_reference: int
    reserve_managed: int
    lp_total_supply: int
    idle_reference: int
    lp_balance: int
    fee_bps: int

    @property
    def spot(self) -> int:
        return spot_price(self.reserve_reference, self.reserve_managed)


@dataclass(frozen=True)
class ProbeResult:
    """`undersized` marks failures a larger amount could clear (dust output)."""

    ok: bool
    price: Optional[int] = None
    reason: str = "ok"
    undersized: bool = False

    @classmethod
    def success(cls, price: int) -> "ProbeResult":
        return cls(ok=True, price=int(price))

    @classmethod
    def failure(cls, reason: str, undersized: bool = False) -> "ProbeResult":
        return cls(ok=False, price=None, reason=reason, undersized=undersized)


def simulate_buy_and_burn(snap: MarketSnapshot, amount: int) -> ProbeResult:
    """Spend `amount` idle reference on managed tokens and burn them."""
    if amount < 0:
        return ProbeResult.failure("negative_amount")
    if amount == 0:
        return ProbeResult.success(snap.spot)
    if amount > snap.idle_reference:
        return ProbeResult.failure("exceeds_idle_balance")
    bought = get_amount_out(amount, snap.reserve_reference, snap.reserve_managed, snap.fee_bps)
    if bought <= 0:
        return ProbeResult.failure("zero_output", undersized=True)
    if bought >= snap.reserve_managed:
        return ProbeResult.failure("insufficient_liquidity")
    return ProbeResult.success(spot_price(snap.reserve_reference + amount, snap.reserve_managed - bought))


def simulate_withdraw_buy_and_burn(snap: MarketSnapshot, lp_amount: int) -> ProbeResult:
    """Unwind `lp_amount` LP, buy managed with the reference leg, burn all managed."""
    if lp_amount < 0:
        return ProbeResult.failure("negative_amount")
    if lp_amount == 0:
        return ProbeResult.success(snap.spot)
    if lp_amount > snap.lp_balance:
        return ProbeResult.failure("exceeds_lp_balance")
    if snap.lp_total_supply <= 0:
        return ProbeResult.failure("empty_pool")
    ref_out = lp_amount * snap.reserve_reference // snap.lp_total_supply
    managed_out = lp_amount * snap.reserve_managed // snap.lp_total_supply
    if ref_out <= 0 or managed_out <= 0:
        return ProbeResult.failure("insufficient_liquidity_burned", undersized=True)
    reserve_ref = snap.reserve_reference - ref_out
    reserve_managed = snap.reserve_managed - managed_out
    if reserve_ref <= 0 or reserve_managed <= 0:
        return ProbeResult.failure("pool_drained")
    bought = get_amount_out(ref_out, reserve_ref, reserve_managed, snap.fee_bps)
    if bought <= 0:
        return ProbeResult.success(spot_price(reserve_ref, reserve_managed))
    if bought >= reserve_managed:
        return ProbeResult.failure("insufficient_liquidity")
    return ProbeResult.success(spot_price(reserve_ref + ref_out, reserve_managed - bought))


def simulate_mint_and_sell(snap: MarketSnapshot, amount: int) -> ProbeResult:
    """Mint `amount` managed and sell it into the pool for reference."""
    if amount < 0:
        return ProbeResult.failure("negative_amount")
    if amount == 0:
        return ProbeResult.success(snap.spot)
    received = get_amount_out(amount, snap.reserve_managed, snap.reserve_reference, snap.fee_bps)
    if received <= 0:
        return ProbeResult.failure("zero_output", undersized=True)
    if received >= snap.reserve_reference:
        return ProbeResult.failure("insufficient_liquidity")
    return ProbeResult.success(spot_price(snap.reserve_reference - received, snap.reserve_managed + amount))


def simulate_liquidity_deposit(snap: MarketSnapshot, reference_amount: int) -> int:
    """LP that depositing `reference_amount` plus its matched managed leg would mint."""
    if reference_amount <= 0 or snap.reserve_reference <= 0 or snap.reserve_managed <= 0:
        return 0
    managed_amount = reference_amount * snap.reserve_managed // snap.reserve_reference
    if managed_amount <= 0:
        return 0
    return min(
        reference_amount * snap.lp_total_supply // snap.reserve_reference,
        managed_amount * snap.lp_total_supply // snap.reserve_managed,
    )


_PROBES: Dict[ActionKind, Callable[[MarketSnapshot, int], ProbeResult]] = {
    ActionKind.BUY_AND_BURN: simulate_buy_and_burn,
    ActionKind.WITHDRAW_BUY_AND_BURN: simulate_withdraw_buy_and_burn,
    ActionKind.MINT_AND_SELL: simulate_mint_and_sell,
}


class Simulator:
    def __init__(self, snapshot: MarketSnapshot) -> None:
        self.snapshot = snapshot
        self.probes = 0

    def probe(self, action: ActionKind, amount: int) -> ProbeResult:
        fn = _PROBES.get(action)
        if fn is None:
            return ProbeResult.failure("not_simulable")
        self.probes += 1
        result = fn(self.snapshot, int(amount))
        logger.debug("probe action=%s amount=%d ok=%s price=%s reason=%s",
                     action.value, amount, result.ok, result.price, result.reason)
        return result

    def bind(self, action: ActionKind) -> Callable[[int], ProbeResult]:
        return lambda amount: self.probe(action, amount)
