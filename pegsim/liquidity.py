from __future__ import annotations
from typing import Tuple
import logging

from .core import Gauge, ManagedToken, Pair, Token
from .errors import InsufficientFunds

logger = logging.getLogger(__name__)


class LiquidityDesk:
    """
    Moves the controller's tokens in and out of the pair and the gauge.
    All amounts are oriented as (reference, managed).
    """

    def __init__(self, owner: str, pair: Pair, gauge: Gauge, reference: Token,
                 managed: ManagedToken, reference_is_token0: bool) -> None:
        self.owner = owner
        self.pair = pair
        self.gauge = gauge
        self.reference = reference
        self.managed = managed
        self.reference_is_token0 = reference_is_token0

    # -----------------------------
    # Views
    # -----------------------------
    def reserves(self) -> Tuple[int, int]:
        r0, r1 = self.pair.reserves()
        return (r0, r1) if self.reference_is_token0 else (r1, r0)

    def staked(self) -> int:
        return self.gauge.balance_of(self.owner)

    def unstaked(self) -> int:
        return self.pair.balance_of(self.owner)

    def lp_balance(self) -> int:
        return self.staked() + self.unstaked()

    def position(self) -> Tuple[int, int]:
        total = self.pair.total_supply
        if total <= 0:
            return 0, 0
        lp = self.lp_balance()
        reserve_ref, reserve_managed = self.reserves()
        return lp * reserve_ref // total, lp * reserve_managed // total

    def quote_managed(self, reference_amount: int) -> int:
        reserve_ref, reserve_managed = self.reserves()
        if reserve_ref <= 0:
            return reference_amount
        return reference_amount * reserve_managed // reserve_ref

    def lp_for_reference(self, reference_amount: int) -> int:
        reserve_ref, _ = self.reserves()
        total = self.pair.total_supply
        if reserve_ref <= 0 or total <= 0:
            raise InsufficientFunds("empty_pool", {"requested": reference_amount})
        return -(-reference_amount * total // reserve_ref)

    def _orient_out(self, reference_out: int, managed_out: int) -> Tuple[int, int]:
        if self.reference_is_token0:
            return reference_out, managed_out
        return managed_out, reference_out

    # -----------------------------
    # Swaps
    # -----------------------------
    def swap_reference_for_managed(self, amount: int) -> int:
        bought = self.pair.get_amount_out(amount, self.reference)
        if bought <= 0:
            return 0
        self.reference.transfer(self.owner, self.pair.address, amount)
        self.pair.swap(*self._orient_out(0, bought), to=self.owner)
        return bought

    def swap_managed_for_reference(self, amount: int) -> int:
        received = self.pair.get_amount_out(amount, self.managed)
        if received <= 0:
            return 0
        self.managed.transfer(self.owner, self.pair.address, amount)
        self.pair.swap(*self._orient_out(received, 0), to=self.owner)
        return received

    # -----------------------------
    # Liquidity
    # -----------------------------
    def add_liquidity(self, reference_desired: int, managed_desired: int) -> Tuple[int, int, int]:
        """
        Deposit at the current reserve ratio. Returns (reference_used,
        managed_used, lp_minted); nothing moves when no LP would be minted.
        """
        reserve_ref, reserve_managed = self.reserves()
        total = self.pair.total_supply
        if reserve_ref == 0 and reserve_managed == 0:
            use_ref, use_managed = reference_desired, managed_desired
        else:
            managed_optimal = reference_desired * reserve_managed // reserve_ref
            if managed_optimal <= managed_desired:
                use_ref, use_managed = reference_desired, managed_optimal
            else:
                use_ref = managed_desired * reserve_ref // reserve_managed
                use_managed = managed_desired
            expected = min(use_ref * total // reserve_ref, use_managed * total // reserve_managed)
            if expected <= 0:
                return 0, 0, 0
        if use_ref <= 0 or use_managed <= 0:
            return 0, 0, 0
        self.reference.transfer(self.owner, self.pair.address, use_ref)
        self.managed.transfer(self.owner, self.pair.address, use_managed)
        lp = self.pair.mint(self.owner)
        logger.debug("add_liquidity ref=%d managed=%d lp=%d", use_ref, use_managed, lp)
        return use_ref, use_managed, lp

    def remove_liquidity(self, lp_amount: int) -> Tuple[int, int]:
        """Burn LP, drawing on unstaked LP before unstaking from the gauge."""
        if lp_amount > self.lp_balance():
            raise InsufficientFunds("insufficient_lp", {"requested": lp_amount, "available": self.lp_balance()})
        shortfall = lp_amount - self.unstaked()
        if shortfall > 0:
            self.unstake(shortfall)
        self.pair.transfer(self.owner, self.pair.address, lp_amount)
        amount0, amount1 = self.pair.burn(self.owner)
        ref_out, managed_out = (amount0, amount1) if self.reference_is_token0 else (amount1, amount0)
        logger.debug("remove_liquidity lp=%d ref=%d managed=%d", lp_amount, ref_out, managed_out)
        return ref_out, managed_out

    def stake(self, lp_amount: int) -> None:
        if lp_amount > 0:
            self.gauge.deposit(self.owner, lp_amount)

    def unstake(self, lp_amount: int) -> None:
        if lp_amount > 0:
            self.gauge.withdraw(self.owner, lp_amount)
