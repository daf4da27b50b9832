from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple
from collections import deque
import copy
import logging
import math

from .errors import InsufficientBalance, InsufficientLiquidity, LedgerError, Unauthorized

logger = logging.getLogger(__name__)

PRICE_PRECISION = 10 ** 8
TARGET_PRICE = 100_000_000
FEE_DENOMINATOR = 10_000
MINIMUM_LIQUIDITY = 1000
REWARD_PRECISION = 10 ** 18
DEAD_ADDRESS = "dead"

def format_inventory(inv: Dict[str, int]) -> str:
    if not inv:
        return "(empty)"
    items = sorted(inv.items(), key=lambda kv: kv[0])
    return ", ".join(f"{holder}:{amount}" for holder, amount in items)

# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    tick: int
    event_type: str
    actor_id: Optional[str] = None
    asset_id: Optional[str] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]


# -----------------------------
# Clock
# -----------------------------
class Clock:
    def __init__(self, start: int = 0) -> None:
        self.now = int(start)
        self.tick = 0

    def advance(self, seconds: int) -> None:
        self.now += int(seconds)
        self.tick += 1


# -----------------------------
# Checkpointing
# -----------------------------
class Ledgered:
    """Mixin for objects whose state can be checkpointed and rolled back."""

    _ledger_fields: Tuple[str, ...] = ()

    def checkpoint(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._ledger_fields}

    def restore(self, saved: dict) -> None:
        for name, value in saved.items():
            setattr(self, name, value)

@contextmanager
def atomic(*participants: Ledgered) -> Iterator[None]:
    """
    Run the body as one all-or-nothing call: if it raises, every participant is
    restored to its state at entry and the exception propagates.
    """
    saved = [(p, p.checkpoint()) for p in participants]
    try:
        yield
    except Exception:
        for p, state in saved:
            p.restore(state)
        raise


# -----------------------------
# Tokens
# -----------------------------
class Token(Ledgered):
    _ledger_fields = ("balances", "total_supply")

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        self.balances: Dict[str, int] = {}
        self.total_supply: int = 0
        self.debug_inventory: bool = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.symbol!r})"

    def _debug_change(self, action: str, holder: str, amount: int, before: Dict[str, int]) -> None:
        if not self.debug_inventory or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[INV] token=%s action=%s holder=%s amount=%d before={ %s } after={ %s }",
            self.symbol,
            action,
            holder,
            amount,
            format_inventory(before),
            format_inventory(self.balances),
        )

    def balance_of(self, holder: str) -> int:
        return int(self.balances.get(holder, 0))

    def _credit(self, holder: str, amount: int) -> None:
        self.balances[holder] = self.balance_of(holder) + amount

    def _debit(self, holder: str, amount: int) -> None:
        bal = self.balance_of(holder)
        if bal < amount:
            raise InsufficientBalance(
                "insufficient_balance",
                {"token": self.symbol, "holder": holder, "balance": bal, "amount": amount},
            )
        if bal == amount:
            self.balances.pop(holder, None)
        else:
            self.balances[holder] = bal - amount

    def transfer(self, sender: str, to: str, amount: int) -> None:
        amount = int(amount)
        if amount < 0:
            raise LedgerError("negative_amount", {"token": self.symbol})
        if amount == 0:
            return
        before = dict(self.balances) if self.debug_inventory else {}
        self._debit(sender, amount)
        self._credit(to, amount)
        self._debug_change("transfer", f"{sender}->{to}", amount, before)

    def mint(self, to: str, amount: int) -> None:
        amount = int(amount)
        if amount < 0:
            raise LedgerError("negative_amount", {"token": self.symbol})
        before = dict(self.balances) if self.debug_inventory else {}
        self._credit(to, amount)
        self.total_supply += amount
        self._debug_change("mint", to, amount, before)

    def burn(self, holder: str, amount: int) -> None:
        amount = int(amount)
        if amount < 0:
            raise LedgerError("negative_amount", {"token": self.symbol})
        before = dict(self.balances) if self.debug_inventory else {}
        self._debit(holder, amount)
        self.total_supply -= amount
        self._debug_change("burn", holder, amount, before)

class ManagedToken(Token):
    """Token whose supply can only be expanded by registered minters."""

    _ledger_fields = ("balances", "total_supply", "minters")

    def __init__(self, symbol: str) -> None:
        super().__init__(symbol)
        self.minters: Set[str] = set()

    def add_minter(self, identity: str) -> None:
        self.minters.add(identity)

    def mint_as(self, caller: str, to: str, amount: int) -> None:
        if caller not in self.minters:
            raise Unauthorized("not_minter", {"caller": caller, "token": self.symbol})
        self.mint(to, amount)

class Minter:
    """Mint capability of one identity over a managed token."""

    def __init__(self, token: ManagedToken, identity: str) -> None:
        self.token = token
        self.identity = identity

    def mint(self, to: str, amount: int) -> None:
        self.token.mint_as(self.identity, to, amount)


# -----------------------------
# Constant-product pair
# -----------------------------
def get_amount_out(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int) -> int:
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    amount_in_with_fee = amount_in * (FEE_DENOMINATOR - fee_bps)
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * FEE_DENOMINATOR + amount_in_with_fee
    return numerator // denominator

def spot_price(reserve_reference: int, reserve_managed: int) -> int:
    """Price of one managed unit in reference units, 8-decimal fixed point."""
    if reserve_managed <= 0:
        return 0
    return reserve_reference * PRICE_PRECISION // reserve_managed

class Pair(Token):
    """
    Two-token constant-product pool that is also its own LP token.
    Callers transfer inputs to `address` first, then call swap/mint/burn.
    """

    _ledger_fields = ("balances", "total_supply", "reserve0", "reserve1")

    def __init__(self, token0: Token, token1: Token, fee_bps: int = 30) -> None:
        if token0 is token1:
            raise LedgerError("identical_tokens", {"token": token0.symbol})
        super().__init__(f"LP-{token0.symbol}-{token1.symbol}")
        self.address = f"pair:{token0.symbol}-{token1.symbol}"
        self.token0 = token0
        self.token1 = token1
        self.fee_bps = int(fee_bps)
        self.reserve0: int = 0
        self.reserve1: int = 0

    def reserves(self) -> Tuple[int, int]:
        return self.reserve0, self.reserve1

    def _update(self) -> None:
        self.reserve0 = self.token0.balance_of(self.address)
        self.reserve1 = self.token1.balance_of(self.address)

    def sync(self) -> None:
        self._update()

    def get_amount_out(self, amount_in: int, token_in: Token) -> int:
        if token_in is self.token0:
            return get_amount_out(amount_in, self.reserve0, self.reserve1, self.fee_bps)
        if token_in is self.token1:
            return get_amount_out(amount_in, self.reserve1, self.reserve0, self.fee_bps)
        raise LedgerError("unknown_token", {"token": token_in.symbol, "pair": self.address})

    def swap(self, amount0_out: int, amount1_out: int, to: str, data: bytes = b"") -> None:
        if amount0_out <= 0 and amount1_out <= 0:
            raise InsufficientLiquidity("insufficient_output_amount")
        if amount0_out >= self.reserve0 or amount1_out >= self.reserve1:
            raise InsufficientLiquidity("insufficient_liquidity")
        if amount0_out > 0:
            self.token0.transfer(self.address, to, amount0_out)
        if amount1_out > 0:
            self.token1.transfer(self.address, to, amount1_out)
        balance0 = self.token0.balance_of(self.address)
        balance1 = self.token1.balance_of(self.address)
        amount0_in = max(0, balance0 - (self.reserve0 - amount0_out))
        amount1_in = max(0, balance1 - (self.reserve1 - amount1_out))
        if amount0_in <= 0 and amount1_in <= 0:
            raise InsufficientLiquidity("insufficient_input_amount")
        adjusted0 = balance0 * FEE_DENOMINATOR - amount0_in * self.fee_bps
        adjusted1 = balance1 * FEE_DENOMINATOR - amount1_in * self.fee_bps
        if adjusted0 * adjusted1 < self.reserve0 * self.reserve1 * FEE_DENOMINATOR ** 2:
            raise LedgerError("k_invariant", {"pair": self.address})
        self._update()

    def mint(self, to: str, amount: Optional[int] = None) -> int:
        """LP mint from pre-transferred balances; `amount` is ignored for pairs."""
        balance0 = self.token0.balance_of(self.address)
        balance1 = self.token1.balance_of(self.address)
        amount0 = balance0 - self.reserve0
        amount1 = balance1 - self.reserve1
        if self.total_supply == 0:
            liquidity = math.isqrt(amount0 * amount1) - MINIMUM_LIQUIDITY
            if liquidity > 0:
                super().mint(DEAD_ADDRESS, MINIMUM_LIQUIDITY)
        else:
            liquidity = min(
                amount0 * self.total_supply // self.reserve0,
                amount1 * self.total_supply // self.reserve1,
            )
        if liquidity <= 0:
            raise InsufficientLiquidity("insufficient_liquidity_minted", {"amount0": amount0, "amount1": amount1})
        super().mint(to, liquidity)
        self._update()
        return liquidity

    def burn(self, to: str, amount: Optional[int] = None) -> Tuple[int, int]:
        """Burn LP previously transferred to the pair; `amount` is ignored for pairs."""
        liquidity = self.balance_of(self.address)
        balance0 = self.token0.balance_of(self.address)
        balance1 = self.token1.balance_of(self.address)
        amount0 = liquidity * balance0 // self.total_supply if self.total_supply else 0
        amount1 = liquidity * balance1 // self.total_supply if self.total_supply else 0
        if amount0 <= 0 or amount1 <= 0:
            raise InsufficientLiquidity("insufficient_liquidity_burned", {"liquidity": liquidity})
        super().burn(self.address, liquidity)
        self.token0.transfer(self.address, to, amount0)
        self.token1.transfer(self.address, to, amount1)
        self._update()
        return amount0, amount1


# -----------------------------
# Reward gauge
# -----------------------------
class Gauge(Ledgered):
    """Stakes LP tokens and streams `reward_rate` reward units per second pro rata."""

    _ledger_fields = (
        "balances",
        "total_staked",
        "reward_per_token_stored",
        "last_update",
        "user_reward_per_token_paid",
        "rewards",
    )

    def __init__(self, lp_token: Token, reward_token: Token, reward_rate: int, clock: Clock) -> None:
        self.address = f"gauge:{lp_token.symbol}"
        self.lp_token = lp_token
        self.reward_token = reward_token
        self.reward_rate = int(reward_rate)
        self.clock = clock
        self.balances: Dict[str, int] = {}
        self.total_staked: int = 0
        self.reward_per_token_stored: int = 0
        self.last_update: int = clock.now
        self.user_reward_per_token_paid: Dict[str, int] = {}
        self.rewards: Dict[str, int] = {}

    def balance_of(self, owner: str) -> int:
        return int(self.balances.get(owner, 0))

    def reward_per_token(self) -> int:
        if self.total_staked == 0:
            return self.reward_per_token_stored
        elapsed = max(0, self.clock.now - self.last_update)
        return self.reward_per_token_stored + elapsed * self.reward_rate * REWARD_PRECISION // self.total_staked

    def earned(self, owner: str) -> int:
        paid = self.user_reward_per_token_paid.get(owner, 0)
        accrued = self.balance_of(owner) * (self.reward_per_token() - paid) // REWARD_PRECISION
        return self.rewards.get(owner, 0) + accrued

    def _checkpoint_rewards(self, owner: str) -> None:
        self.reward_per_token_stored = self.reward_per_token()
        self.last_update = self.clock.now
        self.rewards[owner] = self.earned(owner)
        self.user_reward_per_token_paid[owner] = self.reward_per_token_stored

    def deposit(self, owner: str, amount: int) -> None:
        if amount <= 0:
            raise LedgerError("zero_deposit", {"gauge": self.address})
        self._checkpoint_rewards(owner)
        self.lp_token.transfer(owner, self.address, amount)
        self.balances[owner] = self.balance_of(owner) + amount
        self.total_staked += amount

    def withdraw(self, owner: str, amount: int) -> None:
        if amount <= 0:
            raise LedgerError("zero_withdraw", {"gauge": self.address})
        if self.balance_of(owner) < amount:
            raise InsufficientBalance("insufficient_stake", {"owner": owner, "amount": amount})
        self._checkpoint_rewards(owner)
        self.balances[owner] = self.balance_of(owner) - amount
        self.total_staked -= amount
        self.lp_token.transfer(self.address, owner, amount)

    def get_reward(self, owner: str) -> int:
        self._checkpoint_rewards(owner)
        reward = self.rewards.get(owner, 0)
        if reward > 0:
            self.rewards[owner] = 0
            self.reward_token.mint(owner, reward)
        return reward
