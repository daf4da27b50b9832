"""
Peg-defense controller: live-guarded rebalancing handlers, stability-module
provisioning and owner configuration.

Every state-mutating entry point runs inside `atomic(...)`; a guard failure
restores tokens, pair, gauge and controller bookkeeping before the error
reaches the caller.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Set, Tuple, Union
import logging

from .actions import ActionKind, Proposal
from .config import HARVEST_COOLDOWN, check_price_band
from .core import Clock, Event, EventLog, Gauge, Ledgered, ManagedToken, Minter, Pair, Token, atomic
from .decision import DecisionInputs, Regime, classify, determine_next_action
from .errors import (
    InsufficientFunds,
    InvalidPair,
    InvalidToken,
    PostconditionNotMet,
    PreconditionNotMet,
    Unauthorized,
    ValueUnchanged,
)
from .liquidity import LiquidityDesk
from .oracle import PriceSnapshot, SpotOracle, TwapOracle, read_snapshot
from .simulator import MarketSnapshot

logger = logging.getLogger(__name__)


@dataclass
class ControllerState:
    owner: str
    minter: Minter
    spot_oracle: SpotOracle
    twap_oracle: TwapOracle
    floor_price: int
    cap_price: int
    stability_module: Optional[str] = None
    harvesters: Set[str] = field(default_factory=set)
    harvest_cooldown: int = HARVEST_COOLDOWN
    paused: bool = False


class PegController(Ledgered):
    _ledger_fields = ("last_harvest", "burned_total", "minted_total")

    def __init__(
        self,
        *,
        owner: str,
        reference: Token,
        managed: ManagedToken,
        pair: Pair,
        gauge: Gauge,
        spot_oracle: SpotOracle,
        twap_oracle: TwapOracle,
        floor_price: int,
        cap_price: int,
        clock: Clock,
        address: str = "controller",
        stability_module: Optional[str] = None,
        harvest_cooldown: int = HARVEST_COOLDOWN,
        log: Optional[EventLog] = None,
    ) -> None:
        if {id(pair.token0), id(pair.token1)} != {id(reference), id(managed)}:
            raise InvalidPair(
                "pair_tokens_mismatch",
                {"pair": pair.address, "reference": reference.symbol, "managed": managed.symbol},
            )
        check_price_band(floor_price, cap_price)
        self.address = address
        self.reference = reference
        self.managed = managed
        self.pair = pair
        self.gauge = gauge
        self.clock = clock
        self.reference_is_token0 = pair.token0 is reference
        self.log = log if log is not None else EventLog()

        managed.add_minter(address)
        self.state = ControllerState(
            owner=owner,
            minter=Minter(managed, address),
            spot_oracle=spot_oracle,
            twap_oracle=twap_oracle,
            floor_price=int(floor_price),
            cap_price=int(cap_price),
            stability_module=stability_module,
            harvest_cooldown=int(harvest_cooldown),
        )
        self.desk = LiquidityDesk(address, pair, gauge, reference, managed, self.reference_is_token0)
        self.last_harvest: int = clock.now
        self.burned_total: int = 0
        self.minted_total: int = 0

    def _participants(self) -> Tuple[Ledgered, ...]:
        return (self.reference, self.managed, self.pair, self.gauge, self.gauge.reward_token, self)

    def _emit(self, event_type: str, asset_id: Optional[str] = None, amount: Optional[int] = None,
              actor_id: Optional[str] = None, **meta: Any) -> None:
        self.log.add(Event(self.clock.tick, event_type, actor_id=actor_id or self.address,
                           asset_id=asset_id, amount=amount, meta=meta))

    # -----------------------------
    # Views
    # -----------------------------
    def price_snapshot(self) -> PriceSnapshot:
        return read_snapshot(self.state.spot_oracle, self.state.twap_oracle)

    def regime(self) -> Regime:
        return classify(self.price_snapshot(), self.state.floor_price, self.state.cap_price, self.state.paused)

    def idle_reference(self) -> int:
        return self.reference.balance_of(self.address)

    def liquidity_position(self) -> Tuple[int, int]:
        return self.desk.position()

    def market_snapshot(self) -> MarketSnapshot:
        reserve_ref, reserve_managed = self.desk.reserves()
        return MarketSnapshot(
            reserve_reference=reserve_ref,
            reserve_managed=reserve_managed,
            lp_total_supply=self.pair.total_supply,
            idle_reference=self.idle_reference(),
            lp_balance=self.desk.lp_balance(),
            fee_bps=self.pair.fee_bps,
        )

    def next_proposal(self) -> Proposal:
        return determine_next_action(DecisionInputs(
            prices=self.price_snapshot(),
            market=self.market_snapshot(),
            floor_price=self.state.floor_price,
            cap_price=self.state.cap_price,
            paused=self.state.paused,
            now=self.clock.now,
            last_harvest=self.last_harvest,
            harvest_cooldown=self.state.harvest_cooldown,
        ))

    def determine_next_action(self) -> bytes:
        return self.next_proposal().encode()

    # -----------------------------
    # Guards
    # -----------------------------
    def _require_regime(self, expected: Regime, action: str) -> PriceSnapshot:
        prices = self.price_snapshot()
        regime = classify(prices, self.state.floor_price, self.state.cap_price, self.state.paused)
        if regime is not expected:
            raise PreconditionNotMet(
                f"{action}_requires_{expected.value}",
                {"regime": regime.value, "twap": prices.twap, "spot": prices.spot},
            )
        return prices

    def _require_raised(self, before: int, action: str) -> int:
        after = self.price_snapshot().spot
        if not (after > before and after <= self.state.cap_price):
            raise PostconditionNotMet(
                f"{action}_price_not_raised_within_cap",
                {"before": before, "after": after, "cap_price": self.state.cap_price},
            )
        return after

    def _require_lowered(self, before: int, action: str) -> int:
        after = self.price_snapshot().spot
        if not (after < before and after >= self.state.floor_price):
            raise PostconditionNotMet(
                f"{action}_price_not_lowered_within_floor",
                {"before": before, "after": after, "floor_price": self.state.floor_price},
            )
        return after

    def _burn_managed(self, amount: int) -> None:
        if amount > 0:
            self.managed.burn(self.address, amount)
            self.burned_total += amount

    def _mint_managed(self, amount: int) -> None:
        if amount > 0:
            self.state.minter.mint(self.address, amount)
            self.minted_total += amount

    # -----------------------------
    # Rebalancing handlers
    # -----------------------------
    def buy_and_burn(self, amount: int) -> int:
        amount = int(amount)
        with atomic(*self._participants()):
            before = self._require_regime(Regime.BELOW_FLOOR, "buy_and_burn")
            if amount > self.idle_reference():
                raise InsufficientFunds("buy_and_burn_exceeds_idle", {"amount": amount, "idle": self.idle_reference()})
            bought = self.desk.swap_reference_for_managed(amount)
            self._burn_managed(bought)
            after = self._require_raised(before.spot, "buy_and_burn")
        self._emit("BUY_AND_BURN", asset_id=self.reference.symbol, amount=amount,
                   burned=bought, spot_before=before.spot, spot_after=after)
        logger.info("buy_and_burn amount=%d burned=%d spot %d -> %d", amount, bought, before.spot, after)
        return bought

    def withdraw_buy_and_burn(self, lp_amount: int) -> int:
        lp_amount = int(lp_amount)
        with atomic(*self._participants()):
            before = self._require_regime(Regime.BELOW_FLOOR, "withdraw_buy_and_burn")
            ref_out, managed_out = self.desk.remove_liquidity(lp_amount)
            bought = self.desk.swap_reference_for_managed(ref_out)
            self._burn_managed(managed_out + bought)
            after = self._require_raised(before.spot, "withdraw_buy_and_burn")
        self._emit("WITHDRAW_BUY_AND_BURN", asset_id=self.pair.symbol, amount=lp_amount,
                   burned=managed_out + bought, spot_before=before.spot, spot_after=after)
        logger.info("withdraw_buy_and_burn lp=%d burned=%d spot %d -> %d",
                    lp_amount, managed_out + bought, before.spot, after)
        return managed_out + bought

    def mint_and_sell(self, amount: int) -> int:
        amount = int(amount)
        with atomic(*self._participants()):
            before = self._require_regime(Regime.ABOVE_CAP, "mint_and_sell")
            self._mint_managed(amount)
            received = self.desk.swap_managed_for_reference(amount)
            if received == 0:
                self._burn_managed(amount)
            after = self._require_lowered(before.spot, "mint_and_sell")
        self._emit("MINT_AND_SELL", asset_id=self.managed.symbol, amount=amount,
                   received=received, spot_before=before.spot, spot_after=after)
        logger.info("mint_and_sell amount=%d received=%d spot %d -> %d", amount, received, before.spot, after)
        return received

    def mint_and_add_liquidity(self, amount: int) -> int:
        amount = int(amount)
        with atomic(*self._participants()):
            prices = self.price_snapshot()
            if self.state.paused:
                raise PreconditionNotMet("mint_and_add_liquidity_paused")
            if prices.twap < self.state.floor_price or prices.spot < self.state.floor_price:
                raise PreconditionNotMet(
                    "mint_and_add_liquidity_below_floor",
                    {"twap": prices.twap, "spot": prices.spot, "floor_price": self.state.floor_price},
                )
            if amount <= 0 or amount > self.idle_reference():
                raise PreconditionNotMet(
                    "mint_and_add_liquidity_insufficient_idle",
                    {"amount": amount, "idle": self.idle_reference()},
                )
            managed_needed = self.desk.quote_managed(amount)
            self._mint_managed(managed_needed)
            used_ref, used_managed, lp = self.desk.add_liquidity(amount, managed_needed)
            if lp <= 0:
                raise PreconditionNotMet(
                    "mint_and_add_liquidity_below_min_lp",
                    {"amount": amount, "managed": managed_needed},
                )
            self.desk.stake(lp)
            self._burn_managed(managed_needed - used_managed)
        self._emit("MINT_AND_ADD_LIQUIDITY", asset_id=self.reference.symbol, amount=used_ref,
                   managed=used_managed, lp=lp)
        logger.info("mint_and_add_liquidity ref=%d managed=%d lp=%d", used_ref, used_managed, lp)
        return lp

    def harvest_reward(self, caller: str) -> int:
        if caller != self.state.owner and caller not in self.state.harvesters:
            raise Unauthorized("not_harvester", {"caller": caller})
        with atomic(*self._participants()):
            elapsed = self.clock.now - self.last_harvest
            if elapsed < self.state.harvest_cooldown:
                raise PreconditionNotMet("harvest_cooldown", {"elapsed": elapsed})
            reward = self.gauge.get_reward(self.address)
            self.last_harvest = self.clock.now
        self._emit("REWARD_HARVESTED", asset_id=self.gauge.reward_token.symbol, amount=reward, actor_id=caller)
        logger.info("harvest_reward caller=%s reward=%d", caller, reward)
        return reward

    def execute(self, proposal: Union[Proposal, bytes], caller: str) -> Optional[int]:
        """Submit a proposal as a fresh call; guards re-check live state."""
        if isinstance(proposal, (bytes, bytearray)):
            proposal = Proposal.decode(bytes(proposal))
        if proposal.empty:
            return None
        if proposal.action is ActionKind.HARVEST:
            return self.harvest_reward(caller)
        handlers = {
            ActionKind.BUY_AND_BURN: self.buy_and_burn,
            ActionKind.WITHDRAW_BUY_AND_BURN: self.withdraw_buy_and_burn,
            ActionKind.MINT_AND_SELL: self.mint_and_sell,
            ActionKind.MINT_AND_ADD_LIQUIDITY: self.mint_and_add_liquidity,
        }
        return handlers[proposal.action](proposal.amount)

    # -----------------------------
    # Stability module provisioning
    # -----------------------------
    def request_tokens(self, caller: str, token: Token, amount: int) -> None:
        self.request_tokens_for(caller, token, amount, recipient=caller)

    def request_tokens_for(self, caller: str, token: Token, amount: int, recipient: str) -> None:
        if self.state.stability_module is None or caller != self.state.stability_module:
            raise Unauthorized("not_stability_module", {"caller": caller})
        if token is not self.reference:
            raise InvalidToken("only_reference_requestable", {"token": token.symbol})
        amount = int(amount)
        unwound_lp = 0
        with atomic(*self._participants()):
            idle = self.idle_reference()
            if idle >= amount:
                self.reference.transfer(self.address, recipient, amount)
            else:
                unwound_lp = self.desk.lp_for_reference(amount - idle)
                if unwound_lp > self.desk.lp_balance():
                    raise InsufficientFunds(
                        "request_exceeds_position",
                        {"amount": amount, "idle": idle, "lp_needed": unwound_lp, "lp": self.desk.lp_balance()},
                    )
                _ref_out, managed_out = self.desk.remove_liquidity(unwound_lp)
                self.reference.transfer(self.address, recipient, amount)
                remainder = self.idle_reference()
                if remainder > 0 and managed_out > 0:
                    _used_ref, _used_managed, lp = self.desk.add_liquidity(remainder, managed_out)
                    self.desk.stake(lp)
                self._burn_managed(self.managed.balance_of(self.address))
        self._emit("TOKENS_REQUESTED", asset_id=token.symbol, amount=amount, actor_id=caller,
                   recipient=recipient, unwound_lp=unwound_lp)
        logger.info("request_tokens caller=%s recipient=%s amount=%d unwound_lp=%d",
                    caller, recipient, amount, unwound_lp)

    # -----------------------------
    # Owner configuration
    # -----------------------------
    def _require_owner(self, caller: str) -> None:
        if caller != self.state.owner:
            raise Unauthorized("not_owner", {"caller": caller})

    def _set(self, caller: str, name: str, value: Any, event_type: str) -> None:
        self._require_owner(caller)
        current = getattr(self.state, name)
        if current is value or current == value:
            raise ValueUnchanged(f"{name}_unchanged")
        setattr(self.state, name, value)
        self._emit(event_type, actor_id=caller, old=repr(current), new=repr(value))
        logger.info("%s %s -> %s", name, current, value)

    def set_floor_price(self, caller: str, floor_price: int) -> None:
        self._require_owner(caller)
        check_price_band(int(floor_price), self.state.cap_price)
        self._set(caller, "floor_price", int(floor_price), "FLOOR_PRICE_UPDATED")

    def set_cap_price(self, caller: str, cap_price: int) -> None:
        self._require_owner(caller)
        check_price_band(self.state.floor_price, int(cap_price))
        self._set(caller, "cap_price", int(cap_price), "CAP_PRICE_UPDATED")

    def set_spot_oracle(self, caller: str, oracle: SpotOracle) -> None:
        self._set(caller, "spot_oracle", oracle, "SPOT_ORACLE_UPDATED")

    def set_twap_oracle(self, caller: str, oracle: TwapOracle) -> None:
        self._set(caller, "twap_oracle", oracle, "TWAP_ORACLE_UPDATED")

    def set_stability_module(self, caller: str, identity: str) -> None:
        self._set(caller, "stability_module", identity, "STABILITY_MODULE_UPDATED")

    def set_paused(self, caller: str, paused: bool) -> None:
        self._set(caller, "paused", bool(paused), "PAUSED_UPDATED")

    def add_harvester(self, caller: str, identity: str) -> None:
        self._require_owner(caller)
        if identity in self.state.harvesters:
            raise ValueUnchanged("harvester_unchanged")
        self.state.harvesters.add(identity)
        self._emit("HARVESTER_ADDED", actor_id=caller, harvester=identity)
