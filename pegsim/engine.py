from __future__ import annotations
from collections import deque
from typing import Deque, Optional, Tuple
import logging
import numpy as np

from .actions import Proposal
from .config import ScenarioConfig
from .core import Event, EventLog, PRICE_PRECISION, TARGET_PRICE, atomic
from .errors import ControllerError
from .factory import KEEPER, TRADER, SystemFactory
from .metrics import MetricsStore

logger = logging.getLogger(__name__)

class SimulationEngine:
    """
    Tick loop around one controller: exogenous trader flow and shocks move the
    pool, the stability module mints/redeems, and a keeper asks the
    controller for a proposal and submits it (now, or after `keeper_latency_ticks`).
    """

    def __init__(self, cfg: ScenarioConfig, seed: int = 1) -> None:
        self.cfg = cfg
        np.random.seed(seed)

        self.log = EventLog(maxlen=cfg.event_log_maxlen)
        self.metrics = MetricsStore()
        self.system = SystemFactory(cfg).build(self.log)
        self.controller = self.system.controller

        self._pending: Deque[Tuple[int, int, Proposal]] = deque()  # (due_tick, proposed_tick, proposal)
        self._trader_flow_tick: int = 0
        self._executed_tick: int = 0
        self._reverted_tick: int = 0

        self.snapshot_metrics()

    @property
    def tick(self) -> int:
        return self.system.clock.tick

    # -----------------------------
    # Exogenous market
    # -----------------------------
    def _trade(self, flow: int) -> None:
        """Positive flow buys managed with reference; negative sells managed."""
        if flow == 0:
            return
        sys_ = self.system
        pair = sys_.pair
        if flow > 0:
            token_in, amount_in = sys_.reference, flow
        else:
            token_in, amount_in = sys_.managed, -flow
        token_out = pair.token1 if token_in is pair.token0 else pair.token0
        amount_out = pair.get_amount_out(amount_in, token_in)
        if amount_out <= 0:
            return
        out0, out1 = (amount_out, 0) if token_out is pair.token0 else (0, amount_out)
        try:
            with atomic(token_in, token_out, pair):
                token_in.transfer(TRADER, pair.address, amount_in)
                pair.swap(out0, out1, to=TRADER)
        except ControllerError as exc:
            self.log.add(Event(self.tick, "TRADE_FAILED", actor_id=TRADER, asset_id=token_in.symbol,
                               amount=amount_in, meta={"reason": exc.reason}))
            return
        self._trader_flow_tick += flow

    def _apply_trader_flow(self) -> None:
        std = max(0.0, float(self.cfg.trader_flow_std))
        flow = int(round(np.random.normal(float(self.cfg.trader_flow_mean), std))) if std > 0 else int(self.cfg.trader_flow_mean)
        self._trade(flow)
        if self.cfg.shock_tick is not None and self.tick == self.cfg.shock_tick:
            self._trade(int(self.cfg.shock_amount))
            self.log.add(Event(self.tick, "PRICE_SHOCK", actor_id=TRADER, amount=int(self.cfg.shock_amount)))

    def _apply_stability_activity(self) -> None:
        stability = self.system.stability
        if stability is None:
            return
        mint_amt = int(self.cfg.stability_mint_per_tick or 0)
        if mint_amt > 0 and stability.mint_enabled():
            try:
                stability.mint(TRADER, mint_amt)
                self.log.add(Event(self.tick, "STABILITY_MINT", actor_id=TRADER, amount=mint_amt))
            except ControllerError as exc:
                self.log.add(Event(self.tick, "STABILITY_MINT_FAILED", actor_id=TRADER, amount=mint_amt,
                                   meta={"reason": exc.reason}))
        redeem_amt = int(self.cfg.stability_redeem_per_tick or 0)
        if redeem_amt > 0 and stability.redeem_enabled():
            try:
                stability.redeem(TRADER, redeem_amt)
                self.log.add(Event(self.tick, "STABILITY_REDEEM", actor_id=TRADER, amount=redeem_amt))
            except ControllerError as exc:
                self.log.add(Event(self.tick, "STABILITY_REDEEM_FAILED", actor_id=TRADER, amount=redeem_amt,
                                   meta={"reason": exc.reason}))

    # -----------------------------
    # Keeper
    # -----------------------------
    def _submit(self, proposal: Proposal, proposed_tick: int) -> bool:
        before = self.controller.price_snapshot()
        row = {
            "tick": self.tick,
            "proposed_tick": proposed_tick,
            "action": proposal.action.value,
            "amount": int(proposal.amount),
            "spot_before": before.spot,
            "twap_before": before.twap,
        }
        try:
            result = self.controller.execute(proposal.encode(), caller=KEEPER)
        except ControllerError as exc:
            self._reverted_tick += 1
            self.log.add(Event(self.tick, "ACTION_REVERTED", actor_id=KEEPER, amount=int(proposal.amount),
                               meta={"action": proposal.action.value, "error": type(exc).__name__,
                                     "reason": exc.reason, "proposed_tick": proposed_tick}))
            logger.warning("keeper submission reverted action=%s amount=%d error=%s reason=%s",
                           proposal.action.value, proposal.amount, type(exc).__name__, exc.reason)
            row.update({"status": "reverted", "error": type(exc).__name__, "reason": exc.reason,
                        "result": 0, "spot_after": before.spot})
            self.metrics.add_action(row)
            return False
        self._executed_tick += 1
        row.update({"status": "executed", "error": None, "reason": None,
                    "result": int(result or 0), "spot_after": self.controller.price_snapshot().spot})
        self.metrics.add_action(row)
        return True

    def _run_keeper(self) -> None:
        while self._pending and self._pending[0][0] <= self.tick:
            _due, proposed_tick, proposal = self._pending.popleft()
            self._submit(proposal, proposed_tick)

        if not self.cfg.keeper_enabled:
            return
        interval = max(1, int(self.cfg.keeper_interval_ticks or 1))
        if self.tick % interval != 0:
            return
        proposal = self.controller.next_proposal()
        if proposal.empty:
            return
        self.log.add(Event(self.tick, "PROPOSAL", actor_id=KEEPER, amount=int(proposal.amount),
                           meta=proposal.to_dict()))
        latency = max(0, int(self.cfg.keeper_latency_ticks or 0))
        if latency == 0:
            self._submit(proposal, self.tick)
        else:
            self._pending.append((self.tick + latency, self.tick, proposal))

    # -----------------------------
    # Loop
    # -----------------------------
    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.system.clock.advance(self.cfg.tick_seconds)
            self._trader_flow_tick = 0
            self._executed_tick = 0
            self._reverted_tick = 0

            self._apply_trader_flow()
            self._apply_stability_activity()
            self.system.twap_oracle.record()
            self._run_keeper()

            self.snapshot_metrics()

    def set_twap_override(self, price: Optional[int]) -> None:
        self.system.twap_oracle.set_price(price)

    def snapshot_metrics(self) -> None:
        stride = int(self.cfg.metrics_stride or 0)
        if stride <= 0 or self.tick % stride != 0:
            return
        c = self.controller
        sys_ = self.system
        prices = c.price_snapshot()
        reserve_ref, reserve_managed = c.desk.reserves()
        pos_ref, pos_managed = c.liquidity_position()
        self.metrics.add_tick({
            "tick": self.tick,
            "time": sys_.clock.now,
            "spot": prices.spot,
            "twap": prices.twap,
            "spot_usd": prices.spot / PRICE_PRECISION,
            "twap_usd": prices.twap / PRICE_PRECISION,
            "peg_deviation_bps": (prices.spot - TARGET_PRICE) * 10_000 / TARGET_PRICE,
            "floor_price": c.state.floor_price,
            "cap_price": c.state.cap_price,
            "regime": c.regime().value,
            "reserve_reference": reserve_ref,
            "reserve_managed": reserve_managed,
            "idle_reference": c.idle_reference(),
            "lp_staked": c.desk.staked(),
            "lp_unstaked": c.desk.unstaked(),
            "position_reference": pos_ref,
            "position_managed": pos_managed,
            "managed_supply": sys_.managed.total_supply,
            "controller_minted_total": c.minted_total,
            "controller_burned_total": c.burned_total,
            "reward_balance": sys_.reward.balance_of(c.address),
            "trader_flow_tick": int(self._trader_flow_tick),
            "actions_executed_tick": int(self._executed_tick),
            "actions_reverted_tick": int(self._reverted_tick),
        })
