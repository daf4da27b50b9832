from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from .config import ScenarioConfig
from .controller import PegController
from .core import Clock, EventLog, Gauge, ManagedToken, Pair, Token
from .oracle import SpotOracle, TwapOracle
from .stability import StabilityModule

OWNER = "owner"
KEEPER = "keeper"
TRADER = "trader"

@dataclass
class System:
    clock: Clock
    log: EventLog
    reference: Token
    managed: ManagedToken
    reward: Token
    pair: Pair
    gauge: Gauge
    spot_oracle: SpotOracle
    twap_oracle: TwapOracle
    controller: PegController
    stability: Optional[StabilityModule]

class SystemFactory:
    def __init__(self, cfg: ScenarioConfig) -> None:
        self.cfg = cfg

    @staticmethod
    def _sorted_pair(a: Token, b: Token, fee_bps: int) -> Pair:
        # pair legs are ordered by symbol, independent of which is the reference
        token0, token1 = (a, b) if a.symbol < b.symbol else (b, a)
        return Pair(token0, token1, fee_bps=fee_bps)

    def build(self, log: Optional[EventLog] = None) -> System:
        cfg = self.cfg
        clock = Clock(start=cfg.start_time)
        log = log if log is not None else EventLog(maxlen=cfg.event_log_maxlen)

        reference = Token("USD")
        managed = ManagedToken("PEG")
        reward = Token("RWD")
        for token in (reference, managed, reward):
            token.debug_inventory = cfg.debug_inventory
        pair = self._sorted_pair(reference, managed, cfg.pool_fee_bps)
        pair.debug_inventory = cfg.debug_inventory
        gauge = Gauge(pair, reward, reward_rate=cfg.gauge_reward_rate_per_s, clock=clock)

        spot_oracle = SpotOracle(pair, reference, clock)
        twap_oracle = TwapOracle(spot_oracle, window=cfg.twap_window_s)

        controller = PegController(
            owner=OWNER,
            reference=reference,
            managed=managed,
            pair=pair,
            gauge=gauge,
            spot_oracle=spot_oracle,
            twap_oracle=twap_oracle,
            floor_price=cfg.floor_price,
            cap_price=cfg.cap_price,
            clock=clock,
            harvest_cooldown=cfg.harvest_cooldown_s,
            log=log,
        )
        controller.add_harvester(OWNER, KEEPER)

        self._seed_pool(controller, reference, managed, pair)
        if cfg.initial_idle_reference > 0:
            reference.mint(controller.address, cfg.initial_idle_reference)

        stability = None
        if cfg.stability_module_enabled:
            stability = StabilityModule(
                controller,
                reference,
                managed,
                mint_threshold=cfg.mint_threshold,
                redeem_threshold=cfg.redeem_threshold,
            )
            controller.set_stability_module(OWNER, stability.address)

        reference.mint(TRADER, cfg.trader_reference_balance)
        managed.mint(TRADER, cfg.trader_managed_balance)
        twap_oracle.record()

        return System(
            clock=clock,
            log=log,
            reference=reference,
            managed=managed,
            reward=reward,
            pair=pair,
            gauge=gauge,
            spot_oracle=spot_oracle,
            twap_oracle=twap_oracle,
            controller=controller,
            stability=stability,
        )

    def _seed_pool(self, controller: PegController, reference: Token, managed: ManagedToken, pair: Pair) -> None:
        cfg = self.cfg
        seeder = controller.address if cfg.controller_owns_initial_lp else "seeder"
        reference.mint(seeder, cfg.initial_reference_reserve)
        managed.mint(seeder, cfg.initial_managed_reserve)
        reference.transfer(seeder, pair.address, cfg.initial_reference_reserve)
        managed.transfer(seeder, pair.address, cfg.initial_managed_reserve)
        lp = pair.mint(seeder)
        if cfg.controller_owns_initial_lp:
            controller.desk.stake(lp)
