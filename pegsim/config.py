from dataclasses import dataclass

from .core import TARGET_PRICE
from .errors import InvalidBand

HARVEST_COOLDOWN = 24 * 3600

def check_price_band(floor_price: int, cap_price: int, target: int = TARGET_PRICE) -> None:
    if not (0 < floor_price < target < cap_price):
        raise InvalidBand(
            "band_must_straddle_target",
            {"floor_price": floor_price, "cap_price": cap_price, "target": target},
        )

@dataclass
class ScenarioConfig:
    # Peg band (8-decimal fixed point)
    floor_price: int = 99_900_000
    cap_price: int = 100_100_000
    harvest_cooldown_s: int = HARVEST_COOLDOWN

    # Pool
    pool_fee_bps: int = 30
    initial_reference_reserve: int = 1_000_000
    initial_managed_reserve: int = 1_000_000
    controller_owns_initial_lp: bool = True  # seed liquidity is staked by the controller
    initial_idle_reference: int = 0

    # Oracles / time
    tick_seconds: int = 3600
    twap_window_s: int = 6 * 3600
    start_time: int = 1_700_000_000

    # Gauge
    gauge_reward_rate_per_s: int = 1

    # Exogenous trader flow (reference units per tick, + buys managed, - sells)
    trader_flow_mean: float = 0.0
    trader_flow_std: float = 2_000.0
    trader_reference_balance: int = 100_000_000
    trader_managed_balance: int = 100_000_000
    shock_tick: int | None = None
    shock_amount: int = 0  # reference units; negative dumps managed

    # Stability module
    stability_module_enabled: bool = True
    mint_threshold: int | None = None    # defaults to cap_price
    redeem_threshold: int | None = None  # defaults to floor_price
    stability_mint_per_tick: int = 0
    stability_redeem_per_tick: int = 0

    # Keeper
    keeper_enabled: bool = True
    keeper_interval_ticks: int = 1
    keeper_latency_ticks: int = 0  # >0 executes proposals after the next trader flow

    # Metrics / logs
    metrics_stride: int = 1
    event_log_maxlen: int | None = 5000

    # Debug
    debug_inventory: bool = False

    def __post_init__(self) -> None:
        check_price_band(self.floor_price, self.cap_price)
        if self.mint_threshold is None:
            self.mint_threshold = self.cap_price
        if self.redeem_threshold is None:
            self.redeem_threshold = self.floor_price
        if self.tick_seconds <= 0:
            self.tick_seconds = 1
