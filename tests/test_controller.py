"""Tests for the live-guarded controller handlers and owner configuration."""
import pytest

from pegsim.actions import ActionKind, Proposal
from pegsim.config import ScenarioConfig
from pegsim.controller import PegController
from pegsim.core import Clock, Gauge, ManagedToken, Pair, Token, TARGET_PRICE
from pegsim.errors import (
    InsufficientFunds,
    InvalidBand,
    InvalidPair,
    InvalidToken,
    PostconditionNotMet,
    PreconditionNotMet,
    Unauthorized,
    ValueUnchanged,
)
from pegsim.factory import KEEPER, OWNER, TRADER, SystemFactory
from pegsim.oracle import SpotOracle, TwapOracle

CAP = 100_100_000
FLOOR = 99_900_000


def _system(ref=1_000_000, managed=1_000_000, idle=0, **kwargs):
    cfg = ScenarioConfig(initial_reference_reserve=ref, initial_managed_reserve=managed,
                         initial_idle_reference=idle, **kwargs)
    return SystemFactory(cfg).build()


def _ledger(system):
    parts = (system.reference, system.managed, system.reward, system.pair, system.gauge, system.controller)
    return [p.checkpoint() for p in parts]


# -----------------------------
# Regime gating
# -----------------------------
@pytest.mark.parametrize("amount", [0, 1, 10 ** 12])
def test_buy_side_handlers_require_below_floor(amount):
    system = _system(idle=1_000)
    c = system.controller
    before = _ledger(system)

    with pytest.raises(PreconditionNotMet):
        c.buy_and_burn(amount)
    with pytest.raises(PreconditionNotMet):
        c.withdraw_buy_and_burn(amount)
    assert _ledger(system) == before


@pytest.mark.parametrize("amount", [0, 1, 10 ** 12])
def test_mint_and_sell_requires_above_cap(amount):
    system = _system(ref=995_000, idle=1_000)
    before = _ledger(system)

    with pytest.raises(PreconditionNotMet):
        system.controller.mint_and_sell(amount)
    assert _ledger(system) == before


@pytest.mark.parametrize("amount", [0, 1, 10 ** 12])
def test_mint_and_add_liquidity_rejected_below_floor(amount):
    system = _system(ref=995_000, idle=1_000)
    with pytest.raises(PreconditionNotMet):
        system.controller.mint_and_add_liquidity(amount)


def test_stale_regime_rejected_when_twap_disagrees():
    system = _system(ref=995_000, idle=1_000)
    system.twap_oracle.set_price(TARGET_PRICE)
    with pytest.raises(PreconditionNotMet):
        system.controller.buy_and_burn(500)


def test_paused_blocks_rebalancing():
    system = _system(ref=995_000, idle=1_000)
    system.controller.set_paused(OWNER, True)
    with pytest.raises(PreconditionNotMet):
        system.controller.buy_and_burn(500)

    in_band = _system(idle=1_000)
    in_band.controller.set_paused(OWNER, True)
    with pytest.raises(PreconditionNotMet):
        in_band.controller.mint_and_add_liquidity(1_000)


# -----------------------------
# Postconditions
# -----------------------------
def test_buy_and_burn_raises_price_and_burns():
    system = _system(ref=995_000, idle=1_000)
    c = system.controller
    supply_before = system.managed.total_supply
    spot_before = c.price_snapshot().spot

    burned = c.buy_and_burn(1_000)

    assert burned > 0
    assert spot_before < c.price_snapshot().spot <= CAP
    assert system.managed.total_supply == supply_before - burned
    assert c.burned_total == burned
    assert system.log.of_type("BUY_AND_BURN")[-1].meta["burned"] == burned


def test_overshooting_cap_rolls_back():
    system = _system(ref=995_000, idle=100_000)
    before = _ledger(system)

    with pytest.raises(PostconditionNotMet):
        system.controller.buy_and_burn(100_000)

    assert _ledger(system) == before
    assert system.controller.idle_reference() == 100_000
    assert system.log.of_type("BUY_AND_BURN") == []


def test_zero_amount_fails_postcondition():
    system = _system(ref=995_000, idle=1_000)
    with pytest.raises(PostconditionNotMet):
        system.controller.buy_and_burn(0)


def test_buy_and_burn_beyond_idle():
    system = _system(ref=995_000, idle=1_000)
    with pytest.raises(InsufficientFunds):
        system.controller.buy_and_burn(1_001)


def test_withdraw_buy_and_burn_unstakes_and_raises_price():
    system = _system(ref=995_000)
    c = system.controller
    lp_before = c.desk.lp_balance()
    spot_before = c.price_snapshot().spot

    burned = c.withdraw_buy_and_burn(2_000)

    assert burned > 0
    assert c.desk.lp_balance() == lp_before - 2_000
    assert spot_before < c.price_snapshot().spot <= CAP


def test_withdraw_beyond_position():
    system = _system(ref=995_000)
    with pytest.raises(InsufficientFunds):
        system.controller.withdraw_buy_and_burn(system.controller.desk.lp_balance() + 1)


def test_mint_and_sell_lowers_price_within_floor():
    system = _system(ref=1_005_000)
    c = system.controller
    spot_before = c.price_snapshot().spot

    received = c.mint_and_sell(1_000)

    assert received > 0
    assert FLOOR <= c.price_snapshot().spot < spot_before
    assert c.idle_reference() == received
    assert c.minted_total == 1_000


def test_mint_and_sell_undershooting_floor_rolls_back():
    system = _system(ref=1_005_000)
    before = _ledger(system)
    with pytest.raises(PostconditionNotMet):
        system.controller.mint_and_sell(100_000)
    assert _ledger(system) == before


def test_mint_and_add_liquidity_needs_idle():
    system = _system(idle=100)
    with pytest.raises(PreconditionNotMet):
        system.controller.mint_and_add_liquidity(101)
    with pytest.raises(PreconditionNotMet):
        system.controller.mint_and_add_liquidity(0)


def test_dust_deposit_rolls_back():
    system = _system(managed=1_000_500, idle=1)
    c = system.controller
    before = _ledger(system)

    with pytest.raises(PreconditionNotMet) as err:
        c.mint_and_add_liquidity(1)

    assert err.value.reason == "mint_and_add_liquidity_below_min_lp"
    assert _ledger(system) == before
    assert c.minted_total == 0 and c.burned_total == 0
    assert system.log.of_type("MINT_AND_ADD_LIQUIDITY") == []


# -----------------------------
# Harvest
# -----------------------------
def test_harvest_requires_authorized_caller_and_cooldown():
    system = _system()
    c = system.controller

    with pytest.raises(PreconditionNotMet):
        c.harvest_reward(KEEPER)

    system.clock.advance(86_400)
    with pytest.raises(Unauthorized):
        c.harvest_reward(TRADER)

    reward = c.execute(Proposal(ActionKind.HARVEST, 0), caller=KEEPER)
    assert 0 < reward <= 86_400
    assert system.reward.balance_of(c.address) == reward
    assert c.last_harvest == system.clock.now
    with pytest.raises(PreconditionNotMet):
        c.harvest_reward(OWNER)


def test_execute_empty_proposal_is_no_op():
    system = _system()
    assert system.controller.execute(b"", caller=KEEPER) is None


# -----------------------------
# Stability-module provisioning
# -----------------------------
def test_request_tokens_from_idle():
    system = _system(idle=1_000)
    c = system.controller
    module = system.stability.address

    c.request_tokens(module, system.reference, 400)

    assert system.reference.balance_of(module) == 400
    assert c.idle_reference() == 600
    assert c.log.of_type("TOKENS_REQUESTED")[-1].meta["unwound_lp"] == 0


def test_request_tokens_unwinds_liquidity_for_shortfall():
    system = _system(idle=1_000)
    c = system.controller
    module = system.stability.address
    lp_before = c.desk.lp_balance()

    c.request_tokens_for(module, system.reference, 10_000, recipient="user")

    assert system.reference.balance_of("user") == 10_000
    assert system.managed.balance_of(c.address) == 0
    assert c.desk.unstaked() == 0
    assert c.desk.lp_balance() < lp_before
    assert c.log.of_type("TOKENS_REQUESTED")[-1].meta["unwound_lp"] > 0


def test_request_tokens_beyond_position_rolls_back():
    system = _system(idle=1_000)
    before = _ledger(system)
    with pytest.raises(InsufficientFunds):
        system.controller.request_tokens(system.stability.address, system.reference, 10 ** 9)
    assert _ledger(system) == before


def test_request_tokens_authorization_and_token():
    system = _system(idle=1_000)
    c = system.controller
    with pytest.raises(Unauthorized):
        c.request_tokens(TRADER, system.reference, 1)
    with pytest.raises(InvalidToken):
        c.request_tokens(system.stability.address, system.managed, 1)


# -----------------------------
# Owner configuration
# -----------------------------
def test_setters_are_owner_only_and_reject_no_ops():
    system = _system()
    c = system.controller

    with pytest.raises(Unauthorized):
        c.set_cap_price(TRADER, 100_200_000)
    with pytest.raises(ValueUnchanged):
        c.set_floor_price(OWNER, c.state.floor_price)
    with pytest.raises(ValueUnchanged):
        c.set_spot_oracle(OWNER, system.spot_oracle)
    with pytest.raises(ValueUnchanged):
        c.add_harvester(OWNER, KEEPER)

    c.set_cap_price(OWNER, 100_200_000)
    assert c.state.cap_price == 100_200_000
    assert len(c.log.of_type("CAP_PRICE_UPDATED")) == 1


def test_band_setters_keep_target_inside():
    system = _system()
    c = system.controller
    with pytest.raises(InvalidBand):
        c.set_floor_price(OWNER, TARGET_PRICE)
    with pytest.raises(InvalidBand):
        c.set_cap_price(OWNER, 99_950_000)
    assert (c.state.floor_price, c.state.cap_price) == (FLOOR, CAP)


def test_oracle_swap_changes_price_source():
    system = _system()
    c = system.controller
    pinned = TwapOracle(system.spot_oracle, window=3600)
    pinned.set_price(99_000_000)

    c.set_twap_oracle(OWNER, pinned)

    assert c.price_snapshot().twap == 99_000_000
    assert len(c.log.of_type("TWAP_ORACLE_UPDATED")) == 1


def test_invalid_configuration_at_construction():
    with pytest.raises(InvalidBand):
        ScenarioConfig(floor_price=TARGET_PRICE)

    clock = Clock()
    usd, peg, eur = Token("USD"), ManagedToken("PEG"), Token("EUR")
    pair = Pair(eur, usd)
    spot = SpotOracle(pair, usd, clock)
    with pytest.raises(InvalidPair):
        PegController(
            owner=OWNER,
            reference=usd,
            managed=peg,
            pair=pair,
            gauge=Gauge(pair, Token("RWD"), reward_rate=1, clock=clock),
            spot_oracle=spot,
            twap_oracle=TwapOracle(spot, window=3600),
            floor_price=FLOOR,
            cap_price=CAP,
            clock=clock,
        )
