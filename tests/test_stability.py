"""Tests for the threshold-gated stability module."""
import pytest

from pegsim.config import ScenarioConfig
from pegsim.errors import InsufficientBalance, PreconditionNotMet
from pegsim.factory import TRADER, SystemFactory


def _system(ref=1_000_000, managed=1_000_000, idle=0):
    cfg = ScenarioConfig(initial_reference_reserve=ref, initial_managed_reserve=managed,
                         initial_idle_reference=idle)
    return SystemFactory(cfg).build()


def test_thresholds_default_to_band():
    system = _system()
    assert system.stability.mint_threshold == system.controller.state.cap_price
    assert system.stability.redeem_threshold == system.controller.state.floor_price
    assert not system.stability.mint_enabled()
    assert not system.stability.redeem_enabled()


def test_mint_pays_reference_into_controller():
    system = _system(ref=1_005_000)
    ref_before = system.reference.balance_of(TRADER)
    peg_before = system.managed.balance_of(TRADER)

    system.stability.mint(TRADER, 1_000)

    assert system.reference.balance_of(TRADER) == ref_before - 1_000
    assert system.managed.balance_of(TRADER) == peg_before + 1_000
    assert system.controller.idle_reference() == 1_000


def test_redeem_pulls_reference_from_controller():
    system = _system(ref=995_000, idle=300)
    supply_before = system.managed.total_supply
    ref_before = system.reference.balance_of(TRADER)

    system.stability.redeem(TRADER, 2_000)

    assert system.reference.balance_of(TRADER) == ref_before + 2_000
    assert system.managed.total_supply < supply_before
    assert system.controller.idle_reference() == 0
    assert system.managed.balance_of(system.controller.address) == 0


def test_gates_reject_out_of_regime_calls():
    system = _system()
    with pytest.raises(PreconditionNotMet):
        system.stability.mint(TRADER, 1)
    with pytest.raises(PreconditionNotMet):
        system.stability.redeem(TRADER, 1)


def test_redeem_requires_managed_balance():
    system = _system(ref=995_000, idle=300)
    with pytest.raises(InsufficientBalance):
        system.stability.redeem("nobody", 100)
    assert system.controller.idle_reference() == 300
