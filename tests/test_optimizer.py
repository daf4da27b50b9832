"""Tests for the bounded trade-size search."""
import random

from pegsim.core import TARGET_PRICE
from pegsim.optimizer import Direction, OptimizationResult, optimize, peg_distance
from pegsim.simulator import MarketSnapshot, ProbeResult, Simulator
from pegsim.actions import ActionKind


def _table_probe(prices, fail_from=None):
    calls = []

    def probe(amount):
        calls.append(amount)
        if fail_from is not None and amount >= fail_from:
            return ProbeResult.failure("too_large")
        return ProbeResult.success(prices[amount])

    return probe, calls


def _monotone_prices(rng, n, direction):
    start = rng.randint(TARGET_PRICE - 2_000_000, TARGET_PRICE + 2_000_000)
    prices = [start]
    for _ in range(n):
        step = rng.choice([0, 0, rng.randint(1, 50_000)])
        prices.append(prices[-1] + step if direction is Direction.RAISES_PRICE else prices[-1] - step)
    return prices


def test_zero_range_returns_no_op():
    probe, calls = _table_probe([99_500_000])
    result = optimize(probe, 0, Direction.RAISES_PRICE)

    assert result.amount == 0
    assert result.score == peg_distance(99_500_000)
    assert set(calls) == {0}


def test_upper_bound_is_probed_first():
    probe, calls = _table_probe(list(range(99_000_000, 99_000_011)))
    optimize(probe, 10, Direction.RAISES_PRICE)
    assert calls[0] == 10


def test_matches_exhaustive_scan_for_monotone_responses():
    rng = random.Random(1234)
    for direction in (Direction.RAISES_PRICE, Direction.LOWERS_PRICE):
        for _ in range(200):
            n = rng.randint(0, 1000)
            prices = _monotone_prices(rng, n, direction)
            probe, calls = _table_probe(prices)

            result = optimize(probe, n, direction)

            best = min(peg_distance(p) for p in prices)
            assert result.score == best
            assert peg_distance(prices[result.amount]) == best
            assert len(calls) <= 2 * (n.bit_length() + 1)


def test_failed_probes_narrow_toward_smaller_amounts():
    rng = random.Random(99)
    for _ in range(100):
        n = rng.randint(1, 1000)
        fail_from = rng.randint(1, n)
        prices = _monotone_prices(rng, n, Direction.RAISES_PRICE)
        probe, _calls = _table_probe(prices, fail_from=fail_from)

        result = optimize(probe, n, Direction.RAISES_PRICE)

        assert result.amount < fail_from
        assert result.score == min(peg_distance(p) for p in prices[:fail_from])


def _dust_table(prices, small_until):
    def quote(amount):
        if amount < small_until:
            return ProbeResult.failure("zero_output", undersized=True)
        return ProbeResult.success(prices[amount])

    return quote


def test_dust_failures_narrow_toward_larger_amounts():
    rng = random.Random(2024)
    for direction in (Direction.RAISES_PRICE, Direction.LOWERS_PRICE):
        for _ in range(100):
            n = rng.randint(1, 1000)
            small_until = rng.randint(1, n)
            prices = _monotone_prices(rng, n, direction)

            result = optimize(_dust_table(prices, small_until), n, direction)

            assert result.amount >= small_until
            assert result.score == min(peg_distance(p) for p in prices[small_until:])


def test_all_failures_report_no_score():
    result = optimize(lambda amount: ProbeResult.failure("broken"), 50, Direction.LOWERS_PRICE)
    assert result.score is None
    assert result.amount == 0
    assert not result.improves_on(10 ** 12)


def test_improvement_is_strict():
    assert OptimizationResult(score=5, amount=1, probes=1).improves_on(6)
    assert not OptimizationResult(score=5, amount=1, probes=1).improves_on(5)


def test_search_over_constant_product_curve():
    snap = MarketSnapshot(reserve_reference=995_000, reserve_managed=1_000_000,
                          lp_total_supply=997_496, idle_reference=20_000, lp_balance=0, fee_bps=30)
    sim = Simulator(snap)
    result = optimize(sim.bind(ActionKind.BUY_AND_BURN), snap.idle_reference, Direction.RAISES_PRICE)

    probes = (sim.probe(ActionKind.BUY_AND_BURN, a) for a in range(0, snap.idle_reference + 1))
    scan = min(peg_distance(r.price) for r in probes if r.ok)
    assert result.score == scan
    assert 0 < result.amount < snap.idle_reference
