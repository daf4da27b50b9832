import json
import time
from dataclasses import replace

import pandas as pd
import streamlit as st

from pegsim.config import ScenarioConfig
from pegsim.core import PRICE_PRECISION
from pegsim.engine import SimulationEngine
from pegsim.errors import ControllerError
from pegsim.factory import OWNER

st.set_page_config(page_title="Peg Defense Simulator", layout="wide")

SWEEP_PARAMS = {
    "Trader flow stdev": ("trader_flow_std", float),
    "Trader flow mean": ("trader_flow_mean", float),
    "Keeper latency (ticks)": ("keeper_latency_ticks", int),
    "Keeper interval (ticks)": ("keeper_interval_ticks", int),
    "Pool fee (bps)": ("pool_fee_bps", int),
    "Initial idle reference": ("initial_idle_reference", int),
    "Redeem per tick": ("stability_redeem_per_tick", int),
}


# -----------------------------
# Session state
# -----------------------------
def _restart(cfg: ScenarioConfig, seed: int) -> SimulationEngine:
    st.session_state.peg_engine = SimulationEngine(cfg=cfg, seed=int(seed))
    st.session_state.last_run = "Idle"
    return st.session_state.peg_engine


def current_engine() -> SimulationEngine:
    if "peg_engine" not in st.session_state:
        return _restart(ScenarioConfig(), st.session_state.get("seed", 1))
    return st.session_state.peg_engine


# -----------------------------
# Formatting
# -----------------------------
def _usd(price: int) -> str:
    return f"{int(price) / PRICE_PRECISION:.6f}"

def _units(value) -> str:
    return f"{int(value):,}"

def _elapsed(seconds: float) -> str:
    seconds = max(0.0, seconds)
    return f"{int(seconds // 60)}m {seconds % 60:0.1f}s"

def _kpis(pairs, per_row: int = 5) -> None:
    for start in range(0, len(pairs), per_row):
        for col, (label, value) in zip(st.columns(per_row), pairs[start: start + per_row]):
            col.metric(label, value)

def _meta_text(meta) -> str:
    if not meta:
        return ""
    try:
        return json.dumps(meta, sort_keys=True)
    except TypeError:
        return str(meta)

def _price_input(label: str, value: int, key: str) -> int:
    usd = st.number_input(label, min_value=0.0, value=float(value) / PRICE_PRECISION,
                          step=0.0005, format="%.4f", key=key)
    return int(round(usd * PRICE_PRECISION))


# -----------------------------
# Runs
# -----------------------------
def _advance(engine: SimulationEngine, ticks: int, bar) -> None:
    started = time.time()
    for done in range(1, ticks + 1):
        engine.step(1)
        bar.progress(done / ticks, text=f"Tick {engine.tick} ({done}/{ticks})")
    st.session_state.last_run = f"Ran {ticks} tick(s) in {_elapsed(time.time() - started)}"
    bar.progress(1.0, text=st.session_state.last_run)


def _parse_values(text: str, cast: type) -> list:
    out = []
    for token in (t.strip() for t in text.split(",")):
        if not token:
            continue
        try:
            out.append(cast(float(token)))
        except ValueError:
            continue
    return out


def _run_outcome(sim: SimulationEngine) -> dict:
    return {**sim.metrics.peg_summary(), "managed_supply": sim.system.managed.total_supply}


def _sweep(base: ScenarioConfig, field_name: str, values: list, runs: int, ticks: int, seed: int) -> pd.DataFrame:
    rows = []
    for value in values:
        cfg = replace(base, **{field_name: value})
        for run in range(runs):
            sim = SimulationEngine(cfg=cfg, seed=seed + run)
            sim.step(ticks)
            rows.append({field_name: value, "seed": seed + run, **_run_outcome(sim)})
    return pd.DataFrame(rows)


engine = current_engine()

st.title("Peg Defense Simulator")
st.caption(
    f"1 tick = {engine.cfg.tick_seconds} s. Prices are 8-decimal fixed point "
    f"({PRICE_PRECISION:,} = 1.00 reference unit)."
)

with st.sidebar:
    st.header("Run")
    seed = st.number_input("Random seed", min_value=1, max_value=100_000, value=1, step=1, key="seed")
    if st.button("Reset to defaults"):
        engine = _restart(ScenarioConfig(), seed)
        st.session_state.sweep = None
    if st.button("Restart with current settings"):
        engine = _restart(replace(engine.cfg), seed)

    n_ticks = st.slider("Ticks per run", min_value=1, max_value=1000, value=48)
    left, right = st.columns(2)
    one = left.button("Step")
    many = right.button(f"Run {n_ticks}")
    bar = st.progress(0.0, text=st.session_state.get("last_run", "Idle"))
    if one:
        _advance(engine, 1, bar)
    if many:
        _advance(engine, int(n_ticks), bar)
    st.caption(f"Tick {engine.tick} | t = {engine.system.clock.now}")

    st.header("Controller")
    state = engine.controller.state
    floor = _price_input("Floor price", state.floor_price, "floor_in")
    cap = _price_input("Cap price", state.cap_price, "cap_in")
    if st.button("Apply band"):
        try:
            if floor != state.floor_price:
                engine.controller.set_floor_price(OWNER, floor)
            if cap != state.cap_price:
                engine.controller.set_cap_price(OWNER, cap)
        except ControllerError as exc:
            st.warning(f"Band rejected: {exc.reason}")
    paused = st.checkbox("Paused", value=state.paused)
    if paused != state.paused:
        engine.controller.set_paused(OWNER, paused)

    st.header("Sweep")
    label = st.selectbox("Parameter", list(SWEEP_PARAMS))
    field_name, cast = SWEEP_PARAMS[label]
    raw_values = st.text_input("Values", value=str(getattr(engine.cfg, field_name)), key=f"sweep_{field_name}")
    runs = st.number_input("Seeds per value", min_value=1, max_value=50, value=3, step=1)
    sweep_ticks = st.number_input("Ticks per seed", min_value=1, max_value=2000, value=96, step=1)
    if st.button("Run sweep"):
        values = _parse_values(raw_values, cast)
        if values:
            with st.spinner(f"Sweeping {field_name} over {len(values)} value(s)"):
                st.session_state.sweep = _sweep(engine.cfg, field_name, values, int(runs),
                                                int(sweep_ticks), int(seed))
        else:
            st.warning("No numeric values to sweep.")

ticks = engine.metrics.tick_df()
actions = engine.metrics.action_df()

peg_tab, position_tab, actions_tab, events_tab, market_tab, sweep_tab = st.tabs(
    ["Peg", "Position", "Actions", "Events", "Market", "Sweep"]
)

with peg_tab:
    if ticks.empty:
        st.info("Metrics are sampled every `metrics_stride` ticks; run the simulation.")
    else:
        last = ticks.iloc[-1]
        _kpis([
            ("Spot", _usd(last["spot"])),
            ("TWAP", _usd(last["twap"])),
            ("Deviation (bps)", f"{last['peg_deviation_bps']:+.2f}"),
            ("Regime", last["regime"]),
            ("Managed supply", _units(last["managed_supply"])),
        ])
        band = ticks.assign(floor_usd=ticks["floor_price"] / PRICE_PRECISION,
                            cap_usd=ticks["cap_price"] / PRICE_PRECISION)
        st.subheader("Spot and TWAP against the band")
        st.line_chart(band, x="tick", y=["spot_usd", "twap_usd", "floor_usd", "cap_usd"])
        st.subheader("Regime occupancy")
        st.bar_chart(ticks["regime"].value_counts())
        st.subheader("Trader flow per tick")
        st.bar_chart(ticks, x="tick", y="trader_flow_tick")

with position_tab:
    if not ticks.empty:
        last = ticks.iloc[-1]
        _kpis([
            ("Idle reference", _units(last["idle_reference"])),
            ("LP staked", _units(last["lp_staked"])),
            ("LP unstaked", _units(last["lp_unstaked"])),
            ("Position reference", _units(last["position_reference"])),
            ("Position managed", _units(last["position_managed"])),
            ("Minted", _units(last["controller_minted_total"])),
            ("Burned", _units(last["controller_burned_total"])),
            ("Rewards", _units(last["reward_balance"])),
        ], per_row=4)
        st.line_chart(ticks, x="tick", y=["position_reference", "position_managed", "idle_reference"])
        st.line_chart(ticks, x="tick", y=["reserve_reference", "reserve_managed"])
    st.subheader("Next proposal")
    proposal = engine.controller.next_proposal()
    if proposal.empty:
        st.write("Nothing to do.")
    else:
        st.json(proposal.to_dict())

with actions_tab:
    if actions.empty:
        st.info("The keeper has not submitted anything yet.")
    else:
        st.dataframe(engine.metrics.action_outcomes(), use_container_width=True)
        st.line_chart(ticks, x="tick", y=["actions_executed_tick", "actions_reverted_tick"])
        st.dataframe(actions.iloc[::-1], use_container_width=True)

with events_tab:
    recent = engine.log.tail(300)
    if not recent:
        st.info("No events yet.")
    else:
        events = pd.DataFrame([vars(e) for e in recent]).iloc[::-1]
        kinds = sorted(events["event_type"].unique())
        shown = st.multiselect("Event types", kinds, default=kinds)
        events = events[events["event_type"].isin(shown)].assign(meta=lambda d: d["meta"].map(_meta_text))
        st.dataframe(events, use_container_width=True)

with market_tab:
    cfg = engine.cfg
    st.subheader("Trader flow")
    cfg.trader_flow_mean = st.number_input("Mean (reference/tick, + buys managed)",
                                           value=float(cfg.trader_flow_mean), step=100.0)
    cfg.trader_flow_std = st.number_input("Stdev (reference/tick)", min_value=0.0,
                                          value=float(cfg.trader_flow_std), step=100.0)
    shock = st.number_input("Shock size (reference units, negative dumps managed)",
                            value=int(cfg.shock_amount), step=1000)
    if st.button("Shock on next tick"):
        cfg.shock_tick, cfg.shock_amount = engine.tick + 1, int(shock)

    st.subheader("Keeper")
    cfg.keeper_enabled = st.checkbox("Enabled", value=cfg.keeper_enabled)
    cfg.keeper_interval_ticks = st.number_input("Interval (ticks)", min_value=1,
                                                value=int(cfg.keeper_interval_ticks))
    cfg.keeper_latency_ticks = st.number_input("Latency (ticks); >0 submits stale proposals",
                                               min_value=0, value=int(cfg.keeper_latency_ticks))

    st.subheader("Stability module")
    cfg.stability_mint_per_tick = st.number_input("Mint per tick", min_value=0,
                                                  value=int(cfg.stability_mint_per_tick), step=100)
    cfg.stability_redeem_per_tick = st.number_input("Redeem per tick", min_value=0,
                                                    value=int(cfg.stability_redeem_per_tick), step=100)
    if st.button("Pin TWAP to spot"):
        engine.set_twap_override(engine.controller.price_snapshot().spot)
    if st.button("Release TWAP pin"):
        engine.set_twap_override(None)

with sweep_tab:
    sweep = st.session_state.get("sweep")
    if sweep is None or sweep.empty:
        st.info("Pick a parameter and values in the sidebar, then run a sweep.")
    else:
        key = sweep.columns[0]
        st.dataframe(sweep.groupby(key).mean(numeric_only=True).drop(columns="seed"),
                     use_container_width=True)
        st.dataframe(sweep, use_container_width=True)
