from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List
import numpy as np
import pandas as pd

ACTION_STATUSES = ("executed", "reverted")


@dataclass
class MetricsStore:
    """Per-tick peg readings and per-submission keeper outcomes."""

    tick_rows: List[Dict[str, Any]] = field(default_factory=list)
    action_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_tick(self, row: Dict[str, Any]) -> None:
        self.tick_rows.append(row)

    def add_action(self, row: Dict[str, Any]) -> None:
        self.action_rows.append(row)

    def tick_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.tick_rows)

    def action_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.action_rows)

    def action_outcomes(self) -> pd.DataFrame:
        """Submissions per action, split into executed and reverted."""
        df = self.action_df()
        if df.empty:
            return pd.DataFrame(columns=list(ACTION_STATUSES), dtype=int)
        table = pd.crosstab(df["action"], df["status"])
        return table.reindex(columns=list(ACTION_STATUSES), fill_value=0)

    def peg_summary(self) -> Dict[str, float]:
        ticks = self.tick_df()
        if ticks.empty:
            deviation = np.zeros(1)
            in_band = 0.0
        else:
            deviation = ticks["peg_deviation_bps"].abs().to_numpy()
            in_band = float((ticks["regime"] == "in_band").mean())
        outcomes = self.action_outcomes().sum()
        return {
            "mean_abs_dev_bps": float(deviation.mean()),
            "p95_abs_dev_bps": float(np.percentile(deviation, 95)),
            "max_abs_dev_bps": float(deviation.max()),
            "share_in_band": in_band,
            "executed": int(outcomes.get("executed", 0)),
            "reverted": int(outcomes.get("reverted", 0)),
        }
