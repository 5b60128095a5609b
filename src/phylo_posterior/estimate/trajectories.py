# src/phylo_posterior/estimate/trajectories.py
"""
Summaries of SEIJR trajectories through time.

A combined trajectory table holds one block of rows per sample key. All blocks
must share the same time axis, so each state variable can be laid out as a
(time x draws) matrix and summarised cross-sectionally: quantiles are taken
across draws at each time point independently.
"""

from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd

from ..chains.load_chains import common_time_axis
from ..config import B_COL, DEFAULT_P_H, DEFAULT_TAU, GAMMA1, P_H_COL, SAMPLE_COL, TAU_COL, TIME_COL
from ..errors import ValidationError
from .reproduction import draw_reproduction_numbers, fill_missing_parameters
from .summary import EpidemicSummary, decimal_years_to_dates

POPULATION_COLS = ("S", "E", "Il", "Ih", "R")


class TrajectorySet:
    """A combined trajectory table split by sample key."""

    def __init__(self, table: pd.DataFrame, sample_col: str = SAMPLE_COL, time_col: str = TIME_COL):
        if sample_col not in table.columns or time_col not in table.columns:
            raise ValidationError(f"Trajectory table needs {sample_col!r} and {time_col!r} columns")
        self.table = table
        self.sample_col = sample_col
        self.time_col = time_col
        self.taxis = common_time_axis(table, sample_col, time_col)
        groups = list(table.groupby(sample_col, sort=False))
        self.keys: List[str] = [str(k) for k, _ in groups]
        self._blocks: List[pd.DataFrame] = [g for _, g in groups]

    @classmethod
    def from_frame(cls, table: pd.DataFrame, sample_col: str = SAMPLE_COL, time_col: str = TIME_COL) -> "TrajectorySet":
        return cls(table, sample_col=sample_col, time_col=time_col)

    def __len__(self):
        return len(self.keys)

    @property
    def dates(self) -> pd.DatetimeIndex:
        return decimal_years_to_dates(self.taxis)

    def matrix(self, column: str) -> np.ndarray:
        """(time x draws) values of one state column."""
        if column not in self.table.columns:
            raise ValidationError(f"Trajectory table has no {column!r} column")
        return np.column_stack([b[column].to_numpy(dtype=float) for b in self._blocks])

    def susceptible_fraction(self) -> np.ndarray:
        """S / (S + E + Il + Ih + R) at every time point of every trajectory."""
        m = {c: self.matrix(c) for c in POPULATION_COLS}
        total = m["S"] + m["E"] + m["Il"] + m["Ih"] + m["R"]
        with np.errstate(divide="ignore", invalid="ignore"):
            return m["S"] / total

    def aligned_draws(self, draws: pd.DataFrame) -> pd.DataFrame:
        """Rows of `draws` reordered to match the trajectory keys."""
        if self.sample_col not in draws.columns:
            raise ValidationError(f"Posterior trace has no {self.sample_col!r} column")
        indexed = draws.assign(_key=draws[self.sample_col].astype(str)).drop_duplicates("_key").set_index("_key")
        missing = [k for k in self.keys if k not in indexed.index]
        if missing:
            raise ValidationError(f"{len(missing)} trajectories have no matching draw, e.g. {missing[:5]}")
        return indexed.loc[self.keys].reset_index(drop=True)


def _default_fill(tau_col: str, p_h_col: str) -> Dict[str, float]:
    return {tau_col: DEFAULT_TAU, p_h_col: DEFAULT_P_H}


def as_trajectory_set(trajectories: Union[TrajectorySet, pd.DataFrame],
                      sample_col: str = SAMPLE_COL, time_col: str = TIME_COL) -> TrajectorySet:
    if isinstance(trajectories, TrajectorySet):
        return trajectories
    return TrajectorySet(trajectories, sample_col=sample_col, time_col=time_col)


def state_summary(trajectories, column: str, name: Optional[str] = None,
                  sample_col: str = SAMPLE_COL, time_col: str = TIME_COL) -> EpidemicSummary:
    """Median and 95% interval of one state variable through time."""
    ts = as_trajectory_set(trajectories, sample_col, time_col)
    return EpidemicSummary.from_samples(name or column, ts.taxis, ts.matrix(column), ts.keys)


def cumulative_infections(trajectories, sample_col: str = SAMPLE_COL, time_col: str = TIME_COL) -> EpidemicSummary:
    return state_summary(trajectories, "infections", "Cumulative infections", sample_col, time_col)


def infectious_summary(trajectories, sample_col: str = SAMPLE_COL, time_col: str = TIME_COL) -> EpidemicSummary:
    """Il + Ih through time."""
    ts = as_trajectory_set(trajectories, sample_col, time_col)
    return EpidemicSummary.from_samples("Infectious", ts.taxis, ts.matrix("Il") + ts.matrix("Ih"), ts.keys)


def effective_reproduction_number(
    trajectories,
    draws: pd.DataFrame,
    gamma1: float = GAMMA1,
    defaults: Optional[Dict[str, float]] = None,
    b_col: str = B_COL,
    tau_col: str = TAU_COL,
    p_h_col: str = P_H_COL,
    sample_col: str = SAMPLE_COL,
    time_col: str = TIME_COL,
) -> EpidemicSummary:
    """R(t): each draw's R0 scaled by the susceptible fraction of its trajectory.

    Args:
        trajectories: combined trajectory table (or TrajectorySet)
        draws: combined posterior trace; every trajectory key must appear in it
        gamma1: recovery rate per year
        defaults: fill values for tau / p_h when they were not logged
    Returns:
        EpidemicSummary named 'R(t)'
    """
    ts = as_trajectory_set(trajectories, sample_col, time_col)
    x = ts.aligned_draws(draws)
    x = fill_missing_parameters(x, defaults or _default_fill(tau_col, p_h_col))
    r0 = draw_reproduction_numbers(x, gamma1, b_col=b_col, tau_col=tau_col, p_h_col=p_h_col)
    rt = ts.susceptible_fraction() * r0[np.newaxis, :]
    return EpidemicSummary.from_samples("R(t)", ts.taxis, rt, ts.keys)


def daily_infections(
    trajectories,
    draws: pd.DataFrame,
    defaults: Optional[Dict[str, float]] = None,
    b_col: str = B_COL,
    tau_col: str = TAU_COL,
    p_h_col: str = P_H_COL,
    sample_col: str = SAMPLE_COL,
    time_col: str = TIME_COL,
) -> EpidemicSummary:
    """New infections per day: (b * Il + b * tau * Ih) * S / N / 365.

    A missing state value only removes that draw from that time point's quantiles.
    """
    ts = as_trajectory_set(trajectories, sample_col, time_col)
    x = fill_missing_parameters(ts.aligned_draws(draws), defaults or _default_fill(tau_col, p_h_col))
    if b_col not in x.columns:
        raise ValidationError(f"Posterior trace is missing parameter column {b_col!r}")
    b = x[b_col].to_numpy(dtype=float)[np.newaxis, :]
    tau = x[tau_col].to_numpy(dtype=float)[np.newaxis, :]
    y = (1.0 / 365.0) * (b * ts.matrix("Il") + b * tau * ts.matrix("Ih")) * ts.susceptible_fraction()
    return EpidemicSummary.from_samples("New infections", ts.taxis, y, ts.keys)
