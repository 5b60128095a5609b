# src/phylo_posterior/config.py
"""
Every option recognised by the combine/summarise pipeline, with its default.

A PipelineConfig is built once (by the runner or by calling code) and passed
explicitly to run_pipeline; nothing downstream reads options from module state.
"""

from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Dict, Optional, Tuple

# Column names written by BEAST / PhyDyn
POSTERIOR_COL = "posterior"
SAMPLE_COL = "Sample"
TIME_COL = "t"
B_COL = "seir.b"
TAU_COL = "seir.tau"
P_H_COL = "seir.p_h"

# SEIJR rates (per capita per year)
GAMMA0 = 73.0
GAMMA1 = 121.667

# Fallbacks used when tau / p_h were fixed in the XML and are not in the log
DEFAULT_TAU = 74.0
DEFAULT_P_H = 0.2

DEFAULT_START_DATE = date(2020, 2, 1)


@dataclass
class PipelineConfig:
    # chain combination
    burn_proportion: float = 0.5
    ntraj: int = 200
    pth: float = 0.01
    alpha: float = 0.05
    seed: Optional[int] = None
    n_jobs: int = 1

    # column names
    posterior_col: str = POSTERIOR_COL
    sample_col: str = SAMPLE_COL
    time_col: str = TIME_COL
    b_col: str = B_COL
    tau_col: str = TAU_COL
    p_h_col: str = P_H_COL

    # SEIJR model
    gamma0: float = GAMMA0
    gamma1: float = GAMMA1
    default_tau: float = DEFAULT_TAU
    default_p_h: float = DEFAULT_P_H
    precision: int = 3

    # summaries
    start_date: date = DEFAULT_START_DATE
    end_date: Optional[date] = None

    # outputs (None: do not write)
    out_log: Optional[str] = None
    out_traj: Optional[str] = None
    out_dir: Optional[str] = None
    log_y_axis: bool = False

    @property
    def date_limits(self) -> Tuple[date, Optional[date]]:
        return (self.start_date, self.end_date)

    @property
    def parameter_defaults(self) -> Dict[str, float]:
        return {self.tau_col: self.default_tau, self.p_h_col: self.default_p_h}

    def as_dict(self) -> Dict[str, Any]:
        """Flat dict of every option, e.g. for writing alongside the outputs."""
        return asdict(self)
