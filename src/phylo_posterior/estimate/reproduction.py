# src/phylo_posterior/estimate/reproduction.py
"""
Reproduction number, growth rate and doubling time for the SEIJR model.

Infectious individuals are split into a low-transmission class (Il, rate b)
and a high-transmission class (Ih, rate tau * b) entered with probability p_h.
gamma0 is the rate of leaving the incubation period and gamma1 the recovery
rate, both per capita per year.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd

from ..config import B_COL, DEFAULT_P_H, DEFAULT_TAU, GAMMA0, GAMMA1, P_H_COL, TAU_COL
from ..errors import ValidationError
from .summary import QUANTILES, signif

logger = logging.getLogger(__name__)

QUANTILE_LABELS = ("50%", "2.5%", "97.5%")


def fill_missing_parameters(draws: pd.DataFrame, defaults: Optional[Dict[str, float]] = None) -> pd.DataFrame:
    """Fill parameters that were fixed in the model (and so not logged) with their defaults.

    A column that is absent is added; NaN values in a present column are filled.
    Each substitution is logged as a warning. The input table is not modified.

    Args:
        draws: posterior trace
        defaults: column -> value, by default seir.tau = 74 and seir.p_h = 0.2
    Returns:
        a copy of `draws` with no missing values in the default columns
    """
    if defaults is None:
        defaults = {TAU_COL: DEFAULT_TAU, P_H_COL: DEFAULT_P_H}
    out = draws.copy()
    for col, value in defaults.items():
        if col not in out.columns:
            logger.warning("%s not in posterior trace; using fixed value %s for all %d draws", col, value, len(out))
            out[col] = float(value)
            continue
        n_missing = int(out[col].isna().sum())
        if n_missing:
            logger.warning("%s missing in %d draws; filling with %s", col, n_missing, value)
            out[col] = out[col].fillna(float(value))
    return out


def reproduction_number(b, tau, p_h, gamma1: float = GAMMA1):
    """R0 = (1 - p_h) * b / gamma1 + tau * p_h * b / gamma1."""
    b, tau, p_h = (np.asarray(v, dtype=float) for v in (b, tau, p_h))
    return (1.0 - p_h) * b / gamma1 + tau * p_h * b / gamma1


def growth_rate(b, tau, p_h, gamma0: float = GAMMA0, gamma1: float = GAMMA1):
    """Exponential growth rate per year: the dominant eigenvalue of the linearised E/I system."""
    b, tau, p_h = (np.asarray(v, dtype=float) for v in (b, tau, p_h))
    beta = (1.0 - p_h) * b + p_h * tau * b
    return (-(gamma0 + gamma1) + np.sqrt((gamma0 - gamma1) ** 2 + 4.0 * gamma0 * beta)) / 2.0


def doubling_time(r_per_day):
    """ln(2) / r in days; NaN wherever r is not a positive finite number."""
    r = np.asarray(r_per_day, dtype=float)
    out = np.full(r.shape, np.nan)
    ok = np.isfinite(r) & (r > 0)
    out[ok] = np.log(2.0) / r[ok]
    return out


def _parameter_columns(draws: pd.DataFrame, b_col: str, tau_col: str, p_h_col: str):
    missing = [c for c in (b_col, tau_col, p_h_col) if c not in draws.columns]
    if missing:
        raise ValidationError(f"Posterior trace is missing parameter columns {missing}")
    return (draws[c].to_numpy(dtype=float) for c in (b_col, tau_col, p_h_col))


def draw_reproduction_numbers(
    draws: pd.DataFrame,
    gamma1: float = GAMMA1,
    b_col: str = B_COL,
    tau_col: str = TAU_COL,
    p_h_col: str = P_H_COL,
) -> np.ndarray:
    """R0 for every draw; tau and p_h must already be present (see fill_missing_parameters)."""
    b, tau, p_h = _parameter_columns(draws, b_col, tau_col, p_h_col)
    return reproduction_number(b, tau, p_h, gamma1)


def seijr_reproduction_number(
    draws: pd.DataFrame,
    gamma0: float = GAMMA0,
    gamma1: float = GAMMA1,
    precision: int = 3,
    defaults: Optional[Dict[str, float]] = None,
    b_col: str = B_COL,
    tau_col: str = TAU_COL,
    p_h_col: str = P_H_COL,
) -> pd.DataFrame:
    """Posterior median and 95% interval of R0, growth rate and doubling time.

    Quantities are computed per draw and then summarised; draws with an
    undefined doubling time (growth rate <= 0) are left out of its quantiles.

    Returns:
        DataFrame indexed by 50%, 2.5%, 97.5% with columns
        'Reproduction number', 'Growth rate (per day)', 'Doubling time (days)',
        rounded to `precision` significant digits
    """
    logger.info("Check gamma0=%s and gamma1=%s match the model that was fitted", gamma0, gamma1)
    if defaults is None:
        defaults = {tau_col: DEFAULT_TAU, p_h_col: DEFAULT_P_H}
    filled = fill_missing_parameters(draws, defaults)
    b, tau, p_h = _parameter_columns(filled, b_col, tau_col, p_h_col)

    r0 = reproduction_number(b, tau, p_h, gamma1)
    r_day = growth_rate(b, tau, p_h, gamma0, gamma1) / 365.0
    dbl = doubling_time(r_day)
    n_undefined = int(np.isnan(dbl).sum())
    if n_undefined:
        logger.warning("Doubling time undefined (growth rate <= 0) for %d of %d draws", n_undefined, dbl.size)

    def q(values):
        values = values[np.isfinite(values)]
        if values.size == 0:
            return np.full(len(QUANTILES), np.nan)
        return signif(np.quantile(values, QUANTILES), precision)

    out = pd.DataFrame(
        {
            "Reproduction number": q(r0),
            "Growth rate (per day)": q(r_day),
            "Doubling time (days)": q(dbl),
        },
        index=list(QUANTILE_LABELS),
    )
    logger.info("SEIJR summary:\n%s", out.to_string())
    return out
