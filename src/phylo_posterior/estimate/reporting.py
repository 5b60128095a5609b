# src/phylo_posterior/estimate/reporting.py
"""
Fraction of estimated infections that appear in reported case counts.
"""

import numpy as np
import pandas as pd

from ..config import DEFAULT_START_DATE, SAMPLE_COL, TIME_COL
from ..errors import ValidationError
from .summary import LOWER_COL, UPPER_COL, calendar_dates, resolve_date_limits, restrict_window
from .trajectories import cumulative_infections

ESTIMATE_COL = "Cumulative infections"


def reporting_rate(
    trajectories,
    case_data: pd.DataFrame,
    date_limits=(DEFAULT_START_DATE, None),
    date_col: str = "Date",
    cumulative_col: str = "Cumulative",
    sample_col: str = SAMPLE_COL,
    time_col: str = TIME_COL,
) -> pd.DataFrame:
    """Reported cumulative cases on the next day over estimated cumulative infections.

    Estimated cumulative infections are reduced to one value per calendar day
    (the last time point of the day) and merged with the reported series. After
    restricting to start < Date <= end, each row gets

        reporting = reported(d + 1) / median(d)
        rep2.5    = reported(d + 1) / 97.5%(d)
        rep97.5   = min(reported(d + 1) / 2.5%(d), 1)

    Args:
        trajectories: combined trajectory table (or TrajectorySet)
        case_data: reported cases; `date_col` must hold calendar dates
        date_limits: (start, end); end None means the last trajectory time
        cumulative_col: column of `case_data` with cumulative reported cases
    Returns:
        DataFrame with Date, t, Cumulative infections, 2.5%, 97.5%, Cumulative,
        reporting, rep2.5, rep97.5
    Raises:
        ValidationError: dates that are strings/integers, or no cumulative column
    """
    dates = calendar_dates(case_data, date_col)
    if cumulative_col not in case_data.columns:
        raise ValidationError(f"Case data has no {cumulative_col!r} column")

    summary = cumulative_infections(trajectories, sample_col=sample_col, time_col=time_col)
    est = summary.table.copy()
    est["Date"] = est["Date"].dt.normalize()
    # last time point of each day as-is, NaN included
    est = est.groupby("Date").tail(1).reset_index(drop=True)

    reported = pd.DataFrame({
        "Date": dates.dt.normalize(),
        "Cumulative": case_data[cumulative_col].to_numpy(dtype=float),
    })
    merged = pd.merge(est, reported, on="Date", how="outer").sort_values("Date").reset_index(drop=True)

    start, end = resolve_date_limits(date_limits, summary.table["t"].to_numpy())
    merged = restrict_window(merged, start, end)

    lead = merged["Cumulative"].shift(-1)
    with np.errstate(divide="ignore", invalid="ignore"):
        merged["reporting"] = (lead / merged[ESTIMATE_COL]).replace([np.inf, -np.inf], np.nan)
        merged["rep2.5"] = (lead / merged[UPPER_COL]).replace([np.inf, -np.inf], np.nan)
        merged["rep97.5"] = np.minimum(lead / merged[LOWER_COL], 1.0)
    return merged
