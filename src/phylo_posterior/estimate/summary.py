# src/phylo_posterior/estimate/summary.py
"""
Quantile summaries, decimal-year dates and date windows shared by the estimators.
"""

import warnings
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..errors import ValidationError

# median first, then the two-sided 95% interval
QUANTILES: Tuple[float, float, float] = (0.5, 0.025, 0.975)
LOWER_COL = "2.5%"
UPPER_COL = "97.5%"

DateLike = Union[date, datetime, pd.Timestamp, str]


def quantile_band(values: np.ndarray, qs: Sequence[float] = QUANTILES) -> np.ndarray:
    """Per-row quantiles of a (time x draws) matrix, ignoring NaN.

    Rows that are entirely NaN give NaN rather than a warning.
    Returns an array of shape (n_rows, len(qs)).
    """
    values = np.asarray(values, dtype=float)
    if values.ndim == 1:
        values = values.reshape(1, -1)
    values = np.where(np.isfinite(values), values, np.nan)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        band = np.nanquantile(values, qs, axis=1)
    return band.T


def signif(x, digits: int = 3):
    """Round to `digits` significant figures (NaN passes through)."""
    x = np.asarray(x, dtype=float)
    out = np.full(x.shape, np.nan)
    finite = np.isfinite(x)
    out[finite] = [float(f"{v:.{digits}g}") for v in x[finite]]
    out[~finite] = x[~finite]
    return out


def decimal_year_to_timestamp(t: float) -> pd.Timestamp:
    """2020.0 -> 2020-01-01 00:00; fractions scale with the length of that year."""
    year = int(np.floor(t))
    start = pd.Timestamp(year=year, month=1, day=1)
    end = pd.Timestamp(year=year + 1, month=1, day=1)
    return start + (t - year) * (end - start)


def decimal_years_to_dates(taxis: Sequence[float]) -> pd.DatetimeIndex:
    return pd.DatetimeIndex([decimal_year_to_timestamp(float(t)) for t in taxis])


def resolve_date_limits(date_limits: Optional[Tuple[Optional[DateLike], Optional[DateLike]]],
                        taxis: Sequence[float]) -> Tuple[Optional[pd.Timestamp], pd.Timestamp]:
    """Turn (start, end) into timestamps; a missing end becomes the last trajectory time."""
    start, end = (None, None) if date_limits is None else date_limits
    start = None if start is None else pd.Timestamp(start)
    if end is None:
        end = decimal_year_to_timestamp(float(np.max(taxis)))
    else:
        end = pd.Timestamp(end)
    return start, end


def restrict_window(table: pd.DataFrame, start: Optional[pd.Timestamp], end: Optional[pd.Timestamp],
                    date_col: str = "Date") -> pd.DataFrame:
    """Rows with start < Date <= end."""
    mask = pd.Series(True, index=table.index)
    if start is not None:
        mask &= table[date_col] > start
    if end is not None:
        mask &= table[date_col] <= end
    return table.loc[mask].reset_index(drop=True)


def band_table(name: str, taxis: np.ndarray, values: np.ndarray) -> pd.DataFrame:
    """Time-indexed table with Date, t, median (named `name`) and the 95% interval."""
    band = quantile_band(values)
    return pd.DataFrame({
        "Date": decimal_years_to_dates(taxis),
        "t": np.asarray(taxis, dtype=float),
        name: band[:, 0],
        LOWER_COL: band[:, 1],
        UPPER_COL: band[:, 2],
    })


@dataclass(eq=False)
class EpidemicSummary:
    """Posterior median and 95% interval of one quantity through time.

    `samples` is the (time x draws) matrix the quantiles were taken over,
    with columns in the order of `keys`.
    """
    name: str
    table: pd.DataFrame
    samples: np.ndarray
    keys: Sequence[str]

    @classmethod
    def from_samples(cls, name: str, taxis: np.ndarray, samples: np.ndarray, keys: Sequence[str]) -> "EpidemicSummary":
        return cls(name=name, table=band_table(name, taxis, samples), samples=samples, keys=list(keys))

    def window(self, date_limits=None) -> pd.DataFrame:
        """The summary table restricted to start < Date <= end (end defaults to the last time point)."""
        start, end = resolve_date_limits(date_limits, self.table["t"].to_numpy())
        return restrict_window(self.table, start, end)


def require_calendar_dates(table: pd.DataFrame, date_col: str = "Date"):
    """Raise ValidationError unless `date_col` holds genuine calendar dates.

    datetime64 columns (timezone-aware or not) and columns of datetime.date
    objects are accepted; strings, integers and anything else are not.
    """
    if date_col not in table.columns:
        raise ValidationError(f"Case data has no {date_col!r} column")
    col = table[date_col]
    if pd.api.types.is_datetime64_any_dtype(col):
        return
    if col.dtype == object and len(col) and all(isinstance(v, date) for v in col):
        return
    raise ValidationError(
        f"Case data {date_col!r} column must hold calendar dates, not {col.dtype} "
        "(convert with pandas.to_datetime first)"
    )


def calendar_dates(table: pd.DataFrame, date_col: str = "Date") -> pd.Series:
    """Validated `date_col` as timezone-naive timestamps in local wall time."""
    require_calendar_dates(table, date_col)
    dates = pd.to_datetime(table[date_col])
    if dates.dt.tz is not None:
        dates = dates.dt.tz_localize(None)
    return dates
