# src/phylo_posterior/chains/load_chains.py
"""
Read BEAST parameter logs and PhyDyn trajectory files and remove burn-in.

Logs are trimmed by row: the first floor(p * n_rows) rows are dropped.
Trajectory files repeat every sample id once per time point, so they are
trimmed by id: the floor(p * n_ids) smallest sample ids are dropped.
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ..config import POSTERIOR_COL, SAMPLE_COL, TIME_COL
from ..errors import ChainLoadError, ValidationError

logger = logging.getLogger(__name__)

Source = Union[str, Path, pd.DataFrame]


@dataclass(frozen=True, eq=False)
class Chain:
    """One MCMC run after burn-in.

    index is the 1-based position of the run in the list the caller passed in;
    it is what disambiguates sample ids when chains are combined.
    """
    index: int
    source: str
    draws: pd.DataFrame
    posterior_col: str = POSTERIOR_COL
    sample_col: str = SAMPLE_COL

    @property
    def posterior(self) -> np.ndarray:
        return self.draws[self.posterior_col].to_numpy(dtype=float)

    @property
    def median_posterior(self) -> float:
        return float(np.median(self.posterior))

    def __len__(self):
        return len(self.draws)


def describe_source(source: Source) -> str:
    if isinstance(source, pd.DataFrame):
        return "<DataFrame>"
    return str(source)


def burn_in_count(n: int, burn_proportion: float) -> int:
    """Number of leading rows (or ids) to discard out of n."""
    if not 0.0 <= burn_proportion < 1.0:
        raise ValidationError(f"burn_proportion must be in [0, 1), got {burn_proportion}")
    return int(math.floor(burn_proportion * n))


def trim_burn_in(table: pd.DataFrame, burn_proportion: float) -> pd.DataFrame:
    """Return the trailing n - floor(p * n) rows, in their original order."""
    i = burn_in_count(len(table), burn_proportion)
    return table.iloc[i:].reset_index(drop=True)


def trim_trajectory_burn_in(table: pd.DataFrame, burn_proportion: float, sample_col: str = SAMPLE_COL) -> pd.DataFrame:
    """Drop every row of the earliest floor(p * n_ids) sample ids."""
    ids = np.sort(table[sample_col].unique())
    i = burn_in_count(ids.size, burn_proportion)
    keep = ids[i:]
    return table.loc[table[sample_col].isin(keep)].reset_index(drop=True)


def read_table(source: Source) -> pd.DataFrame:
    """Read a whitespace-delimited log with a header row; '#' lines are comments.

    A DataFrame is passed through (copied) so callers can hand over tables they
    already hold in memory.
    """
    if isinstance(source, pd.DataFrame):
        return source.copy()

    path = Path(source)
    if not path.exists():
        raise ChainLoadError(source, "file not found")
    try:
        return pd.read_csv(path, sep=r"\s+", comment="#")
    except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise ChainLoadError(source, str(exc)) from exc


def _require_columns(table: pd.DataFrame, columns: Sequence[str], source: Source):
    missing = [c for c in columns if c not in table.columns]
    if missing:
        raise ChainLoadError(describe_source(source), f"missing columns {missing}")


def load_chain(
    source: Source,
    index: int,
    burn_proportion: float = 0.5,
    posterior_col: str = POSTERIOR_COL,
    sample_col: str = SAMPLE_COL,
) -> Chain:
    """Read one parameter log and remove burn-in.

    Args:
        source: path to the log, or a DataFrame
        index: 1-based position of this chain in the caller's list
        burn_proportion: fraction of leading rows to drop, in [0, 1)
    Returns:
        Chain
    Raises:
        ChainLoadError: unreadable source, missing posterior/sample column, or a
            truncated row (missing or non-numeric posterior value)
        ValidationError: burn_proportion outside [0, 1)
    """
    burn_in_count(0, burn_proportion)
    table = read_table(source)
    _require_columns(table, [posterior_col, sample_col], source)
    if table.empty:
        raise ChainLoadError(describe_source(source), "log has no rows")
    posterior = pd.to_numeric(table[posterior_col], errors="coerce")
    if posterior.isna().any():
        bad = int(posterior.isna().sum())
        raise ChainLoadError(describe_source(source), f"{bad} row(s) with missing or non-numeric {posterior_col!r}")
    draws = trim_burn_in(table, burn_proportion)
    logger.debug("Loaded %s: %d rows, %d after burn-in", describe_source(source), len(table), len(draws))
    return Chain(
        index=index,
        source=describe_source(source),
        draws=draws,
        posterior_col=posterior_col,
        sample_col=sample_col,
    )


def load_trajectories(
    source: Source,
    burn_proportion: float = 0.5,
    sample_col: str = SAMPLE_COL,
    time_col: str = TIME_COL,
) -> pd.DataFrame:
    """Read one PhyDyn trajectory file and remove burn-in by sample id."""
    burn_in_count(0, burn_proportion)
    table = read_table(source)
    _require_columns(table, [sample_col, time_col], source)
    return trim_trajectory_burn_in(table, burn_proportion, sample_col=sample_col)


def _try_load_chain(source, index, burn_proportion, posterior_col, sample_col):
    try:
        return load_chain(source, index, burn_proportion, posterior_col=posterior_col, sample_col=sample_col), None
    except ChainLoadError as exc:
        return None, str(exc)


def load_chains(
    sources: Sequence[Source],
    burn_proportion: float = 0.5,
    posterior_col: str = POSTERIOR_COL,
    sample_col: str = SAMPLE_COL,
    n_jobs: int = 1,
) -> List[Optional[Chain]]:
    """Load every log in `sources`.

    The returned list has one entry per source, in input order. A source that
    fails to load is logged and left as None; it is not retried and does not
    stop the remaining chains from loading.
    """
    burn_in_count(0, burn_proportion)
    jobs = (
        delayed(_try_load_chain)(src, k, burn_proportion, posterior_col, sample_col)
        for k, src in enumerate(sources, start=1)
    )
    results = Parallel(n_jobs=n_jobs)(jobs)

    chains: List[Optional[Chain]] = []
    for chain, reason in results:
        if reason is not None:
            logger.warning("Dropping chain: %s", reason)
        chains.append(chain)
    return chains


def common_time_axis(table: pd.DataFrame, sample_col: str = SAMPLE_COL, time_col: str = TIME_COL) -> np.ndarray:
    """Return the time axis shared by every trajectory in `table`.

    Raises:
        ValidationError: no trajectories, or two trajectories whose time points differ
    """
    taxis = None
    first = None
    for key, g in table.groupby(sample_col, sort=False):
        t = g[time_col].to_numpy(dtype=float)
        if taxis is None:
            taxis, first = t, key
        elif t.shape != taxis.shape or not np.allclose(t, taxis, rtol=0.0, atol=1e-9):
            raise ValidationError(
                f"Trajectory {key!r} has {t.size} time points that differ from trajectory {first!r} "
                f"({taxis.size} points); all trajectories must share one time axis"
            )
    if taxis is None:
        raise ValidationError("Trajectory table is empty")
    return taxis
