# src/phylo_posterior/chains/combine_chains.py
"""
Combine retained chains into one posterior sample.

Every retained draw gets the sample key "<sample id>.<chain index>", where the
chain index is the 1-based position of the run in the list passed in. The same
relabelling is applied to trajectories, so a trajectory's key names exactly one
combined draw.

Three entry points:
  - combine_logs: parameter logs only, ANOVA/Tukey filter, ranked order
  - combine_traj: trajectory files only, no filtering
  - combine_logs_and_traj: paired logs and trajectories, pairwise ESS-adjusted test
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

import joblib
import numpy as np
import pandas as pd
from numpy.random import Generator, SeedSequence, default_rng

from ..config import POSTERIOR_COL, SAMPLE_COL, TIME_COL
from ..errors import ChainLoadError, ValidationError
from .convergence import AnovaRankFilter, ConvergenceFilter, FilterResult, PairwiseTestFilter, effective_sample_size
from .load_chains import Chain, Source, common_time_axis, describe_source, load_chains, load_trajectories

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# ---------- persistence ----------


def save_table(table: pd.DataFrame, path: PathLike) -> Path:
    """Serialize a combined table with joblib; parent directories are created."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(table, path)
    logger.info("Saved %d rows to %s", len(table), path)
    return path


def load_table(path: PathLike) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Combined table not found: {path}")
    table = joblib.load(path)
    if not isinstance(table, pd.DataFrame):
        raise ValidationError(f"{path} does not hold a table (found {type(table).__name__})")
    return table


# ---------- combined sample ----------


@dataclass(eq=False)
class CombinedSample:
    """Combined draws and (optionally) trajectories sharing sample keys."""
    draws: pd.DataFrame
    trajectories: Optional[pd.DataFrame] = None
    filter_result: Optional[FilterResult] = None
    sample_col: str = SAMPLE_COL
    time_col: str = TIME_COL

    def validate(self) -> "CombinedSample":
        """Check key uniqueness, that trajectory keys are a subset of draw keys, and the shared time axis."""
        keys = self.draws[self.sample_col].astype(str)
        dup = keys[keys.duplicated()].unique()
        if dup.size:
            raise ValidationError(f"Duplicate sample keys in combined draws: {list(dup[:5])}")

        if self.trajectories is not None:
            traj_keys = set(self.trajectories[self.sample_col].astype(str).unique())
            missing = sorted(traj_keys - set(keys))
            if missing:
                raise ValidationError(f"{len(missing)} trajectories have no matching draw, e.g. {missing[:5]}")
            common_time_axis(self.trajectories, self.sample_col, self.time_col)
        return self

    @property
    def sample_keys(self) -> List[str]:
        return self.draws[self.sample_col].astype(str).tolist()

    def save(self, draws_path: Optional[PathLike] = None, traj_path: Optional[PathLike] = None) -> List[Path]:
        written = []
        if draws_path is not None:
            written.append(save_table(self.draws, draws_path))
        if traj_path is not None and self.trajectories is not None:
            written.append(save_table(self.trajectories, traj_path))
        return written

    @classmethod
    def load(cls, draws_path: PathLike, traj_path: Optional[PathLike] = None,
             sample_col: str = SAMPLE_COL, time_col: str = TIME_COL) -> "CombinedSample":
        draws = load_table(draws_path)
        trajectories = load_table(traj_path) if traj_path is not None else None
        return cls(draws=draws, trajectories=trajectories, sample_col=sample_col, time_col=time_col).validate()


# ---------- helpers ----------


def sample_key(sample_id, chain_index: int) -> str:
    return f"{sample_id}.{chain_index}"


def relabel_samples(table: pd.DataFrame, chain_index: int, sample_col: str = SAMPLE_COL) -> pd.DataFrame:
    """Copy of `table` with every sample id replaced by its combined sample key."""
    out = table.copy()
    out[sample_col] = out[sample_col].map(lambda s: sample_key(s, chain_index))
    return out


def combine_draws(chains: Sequence[Optional[Chain]], keep: Sequence[int], sample_col: str = SAMPLE_COL) -> pd.DataFrame:
    """Relabel and concatenate the draws of chains[k] for k in keep, in that order."""
    if not keep:
        raise ValidationError("Keep-set is empty")
    parts = [relabel_samples(chains[k].draws, chains[k].index, sample_col) for k in keep]
    return pd.concat(parts, ignore_index=True)


def chain_generators(seed: Optional[int], n_chains: int) -> List[Generator]:
    """One independent generator per input chain, all derived from `seed`.

    Chain k always gets the k-th child stream, whichever other chains are kept.
    """
    return [default_rng(s) for s in SeedSequence(seed).spawn(n_chains)]


def subsample_trajectories(table: pd.DataFrame, ntraj: int, rng: Generator,
                           sample_col: str = SAMPLE_COL) -> pd.DataFrame:
    """Keep min(ntraj, available) trajectories chosen uniformly without replacement."""
    if ntraj < 1:
        raise ValidationError(f"ntraj must be >= 1, got {ntraj}")
    ids = np.sort(table[sample_col].unique())
    chosen = rng.choice(ids, size=min(ntraj, ids.size), replace=False)
    return table.loc[table[sample_col].isin(chosen)].reset_index(drop=True)


def combined_effective_sizes(draws: pd.DataFrame, sample_col: str = SAMPLE_COL) -> pd.Series:
    """Effective sample size of each numeric column of a combined trace."""
    sizes = {}
    for col in draws.select_dtypes(include="number").columns:
        if col == sample_col:
            continue
        sizes[col] = effective_sample_size(draws[col].dropna().to_numpy())
    return pd.Series(sizes, name="ESS", dtype=float)


def _log_effective_sizes(draws: pd.DataFrame, sample_col: str):
    sizes = combined_effective_sizes(draws, sample_col)
    if not sizes.empty:
        logger.info("Effective sample sizes of combined logs:\n%s", sizes.round(1).to_string())


# ---------- entry points ----------


def combine_logs(
    log_sources: Sequence[Source],
    burn_proportion: float = 0.5,
    chain_filter: Optional[ConvergenceFilter] = None,
    out_path: Optional[PathLike] = None,
    posterior_col: str = POSTERIOR_COL,
    sample_col: str = SAMPLE_COL,
    n_jobs: int = 1,
) -> CombinedSample:
    """Combine parameter logs after burn-in, dropping chains stuck in a worse mode.

    By default chains are filtered with AnovaRankFilter and combined in ranked
    order (highest median log-posterior first).

    Returns:
        CombinedSample with draws only
    Raises:
        ValidationError: no log could be loaded
        StatisticalDegeneracyError: log-posterior without variation
    """
    chain_filter = AnovaRankFilter() if chain_filter is None else chain_filter
    sources = [describe_source(s) for s in log_sources]
    chains = load_chains(log_sources, burn_proportion, posterior_col=posterior_col, sample_col=sample_col,
                         n_jobs=n_jobs)
    result = chain_filter.select(chains, sources=sources)

    draws = combine_draws(chains, result.keep, sample_col)
    combined = CombinedSample(draws=draws, filter_result=result, sample_col=sample_col).validate()
    _log_effective_sizes(draws, sample_col)

    if out_path is not None:
        combined.save(draws_path=out_path)
    return combined


def combine_traj(
    traj_sources: Sequence[Source],
    burn_proportion: float = 0.5,
    ntraj: int = 100,
    seed: Optional[int] = None,
    out_path: Optional[PathLike] = None,
    sample_col: str = SAMPLE_COL,
    time_col: str = TIME_COL,
) -> pd.DataFrame:
    """Combine trajectory files after burn-in, sampling up to `ntraj` per file.

    No convergence filtering happens here: pass only files whose logs passed
    the filter (see combine_logs), or use combine_logs_and_traj.
    """
    logger.info("Only pass trajectory files from runs that passed the convergence filter")
    rngs = chain_generators(seed, len(traj_sources))
    parts = []
    for k, (src, rng) in enumerate(zip(traj_sources, rngs), start=1):
        try:
            table = load_trajectories(src, burn_proportion, sample_col=sample_col, time_col=time_col)
        except ChainLoadError as exc:
            logger.warning("Dropping trajectory file: %s", exc)
            continue
        sampled = subsample_trajectories(table, ntraj, rng, sample_col)
        parts.append(relabel_samples(sampled, k, sample_col))

    if not parts:
        raise ValidationError(f"No usable trajectory files among {len(traj_sources)} inputs")
    combined = pd.concat(parts, ignore_index=True)
    common_time_axis(combined, sample_col, time_col)

    if out_path is not None:
        save_table(combined, out_path)
    return combined


def combine_logs_and_traj(
    log_sources: Sequence[Source],
    traj_sources: Sequence[Source],
    burn_proportion: float = 0.5,
    ntraj: int = 200,
    pth: float = 0.01,
    seed: Optional[int] = None,
    out_path: Optional[PathLike] = None,
    out_traj_path: Optional[PathLike] = None,
    posterior_col: str = POSTERIOR_COL,
    sample_col: str = SAMPLE_COL,
    time_col: str = TIME_COL,
    n_jobs: int = 1,
) -> CombinedSample:
    """Combine paired BEAST logs and PhyDyn trajectory files.

    log_sources[k] and traj_sources[k] must come from the same run. Chains are
    filtered with PairwiseTestFilter(pth); pth < 0 keeps every chain that
    loads. From each retained chain up to `ntraj` post-burn-in trajectories
    with a matching draw are sampled, using a generator derived from `seed`.

    Returns:
        CombinedSample whose draws and trajectories share sample keys
    Raises:
        ValidationError: unpaired inputs, no usable chain, mismatched time axes
        StatisticalDegeneracyError: the pairwise test cannot be evaluated
    """
    if len(log_sources) != len(traj_sources):
        raise ValidationError(
            f"Provide *paired* log and traj files: got {len(log_sources)} logs and {len(traj_sources)} traj files"
        )
    sources = [describe_source(s) for s in log_sources]
    traj_names = [describe_source(s) for s in traj_sources]
    for k, (log_name, traj_name) in enumerate(zip(sources, traj_names), start=1):
        logger.info("Pair %d: %s <-> %s", k, log_name, traj_name)
    logger.info("Make sure that each pair corresponds to the same BEAST run")

    chains = load_chains(log_sources, burn_proportion, posterior_col=posterior_col, sample_col=sample_col,
                         n_jobs=n_jobs)
    result = PairwiseTestFilter(pth).select(chains, sources=sources)
    draws = combine_draws(chains, result.keep, sample_col)
    _log_effective_sizes(draws, sample_col)

    rngs = chain_generators(seed, len(log_sources))
    parts = []
    for k in result.keep:
        chain = chains[k]
        try:
            table = load_trajectories(traj_sources[k], burn_proportion, sample_col=sample_col, time_col=time_col)
        except ChainLoadError as exc:
            logger.warning("No trajectories from chain %d: %s", chain.index, exc)
            continue

        has_draw = table[sample_col].astype(str).isin(chain.draws[sample_col].astype(str))
        if not has_draw.all():
            n_missing = table.loc[~has_draw, sample_col].nunique()
            logger.warning("Chain %d: %d trajectories have no retained draw and were skipped", chain.index, n_missing)
            table = table.loc[has_draw]
        if table.empty:
            logger.warning("Chain %d: no trajectories left to sample", chain.index)
            continue

        sampled = subsample_trajectories(table, ntraj, rngs[k], sample_col)
        parts.append(relabel_samples(sampled, chain.index, sample_col))

    trajectories = pd.concat(parts, ignore_index=True) if parts else None
    if trajectories is None:
        logger.warning("No trajectories were combined")

    combined = CombinedSample(
        draws=draws,
        trajectories=trajectories,
        filter_result=result,
        sample_col=sample_col,
        time_col=time_col,
    ).validate()
    combined.save(draws_path=out_path, traj_path=out_traj_path)

    logger.info("These traj files were retained: %s", [traj_names[k] for k in result.keep])
    return combined
