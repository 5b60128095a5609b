# src/phylo_posterior/chains/convergence.py
"""
Decide which chains sampled the same posterior and can be pooled.

Independent runs of a phylodynamic model can settle in different tree-space
modes with systematically different posterior density. Two filters are
provided, both exposing ``select(chains) -> FilterResult``:

- AnovaRankFilter: rank chains by median log-posterior, one-way ANOVA with the
  chain as factor, Tukey HSD against the top-ranked chain. Used when only the
  parameter logs are combined.
- PairwiseTestFilter: compare each chain's log-posterior with the chain of
  highest median using a t-test whose standard error uses the effective sample
  size instead of the raw length (Zwiers & von Storch, J. Climate 8:336-351,
  1995). Used when logs and trajectories must stay paired.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from ..errors import StatisticalDegeneracyError, ValidationError
from .load_chains import Chain

logger = logging.getLogger(__name__)

# ---------- effective sample size ----------


def _autocovariance(x: np.ndarray) -> np.ndarray:
    """Autocovariance at lags 0..n-1 (divisor n), computed with an FFT."""
    n = x.size
    xc = x - x.mean()
    fftlen = 1 << int(np.ceil(np.log2(2 * n - 1)))
    fx = np.fft.rfft(xc, fftlen)
    acov = np.fft.irfft(fx * np.conjugate(fx), fftlen)[:n]
    return np.real(acov) / n


def _levinson_durbin(acov: np.ndarray, order_max: int) -> Tuple[List[np.ndarray], np.ndarray]:
    """Yule-Walker AR fits for every order 0..order_max.

    Returns the coefficient vector and innovation variance of each order. The
    recursion stops early if the innovation variance stops being positive.
    """
    phi = np.zeros(0)
    v = float(acov[0])
    coefs = [phi]
    variances = [v]
    for k in range(1, order_max + 1):
        kappa = (acov[k] - np.dot(phi, acov[k - 1:0:-1])) / v
        v_next = v * (1.0 - kappa ** 2)
        if v_next <= 0.0:
            break
        phi = np.append(phi - kappa * phi[::-1], kappa)
        v = v_next
        coefs.append(phi)
        variances.append(v)
    return coefs, np.asarray(variances)


def spectral_density_at_zero(x) -> float:
    """Spectral density at frequency zero from an AIC-selected AR model.

    Returns 0 for a series with no residual variation around a straight line.
    """
    x = np.asarray(x, dtype=float)
    n = x.size
    scale = np.std(x, ddof=1)
    if scale == 0.0:
        return 0.0
    z = np.arange(1, n + 1, dtype=float)
    slope, intercept = np.polyfit(z, x, 1)
    resid = x - (slope * z + intercept)
    if np.std(resid, ddof=1) <= 1e-10 * scale:
        return 0.0

    order_max = max(0, min(n - 2, int(math.floor(10 * math.log10(n)))))
    coefs, variances = _levinson_durbin(_autocovariance(x), order_max)
    aic = n * np.log(variances) + 2 * np.arange(variances.size)
    order = int(np.argmin(aic))
    var_pred = variances[order] * n / (n - (order + 1))
    return float(var_pred / (1.0 - coefs[order].sum()) ** 2)


def effective_sample_size(x) -> float:
    """MCMC effective sample size of a single trace.

    Args:
        x: 1D sequence of draws in sampling order
    Returns:
        float, n * var(x) / S(0); 0 when the trace is constant or too short
    """
    x = np.asarray(x, dtype=float)
    if x.size < 2:
        return 0.0
    spec = spectral_density_at_zero(x)
    if spec == 0.0:
        return 0.0
    return float(x.size * np.var(x, ddof=1) / spec)


# ---------- serial-correlation-adjusted test ----------


def posterior_difference_test(x, y, ess_x: Optional[float] = None,
                              ess_y: Optional[float] = None) -> Tuple[float, float]:
    """Two-sided test for a difference in mean log-posterior between two chains.

    The pooled standard deviation is the usual one, but each sample contributes
    1/sqrt(ESS) rather than 1/sqrt(n) to the standard error, and the Student-t
    reference distribution has ESS_x + ESS_y - 2 degrees of freedom.

    Args:
        x: reference chain's log-posterior draws
        y: candidate chain's log-posterior draws
        ess_x, ess_y: effective sample sizes, computed if not given
    Returns:
        (t statistic, p value)
    Raises:
        StatisticalDegeneracyError: zero pooled variance, ESS <= 0, or
        non-positive degrees of freedom
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    n, m = x.size, y.size
    if n + m <= 2:
        raise StatisticalDegeneracyError(f"Need more than two draws in total, got {n} + {m}")

    ss = np.sum((x - x.mean()) ** 2) + np.sum((y - y.mean()) ** 2)
    s = math.sqrt(ss / (n + m - 2))
    if s == 0.0:
        raise StatisticalDegeneracyError("Log-posterior has zero variance in both chains")

    ess_x = effective_sample_size(x) if ess_x is None else float(ess_x)
    ess_y = effective_sample_size(y) if ess_y is None else float(ess_y)
    if ess_x <= 0.0 or ess_y <= 0.0:
        raise StatisticalDegeneracyError(f"Effective sample size must be positive (got {ess_x:.3g}, {ess_y:.3g})")
    dof = ess_x + ess_y - 2.0
    if dof <= 0.0:
        raise StatisticalDegeneracyError(f"Non-positive degrees of freedom ({dof:.3g})")

    t = (y.mean() - x.mean()) / (s * (1.0 / math.sqrt(ess_x) + 1.0 / math.sqrt(ess_y)))
    cdf = float(stats.t.cdf(t, df=dof))
    return float(t), 2.0 * min(cdf, 1.0 - cdf)


# ---------- filter results ----------


@dataclass
class FilterResult:
    """Outcome of a convergence filter.

    keep holds 0-based positions into `chains`, in the order the chains should
    be combined. Failed loads are None in `chains` and never kept.
    """
    method: str
    chains: List[Optional[Chain]]
    keep: List[int]
    medians: np.ndarray
    pvalues: np.ndarray
    reasons: List[str]
    reference: Optional[int] = None
    sources: Optional[List[str]] = None

    def kept_chains(self) -> List[Chain]:
        return [self.chains[k] for k in self.keep]

    def source_of(self, k: int) -> str:
        if self.sources is not None:
            return str(self.sources[k])
        chain = self.chains[k]
        return chain.source if chain is not None else f"chain {k + 1}"

    def report(self) -> pd.DataFrame:
        """One row per input chain: source, median log-posterior, p value, kept, reason."""
        return pd.DataFrame({
            "chain": np.arange(1, len(self.chains) + 1),
            "source": [self.source_of(k) for k in range(len(self.chains))],
            "median_posterior": self.medians,
            "pvalue": self.pvalues,
            "kept": [k in self.keep for k in range(len(self.chains))],
            "reason": self.reasons,
        })

    def log_summary(self):
        logger.info("These logs were retained (%s): %s", self.method, [self.source_of(k) for k in self.keep])
        for k in range(len(self.chains)):
            if k not in self.keep:
                logger.warning("Dropped %s: %s", self.source_of(k), self.reasons[k])


# ---------- filters ----------


class ConvergenceFilter:
    """Select a keep-set from a list of loaded chains (None for failed loads)."""

    method = "none"

    def select(self, chains: Sequence[Optional[Chain]], sources: Optional[Sequence] = None) -> FilterResult:
        chains = list(chains)
        usable = [k for k, c in enumerate(chains) if c is not None]
        if not usable:
            raise ValidationError(f"No usable chains among {len(chains)} inputs")

        result = FilterResult(
            method=self.method,
            chains=chains,
            keep=[],
            medians=np.array([c.median_posterior if c is not None else -np.inf for c in chains]),
            pvalues=np.full(len(chains), np.nan),
            reasons=["" if c is not None else "load failure" for c in chains],
            sources=None if sources is None else [str(s) for s in sources],
        )
        bad = [chains[k].index for k in usable if not np.isfinite(result.medians[k])]
        if bad:
            raise StatisticalDegeneracyError(f"Chains {bad} have a non-finite median log-posterior")

        if len(usable) == 1:
            k = usable[0]
            result.keep = [k]
            result.reference = k
            result.reasons[k] = "only usable chain, not tested"
        else:
            self._select(result, usable)

        result.log_summary()
        return result

    def _select(self, result: FilterResult, usable: List[int]):
        raise NotImplementedError


class AnovaRankFilter(ConvergenceFilter):
    """Rank by median log-posterior and drop chains Tukey HSD separates from rank 1.

    Ties in the median keep the input order, so the choice of reference under a
    tie depends on the order the logs were given in.
    """

    method = "anova"

    def __init__(self, alpha: float = 0.05):
        self.alpha = alpha

    def _select(self, result: FilterResult, usable: List[int]):
        ranked = sorted(usable, key=lambda k: -result.medians[k])
        groups = [result.chains[k].posterior for k in ranked]

        within = sum(float(np.sum((g - g.mean()) ** 2)) for g in groups)
        if within == 0.0:
            raise StatisticalDegeneracyError("Log-posterior has zero within-chain variance in every chain")

        anova = stats.f_oneway(*groups)
        logger.info("One-way ANOVA of log-posterior by chain: F=%.4g, p=%.4g", anova.statistic, anova.pvalue)
        tukey = stats.tukey_hsd(*groups)

        result.reference = ranked[0]
        result.keep = [ranked[0]]
        result.reasons[ranked[0]] = "rank 1 (highest median log-posterior)"
        for rank, k in enumerate(ranked[1:], start=1):
            p = float(tukey.pvalue[0, rank])
            result.pvalues[k] = p
            if p > self.alpha:
                result.keep.append(k)
                result.reasons[k] = f"rank {rank + 1}, Tukey HSD p={p:.3g} > {self.alpha}"
            else:
                result.reasons[k] = f"rank {rank + 1}, Tukey HSD p={p:.3g} <= {self.alpha}"


class PairwiseTestFilter(ConvergenceFilter):
    """Keep chains whose log-posterior is indistinguishable from the best chain's.

    pth < 0 turns filtering off: every chain that loaded is kept, untested.
    """

    method = "pairwise"

    def __init__(self, pth: float = 0.01):
        self.pth = pth

    def _select(self, result: FilterResult, usable: List[int]):
        reference = max(usable, key=lambda k: result.medians[k])
        result.reference = reference
        for k, chain in enumerate(result.chains):
            if chain is None:
                result.pvalues[k] = -np.inf

        if self.pth < 0:
            result.keep = list(usable)
            for k in usable:
                result.reasons[k] = f"pth={self.pth} < 0, filtering disabled"
            return

        x = result.chains[reference].posterior
        ess_x = effective_sample_size(x)
        for k in usable:
            y = result.chains[k].posterior
            ess_y = ess_x if k == reference else effective_sample_size(y)
            _, p = posterior_difference_test(x, y, ess_x=ess_x, ess_y=ess_y)
            result.pvalues[k] = p
            label = "reference" if k == reference else "vs reference"
            if p > self.pth:
                result.keep.append(k)
                result.reasons[k] = f"{label}, p={p:.3g} > {self.pth}"
            else:
                result.reasons[k] = f"{label}, p={p:.3g} <= {self.pth}"
