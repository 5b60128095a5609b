import numpy as np
import pandas as pd
import pytest

from phylo_posterior.chains import convergence as cv
from phylo_posterior.chains.convergence import (
    AnovaRankFilter,
    PairwiseTestFilter,
    effective_sample_size,
    posterior_difference_test,
)
from phylo_posterior.chains.load_chains import Chain
from phylo_posterior.errors import StatisticalDegeneracyError, ValidationError


def ar1(n, phi, rng, loc=0.0):
    """AR(1) series with unit innovations, started from its stationary distribution."""
    x = np.empty(n)
    x[0] = rng.normal() / np.sqrt(1.0 - phi ** 2)
    for i in range(1, n):
        x[i] = phi * x[i - 1] + rng.normal()
    return x + loc


def make_chain(index, posterior):
    posterior = np.asarray(posterior, dtype=float)
    draws = pd.DataFrame({"Sample": np.arange(posterior.size) * 1000, "posterior": posterior})
    return Chain(index=index, source=f"run{index}.log", draws=draws)


@pytest.fixture
def three_chains():
    """A and B sample the same mode (B is A reversed); C is stuck 20 log-units lower and mixes slowly."""
    rng = np.random.default_rng(2020)
    a = ar1(500, 0.5, rng, loc=-1000.0)
    b = a[::-1].copy()
    c = ar1(500, 0.95, rng, loc=-1020.0)
    return [make_chain(1, a), make_chain(2, b), make_chain(3, c)]


@pytest.fixture
def independent_chains():
    """A and B are drawn independently around the same mode; C is 20 log-units lower and mixes slowly.

    B is recentred 0.15 above the mean of A, roughly one serial-correlation
    adjusted standard error away.
    """
    rng = np.random.default_rng(8)
    a = ar1(500, 0.5, rng, loc=-1000.0)
    b = ar1(500, 0.5, rng)
    b += a.mean() + 0.15 - b.mean()
    c = ar1(500, 0.95, rng, loc=-1020.0)
    return [make_chain(1, a), make_chain(2, b), make_chain(3, c)]


# ---------- effective sample size ----------


def test_ess_independent_draws_close_to_n():
    x = np.random.default_rng(1).normal(size=2000)
    ess = effective_sample_size(x)
    assert 1000 < ess < 3000


def test_ess_smaller_for_correlated_draws():
    rng = np.random.default_rng(2)
    iid = effective_sample_size(rng.normal(size=1000))
    correlated = effective_sample_size(ar1(1000, 0.9, rng))
    assert correlated < iid / 3


def test_ess_constant_and_linear_traces_are_zero():
    assert effective_sample_size(np.full(100, -50.0)) == 0.0
    assert effective_sample_size(np.linspace(0, 1, 100)) == 0.0
    assert effective_sample_size([1.0]) == 0.0


# ---------- pairwise test ----------


def test_chain_against_itself_has_p_one():
    x = ar1(300, 0.3, np.random.default_rng(3))
    t, p = posterior_difference_test(x, x)
    assert t == pytest.approx(0.0)
    assert p == pytest.approx(1.0)


def test_pvalue_in_unit_interval():
    rng = np.random.default_rng(4)
    for shift in (0.0, 0.1, 1.0, 10.0):
        _, p = posterior_difference_test(rng.normal(size=200), rng.normal(size=200) + shift)
        assert 0.0 <= p <= 1.0


def test_degenerate_test_raises():
    with pytest.raises(StatisticalDegeneracyError):
        posterior_difference_test(np.ones(50), np.ones(50))
    with pytest.raises(StatisticalDegeneracyError):
        posterior_difference_test(np.arange(10.0), np.arange(10.0) + 1, ess_x=0.0, ess_y=5.0)


# ---------- filters ----------


@pytest.mark.parametrize("chain_filter", [AnovaRankFilter(0.05), PairwiseTestFilter(0.01)])
def test_filters_exclude_stuck_chain(three_chains, chain_filter):
    result = chain_filter.select(three_chains)
    assert sorted(result.keep) == [0, 1]
    assert result.reference == 0
    assert not result.report()["kept"].iloc[2]
    assert [c.index for c in result.kept_chains()] == [k + 1 for k in result.keep]


@pytest.mark.parametrize("chain_filter", [AnovaRankFilter(0.05), PairwiseTestFilter(0.05)])
def test_independent_same_mode_chains_are_pooled(independent_chains, chain_filter):
    result = chain_filter.select(independent_chains)
    assert sorted(result.keep) == [0, 1]
    assert result.reference in (0, 1)
    assert result.pvalues[2] <= 0.05


def test_anova_keep_set_is_ranked(three_chains):
    # give the input in worst-first order; the keep-set comes back best-first
    chains = [three_chains[2], three_chains[1], three_chains[0]]
    result = AnovaRankFilter().select(chains)
    assert result.keep[0] in (1, 2)
    assert 0 not in result.keep
    medians = [result.medians[k] for k in result.keep]
    assert medians == sorted(medians, reverse=True)


def test_pairwise_keeps_input_order(three_chains):
    result = PairwiseTestFilter(pth=-1).select(three_chains)
    assert result.keep == [0, 1, 2]
    assert np.all(np.isnan(result.pvalues))


def test_failed_chain_gets_minus_infinity(three_chains):
    chains = [three_chains[0], None, three_chains[1]]
    result = PairwiseTestFilter(0.01).select(chains)
    assert result.pvalues[1] == -np.inf
    assert result.keep == [0, 2]
    assert result.reasons[1] == "load failure"
    # the reference chain is tested against itself
    assert result.pvalues[0] == pytest.approx(1.0)


def test_single_usable_chain_is_kept_untested(three_chains, monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("no test should run for a single chain")

    monkeypatch.setattr(cv, "posterior_difference_test", boom)
    monkeypatch.setattr(cv.stats, "tukey_hsd", boom)
    for chain_filter in (AnovaRankFilter(), PairwiseTestFilter()):
        result = chain_filter.select([None, three_chains[2]])
        assert result.keep == [1]


def test_no_usable_chains():
    with pytest.raises(ValidationError):
        PairwiseTestFilter().select([None, None])
    with pytest.raises(ValidationError):
        AnovaRankFilter().select([])


def test_constant_posteriors_are_degenerate():
    chains = [make_chain(1, np.full(20, -5.0)), make_chain(2, np.full(20, -5.0))]
    with pytest.raises(StatisticalDegeneracyError):
        PairwiseTestFilter().select(chains)
    with pytest.raises(StatisticalDegeneracyError):
        AnovaRankFilter().select(chains)


def test_report_has_one_row_per_input(three_chains):
    result = AnovaRankFilter().select(three_chains + [None], sources=["a", "b", "c", "d"])
    report = result.report()
    assert report["chain"].tolist() == [1, 2, 3, 4]
    assert report["source"].tolist() == ["a", "b", "c", "d"]
    assert report["kept"].tolist() == [True, True, False, False]


def test_nan_median_is_degenerate(three_chains):
    posterior = three_chains[1].posterior.copy()
    posterior[-1] = np.nan
    chains = [three_chains[0], make_chain(2, posterior)]
    for chain_filter in (AnovaRankFilter(), PairwiseTestFilter()):
        with pytest.raises(StatisticalDegeneracyError, match=r"\[2\]"):
            chain_filter.select(chains)
