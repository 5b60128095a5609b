import logging

import numpy as np
import pandas as pd
import pytest

from phylo_posterior.errors import ValidationError
from phylo_posterior.estimate.reproduction import (
    doubling_time,
    fill_missing_parameters,
    growth_rate,
    reproduction_number,
    seijr_reproduction_number,
)
from phylo_posterior.estimate.summary import signif


def test_reproduction_number_reference_value():
    # (0.8 * 15 + 74 * 0.2 * 15) / 121.667
    assert float(reproduction_number(15.0, 74.0, 0.2, 121.667)) == pytest.approx(1.9233, rel=1e-3)


def test_reproduction_number_vectorised():
    b = np.array([10.0, 15.0, 20.0])
    r0 = reproduction_number(b, 74.0, 0.2)
    assert r0.shape == (3,)
    assert np.all(np.diff(r0) > 0)


def test_growth_rate_sign_follows_r0():
    # R0 > 1 grows, R0 < 1 declines
    assert growth_rate(15.0, 74.0, 0.2) > 0
    assert growth_rate(1.0, 74.0, 0.2) < 0
    assert float(growth_rate(0.0, 74.0, 0.2)) == pytest.approx(-73.0)


def test_doubling_time():
    r = np.array([-0.1, 0.0, np.nan, np.inf, 0.1])
    d = doubling_time(r)
    assert np.all(np.isnan(d[:4]))
    assert d[4] == pytest.approx(np.log(2) / 0.1)


def test_fill_missing_parameters_logs(caplog):
    draws = pd.DataFrame({"seir.b": [10.0, 12.0], "seir.p_h": [0.3, np.nan]})
    with caplog.at_level(logging.WARNING):
        out = fill_missing_parameters(draws)
    assert out["seir.tau"].tolist() == [74.0, 74.0]
    assert out["seir.p_h"].tolist() == [0.3, 0.2]
    assert "seir.tau" in caplog.text
    assert "seir.p_h" in caplog.text
    # input untouched
    assert "seir.tau" not in draws.columns


def test_seijr_table_layout():
    rng = np.random.default_rng(0)
    draws = pd.DataFrame({"seir.b": rng.uniform(12, 18, size=500)})
    table = seijr_reproduction_number(draws)
    assert table.index.tolist() == ["50%", "2.5%", "97.5%"]
    assert table.columns.tolist() == ["Reproduction number", "Growth rate (per day)", "Doubling time (days)"]
    r0 = table["Reproduction number"]
    assert r0["2.5%"] <= r0["50%"] <= r0["97.5%"]
    assert np.all(table["Doubling time (days)"] > 0)


def test_seijr_undefined_doubling_time(caplog):
    draws = pd.DataFrame({"seir.b": np.zeros(10), "seir.tau": 74.0, "seir.p_h": 0.2})
    with caplog.at_level(logging.WARNING):
        table = seijr_reproduction_number(draws)
    assert table["Doubling time (days)"].isna().all()
    assert table.loc["50%", "Growth rate (per day)"] == pytest.approx(float(signif(-73.0 / 365.0, 3)))
    assert "Doubling time undefined" in caplog.text


def test_seijr_requires_transmission_rate():
    with pytest.raises(ValidationError):
        seijr_reproduction_number(pd.DataFrame({"posterior": [1.0, 2.0]}))


def test_signif():
    assert np.allclose(signif([1.23456, 123456.0, 0.00012345], 3), [1.23, 123000.0, 0.000123])
    assert np.isnan(signif(np.nan, 3))
