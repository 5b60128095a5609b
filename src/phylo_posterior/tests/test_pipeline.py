from datetime import date

import numpy as np
import pandas as pd
import pytest

from phylo_posterior.chains.combine_chains import save_table
from phylo_posterior.config import PipelineConfig
from phylo_posterior.pipeline import run_pipeline
from phylo_posterior.runner import main

TAXIS = 2020.0 + (60.5 + np.arange(8)) / 366.0


def make_run(seed, n=20):
    rng = np.random.default_rng(seed)
    ids = np.arange(n) * 1000
    log = pd.DataFrame({
        "Sample": ids,
        "posterior": -500.0 + rng.normal(size=n),
        "seir.b": rng.uniform(12, 18, size=n),
    })
    rows = []
    for sid in ids:
        s = 1000.0 - np.arange(8) * 20
        rows.append(pd.DataFrame({
            "Sample": sid, "t": TAXIS, "S": s, "E": 10.0, "Il": 20.0, "Ih": 5.0,
            "R": 1100.0 - s, "exog": 0.0, "infections": 1100.0 - s,
        }))
    return log, pd.concat(rows, ignore_index=True)


@pytest.fixture
def runs():
    return [make_run(1), make_run(2)]


def test_pipeline_writes_every_output(runs, tmp_path):
    logs = [log for log, _ in runs]
    trajs = [traj for _, traj in runs]
    cases = pd.DataFrame({
        "Date": pd.date_range("2020-03-01", periods=8, freq="D"),
        "Confirmed": np.arange(8, dtype=float),
        "Cumulative": np.cumsum(np.arange(8, dtype=float)),
    })
    cfg = PipelineConfig(ntraj=5, pth=-1, seed=3, out_dir=str(tmp_path / "results"),
                         out_log=str(tmp_path / "log.joblib"), out_traj=str(tmp_path / "traj.joblib"))
    result = run_pipeline(cfg, logs, trajs, case_data=cases)

    assert result.r0.shape == (3, 3)
    assert set(result.summaries) == {"Rt", "daily", "size"}
    assert len(result.reporting) == 8
    assert result.combined.trajectories["Sample"].nunique() == 10
    for name in ("r0.csv", "chains.csv", "Rt.csv", "Rt.png", "daily.png", "size.png", "reporting.png"):
        assert (tmp_path / "results" / name).exists()
    assert (tmp_path / "log.joblib").exists() and (tmp_path / "traj.joblib").exists()


def test_pipeline_logs_only(runs):
    log = runs[0][0]
    reversed_log = log.iloc[::-1].reset_index(drop=True)
    result = run_pipeline(PipelineConfig(burn_proportion=0.0), [log, reversed_log])
    assert result.combined.trajectories is None
    assert result.summaries == {}
    assert len(result.combined.draws) == 40
    assert result.combined.filter_result.method == "anova"


def test_window_from_config(runs):
    cfg = PipelineConfig(ntraj=3, pth=-1, seed=1, start_date=date(2020, 3, 3), end_date=date(2020, 3, 6))
    result = run_pipeline(cfg, [runs[0][0]], [runs[0][1]])
    dates = result.summaries["Rt"]["Date"]
    assert (dates > pd.Timestamp("2020-03-03")).all() and (dates <= pd.Timestamp("2020-03-06")).all()


# ---------- command line ----------


def test_cli_r0(runs, tmp_path, capsys):
    path = save_table(runs[0][0], tmp_path / "log.joblib")
    main(["r0", "--log", str(path)])
    assert "Reproduction number" in capsys.readouterr().out


def test_cli_combine(runs, tmp_path, capsys):
    log_paths, traj_paths = [], []
    for k, (log, traj) in enumerate(runs, start=1):
        log_paths.append(tmp_path / f"run{k}.log")
        traj_paths.append(tmp_path / f"run{k}.traj")
        log.to_csv(log_paths[-1], sep="\t", index=False)
        traj.to_csv(traj_paths[-1], sep="\t", index=False)
    out_log = tmp_path / "combined_log.joblib"
    main(["combine", "--logs", *map(str, log_paths), "--trajs", *map(str, traj_paths),
          "--pth", "-1", "--ntraj", "4", "--seed", "2", "--out-log", str(out_log)])
    assert out_log.exists()
    assert "Combined 20 draws and 8 trajectories" in capsys.readouterr().out


def test_cli_exits_with_status_2(tmp_path, capsys):
    with pytest.raises(SystemExit) as info:
        main(["r0", "--log", str(tmp_path / "missing.joblib")])
    assert info.value.code == 2
    assert "r0 failed" in capsys.readouterr().err
