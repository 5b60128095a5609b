import numpy as np
import pandas as pd
import pytest

from phylo_posterior.chains.combine_chains import (
    CombinedSample,
    chain_generators,
    combine_logs,
    combine_logs_and_traj,
    combine_traj,
    load_table,
    relabel_samples,
    sample_key,
    save_table,
    subsample_trajectories,
)
from phylo_posterior.chains.convergence import AnovaRankFilter, PairwiseTestFilter
from phylo_posterior.errors import ValidationError

TAXIS = 2020.0 + (60.5 + np.arange(5)) / 366.0


def make_log(n=10, seed=0, loc=-100.0):
    rng = np.random.default_rng(seed)
    return pd.DataFrame({
        "Sample": np.arange(n) * 1000,
        "posterior": loc + rng.normal(size=n),
        "seir.b": rng.uniform(10, 20, size=n),
    })


def make_traj(ids, taxis=TAXIS):
    ids = list(ids)
    nt = len(taxis)
    return pd.DataFrame({
        "Sample": np.repeat(ids, nt),
        "t": np.tile(taxis, len(ids)),
        "S": 1000.0,
        "infections": np.tile(np.arange(nt, dtype=float), len(ids)),
    })


def test_relabel_samples():
    out = relabel_samples(make_log(3), 2)
    assert out["Sample"].tolist() == ["0.2", "1000.2", "2000.2"]


def test_sample_key():
    assert sample_key(5000, 3) == "5000.3"
    assert sample_key("5000", 1) == "5000.1"
    out = relabel_samples(make_log(2), 4)
    assert out["Sample"].tolist() == [sample_key(0, 4), sample_key(1000, 4)]


def test_subsample_size_is_min_of_ntraj_and_available():
    table = make_traj(range(0, 10000, 1000))
    rng = np.random.default_rng(0)
    assert subsample_trajectories(table, 4, rng)["Sample"].nunique() == 4
    assert subsample_trajectories(table, 50, rng)["Sample"].nunique() == 10
    with pytest.raises(ValidationError):
        subsample_trajectories(table, 0, rng)


def test_chain_generators_are_reproducible():
    a = [g.integers(1 << 30) for g in chain_generators(7, 3)]
    b = [g.integers(1 << 30) for g in chain_generators(7, 3)]
    assert a == b
    assert len(set(a)) == 3


def test_combine_logs_keys_are_unique():
    # same ids in every log; the chain index makes the keys unique
    logs = [make_log(10, seed=1), make_log(10, seed=1).iloc[::-1].reset_index(drop=True)]
    logs[1]["Sample"] = logs[0]["Sample"]
    combined = combine_logs(logs, burn_proportion=0.0, chain_filter=AnovaRankFilter())
    keys = combined.draws["Sample"]
    assert keys.is_unique
    assert len(keys) == 20
    assert set(k.split(".")[1] for k in keys) == {"1", "2"}


def test_combine_logs_and_traj_pairs_keys():
    logs = [make_log(10, seed=1), make_log(10, seed=2)]
    trajs = [make_traj(range(0, 10000, 1000)), make_traj(range(0, 10000, 1000))]
    combined = combine_logs_and_traj(logs, trajs, burn_proportion=0.5, ntraj=3, pth=-1, seed=11)

    assert combined.draws["Sample"].is_unique
    assert len(combined.draws) == 10
    traj_keys = set(combined.trajectories["Sample"])
    assert traj_keys <= set(combined.draws["Sample"])
    assert len(traj_keys) == 6
    # only post-burn-in ids are sampled
    assert all(int(k.split(".")[0]) >= 5000 for k in traj_keys)


def test_trajectories_without_draw_are_skipped(caplog):
    logs = [make_log(10, seed=1)]
    # 9500 has no logged draw
    trajs = [make_traj(list(range(0, 10000, 1000)) + [9500])]
    combined = combine_logs_and_traj(logs, trajs, burn_proportion=0.5, ntraj=100, pth=0.01, seed=1)
    keys = sorted(combined.trajectories["Sample"].unique())
    assert keys == ["5000.1", "6000.1", "7000.1", "8000.1", "9000.1"]
    assert "no retained draw" in caplog.text


def test_same_seed_same_trajectories():
    logs = [make_log(20, seed=1), make_log(20, seed=2)]
    trajs = [make_traj(range(0, 20000, 1000)), make_traj(range(0, 20000, 1000))]
    first = combine_logs_and_traj(logs, trajs, ntraj=4, pth=-1, seed=5)
    second = combine_logs_and_traj(logs, trajs, ntraj=4, pth=-1, seed=5)
    assert first.trajectories.equals(second.trajectories)


def test_unpaired_inputs():
    with pytest.raises(ValidationError, match="paired"):
        combine_logs_and_traj([make_log(), make_log()], [make_traj([0])])


def test_mismatched_time_axes():
    logs = [make_log(10, seed=1), make_log(10, seed=2)]
    trajs = [make_traj(range(0, 10000, 1000)), make_traj(range(0, 10000, 1000), taxis=TAXIS[:-1])]
    with pytest.raises(ValidationError):
        combine_logs_and_traj(logs, trajs, ntraj=2, pth=-1, seed=1)


def test_combine_traj_skips_unreadable_files(tmp_path):
    out = combine_traj([make_traj(range(0, 4000, 1000)), tmp_path / "missing.traj"], burn_proportion=0.0,
                       ntraj=2, seed=3)
    assert out["Sample"].nunique() == 2
    assert set(k.split(".")[1] for k in out["Sample"]) == {"1"}
    with pytest.raises(ValidationError):
        combine_traj([tmp_path / "missing.traj"])


def test_save_and_load_roundtrip(tmp_path):
    logs = [make_log(10, seed=1), make_log(10, seed=2)]
    trajs = [make_traj(range(0, 10000, 1000)), make_traj(range(0, 10000, 1000))]
    log_path = tmp_path / "out" / "combined_log.joblib"
    traj_path = tmp_path / "out" / "combined_traj.joblib"
    combined = combine_logs_and_traj(logs, trajs, ntraj=2, pth=-1, seed=1, out_path=log_path,
                                     out_traj_path=traj_path)
    assert log_path.exists() and traj_path.exists()

    loaded = CombinedSample.load(log_path, traj_path)
    pd.testing.assert_frame_equal(loaded.draws, combined.draws)
    pd.testing.assert_frame_equal(loaded.trajectories, combined.trajectories)
    assert loaded.sample_keys == combined.sample_keys


def test_load_table_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_table(tmp_path / "none.joblib")
    path = save_table(make_log(3), tmp_path / "t.joblib")
    assert len(load_table(path)) == 3


@pytest.mark.parametrize("chain_filter", [AnovaRankFilter(0.05), PairwiseTestFilter(0.05)])
def test_truncated_log_is_dropped_as_load_failure(tmp_path, chain_filter):
    good = make_log(40, seed=1)
    paths = [tmp_path / f"run{k}.log" for k in (1, 2, 3)]
    paths[0].write_text(good.to_csv(sep="\t", index=False))
    # cut off while the run was still writing
    paths[1].write_text(make_log(40, seed=2).to_csv(sep="\t", index=False) + "200000\n")
    paths[2].write_text(good.iloc[::-1].to_csv(sep="\t", index=False))

    combined = combine_logs(paths, burn_proportion=0.0, chain_filter=chain_filter)
    result = combined.filter_result
    assert sorted(result.keep) == [0, 2]
    assert result.reasons[1] == "load failure"
    assert result.medians[1] == -np.inf
    assert np.isfinite(result.medians[[0, 2]]).all()
    assert set(k.split(".")[1] for k in combined.draws["Sample"]) == {"1", "3"}
