# src/phylo_posterior/pipeline.py
"""
End-to-end run: combine chains, then summarise the combined sample.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence
import logging

import pandas as pd

from .chains.combine_chains import CombinedSample, combine_logs, combine_logs_and_traj
from .chains.convergence import AnovaRankFilter
from .chains.load_chains import Source
from .config import PipelineConfig
from .estimate.reporting import reporting_rate
from .estimate.reproduction import seijr_reproduction_number
from .estimate.trajectories import TrajectorySet, cumulative_infections, daily_infections, effective_reproduction_number
from .plotting.plot_summary import plot_reporting, plot_summary

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PipelineResult:
    combined: CombinedSample
    r0: pd.DataFrame
    summaries: Dict[str, pd.DataFrame] = field(default_factory=dict)
    reporting: Optional[pd.DataFrame] = None
    written: List[str] = field(default_factory=list)


def combine(cfg: PipelineConfig, log_sources: Sequence[Source],
            traj_sources: Optional[Sequence[Source]] = None) -> CombinedSample:
    """ANOVA-filtered logs when no trajectories are given, otherwise paired logs + trajectories."""
    if traj_sources is None:
        return combine_logs(
            log_sources,
            burn_proportion=cfg.burn_proportion,
            chain_filter=AnovaRankFilter(cfg.alpha),
            out_path=cfg.out_log,
            posterior_col=cfg.posterior_col,
            sample_col=cfg.sample_col,
            n_jobs=cfg.n_jobs,
        )
    return combine_logs_and_traj(
        log_sources,
        traj_sources,
        burn_proportion=cfg.burn_proportion,
        ntraj=cfg.ntraj,
        pth=cfg.pth,
        seed=cfg.seed,
        out_path=cfg.out_log,
        out_traj_path=cfg.out_traj,
        posterior_col=cfg.posterior_col,
        sample_col=cfg.sample_col,
        time_col=cfg.time_col,
        n_jobs=cfg.n_jobs,
    )


def summarise(cfg: PipelineConfig, combined: CombinedSample,
              case_data: Optional[pd.DataFrame] = None) -> PipelineResult:
    """Compute every estimate the combined sample supports, restricted to cfg's date window."""
    cols = dict(b_col=cfg.b_col, tau_col=cfg.tau_col, p_h_col=cfg.p_h_col)
    r0 = seijr_reproduction_number(
        combined.draws, gamma0=cfg.gamma0, gamma1=cfg.gamma1, precision=cfg.precision,
        defaults=cfg.parameter_defaults, **cols,
    )
    result = PipelineResult(combined=combined, r0=r0)

    if combined.trajectories is not None:
        ts = TrajectorySet.from_frame(combined.trajectories, sample_col=cfg.sample_col, time_col=cfg.time_col)
        estimates = {
            "Rt": effective_reproduction_number(ts, combined.draws, gamma1=cfg.gamma1,
                                                defaults=cfg.parameter_defaults, **cols),
            "daily": daily_infections(ts, combined.draws, defaults=cfg.parameter_defaults, **cols),
            "size": cumulative_infections(ts),
        }
        for key, estimate in estimates.items():
            result.summaries[key] = estimate.window(cfg.date_limits)
        if case_data is not None and "Cumulative" in case_data.columns:
            result.reporting = reporting_rate(ts, case_data, date_limits=cfg.date_limits,
                                              sample_col=cfg.sample_col, time_col=cfg.time_col)
        elif case_data is not None:
            logger.info("Case data has no 'Cumulative' column; reporting rate skipped")
    else:
        logger.info("No trajectories in the combined sample; only R0 / growth rate / doubling time computed")

    if cfg.out_dir is not None:
        result.written = write_outputs(cfg, result, case_data)
    return result


def run_pipeline(cfg: PipelineConfig, log_sources: Sequence[Source],
                 traj_sources: Optional[Sequence[Source]] = None,
                 case_data: Optional[pd.DataFrame] = None) -> PipelineResult:
    logger.info("Pipeline options: %s", cfg.as_dict())
    combined = combine(cfg, log_sources, traj_sources)
    return summarise(cfg, combined, case_data)


# ---------- outputs ----------

PLOT_LABELS = {
    "Rt": ("R(t)", None, "Effective reproduction number"),
    "daily": ("New infections", "Confirmed", "Estimated daily new infections (ribbon)\nDaily confirmed cases (points)"),
    "size": ("Cumulative infections", "Cumulative",
             "Cumulative estimated infections (ribbon)\nCumulative confirmed (points)"),
}


def write_outputs(cfg: PipelineConfig, result: PipelineResult, case_data: Optional[pd.DataFrame]) -> List[str]:
    """Write summary CSVs and PNGs into cfg.out_dir."""
    out_dir = Path(cfg.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []

    r0_path = out_dir / "r0.csv"
    result.r0.to_csv(r0_path)
    written.append(str(r0_path))

    if result.combined.filter_result is not None:
        report_path = out_dir / "chains.csv"
        result.combined.filter_result.report().to_csv(report_path, index=False)
        written.append(str(report_path))

    for key, table in result.summaries.items():
        csv_path = out_dir / f"{key}.csv"
        table.to_csv(csv_path, index=False)
        written.append(str(csv_path))

        value_col, case_col, ylabel = PLOT_LABELS[key]
        use_cases = case_data is not None and case_col is not None and case_col in case_data.columns
        written.append(plot_summary(
            table, value_col, str(out_dir / f"{key}.png"),
            case_data=case_data if use_cases else None,
            case_col=case_col if use_cases else None,
            ylabel=ylabel,
            log_y=cfg.log_y_axis and key != "Rt",
        ))

    if result.reporting is not None:
        csv_path = out_dir / "reporting.csv"
        result.reporting.to_csv(csv_path, index=False)
        written.append(str(csv_path))
        written.append(plot_reporting(result.reporting, str(out_dir / "reporting.png")))

    logger.info("Wrote %d files to %s", len(written), out_dir)
    return written
