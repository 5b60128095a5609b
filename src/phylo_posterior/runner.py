#!/usr/bin/env python3
# src/phylo_posterior/runner.py: command-line entry point (one subcommand per step)

import argparse
import logging
import sys
import time
from datetime import date
from pathlib import Path
from typing import Optional

import pandas as pd

from .chains import combine_chains as cc
from .chains.convergence import AnovaRankFilter
from .config import DEFAULT_P_H, DEFAULT_START_DATE, DEFAULT_TAU, GAMMA0, GAMMA1, P_H_COL, TAU_COL, PipelineConfig
from .errors import StatisticalDegeneracyError, ValidationError
from .estimate import reporting as rep
from .estimate import reproduction as r0
from .estimate import trajectories as tr
from .pipeline import run_pipeline
from .plotting import plot_summary as plot

logger = logging.getLogger("phylo_posterior")


# Parser for dates like 2020-03-15
def parse_date(s: Optional[str]) -> Optional[date]:
    if not s:
        return None
    return date.fromisoformat(s)


def read_case_data(path: str, date_col: str = "Date") -> pd.DataFrame:
    """Reported cases CSV with a Date column parsed as calendar dates."""
    if not Path(path).exists():
        raise FileNotFoundError(f"Case data not found: {path}")
    return pd.read_csv(path, parse_dates=[date_col])


def _write_table(table: pd.DataFrame, out_csv: Optional[str], index: bool = False):
    if out_csv:
        Path(out_csv).parent.mkdir(parents=True, exist_ok=True)
        table.to_csv(out_csv, index=index)
        print("Table written ->", out_csv)
    else:
        print(table.to_string(index=index))


def _add_window_args(p):
    p.add_argument("--start", type=str, default=DEFAULT_START_DATE.isoformat(), metavar="YYYY-MM-DD",
                   help=f"Only keep dates after this day (default: {DEFAULT_START_DATE.isoformat()})")
    p.add_argument("--end", type=str, default=None, metavar="YYYY-MM-DD",
                   help="Only keep dates up to this day (default: last trajectory time)")


def _add_parameter_args(p):
    p.add_argument("--tau", type=float, default=DEFAULT_TAU, help=f"seir.tau when not logged (default: {DEFAULT_TAU})")
    p.add_argument("--p-h", dest="p_h", type=float, default=DEFAULT_P_H,
                   help=f"seir.p_h when not logged (default: {DEFAULT_P_H})")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Combine phylodynamic MCMC chains and summarise the posterior")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    # ---------- combine-logs ----------
    cl_p = sub.add_parser("combine-logs", help="Combine BEAST logs, dropping chains via ANOVA + Tukey HSD")
    cl_p.add_argument("--logs", nargs="+", required=True, metavar="LOG", help="BEAST .log files, one per run")
    cl_p.add_argument("--burn", type=float, default=0.5, help="Burn-in proportion (default: 0.5)")
    cl_p.add_argument("--alpha", type=float, default=0.05, help="Tukey HSD significance level (default: 0.05)")
    cl_p.add_argument("--out", default=None, metavar="PATH", help="joblib output for the combined log")
    cl_p.add_argument("--n-jobs", type=int, default=1, help="Parallel workers for loading logs (default: 1)")

    # ---------- combine-traj ----------
    ct_p = sub.add_parser("combine-traj", help="Combine trajectory files (no filtering)")
    ct_p.add_argument("--trajs", nargs="+", required=True, metavar="TRAJ")
    ct_p.add_argument("--burn", type=float, default=0.5)
    ct_p.add_argument("--ntraj", type=int, default=100, help="Trajectories sampled per file (default: 100)")
    ct_p.add_argument("--seed", type=int, default=None)
    ct_p.add_argument("--out", default=None, metavar="PATH")

    # ---------- combine ----------
    c_p = sub.add_parser("combine", help="Combine paired logs + trajectories with the pairwise ESS test")
    c_p.add_argument("--logs", nargs="+", required=True, metavar="LOG")
    c_p.add_argument("--trajs", nargs="+", required=True, metavar="TRAJ",
                     help="Trajectory files, in the same order as --logs")
    c_p.add_argument("--burn", type=float, default=0.5)
    c_p.add_argument("--ntraj", type=int, default=200, help="Trajectories sampled per chain (default: 200)")
    c_p.add_argument("--pth", type=float, default=0.01,
                     help="p-value threshold; negative keeps every chain (default: 0.01)")
    c_p.add_argument("--seed", type=int, default=None)
    c_p.add_argument("--out-log", default=None, metavar="PATH")
    c_p.add_argument("--out-traj", default=None, metavar="PATH")
    c_p.add_argument("--n-jobs", type=int, default=1)

    # ---------- r0 ----------
    r_p = sub.add_parser("r0", help="R0, growth rate and doubling time from a combined log")
    r_p.add_argument("--log", required=True, metavar="PATH", help="Combined log (joblib)")
    r_p.add_argument("--gamma0", type=float, default=GAMMA0)
    r_p.add_argument("--gamma1", type=float, default=GAMMA1)
    r_p.add_argument("--precision", type=int, default=3, help="Significant digits (default: 3)")
    _add_parameter_args(r_p)
    r_p.add_argument("--out", default=None, metavar="CSV")

    # ---------- rt ----------
    rt_p = sub.add_parser("rt", help="Effective reproduction number through time")
    rt_p.add_argument("--log", required=True, metavar="PATH")
    rt_p.add_argument("--traj", required=True, metavar="PATH")
    rt_p.add_argument("--gamma1", type=float, default=GAMMA1)
    _add_parameter_args(rt_p)
    _add_window_args(rt_p)
    rt_p.add_argument("--out", default=None, metavar="CSV")
    rt_p.add_argument("--png", default=None, metavar="PNG")

    # ---------- daily ----------
    d_p = sub.add_parser("daily", help="Estimated daily new infections")
    d_p.add_argument("--log", required=True, metavar="PATH")
    d_p.add_argument("--traj", required=True, metavar="PATH")
    d_p.add_argument("--cases", default=None, metavar="CSV", help="Reported cases with Date and Confirmed columns")
    _add_parameter_args(d_p)
    _add_window_args(d_p)
    d_p.add_argument("--log-y", action="store_true")
    d_p.add_argument("--out", default=None, metavar="CSV")
    d_p.add_argument("--png", default=None, metavar="PNG")

    # ---------- size ----------
    s_p = sub.add_parser("size", help="Cumulative estimated infections")
    s_p.add_argument("--traj", required=True, metavar="PATH")
    s_p.add_argument("--cases", default=None, metavar="CSV", help="Reported cases with Date and Cumulative columns")
    _add_window_args(s_p)
    s_p.add_argument("--log-y", action="store_true")
    s_p.add_argument("--out", default=None, metavar="CSV")
    s_p.add_argument("--png", default=None, metavar="PNG")

    # ---------- reporting ----------
    rep_p = sub.add_parser("reporting", help="Proportion of estimated infections that were reported")
    rep_p.add_argument("--traj", required=True, metavar="PATH")
    rep_p.add_argument("--cases", required=True, metavar="CSV")
    _add_window_args(rep_p)
    rep_p.add_argument("--no-errorbar", action="store_true")
    rep_p.add_argument("--out", default=None, metavar="CSV")
    rep_p.add_argument("--png", default=None, metavar="PNG")

    # ---------- all ----------
    a_p = sub.add_parser("all", help="Combine chains and write every summary to --out-dir")
    a_p.add_argument("--logs", nargs="+", required=True, metavar="LOG")
    a_p.add_argument("--trajs", nargs="+", default=None, metavar="TRAJ")
    a_p.add_argument("--cases", default=None, metavar="CSV")
    a_p.add_argument("--out-dir", default="results", metavar="DIR")
    a_p.add_argument("--burn", type=float, default=0.5)
    a_p.add_argument("--ntraj", type=int, default=200)
    a_p.add_argument("--pth", type=float, default=0.01)
    a_p.add_argument("--alpha", type=float, default=0.05)
    a_p.add_argument("--seed", type=int, default=None)
    a_p.add_argument("--gamma0", type=float, default=GAMMA0)
    a_p.add_argument("--gamma1", type=float, default=GAMMA1)
    _add_parameter_args(a_p)
    _add_window_args(a_p)
    a_p.add_argument("--log-y", action="store_true")
    a_p.add_argument("--n-jobs", type=int, default=1)
    return p


def run(args):
    defaults = None
    if hasattr(args, "tau"):
        defaults = {TAU_COL: args.tau, P_H_COL: args.p_h}
    date_limits = (parse_date(args.start), parse_date(args.end)) if hasattr(args, "start") else None

    if args.cmd == "combine-logs":
        combined = cc.combine_logs(args.logs, burn_proportion=args.burn, chain_filter=AnovaRankFilter(args.alpha),
                                   out_path=args.out, n_jobs=args.n_jobs)
        print(combined.filter_result.report().to_string(index=False))
        print(f"Combined {len(combined.draws)} draws" + (f" -> {args.out}" if args.out else ""))

    elif args.cmd == "combine-traj":
        table = cc.combine_traj(args.trajs, burn_proportion=args.burn, ntraj=args.ntraj, seed=args.seed,
                                out_path=args.out)
        print(f"Combined {table['Sample'].nunique()} trajectories" + (f" -> {args.out}" if args.out else ""))

    elif args.cmd == "combine":
        combined = cc.combine_logs_and_traj(
            args.logs, args.trajs,
            burn_proportion=args.burn,
            ntraj=args.ntraj,
            pth=args.pth,
            seed=args.seed,
            out_path=args.out_log,
            out_traj_path=args.out_traj,
            n_jobs=args.n_jobs,
        )
        print(combined.filter_result.report().to_string(index=False))
        n_traj = 0 if combined.trajectories is None else combined.trajectories["Sample"].nunique()
        print(f"Combined {len(combined.draws)} draws and {n_traj} trajectories")

    elif args.cmd == "r0":
        draws = cc.load_table(args.log)
        table = r0.seijr_reproduction_number(draws, gamma0=args.gamma0, gamma1=args.gamma1,
                                             precision=args.precision, defaults=defaults)
        _write_table(table, args.out, index=True)

    elif args.cmd == "rt":
        sample = cc.CombinedSample.load(args.log, args.traj)
        summary = tr.effective_reproduction_number(sample.trajectories, sample.draws, gamma1=args.gamma1,
                                                   defaults=defaults)
        table = summary.window(date_limits)
        _write_table(table, args.out)
        if args.png:
            plot.plot_summary(table, "R(t)", args.png, ylabel="Effective reproduction number")

    elif args.cmd == "daily":
        sample = cc.CombinedSample.load(args.log, args.traj)
        table = tr.daily_infections(sample.trajectories, sample.draws, defaults=defaults).window(date_limits)
        _write_table(table, args.out)
        if args.png:
            cases = read_case_data(args.cases) if args.cases else None
            plot.plot_summary(table, "New infections", args.png, case_data=cases,
                              case_col="Confirmed" if cases is not None else None,
                              ylabel="Daily new infections", log_y=args.log_y)

    elif args.cmd == "size":
        trajectories = cc.load_table(args.traj)
        table = tr.cumulative_infections(trajectories).window(date_limits)
        _write_table(table, args.out)
        if args.png:
            cases = read_case_data(args.cases) if args.cases else None
            plot.plot_summary(table, "Cumulative infections", args.png, case_data=cases,
                              case_col="Cumulative" if cases is not None else None,
                              ylabel="Cumulative infections", log_y=args.log_y)

    elif args.cmd == "reporting":
        trajectories = cc.load_table(args.traj)
        table = rep.reporting_rate(trajectories, read_case_data(args.cases), date_limits=date_limits)
        _write_table(table, args.out)
        if args.png:
            plot.plot_reporting(table, args.png, errorbar=not args.no_errorbar)

    elif args.cmd == "all":
        cfg = PipelineConfig(
            burn_proportion=args.burn,
            ntraj=args.ntraj,
            pth=args.pth,
            alpha=args.alpha,
            seed=args.seed,
            n_jobs=args.n_jobs,
            gamma0=args.gamma0,
            gamma1=args.gamma1,
            default_tau=args.tau,
            default_p_h=args.p_h,
            start_date=date_limits[0],
            end_date=date_limits[1],
            out_log=str(Path(args.out_dir) / "combined_log.joblib"),
            out_traj=str(Path(args.out_dir) / "combined_traj.joblib") if args.trajs else None,
            out_dir=args.out_dir,
            log_y_axis=args.log_y,
        )
        cases = read_case_data(args.cases) if args.cases else None
        result = run_pipeline(cfg, args.logs, args.trajs, case_data=cases)
        print(result.r0.to_string())
        for path in result.written:
            print("Written ->", path)


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    t0 = time.perf_counter()
    try:
        run(args)
    except (ValidationError, StatisticalDegeneracyError, FileNotFoundError) as exc:
        print(f"{args.cmd} failed: {exc}", file=sys.stderr)
        sys.exit(2)
    logger.info("Done in %.2fs", time.perf_counter() - t0)


if __name__ == "__main__":
    main()
