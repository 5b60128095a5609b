# src/phylo_posterior/plotting/plot_summary.py
from pathlib import Path
from typing import Optional, Tuple
import logging
import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from ..estimate.summary import LOWER_COL, UPPER_COL, calendar_dates

logger = logging.getLogger(__name__)

# ---------- shared styling ----------

LINE_COLOR = "black"
RIBBON_COLOR = "#7f8fa6"
POINT_COLOR = "tab:red"
FIGSIZE: Tuple[int, int] = (8, 5)


def _finish(fig, ax, out_png: str, ylabel: str) -> str:
    ax.set_xlabel("")
    ax.set_ylabel(ylabel)
    ax.grid(alpha=0.25)
    for side in ("top", "right"):
        ax.spines[side].set_visible(False)
    fig.autofmt_xdate()
    Path(out_png).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_png, dpi=150, bbox_inches="tight")
    plt.close(fig)
    logger.info("Saved plot to %s", out_png)
    return str(out_png)

# ---------- median + ribbon ----------


def plot_summary(
    table: pd.DataFrame,
    value_col: str,
    out_png: str,
    case_data: Optional[pd.DataFrame] = None,
    case_col: Optional[str] = None,
    ylabel: str = "",
    log_y: bool = False,
    figsize: Tuple[int, int] = FIGSIZE,
) -> str:
    """
    Draw the posterior median of `value_col` through time with its 95% ribbon.
    - reported cases (case_data[case_col]) are overlaid as points if given
    - the table is plotted as-is; restrict it to a date window beforehand
    """
    fig, ax = plt.subplots(figsize=figsize)
    ax.fill_between(table["Date"], table[LOWER_COL], table[UPPER_COL], color=RIBBON_COLOR, alpha=0.25,
                    label="95% credible interval")
    ax.plot(table["Date"], table[value_col], color=LINE_COLOR, linewidth=1.25, label="median")

    if case_data is not None and case_col is not None:
        dates = calendar_dates(case_data)
        if len(table):
            keep = (dates >= table["Date"].min()) & (dates <= table["Date"].max())
        else:
            keep = np.ones(len(dates), dtype=bool)
        ax.scatter(dates[keep], case_data.loc[keep, case_col], color=POINT_COLOR, s=14, zorder=3, label="reported")

    if log_y:
        ax.set_yscale("log")
    ax.legend(loc="upper left", fontsize="small", frameon=False)
    return _finish(fig, ax, out_png, ylabel or value_col)

# ---------- reporting rate ----------


def plot_reporting(table: pd.DataFrame, out_png: str, errorbar: bool = True, figsize: Tuple[int, int] = FIGSIZE) -> str:
    """Percentage of estimated infections reported, one point per day, with optional error bars."""
    rows = table.dropna(subset=["reporting"])
    fig, ax = plt.subplots(figsize=figsize)
    y = rows["reporting"].to_numpy(dtype=float) * 100
    if errorbar:
        lo = rows["rep2.5"].to_numpy(dtype=float) * 100
        hi = rows["rep97.5"].to_numpy(dtype=float) * 100
        yerr = np.vstack([np.clip(y - lo, 0, None), np.clip(hi - y, 0, None)])
        ax.errorbar(rows["Date"], y, yerr=yerr, fmt="o", color=LINE_COLOR, ecolor=RIBBON_COLOR, capsize=2)
    else:
        ax.scatter(rows["Date"], y, color=LINE_COLOR, s=14)
    ax.set_ylim(0, 100)
    return _finish(fig, ax, out_png, "% cases reported")
