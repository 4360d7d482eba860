from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .latency import ERROR, GOOD, LatencyMap

LOGGER = logging.getLogger("loadgen.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 150
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

STATE_COLORS = {
    GOOD: "#2E86AB",
    ERROR: "#C73E1D",
}


def render_latency_charts(latency: LatencyMap, output_dir: Path) -> list[Path]:
    """Render the latency report charts into ``output_dir``; returns the written files."""
    df = latency.build_dataframe(filter_window=False)
    if df.empty:
        LOGGER.warning("No latency data available for charts")
        return []

    output_dir.mkdir(parents=True, exist_ok=True)
    origin = latency.started if latency.started is not None else float(df["started"].min())
    df = df.assign(offset_s=df["started"] - origin)
    class_order = sorted(df["call_class"].unique())

    charts = [
        (output_dir / "latency_over_time.png", _render_latency_scatter),
        (output_dir / "latency_by_call.png", _render_latency_boxplot),
        (output_dir / "throughput.png", _render_throughput),
    ]
    written = []
    for chart_path, render in charts:
        fig = render(df, class_order, latency.title)
        fig.savefig(chart_path, bbox_inches="tight", facecolor="white", edgecolor="none")
        plt.close(fig)
        LOGGER.info("Rendering chart %s", chart_path)
        written.append(chart_path)
    return written


def _render_latency_scatter(df: pd.DataFrame, class_order: list[str], title: str) -> plt.Figure:
    """One panel per call class, latency against time since the run started."""
    fig, axes = plt.subplots(
        len(class_order), 1, figsize=(12, 2.5 * len(class_order)), sharex=True, squeeze=False
    )
    for ax, call_class in zip(axes[:, 0], class_order):
        subset = df[df["call_class"] == call_class]
        for state, color in STATE_COLORS.items():
            points = subset[subset["state"] == state]
            if points.empty:
                continue
            ax.scatter(points["offset_s"], points["latency_ms"], s=8, alpha=0.6, color=color, label=state)
        ax.set_title(call_class, fontweight="semibold", fontsize=11)
        ax.set_ylabel("Latency (ms)")
        ax.set_ylim(bottom=0)
        ax.legend(loc="upper right", frameon=True)
        ax.grid(True, alpha=0.3, linestyle="--")

    axes[-1, 0].set_xlabel("Time since start (s)", fontweight="semibold")
    fig.suptitle(title, fontweight="bold")
    fig.tight_layout()
    return fig


def _render_latency_boxplot(df: pd.DataFrame, class_order: list[str], title: str) -> plt.Figure:
    fig, ax = plt.subplots(figsize=(12, 6))
    sns.boxplot(
        data=df,
        x="call_class",
        y="latency_ms",
        order=class_order,
        color="#2E86AB",
        ax=ax,
        linewidth=1.5,
        width=0.6,
    )
    ax.set_xlabel("Call", fontweight="semibold", labelpad=12)
    ax.set_ylabel("Latency (ms)", fontweight="semibold", labelpad=12)
    ax.set_ylim(bottom=0)
    ax.tick_params(axis="x", rotation=30)
    ax.set_title(f"Latency by Call -- {title}", fontweight="bold", pad=15)

    ax.grid(True, alpha=0.3, linestyle="--", linewidth=0.5, axis="y")
    ax.set_axisbelow(True)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    return fig


def _render_throughput(df: pd.DataFrame, class_order: list[str], title: str) -> plt.Figure:
    """Calls started per second, stacked by outcome."""
    fig, ax = plt.subplots(figsize=(12, 5))

    seconds = np.floor(df["offset_s"]).astype(int)
    counts = df.assign(second=seconds).groupby(["second", "state"]).size().unstack(fill_value=0)

    bottom = np.zeros(len(counts.index))
    for state, color in STATE_COLORS.items():
        if state not in counts.columns:
            continue
        values = counts[state].to_numpy()
        ax.bar(counts.index, values, bottom=bottom, color=color, label=state, alpha=0.8, width=0.9)
        bottom = bottom + values

    ax.set_xlabel("Time since start (s)", fontweight="semibold")
    ax.set_ylabel("Calls started", fontweight="semibold")
    ax.set_title(f"Throughput -- {title}", fontweight="bold", pad=15)
    ax.legend(loc="upper right", frameon=True)
    ax.grid(True, alpha=0.3, axis="y", linestyle="--")
    fig.tight_layout()
    return fig


__all__ = ["render_latency_charts"]
