"""Figures for haplomix results."""

from __future__ import annotations

from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from haplomix.types import HaplotypeResult

DPI = 300


def _setup_style() -> None:
    sns.set_theme(style="whitegrid", palette="Set2")
    plt.rcParams.update({"figure.dpi": DPI, "savefig.dpi": DPI, "font.size": 10})


def plot_frequency_trajectories(result: HaplotypeResult, output: str | Path) -> None:
    """Stacked area plot of haplotype frequencies across timepoints."""
    _setup_style()
    timepoints = np.arange(result.n_timepoints)
    palette = sns.color_palette("Set2", result.n_haplotypes)

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.stackplot(
        timepoints,
        result.pi_hap.T,
        labels=[f"Haplo_{h}" for h in range(result.n_haplotypes)],
        colors=palette,
        alpha=0.85,
    )
    ax.set_xlabel("Timepoint")
    ax.set_ylabel("Haplotype frequency")
    ax.set_ylim(0, 1)
    ax.set_xticks(timepoints)
    ax.legend(loc="upper left", bbox_to_anchor=(1.02, 1), frameon=False)
    fig.tight_layout()
    fig.savefig(output, bbox_inches="tight")
    plt.close(fig)


def plot_log_likelihood_trace(result: HaplotypeResult, output: str | Path) -> None:
    """Total log-likelihood after every re-assignment pass."""
    _setup_style()
    trace = result.convergence.log_likelihoods

    fig, ax = plt.subplots(figsize=(5, 3.5))
    ax.plot(np.arange(len(trace)), trace, marker="o", color=sns.color_palette("Set2")[1])
    ax.set_xlabel("Outer iteration")
    ax.set_ylabel("Log-likelihood")
    fig.tight_layout()
    fig.savefig(output, bbox_inches="tight")
    plt.close(fig)
