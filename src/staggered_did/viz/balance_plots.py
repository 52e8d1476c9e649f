"""Balance plots."""
from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from staggered_did.log import get_logger


def plot_love(balance_df: pd.DataFrame, outputs_dir: str | Path) -> Path:
    """Love plot of standardized mean differences before/after weighting.

    Args:
        balance_df: Output of ``balance_table``.
        outputs_dir: Base outputs directory.

    Returns:
        Path to saved plot.
    """
    logger = get_logger()
    figures_dir = Path(outputs_dir) / "figures"
    figures_dir.mkdir(parents=True, exist_ok=True)
    fig_path = figures_dir / "love_plot.png"

    labels = [
        f"{row.covariate} (G={row.cohort})" for row in balance_df.itertuples(index=False)
    ]
    positions = np.arange(len(labels))

    plt.figure(figsize=(6, max(2.5, 0.45 * len(labels) + 1)))
    plt.scatter(balance_df["smd_unweighted"], positions, marker="o", color="tab:red", label="Unweighted")
    plt.scatter(balance_df["smd_weighted"], positions, marker="s", color="tab:blue", label="IPW (trimmed)")
    plt.axvline(0, color="black", linewidth=1)
    for bound in (-0.1, 0.1):
        plt.axvline(bound, color="gray", linestyle="--", linewidth=0.8)
    plt.yticks(positions, labels)
    plt.xlabel("Standardized mean difference vs. population")
    plt.title("Covariate balance")
    plt.legend()
    plt.tight_layout()
    plt.savefig(fig_path, dpi=150)
    plt.close()

    logger.info("Saved love plot to %s", fig_path)
    return fig_path


def plot_density_overlay(
    units: pd.DataFrame,
    covariate: str,
    outputs_dir: str | Path,
    weight_col: str = "ipw_weight_trimmed",
) -> Path:
    """Covariate densities by cohort, unweighted and weighted side by side."""
    logger = get_logger()
    figures_dir = Path(outputs_dir) / "figures"
    figures_dir.mkdir(parents=True, exist_ok=True)
    fig_path = figures_dir / f"density_{covariate}.png"

    bins = np.histogram_bin_edges(units[covariate].dropna(), bins=30)
    fig, axes = plt.subplots(1, 2, figsize=(10, 4), sharey=True)
    for cohort, group in units.groupby("G"):
        label = "Never treated" if cohort == 0 else f"G={cohort}"
        axes[0].hist(group[covariate], bins=bins, density=True, histtype="step", label=label)
        axes[1].hist(
            group[covariate],
            bins=bins,
            weights=group[weight_col],
            density=True,
            histtype="step",
            label=label,
        )
    axes[0].set_title("Unweighted")
    axes[1].set_title("IPW (trimmed)")
    for ax in axes:
        ax.set_xlabel(covariate)
    axes[0].set_ylabel("Density")
    axes[1].legend()
    fig.tight_layout()
    fig.savefig(fig_path, dpi=150)
    plt.close(fig)

    logger.info("Saved density overlay to %s", fig_path)
    return fig_path
