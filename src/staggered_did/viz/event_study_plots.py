"""Event study plots."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import pandas as pd

from staggered_did.log import get_logger


def plot_event_study(
    profile: pd.DataFrame,
    label: str,
    outputs_dir: str | Path,
    comparison: Optional[pd.DataFrame] = None,
) -> Path:
    """Plot the aggregated event-time profile with credible intervals.

    Args:
        profile: Aggregated profile (``event_time``, ``mean``, ``ci_low``, ``ci_high``,
            optionally ``true_effect``).
        label: Model label used in the title and filename.
        outputs_dir: Base outputs directory.
        comparison: Optional Callaway-Sant'Anna dynamic table.

    Returns:
        Path to saved plot.
    """
    logger = get_logger()
    figures_dir = Path(outputs_dir) / "figures"
    figures_dir.mkdir(parents=True, exist_ok=True)
    fig_path = figures_dir / f"event_study_{label}.png"

    plt.figure(figsize=(8, 4))
    yerr = [
        profile["mean"] - profile["ci_low"],
        profile["ci_high"] - profile["mean"],
    ]
    plt.errorbar(
        profile["event_time"] - 0.1,
        profile["mean"],
        yerr=yerr,
        fmt="o",
        color="tab:blue",
        ecolor="lightgray",
        label="IPW event study (95% CrI)",
    )
    if comparison is not None and not comparison.empty:
        plt.errorbar(
            comparison["event_time"] + 0.1,
            comparison["att"],
            yerr=[
                comparison["att"] - comparison["ci_low"],
                comparison["ci_high"] - comparison["att"],
            ],
            fmt="s",
            color="tab:orange",
            ecolor="moccasin",
            label="Callaway-Sant'Anna (95% CI)",
        )
    if "true_effect" in profile.columns:
        truth = profile.sort_values("event_time")
        plt.plot(truth["event_time"], truth["true_effect"], color="black", linewidth=1, label="Simulated effect")
    plt.axvline(-1, color="black", linestyle="--", linewidth=1, label="Reference (t=-1)")
    plt.axhline(0, color="gray", linestyle=":", linewidth=1)
    plt.title(f"Event Study: {label}")
    plt.xlabel("Event time (periods)")
    plt.ylabel("Effect")
    plt.legend()
    plt.tight_layout()
    plt.savefig(fig_path, dpi=150)
    plt.close()

    logger.info("Saved plot %s", fig_path)
    return fig_path
