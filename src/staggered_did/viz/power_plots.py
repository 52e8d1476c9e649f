"""Power curve plot."""
from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt
import pandas as pd

from staggered_did.log import get_logger


def plot_power_curve(summary: pd.DataFrame, alpha: float, outputs_dir: str | Path) -> Path:
    """Rejection rate against effect scale with Monte Carlo error bars."""
    logger = get_logger()
    figures_dir = Path(outputs_dir) / "figures"
    figures_dir.mkdir(parents=True, exist_ok=True)
    fig_path = figures_dir / "power_curve.png"

    summary = summary.sort_values("effect_scale")
    plt.figure(figsize=(6, 4))
    plt.errorbar(
        summary["effect_scale"],
        summary["rejection_rate"],
        yerr=1.96 * summary["mc_se"],
        fmt="o-",
        color="tab:blue",
        ecolor="lightgray",
    )
    plt.axhline(alpha, color="tab:red", linestyle="--", linewidth=1, label=f"alpha = {alpha:g}")
    plt.axhline(0.8, color="gray", linestyle=":", linewidth=1, label="80% power")
    plt.ylim(0, 1.05)
    plt.xlabel("Effect scale")
    plt.ylabel("Rejection rate")
    plt.title("Power of the dynamic ATT test")
    plt.legend()
    plt.tight_layout()
    plt.savefig(fig_path, dpi=150)
    plt.close()

    logger.info("Saved power curve to %s", fig_path)
    return fig_path
