"""Output writers."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from staggered_did.log import get_logger

HORIZONS = [(0, 2, "0_2"), (3, 5, "3_5"), (6, 9, "6_9")]


def _tables_dir(outputs_dir: str | Path) -> Path:
    tables_dir = Path(outputs_dir) / "tables"
    tables_dir.mkdir(parents=True, exist_ok=True)
    return tables_dir


def save_event_study_outputs(estimation: Dict[str, Any], outputs_dir: str | Path) -> None:
    """Save the dynamic profile, cohort effects, coefficient summaries and metadata.

    Args:
        estimation: Output of ``run_estimation``.
        outputs_dir: Base outputs directory.
    """
    logger = get_logger()
    tables_dir = _tables_dir(outputs_dir)
    model = estimation["metadata"].get("model", "event_study")

    estimation["profile"].to_csv(tables_dir / f"event_study_{model}_profile.csv", index=False)
    estimation["cohort_effects"].to_csv(
        tables_dir / f"event_study_{model}_cohort_effects.csv", index=False
    )
    estimation["coefficients"].to_csv(
        tables_dir / f"event_study_{model}_coefficients.csv", index=False
    )
    meta_path = tables_dir / f"event_study_{model}_meta.json"
    meta_path.write_text(json.dumps(estimation["metadata"], indent=2, default=str), encoding="utf-8")
    logger.info("Saved event study outputs for %s model", model)


def save_comparison_outputs(comparison: Dict[str, Any], outputs_dir: str | Path) -> None:
    """Save Callaway-Sant'Anna group-time, dynamic and overall estimates."""
    logger = get_logger()
    tables_dir = _tables_dir(outputs_dir)
    comparison["att_gt"].to_csv(tables_dir / "cs_att_gt.csv", index=False)
    comparison["dynamic"].to_csv(tables_dir / "cs_dynamic.csv", index=False)
    (tables_dir / "cs_overall.json").write_text(
        json.dumps(comparison["overall"], indent=2), encoding="utf-8"
    )
    logger.info("Saved Callaway-Sant'Anna outputs to %s", tables_dir)


def save_power_outputs(
    records: pd.DataFrame, summary: pd.DataFrame, outputs_dir: str | Path
) -> None:
    """Save per-trial power records and the per-scale summary."""
    logger = get_logger()
    tables_dir = _tables_dir(outputs_dir)
    records.to_csv(tables_dir / "power_trials.csv", index=False)
    summary_path = tables_dir / "power_summary.csv"
    summary.to_csv(summary_path, index=False)
    logger.info("Saved power summary to %s", summary_path)


def save_horizon_summary(
    profile: pd.DataFrame,
    outputs_dir: str | Path,
    comparison: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Average effects over event-time horizons for each estimator and the truth."""
    sources = {"event_study": profile.rename(columns={"mean": "effect"})}
    if comparison is not None and not comparison.empty:
        sources["callaway_santanna"] = comparison.rename(columns={"att": "effect"})

    summaries = []
    for estimator, df in sources.items():
        for start, end, label in HORIZONS:
            subset = df[(df["event_time"] >= start) & (df["event_time"] <= end)]
            if subset.empty:
                avg = truth = float("nan")
            else:
                avg = float(subset["effect"].mean())
                truth = (
                    float(subset["true_effect"].mean())
                    if "true_effect" in subset.columns
                    else float("nan")
                )
            summaries.append(
                {"estimator": estimator, "horizon": label, "avg_effect": avg, "avg_true_effect": truth}
            )
    summary_df = pd.DataFrame(summaries)
    if not summary_df.empty:
        summary_df.to_csv(_tables_dir(outputs_dir) / "horizon_summary.csv", index=False)
    return summary_df
