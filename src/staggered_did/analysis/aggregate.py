"""Reconstruction and aggregation of dynamic treatment effects."""
from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from staggered_did.analysis.event_study import (
    REFERENCE_EVENT_TIME,
    EventStudyFit,
    event_column,
    interaction_column,
)
from staggered_did.log import get_logger

WEIGHTINGS = ("equal", "cohort_size")


def reconstruct_total_effects(fit: EventStudyFit) -> pd.DataFrame:
    """Total effect draws for every (cohort, event time) cell.

    ``total = main[t] + interaction[g, t]``. The interaction is 0 for the
    reference cohort (and for pooled fits); the main effect is 0 for event
    times the reference cohort never reaches. Event time ``-1`` is added at
    exactly 0 for every cohort.

    Args:
        fit: Fitted event study.

    Returns:
        Long dataframe with ``draw``, ``cohort``, ``event_time``, ``total_effect``.
    """
    logger = get_logger()
    n_draws = len(fit.draws)
    draw_index = np.arange(n_draws)
    frames: List[pd.DataFrame] = []
    zeros = np.zeros(n_draws)

    for g, t in fit.cells[["cohort", "event_time"]].itertuples(index=False):
        g, t = int(g), int(t)
        if t == REFERENCE_EVENT_TIME:
            continue
        main_col = event_column(t)
        main = fit.draws[main_col].to_numpy() if main_col in fit.draws.columns else None
        if fit.model == "pooled" or g == fit.reference_cohort:
            if main is None:
                logger.warning("No estimate for cohort %d at event time %d; skipping", g, t)
                continue
            total = main
        else:
            inter_col = interaction_column(t, g)
            if inter_col not in fit.draws.columns:
                logger.warning("No interaction for cohort %d at event time %d; skipping", g, t)
                continue
            total = fit.draws[inter_col].to_numpy() + (main if main is not None else zeros)
        frames.append(
            pd.DataFrame(
                {"draw": draw_index, "cohort": g, "event_time": t, "total_effect": total}
            )
        )

    for g in fit.cohorts:
        frames.append(
            pd.DataFrame(
                {
                    "draw": draw_index,
                    "cohort": int(g),
                    "event_time": REFERENCE_EVENT_TIME,
                    "total_effect": zeros,
                }
            )
        )
    if not frames:
        return pd.DataFrame(columns=["draw", "cohort", "event_time", "total_effect"])
    return pd.concat(frames, ignore_index=True).sort_values(
        ["cohort", "event_time", "draw"], ignore_index=True
    )


def combine_cohort_fits(fits: Mapping[int, EventStudyFit]) -> pd.DataFrame:
    """Merge per-cohort fits into one total-effect frame, aligned draw by draw."""
    if not fits:
        raise ValueError("No cohort fits to combine")
    draw_counts = {g: len(fit.draws) for g, fit in fits.items()}
    if len(set(draw_counts.values())) != 1:
        raise ValueError(f"Cohort fits have different draw counts: {draw_counts}")
    frames = []
    for g, fit in fits.items():
        effects = reconstruct_total_effects(fit)
        frames.append(effects[effects["cohort"] == g])
    return pd.concat(frames, ignore_index=True)


def aggregate_event_effects(
    total_effects: pd.DataFrame,
    weighting: str = "equal",
    cohort_sizes: Optional[Mapping[int, int]] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Average cohort effects into one event-time profile.

    For every draw and event time, cohorts observed at that event time are
    averaged (equally, or by cohort size). The credible interval is the
    2.5/97.5 percentile of the per-draw average.

    Args:
        total_effects: Output of :func:`reconstruct_total_effects`.
        weighting: ``equal`` or ``cohort_size``.
        cohort_sizes: Units per cohort, required for ``cohort_size``.

    Returns:
        Tuple of (per-draw profile, summary by event time).
    """
    if weighting not in WEIGHTINGS:
        raise ValueError(f"Unknown weighting {weighting!r}; expected one of {WEIGHTINGS}")
    if total_effects.empty:
        empty = pd.DataFrame(columns=["draw", "event_time", "effect"])
        return empty, summarize_profile(empty)

    effects = total_effects.copy()
    if weighting == "cohort_size":
        if not cohort_sizes:
            raise ValueError("cohort_size weighting needs cohort_sizes")
        effects["w"] = effects["cohort"].map(lambda g: float(cohort_sizes.get(int(g), 0)))
        if (effects["w"] <= 0).any():
            raise ValueError("Every cohort in the effects frame needs a positive size")
    else:
        effects["w"] = 1.0
    effects["weighted"] = effects["total_effect"] * effects["w"]

    grouped = effects.groupby(["draw", "event_time"], as_index=False).agg(
        weighted=("weighted", "sum"),
        w=("w", "sum"),
        n_cohorts=("cohort", "nunique"),
    )
    grouped["effect"] = grouped["weighted"] / grouped["w"]
    per_draw = grouped[["draw", "event_time", "effect", "n_cohorts"]]
    return per_draw, summarize_profile(per_draw)


def summarize_profile(per_draw: pd.DataFrame) -> pd.DataFrame:
    """Posterior summary of an event-time profile."""
    columns = ["event_time", "mean", "median", "sd", "ci_low", "ci_high", "n_cohorts"]
    if per_draw.empty:
        return pd.DataFrame(columns=columns)
    summary = per_draw.groupby("event_time").agg(
        mean=("effect", "mean"),
        median=("effect", "median"),
        sd=("effect", "std"),
        ci_low=("effect", lambda s: s.quantile(0.025)),
        ci_high=("effect", lambda s: s.quantile(0.975)),
        n_cohorts=("n_cohorts", "max"),
    )
    return summary.reset_index()[columns]


def compare_with_truth(summary: pd.DataFrame, truth: pd.DataFrame) -> pd.DataFrame:
    """Attach simulated effects, bias and interval coverage to a profile summary."""
    merged = summary.merge(truth, on="event_time", how="left")
    merged["true_effect"] = merged["true_effect"].fillna(0.0)
    merged["bias"] = merged["mean"] - merged["true_effect"]
    merged["covered"] = (merged["ci_low"] <= merged["true_effect"]) & (
        merged["true_effect"] <= merged["ci_high"]
    )
    return merged


def cohort_effect_summary(total_effects: pd.DataFrame) -> pd.DataFrame:
    """Posterior mean and interval of each cohort's total effect by event time."""
    if total_effects.empty:
        return pd.DataFrame(columns=["cohort", "event_time", "mean", "ci_low", "ci_high"])
    summary = total_effects.groupby(["cohort", "event_time"]).agg(
        mean=("total_effect", "mean"),
        ci_low=("total_effect", lambda s: s.quantile(0.025)),
        ci_high=("total_effect", lambda s: s.quantile(0.975)),
    )
    return summary.reset_index()


def cohort_sizes_from_fits(fits: Mapping[int, EventStudyFit]) -> Dict[int, int]:
    """Treated units of each cohort, read from its own per-cohort fit."""
    sizes: Dict[int, int] = {}
    for g, fit in fits.items():
        sizes[int(g)] = fit.cohort_sizes.get(int(g), 0)
    return sizes
