"""Synthetic staggered-adoption panel construction."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from staggered_did.log import get_logger
from staggered_did.simulate.effects import make_effect_function

NEVER_TREATED = 0


def _validate_design(
    n_periods: int,
    cohort_periods: Sequence[int],
    probabilities: Sequence[float],
    confounding: Sequence[float],
) -> None:
    if n_periods < 3:
        raise ValueError(f"n_periods must be at least 3, got {n_periods}")
    if not cohort_periods:
        raise ValueError("At least one treatment cohort is required")
    if len(set(cohort_periods)) != len(cohort_periods):
        raise ValueError(f"Duplicate cohort periods: {list(cohort_periods)}")
    for g in cohort_periods:
        # Cohorts need a pre-period (g - 1) inside the panel.
        if g < 2 or g > n_periods:
            raise ValueError(f"Cohort period {g} outside [2, {n_periods}]")
    n_categories = len(cohort_periods) + 1
    if len(probabilities) != n_categories:
        raise ValueError(
            f"Expected {n_categories} cohort probabilities (never-treated first), "
            f"got {len(probabilities)}"
        )
    if len(confounding) != n_categories:
        raise ValueError(
            f"Expected {n_categories} confounding coefficients, got {len(confounding)}"
        )
    probs = np.asarray(probabilities, dtype=float)
    if (probs <= 0).any() or not np.isclose(probs.sum(), 1.0):
        raise ValueError(f"Cohort probabilities must be positive and sum to 1: {list(probabilities)}")


def assign_cohorts(
    x: np.ndarray,
    cohort_periods: Sequence[int],
    probabilities: Sequence[float],
    confounding: Sequence[float],
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw each unit's adoption period from a multinomial logit in ``x``.

    Category 0 is never-treated; category ``k`` adopts at ``cohort_periods[k-1]``.
    Logits are ``log(p_k) + confounding_k * x``, so ``x`` shifts timing.

    Args:
        x: Confounder values, one per unit.
        cohort_periods: Adoption periods of the treated cohorts.
        probabilities: Baseline category probabilities, never-treated first.
        confounding: Per-category slope on ``x``.
        rng: Random generator.

    Returns:
        Array of adoption periods with ``0`` for never-treated units.
    """
    logits = np.log(np.asarray(probabilities, dtype=float))[None, :] + np.outer(
        x, np.asarray(confounding, dtype=float)
    )
    logits -= logits.max(axis=1, keepdims=True)
    probs = np.exp(logits)
    probs /= probs.sum(axis=1, keepdims=True)
    cumulative = probs.cumsum(axis=1)
    draws = rng.random(len(x))[:, None]
    categories = (draws > cumulative).sum(axis=1)
    categories = np.minimum(categories, probs.shape[1] - 1)
    periods = np.concatenate([[NEVER_TREATED], np.asarray(cohort_periods, dtype=int)])
    return periods[categories]


def simulate_panel(
    sim_cfg: Dict[str, Any],
    seed: Optional[int] = None,
    effect_scale: float = 1.0,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Simulate a balanced unit x period panel with confounded adoption timing.

    The outcome is ``unit_effect + time_effect + trend_confounding * X * period / T
    + effect_scale * effect(event_time, G) + noise``. The confounder enters both
    the timing model and the outcome trend, so unweighted comparisons across
    cohorts violate parallel trends.

    Args:
        sim_cfg: ``simulation`` config block.
        seed: Random seed; falls back to ``sim_cfg['seed']``.
        effect_scale: Multiplier applied to the configured effect function.

    Returns:
        Tuple of (panel, units).
    """
    logger = get_logger()
    n_units = int(sim_cfg.get("n_units", 500))
    n_periods = int(sim_cfg.get("n_periods", 10))
    cohort_periods: List[int] = [int(g) for g in sim_cfg.get("cohort_periods", [4, 6, 8])]
    probabilities = sim_cfg.get("cohort_probabilities")
    if probabilities is None:
        probabilities = [1.0 / (len(cohort_periods) + 1)] * (len(cohort_periods) + 1)
    confounding = sim_cfg.get("confounding") or [0.0] * (len(cohort_periods) + 1)
    _validate_design(n_periods, cohort_periods, probabilities, confounding)
    if n_units < 2:
        raise ValueError(f"n_units must be at least 2, got {n_units}")

    if seed is None:
        seed = sim_cfg.get("seed")
    rng = np.random.default_rng(seed)
    confounder = sim_cfg.get("confounder", {})

    x = rng.normal(float(confounder.get("mean", 0.0)), float(confounder.get("sd", 1.0)), n_units)
    cohort = assign_cohorts(x, cohort_periods, probabilities, confounding, rng)
    unit_effect = rng.normal(0.0, float(sim_cfg.get("sigma_unit", 1.0)), n_units)

    units = pd.DataFrame(
        {
            "id": np.arange(1, n_units + 1),
            "G": cohort,
            "X": x,
            "unit_effect": unit_effect,
        }
    )

    periods = np.arange(1, n_periods + 1)
    time_effect = float(sim_cfg.get("time_trend", 0.0)) * periods + rng.normal(
        0.0, float(sim_cfg.get("sigma_time", 0.5)), n_periods
    )

    panel = pd.DataFrame(
        {
            "id": np.repeat(units["id"].to_numpy(), n_periods),
            "period": np.tile(periods, n_units),
        }
    )
    g_obs = np.repeat(cohort, n_periods)
    x_obs = np.repeat(x, n_periods)
    treated_unit = g_obs != NEVER_TREATED
    event_time = np.where(treated_unit, panel["period"].to_numpy() - g_obs, 0)

    effect_fn = make_effect_function(sim_cfg.get("effect", {}))
    tau = effect_scale * effect_fn(np.where(treated_unit, event_time, np.nan), g_obs)

    trend_confounding = float(sim_cfg.get("trend_confounding", 0.0))
    noise = rng.normal(0.0, float(sim_cfg.get("sigma_noise", 1.0)), len(panel))

    panel["G"] = g_obs
    panel["X"] = x_obs
    panel["event_time"] = pd.array(event_time, dtype="Int64")
    panel.loc[~treated_unit, "event_time"] = pd.NA
    panel["ever_treated"] = treated_unit.astype(int)
    panel["treated_yet"] = (treated_unit & (panel["period"].to_numpy() >= g_obs)).astype(int)
    panel["tau"] = tau
    panel["Y"] = (
        np.repeat(unit_effect, n_periods)
        + time_effect[panel["period"].to_numpy() - 1]
        + trend_confounding * x_obs * panel["period"].to_numpy() / n_periods
        + tau
        + noise
    )

    counts = units["G"].value_counts().sort_index()
    logger.info(
        "Simulated panel: %d units x %d periods, cohort sizes %s",
        n_units,
        n_periods,
        counts.to_dict(),
    )
    return panel, units


TRUTH_WEIGHTINGS = ("share", "equal", "cohort_size")


def true_event_effects(
    panel: pd.DataFrame,
    weighting: str = "share",
    cohort_sizes: Optional[Mapping[int, int]] = None,
) -> pd.DataFrame:
    """Simulated effect by event time, averaged over cohorts.

    ``share`` averages over treated observations, so cohorts count by their
    size in the panel; this is the target of cohort-share aggregations.
    ``equal`` and ``cohort_size`` first take the mean effect of each
    (cohort, event time) cell and then average cells the way
    ``aggregate_event_effects`` averages cohort draws.

    Args:
        panel: Simulated panel with ``tau``.
        weighting: ``share``, ``equal`` or ``cohort_size``.
        cohort_sizes: Units per cohort for ``cohort_size``; counted from the
            panel when omitted.

    Returns:
        Frame with ``event_time`` and ``true_effect``.
    """
    if weighting not in TRUTH_WEIGHTINGS:
        raise ValueError(f"Unknown weighting {weighting!r}; expected one of {TRUTH_WEIGHTINGS}")
    treated = panel[panel["event_time"].notna()]
    if treated.empty:
        return pd.DataFrame(columns=["event_time", "true_effect"])

    if weighting == "share":
        truth = treated.groupby("event_time")["tau"].mean().rename("true_effect").reset_index()
    else:
        cells = treated.groupby(["G", "event_time"], as_index=False)["tau"].mean()
        if weighting == "equal":
            cells["w"] = 1.0
        else:
            if cohort_sizes is None:
                cohort_sizes = treated.groupby("G")["id"].nunique().to_dict()
            cells["w"] = cells["G"].map(lambda g: float(cohort_sizes.get(int(g), 0)))
        cells["weighted"] = cells["tau"] * cells["w"]
        grouped = cells.groupby("event_time")[["weighted", "w"]].sum()
        truth = (grouped["weighted"] / grouped["w"]).rename("true_effect").reset_index()
    truth["event_time"] = truth["event_time"].astype(int)
    return truth
