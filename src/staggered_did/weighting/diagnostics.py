"""Covariate balance diagnostics for cohort weights."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

import numpy as np
import pandas as pd

from staggered_did.log import get_logger
from staggered_did.viz.balance_plots import plot_density_overlay, plot_love


def _weighted_mean_var(values: np.ndarray, weights: Optional[np.ndarray]) -> Tuple[float, float]:
    if values.size == 0:
        return float("nan"), float("nan")
    if weights is None:
        mean = float(np.mean(values))
        var = float(np.var(values, ddof=0))
    else:
        mean = float(np.average(values, weights=weights))
        var = float(np.average((values - mean) ** 2, weights=weights))
    return mean, var


def _smd(
    group: np.ndarray,
    reference: np.ndarray,
    group_weights: Optional[np.ndarray] = None,
) -> Tuple[float, float, float]:
    # The scale uses unweighted variances so weighting moves only the numerator.
    g_mean, _ = _weighted_mean_var(group, group_weights)
    r_mean, r_var = _weighted_mean_var(reference, None)
    _, g_var = _weighted_mean_var(group, None)
    pooled_sd = np.sqrt((g_var + r_var) / 2) if not np.isnan(g_var + r_var) else float("nan")
    if pooled_sd == 0 or np.isnan(pooled_sd):
        smd = float("nan")
    else:
        smd = (g_mean - r_mean) / pooled_sd
    return g_mean, r_mean, smd


def balance_table(
    units: pd.DataFrame,
    covariates: Iterable[str],
    weight_col: str = "ipw_weight_trimmed",
) -> pd.DataFrame:
    """Standardized mean differences of each cohort against the full population.

    Inverse-probability weights reweight every cohort towards the population
    covariate distribution, so each weighted cohort mean is compared with the
    unweighted population mean.

    Args:
        units: One row per unit with ``G``, covariates and ``weight_col``.
        covariates: Covariates to check.
        weight_col: Weight column.

    Returns:
        One row per (cohort, covariate).
    """
    if weight_col not in units.columns:
        raise KeyError(f"Weight column {weight_col} not found")
    rows = []
    for covariate in covariates:
        if covariate not in units.columns:
            continue
        population = units[covariate].dropna().to_numpy(dtype=float)
        for cohort, group in units.groupby("G"):
            valid = group[covariate].notna()
            values = group.loc[valid, covariate].to_numpy(dtype=float)
            weights = group.loc[valid, weight_col].to_numpy(dtype=float)
            mean_before, pop_mean, smd_before = _smd(values, population)
            mean_after, _, smd_after = _smd(values, population, weights)
            rows.append(
                {
                    "cohort": int(cohort),
                    "covariate": covariate,
                    "n_units": int(valid.sum()),
                    "mean_population": pop_mean,
                    "mean_cohort_unweighted": mean_before,
                    "mean_cohort_weighted": mean_after,
                    "smd_unweighted": smd_before,
                    "smd_weighted": smd_after,
                }
            )
    return pd.DataFrame(rows)


def write_balance_diagnostics(
    units: pd.DataFrame,
    config: Dict[str, Any],
    outputs_dir: str | Path,
) -> pd.DataFrame:
    """Write the balance table, love plot and density overlays.

    Args:
        units: Weighted units (output of ``construct_ipw_weights``).
        config: Loaded configuration.
        outputs_dir: Base outputs directory.

    Returns:
        Balance table.
    """
    logger = get_logger()
    covariates = list(config.get("propensity", {}).get("covariates", ["X"]))
    tables_dir = Path(outputs_dir) / "tables"
    tables_dir.mkdir(parents=True, exist_ok=True)

    balance_df = balance_table(units, covariates)
    balance_path = tables_dir / "balance.csv"
    balance_df.to_csv(balance_path, index=False)
    logger.info("Saved balance table to %s", balance_path)

    if not balance_df.empty:
        logger.info(
            "Max |SMD|: %.3f unweighted, %.3f weighted",
            balance_df["smd_unweighted"].abs().max(),
            balance_df["smd_weighted"].abs().max(),
        )
        plot_love(balance_df, outputs_dir)
        for covariate in covariates:
            if covariate in units.columns:
                plot_density_overlay(units, covariate, outputs_dir)
    return balance_df
