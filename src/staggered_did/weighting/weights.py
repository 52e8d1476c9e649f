"""Inverse-probability weight construction."""
from __future__ import annotations

import numpy as np
import pandas as pd

from staggered_did.log import get_logger

WEIGHT_COLUMNS = ["ipw_weight", "ipw_weight_cap", "ipw_weight_trimmed"]


def construct_ipw_weights(
    propensity: pd.DataFrame,
    trim_percentile: float = 99.0,
    stabilize: bool = False,
) -> pd.DataFrame:
    """Convert propensity scores into trimmed inverse-probability weights.

    ``ipw_weight = 1 / prop_score``. Weights above the ``trim_percentile``
    percentile of the raw weights are replaced by that cap; no unit is
    dropped. With ``stabilize`` the raw weight is multiplied by the unit's
    marginal cohort share before trimming.

    Args:
        propensity: Output of ``build_propensity_scores``.
        trim_percentile: Percentile of the raw weight distribution used as cap.
        stabilize: Multiply by marginal cohort shares.

    Returns:
        Copy of ``propensity`` with weight columns added.
    """
    logger = get_logger()
    if "prop_score" not in propensity.columns:
        raise KeyError("prop_score column is required")
    if not 0 < trim_percentile <= 100:
        raise ValueError(f"trim_percentile must be in (0, 100], got {trim_percentile}")
    scores = propensity["prop_score"].to_numpy(dtype=float)
    if np.isnan(scores).any():
        raise ValueError("Propensity scores contain missing values")
    if (scores <= 0).any() or (scores > 1).any():
        raise ValueError("Propensity scores must lie in (0, 1]")

    weighted = propensity.copy()
    raw = 1.0 / scores
    if stabilize:
        shares = weighted["G"].map(weighted["G"].value_counts(normalize=True))
        raw = raw * shares.to_numpy(dtype=float)

    cap = float(np.percentile(raw, trim_percentile))
    weighted["ipw_weight"] = raw
    weighted["ipw_weight_cap"] = cap
    weighted["ipw_weight_trimmed"] = np.minimum(raw, cap)

    n_capped = int((raw > cap).sum())
    logger.info(
        "IPW weights: cap %.3f at p%.1f, %d of %d units capped, max raw %.3f",
        cap,
        trim_percentile,
        n_capped,
        len(raw),
        raw.max(),
    )
    return weighted


def attach_weights(panel: pd.DataFrame, weights: pd.DataFrame) -> pd.DataFrame:
    """Join per-unit weights onto the panel by ``id``.

    Args:
        panel: Unit x period panel.
        weights: Output of :func:`construct_ipw_weights`.

    Returns:
        Panel with weight columns.
    """
    unit_weights = weights[["id", "prop_score", *WEIGHT_COLUMNS]].drop_duplicates(subset=["id"])
    panel = panel.drop(columns=[c for c in unit_weights.columns if c != "id" and c in panel.columns])
    merged = panel.merge(unit_weights, on="id", how="left", validate="many_to_one")
    missing = merged["ipw_weight_trimmed"].isna()
    if missing.any():
        missing_ids = merged.loc[missing, "id"].unique()[:5].tolist()
        raise ValueError(f"Panel units without weights, e.g. {missing_ids}")
    return merged
