"""Monte Carlo power analysis for the dynamic Callaway-Sant'Anna effect."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from staggered_did.analysis.callaway_santanna import (
    aggregate_dynamic,
    estimate_att_gt,
    overall_post_effect,
)
from staggered_did.log import get_logger
from staggered_did.simulate.panel import simulate_panel

REJECT = "reject"
ACCEPT = "accept"
INCONCLUSIVE = "inconclusive"


def run_power_trial(
    config: Dict[str, Any],
    effect_scale: float,
    trial: int,
    seed: int,
    alpha: float,
) -> Dict[str, Any]:
    """Simulate one panel and test the overall post-treatment effect against zero.

    Estimation failures are recorded as ``inconclusive`` instead of raised.

    Args:
        config: Loaded configuration.
        effect_scale: Multiplier on the simulated effect.
        trial: Trial index.
        seed: Simulation seed.
        alpha: Significance level.

    Returns:
        Trial record.
    """
    logger = get_logger()
    comp_cfg = {**config.get("comparison", {}), **config.get("power", {}).get("estimator", {})}
    record: Dict[str, Any] = {
        "effect_scale": effect_scale,
        "trial": trial,
        "seed": seed,
        "estimate": float("nan"),
        "se": float("nan"),
        "z": float("nan"),
        "pvalue": float("nan"),
        "status": INCONCLUSIVE,
        "error": None,
    }
    panel, _ = simulate_panel(config.get("simulation", {}), seed=seed, effect_scale=effect_scale)
    try:
        result = estimate_att_gt(
            panel,
            control_group=str(comp_cfg.get("control_group", "notyet")),
            base_period=str(comp_cfg.get("base_period", "universal")),
            est_method=str(comp_cfg.get("est_method", "ipw")),
            covariates=list(comp_cfg.get("covariates", ["X"])),
        )
        dynamic = aggregate_dynamic(result, alpha=alpha)
        overall = overall_post_effect(dynamic, alpha=alpha)
    except Exception as exc:
        logger.warning("Trial %d at scale %.3g inconclusive: %s", trial, effect_scale, exc)
        record["error"] = str(exc)
        return record

    record.update({k: overall[k] for k in ("estimate", "se", "z", "pvalue")})
    if not np.isfinite(overall["pvalue"]):
        record["error"] = "non-finite p-value"
        return record
    record["status"] = REJECT if overall["pvalue"] < alpha else ACCEPT
    return record


def run_power_analysis(
    config: Dict[str, Any],
    effect_scales: Optional[Sequence[float]] = None,
    n_trials: Optional[int] = None,
    alpha: Optional[float] = None,
    n_jobs: Optional[int] = None,
) -> pd.DataFrame:
    """Run repeated simulations over a grid of effect scales.

    Args:
        config: Loaded configuration.
        effect_scales: Effect multipliers; defaults to ``power.effect_scales``.
        n_trials: Trials per scale; defaults to ``power.n_trials``.
        alpha: Significance level; defaults to ``power.alpha``.
        n_jobs: joblib workers; defaults to ``power.n_jobs``.

    Returns:
        One record per trial.
    """
    logger = get_logger()
    power_cfg = config.get("power", {})
    if effect_scales is None:
        effect_scales = power_cfg.get("effect_scales", [0.0, 0.5, 1.0])
    effect_scales = [float(s) for s in effect_scales]
    n_trials = int(n_trials if n_trials is not None else power_cfg.get("n_trials", 100))
    alpha = float(alpha if alpha is not None else power_cfg.get("alpha", 0.05))
    n_jobs = int(n_jobs if n_jobs is not None else power_cfg.get("n_jobs", 1))
    base_seed = int(power_cfg.get("seed", config.get("simulation", {}).get("seed", 0) or 0))

    tasks = []
    for scale_idx, scale in enumerate(effect_scales):
        for trial in range(n_trials):
            seed = base_seed + 100_000 * (scale_idx + 1) + trial
            tasks.append((float(scale), trial, seed))

    logger.info(
        "Power analysis: %d scales x %d trials (alpha=%.3f, n_jobs=%d)",
        len(effect_scales),
        n_trials,
        alpha,
        n_jobs,
    )
    records: List[Dict[str, Any]] = Parallel(n_jobs=n_jobs)(
        delayed(run_power_trial)(config, scale, trial, seed, alpha)
        for scale, trial, seed in tasks
    )
    return pd.DataFrame(records)


def summarize_power(records: pd.DataFrame) -> pd.DataFrame:
    """Rejection rate per effect scale over conclusive trials.

    Inconclusive trials are reported but excluded from the denominator.
    """
    columns = [
        "effect_scale",
        "n_trials",
        "n_valid",
        "n_inconclusive",
        "n_reject",
        "rejection_rate",
        "mc_se",
        "mean_estimate",
    ]
    if records.empty:
        return pd.DataFrame(columns=columns)
    rows = []
    for scale, group in records.groupby("effect_scale"):
        valid = group[group["status"] != INCONCLUSIVE]
        n_valid = len(valid)
        n_reject = int((valid["status"] == REJECT).sum())
        rate = n_reject / n_valid if n_valid else float("nan")
        mc_se = float(np.sqrt(rate * (1 - rate) / n_valid)) if n_valid else float("nan")
        rows.append(
            {
                "effect_scale": scale,
                "n_trials": len(group),
                "n_valid": n_valid,
                "n_inconclusive": len(group) - n_valid,
                "n_reject": n_reject,
                "rejection_rate": rate,
                "mc_se": mc_se,
                "mean_estimate": float(valid["estimate"].mean()) if n_valid else float("nan"),
            }
        )
    return pd.DataFrame(rows)[columns]
