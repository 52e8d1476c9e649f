"""Study orchestration: simulate, weight, estimate, aggregate, compare."""
from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Tuple

import pandas as pd

from staggered_did.analysis.aggregate import (
    aggregate_event_effects,
    cohort_effect_summary,
    cohort_sizes_from_fits,
    combine_cohort_fits,
    compare_with_truth,
    reconstruct_total_effects,
)
from staggered_did.analysis.callaway_santanna import run_callaway_santanna
from staggered_did.analysis.event_study import (
    fit_cohort_event_studies,
    fit_event_study,
    summarize_draws,
)
from staggered_did.log import get_logger
from staggered_did.simulate.panel import simulate_panel, true_event_effects
from staggered_did.utils.paths import ensure_dirs
from staggered_did.weighting.diagnostics import write_balance_diagnostics
from staggered_did.weighting.propensity import build_propensity_scores
from staggered_did.weighting.weights import attach_weights, construct_ipw_weights


def _cache_dir(config: Dict[str, Any]) -> str | None:
    if not config.get("project", {}).get("cache_models", True):
        return None
    return str(ensure_dirs(config)["cache_dir"])


def _run_tag(config: Dict[str, Any], section: str) -> str:
    """Cache key tied to the simulation design and the settings the draws depend on.

    Event-study draws also depend on the propensity settings through the weights.
    """
    simulation = config.get("simulation", {})
    section_cfg = config.get(section, {})
    inputs = {name: config.get(name, {}) for name in ("simulation", "propensity", section)}
    payload = json.dumps(inputs, sort_keys=True, default=str)
    digest = hashlib.sha1(payload.encode("utf-8")).hexdigest()[:10]
    backend = section_cfg.get("backend", "laplace")
    return f"{section}_{backend}_seed{simulation.get('seed')}_{digest}"


def run_simulation(config: Dict[str, Any]) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Simulate the panel and save it with the units table."""
    logger = get_logger()
    paths = ensure_dirs(config)
    panel, units = simulate_panel(config.get("simulation", {}))
    panel.to_parquet(paths["derived_dir"] / "panel.parquet", index=False)
    units.to_parquet(paths["derived_dir"] / "units.parquet", index=False)
    true_event_effects(panel).to_csv(paths["outputs_tables"] / "true_effects.csv", index=False)
    logger.info("Saved simulated panel to %s", paths["derived_dir"] / "panel.parquet")
    return panel, units


def run_weighting(
    units: pd.DataFrame, config: Dict[str, Any], force: bool = False
) -> pd.DataFrame:
    """Estimate propensity scores, build trimmed weights and check balance."""
    logger = get_logger()
    paths = ensure_dirs(config)
    prop_cfg = config.get("propensity", {})
    propensity = build_propensity_scores(
        units,
        config,
        cache_dir=_cache_dir(config),
        cache_key=_run_tag(config, "propensity"),
        force=force,
    )
    weights = construct_ipw_weights(
        propensity,
        trim_percentile=float(prop_cfg.get("trim_percentile", 99.0)),
        stabilize=bool(prop_cfg.get("stabilize", False)),
    )
    weights_path = paths["derived_dir"] / "unit_weights.parquet"
    weights.to_parquet(weights_path, index=False)
    logger.info("Saved unit weights to %s", weights_path)
    write_balance_diagnostics(weights, config, paths["outputs_dir"])
    return weights


def run_estimation(
    panel: pd.DataFrame,
    weights: pd.DataFrame,
    config: Dict[str, Any],
    force: bool = False,
) -> Dict[str, Any]:
    """Fit the weighted event study and aggregate it into a dynamic profile.

    Args:
        panel: Simulated panel.
        weights: Output of :func:`run_weighting`.
        config: Loaded configuration.
        force: Refit even when cached draws exist.

    Returns:
        Dictionary with ``profile``, ``cohort_effects``, ``coefficients`` and ``metadata``.
    """
    logger = get_logger()
    es_cfg = config.get("event_study", {})
    model = es_cfg.get("model", "interaction")
    weighted_panel = attach_weights(panel, weights)
    cache_dir = _cache_dir(config)
    cache_key = f"{_run_tag(config, 'event_study')}_{model}"

    if model == "cohort":
        fits = fit_cohort_event_studies(
            weighted_panel, config, cache_dir=cache_dir, cache_key=cache_key, force=force
        )
        total_effects = combine_cohort_fits(fits)
        cohort_sizes = cohort_sizes_from_fits(fits)
        coefficients = pd.concat(
            [fit.summary().assign(cohort=g) for g, fit in fits.items()], ignore_index=True
        )
        metadata: Dict[str, Any] = {
            "model": model,
            "fits": {int(g): fit.metadata for g, fit in fits.items()},
        }
    else:
        fit = fit_event_study(
            weighted_panel, config, model=model, cache_dir=cache_dir, cache_key=cache_key, force=force
        )
        total_effects = reconstruct_total_effects(fit)
        cohort_sizes = fit.cohort_sizes
        coefficients = summarize_draws(fit.draws)
        metadata = {"model": model, "reference_cohort": fit.reference_cohort, **fit.metadata}

    weighting = es_cfg.get("aggregation_weighting", "equal")
    _, profile = aggregate_event_effects(total_effects, weighting, cohort_sizes)
    truth = true_event_effects(panel, weighting, cohort_sizes)
    profile = compare_with_truth(profile, truth)
    metadata["aggregation_weighting"] = weighting

    post = profile[profile["event_time"] >= 0]
    if not post.empty:
        logger.info(
            "Event study (%s): mean post effect %.4f vs true %.4f, coverage %.0f%%",
            model,
            post["mean"].mean(),
            post["true_effect"].mean(),
            100 * post["covered"].mean(),
        )
    return {
        "profile": profile,
        "cohort_effects": cohort_effect_summary(total_effects),
        "coefficients": coefficients,
        "metadata": metadata,
    }


def run_comparison(panel: pd.DataFrame, config: Dict[str, Any]) -> Dict[str, Any]:
    """Callaway-Sant'Anna estimates on the same panel."""
    results = run_callaway_santanna(panel, config.get("comparison", {}))
    results["dynamic"] = compare_with_truth(
        results["dynamic"].rename(columns={"att": "mean"}), true_event_effects(panel)
    ).rename(columns={"mean": "att"})
    return results


def run_study(config: Dict[str, Any], force: bool = False) -> Dict[str, Any]:
    """Run the full study pipeline in memory.

    Args:
        config: Loaded configuration.
        force: Refit models even when cached draws exist.

    Returns:
        Dictionary of intermediate and final results.
    """
    panel, units = run_simulation(config)
    weights = run_weighting(units, config, force=force)
    estimation = run_estimation(panel, weights, config, force=force)
    comparison = run_comparison(panel, config)
    return {
        "panel": panel,
        "units": units,
        "weights": weights,
        "estimation": estimation,
        "comparison": comparison,
    }
