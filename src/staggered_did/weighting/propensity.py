"""Propensity score estimation for cohort membership."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm

from staggered_did.log import get_logger
from staggered_did.models.sampler import (
    flatten_posterior,
    log_posterior_summary,
    normal_approximation_draws,
    resolve_backend,
    sampling_options,
)
from staggered_did.utils.cache import cached_draws


def category_codes(cohorts: pd.Series) -> Tuple[np.ndarray, List[int]]:
    """Map adoption periods to category codes, never-treated (0) first.

    Args:
        cohorts: Adoption period per unit.

    Returns:
        Tuple of (codes, labels) where ``labels[code]`` is the adoption period.
    """
    labels = sorted(int(g) for g in cohorts.dropna().unique())
    if len(labels) < 2:
        raise ValueError(f"Need at least two cohorts for a propensity model, got {labels}")
    lookup = {g: code for code, g in enumerate(labels)}
    codes = cohorts.astype(int).map(lookup).to_numpy()
    return codes, labels


def coefficient_names(variables: Sequence[str], labels: Sequence[int]) -> List[str]:
    """Coefficient column names, variable-major, for non-reference categories."""
    return [f"{var}:g{label}" for var in variables for label in labels[1:]]


def _design_matrix(units: pd.DataFrame, covariates: Sequence[str]) -> pd.DataFrame:
    missing = [col for col in covariates if col not in units.columns]
    if missing:
        raise KeyError(f"Propensity covariates missing from units: {missing}")
    design = units[list(covariates)].astype(float)
    return sm.add_constant(design, has_constant="add")


def _fit_laplace(
    design: pd.DataFrame,
    codes: np.ndarray,
    labels: Sequence[int],
    n_draws: int,
    seed: Optional[int],
) -> pd.DataFrame:
    logger = get_logger()
    model = sm.MNLogit(codes, design)
    results = model.fit(disp=0, maxiter=500)
    if not results.mle_retvals.get("converged", True):
        logger.warning("Multinomial propensity model did not converge")
    logger.info("Multinomial propensity model:\n%s", results.summary())

    # MNLogit stacks parameters equation by equation (column-major).
    params = np.asarray(results.params).ravel(order="F")
    names = [f"{var}:g{label}" for label in labels[1:] for var in design.columns]
    draws = normal_approximation_draws(
        pd.Series(params, index=names),
        np.asarray(results.cov_params()),
        n_draws,
        seed,
    )
    return draws[coefficient_names(list(design.columns), labels)]


def _fit_pymc(
    design: pd.DataFrame,
    codes: np.ndarray,
    labels: Sequence[int],
    options: Dict[str, Any],
    prior_sd: float,
) -> pd.DataFrame:
    import pymc as pm
    import pytensor.tensor as pt

    variables = list(design.columns)
    coords = {"variable": variables, "category": [f"g{g}" for g in labels[1:]]}
    x = design.to_numpy(dtype=float)
    with pm.Model(coords=coords):
        beta = pm.Normal("beta", mu=0.0, sigma=prior_sd, dims=("variable", "category"))
        eta = pt.dot(x, beta)
        logits = pt.concatenate([pt.zeros((x.shape[0], 1)), eta], axis=1)
        pm.Categorical("cohort", logit_p=logits, observed=codes)
        idata = pm.sample(progressbar=False, **options)
    log_posterior_summary(idata, ["beta"], "propensity")
    return flatten_posterior(idata, "beta", coefficient_names(variables, labels))


def fit_propensity_draws(
    units: pd.DataFrame,
    covariates: Sequence[str],
    prop_cfg: Dict[str, Any],
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Fit the categorical cohort model ``G ~ covariates`` and return coefficient draws.

    Args:
        units: One row per unit with ``G`` and the covariates.
        covariates: Covariate columns.
        prop_cfg: ``propensity`` config block.
        seed: Random seed for the sampler.

    Returns:
        Coefficient draws, columns ``{variable}:g{cohort}`` for non-reference cohorts.
    """
    backend = resolve_backend(prop_cfg)
    design = _design_matrix(units, covariates)
    codes, labels = category_codes(units["G"])
    options = sampling_options(prop_cfg, seed)
    if backend == "pymc":
        return _fit_pymc(
            design, codes, labels, options, float(prop_cfg.get("prior_sd", 2.5))
        )
    n_draws = options["draws"] * options["chains"]
    return _fit_laplace(design, codes, labels, n_draws, options["random_seed"])


def predict_category_probabilities(
    draws: pd.DataFrame,
    design: np.ndarray,
    variables: Sequence[str],
    labels: Sequence[int],
) -> np.ndarray:
    """Predicted category probabilities for every draw.

    Args:
        draws: Coefficient draws from :func:`fit_propensity_draws`.
        design: Design matrix (units x variables) including the constant.
        variables: Design column names in order.
        labels: Cohort labels, reference first.

    Returns:
        Array indexed ``[draw, unit, category]``.
    """
    n_draws = len(draws)
    coef = np.zeros((n_draws, len(variables), len(labels)))
    for v_idx, var in enumerate(variables):
        for k_idx, label in enumerate(labels[1:], start=1):
            coef[:, v_idx, k_idx] = draws[f"{var}:g{label}"].to_numpy()
    eta = np.einsum("iv,dvk->dik", design, coef)
    eta -= eta.max(axis=2, keepdims=True)
    probs = np.exp(eta)
    probs /= probs.sum(axis=2, keepdims=True)
    return probs


def observed_category_scores(probs: np.ndarray, codes: np.ndarray) -> np.ndarray:
    """Posterior-mean probability of each unit's observed category.

    Selects ``probs[draw, unit, codes[unit]]`` and averages over draws.
    """
    unit_index = np.arange(probs.shape[1])
    return probs[:, unit_index, codes].mean(axis=0)


def build_propensity_scores(
    units: pd.DataFrame,
    config: Dict[str, Any],
    cache_dir: Optional[str | Path] = None,
    cache_key: Optional[str] = None,
    force: bool = False,
) -> pd.DataFrame:
    """Estimate each unit's probability of its observed cohort.

    Args:
        units: One row per unit with ``id``, ``G`` and covariates.
        config: Loaded configuration.
        cache_dir: Directory for cached draws; no caching when None.
        cache_key: Cache filename stem.
        force: Refit even when cached draws exist.

    Returns:
        Units dataframe with ``cohort_code``, ``prop_score`` and per-cohort
        mean probabilities ``p_g{cohort}``.
    """
    logger = get_logger()
    prop_cfg = config.get("propensity", {})
    covariates = list(prop_cfg.get("covariates", ["X"]))
    seed = config.get("simulation", {}).get("seed")

    units = units.drop_duplicates(subset=["id"]).reset_index(drop=True)
    if units[covariates].isna().any().any():
        raise ValueError("Propensity covariates contain missing values")
    codes, labels = category_codes(units["G"])
    design = _design_matrix(units, covariates)

    draws = cached_draws(
        cache_dir,
        cache_key,
        lambda: fit_propensity_draws(units, covariates, prop_cfg, seed),
        force=force,
    )
    probs = predict_category_probabilities(
        draws, design.to_numpy(dtype=float), list(design.columns), labels
    )

    result = units[["id", "G", *covariates]].copy()
    result["cohort_code"] = codes
    result["prop_score"] = observed_category_scores(probs, codes)
    mean_probs = probs.mean(axis=0)
    for k_idx, label in enumerate(labels):
        result[f"p_g{label}"] = mean_probs[:, k_idx]

    logger.info(
        "Propensity scores: %d units, %d draws, score range [%.4f, %.4f]",
        len(result),
        len(draws),
        result["prop_score"].min(),
        result["prop_score"].max(),
    )
    return result
