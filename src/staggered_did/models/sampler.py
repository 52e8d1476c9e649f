"""Posterior draw backends.

Both backends return coefficient draws as a DataFrame with one row per draw
and one column per named coefficient, so downstream code never needs to know
which sampler produced them.

- ``pymc``: NUTS via PyMC; the posterior is flattened over chains.
- ``laplace``: a frequentist fit's point estimate and covariance, with draws
  from the multivariate normal approximation. Fast enough for power loops.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from staggered_did.log import get_logger

BACKENDS = ("pymc", "laplace")


def resolve_backend(section_cfg: Dict[str, Any]) -> str:
    backend = section_cfg.get("backend", "laplace")
    if backend not in BACKENDS:
        raise ValueError(f"Unknown sampler backend {backend!r}; expected one of {BACKENDS}")
    return backend


def sampling_options(section_cfg: Dict[str, Any], seed: Optional[int] = None) -> Dict[str, Any]:
    """Collect sampler options from a config section."""
    options = {
        "draws": int(section_cfg.get("draws", 1000)),
        "tune": int(section_cfg.get("tune", 1000)),
        "chains": int(section_cfg.get("chains", 4)),
        "target_accept": float(section_cfg.get("target_accept", 0.9)),
        "random_seed": section_cfg.get("random_seed", seed),
    }
    if options["draws"] < 1:
        raise ValueError("draws must be positive")
    return options


def normal_approximation_draws(
    params: pd.Series,
    cov: pd.DataFrame | np.ndarray,
    n_draws: int,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Draw coefficients from N(params, cov).

    Args:
        params: Point estimates indexed by coefficient name.
        cov: Covariance matrix aligned with ``params``.
        n_draws: Number of draws.
        seed: Random seed.

    Returns:
        Draws dataframe with columns named after ``params``.
    """
    rng = np.random.default_rng(seed)
    mean = params.to_numpy(dtype=float)
    cov_arr = np.asarray(cov, dtype=float)
    # Symmetrize; clustered covariances can be off by rounding.
    cov_arr = (cov_arr + cov_arr.T) / 2
    draws = rng.multivariate_normal(mean, cov_arr, size=n_draws, method="eigh")
    return pd.DataFrame(draws, columns=list(params.index))


def flatten_posterior(idata: Any, var_name: str, names: Sequence[str]) -> pd.DataFrame:
    """Flatten a PyMC posterior variable into a draws dataframe.

    Trailing dimensions beyond (chain, draw) are flattened in C order, so
    ``names`` must list them the same way.

    Args:
        idata: ArviZ InferenceData returned by ``pm.sample``.
        var_name: Posterior variable name.
        names: Column names for the flattened trailing dimensions.

    Returns:
        Draws dataframe with ``chains * draws`` rows.
    """
    values = idata.posterior[var_name].to_numpy()
    values = values.reshape(values.shape[0] * values.shape[1], -1)
    if values.shape[1] != len(names):
        raise ValueError(
            f"Posterior {var_name} has {values.shape[1]} columns, expected {len(names)}"
        )
    return pd.DataFrame(values, columns=list(names))


def log_posterior_summary(idata: Any, var_names: Sequence[str], label: str) -> None:
    """Log the ArviZ summary table and divergence count of a PyMC fit."""
    import arviz as az

    logger = get_logger()
    summary = az.summary(idata, var_names=list(var_names), round_to=3)
    logger.info("Posterior summary (%s):\n%s", label, summary.to_string())
    divergences = int(idata.sample_stats["diverging"].sum())
    if divergences:
        logger.warning("%s: %d divergent transitions", label, divergences)
