"""Event study estimation."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from joblib import Parallel, delayed

from staggered_did.log import get_logger
from staggered_did.models.sampler import (
    flatten_posterior,
    log_posterior_summary,
    normal_approximation_draws,
    resolve_backend,
    sampling_options,
)
from staggered_did.utils.cache import cached_draws

REFERENCE_EVENT_TIME = -1
MODELS = ("pooled", "interaction")


@dataclass
class EventStudyFit:
    """Coefficient draws of one event-study fit plus the bookkeeping to read them."""

    draws: pd.DataFrame
    model: str
    cohorts: List[int]
    reference_cohort: Optional[int]
    cells: pd.DataFrame
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def cohort_sizes(self) -> Dict[int, int]:
        """Treated units per cohort in the estimation sample."""
        return {int(k): int(v) for k, v in self.metadata.get("cohort_sizes", {}).items()}

    def summary(self) -> pd.DataFrame:
        """Posterior mean, sd and 95% interval of every coefficient."""
        return summarize_draws(self.draws)


def event_column(event_time: int) -> str:
    return f"event_{event_time}"


def interaction_column(event_time: int, cohort: int) -> str:
    return f"event_{event_time}_x_g{cohort}"


def summarize_draws(draws: pd.DataFrame) -> pd.DataFrame:
    """Posterior mean, sd and 95% interval per coefficient."""
    if draws.empty:
        return pd.DataFrame(columns=["term", "mean", "sd", "ci_low", "ci_high"])
    summary = pd.DataFrame(
        {
            "term": draws.columns,
            "mean": draws.mean(axis=0).to_numpy(),
            "sd": draws.std(axis=0, ddof=1).to_numpy(),
            "ci_low": draws.quantile(0.025, axis=0).to_numpy(),
            "ci_high": draws.quantile(0.975, axis=0).to_numpy(),
        }
    )
    return summary.reset_index(drop=True)


def build_event_design(
    panel: pd.DataFrame,
    model: str = "interaction",
    window: Optional[Dict[str, int]] = None,
    reference_cohort: Optional[int] = None,
    weight_col: str = "ipw_weight_trimmed",
) -> Tuple[pd.DataFrame, List[str], pd.DataFrame, Optional[int]]:
    """Build event-time (and cohort x event-time) dummies.

    Event time ``-1`` is the omitted reference. In the ``interaction`` model
    every non-reference cohort gets ``event_{t}_x_g{g}`` dummies; for event
    times the reference cohort never reaches there is no ``event_{t}`` main
    effect and the cohort dummy carries the whole effect.

    Args:
        panel: Weighted panel with ``id``, ``period``, ``Y``, ``G``, ``event_time``.
        model: ``pooled`` or ``interaction``.
        window: Optional ``{"pre": k, "post": m}``; treated rows outside are dropped.
        reference_cohort: Reference cohort for interactions; defaults to the earliest.
        weight_col: Weight column; unit weights when absent.

    Returns:
        Tuple of (design dataframe, dummy columns, treated cells, reference cohort).
    """
    if model not in MODELS:
        raise ValueError(f"Unknown event-study model {model!r}; expected one of {MODELS}")
    required = ["id", "period", "Y", "G", "event_time"]
    missing = [col for col in required if col not in panel.columns]
    if missing:
        raise KeyError(f"Panel missing columns: {missing}")

    df = panel.copy()
    df["event_time_f"] = df["event_time"].astype(float)
    treated = df["event_time_f"].notna()
    if window:
        pre = int(window.get("pre", 0))
        post = int(window.get("post", 0))
        if pre < 1:
            raise ValueError("Event window must include the reference period (pre >= 1)")
        in_window = df["event_time_f"].between(-pre, post)
        df = df[~treated | in_window].copy()
    df = df.dropna(subset=["Y"]).reset_index(drop=True)
    treated = df["event_time_f"].notna().to_numpy()

    weights = (
        pd.to_numeric(df[weight_col], errors="coerce").to_numpy(dtype=float)
        if weight_col in df.columns
        else np.ones(len(df))
    )
    if np.isnan(weights).any() or (weights <= 0).any():
        raise ValueError(f"{weight_col} must be positive for every observation")
    df["weight"] = weights / weights.mean()

    event_time = np.where(treated, df["event_time_f"].fillna(0), 0).astype(int)
    cohort = df["G"].to_numpy(dtype=int)
    cells = (
        pd.DataFrame({"cohort": cohort[treated], "event_time": event_time[treated]})
        .value_counts()
        .rename("n_obs")
        .reset_index()
        .sort_values(["cohort", "event_time"])
        .reset_index(drop=True)
    )
    cohorts = sorted(cells["cohort"].unique().tolist())
    if not cohorts:
        return df, [], cells, None

    dummies: Dict[str, np.ndarray] = {}
    if model == "pooled":
        reference_cohort = None
        for t in sorted(cells["event_time"].unique()):
            if t == REFERENCE_EVENT_TIME:
                continue
            dummies[event_column(t)] = (treated & (event_time == t)).astype(float)
    else:
        if reference_cohort is None:
            reference_cohort = cohorts[0]
        if reference_cohort not in cohorts:
            raise ValueError(f"Reference cohort {reference_cohort} not in cohorts {cohorts}")
        ref_times = set(cells.loc[cells["cohort"] == reference_cohort, "event_time"])
        for t in sorted(ref_times):
            if t == REFERENCE_EVENT_TIME:
                continue
            dummies[event_column(t)] = (treated & (event_time == t)).astype(float)
        for g, t in cells[["cohort", "event_time"]].itertuples(index=False):
            if g == reference_cohort or t == REFERENCE_EVENT_TIME:
                continue
            dummies[interaction_column(t, g)] = (
                treated & (cohort == g) & (event_time == t)
            ).astype(float)

    dummy_frame = pd.DataFrame(dummies, index=df.index)
    df = pd.concat([df, dummy_frame], axis=1)
    return df, list(dummy_frame.columns), cells, reference_cohort


def _fit_laplace(
    design: pd.DataFrame,
    dummy_cols: List[str],
    n_draws: int,
    seed: Optional[int],
) -> pd.DataFrame:
    logger = get_logger()
    unit_fe = pd.get_dummies(design["id"], prefix="unit", drop_first=True)
    time_fe = pd.get_dummies(design["period"], prefix="time", drop_first=True)
    X = pd.concat([design[dummy_cols], unit_fe, time_fe], axis=1)
    X = sm.add_constant(X, has_constant="add").astype(float)

    variance = X.var(axis=0)
    zero_cols = [col for col in variance[variance == 0].index.tolist() if col != "const"]
    if zero_cols:
        logger.warning("Dropping constant design columns: %s", zero_cols)
        X = X.drop(columns=zero_cols)

    model = sm.WLS(design["Y"], X, weights=design["weight"])
    results = model.fit(cov_type="cluster", cov_kwds={"groups": design["id"]})
    kept = [col for col in dummy_cols if col in results.params.index]
    logger.info(
        "WLS event study: %d obs, %d event terms, R^2 %.3f",
        int(results.nobs),
        len(kept),
        results.rsquared,
    )
    cov = results.cov_params().loc[kept, kept]
    return normal_approximation_draws(results.params[kept], cov, n_draws, seed)


def _fit_pymc(
    design: pd.DataFrame,
    dummy_cols: List[str],
    options: Dict[str, Any],
    prior_sd: float,
) -> pd.DataFrame:
    import pymc as pm
    import pytensor.tensor as pt

    unit_idx, unit_labels = pd.factorize(design["id"], sort=True)
    time_idx, time_labels = pd.factorize(design["period"], sort=True)
    y = design["Y"].to_numpy(dtype=float)
    w = design["weight"].to_numpy(dtype=float)
    x = design[dummy_cols].to_numpy(dtype=float)
    y_sd = float(np.std(y)) or 1.0

    coords = {"unit": list(unit_labels), "period": list(time_labels), "coef": dummy_cols}
    with pm.Model(coords=coords):
        intercept = pm.Normal("intercept", mu=float(np.mean(y)), sigma=5 * y_sd)
        sigma_unit = pm.HalfNormal("sigma_unit", sigma=2 * y_sd)
        unit_z = pm.Normal("unit_z", mu=0.0, sigma=1.0, dims="unit")
        sigma_time = pm.HalfNormal("sigma_time", sigma=2 * y_sd)
        time_z = pm.Normal("time_z", mu=0.0, sigma=1.0, dims="period")
        beta = pm.Normal("beta", mu=0.0, sigma=prior_sd, dims="coef")
        sigma = pm.HalfNormal("sigma", sigma=2 * y_sd)
        mu = (
            intercept
            + sigma_unit * unit_z[unit_idx]
            + sigma_time * time_z[time_idx]
            + pt.dot(x, beta)
        )
        pm.Potential(
            "weighted_loglik",
            pt.sum(w * pm.logp(pm.Normal.dist(mu=mu, sigma=sigma), y)),
        )
        idata = pm.sample(progressbar=False, **options)
    log_posterior_summary(idata, ["beta", "sigma_unit", "sigma_time", "sigma"], "event study")
    return flatten_posterior(idata, "beta", dummy_cols)


def fit_event_study(
    panel: pd.DataFrame,
    config: Dict[str, Any],
    model: Optional[str] = None,
    seed: Optional[int] = None,
    cache_dir: Optional[str] = None,
    cache_key: Optional[str] = None,
    force: bool = False,
) -> EventStudyFit:
    """Fit the IPW-weighted event-study regression.

    The ``pymc`` backend uses unit and period random effects with a weighted
    likelihood; the ``laplace`` backend uses WLS with unit and period fixed
    effects and unit-clustered standard errors.

    Args:
        panel: Panel with weights attached.
        config: Loaded configuration.
        model: ``pooled`` or ``interaction``; defaults to ``event_study.model``.
        seed: Sampler seed.
        cache_dir: Directory for cached draws.
        cache_key: Cache filename stem.
        force: Refit even if cached draws exist.

    Returns:
        Fitted event study.
    """
    logger = get_logger()
    es_cfg = config.get("event_study", {})
    model = model or es_cfg.get("model", "interaction")
    if seed is None:
        seed = config.get("simulation", {}).get("seed")
    backend = resolve_backend(es_cfg)
    design, dummy_cols, cells, reference_cohort = build_event_design(
        panel,
        model=model,
        window=es_cfg.get("window"),
        reference_cohort=es_cfg.get("reference_cohort"),
    )
    cohorts = sorted(cells["cohort"].unique().tolist())
    cohort_sizes = (
        design.loc[design["G"].isin(cohorts)].groupby("G")["id"].nunique().to_dict()
    )
    metadata: Dict[str, Any] = {
        "backend": backend,
        "n_obs": int(len(design)),
        "n_units": int(design["id"].nunique()),
        "cohort_sizes": {int(k): int(v) for k, v in cohort_sizes.items()},
    }
    if not dummy_cols:
        logger.warning("No treated observations in event-study sample")
        return EventStudyFit(pd.DataFrame(), model, cohorts, reference_cohort, cells, metadata)

    options = sampling_options(es_cfg, seed)

    def _fit() -> pd.DataFrame:
        if backend == "pymc":
            return _fit_pymc(design, dummy_cols, options, float(es_cfg.get("prior_sd", 5.0)))
        return _fit_laplace(
            design, dummy_cols, options["draws"] * options["chains"], options["random_seed"]
        )

    draws = cached_draws(cache_dir, cache_key, _fit, force=force)
    metadata["n_draws"] = int(len(draws))
    return EventStudyFit(draws, model, cohorts, reference_cohort, cells, metadata)


def _fit_single_cohort(
    panel: pd.DataFrame,
    config: Dict[str, Any],
    cohort: int,
    seed: Optional[int],
    cache_dir: Optional[str],
    cache_key: Optional[str],
    force: bool,
) -> EventStudyFit:
    subset = panel[panel["G"].isin([cohort, 0])]
    key = f"{cache_key}_g{cohort}" if cache_key else None
    return fit_event_study(
        subset,
        config,
        model="pooled",
        seed=seed,
        cache_dir=cache_dir,
        cache_key=key,
        force=force,
    )


def fit_cohort_event_studies(
    panel: pd.DataFrame,
    config: Dict[str, Any],
    n_jobs: Optional[int] = None,
    cache_dir: Optional[str] = None,
    cache_key: Optional[str] = None,
    force: bool = False,
) -> Dict[int, EventStudyFit]:
    """Fit one event study per cohort against the never-treated units.

    Fits are independent and run in a joblib worker pool; the call returns
    only after every cohort has finished.

    Args:
        panel: Weighted panel.
        config: Loaded configuration.
        n_jobs: Worker count; defaults to ``event_study.n_jobs``.
        cache_dir: Directory for cached draws.
        cache_key: Cache filename stem; the cohort is appended.
        force: Refit even if cached draws exist.

    Returns:
        Mapping cohort -> fit.
    """
    logger = get_logger()
    es_cfg = config.get("event_study", {})
    if n_jobs is None:
        n_jobs = int(es_cfg.get("n_jobs", 1))
    cohorts = sorted(int(g) for g in panel["G"].unique() if g != 0)
    if not (panel["G"] == 0).any():
        raise ValueError("Per-cohort event studies need never-treated units")
    if not cohorts:
        raise ValueError("No treated cohorts in panel")

    base_seed = config.get("simulation", {}).get("seed")
    seeds = [None if base_seed is None else int(base_seed) + g for g in cohorts]
    logger.info("Fitting %d cohort event studies with n_jobs=%s", len(cohorts), n_jobs)
    fits = Parallel(n_jobs=n_jobs)(
        delayed(_fit_single_cohort)(panel, config, g, s, cache_dir, cache_key, force)
        for g, s in zip(cohorts, seeds)
    )
    return dict(zip(cohorts, fits))
