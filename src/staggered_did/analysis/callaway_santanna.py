"""Callaway & Sant'Anna (2021) group-time ATT estimator.

ATT(g, t) compares the outcome change of cohort ``g`` between a base period
and ``t`` with the change of a control group (never-treated units, or units
not yet treated by ``max(t, base)``). Inference uses influence functions, so
group-time estimates can be aggregated to event-time effects with standard
errors that account for the estimated cohort shares.

References
----------
Callaway, B., & Sant'Anna, P. H. (2021). Difference-in-differences with
multiple time periods. Journal of Econometrics, 225(2), 200-230.
Sant'Anna, P. H., & Zhao, J. (2020). Doubly robust difference-in-differences
estimators. Journal of Econometrics, 219(1), 101-122.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm
from sklearn.linear_model import LogisticRegression

from staggered_did.log import get_logger

CONTROL_GROUPS = ("never", "notyet")
BASE_PERIODS = ("universal", "varying")
EST_METHODS = ("reg", "ipw")
PS_CLIP = 1e-6


@dataclass
class AttGtResult:
    """Group-time ATTs and their unit-level influence functions."""

    att_gt: pd.DataFrame
    influence: np.ndarray
    unit_ids: np.ndarray
    unit_cohorts: np.ndarray
    n_skipped: int = 0


def _unit_frames(
    panel: pd.DataFrame, covariates: Sequence[str]
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    required = ["id", "period", "Y", "G", *covariates]
    missing = [col for col in required if col not in panel.columns]
    if missing:
        raise KeyError(f"Panel missing columns: {missing}")
    wide = panel.pivot(index="id", columns="period", values="Y").sort_index()
    if wide.isna().any().any():
        raise ValueError("Callaway-Sant'Anna estimation requires a balanced panel")
    first = panel.sort_values("period").groupby("id").first().sort_index()
    units = first[["G", *covariates]].copy()
    return wide, units


def _reg_did(delta_y: np.ndarray, treat: np.ndarray) -> Tuple[float, np.ndarray]:
    control = ~treat
    p_treat = treat.mean()
    p_control = control.mean()
    mu_treat = delta_y[treat].mean()
    mu_control = delta_y[control].mean()
    att = mu_treat - mu_control
    inf = (
        treat * (delta_y - mu_treat) / p_treat
        - control * (delta_y - mu_control) / p_control
    )
    return float(att), inf


def _ipw_did(
    delta_y: np.ndarray, treat: np.ndarray, covariates: np.ndarray
) -> Tuple[float, np.ndarray]:
    n = len(delta_y)
    design = np.column_stack([np.ones(n), covariates])
    d = treat.astype(float)
    model = LogisticRegression(penalty=None, fit_intercept=False, max_iter=1000)
    model.fit(design, d)
    ps = np.clip(model.predict_proba(design)[:, 1], PS_CLIP, 1 - PS_CLIP)

    w_treat = d
    w_control = ps * (1 - d) / (1 - ps)
    att_treat = w_treat * delta_y
    att_control = w_control * delta_y
    eta_treat = att_treat.mean() / w_treat.mean()
    eta_control = att_control.mean() / w_control.mean()
    att = eta_treat - eta_control

    # Logit score and inverse Hessian for the propensity estimation effect.
    score_ps = (d - ps)[:, None] * design
    hessian = (design * (ps * (1 - ps))[:, None]).T @ design / n
    asy_lin_rep_ps = score_ps @ np.linalg.inv(hessian)

    inf_treat = (att_treat - w_treat * eta_treat) / w_treat.mean()
    inf_control_1 = att_control - w_control * eta_control
    m2 = (w_control * (delta_y - eta_control))[:, None] * design
    inf_control_2 = asy_lin_rep_ps @ m2.mean(axis=0)
    inf_control = (inf_control_1 + inf_control_2) / w_control.mean()
    return float(att), inf_treat - inf_control


def estimate_att_gt(
    panel: pd.DataFrame,
    control_group: str = "notyet",
    base_period: str = "universal",
    est_method: str = "reg",
    covariates: Sequence[str] = (),
) -> AttGtResult:
    """Estimate ATT(g, t) for every cohort and period.

    Args:
        panel: Balanced panel with ``id``, ``period``, ``Y``, ``G`` (0 = never treated).
        control_group: ``never`` or ``notyet``.
        base_period: ``universal`` (always ``g - 1``) or ``varying``
            (``t - 1`` before adoption).
        est_method: ``reg`` (unconditional) or ``ipw`` (covariate propensity).
        covariates: Time-invariant covariates for ``ipw``.

    Returns:
        Group-time estimates with influence functions.
    """
    logger = get_logger()
    if control_group not in CONTROL_GROUPS:
        raise ValueError(f"control_group must be one of {CONTROL_GROUPS}")
    if base_period not in BASE_PERIODS:
        raise ValueError(f"base_period must be one of {BASE_PERIODS}")
    if est_method not in EST_METHODS:
        raise ValueError(f"est_method must be one of {EST_METHODS}")
    if est_method == "ipw" and not covariates:
        raise ValueError("est_method='ipw' needs at least one covariate")

    covariates = list(covariates) if est_method == "ipw" else []
    wide, units = _unit_frames(panel, covariates)
    periods: List[int] = [int(p) for p in wide.columns]
    y = wide.to_numpy(dtype=float)
    cohort = units["G"].to_numpy(dtype=int)
    x = units[covariates].to_numpy(dtype=float) if covariates else None
    n_units = len(units)
    col = {p: idx for idx, p in enumerate(periods)}

    rows: List[Dict[str, float]] = []
    influences: List[np.ndarray] = []
    n_skipped = 0
    for g in sorted(int(v) for v in np.unique(cohort) if v > 0):
        if g - 1 not in col:
            logger.warning("Cohort %d has no pre-period in the panel; skipping", g)
            continue
        for t in periods:
            if base_period == "universal" or t >= g:
                base = g - 1
            else:
                base = t - 1
                if base not in col:
                    continue
            treat_mask = cohort == g
            if control_group == "never":
                control_mask = cohort == 0
            else:
                control_mask = (cohort == 0) | ((cohort > max(t, base)) & (cohort != g))
            n_treat, n_control = int(treat_mask.sum()), int(control_mask.sum())
            if n_treat == 0 or n_control == 0:
                n_skipped += 1
                continue

            inf_full = np.zeros(n_units)
            if t == base:
                att = 0.0
            else:
                subset = treat_mask | control_mask
                delta_y = y[subset, col[t]] - y[subset, col[base]]
                treat_sub = treat_mask[subset]
                if est_method == "ipw":
                    att, inf = _ipw_did(delta_y, treat_sub, x[subset])
                else:
                    att, inf = _reg_did(delta_y, treat_sub)
                inf_full[subset] = inf * n_units / subset.sum()
            se = float(np.sqrt(np.sum(inf_full**2)) / n_units)
            rows.append(
                {
                    "cohort": g,
                    "period": t,
                    "event_time": t - g,
                    "att": att,
                    "se": se,
                    "n_treated": n_treat,
                    "n_control": n_control,
                }
            )
            influences.append(inf_full)

    att_gt = pd.DataFrame(rows)
    if not att_gt.empty:
        att_gt["ci_low"] = att_gt["att"] - norm.ppf(0.975) * att_gt["se"]
        att_gt["ci_high"] = att_gt["att"] + norm.ppf(0.975) * att_gt["se"]
    influence = np.column_stack(influences) if influences else np.zeros((n_units, 0))
    if n_skipped:
        logger.info("Skipped %d (g, t) cells without treated or control units", n_skipped)
    return AttGtResult(att_gt, influence, units.index.to_numpy(), cohort, n_skipped)


def _test_stats(estimate: float, se: float, alpha: float = 0.05) -> Dict[str, float]:
    if not np.isfinite(se) or se <= 0:
        z = pvalue = float("nan")
    else:
        z = estimate / se
        pvalue = float(2 * norm.sf(abs(z)))
    crit = norm.ppf(1 - alpha / 2)
    return {
        "z": z,
        "pvalue": pvalue,
        "ci_low": estimate - crit * se,
        "ci_high": estimate + crit * se,
    }


@dataclass
class DynamicResult:
    """Event-time aggregation of group-time ATTs."""

    table: pd.DataFrame
    influence: np.ndarray
    n_units: int


def aggregate_dynamic(
    result: AttGtResult,
    min_event_time: Optional[int] = None,
    max_event_time: Optional[int] = None,
    alpha: float = 0.05,
) -> DynamicResult:
    """Aggregate ATT(g, t) into ATT(e) with cohort-share weights.

    The influence function of each ATT(e) includes the estimation effect of
    the cohort shares.

    Args:
        result: Output of :func:`estimate_att_gt`.
        min_event_time: Lowest event time kept.
        max_event_time: Highest event time kept.
        alpha: Significance level for intervals.

    Returns:
        Event-time table and influence matrix (units x event times).
    """
    att_gt = result.att_gt
    n_units = len(result.unit_cohorts)
    if att_gt.empty:
        raise ValueError("No group-time effects to aggregate")

    cohort_share = {
        int(g): float(np.mean(result.unit_cohorts == g)) for g in att_gt["cohort"].unique()
    }
    event_times = sorted(int(e) for e in att_gt["event_time"].unique())
    if min_event_time is not None:
        event_times = [e for e in event_times if e >= min_event_time]
    if max_event_time is not None:
        event_times = [e for e in event_times if e <= max_event_time]

    rows = []
    influences = []
    for e in event_times:
        keepers = np.flatnonzero(att_gt["event_time"].to_numpy() == e)
        cohorts = att_gt["cohort"].to_numpy()[keepers]
        pg = np.array([cohort_share[int(g)] for g in cohorts])
        weights = pg / pg.sum()
        att_k = att_gt["att"].to_numpy()[keepers]
        estimate = float(weights @ att_k)

        membership = np.column_stack([(result.unit_cohorts == g).astype(float) for g in cohorts])
        if1 = (membership - pg) / pg.sum()
        if2 = np.outer((membership - pg).sum(axis=1), pg / pg.sum() ** 2)
        wif = if1 - if2
        inf_e = result.influence[:, keepers] @ weights + wif @ att_k
        se = float(np.sqrt(np.sum(inf_e**2)) / n_units)

        rows.append(
            {
                "event_time": e,
                "att": estimate,
                "se": se,
                "n_cohorts": len(keepers),
                **_test_stats(estimate, se, alpha),
            }
        )
        influences.append(inf_e)

    table = pd.DataFrame(rows)
    influence = np.column_stack(influences) if influences else np.zeros((n_units, 0))
    return DynamicResult(table, influence, n_units)


def overall_post_effect(dynamic: DynamicResult, alpha: float = 0.05) -> Dict[str, float]:
    """Average of post-treatment ATT(e) (e >= 0) with z-test against zero."""
    table = dynamic.table
    post = np.flatnonzero(table["event_time"].to_numpy() >= 0)
    if post.size == 0:
        raise ValueError("No post-treatment event times to average")
    estimate = float(table["att"].to_numpy()[post].mean())
    inf = dynamic.influence[:, post].mean(axis=1)
    se = float(np.sqrt(np.sum(inf**2)) / dynamic.n_units)
    return {"estimate": estimate, "se": se, **_test_stats(estimate, se, alpha)}


def run_callaway_santanna(panel: pd.DataFrame, comp_cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Group-time, dynamic and overall estimates with config-driven options."""
    logger = get_logger()
    result = estimate_att_gt(
        panel,
        control_group=str(comp_cfg.get("control_group", "notyet")),
        base_period=str(comp_cfg.get("base_period", "universal")),
        est_method=str(comp_cfg.get("est_method", "ipw")),
        covariates=list(comp_cfg.get("covariates", ["X"])),
    )
    alpha = float(comp_cfg.get("alpha", 0.05))
    dynamic = aggregate_dynamic(result, alpha=alpha)
    overall = overall_post_effect(dynamic, alpha=alpha)
    logger.info(
        "Callaway-Sant'Anna overall post effect %.4f (se %.4f, p %.4g)",
        overall["estimate"],
        overall["se"],
        overall["pvalue"],
    )
    return {"att_gt": result.att_gt, "dynamic": dynamic.table, "overall": overall}
