import numpy as np
import pytest

from staggered_did.analysis.callaway_santanna import (
    aggregate_dynamic,
    estimate_att_gt,
    overall_post_effect,
    run_callaway_santanna,
)
from staggered_did.simulate.panel import simulate_panel

SIM_CFG = {
    "n_units": 600,
    "n_periods": 8,
    "cohort_periods": [3, 5],
    "cohort_probabilities": [0.4, 0.3, 0.3],
    "confounding": [0.0, 0.8, -0.8],
    "effect": {"kind": "constant", "magnitude": 1.5},
    "seed": 31,
}


def test_noiseless_constant_effect_recovered() -> None:
    cfg = {**SIM_CFG, "sigma_noise": 0.0, "trend_confounding": 0.0}
    panel, _ = simulate_panel(cfg)

    result = estimate_att_gt(panel, control_group="notyet", est_method="reg")
    att_gt = result.att_gt

    post = att_gt[att_gt["event_time"] >= 0]
    pre = att_gt[att_gt["event_time"] < 0]
    assert np.allclose(post["att"], 1.5)
    assert np.allclose(pre["att"], 0.0, atol=1e-10)


def test_universal_base_period_is_zero() -> None:
    panel, _ = simulate_panel(SIM_CFG)
    result = estimate_att_gt(panel, base_period="universal", est_method="reg")

    base = result.att_gt[result.att_gt["event_time"] == -1]
    assert len(base) == 2
    assert (base["att"] == 0).all()
    assert (base["se"] == 0).all()
    assert result.influence.shape == (600, len(result.att_gt))


def test_ipw_dynamic_and_overall() -> None:
    panel, _ = simulate_panel(SIM_CFG)
    result = estimate_att_gt(panel, est_method="ipw", covariates=["X"], base_period="varying")
    dynamic = aggregate_dynamic(result, min_event_time=-2, max_event_time=3)

    assert dynamic.table["event_time"].tolist() == [-2, -1, 0, 1, 2, 3]
    assert (dynamic.table["se"] > 0).all()
    overall = overall_post_effect(dynamic)
    assert overall["estimate"] == pytest.approx(1.5, abs=0.3)
    assert overall["pvalue"] < 0.05


def test_run_callaway_santanna_outputs() -> None:
    panel, _ = simulate_panel(SIM_CFG)
    results = run_callaway_santanna(panel, {"control_group": "never", "est_method": "reg"})

    assert set(results) == {"att_gt", "dynamic", "overall"}
    assert {"ci_low", "ci_high"} <= set(results["att_gt"].columns)
    assert {"z", "pvalue"} <= set(results["dynamic"].columns)


def test_invalid_options_rejected() -> None:
    panel, _ = simulate_panel(SIM_CFG)
    with pytest.raises(ValueError):
        estimate_att_gt(panel, control_group="everyone")
    with pytest.raises(ValueError):
        estimate_att_gt(panel, est_method="ipw", covariates=[])
