import numpy as np
import pytest

from staggered_did.simulate.effects import make_effect_function
from staggered_did.simulate.panel import simulate_panel, true_event_effects

SIM_CFG = {
    "n_units": 300,
    "n_periods": 8,
    "cohort_periods": [3, 5],
    "cohort_probabilities": [0.4, 0.3, 0.3],
    "confounding": [0.0, 1.0, -1.0],
    "effect": {"kind": "constant", "magnitude": 2.0},
    "seed": 11,
}


def test_panel_shape_and_event_time() -> None:
    panel, units = simulate_panel(SIM_CFG)

    assert len(units) == 300
    assert len(panel) == 300 * 8
    assert set(units["G"]) <= {0, 3, 5}

    never = panel[panel["G"] == 0]
    assert never["event_time"].isna().all()
    assert (never["ever_treated"] == 0).all()

    treated = panel[panel["G"] > 0]
    assert treated["event_time"].notna().all()
    expected = treated["period"] - treated["G"]
    assert (treated["event_time"].astype(int) == expected).all()
    assert (treated["treated_yet"] == (treated["event_time"] >= 0).astype(int)).all()


def test_effect_only_after_adoption() -> None:
    panel, _ = simulate_panel(SIM_CFG)

    pre = panel[(panel["G"] == 0) | (panel["treated_yet"] == 0)]
    post = panel[panel["treated_yet"] == 1]
    assert (pre["tau"] == 0).all()
    assert np.allclose(post["tau"], 2.0)


def test_same_seed_same_panel() -> None:
    first, _ = simulate_panel(SIM_CFG)
    second, _ = simulate_panel(SIM_CFG)
    third, _ = simulate_panel(SIM_CFG, seed=12)

    assert first["Y"].equals(second["Y"])
    assert not first["Y"].equals(third["Y"])


def test_effect_scale_zero_gives_null() -> None:
    panel, _ = simulate_panel(SIM_CFG, effect_scale=0.0)
    assert (panel["tau"] == 0).all()


def test_true_event_effects_linear() -> None:
    cfg = {**SIM_CFG, "effect": {"kind": "linear", "magnitude": 1.0, "growth": 0.5}}
    panel, _ = simulate_panel(cfg)
    truth = true_event_effects(panel).set_index("event_time")["true_effect"]

    assert truth.loc[-1] == 0.0
    assert truth.loc[0] == pytest.approx(1.0)
    assert truth.loc[2] == pytest.approx(2.0)


def test_effect_function_kinds() -> None:
    event_time = np.array([-2.0, 0.0, 1.0, 3.0, np.nan])
    cohort = np.array([4, 4, 6, 6, 0])

    path = make_effect_function({"kind": "path", "path": {0: 1.5, 1: 2.5}})
    assert path(event_time, cohort).tolist() == [0.0, 1.5, 2.5, 0.0, 0.0]

    scaled = make_effect_function(
        {"kind": "constant", "magnitude": 1.0, "cohort_multipliers": {6: 2.0}}
    )
    assert scaled(event_time, cohort).tolist() == [0.0, 1.0, 2.0, 2.0, 0.0]

    with pytest.raises(ValueError):
        make_effect_function({"kind": "quadratic"})


def test_invalid_design_rejected() -> None:
    with pytest.raises(ValueError):
        simulate_panel({**SIM_CFG, "cohort_probabilities": [0.5, 0.5]})
    with pytest.raises(ValueError):
        simulate_panel({**SIM_CFG, "cohort_periods": [1, 5]})


def test_true_event_effects_follow_cohort_weighting() -> None:
    cfg = {
        **SIM_CFG,
        "cohort_probabilities": [0.2, 0.6, 0.2],
        "confounding": [0.0, 0.0, 0.0],
        "effect": {"kind": "constant", "magnitude": 1.0, "cohort_multipliers": {5: 3.0}},
    }
    panel, units = simulate_panel(cfg)
    sizes = units[units["G"] > 0].groupby("G")["id"].nunique().to_dict()

    equal = true_event_effects(panel, "equal").set_index("event_time")["true_effect"]
    share = true_event_effects(panel).set_index("event_time")["true_effect"]
    by_size = true_event_effects(panel, "cohort_size", sizes).set_index("event_time")[
        "true_effect"
    ]

    assert equal.loc[0] == pytest.approx(2.0)
    assert by_size.loc[0] == pytest.approx((sizes[3] * 1.0 + sizes[5] * 3.0) / (sizes[3] + sizes[5]))
    assert share.loc[0] == pytest.approx(by_size.loc[0])
    # Only cohort 3 reaches event time 3.
    assert equal.loc[3] == pytest.approx(1.0)

    with pytest.raises(ValueError):
        true_event_effects(panel, "median")
