import numpy as np
import pandas as pd

from staggered_did.analysis import power
from staggered_did.analysis.power import (
    INCONCLUSIVE,
    run_power_analysis,
    run_power_trial,
    summarize_power,
)

CONFIG = {
    "simulation": {
        "n_units": 200,
        "n_periods": 6,
        "cohort_periods": [3, 4],
        "cohort_probabilities": [0.4, 0.3, 0.3],
        "confounding": [0.0, 0.0, 0.0],
        "effect": {"kind": "constant", "magnitude": 1.0},
        "seed": 3,
    },
    "comparison": {"est_method": "reg", "control_group": "never"},
    "power": {"n_trials": 40, "alpha": 0.05, "n_jobs": 1, "seed": 100},
}


def test_summary_excludes_inconclusive() -> None:
    records = pd.DataFrame(
        {
            "effect_scale": [1.0] * 5,
            "status": ["reject", "reject", "accept", INCONCLUSIVE, INCONCLUSIVE],
            "estimate": [1.0, 1.2, 0.1, np.nan, np.nan],
        }
    )
    summary = summarize_power(records).iloc[0]

    assert summary["n_trials"] == 5
    assert summary["n_valid"] == 3
    assert summary["n_inconclusive"] == 2
    assert summary["rejection_rate"] == 2 / 3


def test_failed_trial_is_inconclusive(monkeypatch) -> None:
    def _boom(*args, **kwargs):
        raise np.linalg.LinAlgError("singular matrix")

    monkeypatch.setattr(power, "estimate_att_gt", _boom)
    record = run_power_trial(CONFIG, 1.0, trial=0, seed=1, alpha=0.05)

    assert record["status"] == INCONCLUSIVE
    assert "singular" in record["error"]

    records = run_power_analysis(CONFIG, effect_scales=[1.0], n_trials=3)
    summary = summarize_power(records).iloc[0]
    assert summary["n_valid"] == 0
    assert np.isnan(summary["rejection_rate"])


def test_size_and_power() -> None:
    records = run_power_analysis(CONFIG, effect_scales=[0.0, 1.0])
    summary = summarize_power(records).set_index("effect_scale")

    assert len(records) == 80
    assert records["seed"].is_unique
    assert summary.loc[0.0, "rejection_rate"] <= 0.2
    assert summary.loc[1.0, "rejection_rate"] >= 0.9
