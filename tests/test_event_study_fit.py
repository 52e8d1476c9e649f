import pytest

from staggered_did.analysis.aggregate import (
    aggregate_event_effects,
    combine_cohort_fits,
    reconstruct_total_effects,
)
from staggered_did.analysis.event_study import fit_cohort_event_studies, fit_event_study
from staggered_did.simulate.panel import simulate_panel

SIM_CFG = {
    "n_units": 400,
    "n_periods": 8,
    "cohort_periods": [3, 5],
    "cohort_probabilities": [0.4, 0.3, 0.3],
    "confounding": [0.0, 0.5, -0.5],
    "sigma_noise": 0.5,
    "effect": {"kind": "constant", "magnitude": 1.0},
    "seed": 8,
}
CONFIG = {
    "simulation": SIM_CFG,
    "event_study": {"backend": "laplace", "draws": 300, "chains": 1},
}


def _post_mean(summary) -> float:
    return float(summary.loc[summary["event_time"] >= 0, "mean"].mean())


def test_interaction_fit_recovers_effect(tmp_path) -> None:
    panel, _ = simulate_panel(SIM_CFG)

    fit = fit_event_study(panel, CONFIG, model="interaction", cache_dir=tmp_path, cache_key="es")
    _, summary = aggregate_event_effects(reconstruct_total_effects(fit))

    assert fit.reference_cohort == 3
    assert len(fit.draws) == 300
    assert _post_mean(summary) == pytest.approx(1.0, abs=0.25)
    assert (tmp_path / "es.parquet").exists()

    cached = fit_event_study(panel, CONFIG, model="interaction", cache_dir=tmp_path, cache_key="es")
    assert cached.draws.equals(fit.draws)


def test_cohort_fits_one_per_cohort() -> None:
    panel, _ = simulate_panel(SIM_CFG)

    fits = fit_cohort_event_studies(panel, CONFIG, n_jobs=1)

    assert sorted(fits) == [3, 5]
    for cohort, fit in fits.items():
        assert fit.model == "pooled"
        assert fit.cohorts == [cohort]
    _, summary = aggregate_event_effects(combine_cohort_fits(fits))
    assert _post_mean(summary) == pytest.approx(1.0, abs=0.25)
    assert summary.set_index("event_time").loc[-1, "mean"] == 0.0


def test_cohort_fits_need_never_treated() -> None:
    panel, _ = simulate_panel(SIM_CFG)
    with pytest.raises(ValueError):
        fit_cohort_event_studies(panel[panel["G"] > 0], CONFIG, n_jobs=1)
