from staggered_did.simulate.panel import simulate_panel
from staggered_did.weighting.diagnostics import balance_table, write_balance_diagnostics
from staggered_did.weighting.propensity import build_propensity_scores
from staggered_did.weighting.weights import construct_ipw_weights

SIM_CFG = {
    "n_units": 1500,
    "n_periods": 8,
    "cohort_periods": [3, 5],
    "cohort_probabilities": [0.4, 0.3, 0.3],
    "confounding": [0.0, 1.2, -0.8],
    "seed": 21,
}
CONFIG = {
    "simulation": SIM_CFG,
    "propensity": {"backend": "laplace", "covariates": ["X"], "draws": 200, "chains": 1},
}


def _weighted_units():
    _, units = simulate_panel(SIM_CFG)
    return construct_ipw_weights(build_propensity_scores(units, CONFIG))


def test_weighting_improves_balance() -> None:
    balance = balance_table(_weighted_units(), ["X"])

    assert set(balance["cohort"]) == {0, 3, 5}
    assert balance["smd_unweighted"].abs().max() > 0.3
    assert balance["smd_weighted"].abs().mean() < balance["smd_unweighted"].abs().mean()
    assert balance["smd_weighted"].abs().max() < 0.2


def test_balance_outputs_written(tmp_path) -> None:
    balance = write_balance_diagnostics(_weighted_units(), CONFIG, tmp_path)

    assert not balance.empty
    assert (tmp_path / "tables" / "balance.csv").exists()
    assert (tmp_path / "figures" / "love_plot.png").exists()
    assert (tmp_path / "figures" / "density_X.png").exists()
