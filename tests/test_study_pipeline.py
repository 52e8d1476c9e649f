import textwrap

import pytest
from typer.testing import CliRunner

from staggered_did.analysis.study import run_study
from staggered_did.cli import app
from staggered_did.config import load_config

CONFIG_TEMPLATE = """
project:
  data_dir: "{data_dir}"
  outputs_dir: "{outputs_dir}"
simulation:
  seed: 4
  n_units: 240
  n_periods: 7
  cohort_periods: [3, 5]
  cohort_probabilities: [0.4, 0.3, 0.3]
  confounding: [0.0, 0.8, -0.8]
  trend_confounding: 0.3
  effect:
    kind: "linear"
    magnitude: 1.0
    growth: 0.2
propensity:
  backend: "laplace"
  covariates: ["X"]
  draws: 100
  chains: 1
event_study:
  backend: "laplace"
  model: "{model}"
  draws: 100
  chains: 1
  n_jobs: 1
comparison:
  est_method: "ipw"
  covariates: ["X"]
power:
  n_trials: 3
  n_jobs: 1
  estimator:
    est_method: "reg"
"""


def _write_config(tmp_path, model: str = "interaction"):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        textwrap.dedent(CONFIG_TEMPLATE).format(
            data_dir=(tmp_path / "data").as_posix(),
            outputs_dir=(tmp_path / "outputs").as_posix(),
            model=model,
        ),
        encoding="utf-8",
    )
    return config_path


def test_run_study_per_cohort_model(tmp_path) -> None:
    config = load_config(_write_config(tmp_path, model="cohort"))

    results = run_study(config)

    profile = results["estimation"]["profile"]
    assert results["estimation"]["metadata"]["model"] == "cohort"
    assert profile.set_index("event_time").loc[-1, "mean"] == 0.0
    assert {"true_effect", "bias", "covered"} <= set(profile.columns)
    assert "true_effect" in results["comparison"]["dynamic"].columns
    assert (tmp_path / "data" / "derived" / "unit_weights.parquet").exists()


def test_cli_all_power_and_doctor(tmp_path) -> None:
    config_path = str(_write_config(tmp_path))
    runner = CliRunner()

    result = runner.invoke(app, ["all", "--config-path", config_path])
    assert result.exit_code == 0, result.output

    tables = tmp_path / "outputs" / "tables"
    figures = tmp_path / "outputs" / "figures"
    assert (tables / "event_study_interaction_profile.csv").exists()
    assert (tables / "cs_dynamic.csv").exists()
    assert (tables / "horizon_summary.csv").exists()
    assert (figures / "event_study_interaction.png").exists()
    assert (figures / "love_plot.png").exists()

    result = runner.invoke(
        app, ["power", "--config-path", config_path, "--scale", "0", "--scale", "1"]
    )
    assert result.exit_code == 0, result.output
    assert (tables / "power_summary.csv").exists()
    assert (figures / "power_curve.png").exists()

    result = runner.invoke(app, ["doctor", "--config-path", config_path])
    assert result.exit_code == 0, result.output
    assert "MISSING" not in result.output


def test_cli_estimate_requires_weights(tmp_path) -> None:
    config_path = str(_write_config(tmp_path))
    runner = CliRunner()

    runner.invoke(app, ["simulate", "--config-path", config_path])
    result = runner.invoke(app, ["estimate", "--config-path", config_path])

    assert result.exit_code != 0


def _study_config(tmp_path, **simulation) -> dict:
    config = {
        "project": {
            "data_dir": (tmp_path / "data").as_posix(),
            "outputs_dir": (tmp_path / "outputs").as_posix(),
        },
        "simulation": {
            "seed": 4,
            "n_units": 600,
            "n_periods": 7,
            "cohort_periods": [3, 5],
            "cohort_probabilities": [0.4, 0.3, 0.3],
            "confounding": [0.0, 0.0, 0.0],
            "sigma_noise": 0.3,
            "effect": {"kind": "constant", "magnitude": 1.0},
        },
        "propensity": {"backend": "laplace", "covariates": ["X"], "draws": 100, "chains": 1},
        "event_study": {"backend": "laplace", "model": "interaction", "draws": 200, "chains": 1},
        "comparison": {"est_method": "reg"},
    }
    config["simulation"].update(simulation)
    return config


def _effect_at(profile, event_time: int, column: str) -> float:
    return float(profile.set_index("event_time").loc[event_time, column])


def test_cached_draws_follow_simulation_settings(tmp_path) -> None:
    first = run_study(_study_config(tmp_path))["estimation"]["profile"]
    second = run_study(
        _study_config(tmp_path, effect={"kind": "constant", "magnitude": 5.0})
    )["estimation"]["profile"]

    assert _effect_at(first, 0, "mean") == pytest.approx(1.0, abs=0.3)
    assert _effect_at(second, 0, "mean") == pytest.approx(5.0, abs=0.3)
    assert _effect_at(second, 0, "true_effect") == 5.0
    assert len(list((tmp_path / "data" / "cache").glob("event_study_*.parquet"))) == 2


def test_profile_truth_uses_equal_cohort_weights(tmp_path) -> None:
    config = _study_config(
        tmp_path,
        n_units=800,
        cohort_probabilities=[0.2, 0.6, 0.2],
        sigma_noise=0.1,
        effect={"kind": "constant", "magnitude": 1.0, "cohort_multipliers": {5: 3.0}},
    )

    profile = run_study(config)["estimation"]["profile"]

    assert _effect_at(profile, 0, "true_effect") == pytest.approx(2.0)
    assert _effect_at(profile, 0, "mean") == pytest.approx(2.0, abs=0.15)
    assert bool(_effect_at(profile, 0, "covered"))
    post = profile[profile["event_time"] >= 0]
    assert post["bias"].abs().max() < 0.15
