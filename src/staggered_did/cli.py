"""CLI entrypoints for the staggered DiD study."""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
import pandas as pd
import typer

from staggered_did.analysis.outputs import (
    save_comparison_outputs,
    save_event_study_outputs,
    save_horizon_summary,
    save_power_outputs,
)
from staggered_did.analysis.power import run_power_analysis, summarize_power
from staggered_did.analysis.study import (
    run_comparison,
    run_estimation,
    run_simulation,
    run_weighting,
)
from staggered_did.config import load_config
from staggered_did.log import setup_logging
from staggered_did.utils.paths import ensure_dirs
from staggered_did.viz.event_study_plots import plot_event_study
from staggered_did.viz.power_plots import plot_power_curve

load_dotenv()

app = typer.Typer(add_completion=False)


def _configure(config_path: Path) -> dict:
    config = load_config(config_path)
    ensure_dirs(config)
    outputs_dir = Path(config["project"]["outputs_dir"])
    setup_logging(outputs_dir / "logs")
    return config


config_option = typer.Option(
    "config/config.yaml",
    "--config-path",
    "--config",
    "-c",
    envvar="STAGGERED_DID_CONFIG",
    help="Path to config YAML",
)
force_option = typer.Option(False, "--force", help="Refit models even if cached draws exist.")


def _require_file(path: Path, command: str) -> None:
    if not path.exists():
        raise typer.BadParameter(f"Missing required file: {path}. Run: {command}")


def _derived_dir(config: dict) -> Path:
    return Path(config["project"]["data_dir"]) / "derived"


@app.command("simulate")
def simulate_cmd(config_path: Path = config_option) -> None:
    """Simulate the confounded staggered-adoption panel."""
    config = _configure(config_path)
    run_simulation(config)


@app.command("weights")
def weights_cmd(config_path: Path = config_option, force: bool = force_option) -> None:
    """Estimate cohort propensity scores, IPW weights and balance diagnostics."""
    config = _configure(config_path)
    units_path = _derived_dir(config) / "units.parquet"
    _require_file(units_path, f"staggered-did simulate --config-path {config_path}")
    run_weighting(pd.read_parquet(units_path), config, force=force)


@app.command("estimate")
def estimate_cmd(config_path: Path = config_option, force: bool = force_option) -> None:
    """Fit the weighted event study and write the aggregated profile."""
    config = _configure(config_path)
    derived = _derived_dir(config)
    panel_path = derived / "panel.parquet"
    weights_path = derived / "unit_weights.parquet"
    _require_file(panel_path, f"staggered-did simulate --config-path {config_path}")
    _require_file(weights_path, f"staggered-did weights --config-path {config_path}")
    panel = pd.read_parquet(panel_path)
    weights = pd.read_parquet(weights_path)

    estimation = run_estimation(panel, weights, config, force=force)
    outputs_dir = config["project"]["outputs_dir"]
    save_event_study_outputs(estimation, outputs_dir)

    cs_path = Path(outputs_dir) / "tables" / "cs_dynamic.csv"
    comparison = pd.read_csv(cs_path) if cs_path.exists() else None
    save_horizon_summary(estimation["profile"], outputs_dir, comparison)
    if not estimation["profile"].empty:
        plot_event_study(estimation["profile"], estimation["metadata"]["model"], outputs_dir, comparison)


@app.command("compare")
def compare_cmd(config_path: Path = config_option) -> None:
    """Estimate Callaway-Sant'Anna group-time and dynamic effects."""
    config = _configure(config_path)
    panel_path = _derived_dir(config) / "panel.parquet"
    _require_file(panel_path, f"staggered-did simulate --config-path {config_path}")
    comparison = run_comparison(pd.read_parquet(panel_path), config)
    save_comparison_outputs(comparison, config["project"]["outputs_dir"])


@app.command("power")
def power_cmd(
    config_path: Path = config_option,
    scales: Optional[List[float]] = typer.Option(None, "--scale", help="Effect scale (repeatable)."),
    trials: Optional[int] = typer.Option(None, "--trials", help="Trials per effect scale."),
    n_jobs: Optional[int] = typer.Option(None, "--jobs", help="Parallel workers."),
) -> None:
    """Run the Monte Carlo power analysis."""
    config = _configure(config_path)
    records = run_power_analysis(config, effect_scales=scales or None, n_trials=trials, n_jobs=n_jobs)
    summary = summarize_power(records)
    outputs_dir = config["project"]["outputs_dir"]
    save_power_outputs(records, summary, outputs_dir)
    alpha = float(config.get("power", {}).get("alpha", 0.05))
    if not summary.empty:
        plot_power_curve(summary, alpha, outputs_dir)
    for row in summary.itertuples(index=False):
        typer.echo(
            f"scale={row.effect_scale:g}: rejection rate {row.rejection_rate:.3f} "
            f"({row.n_reject}/{row.n_valid}, {row.n_inconclusive} inconclusive)"
        )


@app.command("all")
def run_all(config_path: Path = config_option, force: bool = force_option) -> None:
    """Run the full study pipeline."""
    simulate_cmd(config_path=config_path)
    weights_cmd(config_path=config_path, force=force)
    compare_cmd(config_path=config_path)
    estimate_cmd(config_path=config_path, force=force)


@app.command("doctor")
def doctor_cmd(config_path: Path = config_option) -> None:
    """Run configuration and data checks."""
    config = _configure(config_path)
    data_dir = Path(config["project"]["data_dir"])
    outputs_dir = Path(config["project"]["outputs_dir"])
    typer.echo(f"Config path: {Path(config_path).resolve()}")
    typer.echo(f"Data dir: {data_dir.resolve()}")
    typer.echo(f"Outputs dir: {outputs_dir.resolve()}")
    typer.echo(f"Propensity backend: {config.get('propensity', {}).get('backend', 'laplace')}")
    typer.echo(f"Event study backend: {config.get('event_study', {}).get('backend', 'laplace')}")

    def _dataset_rows(path: Path) -> int | None:
        if not path.exists():
            return None
        if path.suffix == ".parquet":
            import pyarrow.parquet as pq

            return pq.ParquetFile(path).metadata.num_rows
        if path.suffix == ".csv":
            with path.open("r", encoding="utf-8", errors="ignore") as handle:
                return max(sum(1 for _ in handle) - 1, 0)
        return None

    model = config.get("event_study", {}).get("model", "interaction")
    checks = [
        (data_dir / "derived" / "panel.parquet", f"staggered-did simulate --config-path {config_path}"),
        (data_dir / "derived" / "unit_weights.parquet", f"staggered-did weights --config-path {config_path}"),
        (outputs_dir / "tables" / "balance.csv", f"staggered-did weights --config-path {config_path}"),
        (outputs_dir / "tables" / "cs_dynamic.csv", f"staggered-did compare --config-path {config_path}"),
        (
            outputs_dir / "tables" / f"event_study_{model}_profile.csv",
            f"staggered-did estimate --config-path {config_path}",
        ),
        (outputs_dir / "tables" / "power_summary.csv", f"staggered-did power --config-path {config_path}"),
    ]
    typer.echo("\nStudy checkpoints:")
    for path, command in checks:
        if not path.exists():
            status = "MISSING"
            rows = None
        else:
            rows = _dataset_rows(path)
            status = "EMPTY" if rows == 0 else "OK"

        desc = f" ({rows} rows)" if rows is not None else ""
        typer.echo(f"- {status}: {path}{desc}")
        if not path.exists():
            typer.echo(f"  -> Run: {command}")
        elif status == "EMPTY":
            typer.echo(f"  -> Rebuild: {command}")


if __name__ == "__main__":
    app()
