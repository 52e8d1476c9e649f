"""Configuration loader."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import yaml

SAMPLER_ENV = "STAGGERED_DID_SAMPLER"
SEED_ENV = "STAGGERED_DID_SEED"
KNOWN_BACKENDS = ("pymc", "laplace")


def load_config(path: str | Path) -> Dict[str, Any]:
    """Load configuration from YAML.

    Args:
        path: Path to configuration file.

    Returns:
        Parsed configuration dictionary.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        config = yaml.safe_load(handle) or {}

    sampler = os.getenv(SAMPLER_ENV)
    if sampler:
        if sampler not in KNOWN_BACKENDS:
            raise ValueError(
                f"{SAMPLER_ENV}={sampler!r} is not one of {', '.join(KNOWN_BACKENDS)}"
            )
        config.setdefault("propensity", {})["backend"] = sampler
        config.setdefault("event_study", {})["backend"] = sampler

    seed = os.getenv(SEED_ENV)
    if seed:
        config.setdefault("simulation", {})["seed"] = int(seed)

    project = config.setdefault("project", {})
    project.setdefault("data_dir", "data")
    project.setdefault("outputs_dir", "outputs")
    return config
