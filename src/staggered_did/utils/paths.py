"""Path utilities for the study's data and output folders."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

OUTPUT_SUBDIRS = ("tables", "figures", "logs")


def ensure_dirs(config: Dict[str, Any]) -> Dict[str, Path]:
    """Create the derived-data, cache and output folders of a study run.

    ``project.cache_dir`` relocates the draw cache; it defaults to
    ``<data_dir>/cache``.

    Args:
        config: Loaded configuration.

    Returns:
        Mapping with ``data_dir``, ``cache_dir``, ``derived_dir``,
        ``outputs_dir`` and ``outputs_{tables,figures,logs}``.
    """
    project = config.setdefault("project", {})
    data_dir = Path(project.get("data_dir", "data"))
    outputs_dir = Path(project.get("outputs_dir", "outputs"))

    paths = {
        "data_dir": data_dir,
        "outputs_dir": outputs_dir,
        "cache_dir": Path(project.get("cache_dir") or data_dir / "cache"),
        "derived_dir": data_dir / "derived",
    }
    for name in OUTPUT_SUBDIRS:
        paths[f"outputs_{name}"] = outputs_dir / name

    for key, path in paths.items():
        if key not in ("data_dir", "outputs_dir"):
            path.mkdir(parents=True, exist_ok=True)
    return paths
