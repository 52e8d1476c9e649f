"""Treatment-effect functions for the panel simulator."""
from __future__ import annotations

from typing import Any, Callable, Dict, Mapping

import numpy as np

EffectFunction = Callable[[np.ndarray, np.ndarray], np.ndarray]


def _cohort_multiplier(cohort: np.ndarray, multipliers: Mapping[Any, float]) -> np.ndarray:
    factors = np.ones(cohort.shape, dtype=float)
    for g, factor in multipliers.items():
        factors[cohort == int(g)] = float(factor)
    return factors


def make_effect_function(effect_cfg: Dict[str, Any]) -> EffectFunction:
    """Build the dynamic treatment-effect function.

    Supported ``kind`` values:

    - ``constant``: ``magnitude`` at every event time ``e >= 0``.
    - ``linear``: ``magnitude + growth * e`` for ``e >= 0``.
    - ``path``: explicit ``{event_time: effect}`` mapping, 0 for unlisted times.

    ``cohort_multipliers`` (``{cohort: factor}``) scales the effect per cohort.
    The returned callable takes event times and cohorts (``0`` = never treated)
    and is zero before adoption and for never-treated units.

    Args:
        effect_cfg: ``simulation.effect`` config block.

    Returns:
        Vectorized effect function.
    """
    kind = effect_cfg.get("kind", "constant")
    magnitude = float(effect_cfg.get("magnitude", 1.0))
    growth = float(effect_cfg.get("growth", 0.0))
    path = {int(k): float(v) for k, v in (effect_cfg.get("path") or {}).items()}
    multipliers = effect_cfg.get("cohort_multipliers") or {}

    if kind not in ("constant", "linear", "path"):
        raise ValueError(f"Unknown effect kind: {kind}")
    if kind == "path" and not path:
        raise ValueError("Effect kind 'path' requires a non-empty 'path' mapping")

    def effect(event_time: np.ndarray, cohort: np.ndarray) -> np.ndarray:
        e = np.asarray(event_time, dtype=float)
        g = np.asarray(cohort)
        active = (g > 0) & np.isfinite(e) & (e >= 0)
        safe_e = np.where(active, e, 0.0)
        if kind == "constant":
            values = np.full(e.shape, magnitude)
        elif kind == "linear":
            values = magnitude + growth * safe_e
        else:
            values = np.array([path.get(int(v), 0.0) for v in safe_e.ravel()]).reshape(e.shape)
        if multipliers:
            values = values * _cohort_multiplier(g, multipliers)
        return np.where(active, values, 0.0)

    return effect
