"""Filename-keyed cache for posterior draws."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Callable, Optional

import pandas as pd

from staggered_did.log import get_logger

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def cache_path(cache_dir: str | Path, key: str) -> Path:
    """Return the parquet path used for a cache key."""
    safe_key = _UNSAFE.sub("_", key).strip("_")
    if not safe_key:
        raise ValueError(f"Cache key {key!r} has no usable characters")
    return Path(cache_dir) / f"{safe_key}.parquet"


def cached_draws(
    cache_dir: Optional[str | Path],
    key: Optional[str],
    fit_fn: Callable[[], pd.DataFrame],
    force: bool = False,
) -> pd.DataFrame:
    """Load draws for ``key`` from the cache or compute and store them.

    Args:
        cache_dir: Cache directory; caching is skipped when None.
        key: Cache key (becomes the filename); caching is skipped when None.
        fit_fn: Zero-argument callable producing the draws frame.
        force: Recompute even if a cached file exists.

    Returns:
        Draws dataframe, one row per draw.
    """
    logger = get_logger()
    if cache_dir is None or key is None:
        return fit_fn()

    path = cache_path(cache_dir, key)
    if path.exists() and not force:
        logger.info("Loaded cached draws from %s", path)
        return pd.read_parquet(path)

    draws = fit_fn()
    path.parent.mkdir(parents=True, exist_ok=True)
    draws.to_parquet(path, index=False)
    logger.info("Cached draws to %s", path)
    return draws
