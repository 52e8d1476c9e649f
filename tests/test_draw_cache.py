import pandas as pd

from staggered_did.utils.cache import cache_path, cached_draws


def test_cached_draws_fit_once(tmp_path) -> None:
    calls = []

    def _fit() -> pd.DataFrame:
        calls.append(1)
        return pd.DataFrame({"event_0": [0.5 * len(calls), 1.0]})

    first = cached_draws(tmp_path, "event_study_laplace_seed1", _fit)
    second = cached_draws(tmp_path, "event_study_laplace_seed1", _fit)
    forced = cached_draws(tmp_path, "event_study_laplace_seed1", _fit, force=True)

    assert len(calls) == 2
    assert first.equals(second)
    assert forced["event_0"].iloc[0] == 1.0


def test_no_cache_dir_skips_cache(tmp_path) -> None:
    draws = cached_draws(None, "key", lambda: pd.DataFrame({"a": [1.0]}))
    assert draws["a"].tolist() == [1.0]
    assert not list(tmp_path.iterdir())


def test_cache_key_sanitized(tmp_path) -> None:
    assert cache_path(tmp_path, "prop/g 4").name == "prop_g_4.parquet"
