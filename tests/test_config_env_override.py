import textwrap

import pytest

from staggered_did.config import load_config
from staggered_did.utils.paths import ensure_dirs


def _write_config(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        textwrap.dedent(
            """
            project:
              data_dir: "{data_dir}"
              outputs_dir: "{outputs_dir}"
            simulation:
              seed: 1
            propensity:
              backend: "pymc"
            event_study:
              backend: "pymc"
            """
        ).format(
            data_dir=(tmp_path / "data").as_posix(),
            outputs_dir=(tmp_path / "outputs").as_posix(),
        ),
        encoding="utf-8",
    )
    return config_path


def test_env_overrides_sampler_and_seed(monkeypatch, tmp_path):
    config_path = _write_config(tmp_path)
    monkeypatch.setenv("STAGGERED_DID_SAMPLER", "laplace")
    monkeypatch.setenv("STAGGERED_DID_SEED", "99")

    config = load_config(config_path)

    assert config["propensity"]["backend"] == "laplace"
    assert config["event_study"]["backend"] == "laplace"
    assert config["simulation"]["seed"] == 99
    assert not (tmp_path / "data").exists()


def test_ensure_dirs_creates_study_folders(tmp_path):
    config = {
        "project": {
            "data_dir": (tmp_path / "data").as_posix(),
            "outputs_dir": (tmp_path / "outputs").as_posix(),
            "cache_dir": (tmp_path / "draws").as_posix(),
        }
    }

    paths = ensure_dirs(config)

    assert paths["cache_dir"] == tmp_path / "draws"
    assert (tmp_path / "draws").is_dir()
    assert not (tmp_path / "data" / "cache").exists()
    assert (tmp_path / "data" / "derived").is_dir()
    assert (tmp_path / "outputs" / "figures").is_dir()


def test_unknown_sampler_rejected(monkeypatch, tmp_path):
    config_path = _write_config(tmp_path)
    monkeypatch.setenv("STAGGERED_DID_SAMPLER", "gibbs")

    with pytest.raises(ValueError):
        load_config(config_path)


def test_missing_config_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")
