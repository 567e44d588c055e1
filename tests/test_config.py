from pathlib import Path

import pytest

from coverscan.config import (
    DEFAULT_CONFIG_PATH,
    PipelineConfig,
    discogs_credentials,
    load_pipeline_config,
)
from coverscan.errors import ConfigError


def test_defaults_match_capture_policy():
    config = load_pipeline_config(None)

    assert config.match_threshold == 15
    assert config.confidence_floor == pytest.approx(0.70)
    assert config.auto_accept == pytest.approx(0.85)
    assert config.sample_interval == pytest.approx(1.5)
    assert config.escalation_timeout == pytest.approx(5.0)
    assert config.required_consecutive == 2
    assert config.catalog_path == Path("data/covers-database.json")


def test_yaml_then_overrides(tmp_path):
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        "match_threshold: 12\nauto_accept: 0.9\ncatalog_path: other.json\nunknown_key: 1\n",
        encoding="utf-8",
    )

    config = load_pipeline_config(path, {"match_threshold": 10, "pause_seconds": None})

    assert config.match_threshold == 10
    assert config.auto_accept == pytest.approx(0.9)
    assert config.catalog_path == Path("other.json")
    assert config.pause_seconds == pytest.approx(2.0)


def test_missing_explicit_config_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_pipeline_config(tmp_path / "nope.yaml")


def test_missing_default_config_falls_back(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    config = load_pipeline_config(DEFAULT_CONFIG_PATH)

    assert config == PipelineConfig()


@pytest.mark.parametrize(
    "data",
    [
        {"match_threshold": 65},
        {"confidence_floor": 1.5},
        {"sample_interval": 0},
        {"crop_fraction": 0},
        {"required_consecutive": 0},
        {"hash_bits": 1},
        {"match_threshold": "many"},
        {"checkpoint_every": 2.5},
    ],
)
def test_invalid_values_rejected(data):
    with pytest.raises(ConfigError):
        PipelineConfig.from_mapping(data)


def test_discogs_credentials():
    assert discogs_credentials({"DISCOGS_USERNAME": "digger", "DISCOGS_USER_TOKEN": " abc "}) == ("digger", "abc")
    with pytest.raises(ConfigError) as excinfo:
        discogs_credentials({"DISCOGS_USERNAME": "digger"})
    assert "DISCOGS_USER_TOKEN" in str(excinfo.value)
