#!/usr/bin/env python3
"""
Configuration Tests

Precedence is defaults < YAML file < COACHMEM_* env < overrides dict,
and anything that would break an engine invariant is rejected.
"""

import pytest
import sys
from pathlib import Path

import yaml

sys.path.insert(0, str(Path(__file__).parent.parent))
from coachmem.config import EngineConfig, load_config
from coachmem.errors import ConfigError


@pytest.fixture
def missing_path(temp_data_dir):
    return temp_data_dir / "nope.yaml"


class TestDefaults:
    """Values the rest of the engine relies on."""

    def test_default_bands(self, missing_path):
        config = load_config(path=missing_path)
        assert config.dedup.exact_threshold == 0.95
        assert config.dedup.high_threshold == 0.85
        assert config.dedup.related_threshold == 0.70

    def test_default_retrieval(self, missing_path):
        config = load_config(path=missing_path)
        assert config.retrieval.max_per_category == 3
        assert config.retrieval.max_results == 10
        assert config.retrieval.exploratory_threshold == 0.25
        assert config.retrieval.precise_threshold == 0.35

    def test_returns_engine_config(self, missing_path):
        assert isinstance(load_config(path=missing_path), EngineConfig)


class TestSources:
    """File, environment and explicit overrides."""

    def test_yaml_file(self, temp_data_dir):
        path = temp_data_dir / "engine.yaml"
        path.write_text(yaml.safe_dump({
            "dedup": {"exact_threshold": 0.97},
            "retrieval": {"weights": {"semantic": 0.5}},
        }))

        config = load_config(path=path)
        assert config.dedup.exact_threshold == 0.97
        assert config.retrieval.weights.semantic == 0.5
        # untouched siblings keep their defaults
        assert config.retrieval.weights.temporal == 0.25

    def test_env_overrides_file(self, temp_data_dir, monkeypatch):
        path = temp_data_dir / "engine.yaml"
        path.write_text(yaml.safe_dump({"queue": {"batch_size": 20}}))
        monkeypatch.setenv("COACHMEM_QUEUE_BATCH_SIZE", "7")

        assert load_config(path=path).queue.batch_size == 7

    def test_nested_env_value(self, missing_path, monkeypatch):
        monkeypatch.setenv("COACHMEM_RETRIEVAL_WEIGHTS_ACCESS", "0.4")
        assert load_config(path=missing_path).retrieval.weights.access == 0.4

    def test_overrides_win(self, missing_path, monkeypatch):
        monkeypatch.setenv("COACHMEM_QUEUE_BATCH_SIZE", "7")
        config = load_config(path=missing_path, overrides={"queue": {"batch_size": 3}})
        assert config.queue.batch_size == 3


class TestValidation:
    """Bad values fail loudly at load time."""

    def test_unknown_key(self, missing_path):
        with pytest.raises(ConfigError):
            load_config(path=missing_path, overrides={"dedup": {"exactness": 0.9}})

    def test_bands_out_of_order(self, missing_path):
        with pytest.raises(ConfigError):
            load_config(path=missing_path, overrides={"dedup": {"high_threshold": 0.99}})

    def test_threshold_out_of_range(self, missing_path):
        with pytest.raises(ConfigError):
            load_config(path=missing_path, overrides={"dedup": {"exact_threshold": 1.5}})

    def test_negative_weight(self, missing_path):
        with pytest.raises(ConfigError):
            load_config(path=missing_path, overrides={"retrieval": {"weights": {"semantic": -0.1}}})

    def test_uncastable_value(self, missing_path):
        with pytest.raises(ConfigError):
            load_config(path=missing_path, overrides={"queue": {"batch_size": "lots"}})

    def test_non_mapping_file(self, temp_data_dir):
        path = temp_data_dir / "engine.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            load_config(path=path)
