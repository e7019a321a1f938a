"""
Tests for configuration loading, environment overrides and schema validation
"""

from pathlib import Path

import pytest

from opportunity_engine.config_loader import (
    EngineRuntimeConfig,
    env_overrides,
    get_default_config,
    load_default_config,
    load_engine_config,
    load_yaml_config,
    normalize_engine_config,
)
from opportunity_engine.exceptions import ConfigurationError, ValidationError

REPO_CONFIG = Path(__file__).resolve().parents[2] / "configs" / "engine.yaml"


@pytest.fixture
def write_config(tmp_path):
    def _write(text, name="engine.yaml"):
        path = tmp_path / name
        path.write_text(text)
        return path

    return _write


class TestLoadYaml:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_yaml_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, write_config):
        path = write_config("dispatch: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_yaml_config(path)

    def test_empty_file(self, write_config):
        with pytest.raises(ConfigurationError, match="Empty configuration"):
            load_yaml_config(write_config(""))

    def test_non_mapping_root(self, write_config):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            load_yaml_config(write_config("- a\n- b\n"))


class TestNormalize:
    def test_defaults(self):
        config = normalize_engine_config({})

        assert config == get_default_config()
        assert config.dispatch.worker_count is None
        assert config.dispatch.batch_size == 1000
        assert config.decision.cost_unit_price == pytest.approx(0.00005)
        assert config.leveraged.gas_units == 500_000
        assert config.observability.metrics_enabled is False

    def test_partial_sections(self):
        config = normalize_engine_config(
            {
                "name": "  tuned  ",
                "dispatch": {"batch_size": 250},
                "leveraged": {"enabled": False},
                "observability": {"log_level": "DEBUG", "metrics": {"enabled": True, "port": 9100}},
            }
        )

        assert config.name == "tuned"
        assert config.dispatch.batch_size == 250
        assert config.dispatch.queue_capacity == 1_000_000
        assert config.dispatch.leveraged_enabled is False
        assert config.leveraged.enabled is False
        assert config.observability.log_level == "DEBUG"
        assert config.observability.metrics_port == 9100

    def test_builder_tuning_keys(self):
        config = normalize_engine_config(
            {
                "leveraged": {
                    "gas_units": 300_000,
                    "step_slippage": 0.25,
                    "recent_window_seconds": 30,
                    "fresh_window_seconds": 2,
                }
            }
        )

        assert config.leveraged.gas_units == 300_000
        assert config.leveraged.step_slippage == pytest.approx(0.25)
        assert config.leveraged.recent_window_seconds == 30
        assert config.leveraged.fresh_window_seconds == 2
        assert config.leveraged.loan_amount == 100.0

    def test_config_is_frozen(self):
        config = get_default_config()
        with pytest.raises(AttributeError):
            config.name = "changed"

    @pytest.mark.parametrize(
        "config_dict",
        [
            {"dispatch": {"batch_size": 0}},
            {"dispatch": {"unknown_key": 1}},
            {"decision": {"weights": {"luck": 0.5}}},
            {"decision": {"weights": {"risk": -0.1}}},
            {"observability": {"log_level": "VERBOSE"}},
            {"observability": {"metrics": {"port": 80}}},
            {"paper": {"transient_failure_rate": 1.0}},
            {"leveraged": {"fresh_window_seconds": 0}},
            {"dispatch": {"generator_refresh_seconds": 0}},
            {"name": "   "},
            {"unexpected": True},
        ],
    )
    def test_invalid_values_rejected(self, config_dict):
        with pytest.raises(ValidationError, match="Configuration validation failed"):
            normalize_engine_config(config_dict)


class TestEnvOverrides:
    def test_nested_keys_and_scalar_types(self):
        overrides = env_overrides(
            environ={
                "OPPORTUNITY_ENGINE_DISPATCH__BATCH_SIZE": "500",
                "OPPORTUNITY_ENGINE_LEVERAGED__ENABLED": "false",
                "OPPORTUNITY_ENGINE_NAME": "from_env",
                "OPPORTUNITY_ENGINE_OBSERVABILITY__METRICS__PORT": "9200",
                "UNRELATED": "ignored",
            }
        )

        assert overrides == {
            "dispatch": {"batch_size": 500},
            "leveraged": {"enabled": False},
            "name": "from_env",
            "observability": {"metrics": {"port": 9200}},
        }

    def test_environment_wins_over_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "OPPORTUNITY_ENGINE_DISPATCH__BATCH_SIZE=100\n"
            "OPPORTUNITY_ENGINE_PAPER__RANDOM_SEED=9\n"
        )

        overrides = env_overrides(
            environ={"OPPORTUNITY_ENGINE_DISPATCH__BATCH_SIZE": "300"}, env_file=env_file
        )

        assert overrides["dispatch"]["batch_size"] == 300
        assert overrides["paper"]["random_seed"] == 9

    def test_conflicting_paths(self):
        with pytest.raises(ConfigurationError, match="Conflicting"):
            env_overrides(
                environ={
                    "OPPORTUNITY_ENGINE_DISPATCH": "1",
                    "OPPORTUNITY_ENGINE_DISPATCH__BATCH_SIZE": "2",
                }
            )


class TestLoadEngineConfig:
    def test_repository_config(self):
        config = load_engine_config(REPO_CONFIG, environ={})

        assert isinstance(config, EngineRuntimeConfig)
        assert config.name == "paper_engine"
        assert config.dispatch.worker_count == 8
        assert config.decision.cost_unit_price == pytest.approx(0.00005)
        assert config.decision.weights["profit_probability"] == pytest.approx(0.30)
        assert config.paper.transient_failure_rate == pytest.approx(0.02)

    def test_environment_overrides_file(self, write_config):
        path = write_config("name: base\ndispatch:\n  batch_size: 1000\n  worker_count: 4\n")

        config = load_engine_config(
            path, environ={"OPPORTUNITY_ENGINE_DISPATCH__BATCH_SIZE": "64"}
        )

        assert config.dispatch.batch_size == 64
        assert config.dispatch.worker_count == 4

    def test_invalid_override_rejected(self, write_config):
        path = write_config("name: base\n")
        with pytest.raises(ValidationError):
            load_engine_config(path, environ={"OPPORTUNITY_ENGINE_DISPATCH__BATCH_SIZE": "-1"})


class TestLoadDefaultConfig:
    def test_no_overrides(self):
        assert load_default_config(environ={}) == get_default_config()

    def test_environment_overrides_defaults(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("OPPORTUNITY_ENGINE_LEVERAGED__GAS_UNITS=250000\n")

        config = load_default_config(
            env_file=env_file, environ={"OPPORTUNITY_ENGINE_DISPATCH__BATCH_SIZE": "64"}
        )

        assert config.dispatch.batch_size == 64
        assert config.leveraged.gas_units == 250_000
        assert config.dispatch.queue_capacity == 1_000_000

    def test_invalid_override_rejected(self):
        with pytest.raises(ValidationError, match="Configuration validation failed"):
            load_default_config(environ={"OPPORTUNITY_ENGINE_DISPATCH__BATCH_SIZE": "0"})
