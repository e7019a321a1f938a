"""
Configuration loading and normalization for the opportunity engine.

Provides a centralized way to load, validate, and normalize configuration
files with proper defaults and read-only access. Values can be overridden
from the environment (or a dotenv file) with variables named
``OPPORTUNITY_ENGINE_<SECTION>__<KEY>``, e.g.
``OPPORTUNITY_ENGINE_DISPATCH__BATCH_SIZE=500``.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from dotenv import dotenv_values

from .config_schema import validate_engine_config
from .exceptions import ConfigurationError, ValidationError
from .utils import deep_merge, get_logger

logger = get_logger(__name__)

ENV_PREFIX = "OPPORTUNITY_ENGINE_"


@dataclass(frozen=True)
class DispatchConfig:
    """Normalized dispatch configuration."""

    queue_capacity: int = 1_000_000
    batch_size: int = 1000
    worker_count: Optional[int] = None
    loops_per_core: int = 10
    confidence_threshold: float = 0.6
    idle_sleep_seconds: float = 0.001
    generator_interval_seconds: float = 0.01
    generator_refresh_seconds: float = 1.0
    training_interval_seconds: float = 60.0
    training_sample_threshold: int = 5000
    leveraged_enabled: bool = True
    leveraged_interval_seconds: float = 0.1
    leveraged_min_probability: float = 0.40


@dataclass(frozen=True)
class DecisionConfig:
    """Normalized decision scoring configuration."""

    cost_unit_price: float = 0.00005
    min_confidence: float = 0.60
    min_profit_usd: float = 1.0
    min_profit_after_cost_usd: float = 0.5
    weights: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class LeveragedConfig:
    """Normalized leveraged builder configuration."""

    enabled: bool = True
    loan_amount: float = 100.0
    loan_asset: str = "ETH"
    fee_rate: float = 0.0009
    gas_estimate: float = 0.5
    slippage_rate: float = 0.005
    min_profit_usd: float = 1.0
    min_confidence: float = 0.6
    max_risk: float = 0.7
    fallback_price: float = 2000.0
    ttl_seconds: float = 10.0
    min_spread_percent: float = 0.3
    step_slippage: float = 0.5
    recent_window_seconds: float = 10.0
    fresh_window_seconds: float = 5.0
    gas_units: float = 500_000


@dataclass(frozen=True)
class ObservabilityConfig:
    """Normalized observability configuration."""

    log_level: str = "INFO"
    metrics_enabled: bool = False
    metrics_host: str = "0.0.0.0"
    metrics_port: int = 8000
    metrics_path: str = "/metrics"


@dataclass(frozen=True)
class PaperConfig:
    """Normalized paper execution configuration."""

    success_rate: float = 0.7
    transient_failure_rate: float = 0.0
    latency_sim_ms: int = 10
    random_seed: int = 42
    emit_probability: float = 0.05
    leveraged_success_rate: float = 0.8


@dataclass(frozen=True)
class EngineRuntimeConfig:
    """Immutable runtime configuration object."""

    name: str = "opportunity_engine"
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    leveraged: LeveragedConfig = field(default_factory=LeveragedConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    paper: PaperConfig = field(default_factory=PaperConfig)


def load_yaml_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to load config {config_path}: {e}")

    if config_dict is None:
        raise ConfigurationError(f"Empty configuration file: {config_path}")
    if not isinstance(config_dict, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

    return config_dict


def env_overrides(
    environ: Optional[Mapping[str, Optional[str]]] = None,
    env_file: Optional[Union[str, Path]] = None,
) -> Dict[str, Any]:
    """
    Collect ``OPPORTUNITY_ENGINE_*`` overrides as a nested dict.

    Values from ``env_file`` are read first; the process environment wins.
    Each value is parsed as a YAML scalar so numbers and booleans keep
    their type.
    """
    merged: Dict[str, Optional[str]] = {}
    if env_file is not None:
        merged.update(dotenv_values(env_file))
    merged.update(os.environ if environ is None else environ)

    overrides: Dict[str, Any] = {}
    for key, raw in merged.items():
        if not key.startswith(ENV_PREFIX) or raw is None:
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX):].split("__") if part]
        if not path:
            continue

        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError:
            value = raw

        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
            if not isinstance(node, dict):
                raise ConfigurationError(f"Conflicting environment override: {key}")
        node[path[-1]] = value
        logger.debug(f"Config override from environment: {key}")

    return overrides


def _normalize_dispatch_config(config_dict: Dict[str, Any]) -> DispatchConfig:
    """Normalize dispatch configuration with defaults."""
    dispatch = config_dict.get("dispatch") or {}
    leveraged = config_dict.get("leveraged") or {}
    defaults = DispatchConfig()

    return DispatchConfig(
        queue_capacity=dispatch.get("queue_capacity", defaults.queue_capacity),
        batch_size=dispatch.get("batch_size", defaults.batch_size),
        worker_count=dispatch.get("worker_count", defaults.worker_count),
        loops_per_core=dispatch.get("loops_per_core", defaults.loops_per_core),
        confidence_threshold=dispatch.get(
            "confidence_threshold", defaults.confidence_threshold
        ),
        idle_sleep_seconds=dispatch.get("idle_sleep_seconds", defaults.idle_sleep_seconds),
        generator_interval_seconds=dispatch.get(
            "generator_interval_seconds", defaults.generator_interval_seconds
        ),
        generator_refresh_seconds=dispatch.get(
            "generator_refresh_seconds", defaults.generator_refresh_seconds
        ),
        training_interval_seconds=dispatch.get(
            "training_interval_seconds", defaults.training_interval_seconds
        ),
        training_sample_threshold=dispatch.get(
            "training_sample_threshold", defaults.training_sample_threshold
        ),
        # The leveraged monitor follows the builder's switch
        leveraged_enabled=leveraged.get("enabled", defaults.leveraged_enabled),
        leveraged_interval_seconds=dispatch.get(
            "leveraged_interval_seconds", defaults.leveraged_interval_seconds
        ),
        leveraged_min_probability=dispatch.get(
            "leveraged_min_probability", defaults.leveraged_min_probability
        ),
    )


def _normalize_decision_config(config_dict: Dict[str, Any]) -> DecisionConfig:
    """Normalize decision configuration with defaults."""
    decision = config_dict.get("decision") or {}
    defaults = DecisionConfig()

    return DecisionConfig(
        cost_unit_price=decision.get("cost_unit_price", defaults.cost_unit_price),
        min_confidence=decision.get("min_confidence", defaults.min_confidence),
        min_profit_usd=decision.get("min_profit_usd", defaults.min_profit_usd),
        min_profit_after_cost_usd=decision.get(
            "min_profit_after_cost_usd", defaults.min_profit_after_cost_usd
        ),
        weights=dict(decision.get("weights") or {}),
    )


def _normalize_leveraged_config(config_dict: Dict[str, Any]) -> LeveragedConfig:
    """Normalize leveraged configuration with defaults."""
    leveraged = config_dict.get("leveraged") or {}
    defaults = LeveragedConfig()

    return LeveragedConfig(
        **{
            name: leveraged.get(name, getattr(defaults, name))
            for name in LeveragedConfig.__dataclass_fields__
        }
    )


def _normalize_observability_config(config_dict: Dict[str, Any]) -> ObservabilityConfig:
    """Normalize observability configuration with defaults."""
    obs_config = config_dict.get("observability") or {}
    metrics = obs_config.get("metrics") or {}

    return ObservabilityConfig(
        log_level=str(obs_config.get("log_level", "INFO")).upper(),
        metrics_enabled=metrics.get("enabled", False),
        metrics_host=metrics.get("host", "0.0.0.0"),
        metrics_port=metrics.get("port", 8000),
        metrics_path=metrics.get("path", "/metrics"),
    )


def _normalize_paper_config(config_dict: Dict[str, Any]) -> PaperConfig:
    """Normalize paper execution configuration with defaults."""
    paper = config_dict.get("paper") or {}
    defaults = PaperConfig()

    return PaperConfig(
        **{
            name: paper.get(name, getattr(defaults, name))
            for name in PaperConfig.__dataclass_fields__
        }
    )


def normalize_engine_config(config_dict: Dict[str, Any]) -> EngineRuntimeConfig:
    """
    Validate and normalize an already-parsed configuration mapping.

    Raises:
        ConfigurationError: If normalization fails
        ValidationError: If the configuration fails schema validation
    """
    # Validate against schema first
    try:
        validate_engine_config(config_dict)
    except Exception as e:
        raise ValidationError(f"Configuration validation failed: {e}")

    try:
        return EngineRuntimeConfig(
            name=str(config_dict.get("name", "opportunity_engine")).strip(),
            dispatch=_normalize_dispatch_config(config_dict),
            decision=_normalize_decision_config(config_dict),
            leveraged=_normalize_leveraged_config(config_dict),
            observability=_normalize_observability_config(config_dict),
            paper=_normalize_paper_config(config_dict),
        )
    except Exception as e:
        raise ConfigurationError(f"Failed to normalize configuration: {e}")


def load_engine_config(
    config_path: Union[str, Path],
    env_file: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, Optional[str]]] = None,
) -> EngineRuntimeConfig:
    """
    Load and normalize an engine configuration file.

    Args:
        config_path: Path to the YAML configuration file
        env_file: Optional dotenv file with ``OPPORTUNITY_ENGINE_*`` overrides
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Normalized and frozen engine configuration

    Raises:
        ConfigurationError: If the configuration cannot be loaded or is invalid
        ValidationError: If the configuration fails schema validation
    """
    config_dict = load_yaml_config(config_path)

    overrides = env_overrides(environ=environ, env_file=env_file)
    if overrides:
        config_dict = deep_merge(config_dict, overrides)

    runtime = normalize_engine_config(config_dict)
    logger.info(f"Loaded configuration '{runtime.name}' from {config_path}")
    return runtime


def get_default_config() -> EngineRuntimeConfig:
    """Get a default configuration for testing or fallback purposes."""
    return EngineRuntimeConfig()


def load_default_config(
    env_file: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, Optional[str]]] = None,
) -> EngineRuntimeConfig:
    """
    Built-in defaults with ``OPPORTUNITY_ENGINE_*`` overrides applied.

    Used when no configuration file is given; overrides are validated the
    same way as file values.
    """
    overrides = env_overrides(environ=environ, env_file=env_file)
    if not overrides:
        return get_default_config()

    runtime = normalize_engine_config(overrides)
    logger.info(f"Using default configuration with environment overrides for {sorted(overrides)}")
    return runtime
