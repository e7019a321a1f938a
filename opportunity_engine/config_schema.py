"""
Configuration schema validation using Pydantic
"""

from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .decision_engine import DEFAULT_WEIGHTS


class DispatchSection(BaseModel):
    """Queue and cycle-runner configuration"""

    queue_capacity: int = Field(default=1_000_000, ge=1, description="Maximum queued opportunities")
    batch_size: int = Field(default=1000, ge=1, le=100_000, description="Opportunities per cycle")
    worker_count: Optional[int] = Field(
        default=None, ge=1, le=10_000, description="Cycle runners; cpu_count x loops_per_core when unset"
    )
    loops_per_core: int = Field(default=10, ge=1, le=1000)
    confidence_threshold: float = Field(default=0.6, ge=0, le=1.0)
    idle_sleep_seconds: float = Field(default=0.001, ge=0, le=10)
    generator_interval_seconds: float = Field(default=0.01, ge=0, le=60)
    generator_refresh_seconds: float = Field(default=1.0, gt=0, le=3600)
    training_interval_seconds: float = Field(default=60.0, gt=0, le=86400)
    training_sample_threshold: int = Field(default=5000, ge=1)
    leveraged_interval_seconds: float = Field(default=0.1, gt=0, le=60)
    leveraged_min_probability: float = Field(default=0.40, ge=0, le=1.0)

    model_config = {"extra": "forbid"}


class DecisionSection(BaseModel):
    """Decision scoring configuration"""

    cost_unit_price: float = Field(
        default=0.00005, ge=0, description="USD per native cost unit (gas)"
    )
    min_confidence: float = Field(default=0.60, ge=0, le=1.0)
    min_profit_usd: float = Field(default=1.0, ge=0)
    min_profit_after_cost_usd: float = Field(default=0.5, ge=0)
    weights: Optional[Dict[str, float]] = None

    model_config = {"extra": "forbid"}

    @field_validator("weights")
    @classmethod
    def validate_weights(cls, v):
        if v is None:
            return v
        for key, weight in v.items():
            if key not in DEFAULT_WEIGHTS:
                raise ValueError(
                    f"Unknown decision weight '{key}'; expected one of {sorted(DEFAULT_WEIGHTS)}"
                )
            if weight < 0:
                raise ValueError(f"Weight for {key} cannot be negative: {weight}")
        return v


class LeveragedSection(BaseModel):
    """Leveraged opportunity builder configuration"""

    enabled: bool = True
    loan_amount: float = Field(default=100.0, gt=0)
    loan_asset: str = Field(default="ETH", min_length=2)
    fee_rate: float = Field(default=0.0009, ge=0, le=0.1)
    gas_estimate: float = Field(default=0.5, ge=0)
    slippage_rate: float = Field(default=0.005, ge=0, le=0.5)
    min_profit_usd: float = Field(default=1.0, ge=0)
    min_confidence: float = Field(default=0.6, ge=0, le=1.0)
    max_risk: float = Field(default=0.7, ge=0, le=1.0)
    fallback_price: float = Field(default=2000.0, gt=0)
    ttl_seconds: float = Field(default=10.0, gt=0, le=3600)
    min_spread_percent: float = Field(default=0.3, ge=0, le=100)
    step_slippage: float = Field(
        default=0.5, ge=0, le=100, description="Slippage percent per swap step"
    )
    recent_window_seconds: float = Field(default=10.0, gt=0, le=3600)
    fresh_window_seconds: float = Field(default=5.0, gt=0, le=3600)
    gas_units: float = Field(
        default=500_000, ge=0, description="Native cost units per leveraged execution"
    )

    model_config = {"extra": "forbid"}


class MetricsSection(BaseModel):
    """Metrics server configuration"""

    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1024, le=65535, description="Metrics server port")
    path: str = Field(
        default="/metrics", pattern=r"^/[a-zA-Z0-9_/-]*$", description="Metrics endpoint path"
    )

    model_config = {"extra": "forbid"}


class ObservabilitySection(BaseModel):
    """Observability configuration"""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    metrics: Optional[MetricsSection] = None

    model_config = {"extra": "forbid"}


class PaperSection(BaseModel):
    """Paper execution configuration"""

    success_rate: float = Field(default=0.7, ge=0, le=1.0)
    transient_failure_rate: float = Field(default=0.0, ge=0, lt=1.0)
    latency_sim_ms: int = Field(default=10, ge=0, le=10000)
    random_seed: int = Field(default=42, ge=0, le=2147483647)
    emit_probability: float = Field(default=0.05, ge=0, le=1.0)
    leveraged_success_rate: float = Field(default=0.8, ge=0, le=1.0)

    model_config = {"extra": "forbid"}


class EngineConfig(BaseModel):
    """Complete engine configuration schema"""

    name: str = Field(default="opportunity_engine", min_length=1, max_length=100)
    dispatch: Optional[DispatchSection] = None
    decision: Optional[DecisionSection] = None
    leveraged: Optional[LeveragedSection] = None
    observability: Optional[ObservabilitySection] = None
    paper: Optional[PaperSection] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("Engine name cannot be empty")
        return v.strip()

    model_config = {
        "extra": "forbid",  # Disallow extra fields
        "validate_assignment": True,
    }


def validate_engine_config(config_dict: Dict) -> EngineConfig:
    """
    Validate an engine configuration dictionary

    Args:
        config_dict: Dictionary representation of engine config

    Returns:
        Validated EngineConfig object

    Raises:
        pydantic.ValidationError: If configuration is invalid
    """
    return EngineConfig(**config_dict)
