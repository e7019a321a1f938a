"""
Opportunity Engine.

A high-throughput opportunity dispatcher for automated trading strategies:
opportunities are queued, scored by a multi-factor decision engine, matched
to the best strategy variant from a large catalog, executed through an
injected capability and fed back into per-strategy and per-category
performance statistics. Leveraged (flash-loan style) opportunities are built
from cross-venue price discrepancies and settled by a separate executor.
"""

from opportunity_engine.version import __version__

PROJECT_NAME = "opportunity-engine"
VERSION = __version__

# Export main components for easier imports
from opportunity_engine.decision_engine import DecisionEngine
from opportunity_engine.dispatch_engine import DispatchEngine
from opportunity_engine.exceptions import (
    CapacityError,
    ConfigurationError,
    DataError,
    ExecutionError,
    OpportunityEngineError,
    TerminalExecutionError,
    TransientExecutionError,
    ValidationError,
)
from opportunity_engine.leveraged import LeveragedOpportunityBuilder
from opportunity_engine.metrics import DispatchMetrics
from opportunity_engine.price_oracle import InMemoryPriceOracle
from opportunity_engine.strategy_catalog import StrategyCatalog, build_default_catalog
from opportunity_engine.types import (
    Decision,
    ExecutionOutcome,
    LeveragedOpportunity,
    Opportunity,
    RiskTier,
    StrategyCategory,
    StrategySpec,
)

__all__ = [
    "PROJECT_NAME",
    "VERSION",
    "__version__",
    "DecisionEngine",
    "DispatchEngine",
    "DispatchMetrics",
    "InMemoryPriceOracle",
    "LeveragedOpportunityBuilder",
    "StrategyCatalog",
    "build_default_catalog",
    "Decision",
    "ExecutionOutcome",
    "LeveragedOpportunity",
    "Opportunity",
    "RiskTier",
    "StrategyCategory",
    "StrategySpec",
    "OpportunityEngineError",
    "ConfigurationError",
    "ValidationError",
    "ExecutionError",
    "TransientExecutionError",
    "TerminalExecutionError",
    "CapacityError",
    "DataError",
]
