"""
Type definitions for the opportunity engine.
Contains enums and dataclasses shared by the scorer, the catalog, the
leveraged builder and the dispatcher.
"""

import math
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import ValidationError

# Opportunities without an explicit expiry live this long
DEFAULT_OPPORTUNITY_TTL_SECONDS = 10.0


class StrategyCategory(Enum):
    """Closed set of strategy categories an opportunity can belong to."""

    ARBITRAGE = "ARBITRAGE"
    CROSS_DEX = "CROSS_DEX"
    TRIANGULAR_ARBITRAGE = "TRIANGULAR_ARBITRAGE"
    FLASH_LOAN = "FLASH_LOAN"
    MEV = "MEV"
    SANDWICH = "SANDWICH"
    FRONTRUN = "FRONTRUN"
    BACKRUN = "BACKRUN"
    LIQUIDATION = "LIQUIDATION"
    MARKET_MAKING = "MARKET_MAKING"
    TREND_FOLLOWING = "TREND_FOLLOWING"
    MEAN_REVERSION = "MEAN_REVERSION"
    MOMENTUM = "MOMENTUM"
    STATISTICAL_ARBITRAGE = "STATISTICAL_ARBITRAGE"
    CROSS_CHAIN = "CROSS_CHAIN"
    JIT_LIQUIDITY = "JIT_LIQUIDITY"
    VOLUME_ANALYSIS = "VOLUME_ANALYSIS"
    ORDERBOOK_IMBALANCE = "ORDERBOOK_IMBALANCE"
    FUNDING_RATE = "FUNDING_RATE"
    BASIS_TRADING = "BASIS_TRADING"


class RiskTier(Enum):
    """Coarse risk classification used by strategies and decisions."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"


class StepAction(Enum):
    """Actions making up a leveraged (borrowed capital) settlement."""

    BORROW = "BORROW"
    SWAP = "SWAP"
    REPAY = "REPAY"
    TRANSFER = "TRANSFER"


def _require_finite(name: str, value: float) -> float:
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite, got {value}")
    return value


@dataclass(frozen=True)
class Opportunity:
    """
    A detected, time-bounded candidate action with an estimated payoff.

    Immutable once created. ``execution_cost`` is expressed in native cost
    units (e.g. gas); the decision engine converts it with its configured
    unit price. String categories and tiers are converted at the edge.
    """

    id: str
    category: StrategyCategory
    risk_tier: RiskTier
    estimated_profit: float
    estimated_profit_usd: float
    confidence: float
    execution_cost: float = 0.0
    assets: Tuple[str, ...] = ()
    venues: Tuple[str, ...] = ()
    chain_id: int = 1
    created_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.id:
            raise ValidationError("Opportunity id cannot be empty")

        try:
            category = StrategyCategory(self.category)
            risk_tier = RiskTier(self.risk_tier)
        except ValueError as e:
            raise ValidationError(f"Invalid opportunity classification: {e}")
        object.__setattr__(self, "category", category)
        object.__setattr__(self, "risk_tier", risk_tier)

        for name in ("estimated_profit", "estimated_profit_usd", "execution_cost"):
            object.__setattr__(self, name, _require_finite(name, getattr(self, name)))

        confidence = _require_finite("confidence", self.confidence)
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(
                f"confidence must be within [0, 1], got {confidence}",
                {"opportunity_id": self.id},
            )
        object.__setattr__(self, "confidence", confidence)

        object.__setattr__(self, "assets", tuple(self.assets))
        object.__setattr__(self, "venues", tuple(self.venues))

        if self.expires_at is None:
            object.__setattr__(
                self, "expires_at", self.created_at + DEFAULT_OPPORTUNITY_TTL_SECONDS
            )
        if self.expires_at < self.created_at:
            raise ValidationError(
                "expires_at must not precede created_at",
                {"created_at": self.created_at, "expires_at": self.expires_at},
            )

    @classmethod
    def create(
        cls,
        category: StrategyCategory,
        risk_tier: RiskTier,
        estimated_profit: float,
        estimated_profit_usd: float,
        confidence: float,
        ttl_seconds: float = DEFAULT_OPPORTUNITY_TTL_SECONDS,
        now: Optional[float] = None,
        **kwargs,
    ) -> "Opportunity":
        """Build an opportunity with a fresh id and an expiry ``ttl_seconds`` out."""
        created_at = time.time() if now is None else now
        return cls(
            id=str(uuid.uuid4()),
            category=category,
            risk_tier=risk_tier,
            estimated_profit=estimated_profit,
            estimated_profit_usd=estimated_profit_usd,
            confidence=confidence,
            created_at=created_at,
            expires_at=created_at + ttl_seconds,
            **kwargs,
        )

    def time_to_expiry(self, now: Optional[float] = None) -> float:
        """Seconds until expiry (negative once expired)."""
        now = time.time() if now is None else now
        return self.expires_at - now

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since creation."""
        now = time.time() if now is None else now
        return now - self.created_at

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.time_to_expiry(now) <= 0


@dataclass(frozen=True)
class StrategyParameters:
    """Execution parameters attached to every strategy"""

    slippage_tolerance: float = 0.5
    max_retries: int = 3
    timeout_seconds: float = 5.0


@dataclass(frozen=True)
class StrategySpec:
    """Registration input for a strategy variant."""

    name: str
    category: StrategyCategory
    risk_tier: RiskTier
    priority: int = 0
    min_profit_usd: float = 0.0
    max_cost_ceiling: float = 0.0
    enabled: bool = True
    parameters: StrategyParameters = field(default_factory=StrategyParameters)


@dataclass
class StrategyRecord:
    """
    A configured strategy and its running performance counters.

    Owned by the StrategyCatalog; counters only change through
    ``StrategyCatalog.record_outcome``. Callers receive copies.
    """

    id: str
    name: str
    category: StrategyCategory
    risk_tier: RiskTier
    enabled: bool
    priority: int
    min_profit_usd: float
    max_cost_ceiling: float
    parameters: StrategyParameters
    registration_index: int
    trades_attempted: int = 0
    trades_profitable: int = 0
    cumulative_profit_usd: float = 0.0
    average_execution_seconds: float = 0.0
    success_rate: float = 0.0
    last_executed_at: Optional[float] = None


@dataclass(frozen=True)
class PerformanceHistory:
    """Read-only per-category performance view consumed by the decision engine."""

    category: StrategyCategory
    success_rate: float = 0.0
    average_profit: float = 0.0
    total_trades: int = 0
    window_size: int = 0


@dataclass(frozen=True)
class RiskAssessment:
    tier: RiskTier
    factors: Tuple[str, ...]
    score: float


@dataclass(frozen=True)
class DecisionScores:
    """Individual sub-scores feeding the blended confidence, all in [0, 1]."""

    risk: float
    profit_probability: float
    market_condition: float
    reliability: float
    timing: float


@dataclass(frozen=True)
class Decision:
    """
    Accept/reject verdict for one opportunity with its reasoning.

    Transient; never persisted.
    """

    should_execute: bool
    confidence: float
    rationale: Tuple[str, ...]
    recommended_categories: Tuple[StrategyCategory, ...]
    risk_assessment: RiskAssessment
    expected_profit_usd: float
    evaluated_at: float
    scores: DecisionScores

    def to_dict(self) -> Dict[str, Any]:
        """Convert decision to dictionary for JSON serialization"""
        return {
            "should_execute": self.should_execute,
            "confidence": self.confidence,
            "rationale": list(self.rationale),
            "recommended_categories": [c.value for c in self.recommended_categories],
            "risk_assessment": {
                "tier": self.risk_assessment.tier.value,
                "factors": list(self.risk_assessment.factors),
                "score": self.risk_assessment.score,
            },
            "expected_profit_usd": self.expected_profit_usd,
            "evaluated_at": self.evaluated_at,
            "scores": asdict(self.scores),
        }


@dataclass(frozen=True)
class PriceDiscrepancy:
    """Raw cross-venue price gap for one asset."""

    asset: str
    buy_venue: str
    sell_venue: str
    buy_price: float
    sell_price: float
    spread_percent: float


@dataclass(frozen=True)
class LeveragedStep:
    action: StepAction
    amount_in: float
    asset_in: Optional[str] = None
    asset_out: Optional[str] = None
    expected_amount_out: Optional[float] = None
    venue: Optional[str] = None
    slippage_tolerance: Optional[float] = None


@dataclass(frozen=True)
class LeveragedOpportunity(Opportunity):
    """
    Opportunity whose execution borrows capital for one atomic settlement.

    Construction fails unless ``net_profit`` is strictly positive.
    """

    loan_amount: float = 0.0
    loan_asset: str = "ETH"
    steps: Tuple[LeveragedStep, ...] = ()
    gross_profit: float = 0.0
    fee: float = 0.0
    gas_cost: float = 0.0
    slippage_cost: float = 0.0
    net_profit: float = 0.0
    risk_score: float = 0.0

    def __post_init__(self):
        super().__post_init__()
        if self.loan_amount <= 0:
            raise ValidationError(f"loan_amount must be positive, got {self.loan_amount}")
        if self.net_profit <= 0:
            raise ValidationError(
                f"net_profit must be positive, got {self.net_profit}",
                {"opportunity_id": self.id},
            )
        object.__setattr__(self, "steps", tuple(self.steps))


@dataclass(frozen=True)
class ExecutionOutcome:
    """
    Result of running a strategy against an opportunity.

    ``rejected`` marks outcomes produced by the dispatcher's gate (no
    execution happened); these never reach strategy statistics.
    """

    success: bool
    profit: float = 0.0
    profit_usd: float = 0.0
    cost_consumed: float = 0.0
    duration_seconds: float = 0.0
    failure_reason: Optional[str] = None
    settled_at: float = field(default_factory=time.time)
    transaction_ref: Optional[str] = None
    rejected: bool = False

    @classmethod
    def failed(
        cls,
        reason: str,
        started_at: Optional[float] = None,
        cost_consumed: float = 0.0,
        rejected: bool = False,
        now: Optional[float] = None,
    ) -> "ExecutionOutcome":
        now = time.time() if now is None else now
        return cls(
            success=False,
            cost_consumed=cost_consumed,
            duration_seconds=(
                max(0.0, now - started_at) if started_at is not None else 0.0
            ),
            failure_reason=reason,
            settled_at=now,
            rejected=rejected,
        )

    @classmethod
    def rejected_by_gate(
        cls, reason: str, started_at: Optional[float] = None, now: Optional[float] = None
    ) -> "ExecutionOutcome":
        return cls.failed(reason, started_at=started_at, rejected=True, now=now)


@dataclass(frozen=True)
class LeveragedExecutionResult:
    success: bool
    profit: float = 0.0
    transaction_ref: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TradeExecutedEvent:
    opportunity: Opportunity
    outcome: ExecutionOutcome
    strategy_id: Optional[str]
    runner_id: int


@dataclass(frozen=True)
class LeveragedSuccessEvent:
    opportunity: LeveragedOpportunity
    result: LeveragedExecutionResult
    probability: float


@dataclass(frozen=True)
class CatalogStats:
    total: int
    active: int
    by_category: Dict[str, int]
    by_risk: Dict[str, int]


@dataclass(frozen=True)
class EngineMetrics:
    """Snapshot returned by DispatchEngine.get_metrics()"""

    is_running: bool
    trade_count: int
    decisions_per_second: int
    queue_size: int
    worker_count: int
    dropped_count: int
    rejected_count: int
    failed_count: int
    predictor: Dict[str, Any] = field(default_factory=dict)
    leveraged: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


__all__: List[str] = [
    "DEFAULT_OPPORTUNITY_TTL_SECONDS",
    "StrategyCategory",
    "RiskTier",
    "StepAction",
    "Opportunity",
    "StrategyParameters",
    "StrategySpec",
    "StrategyRecord",
    "PerformanceHistory",
    "RiskAssessment",
    "DecisionScores",
    "Decision",
    "PriceDiscrepancy",
    "LeveragedStep",
    "LeveragedOpportunity",
    "ExecutionOutcome",
    "LeveragedExecutionResult",
    "TradeExecutedEvent",
    "LeveragedSuccessEvent",
    "CatalogStats",
    "EngineMetrics",
]
