"""
Decision Engine for the opportunity pipeline
Provides explicit accept/reject verdicts with multi-factor scores, reasoning
and risk classification
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

from .exceptions import ValidationError
from .interfaces import MarketConditionProvider, SystemTimeProvider, TimeProvider
from .metrics import RollingPerformanceWindow
from .types import (
    Decision,
    DecisionScores,
    ExecutionOutcome,
    Opportunity,
    PerformanceHistory,
    RiskAssessment,
    RiskTier,
    StrategyCategory,
)
from .utils import clamp, floored_ratio, timestamp_to_iso

logger = logging.getLogger(__name__)


# Base risk per category; adversarial and leveraged categories carry more
CATEGORY_BASE_RISK: Dict[StrategyCategory, float] = {
    StrategyCategory.ARBITRAGE: 0.2,
    StrategyCategory.CROSS_DEX: 0.3,
    StrategyCategory.TRIANGULAR_ARBITRAGE: 0.4,
    StrategyCategory.FLASH_LOAN: 0.7,
    StrategyCategory.MEV: 0.6,
    StrategyCategory.SANDWICH: 0.8,
    StrategyCategory.FRONTRUN: 0.9,
    StrategyCategory.BACKRUN: 0.5,
    StrategyCategory.LIQUIDATION: 0.5,
    StrategyCategory.MARKET_MAKING: 0.3,
    StrategyCategory.TREND_FOLLOWING: 0.4,
    StrategyCategory.MEAN_REVERSION: 0.4,
    StrategyCategory.MOMENTUM: 0.5,
    StrategyCategory.STATISTICAL_ARBITRAGE: 0.3,
    StrategyCategory.CROSS_CHAIN: 0.6,
    StrategyCategory.JIT_LIQUIDITY: 0.5,
    StrategyCategory.VOLUME_ANALYSIS: 0.3,
    StrategyCategory.ORDERBOOK_IMBALANCE: 0.4,
    StrategyCategory.FUNDING_RATE: 0.3,
    StrategyCategory.BASIS_TRADING: 0.3,
}
DEFAULT_BASE_RISK = 0.5

# Reliability assumed until a category has enough trades of its own
DEFAULT_RELIABILITY: Dict[StrategyCategory, float] = {
    StrategyCategory.ARBITRAGE: 0.8,
    StrategyCategory.CROSS_DEX: 0.75,
    StrategyCategory.TRIANGULAR_ARBITRAGE: 0.7,
    StrategyCategory.MARKET_MAKING: 0.7,
    StrategyCategory.STATISTICAL_ARBITRAGE: 0.75,
}
FALLBACK_RELIABILITY = 0.6

COMPLEMENTARY_CATEGORIES: Dict[StrategyCategory, Tuple[StrategyCategory, ...]] = {
    StrategyCategory.ARBITRAGE: (
        StrategyCategory.CROSS_DEX,
        StrategyCategory.TRIANGULAR_ARBITRAGE,
    ),
    StrategyCategory.FLASH_LOAN: (
        StrategyCategory.ARBITRAGE,
        StrategyCategory.LIQUIDATION,
    ),
    StrategyCategory.MEV: (StrategyCategory.SANDWICH, StrategyCategory.BACKRUN),
}

COMPLEX_EXECUTION_CATEGORIES = frozenset(
    {StrategyCategory.FLASH_LOAN, StrategyCategory.SANDWICH, StrategyCategory.FRONTRUN}
)

DEFAULT_WEIGHTS: Dict[str, float] = {
    "risk": 0.25,
    "profit_probability": 0.30,
    "market_condition": 0.15,
    "reliability": 0.20,
    "timing": 0.10,
}


@dataclass(frozen=True)
class EvaluatedOpportunity:
    """History entry kept by ``DecisionEngine.record_opportunity``."""

    opportunity: Opportunity
    executed: bool
    outcome: Optional[ExecutionOutcome]
    recorded_at: float


class DecisionEngine:
    """
    Multi-factor scorer turning an opportunity into an accept/reject verdict.

    Responsibilities:
    1. Score risk, profit probability, market condition, reliability and timing
    2. Blend the sub-scores into a single confidence in [0, 1]
    3. Apply the accept rule and explain which thresholds passed or failed
    4. Keep a rolling per-category performance window fed by settled outcomes

    Scoring never raises on degenerate inputs: denominators are floored and
    every score is clamped.
    """

    MIN_CONFIDENCE = 0.60
    HIGH_RISK = 0.70
    HIGH_RISK_MIN_CONFIDENCE = 0.85
    ELEVATED_RISK = 0.50
    ELEVATED_RISK_MIN_CONFIDENCE = 0.75
    MIN_PROFIT_USD = 1.0
    MIN_PROFIT_AFTER_COST_USD = 0.5
    # USD per native cost unit; execution costs are quoted in gas
    COST_UNIT_PRICE = 0.00005

    # Trades needed before a category's own success rate counts as reliability
    RELIABILITY_MIN_TRADES = 10
    PERFORMANCE_WINDOW = 100
    HISTORY_LIMIT = 10_000

    # Native cost units above which "High cost" is reported as a risk factor
    HIGH_COST_UNITS = 500_000

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        market_provider: Optional[MarketConditionProvider] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        """
        Initialize decision engine with configuration.

        Args:
            config: Configuration dictionary with optional keys:
                - cost_unit_price: USD price of one native execution-cost unit
                - min_confidence: Confidence floor of the accept rule
                - min_profit_usd: Minimum expected profit in USD
                - min_profit_after_cost_usd: Minimum profit net of cost in USD
                - weights: Mapping overriding the blend weights
            market_provider: Source of the market-condition score; the
                time-of-day baseline is used when omitted
            time_provider: Clock used when ``evaluate`` is called without ``now``
        """
        self.config = config or {}

        # Convert inputs to proper types at the edge
        self.cost_unit_price = float(self.config.get("cost_unit_price", self.COST_UNIT_PRICE))
        self.min_confidence = float(self.config.get("min_confidence", self.MIN_CONFIDENCE))
        self.min_profit_usd = float(self.config.get("min_profit_usd", self.MIN_PROFIT_USD))
        self.min_profit_after_cost_usd = float(
            self.config.get("min_profit_after_cost_usd", self.MIN_PROFIT_AFTER_COST_USD)
        )

        self.weights = dict(DEFAULT_WEIGHTS)
        for key, value in (self.config.get("weights") or {}).items():
            if key not in DEFAULT_WEIGHTS:
                raise ValidationError(f"Unknown decision weight: {key}")
            self.weights[key] = float(value)

        self._market_provider = market_provider
        self._time = time_provider or SystemTimeProvider()

        self._lock = threading.Lock()
        self._performance: Dict[StrategyCategory, RollingPerformanceWindow] = {}
        self._history: Deque[EvaluatedOpportunity] = deque(maxlen=self.HISTORY_LIMIT)

        logger.info("Decision engine initialized")

    # === SCORING ===

    def evaluate(
        self,
        opportunity: Opportunity,
        performance_history: Optional[PerformanceHistory] = None,
        now: Optional[float] = None,
    ) -> Decision:
        """
        Score an opportunity and return an execution verdict.

        Args:
            opportunity: Opportunity to evaluate
            performance_history: Category performance to use instead of the
                engine's own rolling window
            now: Evaluation time (defaults to the time provider)

        Returns:
            Decision with confidence, rationale, risk assessment and
            recommended categories
        """
        now = self._time.current_timestamp() if now is None else now
        history = (
            performance_history
            if performance_history is not None
            else self.performance_for(opportunity.category)
        )

        risk = self.risk_score(opportunity, now)
        scores = DecisionScores(
            risk=risk,
            profit_probability=self.profit_probability(opportunity, history),
            market_condition=self.market_condition(opportunity, now),
            reliability=self.reliability(opportunity.category, history),
            timing=self.timing_score(opportunity, now),
        )
        confidence = self.blend(scores)

        cost_usd = self.cost_usd(opportunity)
        should_execute = self.should_execute(
            confidence, risk, opportunity.estimated_profit_usd, cost_usd
        )

        decision = Decision(
            should_execute=should_execute,
            confidence=confidence,
            rationale=self._rationale(scores, confidence, should_execute, opportunity, cost_usd),
            recommended_categories=self.recommend_categories(opportunity.category),
            risk_assessment=RiskAssessment(
                tier=self.risk_tier(risk),
                factors=self.risk_factors(opportunity, now),
                score=risk,
            ),
            expected_profit_usd=opportunity.estimated_profit_usd,
            evaluated_at=now,
            scores=scores,
        )

        logger.debug(
            f"Decision for {opportunity.id}: execute={should_execute} "
            f"confidence={confidence:.3f} risk={risk:.3f}"
        )
        return decision

    def cost_usd(self, opportunity: Opportunity) -> float:
        """Execution cost converted to USD with the configured unit price."""
        return opportunity.execution_cost * self.cost_unit_price

    def risk_score(self, opportunity: Opportunity, now: float) -> float:
        score = CATEGORY_BASE_RISK.get(opportunity.category, DEFAULT_BASE_RISK)

        cost_ratio = floored_ratio(
            self.cost_usd(opportunity), opportunity.estimated_profit_usd
        )
        score += clamp(cost_ratio / 100, 0.0, 0.3)

        time_to_expiry = opportunity.time_to_expiry(now)
        if time_to_expiry < 1:
            score += 0.3
        elif time_to_expiry < 5:
            score += 0.2
        elif time_to_expiry < 10:
            score += 0.1

        score += (1 - opportunity.confidence) * 0.3
        return clamp(score)

    def profit_probability(
        self, opportunity: Opportunity, history: Optional[PerformanceHistory]
    ) -> float:
        probability = opportunity.confidence
        if history is not None and history.total_trades > 0:
            probability = (probability + history.success_rate) / 2

        cost_usd = self.cost_usd(opportunity)
        margin = opportunity.estimated_profit_usd / (cost_usd if cost_usd > 0 else 1.0)
        if margin > 5:
            probability += 0.10
        elif margin > 2:
            probability += 0.05
        elif margin < 1.2:
            probability -= 0.20

        return clamp(probability)

    def market_condition(self, opportunity: Opportunity, now: float) -> float:
        """Injected market score, or a time-of-day baseline."""
        if self._market_provider is not None:
            return clamp(float(self._market_provider.market_condition(opportunity, now)))

        score = 0.7
        hour = datetime.fromtimestamp(now).hour
        if 9 <= hour <= 16:
            score += 0.1
        if 0 <= hour <= 4:
            score -= 0.1
        return clamp(score)

    def reliability(
        self, category: StrategyCategory, history: Optional[PerformanceHistory]
    ) -> float:
        if history is None or history.total_trades < self.RELIABILITY_MIN_TRADES:
            return DEFAULT_RELIABILITY.get(category, FALLBACK_RELIABILITY)
        return clamp(history.success_rate)

    def timing_score(self, opportunity: Opportunity, now: float) -> float:
        score = 1.0

        age = opportunity.age(now)
        if age > 5:
            score -= 0.3
        elif age > 2:
            score -= 0.1

        time_to_expiry = opportunity.time_to_expiry(now)
        if time_to_expiry < 1:
            score -= 0.4
        elif time_to_expiry < 3:
            score -= 0.2

        return clamp(score)

    def blend(self, scores: DecisionScores) -> float:
        """Weighted confidence; risk contributes through (1 - risk)."""
        w = self.weights
        confidence = (
            (1 - scores.risk) * w["risk"]
            + scores.profit_probability * w["profit_probability"]
            + scores.market_condition * w["market_condition"]
            + scores.reliability * w["reliability"]
            + scores.timing * w["timing"]
        )
        return clamp(confidence)

    def should_execute(
        self, confidence: float, risk: float, profit_usd: float, cost_usd: float
    ) -> bool:
        """
        Accept rule. Every clause is a lower bound on confidence or a fixed
        profit check, so raising confidence can only turn a reject into an
        accept. Confidence at or above HIGH_RISK_MIN_CONFIDENCE passes the
        high-risk clause whatever the risk.
        """
        if confidence < self.min_confidence:
            return False
        if risk > self.HIGH_RISK and confidence < self.HIGH_RISK_MIN_CONFIDENCE:
            return False
        if risk > self.ELEVATED_RISK and confidence < self.ELEVATED_RISK_MIN_CONFIDENCE:
            return False
        if profit_usd < self.min_profit_usd:
            return False
        if profit_usd - cost_usd < self.min_profit_after_cost_usd:
            return False
        return True

    # === CLASSIFICATION ===

    @staticmethod
    def risk_tier(risk: float) -> RiskTier:
        if risk < 0.3:
            return RiskTier.LOW
        if risk < 0.6:
            return RiskTier.MEDIUM
        if risk < 0.8:
            return RiskTier.HIGH
        return RiskTier.EXTREME

    def risk_factors(self, opportunity: Opportunity, now: float) -> Tuple[str, ...]:
        factors: List[str] = []
        if opportunity.execution_cost > self.HIGH_COST_UNITS:
            factors.append("High cost")
        if opportunity.time_to_expiry(now) < 5:
            factors.append("Time-sensitive")
        if opportunity.confidence < 0.7:
            factors.append("Uncertain outcome")
        if opportunity.category in COMPLEX_EXECUTION_CATEGORIES:
            factors.append("Complex execution")
        return tuple(factors)

    @staticmethod
    def recommend_categories(category: StrategyCategory) -> Tuple[StrategyCategory, ...]:
        return (category,) + COMPLEMENTARY_CATEGORIES.get(category, ())

    def _rationale(
        self,
        scores: DecisionScores,
        confidence: float,
        should_execute: bool,
        opportunity: Opportunity,
        cost_usd: float,
    ) -> Tuple[str, ...]:
        reasons: List[str] = []

        if should_execute:
            reasons.append(f"High confidence ({confidence * 100:.1f}%)")
            reasons.append(f"Profit probability: {scores.profit_probability * 100:.1f}%")
            if scores.risk < 0.3:
                reasons.append("Low risk profile")
            elif scores.risk < 0.6:
                reasons.append("Acceptable risk level")
            if scores.market_condition > 0.7:
                reasons.append("Favorable market conditions")
            if scores.reliability > 0.75:
                reasons.append("Proven strategy reliability")
            return tuple(reasons)

        if confidence < self.min_confidence:
            reasons.append("Insufficient confidence")
        if scores.risk > self.HIGH_RISK:
            reasons.append("Risk too high")
        elif scores.risk > self.ELEVATED_RISK and confidence < self.ELEVATED_RISK_MIN_CONFIDENCE:
            reasons.append("Elevated risk without enough confidence")
        if scores.profit_probability < 0.5:
            reasons.append("Low profit probability")
        if scores.timing < 0.5:
            reasons.append("Poor timing factors")

        profit_usd = opportunity.estimated_profit_usd
        if profit_usd < self.min_profit_usd:
            reasons.append(
                f"Profit below minimum (${profit_usd:.2f} < ${self.min_profit_usd:.2f})"
            )
        elif profit_usd - cost_usd < self.min_profit_after_cost_usd:
            reasons.append(
                f"Profit after cost below minimum "
                f"(${profit_usd - cost_usd:.2f} < ${self.min_profit_after_cost_usd:.2f})"
            )
        return tuple(reasons)

    # === PERFORMANCE FEEDBACK ===

    def update_performance(
        self, category: StrategyCategory, success: bool, profit: float
    ) -> PerformanceHistory:
        """Push one outcome into the category window and return the new view."""
        with self._lock:
            window = self._performance.get(category)
            if window is None:
                window = RollingPerformanceWindow(self.PERFORMANCE_WINDOW)
                self._performance[category] = window
            window.add(success, profit)
            return self._snapshot(category, window)

    def performance_for(self, category: StrategyCategory) -> Optional[PerformanceHistory]:
        with self._lock:
            window = self._performance.get(category)
            return self._snapshot(category, window) if window is not None else None

    def performance_snapshot(self) -> Dict[StrategyCategory, PerformanceHistory]:
        with self._lock:
            return {
                category: self._snapshot(category, window)
                for category, window in self._performance.items()
            }

    @staticmethod
    def _snapshot(
        category: StrategyCategory, window: RollingPerformanceWindow
    ) -> PerformanceHistory:
        return PerformanceHistory(
            category=category,
            success_rate=window.success_rate,
            average_profit=window.average_profit,
            total_trades=window.total_trades,
            window_size=window.count,
        )

    def record_opportunity(
        self,
        opportunity: Opportunity,
        executed: bool,
        outcome: Optional[ExecutionOutcome] = None,
    ) -> None:
        """Keep the evaluated opportunity in the bounded history."""
        entry = EvaluatedOpportunity(
            opportunity=opportunity,
            executed=executed,
            outcome=outcome,
            recorded_at=self._time.current_timestamp(),
        )
        with self._lock:
            self._history.append(entry)

    def recent_opportunities(self, limit: int = 100) -> List[EvaluatedOpportunity]:
        with self._lock:
            if limit <= 0:
                return []
            return list(self._history)[-limit:]

    @property
    def history_size(self) -> int:
        with self._lock:
            return len(self._history)

    def format_decision_log(
        self, decision: Decision, timestamp: Optional[float] = None
    ) -> str:
        """
        Format a decision as a single-line log entry.

        Args:
            decision: Decision object to format
            timestamp: Optional Unix timestamp prefixed as ISO 8601

        Returns:
            Formatted log string
        """
        s = decision.scores
        reasons_str = "; ".join(decision.rationale) if decision.rationale else "none"
        categories = ",".join(c.value for c in decision.recommended_categories)

        parts = [
            f"Decision {'EXECUTE' if decision.should_execute else 'SKIP'}",
            f"confidence={decision.confidence:.3f}",
            f"risk={s.risk:.3f}({decision.risk_assessment.tier.value})",
            f"prob={s.profit_probability:.3f}",
            f"market={s.market_condition:.3f}",
            f"reliability={s.reliability:.3f}",
            f"timing={s.timing:.3f}",
            f"profit=${decision.expected_profit_usd:.2f}",
            f"recommend=[{categories}]",
            f"reasons=[{reasons_str}]",
        ]
        log_line = " ".join(parts)

        if timestamp is not None:
            return f"[{timestamp_to_iso(timestamp)}] {log_line}"
        return log_line

