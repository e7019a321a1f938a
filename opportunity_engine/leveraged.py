"""
Leveraged (borrowed capital) opportunity construction.

Turns raw cross-venue price discrepancies into fully specified leveraged
opportunities: loan sizing, borrow/swap/swap/repay steps, fees, gas and
slippage netted out, confidence and risk derived from fixed breakpoints.
Candidates that are not profitable or fail the feasibility gate never reach
the dispatcher.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .decision_engine import DecisionEngine
from .interfaces import PriceOracle, SystemTimeProvider, TimeProvider
from .types import (
    LeveragedExecutionResult,
    LeveragedOpportunity,
    LeveragedStep,
    PriceDiscrepancy,
    StepAction,
    StrategyCategory,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulationStep:
    action: StepAction
    status: str
    output: Dict[str, Any]


@dataclass(frozen=True)
class SimulationResult:
    """Dry run of a leveraged opportunity's steps."""

    success: bool
    estimated_profit: float
    estimated_cost_units: float
    steps: List[SimulationStep]


@dataclass(frozen=True)
class BuilderStatistics:
    total_opportunities: int = 0
    average_profit_usd: float = 0.0
    average_confidence: float = 0.0
    average_risk: float = 0.0


def scale_loan_amount(
    probability: float,
    base_amount: float,
    min_probability: float = 0.40,
    max_multiplier: float = 5.0,
) -> float:
    """
    Scale a loan with predicted success probability.

    Below ``min_probability`` the loan is zero (do not execute). From there
    the multiplier rises linearly from 1x to ``max_multiplier`` at 1.0.
    """
    if probability < min_probability:
        return 0.0
    probability = min(probability, 1.0)
    span = 1.0 - min_probability
    fraction = (probability - min_probability) / span if span > 0 else 1.0
    return base_amount * (1 + fraction * (max_multiplier - 1))


class LeveragedOpportunityBuilder:
    """
    Builds and gates leveraged opportunities from price discrepancies.

    Config keys (all optional):
        enabled, loan_amount, loan_asset, fee_rate, gas_estimate,
        slippage_rate, step_slippage, min_profit_usd, min_confidence,
        max_risk, fallback_price, ttl_seconds, min_spread_percent,
        recent_window_seconds, fresh_window_seconds, gas_units
    """

    FEE_RATE = 0.0009
    GAS_ESTIMATE = 0.5
    SLIPPAGE_RATE = 0.005
    STEP_SLIPPAGE = 0.5
    MAX_SCORE = 0.95

    def __init__(
        self,
        oracle: Optional[PriceOracle] = None,
        config: Optional[Dict[str, Any]] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.config = config or {}
        self._oracle = oracle
        self._time = time_provider or SystemTimeProvider()

        self.enabled = bool(self.config.get("enabled", True))
        self.loan_amount = float(self.config.get("loan_amount", 100.0))
        self.loan_asset = str(self.config.get("loan_asset", "ETH"))
        self.fee_rate = float(self.config.get("fee_rate", self.FEE_RATE))
        self.gas_estimate = float(self.config.get("gas_estimate", self.GAS_ESTIMATE))
        self.slippage_rate = float(self.config.get("slippage_rate", self.SLIPPAGE_RATE))
        self.step_slippage = float(self.config.get("step_slippage", self.STEP_SLIPPAGE))
        self.min_profit_usd = float(self.config.get("min_profit_usd", 1.0))
        self.min_confidence = float(self.config.get("min_confidence", 0.6))
        self.max_risk = float(self.config.get("max_risk", 0.7))
        self.fallback_price = float(self.config.get("fallback_price", 2000.0))
        self.ttl_seconds = float(self.config.get("ttl_seconds", 10.0))
        self.min_spread_percent = float(self.config.get("min_spread_percent", 0.3))
        self.recent_window_seconds = float(self.config.get("recent_window_seconds", 10.0))
        self.fresh_window_seconds = float(self.config.get("fresh_window_seconds", 5.0))
        # Native execution-cost units attached to every leveraged opportunity
        self.gas_units = float(self.config.get("gas_units", 500_000))

        self._lock = threading.Lock()
        self._recent: List[LeveragedOpportunity] = []

    # === CONSTRUCTION ===

    def build(
        self, signal: PriceDiscrepancy, loan_amount: Optional[float] = None
    ) -> Optional[LeveragedOpportunity]:
        """
        Construct a leveraged opportunity from a price discrepancy.

        Args:
            signal: Cross-venue price gap
            loan_amount: Loan size (defaults to the configured amount)

        Returns:
            LeveragedOpportunity, or None when the net profit is not positive
        """
        loan = self.loan_amount if loan_amount is None else float(loan_amount)
        if loan <= 0 or signal.buy_price <= 0:
            return None

        gross = loan * (signal.sell_price - signal.buy_price)
        fee = loan * self.fee_rate
        slippage = gross * self.slippage_rate
        net = gross - fee - self.gas_estimate - slippage

        if net <= 0:
            logger.debug(
                f"Leveraged candidate on {signal.asset} not viable: net {net:.6f} "
                f"(gross {gross:.6f}, fee {fee:.6f}, gas {self.gas_estimate})"
            )
            return None

        confidence = self.confidence_for(signal.spread_percent, net)
        risk = self.risk_for(loan, signal.spread_percent)
        now = self._time.current_timestamp()

        return LeveragedOpportunity(
            id=str(uuid.uuid4()),
            category=StrategyCategory.FLASH_LOAN,
            risk_tier=DecisionEngine.risk_tier(risk),
            estimated_profit=net,
            estimated_profit_usd=net * self._loan_asset_price(),
            confidence=confidence,
            execution_cost=self.gas_units,
            assets=(self.loan_asset, signal.asset),
            venues=(signal.buy_venue, signal.sell_venue),
            created_at=now,
            expires_at=now + self.ttl_seconds,
            metadata={"spread_percent": signal.spread_percent},
            loan_amount=loan,
            loan_asset=self.loan_asset,
            steps=self._steps(signal, loan, fee),
            gross_profit=gross,
            fee=fee,
            gas_cost=self.gas_estimate,
            slippage_cost=slippage,
            net_profit=net,
            risk_score=risk,
        )

    def _steps(self, signal: PriceDiscrepancy, loan: float, fee: float) -> List[LeveragedStep]:
        bought = loan / signal.buy_price
        return [
            LeveragedStep(
                action=StepAction.BORROW,
                amount_in=loan,
                asset_in=self.loan_asset,
            ),
            LeveragedStep(
                action=StepAction.SWAP,
                amount_in=loan,
                asset_in=self.loan_asset,
                asset_out=signal.asset,
                expected_amount_out=bought,
                venue=signal.buy_venue,
                slippage_tolerance=self.step_slippage,
            ),
            LeveragedStep(
                action=StepAction.SWAP,
                amount_in=bought,
                asset_in=signal.asset,
                asset_out=self.loan_asset,
                expected_amount_out=bought * signal.sell_price,
                venue=signal.sell_venue,
                slippage_tolerance=self.step_slippage,
            ),
            LeveragedStep(
                action=StepAction.REPAY,
                amount_in=loan + fee,
                asset_out=self.loan_asset,
            ),
        ]

    def confidence_for(self, spread_percent: float, net_profit: float) -> float:
        confidence = 0.5

        if spread_percent > 2.0:
            confidence += 0.3
        elif spread_percent > 1.0:
            confidence += 0.2
        elif spread_percent > 0.5:
            confidence += 0.1

        if net_profit > 1.0:
            confidence += 0.2
        elif net_profit > 0.5:
            confidence += 0.1

        return min(confidence, self.MAX_SCORE)

    def risk_for(self, loan_amount: float, spread_percent: float) -> float:
        """Larger loans and thinner spreads carry more risk."""
        risk = 0.3

        if loan_amount > 500:
            risk += 0.3
        elif loan_amount > 100:
            risk += 0.2
        elif loan_amount > 50:
            risk += 0.1

        if spread_percent < 0.5:
            risk += 0.3
        elif spread_percent < 1.0:
            risk += 0.2
        elif spread_percent < 2.0:
            risk += 0.1

        return min(risk, self.MAX_SCORE)

    def _loan_asset_price(self) -> float:
        if self._oracle is None:
            return self.fallback_price
        try:
            price = self._oracle.current_price(self.loan_asset)
        except Exception as e:
            logger.warning(f"Price lookup for {self.loan_asset} failed: {e}")
            return self.fallback_price
        return price if price else self.fallback_price

    # === FEASIBILITY ===

    def is_viable(self, opportunity: LeveragedOpportunity) -> bool:
        """Feasibility gate applied before an opportunity is surfaced."""
        if not self.enabled:
            return False
        if opportunity.estimated_profit_usd < self.min_profit_usd:
            return False
        if opportunity.confidence < self.min_confidence:
            return False
        if opportunity.risk_score > self.max_risk:
            return False
        return True

    def scan(self) -> List[LeveragedOpportunity]:
        """
        Pull discrepancies from the oracle, build and gate each one.

        Oracle failures are logged and yield no opportunities.

        Returns:
            Opportunities that passed the gate during this scan
        """
        if self._oracle is None or not self.enabled:
            return []

        try:
            signals = self._oracle.find_discrepancies(self.min_spread_percent)
        except Exception as e:
            logger.debug(f"Error scanning for leveraged opportunities: {e}")
            return []

        found = []
        for signal in signals:
            opportunity = self.build(signal)
            if opportunity is None or not self.is_viable(opportunity):
                continue
            found.append(opportunity)
            logger.info(
                f"Leveraged opportunity detected on {signal.asset}: "
                f"profit=${opportunity.estimated_profit_usd:.2f} "
                f"confidence={opportunity.confidence:.2f} risk={opportunity.risk_score:.2f}"
            )

        now = self._time.current_timestamp()
        with self._lock:
            self._recent.extend(found)
            self._recent = [
                o for o in self._recent if now - o.created_at < self.recent_window_seconds
            ]
        return found

    def recent(self, window_seconds: Optional[float] = None) -> List[LeveragedOpportunity]:
        """Opportunities found within the freshness window (5s by default)."""
        window = self.fresh_window_seconds if window_seconds is None else window_seconds
        now = self._time.current_timestamp()
        with self._lock:
            return [o for o in self._recent if now - o.created_at < window]

    def best(self) -> Optional[LeveragedOpportunity]:
        """Fresh opportunity with the highest profit x confidence."""
        candidates = self.recent()
        if not candidates:
            return None
        return max(candidates, key=lambda o: o.estimated_profit_usd * o.confidence)

    def simulate(self, opportunity: LeveragedOpportunity) -> SimulationResult:
        """Walk the steps without executing anything."""
        steps = []
        for step in opportunity.steps:
            if step.action == StepAction.BORROW:
                output = {"borrowed": step.amount_in, "asset": step.asset_in}
            elif step.action == StepAction.SWAP:
                output = {
                    "amount_in": step.amount_in,
                    "amount_out": step.expected_amount_out,
                    "venue": step.venue,
                }
            elif step.action == StepAction.REPAY:
                output = {"repaid": step.amount_in, "asset": step.asset_out}
            else:
                output = {"amount": step.amount_in}
            steps.append(SimulationStep(action=step.action, status="success", output=output))

        logger.info(
            f"Simulated leveraged opportunity {opportunity.id}: "
            f"loan={opportunity.loan_amount} profit={opportunity.net_profit:.6f}"
        )
        return SimulationResult(
            success=True,
            estimated_profit=opportunity.net_profit,
            estimated_cost_units=opportunity.execution_cost,
            steps=steps,
        )

    def statistics(self) -> BuilderStatistics:
        with self._lock:
            opportunities = list(self._recent)
        if not opportunities:
            return BuilderStatistics()
        n = len(opportunities)
        return BuilderStatistics(
            total_opportunities=n,
            average_profit_usd=sum(o.estimated_profit_usd for o in opportunities) / n,
            average_confidence=sum(o.confidence for o in opportunities) / n,
            average_risk=sum(o.risk_score for o in opportunities) / n,
        )


class LeveragedExecutionStats:
    """Running totals for leveraged executions."""

    def __init__(self):
        self._lock = threading.Lock()
        self.execution_count = 0
        self.successful_executions = 0
        self.total_profit = 0.0

    def record(self, result: LeveragedExecutionResult) -> None:
        with self._lock:
            self.execution_count += 1
            if result.success:
                self.successful_executions += 1
                self.total_profit += result.profit

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "execution_count": self.execution_count,
                "successful_executions": self.successful_executions,
                "total_profit": self.total_profit,
                "success_rate": (
                    self.successful_executions / self.execution_count
                    if self.execution_count
                    else 0.0
                ),
                "average_profit": (
                    self.total_profit / self.successful_executions
                    if self.successful_executions
                    else 0.0
                ),
            }

