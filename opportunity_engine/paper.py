"""
Paper execution capabilities

Simulate execution, leveraged settlement, opportunity analysis and price
quotes so the engine can run end to end without touching a network.
Randomness comes from an injected RandomProvider for reproducible runs.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from .exceptions import TransientExecutionError
from .interfaces import (
    DeterministicRandomProvider,
    RandomProvider,
    SystemTimeProvider,
    TimeProvider,
)
from .price_oracle import InMemoryPriceOracle
from .types import (
    ExecutionOutcome,
    LeveragedExecutionResult,
    LeveragedOpportunity,
    Opportunity,
    StrategyRecord,
)

logger = logging.getLogger(__name__)


class PaperExecutionCapability:
    """
    Execution capability that settles trades in simulation

    Features:
    - Configurable success probability
    - Latency simulation
    - Occasional transient failures (raised, like a real transport would)
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        random_provider: Optional[RandomProvider] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        """
        Initialize paper execution

        Args:
            config: Configuration containing:
                - success_rate: Probability that a trade settles profitably (default: 0.7)
                - transient_failure_rate: Probability of a raised transient error (default: 0.0)
                - latency_sim_ms: Maximum simulated settlement latency (default: 10)
                - random_seed: Seed used when no random provider is given
            random_provider: Source of randomness
            time_provider: Clock used for settlement timestamps
        """
        self.config = config or {}
        self.success_rate = float(self.config.get("success_rate", 0.7))
        self.transient_failure_rate = float(self.config.get("transient_failure_rate", 0.0))
        self.latency_sim_ms = float(self.config.get("latency_sim_ms", 10))
        self._rng = random_provider or DeterministicRandomProvider(
            self.config.get("random_seed", 42)
        )
        self._time = time_provider or SystemTimeProvider()

        self.metrics = {
            "executions": 0,
            "successes": 0,
            "failures": 0,
            "transient_errors": 0,
            "total_profit_usd": 0.0,
        }

    async def execute(self, strategy: StrategyRecord, opportunity: Opportunity) -> ExecutionOutcome:
        started = self._time.current_timestamp()
        self.metrics["executions"] += 1

        if self.latency_sim_ms > 0:
            await asyncio.sleep(self._rng.uniform(0, self.latency_sim_ms) / 1000.0)
        else:
            await asyncio.sleep(0)

        if self._rng.random() < self.transient_failure_rate:
            self.metrics["transient_errors"] += 1
            raise TransientExecutionError(
                "Simulated settlement timeout",
                strategy_id=strategy.id,
                opportunity_id=opportunity.id,
            )

        success = self._rng.random() < self.success_rate
        settled = self._time.current_timestamp()
        if success:
            self.metrics["successes"] += 1
            self.metrics["total_profit_usd"] += opportunity.estimated_profit_usd
        else:
            self.metrics["failures"] += 1

        return ExecutionOutcome(
            success=success,
            profit=opportunity.estimated_profit if success else 0.0,
            profit_usd=opportunity.estimated_profit_usd if success else 0.0,
            cost_consumed=opportunity.execution_cost,
            duration_seconds=max(0.0, settled - started),
            failure_reason=None if success else "Execution failed",
            settled_at=settled,
            transaction_ref=f"paper-{uuid.uuid4().hex}" if success else None,
        )


class PaperLeveragedExecutor:
    """Leveraged executor that settles in simulation."""

    def __init__(
        self,
        success_rate: float = 0.8,
        random_provider: Optional[RandomProvider] = None,
    ):
        self.success_rate = success_rate
        self._rng = random_provider or DeterministicRandomProvider(7)

    def is_available(self) -> bool:
        return True

    async def execute_leveraged(
        self, opportunity: LeveragedOpportunity, loan_amount: float
    ) -> LeveragedExecutionResult:
        await asyncio.sleep(0)
        if self._rng.random() >= self.success_rate:
            return LeveragedExecutionResult(success=False, error="Simulated revert")

        # Profit scales with the loan actually taken
        scale = loan_amount / opportunity.loan_amount if opportunity.loan_amount else 1.0
        return LeveragedExecutionResult(
            success=True,
            profit=opportunity.net_profit * scale,
            transaction_ref=f"paper-{uuid.uuid4().hex}",
        )


class PaperOpportunityAnalyzer:
    """
    Strategy analysis hook producing synthetic opportunities.

    Each call emits one opportunity for the strategy's category with
    probability ``emit_probability``.
    """

    def __init__(
        self,
        emit_probability: float = 0.05,
        random_provider: Optional[RandomProvider] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.emit_probability = emit_probability
        self._rng = random_provider or DeterministicRandomProvider(11)
        self._time = time_provider or SystemTimeProvider()

    async def analyze(self, strategy: StrategyRecord) -> List[Opportunity]:
        if self._rng.random() >= self.emit_probability:
            return []

        profit_usd = strategy.min_profit_usd + self._rng.uniform(0.5, 50.0)
        return [
            Opportunity.create(
                category=strategy.category,
                risk_tier=strategy.risk_tier,
                estimated_profit=profit_usd / 2000.0,
                estimated_profit_usd=profit_usd,
                confidence=self._rng.uniform(0.5, 0.99),
                ttl_seconds=self._rng.uniform(5.0, 60.0),
                now=self._time.current_timestamp(),
                execution_cost=self._rng.uniform(21_000, 200_000),
                metadata={"source": "paper", "strategy": strategy.name},
            )
        ]


class PaperPriceFeed:
    """Pushes jittered quotes for a few assets into an InMemoryPriceOracle."""

    def __init__(
        self,
        oracle: InMemoryPriceOracle,
        base_prices: Optional[Dict[str, float]] = None,
        venues: Sequence[str] = ("venue_a", "venue_b", "venue_c"),
        max_jitter_percent: float = 1.5,
        random_provider: Optional[RandomProvider] = None,
    ):
        self.oracle = oracle
        self.base_prices = base_prices or {"ETH": 2000.0, "BTC": 40000.0, "USDC": 1.0}
        self.venues = tuple(venues)
        self.max_jitter_percent = max_jitter_percent
        self._rng = random_provider or DeterministicRandomProvider(23)

    def tick(self) -> int:
        """Publish one quote per (venue, asset); returns how many were written."""
        written = 0
        for asset, base in self.base_prices.items():
            for venue in self.venues:
                jitter = self._rng.uniform(-self.max_jitter_percent, self.max_jitter_percent)
                self.oracle.update(venue, asset, base * (1 + jitter / 100))
                written += 1
        return written

    async def run(self, interval: float = 0.5) -> None:
        while True:
            self.tick()
            await asyncio.sleep(interval)
