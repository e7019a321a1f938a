"""
Capability interfaces consumed by the opportunity engine.

The core never talks to networks, price feeds, wallets or models directly;
it calls the lightweight protocols below, which concrete adapters (or test
fakes) implement. Time and random providers keep the scoring and paper
execution paths deterministic under test.
"""

import random
import time
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .types import (
    ExecutionOutcome,
    LeveragedExecutionResult,
    LeveragedOpportunity,
    Opportunity,
    PriceDiscrepancy,
    StrategyRecord,
)


@runtime_checkable
class TimeProvider(Protocol):
    """Protocol for time-related operations."""

    def current_timestamp(self) -> float:
        """Get current Unix timestamp."""
        ...


@runtime_checkable
class RandomProvider(Protocol):
    """Protocol for random number generation."""

    def random(self) -> float:
        """Generate random float between 0.0 and 1.0."""
        ...

    def uniform(self, a: float, b: float) -> float:
        """Generate random float between a and b."""
        ...


@runtime_checkable
class ExecutionCapability(Protocol):
    """
    Runs a strategy against an opportunity and awaits settlement.

    May raise TransientExecutionError or TerminalExecutionError; the
    dispatcher turns any exception into a failed outcome.
    """

    async def execute(
        self, strategy: StrategyRecord, opportunity: Opportunity
    ) -> ExecutionOutcome:
        ...


@runtime_checkable
class PriceOracle(Protocol):
    """Live price lookups and cross-venue discrepancy detection."""

    def current_price(self, asset: str) -> Optional[float]:
        """Average price for ``asset``, or None when unavailable."""
        ...

    def find_discrepancies(self, min_spread_percent: float) -> List[PriceDiscrepancy]:
        ...


@runtime_checkable
class PredictiveOracle(Protocol):
    """External model estimating the probability that an opportunity pays off."""

    async def predict(self, opportunity: Opportunity) -> float:
        """Probability in [0, 1]."""
        ...

    async def train(self) -> None:
        ...

    def is_training(self) -> bool:
        ...

    def record_sample(self, opportunity: Opportunity, outcome: ExecutionOutcome) -> None:
        """Feed a settled outcome back as a labelled training sample."""
        ...

    def sample_count(self) -> int:
        ...


@runtime_checkable
class LeveragedExecutor(Protocol):
    """Submits a leveraged settlement (borrow, swaps, repay) as one transaction."""

    def is_available(self) -> bool:
        ...

    async def execute_leveraged(
        self, opportunity: LeveragedOpportunity, loan_amount: float
    ) -> LeveragedExecutionResult:
        ...


@runtime_checkable
class WalletCapability(Protocol):
    """Balance and transfer access, used by external sweep utilities only."""

    async def balance(self, venue: str) -> float:
        ...

    async def transfer(self, venue: str, destination: str, amount: float) -> Dict[str, Any]:
        ...


@runtime_checkable
class MarketConditionProvider(Protocol):
    """Supplies the market-condition score in [0, 1] for the decision engine."""

    def market_condition(self, opportunity: Opportunity, now: float) -> float:
        ...


@runtime_checkable
class StrategyAnalyzer(Protocol):
    """Per-strategy analysis hook producing fresh opportunities."""

    async def analyze(self, strategy: StrategyRecord) -> List[Opportunity]:
        ...


class SystemTimeProvider:
    """Production time provider using system time."""

    def current_timestamp(self) -> float:
        """Get current Unix timestamp."""
        return time.time()


class DeterministicTimeProvider:
    """Deterministic time provider for testing and replay."""

    def __init__(self, start_time: float = 1640995200.0):  # 2022-01-01
        self._current_time = start_time

    def current_timestamp(self) -> float:
        """Get current timestamp."""
        return self._current_time

    def advance_time(self, seconds: float) -> None:
        """Manually advance time by specified seconds."""
        self._current_time += seconds

    def set_time(self, timestamp: float) -> None:
        """Set current time to specific timestamp."""
        self._current_time = timestamp


class SystemRandomProvider:
    """Production random provider using system random."""

    def random(self) -> float:
        return random.random()

    def uniform(self, a: float, b: float) -> float:
        return random.uniform(a, b)


class DeterministicRandomProvider:
    """Deterministic random provider for testing and paper runs."""

    def __init__(self, seed: int = 42):
        self._rng = random.Random(seed)

    def random(self) -> float:
        """Generate random float between 0.0 and 1.0."""
        return self._rng.random()

    def uniform(self, a: float, b: float) -> float:
        """Generate random float between a and b."""
        return self._rng.uniform(a, b)
