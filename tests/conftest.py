"""Shared fixtures for the test suite."""

import pytest
from prometheus_client import CollectorRegistry

from opportunity_engine.exceptions import TransientExecutionError
from opportunity_engine.interfaces import DeterministicTimeProvider
from opportunity_engine.metrics import DispatchMetrics
from opportunity_engine.types import (
    Opportunity,
    PriceDiscrepancy,
    RiskTier,
    StrategyCategory,
)

from tests.fakes import START_TIME


@pytest.fixture
def clock():
    return DeterministicTimeProvider(START_TIME)


@pytest.fixture
def metrics():
    return DispatchMetrics(CollectorRegistry())


@pytest.fixture
def make_opportunity(clock):
    """Factory for opportunities created at the fixture clock's time."""

    def _make(
        category=StrategyCategory.ARBITRAGE,
        confidence: float = 0.9,
        profit_usd: float = 100.0,
        ttl_seconds: float = 60.0,
        execution_cost: float = 0.0,
        risk_tier=RiskTier.LOW,
        **kwargs,
    ) -> Opportunity:
        return Opportunity.create(
            category=category,
            risk_tier=risk_tier,
            estimated_profit=profit_usd / 2000.0,
            estimated_profit_usd=profit_usd,
            confidence=confidence,
            ttl_seconds=ttl_seconds,
            now=clock.current_timestamp(),
            execution_cost=execution_cost,
            **kwargs,
        )

    return _make


@pytest.fixture
def one_percent_gap():
    return PriceDiscrepancy(
        asset="USDC",
        buy_venue="venue_a",
        sell_venue="venue_b",
        buy_price=1.00,
        sell_price=1.01,
        spread_percent=1.0,
    )


@pytest.fixture
def transient_error():
    return TransientExecutionError("simulated timeout")
