"""Tests for shared records and their validation."""

import dataclasses

import pytest

from opportunity_engine.exceptions import ValidationError
from opportunity_engine.types import (
    DEFAULT_OPPORTUNITY_TTL_SECONDS,
    EngineMetrics,
    ExecutionOutcome,
    LeveragedOpportunity,
    Opportunity,
    RiskTier,
    StrategyCategory,
)

NOW = 1_700_000_000.0


def _opportunity(**overrides):
    fields = dict(
        id="opp-1",
        category=StrategyCategory.ARBITRAGE,
        risk_tier=RiskTier.LOW,
        estimated_profit=0.05,
        estimated_profit_usd=100.0,
        confidence=0.9,
        created_at=NOW,
    )
    fields.update(overrides)
    return Opportunity(**fields)


class TestOpportunity:
    def test_default_expiry(self):
        opportunity = _opportunity()
        assert opportunity.expires_at == NOW + DEFAULT_OPPORTUNITY_TTL_SECONDS

    def test_string_classification_converted(self):
        opportunity = _opportunity(category="FRONTRUN", risk_tier="EXTREME")
        assert opportunity.category is StrategyCategory.FRONTRUN
        assert opportunity.risk_tier is RiskTier.EXTREME

    def test_unknown_category_rejected(self):
        with pytest.raises(ValidationError, match="Invalid opportunity classification"):
            _opportunity(category="LOTTERY")

    @pytest.mark.parametrize("confidence", [-0.1, 1.5, float("nan")])
    def test_confidence_out_of_range(self, confidence):
        with pytest.raises(ValidationError):
            _opportunity(confidence=confidence)

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError, match="id cannot be empty"):
            _opportunity(id="")

    def test_expiry_before_creation_rejected(self):
        with pytest.raises(ValidationError, match="expires_at"):
            _opportunity(expires_at=NOW - 1)

    def test_expiry_helpers(self):
        opportunity = Opportunity.create(
            category=StrategyCategory.MEV,
            risk_tier=RiskTier.HIGH,
            estimated_profit=1.0,
            estimated_profit_usd=10.0,
            confidence=0.5,
            ttl_seconds=5,
            now=NOW,
        )
        assert opportunity.time_to_expiry(NOW + 2) == pytest.approx(3.0)
        assert opportunity.age(NOW + 2) == pytest.approx(2.0)
        assert not opportunity.is_expired(NOW + 4.9)
        assert opportunity.is_expired(NOW + 5)

    def test_immutable(self):
        opportunity = _opportunity()
        with pytest.raises(dataclasses.FrozenInstanceError):
            opportunity.confidence = 0.1

    def test_sequences_stored_as_tuples(self):
        opportunity = _opportunity(assets=["ETH", "USDC"], venues=["a"])
        assert opportunity.assets == ("ETH", "USDC")
        assert opportunity.venues == ("a",)


class TestLeveragedOpportunity:
    def test_requires_positive_net_profit(self):
        with pytest.raises(ValidationError, match="net_profit"):
            LeveragedOpportunity(
                id="lev-1",
                category=StrategyCategory.FLASH_LOAN,
                risk_tier=RiskTier.MEDIUM,
                estimated_profit=0.0,
                estimated_profit_usd=0.0,
                confidence=0.6,
                created_at=NOW,
                loan_amount=100.0,
                net_profit=0.0,
            )

    def test_requires_positive_loan(self):
        with pytest.raises(ValidationError, match="loan_amount"):
            LeveragedOpportunity(
                id="lev-1",
                category=StrategyCategory.FLASH_LOAN,
                risk_tier=RiskTier.MEDIUM,
                estimated_profit=0.4,
                estimated_profit_usd=800.0,
                confidence=0.6,
                created_at=NOW,
                loan_amount=0.0,
                net_profit=0.4,
            )

    def test_is_an_opportunity(self):
        lev = LeveragedOpportunity(
            id="lev-1",
            category=StrategyCategory.FLASH_LOAN,
            risk_tier=RiskTier.MEDIUM,
            estimated_profit=0.4,
            estimated_profit_usd=800.0,
            confidence=0.6,
            created_at=NOW,
            loan_amount=100.0,
            net_profit=0.4,
        )
        assert isinstance(lev, Opportunity)
        assert lev.expires_at == NOW + DEFAULT_OPPORTUNITY_TTL_SECONDS


class TestExecutionOutcome:
    def test_failed_outcome(self):
        outcome = ExecutionOutcome.failed("boom", started_at=NOW, now=NOW + 0.25)
        assert not outcome.success
        assert outcome.failure_reason == "boom"
        assert outcome.duration_seconds == pytest.approx(0.25)
        assert outcome.settled_at == NOW + 0.25
        assert not outcome.rejected

    def test_rejected_by_gate(self):
        outcome = ExecutionOutcome.rejected_by_gate("low confidence", now=NOW)
        assert outcome.rejected
        assert outcome.profit_usd == 0.0
        assert outcome.duration_seconds == 0.0


def test_engine_metrics_to_dict():
    metrics = EngineMetrics(
        is_running=True,
        trade_count=3,
        decisions_per_second=2,
        queue_size=0,
        worker_count=4,
        dropped_count=1,
        rejected_count=1,
        failed_count=0,
    )
    data = metrics.to_dict()
    assert data["trade_count"] == 3
    assert data["predictor"] == {}
