"""
Tests for the dispatch engine: queueing, gating, execution feedback,
events, lifecycle, retraining and the leveraged monitor
"""

import asyncio

import pytest

from opportunity_engine.decision_engine import DecisionEngine
from opportunity_engine.dispatch_engine import (
    LEVERAGED_SUCCESS,
    TRADE_EXECUTED,
    DispatchEngine,
)
from opportunity_engine.exceptions import TerminalExecutionError, ValidationError
from opportunity_engine.leveraged import LeveragedOpportunityBuilder
from opportunity_engine.strategy_catalog import StrategyCatalog
from opportunity_engine.types import (
    LeveragedSuccessEvent,
    RiskTier,
    StrategyCategory,
    StrategySpec,
    TradeExecutedEvent,
)

from tests.fakes import (
    FakeAnalyzer,
    FakeExecution,
    FakeLeveragedExecutor,
    FakePredictiveOracle,
    FakePriceOracle,
    FixedMarket,
)


@pytest.fixture
def catalog(clock):
    catalog = StrategyCatalog(time_provider=clock)
    catalog.register(
        StrategySpec(
            name="Simple Arbitrage 1",
            category=StrategyCategory.ARBITRAGE,
            risk_tier=RiskTier.LOW,
            priority=100,
        )
    )
    return catalog


@pytest.fixture
def decision_engine(clock):
    return DecisionEngine(market_provider=FixedMarket(0.7), time_provider=clock)


@pytest.fixture
def execution():
    return FakeExecution()


@pytest.fixture
def make_engine(catalog, decision_engine, execution, metrics, clock):
    def _make(config=None, **kwargs):
        settings = {"worker_count": 1, "batch_size": 10, "idle_sleep_seconds": 0.001}
        settings.update(config or {})
        kwargs.setdefault("execution", execution)
        return DispatchEngine(
            catalog=kwargs.pop("catalog", catalog),
            decision_engine=decision_engine,
            config=settings,
            metrics=metrics,
            time_provider=clock,
            **kwargs,
        )

    return _make


def _sample(metrics, name, labels=None):
    return metrics.registry.get_sample_value(name, labels or {}) or 0


class TestConfiguration:
    @pytest.mark.parametrize("key", ["queue_capacity", "batch_size", "worker_count"])
    def test_non_positive_sizes_rejected(self, make_engine, key):
        with pytest.raises(ValidationError):
            make_engine({key: 0})

    def test_worker_count_defaults_to_cores(self, catalog, decision_engine, execution, monkeypatch):
        monkeypatch.setattr("os.cpu_count", lambda: 4)
        engine = DispatchEngine(catalog, decision_engine, execution)
        assert engine.worker_count == 40


class TestEnqueue:
    def test_capacity_overflow_dropped(self, make_engine, make_opportunity, metrics):
        engine = make_engine({"queue_capacity": 3})

        accepted = [engine.enqueue(make_opportunity()) for _ in range(4)]

        assert accepted == [True, True, True, False]
        assert engine.queue_size == 3
        assert engine.get_metrics().dropped_count == 1
        assert _sample(
            metrics, "opportunity_engine_opportunities_dropped_total", {"reason": "queue_full"}
        ) == 1

    def test_invalid_input_dropped(self, make_engine, metrics):
        engine = make_engine()

        assert engine.enqueue({"category": "ARBITRAGE"}) is False
        assert engine.queue_size == 0
        assert _sample(
            metrics, "opportunity_engine_opportunities_dropped_total", {"reason": "invalid"}
        ) == 1

    def test_expired_dropped(self, make_engine, make_opportunity, clock):
        engine = make_engine()
        opportunity = make_opportunity(ttl_seconds=5)
        clock.advance_time(5)

        assert engine.enqueue(opportunity) is False
        assert engine.get_metrics().dropped_count == 1

    def test_clear_queue(self, make_engine, make_opportunity):
        engine = make_engine()
        for _ in range(5):
            engine.enqueue(make_opportunity())

        assert engine.clear_queue() == 5
        assert engine.queue_size == 0


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_empty_queue(self, make_engine):
        assert await make_engine().run_cycle() == []

    @pytest.mark.asyncio
    async def test_batch_taken_in_fifo_order(self, make_engine, make_opportunity, execution):
        engine = make_engine({"batch_size": 2})
        opportunities = [make_opportunity() for _ in range(3)]
        for opportunity in opportunities:
            engine.enqueue(opportunity)

        outcomes = await engine.run_cycle()

        assert len(outcomes) == 2
        assert all(o.success for o in outcomes)
        assert [opp_id for _, opp_id in execution.calls] == [o.id for o in opportunities[:2]]
        assert engine.queue_size == 1

        await engine.run_cycle()
        assert engine.queue_size == 0
        assert engine.get_metrics().trade_count == 3

    @pytest.mark.asyncio
    async def test_outcome_fed_back(
        self, make_engine, make_opportunity, catalog, decision_engine, metrics
    ):
        engine = make_engine()
        engine.enqueue(make_opportunity(profit_usd=40.0))

        [outcome] = await engine.run_cycle()

        strategy = catalog.select_for(StrategyCategory.ARBITRAGE)
        assert outcome.success
        assert strategy.trades_attempted == 1
        assert strategy.cumulative_profit_usd == pytest.approx(40.0)
        assert decision_engine.performance_for(StrategyCategory.ARBITRAGE).total_trades == 1
        assert decision_engine.recent_opportunities()[0].executed
        assert _sample(
            metrics,
            "opportunity_engine_executions_total",
            {"category": "ARBITRAGE", "result": "success"},
        ) == 1

    @pytest.mark.asyncio
    async def test_rejected_by_decision_engine(
        self, make_engine, make_opportunity, execution, catalog, metrics
    ):
        engine = make_engine()
        engine.enqueue(
            make_opportunity(category=StrategyCategory.FRONTRUN, confidence=0.95, ttl_seconds=0.5)
        )

        [outcome] = await engine.run_cycle()

        assert not outcome.success
        assert outcome.rejected
        assert execution.calls == []
        assert catalog.select_for(StrategyCategory.ARBITRAGE).trades_attempted == 0
        assert engine.get_metrics().rejected_count == 1
        assert _sample(
            metrics, "opportunity_engine_rejections_total", {"reason": "low_confidence"}
        ) == 1

    @pytest.mark.asyncio
    async def test_oracle_probability_gates(self, make_engine, make_opportunity, execution):
        engine = make_engine(predictive_oracle=FakePredictiveOracle(probability=0.3))
        engine.enqueue(make_opportunity())

        [outcome] = await engine.run_cycle()

        assert outcome.rejected
        assert "Confidence too low" in outcome.failure_reason
        assert execution.calls == []

    @pytest.mark.asyncio
    async def test_oracle_failure_rejects(self, make_engine, make_opportunity, metrics):
        class BrokenOracle(FakePredictiveOracle):
            async def predict(self, opportunity):
                raise RuntimeError("model not loaded")

        engine = make_engine(predictive_oracle=BrokenOracle())
        engine.enqueue(make_opportunity())

        [outcome] = await engine.run_cycle()

        assert outcome.rejected
        assert _sample(
            metrics, "opportunity_engine_rejections_total", {"reason": "estimate_error"}
        ) == 1

    @pytest.mark.asyncio
    async def test_no_strategy_for_category(self, make_engine, make_opportunity, clock):
        engine = make_engine(catalog=StrategyCatalog(time_provider=clock))
        engine.enqueue(make_opportunity())

        [outcome] = await engine.run_cycle()

        assert outcome.rejected
        assert outcome.failure_reason == "No strategy available"

    @pytest.mark.asyncio
    async def test_expired_while_queued(self, make_engine, make_opportunity, clock, execution):
        engine = make_engine()
        engine.enqueue(make_opportunity(ttl_seconds=2))
        clock.advance_time(3)

        [outcome] = await engine.run_cycle()

        assert outcome.rejected
        assert outcome.failure_reason == "Opportunity expired"
        assert execution.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,error_type,prefix",
        [
            (None, "transient", "Transient execution error"),
            (TerminalExecutionError("insufficient balance"), "terminal", "Execution rejected"),
            (RuntimeError("boom"), "unexpected", "Execution error"),
        ],
    )
    async def test_execution_errors_become_failed_outcomes(
        self, make_engine, make_opportunity, catalog, metrics, transient_error, error, error_type, prefix
    ):
        engine = make_engine(execution=FakeExecution(error=error or transient_error))
        engine.enqueue(make_opportunity())

        [outcome] = await engine.run_cycle()

        assert not outcome.success
        assert not outcome.rejected
        assert outcome.failure_reason.startswith(prefix)
        assert engine.get_metrics().failed_count == 1
        assert catalog.select_for(StrategyCategory.ARBITRAGE).trades_attempted == 1
        assert _sample(
            metrics, "opportunity_engine_execution_errors_total", {"error_type": error_type}
        ) == 1

    @pytest.mark.asyncio
    async def test_decisions_per_second(self, make_engine, make_opportunity, clock):
        engine = make_engine()
        for _ in range(4):
            engine.enqueue(make_opportunity())
        await engine.run_cycle()

        clock.advance_time(1.0)
        engine.enqueue(make_opportunity())
        await engine.run_cycle()

        assert engine.get_metrics().decisions_per_second == 4

    @pytest.mark.asyncio
    async def test_decisions_per_second_drops_to_zero_when_idle(
        self, make_engine, make_opportunity, clock
    ):
        engine = make_engine()
        for _ in range(6):
            engine.enqueue(make_opportunity())
        await engine.run_cycle()
        clock.advance_time(1.0)
        engine.enqueue(make_opportunity())
        await engine.run_cycle()
        assert engine.get_metrics().decisions_per_second == 6

        clock.advance_time(600.0)

        assert engine.get_metrics().decisions_per_second == 0


class TestEvents:
    @pytest.mark.asyncio
    async def test_trade_executed_sync_and_async_handlers(self, make_engine, make_opportunity):
        engine = make_engine()
        received = []
        awaited = []

        async def async_handler(event):
            awaited.append(event)

        engine.on(TRADE_EXECUTED, received.append)
        engine.on(TRADE_EXECUTED, async_handler)
        opportunity = make_opportunity()
        engine.enqueue(opportunity)

        await engine.run_cycle()
        await asyncio.sleep(0)

        assert len(received) == 1
        event = received[0]
        assert isinstance(event, TradeExecutedEvent)
        assert event.opportunity.id == opportunity.id
        assert event.outcome.success
        assert event.runner_id == 0
        assert awaited == received

    @pytest.mark.asyncio
    async def test_rejections_emit_nothing(self, make_engine, make_opportunity):
        engine = make_engine(predictive_oracle=FakePredictiveOracle(probability=0.1))
        received = []
        engine.on(TRADE_EXECUTED, received.append)
        engine.enqueue(make_opportunity())

        await engine.run_cycle()

        assert received == []

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_cycle(self, make_engine, make_opportunity):
        engine = make_engine()

        def broken(event):
            raise RuntimeError("listener down")

        received = []
        engine.on(TRADE_EXECUTED, broken)
        engine.on(TRADE_EXECUTED, received.append)
        engine.enqueue(make_opportunity())

        [outcome] = await engine.run_cycle()

        assert outcome.success
        assert len(received) == 1

    def test_unknown_event_rejected(self, make_engine):
        with pytest.raises(ValidationError, match="Unknown event"):
            make_engine().on("order_filled", print)

    @pytest.mark.asyncio
    async def test_off(self, make_engine, make_opportunity):
        engine = make_engine()
        received = []
        engine.on(TRADE_EXECUTED, received.append)
        engine.off(TRADE_EXECUTED, received.append)
        engine.enqueue(make_opportunity())

        await engine.run_cycle()

        assert received == []


class TestLifecycle:
    async def _drain(self, engine, expected_trades):
        for _ in range(200):
            if engine.get_metrics().trade_count >= expected_trades:
                return
            await asyncio.sleep(0.005)

    @pytest.mark.asyncio
    async def test_start_process_stop(self, make_engine, make_opportunity, metrics):
        engine = make_engine({"worker_count": 2})
        await engine.start()
        assert engine.is_running
        assert _sample(metrics, "opportunity_engine_active_workers") == 2

        for _ in range(5):
            engine.enqueue(make_opportunity())
        await self._drain(engine, 5)
        await engine.stop()

        snapshot = engine.get_metrics()
        assert not snapshot.is_running
        assert snapshot.trade_count == 5
        assert snapshot.queue_size == 0
        assert _sample(metrics, "opportunity_engine_running") == 0

    @pytest.mark.asyncio
    async def test_start_and_stop_idempotent(self, make_engine):
        engine = make_engine()

        await engine.stop()
        await engine.start()
        await engine.start()
        assert len(engine._runner_tasks) == 1

        await engine.stop()
        await engine.stop()
        assert not engine.is_running

    @pytest.mark.asyncio
    async def test_counters_survive_restart(self, make_engine, make_opportunity):
        engine = make_engine()

        await engine.start()
        engine.enqueue(make_opportunity())
        await self._drain(engine, 1)
        await engine.stop()

        await engine.start()
        engine.enqueue(make_opportunity())
        await self._drain(engine, 2)
        await engine.stop()

        assert engine.get_metrics().trade_count == 2

    @pytest.mark.asyncio
    async def test_start_while_stop_pending(self, make_engine, make_opportunity):
        engine = make_engine({"worker_count": 2}, execution=FakeExecution(delay=0.05))
        await engine.start()
        for _ in range(4):
            engine.enqueue(make_opportunity())
        await asyncio.sleep(0.01)

        stopping = asyncio.create_task(engine.stop())
        await asyncio.sleep(0)
        await asyncio.wait_for(engine.start(), timeout=2)
        await asyncio.wait_for(stopping, timeout=2)

        assert engine.is_running
        runners = list(engine._runner_tasks)
        assert len(runners) == 2
        assert not any(task.done() for task in runners)

        await asyncio.wait_for(engine.stop(), timeout=2)
        assert not engine.is_running
        assert all(task.done() for task in runners)
        assert engine.get_metrics().trade_count == 4

    @pytest.mark.asyncio
    async def test_concurrent_stops_both_wait(self, make_engine, make_opportunity):
        engine = make_engine(execution=FakeExecution(delay=0.05))
        await engine.start()
        engine.enqueue(make_opportunity())
        await asyncio.sleep(0.01)

        await asyncio.wait_for(asyncio.gather(engine.stop(), engine.stop()), timeout=2)

        assert not engine.is_running
        assert engine.get_metrics().trade_count == 1

    @pytest.mark.asyncio
    async def test_generators_pick_up_activated_strategies(self, make_engine, catalog):
        late_id = catalog.register(
            StrategySpec(
                name="Simple Arbitrage 2",
                category=StrategyCategory.ARBITRAGE,
                risk_tier=RiskTier.LOW,
                priority=90,
                enabled=False,
            )
        )
        analyzer = FakeAnalyzer()
        engine = make_engine(
            {"generator_interval_seconds": 0.001, "generator_refresh_seconds": 0.005},
            analyzer=analyzer,
        )

        await engine.start()
        try:
            await asyncio.sleep(0.02)
            assert late_id not in analyzer.seen

            catalog.activate(late_id)
            for _ in range(200):
                if late_id in analyzer.seen:
                    break
                await asyncio.sleep(0.005)
            assert late_id in analyzer.seen
            assert set(engine._generator_tasks) == {s.id for s in catalog.all()}
        finally:
            await engine.stop()

        assert engine._generator_tasks == {}


class TestTraining:
    @pytest.mark.asyncio
    async def test_maybe_train(self, make_engine, make_opportunity):
        oracle = FakePredictiveOracle(probability=0.9)
        engine = make_engine({"training_sample_threshold": 2}, predictive_oracle=oracle)

        assert await engine.maybe_train() is False

        engine.enqueue(make_opportunity())
        engine.enqueue(make_opportunity())
        await engine.run_cycle()

        assert oracle.sample_count() == 2
        assert await engine.maybe_train() is True
        assert oracle.train_calls == 1

        oracle.training = True
        assert await engine.maybe_train() is False

    @pytest.mark.asyncio
    async def test_without_oracle(self, make_engine):
        engine = make_engine()
        assert await engine.maybe_train() is False
        assert engine.get_metrics().predictor == {}


class TestLeveragedMonitor:
    @pytest.fixture
    def builder(self, clock, one_percent_gap):
        return LeveragedOpportunityBuilder(
            oracle=FakePriceOracle([one_percent_gap]), time_provider=clock
        )

    @pytest.mark.asyncio
    async def test_scan_executes_with_scaled_loan(self, make_engine, builder, metrics):
        executor = FakeLeveragedExecutor()
        engine = make_engine(
            predictive_oracle=FakePredictiveOracle(probability=0.7),
            leveraged_builder=builder,
            leveraged_executor=executor,
        )
        events = []
        engine.on(LEVERAGED_SUCCESS, events.append)

        [result] = await engine.run_leveraged_scan()

        assert result.success
        assert executor.loans == [pytest.approx(300.0)]
        assert isinstance(events[0], LeveragedSuccessEvent)
        assert events[0].probability == pytest.approx(0.7)

        leveraged = engine.get_metrics().leveraged
        assert leveraged["executions"]["execution_count"] == 1
        assert leveraged["builder"]["total_opportunities"] == 1
        assert _sample(
            metrics, "opportunity_engine_leveraged_executions_total", {"result": "success"}
        ) == 1

    @pytest.mark.asyncio
    async def test_low_probability_skipped(self, make_engine, builder):
        executor = FakeLeveragedExecutor()
        engine = make_engine(
            predictive_oracle=FakePredictiveOracle(probability=0.3),
            leveraged_builder=builder,
            leveraged_executor=executor,
        )

        assert await engine.run_leveraged_scan() == []
        assert executor.loans == []

    @pytest.mark.asyncio
    async def test_executor_error_recorded_as_failure(self, make_engine, builder, transient_error):
        engine = make_engine(
            predictive_oracle=FakePredictiveOracle(probability=0.9),
            leveraged_builder=builder,
            leveraged_executor=FakeLeveragedExecutor(error=transient_error),
        )
        events = []
        engine.on(LEVERAGED_SUCCESS, events.append)

        [result] = await engine.run_leveraged_scan()

        assert not result.success
        assert result.error == "simulated timeout"
        assert events == []
        assert engine.get_metrics().leveraged["executions"]["successful_executions"] == 0

    @pytest.mark.asyncio
    async def test_without_builder(self, make_engine):
        assert await make_engine().run_leveraged_scan() == []

    @pytest.mark.asyncio
    async def test_monitor_not_started_when_executor_unavailable(self, make_engine, builder):
        engine = make_engine(
            leveraged_builder=builder,
            leveraged_executor=FakeLeveragedExecutor(available=False),
        )
        await engine.start()
        try:
            assert engine._periodic_tasks == []
        finally:
            await engine.stop()


def test_get_metrics_snapshot(make_engine, make_opportunity):
    engine = make_engine({"worker_count": 3})
    engine.enqueue(make_opportunity())

    snapshot = engine.get_metrics()

    assert snapshot.is_running is False
    assert snapshot.queue_size == 1
    assert snapshot.worker_count == 3
    assert snapshot.to_dict()["leveraged"]["executions"]["execution_count"] == 0
