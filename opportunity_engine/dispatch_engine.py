"""
Dispatch engine.

Owns the bounded opportunity queue and the asyncio tasks that drain it:
cycle runners gate each opportunity through the decision engine (or an
injected predictive oracle), pick the best matching strategy, execute it and
feed the outcome back into the catalog, the scorer and the oracle. Optional
tasks generate opportunities per strategy, trigger oracle retraining and
scan for leveraged opportunities.
"""

import asyncio
import logging
import os
import threading
from collections import deque
from dataclasses import asdict
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from .decision_engine import DecisionEngine
from .exceptions import (
    CapacityError,
    TerminalExecutionError,
    TransientExecutionError,
    ValidationError,
)
from .interfaces import (
    ExecutionCapability,
    LeveragedExecutor,
    PredictiveOracle,
    StrategyAnalyzer,
    SystemTimeProvider,
    TimeProvider,
)
from .leveraged import LeveragedExecutionStats, LeveragedOpportunityBuilder, scale_loan_amount
from .metrics import DispatchMetrics
from .strategy_catalog import StrategyCatalog
from .types import (
    EngineMetrics,
    ExecutionOutcome,
    LeveragedExecutionResult,
    LeveragedOpportunity,
    LeveragedSuccessEvent,
    Opportunity,
    StrategyRecord,
    TradeExecutedEvent,
)
from .utils import clamp

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Any]

TRADE_EXECUTED = "trade_executed"
LEVERAGED_SUCCESS = "leveraged_success"


class DispatchEngine:
    """
    Concurrent opportunity dispatcher.

    Per opportunity: queued, evaluated, then either accepted, executed and
    settled, or rejected and discarded. There are no retries at this layer.
    """

    DEFAULT_QUEUE_CAPACITY = 1_000_000
    DEFAULT_BATCH_SIZE = 1000
    LOOPS_PER_CORE = 10
    THROUGHPUT_IDLE_SECONDS = 2.0
    EVENTS = (TRADE_EXECUTED, LEVERAGED_SUCCESS)

    def __init__(
        self,
        catalog: StrategyCatalog,
        decision_engine: DecisionEngine,
        execution: ExecutionCapability,
        config: Optional[Dict[str, Any]] = None,
        predictive_oracle: Optional[PredictiveOracle] = None,
        analyzer: Optional[StrategyAnalyzer] = None,
        leveraged_builder: Optional[LeveragedOpportunityBuilder] = None,
        leveraged_executor: Optional[LeveragedExecutor] = None,
        metrics: Optional[DispatchMetrics] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            catalog: Strategy catalog used for selection and outcome recording
            decision_engine: Scorer used when no predictive oracle is injected
            execution: Capability that runs a strategy against an opportunity
            config: Configuration dictionary with optional keys:
                - queue_capacity: Maximum queued opportunities (default 1,000,000)
                - batch_size: Opportunities taken per cycle (default 1000)
                - worker_count: Cycle runners (default cpu_count x loops_per_core)
                - loops_per_core: Runners per CPU core (default 10)
                - confidence_threshold: Minimum estimate to execute (default 0.6)
                - idle_sleep_seconds: Runner pause when the queue is empty
                - generator_interval_seconds: Pause between analysis calls
                - generator_refresh_seconds: How often newly activated
                  strategies are picked up by the generators (default 1.0)
                - training_interval_seconds: Retraining check period
                - training_sample_threshold: Samples needed before retraining
                - leveraged_enabled: Run the leveraged monitor
                - leveraged_interval_seconds: Leveraged scan period
                - leveraged_min_probability: Probability needed to execute a
                  leveraged opportunity (default 0.40)
            predictive_oracle: Optional model replacing the scorer's estimate
            analyzer: Optional per-strategy opportunity generator hook
            leveraged_builder: Builder scanned by the leveraged monitor
            leveraged_executor: Capability settling leveraged opportunities
            metrics: Prometheus metrics sink (a private registry by default)
            time_provider: Clock for expiry, durations and throughput
        """
        self.config = config or {}
        self.catalog = catalog
        self.decision_engine = decision_engine
        self._execution = execution
        self._oracle = predictive_oracle
        self._analyzer = analyzer
        self._leveraged_builder = leveraged_builder
        self._leveraged_executor = leveraged_executor
        self._metrics = metrics or DispatchMetrics()
        self._time = time_provider or SystemTimeProvider()

        self.queue_capacity = int(self.config.get("queue_capacity", self.DEFAULT_QUEUE_CAPACITY))
        self.batch_size = int(self.config.get("batch_size", self.DEFAULT_BATCH_SIZE))
        loops_per_core = int(self.config.get("loops_per_core", self.LOOPS_PER_CORE))
        worker_count = self.config.get("worker_count")
        self.worker_count = (
            int(worker_count)
            if worker_count is not None
            else (os.cpu_count() or 1) * loops_per_core
        )
        self.confidence_threshold = float(self.config.get("confidence_threshold", 0.6))
        self.idle_sleep_seconds = float(self.config.get("idle_sleep_seconds", 0.001))
        self.generator_interval_seconds = float(
            self.config.get("generator_interval_seconds", 0.01)
        )
        self.generator_refresh_seconds = float(
            self.config.get("generator_refresh_seconds", 1.0)
        )
        self.training_interval_seconds = float(
            self.config.get("training_interval_seconds", 60.0)
        )
        self.training_sample_threshold = int(
            self.config.get("training_sample_threshold", 5000)
        )
        self.leveraged_enabled = bool(self.config.get("leveraged_enabled", True))
        self.leveraged_interval_seconds = float(
            self.config.get("leveraged_interval_seconds", 0.1)
        )
        self.leveraged_min_probability = float(
            self.config.get("leveraged_min_probability", 0.40)
        )

        if self.queue_capacity <= 0 or self.batch_size <= 0 or self.worker_count <= 0:
            raise ValidationError(
                "queue_capacity, batch_size and worker_count must be positive",
                {
                    "queue_capacity": self.queue_capacity,
                    "batch_size": self.batch_size,
                    "worker_count": self.worker_count,
                },
            )

        # Queue
        self._queue: Deque[Opportunity] = deque()
        self._queue_lock = threading.Lock()

        # Counters survive stop/start
        self._stats_lock = threading.Lock()
        self._trade_count = 0
        self._dropped_count = 0
        self._rejected_count = 0
        self._failed_count = 0
        self._second_started = self._time.current_timestamp()
        self._second_count = 0
        self._decisions_per_second = 0

        self._leveraged_stats = LeveragedExecutionStats()

        # Tasks
        self._running = False
        self._stopping: Optional[asyncio.Future] = None
        self._runner_tasks: List[asyncio.Task] = []
        self._periodic_tasks: List[asyncio.Task] = []
        self._generator_tasks: Dict[str, asyncio.Task] = {}
        self._handler_tasks: Set[asyncio.Task] = set()

        self._listeners: Dict[str, List[EventHandler]] = {name: [] for name in self.EVENTS}

        logger.info(f"Dispatch engine initialized with {self.worker_count} cycle runners")

    # === QUEUE ===

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def metrics(self) -> DispatchMetrics:
        return self._metrics

    @property
    def queue_size(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def enqueue(self, opportunity: Opportunity) -> bool:
        """
        Append an opportunity to the queue.

        Never blocks or raises: malformed, expired or overflow items are
        dropped and counted.

        Returns:
            True when the opportunity was queued
        """
        if not isinstance(opportunity, Opportunity):
            error = ValidationError(
                f"Cannot enqueue {type(opportunity).__name__}; expected Opportunity"
            )
            logger.warning(str(error))
            self._count_drop("invalid")
            return False

        if opportunity.is_expired(self._time.current_timestamp()):
            logger.debug(f"Dropping expired opportunity {opportunity.id}")
            self._count_drop("expired")
            return False

        with self._queue_lock:
            full = len(self._queue) >= self.queue_capacity
            if not full:
                self._queue.append(opportunity)
            size = len(self._queue)

        if full:
            error = CapacityError("Opportunity queue full", capacity=self.queue_capacity)
            logger.debug(f"{error} ({error.capacity}); dropping {opportunity.id}")
            self._count_drop("queue_full")
            return False

        self._metrics.record_enqueued(opportunity.category.value, size)
        return True

    def _count_drop(self, reason: str) -> None:
        with self._stats_lock:
            self._dropped_count += 1
        self._metrics.record_dropped(reason)

    def clear_queue(self) -> int:
        """Discard every queued opportunity; returns how many were removed."""
        with self._queue_lock:
            cleared = len(self._queue)
            self._queue.clear()
        self._metrics.update_queue_depth(0)
        if cleared:
            logger.info(f"Cleared {cleared} queued opportunities")
        return cleared

    def _take_batch(self) -> Tuple[List[Opportunity], int]:
        with self._queue_lock:
            count = min(self.batch_size, len(self._queue))
            batch = [self._queue.popleft() for _ in range(count)]
            return batch, len(self._queue)

    # === CYCLE ===

    async def run_cycle(self, runner_id: int = 0) -> List[ExecutionOutcome]:
        """
        Take up to ``batch_size`` opportunities from the head of the queue
        and process them concurrently.

        Returns:
            One outcome per dequeued opportunity, in dequeue order
        """
        batch, remaining = self._take_batch()
        if not batch:
            return []
        self._metrics.update_queue_depth(remaining)

        outcomes = await asyncio.gather(
            *(self._process(opportunity, runner_id) for opportunity in batch)
        )

        with self._stats_lock:
            self._trade_count += len(outcomes)
        self._record_throughput(len(outcomes))
        return list(outcomes)

    async def _process(self, opportunity: Opportunity, runner_id: int) -> ExecutionOutcome:
        started = self._time.current_timestamp()

        if opportunity.is_expired(started):
            return self._reject(opportunity, "expired", "Opportunity expired", started)

        try:
            estimate, accepted = await self._estimate(opportunity)
        except Exception as e:
            logger.warning(f"Estimate for {opportunity.id} failed: {e}")
            return self._reject(opportunity, "estimate_error", f"Estimate unavailable: {e}", started)

        passed = accepted and estimate >= self.confidence_threshold
        self._metrics.record_decision(opportunity.category.value, passed)
        if not passed:
            return self._reject(
                opportunity,
                "low_confidence",
                f"Confidence too low ({estimate:.3f} < {self.confidence_threshold:.3f})"
                if accepted
                else "Rejected by decision engine",
                started,
            )

        strategy = self.catalog.select_for(opportunity.category)
        if strategy is None:
            return self._reject(opportunity, "no_strategy", "No strategy available", started)

        outcome = await self._execute(strategy, opportunity, started)
        self._feedback(opportunity, strategy, outcome, runner_id)
        return outcome

    async def _estimate(self, opportunity: Opportunity) -> Tuple[float, bool]:
        """Confidence estimate and whether the source accepts the opportunity."""
        if self._oracle is not None:
            probability = clamp(float(await self._oracle.predict(opportunity)))
            return probability, True

        decision = self.decision_engine.evaluate(opportunity)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(self.decision_engine.format_decision_log(decision))
        return decision.confidence, decision.should_execute

    async def _execute(
        self, strategy: StrategyRecord, opportunity: Opportunity, started: float
    ) -> ExecutionOutcome:
        try:
            return await self._execution.execute(strategy, opportunity)
        except TransientExecutionError as e:
            error_type = "transient"
            reason = f"Transient execution error: {e}"
        except TerminalExecutionError as e:
            error_type = "terminal"
            reason = f"Execution rejected: {e}"
        except Exception as e:
            error_type = "unexpected"
            reason = f"Execution error: {e}"

        logger.warning(f"Strategy {strategy.name} failed on {opportunity.id}: {reason}")
        self._metrics.record_execution_error(error_type)
        return ExecutionOutcome.failed(
            reason, started_at=started, now=self._time.current_timestamp()
        )

    def _reject(
        self, opportunity: Opportunity, label: str, reason: str, started: float
    ) -> ExecutionOutcome:
        with self._stats_lock:
            self._rejected_count += 1
        self._metrics.record_rejection(label)
        self.decision_engine.record_opportunity(opportunity, executed=False)
        return ExecutionOutcome.rejected_by_gate(
            reason, started_at=started, now=self._time.current_timestamp()
        )

    def _feedback(
        self,
        opportunity: Opportunity,
        strategy: StrategyRecord,
        outcome: ExecutionOutcome,
        runner_id: int,
    ) -> None:
        category = opportunity.category
        self.catalog.record_outcome(strategy.id, outcome)
        self.decision_engine.update_performance(category, outcome.success, outcome.profit_usd)
        self.decision_engine.record_opportunity(opportunity, executed=True, outcome=outcome)

        if self._oracle is not None:
            try:
                self._oracle.record_sample(opportunity, outcome)
            except Exception as e:
                logger.warning(f"Predictive oracle rejected training sample: {e}")

        if not outcome.success:
            with self._stats_lock:
                self._failed_count += 1

        self._metrics.record_execution(
            category.value,
            outcome.success,
            duration_seconds=outcome.duration_seconds,
            profit_usd=outcome.profit_usd,
        )
        self._emit(
            TRADE_EXECUTED,
            TradeExecutedEvent(
                opportunity=opportunity,
                outcome=outcome,
                strategy_id=strategy.id,
                runner_id=runner_id,
            ),
        )

    def _record_throughput(self, count: int) -> None:
        """Accumulate outcomes per second; publish at each second boundary."""
        now = self._time.current_timestamp()
        published = None
        with self._stats_lock:
            if now - self._second_started >= 1.0:
                self._decisions_per_second = self._second_count
                published = self._second_count
                self._second_count = 0
                self._second_started = now
            self._second_count += count

        if published is not None:
            self._metrics.update_decisions_per_second(published)
            logger.debug(f"Decisions/second: {published:,}")

    # === EVENTS ===

    def on(self, event: str, handler: EventHandler) -> None:
        """Register a listener for ``trade_executed`` or ``leveraged_success``."""
        if event not in self._listeners:
            raise ValidationError(f"Unknown event: {event}", {"events": list(self.EVENTS)})
        self._listeners[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        listeners = self._listeners.get(event, [])
        if handler in listeners:
            listeners.remove(handler)

    def _emit(self, event: str, payload: Any) -> None:
        for handler in list(self._listeners.get(event, [])):
            try:
                result = handler(payload)
            except Exception as e:
                logger.error(f"{event} handler failed: {e}")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Event handler failed: {task.exception()}")

    # === LIFECYCLE ===

    async def start(self) -> None:
        """
        Spawn cycle runners and periodic tasks; no-op when already running.

        A start issued while a stop is in progress waits for that stop to
        finish, so runners from the previous run never see the engine
        running again.
        """
        stopping = self._stopping
        if stopping is not None:
            await stopping

        if self._running:
            logger.warning("Dispatch engine already running")
            return

        logger.info("Starting dispatch engine...")
        self._running = True
        with self._stats_lock:
            self._second_started = self._time.current_timestamp()
            self._second_count = 0

        for runner_id in range(self.worker_count):
            self._runner_tasks.append(
                asyncio.create_task(self._runner_loop(runner_id), name=f"cycle-runner-{runner_id}")
            )

        self._start_generators()
        self._start_training_trigger()
        self._start_leveraged_monitor()

        self._metrics.update_engine_state(True, len(self._runner_tasks))
        logger.info(
            f"Dispatch engine started with {len(self._runner_tasks)} cycle runners "
            f"and {len(self._periodic_tasks) + len(self._generator_tasks)} periodic tasks"
        )

    async def stop(self) -> None:
        """
        Stop all tasks; idempotent.

        Periodic tasks are cancelled. Cycle runners finish the batch they
        are processing, so in-flight outcomes are still recorded.
        """
        if not self._running:
            if self._stopping is not None:
                await self._stopping
            return

        logger.info("Stopping dispatch engine...")
        self._running = False

        # Detach this run's tasks before yielding so a concurrent start()
        # begins with empty lists.
        periodic = self._periodic_tasks + list(self._generator_tasks.values())
        runners = self._runner_tasks
        self._periodic_tasks = []
        self._generator_tasks = {}
        self._runner_tasks = []

        stopping = asyncio.ensure_future(self._shutdown(periodic, runners))
        self._stopping = stopping
        try:
            await stopping
        finally:
            if self._stopping is stopping:
                self._stopping = None

    async def _shutdown(self, periodic: List[asyncio.Task], runners: List[asyncio.Task]) -> None:
        for task in periodic:
            task.cancel()
        await asyncio.gather(*periodic, return_exceptions=True)
        await asyncio.gather(*runners, return_exceptions=True)

        self._metrics.update_engine_state(False, 0)
        logger.info("Dispatch engine stopped")

    async def _runner_loop(self, runner_id: int) -> None:
        while self._running:
            try:
                outcomes = await self.run_cycle(runner_id)
            except Exception as e:
                logger.error(f"Error in cycle runner {runner_id}: {e}")
                outcomes = []
            await asyncio.sleep(0 if outcomes else self.idle_sleep_seconds)

    def _start_generators(self) -> None:
        if self._analyzer is None:
            logger.info("No strategy analyzer configured; opportunity generators disabled")
            return

        started = self.refresh_generators()
        self._periodic_tasks.append(asyncio.create_task(self._generator_refresh_loop()))
        logger.info(f"Started {started} opportunity generators")

    def refresh_generators(self) -> int:
        """
        Spawn a generator for every active strategy that has none yet.

        Runs at start and every ``generator_refresh_seconds`` while the
        engine is running, so strategies activated mid-run are picked up.

        Returns:
            Number of generators spawned
        """
        if self._analyzer is None or not self._running:
            return 0

        spawned = 0
        for strategy in self.catalog.active():
            if strategy.id in self._generator_tasks:
                continue
            self._generator_tasks[strategy.id] = asyncio.create_task(
                self._generator_loop(strategy.id)
            )
            spawned += 1
        return spawned

    async def _generator_refresh_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.generator_refresh_seconds)
            spawned = self.refresh_generators()
            if spawned:
                logger.info(f"Started {spawned} generators for newly active strategies")

    async def _generator_loop(self, strategy_id: str) -> None:
        while self._running:
            strategy = self.catalog.get(strategy_id)
            if strategy is not None and strategy.enabled:
                try:
                    for opportunity in await self._analyzer.analyze(strategy):
                        self.enqueue(opportunity)
                except Exception as e:
                    logger.debug(f"Strategy {strategy.name} analysis failed: {e}")
            await asyncio.sleep(self.generator_interval_seconds)

    def _start_training_trigger(self) -> None:
        if self._oracle is None:
            return
        self._periodic_tasks.append(asyncio.create_task(self._training_loop()))

    async def _training_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.training_interval_seconds)
            try:
                await self.maybe_train()
            except Exception as e:
                logger.error(f"Training trigger error: {e}")

    async def maybe_train(self) -> bool:
        """Train the predictive oracle once enough samples are collected."""
        if self._oracle is None:
            return False
        if self._oracle.is_training():
            return False
        if self._oracle.sample_count() < self.training_sample_threshold:
            return False

        logger.info(f"Starting predictive model training on {self._oracle.sample_count()} samples")
        await self._oracle.train()
        return True

    def _start_leveraged_monitor(self) -> None:
        if not self.leveraged_enabled:
            logger.info("Leveraged execution disabled in config")
            return
        if self._leveraged_builder is None or self._leveraged_executor is None:
            logger.info("No leveraged builder or executor configured; monitor skipped")
            return
        if not self._leveraged_executor.is_available():
            logger.warning("Leveraged executor not available; monitor skipped")
            return
        self._periodic_tasks.append(asyncio.create_task(self._leveraged_loop()))

    async def _leveraged_loop(self) -> None:
        while self._running:
            try:
                await self.run_leveraged_scan()
            except Exception as e:
                logger.error(f"Leveraged monitoring error: {e}")
            await asyncio.sleep(self.leveraged_interval_seconds)

    async def run_leveraged_scan(self) -> List[LeveragedExecutionResult]:
        """
        Scan for leveraged opportunities and execute the confident ones.

        The loan is scaled with the predicted probability; candidates below
        ``leveraged_min_probability`` are skipped.

        Returns:
            Results of the executions attempted during this scan
        """
        if self._leveraged_builder is None or self._leveraged_executor is None:
            return []

        results = []
        for opportunity in self._leveraged_builder.scan():
            probability = await self._leveraged_probability(opportunity)
            if probability < self.leveraged_min_probability:
                logger.debug(
                    f"Skipping leveraged opportunity {opportunity.id}: "
                    f"probability {probability:.2f} below {self.leveraged_min_probability:.2f}"
                )
                continue

            loan = scale_loan_amount(
                probability, opportunity.loan_amount, self.leveraged_min_probability
            )
            if loan <= 0:
                continue

            logger.info(
                f"Executing leveraged opportunity {opportunity.id}: loan {loan:.4f} "
                f"{opportunity.loan_asset} ({probability * 100:.2f}% confidence)"
            )
            try:
                result = await self._leveraged_executor.execute_leveraged(opportunity, loan)
            except Exception as e:
                logger.warning(f"Leveraged execution failed: {e}")
                result = LeveragedExecutionResult(success=False, error=str(e))

            self._leveraged_stats.record(result)
            self._metrics.record_leveraged_execution(result.success)
            if result.success:
                logger.info(f"✅ Leveraged execution settled, profit {result.profit}")
                self._emit(
                    LEVERAGED_SUCCESS,
                    LeveragedSuccessEvent(
                        opportunity=opportunity, result=result, probability=probability
                    ),
                )
            results.append(result)
        return results

    async def _leveraged_probability(self, opportunity: LeveragedOpportunity) -> float:
        try:
            if self._oracle is not None:
                return clamp(float(await self._oracle.predict(opportunity)))
            return self.decision_engine.evaluate(opportunity).confidence
        except Exception as e:
            logger.warning(f"Leveraged probability estimate failed: {e}")
            return 0.0

    # === METRICS ===

    def get_metrics(self) -> EngineMetrics:
        """Snapshot of counters, throughput, queue depth and collaborator stats."""
        predictor: Dict[str, Any] = {}
        if self._oracle is not None:
            predictor = {
                "sample_count": self._oracle.sample_count(),
                "is_training": self._oracle.is_training(),
            }

        leveraged: Dict[str, Any] = {"executions": self._leveraged_stats.to_dict()}
        if self._leveraged_builder is not None:
            leveraged["builder"] = asdict(self._leveraged_builder.statistics())

        now = self._time.current_timestamp()
        with self._stats_lock:
            # No cycle has closed a second for a while: the engine is idle
            idle = now - self._second_started >= self.THROUGHPUT_IDLE_SECONDS
            return EngineMetrics(
                is_running=self._running,
                trade_count=self._trade_count,
                decisions_per_second=0 if idle else self._decisions_per_second,
                queue_size=self.queue_size,
                worker_count=self.worker_count,
                dropped_count=self._dropped_count,
                rejected_count=self._rejected_count,
                failed_count=self._failed_count,
                predictor=predictor,
                leveraged=leveraged,
            )
