"""
Prometheus Metrics Server for the Opportunity Engine

Exposes dispatch, decision and execution metrics for monitoring and alerting,
plus the rolling performance window shared by the scorer and the catalog.
"""

import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class DispatchMetrics:
    """
    Dispatch pipeline metrics collection and exposure

    Provides Prometheus-compatible metrics for:
    - Queue admission and backpressure drops
    - Gate verdicts and rejection reasons
    - Execution outcomes, latency and realized profit
    - Leveraged executions
    - Engine health (running state, workers, throughput)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics with a private registry unless one is given"""
        self.registry = registry if registry is not None else CollectorRegistry()
        self._initialize_metrics()

        # Server components
        self._app = None
        self._runner = None
        self._site = None
        self._health_provider: Optional[Callable[[], Dict[str, Any]]] = None

        # Thread-safe access
        self._lock = threading.RLock()

    def _initialize_metrics(self):
        """Initialize all Prometheus metrics"""

        # === QUEUE METRICS ===
        self.opportunities_enqueued_total = Counter(
            "opportunity_engine_opportunities_enqueued_total",
            "Total opportunities accepted into the queue",
            ["category"],
            registry=self.registry,
        )

        self.opportunities_dropped_total = Counter(
            "opportunity_engine_opportunities_dropped_total",
            "Total opportunities dropped at enqueue",
            ["reason"],
            registry=self.registry,
        )

        self.queue_depth = Gauge(
            "opportunity_engine_queue_depth",
            "Opportunities currently waiting in the queue",
            registry=self.registry,
        )

        # === DECISION METRICS ===
        self.decisions_total = Counter(
            "opportunity_engine_decisions_total",
            "Gate verdicts by category and result",
            ["category", "verdict"],
            registry=self.registry,
        )

        self.rejections_total = Counter(
            "opportunity_engine_rejections_total",
            "Opportunities discarded before execution",
            ["reason"],
            registry=self.registry,
        )

        self.decisions_per_second = Gauge(
            "opportunity_engine_decisions_per_second",
            "Outcomes produced during the last completed second",
            registry=self.registry,
        )

        # === EXECUTION METRICS ===
        self.executions_total = Counter(
            "opportunity_engine_executions_total",
            "Executions by category and result",
            ["category", "result"],
            registry=self.registry,
        )

        self.execution_errors_total = Counter(
            "opportunity_engine_execution_errors_total",
            "Execution capability failures by error class",
            ["error_type"],
            registry=self.registry,
        )

        self.execution_duration_seconds = Histogram(
            "opportunity_engine_execution_duration_seconds",
            "Wall-clock duration of executions",
            ["category"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
            registry=self.registry,
        )

        self.realized_profit_usd = Histogram(
            "opportunity_engine_realized_profit_usd",
            "Realized profit in USD per execution",
            ["category"],
            buckets=[-100, -10, -1, 0, 1, 5, 10, 50, 100, 500],
            registry=self.registry,
        )

        # === LEVERAGED METRICS ===
        self.leveraged_executions_total = Counter(
            "opportunity_engine_leveraged_executions_total",
            "Leveraged executions by result",
            ["result"],
            registry=self.registry,
        )

        # === SYSTEM HEALTH METRICS ===
        self.engine_running = Gauge(
            "opportunity_engine_running",
            "1 while the dispatch engine is running",
            registry=self.registry,
        )

        self.active_workers = Gauge(
            "opportunity_engine_active_workers",
            "Cycle runners currently scheduled",
            registry=self.registry,
        )

        self.last_activity_timestamp = Gauge(
            "opportunity_engine_last_activity_timestamp",
            "Unix timestamp of the last settled execution",
            registry=self.registry,
        )

    # === METRIC RECORDING METHODS ===

    def record_enqueued(self, category: str, queue_size: int):
        """Record an admitted opportunity"""
        with self._lock:
            self.opportunities_enqueued_total.labels(category=category).inc()
            self.queue_depth.set(queue_size)

    def record_dropped(self, reason: str = "queue_full"):
        """Record an opportunity dropped at enqueue"""
        with self._lock:
            self.opportunities_dropped_total.labels(reason=reason).inc()

    def update_queue_depth(self, queue_size: int):
        with self._lock:
            self.queue_depth.set(queue_size)

    def record_decision(self, category: str, accepted: bool):
        """Record a gate verdict"""
        with self._lock:
            self.decisions_total.labels(
                category=category, verdict="accepted" if accepted else "rejected"
            ).inc()

    def record_rejection(self, reason: str):
        """Record an opportunity discarded before execution"""
        with self._lock:
            self.rejections_total.labels(reason=reason).inc()

    def record_execution(
        self,
        category: str,
        success: bool,
        duration_seconds: float = 0.0,
        profit_usd: float = 0.0,
    ):
        """Record a settled execution"""
        with self._lock:
            self.executions_total.labels(
                category=category, result="success" if success else "failure"
            ).inc()

            if duration_seconds > 0:
                self.execution_duration_seconds.labels(category=category).observe(
                    duration_seconds
                )

            self.realized_profit_usd.labels(category=category).observe(profit_usd)
            self.last_activity_timestamp.set(time.time())

    def record_execution_error(self, error_type: str):
        """Record an execution capability failure"""
        with self._lock:
            self.execution_errors_total.labels(error_type=error_type).inc()

    def record_leveraged_execution(self, success: bool):
        with self._lock:
            self.leveraged_executions_total.labels(
                result="success" if success else "failure"
            ).inc()

    def update_decisions_per_second(self, value: int):
        with self._lock:
            self.decisions_per_second.set(value)

    def update_engine_state(self, running: bool, workers: int):
        """Update running flag and scheduled worker count"""
        with self._lock:
            self.engine_running.set(1 if running else 0)
            self.active_workers.set(workers)

    # === SERVER MANAGEMENT ===

    async def start_server(
        self,
        port: int = 8000,
        host: str = "0.0.0.0",
        path: str = "/metrics",
        health_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        """Start Prometheus metrics HTTP server"""
        self._health_provider = health_provider
        try:
            self._app = web.Application()
            self._app.router.add_get(path, self._metrics_handler)
            self._app.router.add_get("/health", self._health_handler)

            self._runner = web.AppRunner(self._app)
            await self._runner.setup()

            self._site = web.TCPSite(self._runner, host, port)
            await self._site.start()

            logger.info(f"📊 Prometheus metrics server started on http://{host}:{port}{path}")
            return True

        except Exception as e:
            logger.error(f"Failed to start metrics server: {e}")
            return False

    async def stop_server(self):
        """Stop the metrics server"""
        try:
            if self._site:
                await self._site.stop()
            if self._runner:
                await self._runner.cleanup()
            logger.info("📊 Metrics server stopped")
        except Exception as e:
            logger.error(f"Error stopping metrics server: {e}")
        finally:
            self._site = None
            self._runner = None
            self._app = None

    async def _metrics_handler(self, request):
        """Handle metrics endpoint requests"""
        try:
            metrics_output = generate_latest(self.registry)
            # aiohttp rejects a charset inside content_type
            content_type = CONTENT_TYPE_LATEST.split(";")[0]
            return web.Response(
                text=metrics_output.decode("utf-8"), content_type=content_type
            )
        except Exception as e:
            logger.error(f"Error generating metrics: {e}")
            return web.Response(text="Error generating metrics", status=500)

    async def _health_handler(self, request):
        """Handle health check endpoint"""
        body: Dict[str, Any] = {"status": "healthy", "service": "opportunity_engine"}
        if self._health_provider is not None:
            try:
                body["engine"] = self._health_provider()
            except Exception as e:
                logger.error(f"Health provider failed: {e}")
                body["status"] = "degraded"
        return web.Response(text=json.dumps(body), content_type="application/json")

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get current metrics summary"""
        return {
            "metrics_available": True,
            "queue_depth": self.registry.get_sample_value("opportunity_engine_queue_depth"),
            "decisions_per_second": self.registry.get_sample_value(
                "opportunity_engine_decisions_per_second"
            ),
            "timestamp": time.time(),
        }


class RollingPerformanceWindow:
    """
    Rolling window of success flags with a running profit mean.

    Tracks at most ``window_size`` outcomes; the success rate always equals
    successes divided by the current window length. The average profit is a
    running mean over every outcome ever added, not just the window.
    Not thread-safe on its own; owners serialize access with their lock.
    """

    def __init__(self, window_size: int = 100):
        self.window_size = window_size
        self._flags: Deque[bool] = deque(maxlen=window_size)
        self._successes = 0
        self.total_trades = 0
        self.average_profit = 0.0

    def add(self, success: bool, profit: float) -> None:
        """Record one outcome, evicting the oldest flag when full."""
        if len(self._flags) == self.window_size and self._flags[0]:
            self._successes -= 1
        self._flags.append(bool(success))
        if success:
            self._successes += 1

        self.total_trades += 1
        self.average_profit += (float(profit) - self.average_profit) / self.total_trades

    @property
    def count(self) -> int:
        """Number of outcomes currently in the window."""
        return len(self._flags)

    @property
    def success_rate(self) -> float:
        if not self._flags:
            return 0.0
        return self._successes / len(self._flags)
