"""
Opportunity engine runner.

Wires the default strategy catalog, decision engine, leveraged builder and
dispatch engine together and runs them for a fixed duration.

Usage:
    # Paper run with defaults for 30 seconds
    python -m opportunity_engine --paper --duration 30

    # Paper run from a config file with verbose decisions
    python -m opportunity_engine --config configs/engine.yaml --paper --log-level DEBUG
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import asdict
from typing import Optional, Tuple

from dotenv import load_dotenv

from opportunity_engine import logging_config
from opportunity_engine.config_loader import (
    EngineRuntimeConfig,
    load_default_config,
    load_engine_config,
)
from opportunity_engine.decision_engine import DecisionEngine
from opportunity_engine.dispatch_engine import DispatchEngine
from opportunity_engine.exceptions import OpportunityEngineError
from opportunity_engine.interfaces import DeterministicRandomProvider
from opportunity_engine.leveraged import LeveragedOpportunityBuilder
from opportunity_engine.metrics import DispatchMetrics
from opportunity_engine.paper import (
    PaperExecutionCapability,
    PaperLeveragedExecutor,
    PaperOpportunityAnalyzer,
    PaperPriceFeed,
)
from opportunity_engine.price_oracle import InMemoryPriceOracle
from opportunity_engine.strategy_catalog import build_default_catalog
from opportunity_engine.utils import format_duration, format_usd, safe_json_dump
from opportunity_engine.version import get_version

logger = logging.getLogger("opportunity_engine.runner")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opportunity_engine",
        description="Run the opportunity dispatch engine",
    )
    parser.add_argument("--config", help="Path to engine YAML configuration file")
    parser.add_argument("--env-file", help="Dotenv file with OPPORTUNITY_ENGINE_* overrides")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides config)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=10.0,
        help="Seconds to run before stopping (default: 10)",
    )
    parser.add_argument(
        "--paper",
        action="store_true",
        help="Use simulated execution, price feed and opportunity generation",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {get_version()}"
    )
    return parser


def build_engine(config: EngineRuntimeConfig) -> Tuple[DispatchEngine, PaperPriceFeed]:
    """Create a paper-wired dispatch engine and the price feed behind it."""
    paper = config.paper
    seed = paper.random_seed

    catalog = build_default_catalog()
    decision_engine = DecisionEngine(config=asdict(config.decision))

    oracle = InMemoryPriceOracle()
    builder = LeveragedOpportunityBuilder(oracle=oracle, config=asdict(config.leveraged))

    execution = PaperExecutionCapability(
        config={
            "success_rate": paper.success_rate,
            "transient_failure_rate": paper.transient_failure_rate,
            "latency_sim_ms": paper.latency_sim_ms,
        },
        random_provider=DeterministicRandomProvider(seed),
    )
    analyzer = PaperOpportunityAnalyzer(
        emit_probability=paper.emit_probability,
        random_provider=DeterministicRandomProvider(seed + 1),
    )
    leveraged_executor = PaperLeveragedExecutor(
        success_rate=paper.leveraged_success_rate,
        random_provider=DeterministicRandomProvider(seed + 2),
    )

    engine = DispatchEngine(
        catalog=catalog,
        decision_engine=decision_engine,
        execution=execution,
        config=asdict(config.dispatch),
        analyzer=analyzer,
        leveraged_builder=builder,
        leveraged_executor=leveraged_executor,
        metrics=DispatchMetrics(),
    )
    feed = PaperPriceFeed(oracle, random_provider=DeterministicRandomProvider(seed + 3))
    return engine, feed


def print_summary(engine: DispatchEngine, elapsed: float) -> None:
    metrics = engine.get_metrics()
    stats = engine.catalog.stats()
    top = engine.catalog.top_performers(5)

    print()
    print("=" * 60)
    print(f"Run finished after {format_duration(elapsed)}")
    print(f"Processed: {metrics.trade_count:,}  Rejected: {metrics.rejected_count:,}  "
          f"Failed: {metrics.failed_count:,}  Dropped: {metrics.dropped_count:,}")
    print(f"Strategies: {stats.active:,} active of {stats.total:,}")
    for record in top:
        print(
            f"  {record.name:<40} trades={record.trades_attempted:<5} "
            f"success={record.success_rate * 100:5.1f}% "
            f"profit={format_usd(record.cumulative_profit_usd)}"
        )
    print("=" * 60)
    print(safe_json_dump(metrics.to_dict()))


async def run(args: argparse.Namespace) -> int:
    try:
        config = (
            load_engine_config(args.config, env_file=args.env_file)
            if args.config
            else load_default_config(env_file=args.env_file)
        )
    except OpportunityEngineError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    logging_config.setup(args.log_level or config.observability.log_level)

    if not args.paper:
        logger.error(
            "No live execution capability is bundled; run with --paper or embed "
            "DispatchEngine with your own ExecutionCapability"
        )
        return 2

    engine, feed = build_engine(config)
    obs = config.observability
    metrics_started = False
    if obs.metrics_enabled:
        metrics_started = await engine.metrics.start_server(
            port=obs.metrics_port,
            host=obs.metrics_host,
            path=obs.metrics_path,
            health_provider=lambda: engine.get_metrics().to_dict(),
        )

    feed_task: Optional[asyncio.Task] = None
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        feed.tick()
        feed_task = asyncio.create_task(feed.run())
        await engine.start()
        logger.info(f"🚀 Running {config.name} in PAPER mode for {format_duration(args.duration)}")
        await asyncio.sleep(args.duration)
    except asyncio.CancelledError:
        logger.info("Interrupted")
    finally:
        await engine.stop()
        if feed_task is not None:
            feed_task.cancel()
            await asyncio.gather(feed_task, return_exceptions=True)
        if metrics_started:
            await engine.metrics.stop_server()

    print_summary(engine, loop.time() - started)
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
