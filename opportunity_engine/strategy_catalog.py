"""
Strategy catalog.

Holds every configured strategy variant, answers lookups by id, category,
risk tier and priority, and is the only place strategy counters change.
"""

import logging
import threading
import time
import uuid
from dataclasses import replace
from typing import Dict, List, NamedTuple, Optional, Tuple

from .exceptions import ValidationError
from .interfaces import SystemTimeProvider, TimeProvider
from .metrics import RollingPerformanceWindow
from .types import (
    CatalogStats,
    ExecutionOutcome,
    PerformanceHistory,
    RiskTier,
    StrategyCategory,
    StrategyParameters,
    StrategyRecord,
    StrategySpec,
)

logger = logging.getLogger(__name__)


class StrategyCatalog:
    """
    Registry of strategy records with live performance counters.

    All mutations run under a single re-entrant lock so concurrent
    ``record_outcome`` calls never lose updates; readers get copies.
    """

    HISTORY_WINDOW = 100

    def __init__(self, time_provider: Optional[TimeProvider] = None):
        self._time = time_provider or SystemTimeProvider()
        self._lock = threading.RLock()
        self._records: Dict[str, StrategyRecord] = {}
        self._by_category: Dict[StrategyCategory, List[str]] = {}
        self._windows: Dict[StrategyCategory, RollingPerformanceWindow] = {}
        self._next_index = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # === REGISTRATION ===

    def register(self, spec: StrategySpec) -> str:
        """
        Register a strategy variant.

        Args:
            spec: Name, category, tier, thresholds and parameters

        Returns:
            Newly generated strategy id
        """
        if not spec.name:
            raise ValidationError("Strategy name cannot be empty")

        try:
            category = StrategyCategory(spec.category)
            risk_tier = RiskTier(spec.risk_tier)
        except ValueError as e:
            raise ValidationError(f"Invalid strategy classification: {e}")

        strategy_id = str(uuid.uuid4())
        with self._lock:
            record = StrategyRecord(
                id=strategy_id,
                name=spec.name,
                category=category,
                risk_tier=risk_tier,
                enabled=spec.enabled,
                priority=int(spec.priority),
                min_profit_usd=float(spec.min_profit_usd),
                max_cost_ceiling=float(spec.max_cost_ceiling),
                parameters=spec.parameters,
                registration_index=self._next_index,
            )
            self._next_index += 1
            self._records[strategy_id] = record
            self._by_category.setdefault(category, []).append(strategy_id)

        logger.debug(f"Registered strategy {spec.name} ({category.value}) as {strategy_id}")
        return strategy_id

    # === LOOKUPS ===

    def get(self, strategy_id: str) -> Optional[StrategyRecord]:
        with self._lock:
            record = self._records.get(strategy_id)
            return replace(record) if record is not None else None

    def all(self) -> List[StrategyRecord]:
        """Every record in registration order."""
        with self._lock:
            return [replace(r) for r in self._records.values()]

    def get_by_category(self, category: StrategyCategory) -> List[StrategyRecord]:
        """Records of one category, priority descending then registration order."""
        with self._lock:
            records = [self._records[i] for i in self._by_category.get(category, [])]
            return [replace(r) for r in sorted(records, key=_priority_key)]

    def get_by_risk(self, risk_tier: RiskTier) -> List[StrategyRecord]:
        with self._lock:
            return [replace(r) for r in self._records.values() if r.risk_tier == risk_tier]

    def active(self) -> List[StrategyRecord]:
        with self._lock:
            return [replace(r) for r in self._records.values() if r.enabled]

    def select_for(self, category: StrategyCategory) -> Optional[StrategyRecord]:
        """
        Highest-priority enabled record for ``category``.

        Ties on priority go to the earliest registered record. Returns None
        when the category has no enabled strategy.
        """
        with self._lock:
            best: Optional[StrategyRecord] = None
            for strategy_id in self._by_category.get(category, []):
                record = self._records[strategy_id]
                if not record.enabled:
                    continue
                if best is None or _priority_key(record) < _priority_key(best):
                    best = record
            return replace(best) if best is not None else None

    # === ACTIVATION ===

    def activate(self, strategy_id: str) -> None:
        self._set_enabled(strategy_id, True)

    def deactivate(self, strategy_id: str) -> None:
        self._set_enabled(strategy_id, False)

    def _set_enabled(self, strategy_id: str, enabled: bool) -> None:
        with self._lock:
            record = self._require(strategy_id)
            if record.enabled == enabled:
                return
            record.enabled = enabled
        logger.info(
            f"Strategy {'activated' if enabled else 'deactivated'}: {record.name}"
        )

    def _require(self, strategy_id: str) -> StrategyRecord:
        record = self._records.get(strategy_id)
        if record is None:
            raise ValidationError(
                f"Unknown strategy id: {strategy_id}", {"strategy_id": strategy_id}
            )
        return record

    # === PERFORMANCE ===

    def record_outcome(self, strategy_id: str, outcome: ExecutionOutcome) -> StrategyRecord:
        """
        Fold one execution outcome into the strategy's counters.

        Updates attempted/profitable counts, cumulative profit (successful
        trades only), success rate, the incremental mean of execution time
        and the category's rolling window, as one atomic step.

        Returns:
            Snapshot of the updated record
        """
        with self._lock:
            record = self._require(strategy_id)

            record.trades_attempted += 1
            if outcome.success:
                record.trades_profitable += 1
                record.cumulative_profit_usd += outcome.profit_usd

            n = record.trades_attempted
            record.success_rate = record.trades_profitable / n
            record.average_execution_seconds = (
                record.average_execution_seconds * (n - 1) + outcome.duration_seconds
            ) / n
            record.last_executed_at = self._time.current_timestamp()

            window = self._windows.get(record.category)
            if window is None:
                window = RollingPerformanceWindow(self.HISTORY_WINDOW)
                self._windows[record.category] = window
            window.add(outcome.success, outcome.profit_usd)

            return replace(record)

    def performance_history(self, category: StrategyCategory) -> Optional[PerformanceHistory]:
        """Category performance aggregated from recorded outcomes, if any."""
        with self._lock:
            window = self._windows.get(category)
            if window is None:
                return None
            return PerformanceHistory(
                category=category,
                success_rate=window.success_rate,
                average_profit=window.average_profit,
                total_trades=window.total_trades,
                window_size=window.count,
            )

    def top_performers(self, limit: int = 10) -> List[StrategyRecord]:
        """Traded records ranked by success rate x cumulative profit."""
        with self._lock:
            traded = [r for r in self._records.values() if r.trades_attempted > 0]
            traded.sort(key=lambda r: r.id)
            traded.sort(key=lambda r: r.success_rate * r.cumulative_profit_usd, reverse=True)
            return [replace(r) for r in traded[: max(limit, 0)]]

    def stats(self) -> CatalogStats:
        with self._lock:
            by_category: Dict[str, int] = {}
            by_risk: Dict[str, int] = {}
            active = 0
            for record in self._records.values():
                by_category[record.category.value] = by_category.get(record.category.value, 0) + 1
                by_risk[record.risk_tier.value] = by_risk.get(record.risk_tier.value, 0) + 1
                if record.enabled:
                    active += 1
            return CatalogStats(
                total=len(self._records),
                active=active,
                by_category=by_category,
                by_risk=by_risk,
            )


def _priority_key(record: StrategyRecord) -> Tuple[int, int]:
    return (-record.priority, record.registration_index)


class _Family(NamedTuple):
    """Parameters for one generated family of strategy variants."""

    name: str
    category: StrategyCategory
    count: int
    # (exclusive upper bound on the variant index, tier); None closes the table
    tiers: Tuple[Tuple[Optional[int], RiskTier], ...]
    min_profit: Tuple[float, float]
    cost_ceiling: Tuple[float, float]
    priority_base: int
    priority_cycle: Optional[int] = None


_LOW, _MEDIUM, _HIGH, _EXTREME = RiskTier.LOW, RiskTier.MEDIUM, RiskTier.HIGH, RiskTier.EXTREME

DEFAULT_FAMILIES: Tuple[_Family, ...] = (
    _Family("Simple Arbitrage", StrategyCategory.ARBITRAGE, 100,
            ((None, _LOW),), (0.5, 0.1), (50, 1), 100),
    _Family("Cross-DEX Arbitrage", StrategyCategory.CROSS_DEX, 100,
            ((50, _LOW), (None, _MEDIUM)), (1.0, 0.2), (60, 1), 90, 50),
    _Family("Triangular Arbitrage", StrategyCategory.TRIANGULAR_ARBITRAGE, 100,
            ((30, _LOW), (70, _MEDIUM), (None, _HIGH)), (1.5, 0.15), (70, 1), 85, 40),
    _Family("Sandwich Strategy", StrategyCategory.SANDWICH, 50,
            ((None, _HIGH),), (5.0, 0.5), (100, 2), 70),
    _Family("Frontrun Strategy", StrategyCategory.FRONTRUN, 50,
            ((None, _EXTREME),), (10.0, 1.0), (150, 3), 60),
    _Family("Backrun Strategy", StrategyCategory.BACKRUN, 50,
            ((25, _MEDIUM), (None, _HIGH)), (3.0, 0.3), (80, 2), 75),
    _Family("Liquidation Strategy", StrategyCategory.LIQUIDATION, 100,
            ((40, _MEDIUM), (None, _HIGH)), (2.0, 0.25), (90, 1), 80, 50),
    _Family("Flash Loan Arbitrage", StrategyCategory.FLASH_LOAN, 100,
            ((30, _MEDIUM), (None, _HIGH)), (10.0, 0.5), (120, 2), 65, 40),
    _Family("Market Making", StrategyCategory.MARKET_MAKING, 80,
            ((50, _LOW), (None, _MEDIUM)), (0.3, 0.05), (40, 1), 95),
    _Family("Trend Following", StrategyCategory.TREND_FOLLOWING, 60,
            ((30, _LOW), (None, _MEDIUM)), (1.0, 0.1), (50, 1), 70),
    _Family("Mean Reversion", StrategyCategory.MEAN_REVERSION, 60,
            ((35, _LOW), (None, _MEDIUM)), (0.8, 0.08), (45, 1), 72),
    _Family("Statistical Arbitrage", StrategyCategory.STATISTICAL_ARBITRAGE, 80,
            ((50, _LOW), (None, _MEDIUM)), (0.7, 0.07), (55, 1), 88),
    _Family("Momentum Strategy", StrategyCategory.MOMENTUM, 70,
            ((30, _MEDIUM), (None, _HIGH)), (1.2, 0.12), (60, 1), 68),
    _Family("Cross-Chain Arbitrage", StrategyCategory.CROSS_CHAIN, 60,
            ((20, _MEDIUM), (None, _HIGH)), (5.0, 0.3), (100, 2), 55),
    _Family("JIT Liquidity", StrategyCategory.JIT_LIQUIDITY, 40,
            ((20, _MEDIUM), (None, _HIGH)), (2.0, 0.2), (80, 2), 65),
    _Family("Volume Analysis", StrategyCategory.VOLUME_ANALYSIS, 40,
            ((None, _LOW),), (0.5, 0.05), (40, 1), 85),
    _Family("Orderbook Imbalance", StrategyCategory.ORDERBOOK_IMBALANCE, 40,
            ((25, _LOW), (None, _MEDIUM)), (0.6, 0.06), (45, 1), 82),
    _Family("Funding Rate Arbitrage", StrategyCategory.FUNDING_RATE, 30,
            ((None, _LOW),), (1.0, 0.1), (50, 1), 78),
    _Family("Basis Trading", StrategyCategory.BASIS_TRADING, 30,
            ((None, _LOW),), (0.8, 0.08), (48, 1), 80),
)


def _tier_for(family: _Family, index: int) -> RiskTier:
    for bound, tier in family.tiers:
        if bound is None or index < bound:
            return tier
    return family.tiers[-1][1]


def family_specs(family: _Family) -> List[StrategySpec]:
    """Expand one family into its numbered strategy specs."""
    specs = []
    for i in range(family.count):
        offset = i % family.priority_cycle if family.priority_cycle else i
        specs.append(
            StrategySpec(
                name=f"{family.name} {i + 1}",
                category=family.category,
                risk_tier=_tier_for(family, i),
                priority=family.priority_base - offset,
                min_profit_usd=round(family.min_profit[0] + i * family.min_profit[1], 6),
                max_cost_ceiling=family.cost_ceiling[0] + i * family.cost_ceiling[1],
                parameters=StrategyParameters(),
            )
        )
    return specs


def build_default_catalog(
    catalog: Optional[StrategyCatalog] = None,
    families: Tuple[_Family, ...] = DEFAULT_FAMILIES,
) -> StrategyCatalog:
    """
    Populate a catalog with the stock strategy variants.

    Args:
        catalog: Catalog to fill (a new one is created when omitted)
        families: Family table to expand

    Returns:
        The populated catalog
    """
    catalog = catalog if catalog is not None else StrategyCatalog()
    started = time.perf_counter()
    for family in families:
        for spec in family_specs(family):
            catalog.register(spec)
    logger.info(
        f"Strategy catalog initialized with {len(catalog)} strategies "
        f"in {time.perf_counter() - started:.3f}s"
    )
    return catalog
