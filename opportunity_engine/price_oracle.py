"""
In-memory price oracle.

Quote book keyed by (venue, asset) implementing the PriceOracle capability.
Feeds (or tests) push quotes in; averages and cross-venue discrepancies are
computed over quotes that are still fresh.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .exceptions import DataError
from .interfaces import SystemTimeProvider, TimeProvider
from .types import PriceDiscrepancy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Quote:
    venue: str
    asset: str
    price: float
    timestamp: float


class InMemoryPriceOracle:
    """
    Thread-safe quote book.

    Args:
        time_provider: Clock used for quote timestamps and freshness checks
        average_max_age: Quotes older than this are ignored by current_price
        discrepancy_max_age: Quotes older than this are ignored by
            find_discrepancies
    """

    def __init__(
        self,
        time_provider: Optional[TimeProvider] = None,
        average_max_age: float = 10.0,
        discrepancy_max_age: float = 5.0,
    ):
        self._time = time_provider or SystemTimeProvider()
        self.average_max_age = average_max_age
        self.discrepancy_max_age = discrepancy_max_age
        self._quotes: Dict[Tuple[str, str], Quote] = {}
        self._lock = threading.RLock()

    def update(self, venue: str, asset: str, price: float, timestamp: Optional[float] = None) -> Quote:
        """Store the latest quote for ``asset`` on ``venue``."""
        if not venue or not asset:
            raise DataError("Quote requires a venue and an asset", source=venue, asset=asset)
        if price is None or price <= 0:
            raise DataError(f"Invalid price {price}", source=venue, asset=asset)

        quote = Quote(
            venue=venue,
            asset=asset.upper(),
            price=float(price),
            timestamp=self._time.current_timestamp() if timestamp is None else timestamp,
        )
        with self._lock:
            self._quotes[(venue, quote.asset)] = quote
        return quote

    def _fresh_quotes(self, asset: str, max_age: float) -> List[Quote]:
        now = self._time.current_timestamp()
        asset = asset.upper()
        with self._lock:
            return [
                q
                for (_, quote_asset), q in self._quotes.items()
                if quote_asset == asset and now - q.timestamp < max_age
            ]

    def current_price(self, asset: str) -> Optional[float]:
        """Average fresh price across venues, or None when unavailable."""
        quotes = self._fresh_quotes(asset, self.average_max_age)
        if not quotes:
            return None
        return sum(q.price for q in quotes) / len(quotes)

    def venue_prices(self, asset: str) -> List[Quote]:
        """Fresh quotes for ``asset`` sorted by price, cheapest first."""
        return sorted(self._fresh_quotes(asset, self.discrepancy_max_age), key=lambda q: q.price)

    def assets(self) -> List[str]:
        with self._lock:
            return sorted({asset for (_, asset) in self._quotes})

    def find_discrepancies(self, min_spread_percent: float = 0.5) -> List[PriceDiscrepancy]:
        """
        Cheapest vs. dearest fresh venue per asset.

        Returns:
            Discrepancies with spread >= ``min_spread_percent``, widest first
        """
        found = []
        for asset in self.assets():
            quotes = self.venue_prices(asset)
            if len(quotes) < 2:
                continue
            lowest, highest = quotes[0], quotes[-1]
            spread = (highest.price - lowest.price) / lowest.price * 100
            if spread >= min_spread_percent:
                found.append(
                    PriceDiscrepancy(
                        asset=asset,
                        buy_venue=lowest.venue,
                        sell_venue=highest.venue,
                        buy_price=lowest.price,
                        sell_price=highest.price,
                        spread_percent=spread,
                    )
                )
        found.sort(key=lambda d: d.spread_percent, reverse=True)
        if found:
            logger.debug(f"Found {len(found)} price discrepancies >= {min_spread_percent}%")
        return found
