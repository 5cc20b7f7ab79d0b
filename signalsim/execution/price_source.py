"""
Price sources feeding the trade state machine.

The same state machine settles trades in historical replay and in live
monitoring.  The only difference between the two is where the next
price comes from: a `HistoricalPriceSource` walks a pre‑fetched,
ordered price series, while a `LivePriceSource` asks the provider for
the current price and stamps it with the wall clock.  Level touch
predicates live here as well so that both paths agree on what
"touched" means.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Protocol, Sequence
import pandas as pd

from ..utils.timeutils import now_utc


class PriceDataError(RuntimeError):
    """Raised by price providers when price data cannot be fetched."""


@dataclass(frozen=True)
class PricePoint:
    """A single observed price."""
    timestamp: pd.Timestamp
    price: float


class PriceSeriesProvider(Protocol):
    def get_price_history(
        self, pair: str, start: pd.Timestamp, end: pd.Timestamp
    ) -> List[PricePoint]:
        ...

    def get_current_price(self, pair: str) -> Optional[float]:
        ...


def normalize_pair(pair: str) -> str:
    """Normalise ``"btc/usdt"`` style pairs to ``"BTCUSDT"``."""
    return pair.replace("/", "").replace("-", "").strip().upper()


def is_take_profit_touched(price: float, level: float, is_long: bool) -> bool:
    return price >= level if is_long else price <= level


def is_stop_loss_touched(price: float, level: float, is_long: bool) -> bool:
    return price <= level if is_long else price >= level


def prepare_series(points: Sequence[PricePoint]) -> List[PricePoint]:
    """Sort points by time and keep the first point of each timestamp."""
    seen = set()
    series: List[PricePoint] = []
    for point in sorted(points, key=lambda p: p.timestamp):
        if point.timestamp in seen:
            continue
        seen.add(point.timestamp)
        series.append(point)
    return series


class HistoricalPriceSource:
    """Iterate an ordered price series exactly once."""

    def __init__(self, points: Sequence[PricePoint]) -> None:
        self.points = list(points)

    def __iter__(self) -> Iterator[PricePoint]:
        return iter(self.points)

    def __len__(self) -> int:
        return len(self.points)

    @property
    def first(self) -> Optional[PricePoint]:
        return self.points[0] if self.points else None

    @property
    def last(self) -> Optional[PricePoint]:
        return self.points[-1] if self.points else None


class LivePriceSource:
    """Poll a provider for the current price of one pair."""

    def __init__(
        self,
        provider: PriceSeriesProvider,
        pair: str,
        clock: Callable[[], pd.Timestamp] = now_utc,
    ) -> None:
        self.provider = provider
        self.pair = pair
        self.clock = clock

    def next_point(self) -> Optional[PricePoint]:
        price = self.provider.get_current_price(self.pair)
        if price is None:
            return None
        return PricePoint(timestamp=self.clock(), price=float(price))
