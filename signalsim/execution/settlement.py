"""
Historical settlement of a single trade.

The settlement engine fetches the price window of one trade from a
price provider and replays it through the shared `TradeStateMachine`.
The fetch in `initialize()` is the only blocking step; `process()` is a
tight in‑memory loop.  Each engine mutates only its own trade and
order rows, so engines of different trades can run in parallel.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional
import pandas as pd

from ..storage.database import TradeStore
from ..utils.timeutils import now_utc, to_iso
from .models import ACTIVE, PENDING, Trade
from .price_source import HistoricalPriceSource, PriceSeriesProvider
from .state_machine import TradeStateMachine


logger = logging.getLogger(__name__)


class SettlementEngine:
    """Replay the price history of one trade.

    Parameters
    ----------
    trade : Trade
        A persisted trade.  It is reloaded from the store on
        `initialize()`.
    store : TradeStore
        Trade and order persistence.
    price_provider : PriceSeriesProvider
        Source of the historical price window.
    breakeven_after_tps : int
        Take profit fills after which the stop loss moves to breakeven.
    clock : callable, optional
        Returns "now" as a UTC timestamp.  Caps the price window.
    """

    def __init__(
        self,
        trade: Trade,
        store: TradeStore,
        price_provider: PriceSeriesProvider,
        breakeven_after_tps: int = 1,
        clock: Optional[Callable[[], pd.Timestamp]] = None,
    ) -> None:
        self.trade = trade
        self.store = store
        self.price_provider = price_provider
        self.breakeven_after_tps = breakeven_after_tps
        self.clock = clock or now_utc
        self.machine: Optional[TradeStateMachine] = None
        self.source = HistoricalPriceSource([])
        self.window_end: Optional[pd.Timestamp] = None

    def initialize(self, max_duration_days: float = 7) -> None:
        """Reload durable state and fetch the price window.

        Raises
        ------
        PriceDataError
            If the provider cannot deliver the window.  Nothing has been
            changed on the trade in that case.
        """
        stored = self.store.get_trade(self.trade.id)
        if stored is None:
            raise ValueError(f"Trade {self.trade.id} does not exist in the store")
        self.trade = stored
        if self.trade.is_terminal:
            logger.debug("Trade %s is already %s", self.trade.id, self.trade.status)
            self.machine = None
            return

        self.machine = TradeStateMachine(self.trade, self.store, self.breakeven_after_tps)

        start = self.trade.created_at
        now = self.clock()
        if start > now:
            logger.warning("Trade %s was created in the future (%s); nothing to replay",
                           self.trade.id, to_iso(start))
            self.window_end = None
            self.source = HistoricalPriceSource([])
            return
        self.window_end = min(start + pd.Timedelta(days=max_duration_days), now)
        points = self.price_provider.get_price_history(self.trade.trading_pair, start, self.window_end)
        self.source = HistoricalPriceSource(points)
        logger.debug(
            "Trade %s: %d price points for %s between %s and %s",
            self.trade.id, len(self.source), self.trade.trading_pair, to_iso(start), to_iso(self.window_end),
        )

    @property
    def remaining_quantity(self):
        return self.machine.remaining_quantity if self.machine else None

    @property
    def total_pnl(self):
        return self.machine.total_pnl if self.machine else None

    def process(self) -> bool:
        """Replay the fetched window.

        Returns
        -------
        bool
            ``True`` once the trade is terminal, ``False`` if the window
            ended with the trade still pending or active.
        """
        if self.machine is None:
            if self.trade.is_terminal:
                return True
            raise RuntimeError("initialize() must be called before process()")
        machine = self.machine

        if len(self.source) == 0:
            if self.trade.status == PENDING and self.window_end is not None:
                machine.cancel("no price data")
                return True
            if self.trade.status == ACTIVE:
                logger.warning("Trade %s: no price data for the active trade", self.trade.id)
            return machine.is_terminal

        for point in self.source:
            if machine.on_price(point):
                return True
        return machine.finish_window(self.window_end)


def create_settlement_engine(
    trade: Trade,
    store: TradeStore,
    price_provider: PriceSeriesProvider,
    breakeven_after_tps: int = 1,
    clock: Optional[Callable[[], pd.Timestamp]] = None,
) -> SettlementEngine:
    return SettlementEngine(trade, store, price_provider, breakeven_after_tps, clock)
