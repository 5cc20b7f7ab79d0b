"""
Live monitoring of open trades.

The live monitor polls the current price of every pending or active
trade and feeds it into the same `TradeStateMachine` used by the
historical settlement engine, so live and simulated trades go through
identical entry, take profit, breakeven, stop loss and expiry logic.

The loop runs until interrupted with Ctrl+C.  All state is in the
trade store, so the monitor can be restarted at any time.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional
import pandas as pd

from ..storage.database import TradeStore
from ..utils.timeutils import now_utc
from .models import PENDING
from .price_source import LivePriceSource, PriceDataError, PricePoint, PriceSeriesProvider
from .state_machine import TradeStateMachine


logger = logging.getLogger(__name__)


class LiveTradeMonitor:
    """Poll prices and advance every open trade.

    Parameters
    ----------
    store : TradeStore
        Trade and order persistence.
    provider : PriceSeriesProvider
        Source of current prices.
    breakeven_after_tps : int
        Take profit fills after which the stop loss moves to breakeven.
    poll_interval : float
        Seconds between two polls in `run()`.
    clock : callable, optional
        Returns "now" as a UTC timestamp; every polled price is stamped
        with it.
    channel : str, optional
        Only monitor the trades of this channel.
    """

    def __init__(
        self,
        store: TradeStore,
        provider: PriceSeriesProvider,
        breakeven_after_tps: int = 1,
        poll_interval: float = 60.0,
        clock: Optional[Callable[[], pd.Timestamp]] = None,
        channel: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.provider = provider
        self.breakeven_after_tps = breakeven_after_tps
        self.poll_interval = poll_interval
        self.clock = clock or now_utc
        self.channel = channel
        self.sleep = sleep
        self.machines: Dict[int, TradeStateMachine] = {}

    def _quote(self, pair: str, quotes: Dict[str, Optional[PricePoint]]) -> Optional[PricePoint]:
        if pair not in quotes:
            try:
                quotes[pair] = LivePriceSource(self.provider, pair, self.clock).next_point()
            except PriceDataError as exc:
                logger.warning("Could not fetch the current price of %s: %s", pair, exc)
                quotes[pair] = None
        return quotes[pair]

    def poll_once(self) -> int:
        """Advance every open trade by one price observation.

        Returns
        -------
        int
            Number of trades that reached a terminal state in this poll.
        """
        trades = self.store.get_active_trades(self.channel)
        open_ids = {trade.id for trade in trades}
        for trade_id in list(self.machines):
            if trade_id not in open_ids:
                del self.machines[trade_id]

        quotes: Dict[str, Optional[PricePoint]] = {}
        finished = 0
        for trade in trades:
            machine = self.machines.get(trade.id)
            if machine is None:
                machine = TradeStateMachine(trade, self.store, self.breakeven_after_tps)
                self.machines[trade.id] = machine

            point = self._quote(trade.trading_pair, quotes)
            if point is None:
                if machine.trade.status == PENDING and self.clock() > machine.trade.expires_at:
                    machine.cancel("expired without a price")
                    finished += 1
                    del self.machines[trade.id]
                continue

            if machine.on_price(point):
                finished += 1
                del self.machines[trade.id]

        logger.debug("Polled %d open trades, %d finished", len(trades), finished)
        return finished

    def run(self) -> None:
        """Poll until interrupted."""
        logger.info("Starting live monitor (poll interval %.0fs)", self.poll_interval)
        try:
            while True:
                self.poll_once()
                self.sleep(self.poll_interval)
        except KeyboardInterrupt:
            logger.info("Shutting down live monitor...")
