import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pandas as pd

from signalsim.execution.live_monitor import LiveTradeMonitor
from signalsim.execution.models import ACTIVE, CANCELLED, CLOSED, PENDING, STOPPED, Trade
from signalsim.execution.price_source import PriceDataError
from signalsim.storage.database import TradeStore

import unittest


T0 = pd.Timestamp("2024-07-01 09:00", tz="UTC")


class QuoteBoard:
    """Provider whose current prices are set by the test."""

    def __init__(self) -> None:
        self.quotes = {}
        self.calls = 0

    def get_price_history(self, pair, start, end):
        return []

    def get_current_price(self, pair):
        self.calls += 1
        quote = self.quotes.get(pair)
        if isinstance(quote, Exception):
            raise quote
        return quote


class StepClock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> pd.Timestamp:
        return self.now

    def advance(self, minutes: float = 1) -> None:
        self.now = self.now + pd.Timedelta(minutes=minutes)


class TestLiveTradeMonitor(unittest.TestCase):
    def setUp(self) -> None:
        self.store = TradeStore(":memory:")
        self.board = QuoteBoard()
        self.clock = StepClock()
        self.monitor = LiveTradeMonitor(self.store, self.board, clock=self.clock, channel="alpha")

    def tearDown(self) -> None:
        self.store.close()

    def _insert(self, pair="BTC/USDT", entry=100.0, stop=95.0, tps=(105.0, 110.0),
                expires_in=pd.Timedelta(days=1), channel="alpha") -> Trade:
        return self.store.insert_trade(Trade(
            channel=channel,
            trading_pair=pair,
            entry_price=entry,
            stop_loss=stop,
            take_profits=list(tps),
            quantity=2.0,
            created_at=T0,
            expires_at=T0 + expires_in,
        ))

    def _poll(self, **quotes) -> int:
        self.clock.advance()
        for pair, price in quotes.items():
            self.board.quotes[pair.replace("_", "/")] = price
        return self.monitor.poll_once()

    def test_trade_lifecycle_across_polls(self) -> None:
        trade = self._insert()
        self.assertEqual(self._poll(BTC_USDT=100.0), 0)
        self.assertEqual(self.store.get_trade(trade.id).status, PENDING)
        self.assertEqual(self._poll(BTC_USDT=101.0), 0)
        active = self.store.get_trade(trade.id)
        self.assertEqual(active.status, ACTIVE)
        self.assertEqual(active.entry_fill_price, 100.0)
        self.assertEqual(active.entry_filled_at, T0 + pd.Timedelta(minutes=1))

        self.assertEqual(self._poll(BTC_USDT=105.0), 0)
        self.assertTrue(self.store.get_trade(trade.id).stop_loss_breakeven)
        self.assertEqual(self._poll(BTC_USDT=110.0), 1)

        closed = self.store.get_trade(trade.id)
        self.assertEqual(closed.status, CLOSED)
        self.assertAlmostEqual(closed.pnl, 5.0 + 10.0)
        self.assertEqual(self.monitor.machines, {})

    def test_breakeven_stop_after_restart(self) -> None:
        trade = self._insert()
        self._poll(BTC_USDT=100.0)
        # Leaving the band fills the entry at 100 and TP1 on the same quote
        self._poll(BTC_USDT=105.0)
        self.assertTrue(self.store.get_trade(trade.id).stop_loss_breakeven)
        # A fresh monitor rebuilds its state from the store
        monitor = LiveTradeMonitor(self.store, self.board, clock=self.clock, channel="alpha")
        self.clock.advance()
        self.board.quotes["BTC/USDT"] = 98.0
        self.assertEqual(monitor.poll_once(), 1)
        stopped = self.store.get_trade(trade.id)
        self.assertEqual(stopped.status, STOPPED)
        # TP1 leg only, the breakeven stop adds nothing
        self.assertAlmostEqual(stopped.pnl, 5.0)

    def test_expired_pending_trade_is_cancelled(self) -> None:
        trade = self._insert(expires_in=pd.Timedelta(minutes=30))
        self.clock.advance(60)
        self.assertEqual(self._poll(BTC_USDT=120.0), 1)
        self.assertEqual(self.store.get_trade(trade.id).status, CANCELLED)

    def test_expired_trade_without_quote_is_cancelled(self) -> None:
        trade = self._insert(expires_in=pd.Timedelta(minutes=30))
        self.clock.advance(60)
        self.board.quotes["BTC/USDT"] = PriceDataError("feed down")
        with self.assertLogs("signalsim.execution.live_monitor", level="WARNING"):
            self.assertEqual(self.monitor.poll_once(), 1)
        self.assertEqual(self.store.get_trade(trade.id).status, CANCELLED)

    def test_missing_quote_leaves_live_trade_untouched(self) -> None:
        trade = self._insert()
        self.assertEqual(self._poll(), 0)
        self.assertEqual(self.store.get_trade(trade.id).status, PENDING)

    def test_one_quote_per_pair_and_channel_filter(self) -> None:
        self._insert()
        self._insert()
        other = self._insert(channel="beta")
        self._poll(BTC_USDT=120.0)
        self.assertEqual(self.board.calls, 1)
        self.assertNotIn(other.id, self.monitor.machines)

    def test_run_stops_on_keyboard_interrupt(self) -> None:
        trade = self._insert()
        self.board.quotes["BTC/USDT"] = 99.0

        def interrupt(seconds):
            raise KeyboardInterrupt

        monitor = LiveTradeMonitor(self.store, self.board, clock=self.clock, sleep=interrupt)
        monitor.run()
        self.assertEqual(self.store.get_trade(trade.id).status, ACTIVE)


if __name__ == '__main__':
    unittest.main()
