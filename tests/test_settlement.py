import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from decimal import Decimal

import pandas as pd

from signalsim.execution.models import (
    ACTIVE,
    CANCELLED,
    CLOSED,
    ORDER_FILLED,
    ORDER_PENDING,
    PENDING,
    STOP_LOSS,
    STOPPED,
    TAKE_PROFIT,
    Trade,
)
from signalsim.execution.price_source import PricePoint
from signalsim.execution.settlement import create_settlement_engine
from signalsim.storage.database import TradeStore

import unittest


T0 = pd.Timestamp("2024-01-01 00:00", tz="UTC")
NOW = T0 + pd.Timedelta(days=30)


def at(minutes: float) -> pd.Timestamp:
    return T0 + pd.Timedelta(minutes=minutes)


class FakeProvider:
    def __init__(self, prices=None, pair="BTC/USDT") -> None:
        self.series = {pair: [PricePoint(at(i), float(p)) for i, p in enumerate(prices or [])]}

    def get_price_history(self, pair, start, end):
        return [p for p in self.series.get(pair, []) if start <= p.timestamp <= end]

    def get_current_price(self, pair):
        points = self.series.get(pair)
        return points[-1].price if points else None


def insert_trade(store: TradeStore, **overrides) -> Trade:
    fields = dict(
        channel="alpha",
        trading_pair="BTC/USDT",
        entry_price=50000.0,
        stop_loss=48000.0,
        take_profits=[52000.0, 54000.0, 56000.0],
        quantity=1.0,
        leverage=10.0,
        created_at=T0,
        expires_at=T0 + pd.Timedelta(days=2),
    )
    fields.update(overrides)
    return store.insert_trade(Trade(**fields))


def settle(store: TradeStore, trade: Trade, prices, **kwargs):
    engine = create_settlement_engine(trade, store, FakeProvider(prices), clock=lambda: NOW, **kwargs)
    engine.initialize(max_duration_days=7)
    return engine, engine.process()


def orders_by_key(store: TradeStore, trade_id: int):
    return {(o.order_type, o.tp_index): o for o in store.get_orders_by_trade_id(trade_id)}


class TestSettlementScenarios(unittest.TestCase):
    def setUp(self) -> None:
        self.store = TradeStore(":memory:")

    def tearDown(self) -> None:
        self.store.close()

    def test_take_profit_then_breakeven_stop(self) -> None:
        """TP1 fills, the stop moves to the entry fill and the stop out adds nothing."""
        trade = insert_trade(self.store)
        engine, done = settle(self.store, trade, [50000, 51000, 52000, 48000])
        self.assertTrue(done)

        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.status, STOPPED)
        self.assertTrue(stored.stop_loss_breakeven)
        self.assertEqual(stored.stop_loss, 50000.0)
        self.assertEqual(stored.entry_fill_price, 50000.0)
        self.assertEqual(stored.exit_price, 48000.0)
        self.assertAlmostEqual(stored.pnl, 2000 * (1 / 3) * 10, places=2)

        orders = orders_by_key(self.store, trade.id)
        self.assertEqual(orders[(TAKE_PROFIT, 0)].status, ORDER_FILLED)
        self.assertEqual(orders[(TAKE_PROFIT, 1)].status, ORDER_PENDING)
        self.assertEqual(orders[(TAKE_PROFIT, 2)].status, ORDER_PENDING)
        stop = orders[(STOP_LOSS, None)]
        self.assertEqual(stop.status, ORDER_FILLED)
        self.assertEqual(stop.filled_price, 48000.0)
        # The stop order keeps the original level
        self.assertEqual(stop.price, 48000.0)

        machine = engine.machine
        self.assertEqual(machine.stop_loss_pnl, Decimal(0))
        self.assertEqual(machine.total_pnl, sum(machine.leg_pnls.values(), Decimal(0)))
        self.assertEqual(stored.pnl, float(machine.total_pnl))

    def test_never_reaches_entry_band_stays_pending(self) -> None:
        trade = insert_trade(self.store, expires_at=T0 + pd.Timedelta(days=30))
        _, done = settle(self.store, trade, [52000, 53000, 52500])
        self.assertFalse(done)
        self.assertEqual(self.store.get_trade(trade.id).status, PENDING)

    def test_price_after_expiry_cancels_pending_trade(self) -> None:
        trade = insert_trade(self.store, expires_at=at(1.5))
        _, done = settle(self.store, trade, [52000, 52100, 50000])
        self.assertTrue(done)
        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.status, CANCELLED)
        self.assertIsNone(stored.pnl)
        self.assertIsNone(stored.entry_filled_at)

    def test_window_ending_after_expiry_cancels(self) -> None:
        trade = insert_trade(self.store, expires_at=at(30))
        _, done = settle(self.store, trade, [52000])
        self.assertTrue(done)
        self.assertEqual(self.store.get_trade(trade.id).status, CANCELLED)

    def test_no_price_data_cancels_pending_trade(self) -> None:
        trade = insert_trade(self.store)
        _, done = settle(self.store, trade, [])
        self.assertTrue(done)
        self.assertEqual(self.store.get_trade(trade.id).status, CANCELLED)

    def test_no_price_data_keeps_active_trade_open(self) -> None:
        trade = insert_trade(self.store)
        settle(self.store, trade, [50000, 51000])
        self.assertEqual(self.store.get_trade(trade.id).status, ACTIVE)
        _, done = settle(self.store, trade, [])
        self.assertFalse(done)
        self.assertEqual(self.store.get_trade(trade.id).status, ACTIVE)

    def test_stop_loss_without_take_profit(self) -> None:
        trade = insert_trade(self.store)
        _, done = settle(self.store, trade, [50000, 51000, 47000])
        self.assertTrue(done)
        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.status, STOPPED)
        self.assertFalse(stored.stop_loss_breakeven)
        self.assertAlmostEqual(stored.pnl, (47000 - 50000) * 1 * 10)
        # Return on margin: pnl / (quantity * fill) * 100 * leverage
        self.assertAlmostEqual(stored.pnl_percentage, -600.0)

    def test_all_take_profits_on_one_tick_close_the_trade(self) -> None:
        trade = insert_trade(self.store)
        engine, done = settle(self.store, trade, [50000, 51000, 56500])
        self.assertTrue(done)
        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.status, CLOSED)
        self.assertEqual(stored.exit_price, 56500.0)
        legs = [o.quantity for o in self.store.get_orders_by_trade_id(trade.id) if o.order_type == TAKE_PROFIT]
        self.assertAlmostEqual(sum(legs), 1.0, places=10)
        expected = (56500 - 50000) * 1.0 * 10
        self.assertAlmostEqual(stored.pnl, expected, places=4)
        self.assertEqual(engine.machine.remaining_quantity, Decimal(0))

    def test_take_profits_fill_in_sequence(self) -> None:
        trade = insert_trade(self.store)
        _, done = settle(self.store, trade, [50000, 51000, 52000, 53000, 54000, 55000, 56000])
        self.assertTrue(done)
        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.status, CLOSED)
        self.assertAlmostEqual(stored.pnl, (2000 + 4000 + 6000) * (1 / 3) * 10, places=2)

    def test_breakeven_after_two_take_profits(self) -> None:
        trade = insert_trade(self.store)
        _, done = settle(self.store, trade, [50000, 51000, 52000, 49000], breakeven_after_tps=2)
        self.assertFalse(done)
        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.status, ACTIVE)
        self.assertFalse(stored.stop_loss_breakeven)
        self.assertEqual(stored.stop_loss, 48000.0)

    def test_short_trade_settles_with_inverted_levels(self) -> None:
        trade = insert_trade(
            self.store,
            trading_pair="BTC/USDT",
            entry_price=100.0,
            stop_loss=110.0,
            take_profits=[90.0, 80.0],
            quantity=10.0,
            leverage=1.0,
        )
        engine, done = settle(self.store, trade, [99, 100, 100.05, 101, 90, 80])
        self.assertTrue(done)
        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.direction, "short")
        self.assertEqual(stored.status, CLOSED)
        self.assertEqual(stored.entry_fill_price, 100.05)
        self.assertTrue(stored.stop_loss_breakeven)
        # Notional is preserved on a fill away from the requested entry
        self.assertAlmostEqual(stored.quantity * 100.05, 10 * 100.0, places=4)
        leg = stored.quantity / 2
        self.assertAlmostEqual(stored.pnl, (100.05 - 90) * leg + (100.05 - 80) * leg, places=4)

    def test_terminal_trade_is_a_no_op(self) -> None:
        trade = insert_trade(self.store)
        settle(self.store, trade, [50000, 51000, 47000])
        before = self.store.get_trade(trade.id)
        orders_before = self.store.get_orders_by_trade_id(trade.id)

        engine, done = settle(self.store, trade, [50000, 51000, 60000])
        self.assertTrue(done)
        self.assertIsNone(engine.machine)
        after = self.store.get_trade(trade.id)
        self.assertEqual(after.status, before.status)
        self.assertEqual(after.pnl, before.pnl)
        self.assertEqual(self.store.get_orders_by_trade_id(trade.id), orders_before)

    def test_trade_created_in_the_future_is_not_replayed(self) -> None:
        trade = insert_trade(self.store, created_at=NOW + pd.Timedelta(days=1),
                             expires_at=NOW + pd.Timedelta(days=3))
        _, done = settle(self.store, trade, [50000])
        self.assertFalse(done)
        self.assertEqual(self.store.get_trade(trade.id).status, PENDING)


class TestEntryFillConvention(unittest.TestCase):
    def setUp(self) -> None:
        self.store = TradeStore(":memory:")

    def tearDown(self) -> None:
        self.store.close()

    def test_long_tracks_lowest_price_inside_band(self) -> None:
        trade = insert_trade(self.store)
        settle(self.store, trade, [50040, 49960, 49990, 50100])
        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.status, ACTIVE)
        self.assertEqual(stored.entry_fill_price, 49960.0)
        self.assertEqual(stored.entry_filled_at, at(1))

    def test_long_fills_immediately_below_band(self) -> None:
        trade = insert_trade(self.store)
        settle(self.store, trade, [50500, 49000])
        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.status, ACTIVE)
        self.assertEqual(stored.entry_fill_price, 49000.0)
        self.assertEqual(stored.entry_filled_at, at(1))
        self.assertAlmostEqual(stored.quantity, 50000 / 49000, places=8)
        legs = [o.quantity for o in self.store.get_orders_by_trade_id(trade.id) if o.order_type == TAKE_PROFIT]
        self.assertAlmostEqual(sum(legs), stored.quantity, places=10)

    def test_long_above_band_does_not_fill(self) -> None:
        trade = insert_trade(self.store, expires_at=T0 + pd.Timedelta(days=30))
        settle(self.store, trade, [50100, 50060, 51000])
        self.assertEqual(self.store.get_trade(trade.id).status, PENDING)

    def test_short_tracks_highest_price_inside_band(self) -> None:
        trade = insert_trade(self.store, entry_price=100.0, stop_loss=110.0, take_profits=[90.0])
        settle(self.store, trade, [99.95, 100.08, 100.02, 99])
        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.status, ACTIVE)
        self.assertEqual(stored.entry_fill_price, 100.08)
        self.assertEqual(stored.entry_filled_at, at(1))

    def test_short_fills_immediately_above_band(self) -> None:
        trade = insert_trade(self.store, entry_price=100.0, stop_loss=110.0, take_profits=[90.0])
        settle(self.store, trade, [101])
        self.assertEqual(self.store.get_trade(trade.id).entry_fill_price, 101.0)

    def test_short_below_band_does_not_fill(self) -> None:
        trade = insert_trade(self.store, entry_price=100.0, stop_loss=110.0, take_profits=[90.0],
                             expires_at=T0 + pd.Timedelta(days=30))
        settle(self.store, trade, [99, 98.5])
        self.assertEqual(self.store.get_trade(trade.id).status, PENDING)

    def test_window_end_fills_tracked_entry(self) -> None:
        trade = insert_trade(self.store)
        _, done = settle(self.store, trade, [50010, 49990])
        self.assertFalse(done)
        stored = self.store.get_trade(trade.id)
        self.assertEqual(stored.status, ACTIVE)
        self.assertEqual(stored.entry_fill_price, 49990.0)

    def test_fill_at_requested_price_keeps_quantity(self) -> None:
        trade = insert_trade(self.store)
        settle(self.store, trade, [50000, 51000])
        self.assertEqual(self.store.get_trade(trade.id).quantity, 1.0)


if __name__ == '__main__':
    unittest.main()
