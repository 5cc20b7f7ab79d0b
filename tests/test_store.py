import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import tempfile

import pandas as pd

from signalsim.execution.models import (
    ACTIVE,
    CANCELLED,
    CLOSED,
    ENTRY,
    LONG,
    PENDING,
    SHORT,
    STOP_LOSS,
    TAKE_PROFIT,
    EvaluationResultRecord,
    Order,
    Trade,
)
from signalsim.storage.database import TradeStore

import unittest


T0 = pd.Timestamp("2024-05-01 12:00", tz="UTC")


def make_trade(channel="alpha", entry=100.0, stop=95.0, created=T0, status=PENDING) -> Trade:
    return Trade(
        channel=channel,
        trading_pair="SOL/USDT",
        entry_price=entry,
        stop_loss=stop,
        take_profits=[110.0, 120.0],
        quantity=4.0,
        leverage=2.0,
        created_at=created,
        expires_at=created + pd.Timedelta(days=1),
        status=status,
    )


class TestTradeStore(unittest.TestCase):
    def setUp(self) -> None:
        self.store = TradeStore(":memory:")

    def tearDown(self) -> None:
        self.store.close()

    def test_insert_and_get(self) -> None:
        trade = self.store.insert_trade(make_trade())
        self.assertIsNotNone(trade.id)
        loaded = self.store.get_trade(trade.id)
        self.assertEqual(loaded.trading_pair, "SOL/USDT")
        self.assertEqual(loaded.take_profits, [110.0, 120.0])
        self.assertEqual(loaded.created_at, T0)
        self.assertEqual(loaded.direction, LONG)
        self.assertFalse(loaded.stop_loss_breakeven)
        self.assertIsNone(self.store.get_trade(9999))

    def test_direction_survives_breakeven_move(self) -> None:
        trade = self.store.insert_trade(make_trade(entry=100.0, stop=105.0))
        self.assertEqual(trade.direction, SHORT)
        # Stop moved to a fill price below entry
        self.store.update_trade(trade.id, stop_loss=99.0, stop_loss_breakeven=True)
        loaded = self.store.get_trade(trade.id)
        self.assertEqual(loaded.direction, SHORT)
        self.assertFalse(loaded.is_long)
        self.assertTrue(loaded.stop_loss_breakeven)

    def test_update_trade_timestamps_and_columns(self) -> None:
        trade = self.store.insert_trade(make_trade())
        filled_at = T0 + pd.Timedelta(minutes=5)
        self.store.update_trade(trade.id, status=ACTIVE, entry_filled_at=filled_at, entry_fill_price=99.5)
        loaded = self.store.get_trade(trade.id)
        self.assertEqual(loaded.status, ACTIVE)
        self.assertEqual(loaded.entry_filled_at, filled_at)
        self.assertEqual(loaded.entry_fill_price, 99.5)
        with self.assertRaises(ValueError):
            self.store.update_trade(trade.id, channel="beta")

    def test_status_queries(self) -> None:
        pending = self.store.insert_trade(make_trade())
        active = self.store.insert_trade(make_trade(status=ACTIVE, created=T0 + pd.Timedelta(hours=1)))
        self.store.insert_trade(make_trade(status=CANCELLED))
        closed = make_trade(status=CLOSED)
        closed.exit_filled_at = T0 + pd.Timedelta(hours=3)
        self.store.insert_trade(closed)
        self.store.insert_trade(make_trade(channel="beta"))

        self.assertEqual([t.id for t in self.store.get_active_trades("alpha")], [pending.id, active.id])
        self.assertEqual(len(self.store.get_active_trades()), 3)
        self.assertEqual(len(self.store.get_closed_trades("alpha")), 2)
        self.assertEqual(len(self.store.get_trades_by_status(PENDING)), 2)
        self.assertEqual(len(self.store.get_trades_by_status(PENDING, "alpha")), 1)
        self.assertEqual(len(self.store.get_trades_by_channel("alpha")), 4)

    def test_ensure_orders_is_idempotent(self) -> None:
        trade = self.store.insert_trade(make_trade())
        wanted = [
            Order(trade_id=trade.id, order_type=ENTRY, price=100.0, quantity=4.0),
            Order(trade_id=trade.id, order_type=STOP_LOSS, price=95.0, quantity=4.0),
            Order(trade_id=trade.id, order_type=TAKE_PROFIT, price=110.0, quantity=2.0, tp_index=0),
            Order(trade_id=trade.id, order_type=TAKE_PROFIT, price=120.0, quantity=2.0, tp_index=1),
        ]
        first = self.store.ensure_orders(trade.id, wanted)
        second = self.store.ensure_orders(trade.id, wanted)
        self.assertEqual(len(first), 4)
        self.assertEqual([o.id for o in first], [o.id for o in second])

    def test_update_order(self) -> None:
        trade = self.store.insert_trade(make_trade())
        order = self.store.insert_order(Order(trade_id=trade.id, order_type=ENTRY, price=100.0))
        self.store.update_order(order.id, status="filled", filled_price=99.0, filled_at=T0)
        loaded = self.store.get_orders_by_trade_id(trade.id)[0]
        self.assertTrue(loaded.is_filled)
        self.assertEqual(loaded.filled_at, T0)
        with self.assertRaises(ValueError):
            self.store.update_order(order.id, order_type=STOP_LOSS)

    def test_evaluation_results(self) -> None:
        self.store.insert_evaluation_result(EvaluationResultRecord(
            channel="alpha",
            prop_firm_name="Mubite",
            passed=False,
            violations=[{"rule": "maxDrawdown", "severity": "error"}],
            metrics={"total_trades": 3},
            start_date="2024-05-01T12:00:00+00:00",
        ))
        self.store.insert_evaluation_result(EvaluationResultRecord(
            channel="beta", prop_firm_name="Hyrotrader", passed=True,
        ))
        records = self.store.get_evaluation_results("alpha")
        self.assertEqual(len(records), 1)
        self.assertFalse(records[0].passed)
        self.assertEqual(records[0].violations[0]["rule"], "maxDrawdown")
        self.assertEqual(records[0].metrics, {"total_trades": 3})
        self.assertIsNotNone(records[0].created_at)
        self.assertEqual(len(self.store.get_evaluation_results()), 2)


class TestTradeStoreFile(unittest.TestCase):
    def test_data_survives_reopen(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "trades.db")
            store = TradeStore(path)
            trade_id = store.insert_trade(make_trade()).id
            store.close()
            reopened = TradeStore(path)
            self.assertEqual(reopened.get_trade(trade_id).channel, "alpha")
            reopened.close()


if __name__ == '__main__':
    unittest.main()
