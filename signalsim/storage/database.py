"""
Durable trade and order storage.

Trades and their child orders live in a SQLite database so that a
settlement run (or the live monitor) can be interrupted and resumed at
any point without reprocessing fills that were already booked.  All
operations go through a single connection guarded by a lock; each
public method is one short transaction, which keeps row updates atomic
when several settlement workers share the store.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..execution.models import (
    ACTIVE,
    CANCELLED,
    CLOSED,
    LONG,
    PENDING,
    SHORT,
    STOPPED,
    EvaluationResultRecord,
    Order,
    Trade,
)
from ..utils.timeutils import now_utc, to_iso, to_utc


logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER,
    channel TEXT NOT NULL,
    trading_pair TEXT NOT NULL,
    direction TEXT NOT NULL,
    leverage REAL NOT NULL DEFAULT 1,
    entry_price REAL NOT NULL,
    stop_loss REAL,
    take_profits TEXT NOT NULL,
    quantity REAL,
    risk_percentage REAL NOT NULL DEFAULT 0,
    exchange TEXT NOT NULL DEFAULT 'simulation',
    status TEXT NOT NULL DEFAULT 'pending',
    entry_filled_at TEXT,
    entry_fill_price REAL,
    exit_price REAL,
    exit_filled_at TEXT,
    pnl REAL,
    pnl_percentage REAL,
    stop_loss_breakeven INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    trade_id INTEGER NOT NULL REFERENCES trades(id),
    order_type TEXT NOT NULL,
    tp_index INTEGER,
    price REAL,
    quantity REAL,
    status TEXT NOT NULL DEFAULT 'pending',
    filled_at TEXT,
    filled_price REAL
);
CREATE TABLE IF NOT EXISTS evaluation_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel TEXT NOT NULL,
    prop_firm_name TEXT NOT NULL,
    passed INTEGER NOT NULL,
    violations TEXT NOT NULL,
    metrics TEXT NOT NULL,
    start_date TEXT,
    end_date TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status);
CREATE INDEX IF NOT EXISTS idx_trades_channel ON trades(channel);
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_unique_leg
    ON orders(trade_id, order_type, IFNULL(tp_index, -1));
"""

# Columns that `update_trade` / `update_order` may touch
_TRADE_COLUMNS = {
    "status", "stop_loss", "quantity", "entry_filled_at", "entry_fill_price",
    "exit_price", "exit_filled_at", "pnl", "pnl_percentage", "stop_loss_breakeven",
}
_ORDER_COLUMNS = {"price", "quantity", "status", "filled_at", "filled_price"}
_TIMESTAMP_COLUMNS = {"entry_filled_at", "exit_filled_at", "filled_at"}


def _to_db(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _TIMESTAMP_COLUMNS:
        return to_iso(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _row_to_trade(row: sqlite3.Row) -> Trade:
    return Trade(
        id=row["id"],
        message_id=row["message_id"],
        channel=row["channel"],
        trading_pair=row["trading_pair"],
        direction=row["direction"],
        leverage=row["leverage"],
        entry_price=row["entry_price"],
        stop_loss=row["stop_loss"],
        take_profits=[float(tp) for tp in json.loads(row["take_profits"])],
        quantity=row["quantity"],
        risk_percentage=row["risk_percentage"],
        exchange=row["exchange"],
        status=row["status"],
        entry_filled_at=to_utc(row["entry_filled_at"]),
        entry_fill_price=row["entry_fill_price"],
        exit_price=row["exit_price"],
        exit_filled_at=to_utc(row["exit_filled_at"]),
        pnl=row["pnl"],
        pnl_percentage=row["pnl_percentage"],
        stop_loss_breakeven=bool(row["stop_loss_breakeven"]),
        created_at=to_utc(row["created_at"]),
        expires_at=to_utc(row["expires_at"]),
    )


def _row_to_order(row: sqlite3.Row) -> Order:
    return Order(
        id=row["id"],
        trade_id=row["trade_id"],
        order_type=row["order_type"],
        tp_index=row["tp_index"],
        price=row["price"],
        quantity=row["quantity"],
        status=row["status"],
        filled_at=to_utc(row["filled_at"]),
        filled_price=row["filled_price"],
    )


class TradeStore:
    """SQLite persistence for trades, orders and evaluation results.

    Parameters
    ----------
    path : str
        Database file path.  ``":memory:"`` gives a private in‑memory
        database, which the tests use.
    """

    def __init__(self, path: str = "data/signalsim.db") -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        logger.info("Trade store initialised at %s", path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------
    def insert_trade(self, trade: Trade) -> Trade:
        """Persist a new trade and return it with its id assigned.

        The trade direction is stamped at insertion time so that a later
        breakeven move of the stop loss can never flip the derived side.
        """
        direction = trade.direction or (LONG if trade.is_long else SHORT)
        now = to_iso(now_utc())
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO trades (
                    message_id, channel, trading_pair, direction, leverage, entry_price,
                    stop_loss, take_profits, quantity, risk_percentage, exchange, status,
                    entry_filled_at, entry_fill_price, exit_price, exit_filled_at, pnl,
                    pnl_percentage, stop_loss_breakeven, created_at, updated_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.message_id,
                    trade.channel,
                    trade.trading_pair,
                    direction,
                    trade.leverage,
                    trade.entry_price,
                    trade.stop_loss,
                    json.dumps(list(trade.take_profits)),
                    trade.quantity,
                    trade.risk_percentage,
                    trade.exchange,
                    trade.status,
                    to_iso(trade.entry_filled_at),
                    trade.entry_fill_price,
                    trade.exit_price,
                    to_iso(trade.exit_filled_at),
                    trade.pnl,
                    trade.pnl_percentage,
                    int(trade.stop_loss_breakeven),
                    to_iso(trade.created_at),
                    now,
                    to_iso(trade.expires_at),
                ),
            )
            self._conn.commit()
            trade_id = cur.lastrowid
        trade.id = trade_id
        trade.direction = direction
        return trade

    def get_trade(self, trade_id: int) -> Optional[Trade]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return _row_to_trade(row) if row else None

    def update_trade(self, trade_id: int, **updates: Any) -> None:
        """Update the given columns of one trade row."""
        unknown = set(updates) - _TRADE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update trade columns: {sorted(unknown)}")
        if not updates:
            return
        columns = sorted(updates)
        assignments = ", ".join(f"{col} = ?" for col in columns)
        values = [_to_db(col, updates[col]) for col in columns]
        values.extend([to_iso(now_utc()), trade_id])
        with self._lock:
            self._conn.execute(
                f"UPDATE trades SET {assignments}, updated_at = ? WHERE id = ?",
                values,
            )
            self._conn.commit()

    def _select_trades(self, where: str, params: Iterable[Any], order_by: str) -> List[Trade]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM trades WHERE {where} ORDER BY {order_by}", tuple(params)
            ).fetchall()
        return [_row_to_trade(row) for row in rows]

    def get_trades_by_status(self, status: str, channel: Optional[str] = None) -> List[Trade]:
        if channel is None:
            return self._select_trades("status = ?", (status,), "created_at ASC, id ASC")
        return self._select_trades(
            "status = ? AND channel = ?", (status, channel), "created_at ASC, id ASC"
        )

    def get_active_trades(self, channel: Optional[str] = None) -> List[Trade]:
        """Return pending and active trades, oldest first."""
        where = "status IN (?, ?)"
        params: List[Any] = [PENDING, ACTIVE]
        if channel is not None:
            where += " AND channel = ?"
            params.append(channel)
        return self._select_trades(where, params, "created_at ASC, id ASC")

    def get_closed_trades(self, channel: Optional[str] = None) -> List[Trade]:
        """Return closed, stopped and cancelled trades, most recent exit first."""
        where = "status IN (?, ?, ?)"
        params: List[Any] = [CLOSED, STOPPED, CANCELLED]
        if channel is not None:
            where += " AND channel = ?"
            params.append(channel)
        return self._select_trades(where, params, "exit_filled_at DESC, id DESC")

    def get_trades_by_channel(self, channel: str) -> List[Trade]:
        return self._select_trades("channel = ?", (channel,), "created_at ASC, id ASC")

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def insert_order(self, order: Order) -> Order:
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO orders (trade_id, order_type, tp_index, price, quantity,
                                    status, filled_at, filled_price)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    order.trade_id,
                    order.order_type,
                    order.tp_index,
                    order.price,
                    order.quantity,
                    order.status,
                    to_iso(order.filled_at),
                    order.filled_price,
                ),
            )
            self._conn.commit()
            order.id = cur.lastrowid
        return order

    def update_order(self, order_id: int, **updates: Any) -> None:
        unknown = set(updates) - _ORDER_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update order columns: {sorted(unknown)}")
        if not updates:
            return
        columns = sorted(updates)
        assignments = ", ".join(f"{col} = ?" for col in columns)
        values = [_to_db(col, updates[col]) for col in columns]
        values.append(order_id)
        with self._lock:
            self._conn.execute(f"UPDATE orders SET {assignments} WHERE id = ?", values)
            self._conn.commit()

    def get_orders_by_trade_id(self, trade_id: int) -> List[Order]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM orders WHERE trade_id = ? ORDER BY id ASC", (trade_id,)
            ).fetchall()
        return [_row_to_order(row) for row in rows]

    def ensure_orders(self, trade_id: int, wanted: Iterable[Order]) -> List[Order]:
        """Create any of the `wanted` orders that do not exist yet.

        Orders are identified by ``(order_type, tp_index)``; existing rows
        are never touched or duplicated.  The check and the inserts run
        under one lock and one transaction.

        Returns
        -------
        list of Order
            All orders of the trade after the operation.
        """
        with self._lock:
            existing = {
                (order.order_type, order.tp_index)
                for order in self.get_orders_by_trade_id(trade_id)
            }
            created = 0
            for order in wanted:
                key = (order.order_type, order.tp_index)
                if key in existing:
                    continue
                self._conn.execute(
                    """
                    INSERT INTO orders (trade_id, order_type, tp_index, price, quantity, status)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (trade_id, order.order_type, order.tp_index, order.price,
                     order.quantity, order.status),
                )
                existing.add(key)
                created += 1
            self._conn.commit()
            if created:
                logger.debug("Created %d missing orders for trade %s", created, trade_id)
            return self.get_orders_by_trade_id(trade_id)

    # ------------------------------------------------------------------
    # Evaluation results
    # ------------------------------------------------------------------
    def insert_evaluation_result(self, record: EvaluationResultRecord) -> EvaluationResultRecord:
        created_at = record.created_at or to_iso(now_utc())
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO evaluation_results (channel, prop_firm_name, passed, violations,
                                                metrics, start_date, end_date, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.channel,
                    record.prop_firm_name,
                    int(record.passed),
                    json.dumps(record.violations, sort_keys=True),
                    json.dumps(record.metrics, sort_keys=True),
                    record.start_date,
                    record.end_date,
                    created_at,
                ),
            )
            self._conn.commit()
            record.id = cur.lastrowid
        record.created_at = created_at
        return record

    def get_evaluation_results(self, channel: Optional[str] = None) -> List[EvaluationResultRecord]:
        query = "SELECT * FROM evaluation_results"
        params: Dict[str, Any] = {}
        if channel is not None:
            query += " WHERE channel = :channel"
            params["channel"] = channel
        query += " ORDER BY id ASC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            EvaluationResultRecord(
                id=row["id"],
                channel=row["channel"],
                prop_firm_name=row["prop_firm_name"],
                passed=bool(row["passed"]),
                violations=json.loads(row["violations"]),
                metrics=json.loads(row["metrics"]),
                start_date=row["start_date"],
                end_date=row["end_date"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
