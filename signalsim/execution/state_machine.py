"""
Trade state machine shared by historical settlement and live monitoring.

A trade moves ``pending -> active -> closed | stopped`` or
``pending -> cancelled``.  `TradeStateMachine` owns every one of those
transitions (entry fill, take‑profit legs, breakeven move, stop loss,
expiry) and persists each of them through the `TradeStore`.  It does
not know where prices come from: the settlement engine feeds it a
historical series, the live monitor feeds it polled quotes.

Entry fills follow resting limit order semantics.  A long entry is
reached when price comes down to within 0.1 % of the requested entry
(price <= entry + tolerance); a short entry when price comes up to it
(price >= entry - tolerance).  While price stays inside the tolerance
band the best price seen is tracked (lowest for longs, highest for
shorts) and the fill happens at that point once price leaves the band
or the price window ends.  A price that is already beyond the band on
the favourable side fills immediately at that price.

Quantities and P&L are accumulated as `Decimal` so that the legs of a
position always add up to the position size.
"""

from __future__ import annotations

import logging
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..storage.database import TradeStore
from ..utils.timeutils import to_iso
from .models import (
    ACTIVE,
    CANCELLED,
    CLOSED,
    ENTRY,
    ORDER_FILLED,
    PENDING,
    STOP_LOSS,
    STOPPED,
    TAKE_PROFIT,
    Order,
    Trade,
)
from .price_source import PricePoint, is_stop_loss_touched, is_take_profit_touched


logger = logging.getLogger(__name__)

ENTRY_TOLERANCE = Decimal("0.001")
QUANTITY_STEP = Decimal("0.00000001")
ZERO = Decimal(0)


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value))


def split_quantity(total: Decimal, legs: int) -> List[Decimal]:
    """Split `total` evenly into `legs` parts; the last part absorbs the remainder."""
    if legs <= 0:
        return []
    base = (total / legs).quantize(QUANTITY_STEP, rounding=ROUND_DOWN)
    parts = [base] * (legs - 1)
    parts.append(total - base * (legs - 1))
    return parts


class TradeStateMachine:
    """Apply prices to one trade and persist the resulting transitions.

    Parameters
    ----------
    trade : Trade
        The trade to manage.  It must already be persisted.
    store : TradeStore
        Durable storage for the trade and its orders.
    breakeven_after_tps : int
        Number of filled take profits after which the stop loss moves to
        the entry fill price.
    """

    def __init__(self, trade: Trade, store: TradeStore, breakeven_after_tps: int = 1) -> None:
        self._setup(trade, store, breakeven_after_tps)
        self.restore()

    @classmethod
    def from_orders(cls, trade: Trade, orders: Sequence[Order], breakeven_after_tps: int = 1) -> "TradeStateMachine":
        """Rebuild the position of `trade` from `orders` without touching storage.

        The result is a read‑only view for marking open positions; it has
        no store and must not be fed prices.
        """
        machine = cls.__new__(cls)
        machine._setup(trade, None, breakeven_after_tps)
        machine.load(orders)
        return machine

    def _setup(self, trade: Trade, store: Optional[TradeStore], breakeven_after_tps: int) -> None:
        if trade.id is None:
            raise ValueError("Trade must be persisted before it can be settled")
        self.trade = trade
        self.store = store
        self.breakeven_after_tps = breakeven_after_tps
        self.is_long = trade.is_long
        self.take_profits = [to_decimal(tp) for tp in trade.take_profits]
        self.orders: Dict[Tuple[str, Optional[int]], Order] = {}
        self.entry_fill_price: Optional[Decimal] = None
        self.current_stop_loss: Optional[Decimal] = None
        self.filled_take_profits: Dict[int, Decimal] = {}
        self.leg_pnls: Dict[int, Decimal] = {}
        self.stop_loss_quantity = ZERO
        self.stop_loss_pnl = ZERO
        self.remaining_quantity = ZERO
        self.total_pnl = ZERO
        self._best_entry: Optional[PricePoint] = None
        self.resume_from = None

    # ------------------------------------------------------------------
    # Restoring persisted state
    # ------------------------------------------------------------------
    @property
    def quantity(self) -> Decimal:
        return to_decimal(self.trade.quantity)

    @property
    def filled_quantity(self) -> Decimal:
        return sum(self.filled_take_profits.values(), ZERO) + self.stop_loss_quantity

    @property
    def is_terminal(self) -> bool:
        return self.trade.is_terminal

    def _wanted_orders(self) -> List[Order]:
        legs = split_quantity(self.quantity, len(self.take_profits))
        wanted = [Order(trade_id=self.trade.id, order_type=ENTRY, price=self.trade.entry_price,
                        quantity=self.trade.quantity)]
        if self.trade.stop_loss:
            wanted.append(Order(trade_id=self.trade.id, order_type=STOP_LOSS, price=self.trade.stop_loss))
        for index, tp in enumerate(self.trade.take_profits):
            quantity = float(legs[index]) if self.trade.quantity else None
            wanted.append(Order(trade_id=self.trade.id, order_type=TAKE_PROFIT, price=tp,
                                tp_index=index, quantity=quantity))
        return wanted

    def _leg_quantity(self, index: int) -> Decimal:
        order = self.orders.get((TAKE_PROFIT, index))
        if order is not None and order.quantity:
            return to_decimal(order.quantity)
        return split_quantity(self.quantity, len(self.take_profits))[index]

    def restore(self) -> None:
        """Rebuild the in‑memory state from the persisted rows.

        Safe to call any number of times: filled legs are read back from
        their orders and never re‑applied.  Missing orders are created,
        a breakeven move lost to a crash is applied again and
        half‑finished exits are completed.
        """
        self.load(self.store.ensure_orders(self.trade.id, self._wanted_orders()))
        self._restore_breakeven()
        self._repair_interrupted_exit()

    def load(self, orders: Sequence[Order]) -> None:
        """Derive fills, quantities and P&L from `orders`; never writes."""
        if self.trade.quantity is None or self.trade.quantity <= 0:
            logger.error("Trade %s has no quantity; P&L will be zero", self.trade.id)

        self.orders = {(o.order_type, o.tp_index): o for o in orders}

        self.entry_fill_price = None
        if self.trade.entry_filled_at is not None:
            entry_order = self.orders.get((ENTRY, None))
            fill = None
            if entry_order is not None and entry_order.is_filled:
                fill = entry_order.filled_price
            fill = fill or self.trade.entry_fill_price or self.trade.entry_price
            self.entry_fill_price = to_decimal(fill)

        if self.trade.stop_loss_breakeven and self.entry_fill_price is not None:
            self.current_stop_loss = self.entry_fill_price
        elif self.trade.stop_loss:
            self.current_stop_loss = to_decimal(self.trade.stop_loss)
        else:
            self.current_stop_loss = None

        self.filled_take_profits = {}
        self.leg_pnls = {}
        self.stop_loss_quantity = ZERO
        self.stop_loss_pnl = ZERO
        remaining = self.quantity
        total = ZERO
        for index in range(len(self.take_profits)):
            order = self.orders.get((TAKE_PROFIT, index))
            if order is None or not order.is_filled:
                continue
            leg_quantity = self._leg_quantity(index)
            leg_pnl = self._leg_pnl(to_decimal(order.filled_price or order.price), leg_quantity)
            self.filled_take_profits[index] = leg_quantity
            self.leg_pnls[index] = leg_pnl
            remaining -= leg_quantity
            total += leg_pnl

        if remaining < 0:
            logger.error(
                "Trade %s: filled legs exceed the position size by %s; clamping remaining quantity to 0",
                self.trade.id, -remaining,
            )
            remaining = ZERO

        stop_order = self.orders.get((STOP_LOSS, None))
        if self.trade.status == STOPPED and stop_order is not None and stop_order.is_filled:
            self.stop_loss_quantity = remaining
            if not self.trade.stop_loss_breakeven:
                self.stop_loss_pnl = self._leg_pnl(to_decimal(stop_order.filled_price), remaining)
            total += self.stop_loss_pnl
            remaining = ZERO

        self.remaining_quantity = remaining
        self.total_pnl = total
        self._best_entry = None

        # Prices before the last booked fill were already applied
        fill_times = [o.filled_at for o in self.orders.values() if o.is_filled and o.filled_at is not None]
        if self.trade.entry_filled_at is not None:
            fill_times.append(self.trade.entry_filled_at)
        self.resume_from = max(fill_times) if fill_times else None

    def _restore_breakeven(self) -> None:
        """Move the stop when enough legs are filled but the move was never saved."""
        if self.trade.status != ACTIVE or self.trade.stop_loss_breakeven:
            return
        if self.filled_take_profits and len(self.filled_take_profits) >= self.breakeven_after_tps:
            logger.warning("Trade %s: resuming interrupted breakeven move", self.trade.id)
            self._move_stop_loss_to_breakeven()

    def _repair_interrupted_exit(self) -> None:
        """Finish an exit whose order was filled but whose trade row was not updated."""
        if self.trade.status != ACTIVE:
            return
        stop_order = self.orders.get((STOP_LOSS, None))
        if stop_order is not None and stop_order.is_filled:
            logger.warning("Trade %s: resuming interrupted stop loss settlement", self.trade.id)
            self._settle_stop_loss(PricePoint(stop_order.filled_at, stop_order.filled_price), stop_order)
        elif self.take_profits and len(self.filled_take_profits) == len(self.take_profits):
            last = max(
                (self.orders[(TAKE_PROFIT, i)] for i in self.filled_take_profits),
                key=lambda o: o.filled_at,
            )
            logger.warning("Trade %s: resuming interrupted close", self.trade.id)
            self._close(PricePoint(last.filled_at, last.filled_price))

    # ------------------------------------------------------------------
    # Price handling
    # ------------------------------------------------------------------
    def on_price(self, point: PricePoint) -> bool:
        """Apply one price observation.

        Returns
        -------
        bool
            ``True`` once the trade is in a terminal state.
        """
        if self.trade.is_terminal:
            return True
        if self.resume_from is not None and point.timestamp < self.resume_from:
            return False
        if self.trade.status == PENDING:
            if not self._process_entry(point):
                return self.trade.is_terminal
        return self._process_exits(point)

    def finish_window(self, window_end: Optional[Any] = None) -> bool:
        """Handle the end of the available price data.

        A tracked entry fills at its best point.  An entry that was never
        reached is cancelled when the data ran past `expires_at`;
        otherwise the trade stays pending.
        """
        if self.trade.is_terminal:
            return True
        if self.trade.status != PENDING:
            return False
        if self._best_entry is not None:
            self._fill_entry(self._best_entry)
            return False
        expires_at = self.trade.expires_at
        if expires_at is not None and window_end is not None and window_end > expires_at:
            self.cancel("entry not reached before expiry")
            return True
        return False

    def _entry_band(self) -> Tuple[Decimal, Decimal]:
        requested = to_decimal(self.trade.entry_price)
        tolerance = requested * ENTRY_TOLERANCE
        return requested - tolerance, requested + tolerance

    def _process_entry(self, point: PricePoint) -> bool:
        """Track or fill the entry; return ``True`` if the entry filled on this point."""
        price = to_decimal(point.price)
        low, high = self._entry_band()
        in_band = low <= price <= high
        expired = self.trade.expires_at is not None and point.timestamp > self.trade.expires_at

        if self._best_entry is not None:
            if in_band and not expired:
                best = to_decimal(self._best_entry.price)
                if (price < best) if self.is_long else (price > best):
                    self._best_entry = point
                return False
            self._fill_entry(self._best_entry)
            return True

        if expired:
            self.cancel("expired before entry")
            return False
        if in_band:
            self._best_entry = point
            return False
        beyond = price < low if self.is_long else price > high
        if beyond:
            self._fill_entry(point)
            return True
        return False

    def _process_exits(self, point: PricePoint) -> bool:
        price = to_decimal(point.price)

        # Stop loss first: a take profit never overrides a same-tick stop
        if self.current_stop_loss is not None and is_stop_loss_touched(price, self.current_stop_loss, self.is_long):
            self._settle_stop_loss(point)
            return True

        for index, level in enumerate(self.take_profits):
            if index in self.filled_take_profits:
                continue
            if is_take_profit_touched(price, level, self.is_long):
                self._fill_take_profit(index, point)
                if (len(self.filled_take_profits) >= self.breakeven_after_tps
                        and not self.trade.stop_loss_breakeven):
                    self._move_stop_loss_to_breakeven()

        if self.take_profits and len(self.filled_take_profits) == len(self.take_profits):
            self._close(point)
            return True
        return False

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _leg_pnl(self, exit_price: Decimal, quantity: Decimal) -> Decimal:
        if self.entry_fill_price is None:
            logger.error("Trade %s: cannot price a leg without an entry fill", self.trade.id)
            return ZERO
        if quantity <= 0:
            return ZERO
        diff = exit_price - self.entry_fill_price if self.is_long else self.entry_fill_price - exit_price
        return diff * quantity * to_decimal(self.trade.leverage)

    def _pnl_percentage(self, pnl: Decimal) -> float:
        if self.entry_fill_price is None or self.quantity <= 0:
            return 0.0
        # Return on margin
        margin = self.quantity * self.entry_fill_price / to_decimal(self.trade.leverage or 1)
        return float(pnl / margin * 100)

    def _fill_entry(self, point: PricePoint) -> None:
        fill = to_decimal(point.price)
        requested = to_decimal(self.trade.entry_price)
        quantity = self.quantity
        self._best_entry = None

        if fill != requested and quantity > 0:
            # Keep the notional of the position constant
            quantity = (quantity * requested / fill).quantize(QUANTITY_STEP)
            legs = split_quantity(quantity, len(self.take_profits))
            for index, leg in enumerate(legs):
                order = self.orders.get((TAKE_PROFIT, index))
                if order is not None and not order.is_filled:
                    self.store.update_order(order.id, quantity=float(leg))
                    order.quantity = float(leg)
            self.trade.quantity = float(quantity)

        self.entry_fill_price = fill
        self.remaining_quantity = quantity
        self.trade.status = ACTIVE
        self.trade.entry_filled_at = point.timestamp
        self.trade.entry_fill_price = float(fill)

        logger.info(
            "Trade %s: entry filled at %s (requested %s) on %s, quantity %s",
            self.trade.id, fill, requested, to_iso(point.timestamp), quantity,
        )
        self.store.update_trade(
            self.trade.id,
            status=ACTIVE,
            entry_filled_at=point.timestamp,
            entry_fill_price=float(fill),
            quantity=self.trade.quantity,
        )
        entry_order = self.orders.get((ENTRY, None))
        if entry_order is not None:
            self.store.update_order(entry_order.id, status=ORDER_FILLED, filled_at=point.timestamp,
                                    filled_price=float(fill), quantity=self.trade.quantity)
            entry_order.status = ORDER_FILLED
            entry_order.filled_at = point.timestamp
            entry_order.filled_price = float(fill)

    def _fill_take_profit(self, index: int, point: PricePoint) -> None:
        price = to_decimal(point.price)
        leg_quantity = self._leg_quantity(index)
        leg_pnl = self._leg_pnl(price, leg_quantity)

        self.filled_take_profits[index] = leg_quantity
        self.leg_pnls[index] = leg_pnl
        self.total_pnl += leg_pnl
        self.remaining_quantity -= leg_quantity
        if self.remaining_quantity < 0:
            logger.error(
                "Trade %s: remaining quantity went negative (%s) after TP%d; clamping to 0",
                self.trade.id, self.remaining_quantity, index + 1,
            )
            self.remaining_quantity = ZERO

        logger.info(
            "Trade %s: TP%d filled at %s on %s, quantity %s, leg P&L %s, remaining %s",
            self.trade.id, index + 1, price, to_iso(point.timestamp), leg_quantity, leg_pnl,
            self.remaining_quantity,
        )
        order = self.orders.get((TAKE_PROFIT, index))
        if order is None:
            logger.warning("Trade %s: take profit order %d not found", self.trade.id, index)
            return
        self.store.update_order(order.id, status=ORDER_FILLED, filled_at=point.timestamp,
                                filled_price=float(price))
        order.status = ORDER_FILLED
        order.filled_at = point.timestamp
        order.filled_price = float(price)

    def _move_stop_loss_to_breakeven(self) -> None:
        if self.entry_fill_price is None:
            return
        self.current_stop_loss = self.entry_fill_price
        self.trade.stop_loss = float(self.entry_fill_price)
        self.trade.stop_loss_breakeven = True
        logger.info("Trade %s: stop loss moved to breakeven at %s", self.trade.id, self.entry_fill_price)
        self.store.update_trade(self.trade.id, stop_loss=self.trade.stop_loss, stop_loss_breakeven=True)

    def _settle_stop_loss(self, point: PricePoint, stop_order: Optional[Order] = None) -> None:
        price = to_decimal(point.price)
        at_breakeven = self.trade.stop_loss_breakeven or (
            self.entry_fill_price is not None and self.current_stop_loss == self.entry_fill_price
        )
        quantity = self.remaining_quantity
        leg_pnl = ZERO if at_breakeven else self._leg_pnl(price, quantity)

        self.stop_loss_quantity = quantity
        self.stop_loss_pnl = leg_pnl
        self.remaining_quantity = ZERO
        self.total_pnl += leg_pnl
        total = self.total_pnl

        logger.info(
            "Trade %s: stop loss %s filled at %s on %s, quantity %s, leg P&L %s, total P&L %s",
            self.trade.id, self.current_stop_loss, price, to_iso(point.timestamp), quantity, leg_pnl, total,
        )
        if stop_order is None:
            stop_order = self.orders.get((STOP_LOSS, None))
            if stop_order is not None and not stop_order.is_filled:
                self.store.update_order(stop_order.id, status=ORDER_FILLED, filled_at=point.timestamp,
                                        filled_price=float(price), quantity=float(quantity))
                stop_order.status = ORDER_FILLED
                stop_order.filled_at = point.timestamp
                stop_order.filled_price = float(price)
        self._finish(STOPPED, point, total)

    def _close(self, point: PricePoint) -> None:
        logger.info(
            "Trade %s: all %d take profits filled, closed on %s with P&L %s",
            self.trade.id, len(self.take_profits), to_iso(point.timestamp), self.total_pnl,
        )
        self._finish(CLOSED, point, self.total_pnl)

    def _finish(self, status: str, point: PricePoint, pnl: Decimal) -> None:
        self.trade.status = status
        self.trade.exit_price = float(point.price)
        self.trade.exit_filled_at = point.timestamp
        self.trade.pnl = float(pnl)
        self.trade.pnl_percentage = self._pnl_percentage(pnl)
        self.store.update_trade(
            self.trade.id,
            status=status,
            exit_price=self.trade.exit_price,
            exit_filled_at=point.timestamp,
            pnl=self.trade.pnl,
            pnl_percentage=self.trade.pnl_percentage,
        )

    def cancel(self, reason: str) -> None:
        """Cancel a trade whose entry never filled."""
        if self.trade.status != PENDING:
            raise RuntimeError(f"Only pending trades can be cancelled, trade {self.trade.id} is {self.trade.status}")
        self._best_entry = None
        self.trade.status = CANCELLED
        logger.info("Trade %s cancelled: %s (expires at %s)", self.trade.id, reason, to_iso(self.trade.expires_at))
        self.store.update_trade(self.trade.id, status=CANCELLED)
