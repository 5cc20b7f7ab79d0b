"""
Prop firm rule checks.

Each check inspects an `AccountState` against one field of a
`PropFirmRule` and returns the violations it found.  A check whose rule
field is not configured returns nothing.  Checks never raise on a
breached rule: a violation is data, the evaluation itself never fails.

Violation timestamps come from the trades themselves so that an
evaluation of the same ledger is always identical.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..config.prop_firms import SWING, PropFirmRule
from ..execution.models import STOP_LOSS, TAKE_PROFIT
from ..reporting.metrics import max_drawdown, sorted_by_exit
from ..utils.timeutils import day_key, seconds_between, to_iso

if TYPE_CHECKING:
    from ..storage.database import TradeStore
    from .evaluator import AccountState


logger = logging.getLogger(__name__)

ERROR = "error"
WARNING = "warning"

# Slack for float noise when comparing money amounts
AMOUNT_EPSILON = 0.01


@dataclass
class Violation:
    rule: str
    message: str
    severity: str = ERROR
    timestamp: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule': self.rule,
            'message': self.message,
            'severity': self.severity,
            'timestamp': self.timestamp,
            'details': self.details,
        }


def check_profit_target(rule: PropFirmRule, state: AccountState) -> List[Violation]:
    if rule.profit_target is None:
        return []
    pnl_pct = (state.current_balance - state.initial_balance) / state.initial_balance * 100
    if pnl_pct >= rule.profit_target:
        return []
    return [Violation(
        rule='profitTarget',
        message=f"Profit target not met: {pnl_pct:.2f}% < {rule.profit_target}%",
        details={'current': pnl_pct, 'limit': rule.profit_target},
    )]


def check_max_drawdown(rule: PropFirmRule, state: AccountState) -> List[Violation]:
    if rule.max_drawdown is None:
        return []
    amount, pct, peak = max_drawdown(state.initial_balance, state.trades, final_mark=state.equity)
    if pct <= rule.max_drawdown:
        return []
    return [Violation(
        rule='maxDrawdown',
        message=f"Maximum drawdown exceeded: {pct:.2f}% > {rule.max_drawdown}%",
        details={'current': pct, 'amount': amount, 'peak_balance': peak, 'limit': rule.max_drawdown},
    )]


def day_start_balances(state: AccountState, timezone: str = "UTC") -> Dict[str, float]:
    """Balance at the start of every trading day, from an exit‑ordered replay."""
    balances: Dict[str, float] = {}
    running = state.initial_balance
    for trade in sorted_by_exit(state.trades):
        if trade.exit_filled_at is None or trade.pnl is None:
            continue
        balances.setdefault(day_key(trade.exit_filled_at, timezone), running)
        running += trade.pnl
    return balances


def check_daily_drawdown(rule: PropFirmRule, state: AccountState, timezone: str = "UTC") -> List[Violation]:
    if rule.daily_drawdown is None:
        return []
    start_balances = day_start_balances(state, timezone)
    violations: List[Violation] = []
    for date in sorted(state.daily_pnl):
        daily_pnl = state.daily_pnl[date]
        if rule.daily_drawdown_mode == SWING:
            reference = state.initial_balance
        else:
            reference = start_balances.get(date, state.initial_balance)
        limit = rule.daily_drawdown / 100 * reference
        if daily_pnl < -limit:
            violations.append(Violation(
                rule='dailyDrawdown',
                message=f"Daily drawdown exceeded on {date}: {daily_pnl:.2f} USDT < -{limit:.2f} USDT",
                timestamp=date,
                details={
                    'date': date,
                    'daily_pnl': daily_pnl,
                    'reference_balance': reference,
                    'mode': rule.daily_drawdown_mode,
                    'limit': -limit,
                },
            ))
    return violations


def check_min_trading_days(rule: PropFirmRule, state: AccountState) -> List[Violation]:
    if rule.min_trading_days is None or len(state.trading_days) >= rule.min_trading_days:
        return []
    return [Violation(
        rule='minTradingDays',
        message=f"Minimum trading days not met: {len(state.trading_days)} < {rule.min_trading_days}",
        details={'current': len(state.trading_days), 'limit': rule.min_trading_days},
    )]


def check_min_trades_per_day(rule: PropFirmRule, state: AccountState) -> List[Violation]:
    if rule.min_trades_per_day is None:
        return []
    return [
        Violation(
            rule='minTradesPerDay',
            message=f"Minimum trades per day not met on {date}: {count} < {rule.min_trades_per_day}",
            severity=WARNING,
            timestamp=date,
            details={'date': date, 'trades': count, 'limit': rule.min_trades_per_day},
        )
        for date, count in sorted(state.daily_trade_count.items())
        if count < rule.min_trades_per_day
    ]


def check_max_risk_per_trade(
    rule: PropFirmRule,
    state: AccountState,
    store: Optional[TradeStore] = None,
) -> List[Violation]:
    """Check the loss at stop of every trade against the per-trade risk cap.

    Risk is ``|entry - original stop| * quantity * leverage``.  The
    original stop is read from the stop loss order when a store is
    available, because the trade's own stop may have been moved to
    breakeven.  Trades without a quantity fall back to their sizing
    intent, ``risk_percentage`` of the initial balance.  With a store,
    the risk left on the position is checked again after every take
    profit fill.
    """
    if rule.max_risk_per_trade is None:
        return []
    limit = rule.max_risk_per_trade / 100 * state.initial_balance
    violations: List[Violation] = []

    for trade in state.trades:
        orders = store.get_orders_by_trade_id(trade.id) if store is not None and trade.id is not None else []
        stop_order = next((o for o in orders if o.order_type == STOP_LOSS), None)
        original_stop = stop_order.price if stop_order is not None and stop_order.price else trade.stop_loss
        if not original_stop:
            continue
        leverage = trade.leverage or 1.0
        distance = abs(trade.entry_price - original_stop)

        if trade.quantity:
            risk = distance * trade.quantity * leverage
        elif trade.risk_percentage:
            risk = trade.risk_percentage / 100 * state.initial_balance
        else:
            logger.error("Trade %s has neither quantity nor risk percentage; risk not checked", trade.id)
            continue

        if risk > limit + AMOUNT_EPSILON:
            violations.append(Violation(
                rule='maxRiskPerTrade',
                message=f"Trade {trade.id} exceeds maximum risk per trade at entry: {risk:.2f} USDT > {limit:.2f} USDT",
                timestamp=to_iso(trade.entry_filled_at or trade.created_at),
                details={
                    'trade_id': trade.id,
                    'risk_amount': risk,
                    'limit': limit,
                    'quantity': trade.quantity,
                    'original_stop_loss': original_stop,
                },
            ))

        if not trade.quantity:
            continue
        tp_fills = sorted(
            (o for o in orders if o.order_type == TAKE_PROFIT and o.is_filled and o.filled_at is not None),
            key=lambda o: (o.filled_at, o.tp_index),
        )
        remaining = trade.quantity
        for filled_count, order in enumerate(tp_fills, start=1):
            remaining = max(0.0, remaining - (order.quantity or 0.0))
            effective_stop = trade.entry_price if trade.stop_loss_breakeven else original_stop
            current_risk = abs(trade.entry_price - effective_stop) * remaining * leverage
            if current_risk > limit + AMOUNT_EPSILON:
                violations.append(Violation(
                    rule='maxRiskPerTrade',
                    message=(
                        f"Trade {trade.id} exceeds maximum risk per trade after TP fill: "
                        f"{current_risk:.2f} USDT > {limit:.2f} USDT (remaining quantity: {remaining:.2f})"
                    ),
                    timestamp=to_iso(order.filled_at),
                    details={
                        'trade_id': trade.id,
                        'risk_amount': current_risk,
                        'limit': limit,
                        'remaining_quantity': remaining,
                        'filled_tp_count': filled_count,
                        'stop_loss_breakeven': trade.stop_loss_breakeven,
                    },
                ))
    return violations


def check_stop_loss_required(rule: PropFirmRule, state: AccountState) -> List[Violation]:
    if not rule.stop_loss_required:
        return []
    return [
        Violation(
            rule='stopLossRequired',
            message=f"Trade {trade.id} missing required stop-loss",
            timestamp=to_iso(trade.created_at),
            details={'trade_id': trade.id},
        )
        for trade in state.trades
        if not trade.stop_loss
    ]


def check_max_profit_limits(rule: PropFirmRule, state: AccountState) -> List[Violation]:
    violations: List[Violation] = []
    if rule.max_profit_per_day is not None:
        for date in sorted(state.daily_pnl):
            daily_pnl = state.daily_pnl[date]
            if daily_pnl > rule.max_profit_per_day:
                violations.append(Violation(
                    rule='maxProfitPerDay',
                    message=f"Daily profit limit exceeded on {date}: {daily_pnl:.2f} USDT > {rule.max_profit_per_day} USDT",
                    timestamp=date,
                    details={'date': date, 'daily_pnl': daily_pnl, 'limit': rule.max_profit_per_day},
                ))
    if rule.max_profit_per_trade is not None:
        for trade in sorted_by_exit(state.trades):
            if trade.pnl is not None and trade.pnl > rule.max_profit_per_trade:
                violations.append(Violation(
                    rule='maxProfitPerTrade',
                    message=f"Trade {trade.id} exceeds maximum profit per trade: {trade.pnl:.2f} USDT > {rule.max_profit_per_trade} USDT",
                    timestamp=to_iso(trade.exit_filled_at),
                    details={'trade_id': trade.id, 'pnl': trade.pnl, 'limit': rule.max_profit_per_trade},
                ))
    return violations


def check_short_trades(rule: PropFirmRule, state: AccountState) -> List[Violation]:
    if rule.min_trade_duration is None or rule.max_short_trades_percentage is None:
        return []
    if not state.trades:
        return []
    short = [
        t for t in state.trades
        if t.entry_filled_at is not None and t.exit_filled_at is not None
        and seconds_between(t.entry_filled_at, t.exit_filled_at) < rule.min_trade_duration
    ]
    pct = len(short) / len(state.trades) * 100
    if pct <= rule.max_short_trades_percentage:
        return []
    return [Violation(
        rule='maxShortTradesPercentage',
        message=f"Too many short trades: {pct:.2f}% > {rule.max_short_trades_percentage}%",
        details={
            'current': pct,
            'limit': rule.max_short_trades_percentage,
            'short_trades': len(short),
            'total_trades': len(state.trades),
        },
    )]


def check_reverse_trading(rule: PropFirmRule, state: AccountState) -> List[Violation]:
    """Flag opposite positions held at the same time for too long."""
    if rule.reverse_trading_allowed or rule.reverse_trading_time_limit is None:
        return []
    trades = sorted(
        (t for t in state.trades if t.entry_filled_at is not None and t.exit_filled_at is not None),
        key=lambda t: (t.entry_filled_at, t.id if t.id is not None else -1),
    )
    violations: List[Violation] = []
    for i, first in enumerate(trades):
        for second in trades[i + 1:]:
            if first.is_long == second.is_long:
                continue
            if rule.reverse_trading_same_pair_only and first.trading_pair != second.trading_pair:
                continue
            overlap_start = max(first.entry_filled_at, second.entry_filled_at)
            overlap_end = min(first.exit_filled_at, second.exit_filled_at)
            if overlap_start >= overlap_end:
                continue
            overlap = seconds_between(overlap_start, overlap_end)
            if overlap < rule.reverse_trading_time_limit:
                continue
            violations.append(Violation(
                rule='reverseTrading',
                message=(
                    f"Reverse trading violation: trades {first.id} ({first.trading_pair}) and "
                    f"{second.id} ({second.trading_pair}) overlap for {overlap:.0f}s "
                    f">= {rule.reverse_trading_time_limit}s"
                ),
                timestamp=to_iso(overlap_start),
                details={
                    'trade1_id': first.id,
                    'trade2_id': second.id,
                    'trading_pairs': [first.trading_pair, second.trading_pair],
                    'overlap_seconds': overlap,
                    'limit': rule.reverse_trading_time_limit,
                },
            ))
    return violations
