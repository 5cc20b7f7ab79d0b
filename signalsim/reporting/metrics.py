"""
Performance metrics calculations.

This module provides helpers to compute summary statistics of an
account from its completed trades.  Balances are always replayed in
exit‑time order so that peak balance and drawdown reflect what the
account actually went through, whatever order the trades were loaded
in.  The helpers are used both by the prop firm rule checks and by the
evaluation reports.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple
import pandas as pd

from ..execution.models import Trade


def sorted_by_exit(trades: Iterable[Trade]) -> List[Trade]:
    """Return completed trades in chronological exit order (ties by id)."""
    def key(trade: Trade):
        when = trade.exit_filled_at or trade.entry_filled_at or trade.created_at
        return (when, trade.id if trade.id is not None else -1)
    return sorted(trades, key=key)


def balance_curve(initial_balance: float, trades: Iterable[Trade]) -> List[Tuple[Optional[pd.Timestamp], float]]:
    """Replay realised P&L and return ``(exit time, balance)`` points.

    The first point is the initial balance with no timestamp.
    """
    balance = initial_balance
    curve: List[Tuple[Optional[pd.Timestamp], float]] = [(None, balance)]
    for trade in sorted_by_exit(trades):
        if trade.pnl is None:
            continue
        balance += trade.pnl
        curve.append((trade.exit_filled_at, balance))
    return curve


def max_drawdown(
    initial_balance: float,
    trades: Iterable[Trade],
    final_mark: Optional[float] = None,
) -> Tuple[float, float, float]:
    """Largest peak‑to‑trough decline of the replayed balance.

    Parameters
    ----------
    initial_balance : float
        Starting balance; drawdown percentages are relative to it.
    trades : iterable of Trade
        Completed trades.
    final_mark : float, optional
        Equity mark appended after the last trade (e.g. balance plus
        unrealised P&L of open trades).

    Returns
    -------
    tuple
        ``(drawdown amount, drawdown percentage, peak balance)``.
    """
    balances = [balance for _, balance in balance_curve(initial_balance, trades)]
    if final_mark is not None:
        balances.append(final_mark)
    peak = initial_balance
    worst = 0.0
    for balance in balances:
        if balance > peak:
            peak = balance
        if peak - balance > worst:
            worst = peak - balance
    percentage = worst / initial_balance * 100 if initial_balance else 0.0
    return worst, percentage, peak


def compute_metrics(state) -> dict:
    """Compute a set of summary statistics for an account.

    Parameters
    ----------
    state : AccountState
        Ledger of an evaluation run.

    Returns
    -------
    dict
        Dictionary of performance metrics.
    """
    trades = state.trades
    total_pnl = state.current_balance - state.initial_balance
    # Same equity mark as the maxDrawdown check
    drawdown, drawdown_pct, _ = max_drawdown(state.initial_balance, trades, final_mark=state.equity)

    winning = sum(1 for t in trades if (t.pnl or 0.0) > 0)
    losing = sum(1 for t in trades if (t.pnl or 0.0) < 0)
    win_rate = winning / len(trades) if trades else 0.0

    return {
        'initial_balance': state.initial_balance,
        'final_balance': state.current_balance,
        'equity': state.equity,
        'total_pnl': total_pnl,
        'total_pnl_percentage': total_pnl / state.initial_balance * 100 if state.initial_balance else 0.0,
        'max_drawdown': drawdown,
        'max_drawdown_percentage': drawdown_pct,
        'peak_balance': state.peak_balance,
        'trading_days': len(state.trading_days),
        'total_trades': len(trades),
        'winning_trades': winning,
        'losing_trades': losing,
        'win_rate': win_rate,
        'open_trades': len(state.open_trades),
    }
