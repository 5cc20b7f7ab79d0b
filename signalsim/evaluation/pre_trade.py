"""
Pre‑trade guard.

Before a new trade is persisted, its worst case (the stop loss is hit
on the full quantity) is applied to the current ledger of its channel
and the purely arithmetic prop firm rules are checked against that
hypothetical state: max risk per trade, stop loss required, max
drawdown and daily drawdown.  The guard only vetoes trades; it never
changes stored state.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..config.prop_firms import SWING, PropFirmRule
from ..execution.models import ACTIVE, COMPLETED_STATUSES, Trade
from ..reporting.metrics import sorted_by_exit
from ..storage.database import TradeStore
from ..utils.timeutils import day_key, now_utc


logger = logging.getLogger(__name__)


@dataclass
class LedgerSnapshot:
    """Completed and open trades of one channel at a point in time."""
    completed_trades: List[Trade] = field(default_factory=list)
    open_trades: List[Trade] = field(default_factory=list)
    timezone: str = "UTC"

    def balances(self, initial_balance: float) -> Tuple[float, float, Dict[str, float]]:
        """Replay the completed trades in exit order.

        Returns
        -------
        tuple
            ``(current balance, peak balance, daily P&L by date)``.
        """
        balance = peak = initial_balance
        daily: Dict[str, float] = {}
        for trade in sorted_by_exit(self.completed_trades):
            if trade.pnl is None or trade.exit_filled_at is None:
                continue
            balance += trade.pnl
            peak = max(peak, balance)
            day = day_key(trade.exit_filled_at, self.timezone)
            daily[day] = daily.get(day, 0.0) + trade.pnl
        return balance, peak, daily


def build_ledger_snapshot(store: TradeStore, channel: str, timezone: str = "UTC") -> LedgerSnapshot:
    trades = store.get_trades_by_channel(channel)
    return LedgerSnapshot(
        completed_trades=[t for t in trades if t.status in COMPLETED_STATUSES],
        open_trades=[t for t in trades if t.status == ACTIVE],
        timezone=timezone,
    )


@dataclass
class PreTradeValidationResult:
    prop_firm_name: str
    allowed: bool
    violations: List[str] = field(default_factory=list)


def worst_case_loss(entry_price: float, stop_loss: Optional[float], quantity: Optional[float]) -> float:
    """Loss if the stop loss is hit on the full quantity; infinite without a stop."""
    if not stop_loss or stop_loss <= 0:
        return math.inf
    return abs(entry_price - stop_loss) * (quantity or 0.0)


def validate_pre_trade(
    proposed: Trade,
    rules: Sequence[PropFirmRule],
    snapshot: LedgerSnapshot,
    additional_worst_case_loss: float = 0.0,
    day_start_balance: Optional[float] = None,
    today: Optional[Any] = None,
) -> List[PreTradeValidationResult]:
    """Check a proposed trade against every rule set.

    Parameters
    ----------
    proposed : Trade
        The trade about to be created (not yet persisted).
    rules : sequence of PropFirmRule
        One result is returned per rule, in the same order.
    snapshot : LedgerSnapshot
        Current ledger of the trade's channel.
    additional_worst_case_loss : float
        Worst case of other exposure the caller is about to add.
    day_start_balance : float, optional
        Balance at the start of the day for ``swing`` daily drawdown;
        the rule's initial balance when omitted.
    today : date‑like, optional
        Day whose P&L the loss is added to; the current UTC time when
        omitted.
    """
    loss = worst_case_loss(proposed.entry_price, proposed.stop_loss, proposed.quantity)
    total_loss = loss + additional_worst_case_loss
    today_key = day_key(today if today is not None else now_utc(), snapshot.timezone)

    results: List[PreTradeValidationResult] = []
    for rule in rules:
        violations: List[str] = []
        current, peak, daily = snapshot.balances(rule.initial_balance)

        if rule.max_risk_per_trade is not None:
            max_risk = rule.max_risk_per_trade / 100 * rule.initial_balance
            if loss > max_risk:
                violations.append(
                    f"Trade risk ({loss:.2f} USDT) exceeds maximum risk per trade "
                    f"({max_risk:.2f} USDT, {rule.max_risk_per_trade}% of initial balance)"
                )

        if rule.stop_loss_required and (not proposed.stop_loss or proposed.stop_loss <= 0):
            violations.append("Stop loss is required but not provided")

        simulated_balance = current - total_loss
        if rule.max_drawdown is not None:
            drawdown_pct = (max(peak, current) - simulated_balance) / rule.initial_balance * 100
            if drawdown_pct > rule.max_drawdown:
                violations.append(
                    f"Trade would cause maximum drawdown violation: {drawdown_pct:.2f}% > {rule.max_drawdown}% "
                    f"(current balance: {current:.2f}, simulated balance: {simulated_balance:.2f})"
                )

        if rule.daily_drawdown is not None:
            today_pnl = daily.get(today_key, 0.0)
            simulated_daily = today_pnl - total_loss
            if rule.daily_drawdown_mode == SWING:
                reference = day_start_balance if day_start_balance is not None else rule.initial_balance
            else:
                reference = current - today_pnl
            limit = rule.daily_drawdown / 100 * reference
            if simulated_daily < -limit:
                violations.append(
                    f"Trade would cause daily drawdown violation: {simulated_daily:.2f} USDT < -{limit:.2f} USDT "
                    f"(daily limit: {rule.daily_drawdown}% of {reference:.2f})"
                )

        if violations:
            logger.info("Trade on %s rejected by %s: %s", proposed.trading_pair, rule.display_name,
                        "; ".join(violations))
        results.append(PreTradeValidationResult(
            prop_firm_name=rule.display_name,
            allowed=not violations,
            violations=violations,
        ))
    return results
