"""
Prop firm evaluator.

A `PropFirmEvaluator` replays the settled trades of a channel into an
`AccountState` ledger and checks that ledger against one
`PropFirmRule`.  Trades can be added in any order: balances, peak
balance and drawdowns are always derived from an exit‑ordered replay.
Daily statistics are keyed by the exit date of each trade in the
evaluator's timezone.

`evaluate()` has no side effects and always produces the same result
for the same ledger, so it can be called any number of times.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..config.prop_firms import PropFirmRule
from ..execution.models import ACTIVE, CANCELLED, EvaluationResultRecord, Trade
from ..reporting.metrics import balance_curve, compute_metrics
from ..storage.database import TradeStore
from ..utils.timeutils import day_key, to_iso
from . import checks
from .checks import ERROR, Violation


logger = logging.getLogger(__name__)


@dataclass
class AccountState:
    """Ledger of one evaluation run."""
    initial_balance: float
    current_balance: float
    equity: float
    peak_balance: float
    daily_pnl: Dict[str, float] = field(default_factory=dict)
    daily_trade_count: Dict[str, int] = field(default_factory=dict)
    trading_days: Set[str] = field(default_factory=set)
    trades: List[Trade] = field(default_factory=list)
    open_trades: List[Trade] = field(default_factory=list)


@dataclass
class EvaluationResult:
    prop_firm_name: str
    passed: bool
    violations: List[Violation]
    metrics: Dict[str, Any]
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'prop_firm_name': self.prop_firm_name,
            'passed': self.passed,
            'violations': [v.to_dict() for v in self.violations],
            'metrics': dict(self.metrics),
            'start_date': self.start_date,
            'end_date': self.end_date,
        }

    def to_record(self, channel: str) -> EvaluationResultRecord:
        return EvaluationResultRecord(
            channel=channel,
            prop_firm_name=self.prop_firm_name,
            passed=self.passed,
            violations=[v.to_dict() for v in self.violations],
            metrics=dict(self.metrics),
            start_date=self.start_date,
            end_date=self.end_date,
        )


class PropFirmEvaluator:
    """Check a channel's trades against the rules of one prop firm.

    Parameters
    ----------
    rule : PropFirmRule
        Rules to check.
    store : TradeStore, optional
        Used to read the original stop loss and the take profit fills of
        each trade for the per‑trade risk check.
    timezone : str
        Timezone of the calendar days used for daily statistics.
    """

    def __init__(self, rule: PropFirmRule, store: Optional[TradeStore] = None, timezone: str = "UTC") -> None:
        self.rule = rule
        self.store = store
        self.timezone = timezone
        balance = rule.initial_balance
        self.state = AccountState(
            initial_balance=balance,
            current_balance=balance,
            equity=balance,
            peak_balance=balance,
        )
        self._unrealized_pnl = 0.0

    def add_trade(self, trade: Trade) -> None:
        """Add one trade to the ledger.

        Cancelled trades and trades whose entry never filled are ignored;
        active trades are tracked as open and only affect equity.
        """
        if trade.status == CANCELLED:
            logger.debug("Skipping cancelled trade %s", trade.id)
            return
        if trade.entry_filled_at is None:
            logger.debug("Skipping trade %s without a filled entry", trade.id)
            return

        state = self.state
        if not trade.is_completed:
            if trade.status == ACTIVE:
                state.open_trades = [t for t in state.open_trades if t.id != trade.id or t.id is None]
                state.open_trades.append(trade)
            return

        if trade.id is not None and any(t.id == trade.id for t in state.trades):
            logger.warning("Trade %s already added to the ledger", trade.id)
            return
        state.open_trades = [t for t in state.open_trades if t.id is None or t.id != trade.id]
        state.trades.append(trade)

        if trade.pnl is None:
            logger.error("Completed trade %s has no P&L; counted as 0", trade.id)
        pnl = trade.pnl or 0.0
        state.current_balance += pnl
        state.equity = state.current_balance + self._unrealized_pnl
        state.peak_balance = max(balance for _, balance in balance_curve(state.initial_balance, state.trades))

        if trade.exit_filled_at is not None:
            day = day_key(trade.exit_filled_at, self.timezone)
            state.daily_pnl[day] = state.daily_pnl.get(day, 0.0) + pnl
            state.daily_trade_count[day] = state.daily_trade_count.get(day, 0) + 1
            state.trading_days.add(day)

    def update_equity(self, unrealized_pnl: float) -> None:
        """Mark the account with the unrealised P&L of its open trades."""
        self._unrealized_pnl = unrealized_pnl
        self.state.equity = self.state.current_balance + unrealized_pnl

    def evaluate(self) -> EvaluationResult:
        rule, state = self.rule, self.state
        violations: List[Violation] = []
        violations += checks.check_profit_target(rule, state)
        violations += checks.check_max_drawdown(rule, state)
        violations += checks.check_daily_drawdown(rule, state, self.timezone)
        violations += checks.check_min_trading_days(rule, state)
        violations += checks.check_min_trades_per_day(rule, state)
        violations += checks.check_max_risk_per_trade(rule, state, self.store)
        violations += checks.check_stop_loss_required(rule, state)
        violations += checks.check_max_profit_limits(rule, state)
        violations += checks.check_short_trades(rule, state)
        violations += checks.check_reverse_trading(rule, state)

        start_date = end_date = None
        if state.trades:
            start_date = to_iso(min(t.created_at for t in state.trades))
            exits = [t.exit_filled_at for t in state.trades if t.exit_filled_at is not None]
            end_date = to_iso(max(exits)) if exits else None

        return EvaluationResult(
            prop_firm_name=rule.display_name,
            passed=not any(v.severity == ERROR for v in violations),
            violations=violations,
            metrics=compute_metrics(state),
            start_date=start_date,
            end_date=end_date,
        )


def create_evaluator(rule: PropFirmRule, store: Optional[TradeStore] = None, timezone: str = "UTC") -> PropFirmEvaluator:
    return PropFirmEvaluator(rule, store=store, timezone=timezone)
