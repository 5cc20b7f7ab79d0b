"""
Run coordinator.

Settles every open trade of a channel in parallel (one task per trade)
and then evaluates the channel against each configured prop firm.
Settlement engines share nothing but the trade store and the price
provider's rate limiter.  A trade whose price history cannot be fetched
is retried a few times and otherwise left open for a later run; it is
never cancelled because of an I/O failure.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ..config.prop_firms import PropFirmRule
from ..execution.models import ACTIVE, Trade
from ..execution.price_source import PriceDataError, PriceSeriesProvider
from ..execution.settlement import create_settlement_engine
from ..execution.state_machine import TradeStateMachine
from ..storage.database import TradeStore
from .evaluator import EvaluationResult, create_evaluator


logger = logging.getLogger(__name__)

TERMINAL = "terminal"
OPEN = "open"
FAILED = "failed"


@dataclass
class EvaluationRun:
    channel: str
    results: List[EvaluationResult] = field(default_factory=list)
    settlement: Dict[str, int] = field(default_factory=dict)

    @property
    def passed(self) -> List[str]:
        return [r.prop_firm_name for r in self.results if r.passed]


class RunCoordinator:
    """Settle and evaluate the trades of a channel.

    Parameters
    ----------
    store : TradeStore
        Trade, order and evaluation result persistence.
    provider : PriceSeriesProvider
        Price history and current prices.
    max_workers : int
        Number of trades settled in parallel.
    max_duration_days : float
        Length of the price window replayed for each trade.
    breakeven_after_tps : int
        Take profit fills after which the stop loss moves to breakeven.
    fetch_retries : int
        Extra attempts after a `PriceDataError`.
    timezone : str
        Timezone of the calendar days used by the evaluators.
    clock : callable, optional
        Passed to the settlement engines.
    """

    def __init__(
        self,
        store: TradeStore,
        provider: PriceSeriesProvider,
        max_workers: int = 4,
        max_duration_days: float = 7.0,
        breakeven_after_tps: int = 1,
        fetch_retries: int = 2,
        timezone: str = "UTC",
        clock=None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.store = store
        self.provider = provider
        self.max_workers = max_workers
        self.max_duration_days = max_duration_days
        self.breakeven_after_tps = breakeven_after_tps
        self.fetch_retries = max(0, fetch_retries)
        self.timezone = timezone
        self.clock = clock

    def _settle_one(self, trade: Trade) -> str:
        engine = create_settlement_engine(
            trade, self.store, self.provider, self.breakeven_after_tps, clock=self.clock
        )
        for attempt in range(self.fetch_retries + 1):
            try:
                engine.initialize(self.max_duration_days)
                break
            except PriceDataError as exc:
                logger.warning(
                    "Trade %s: price fetch failed (attempt %d/%d): %s",
                    trade.id, attempt + 1, self.fetch_retries + 1, exc,
                )
        else:
            logger.error("Trade %s left open: price history unavailable", trade.id)
            return FAILED
        return TERMINAL if engine.process() else OPEN

    def settle(self, trades: Sequence[Trade]) -> Dict[str, int]:
        """Settle `trades` in parallel and count the outcomes.

        Returns
        -------
        dict
            Number of trades that became ``terminal``, stayed ``open`` or
            ``failed`` to fetch prices.
        """
        outcome = {TERMINAL: 0, OPEN: 0, FAILED: 0}
        if not trades:
            return outcome
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for status in pool.map(self._settle_one, trades):
                outcome[status] += 1
        logger.info(
            "Settled %d trades: %d terminal, %d open, %d failed",
            len(trades), outcome[TERMINAL], outcome[OPEN], outcome[FAILED],
        )
        return outcome

    def unrealized_pnl(self, trades: Sequence[Trade]) -> float:
        """Mark active trades to the current price."""
        total = 0.0
        for trade in trades:
            if trade.status != ACTIVE:
                continue
            try:
                price = self.provider.get_current_price(trade.trading_pair)
            except PriceDataError as exc:
                logger.warning("No current price for %s: %s", trade.trading_pair, exc)
                continue
            if price is None:
                continue
            # Read-only view: evaluation never changes trades or orders
            machine = TradeStateMachine.from_orders(
                trade, self.store.get_orders_by_trade_id(trade.id), self.breakeven_after_tps
            )
            if machine.entry_fill_price is None:
                continue
            fill = float(machine.entry_fill_price)
            diff = price - fill if trade.is_long else fill - price
            total += diff * float(machine.remaining_quantity) * (trade.leverage or 1.0)
        return total

    def evaluate(self, channel: str, rules: Sequence[PropFirmRule]) -> List[EvaluationResult]:
        """Evaluate the stored trades of `channel` against every rule and persist the results."""
        trades = self.store.get_trades_by_channel(channel)
        unrealized = self.unrealized_pnl(trades)
        results: List[EvaluationResult] = []
        for rule in rules:
            evaluator = create_evaluator(rule, store=self.store, timezone=self.timezone)
            for trade in trades:
                evaluator.add_trade(trade)
            evaluator.update_equity(unrealized)
            result = evaluator.evaluate()
            self.store.insert_evaluation_result(result.to_record(channel))
            logger.info(
                "%s: %s with %d violations",
                rule.display_name, "PASSED" if result.passed else "FAILED", len(result.violations),
            )
            results.append(result)
        return results

    def run(self, channel: str, rules: Sequence[PropFirmRule], trades: Optional[Sequence[Trade]] = None) -> EvaluationRun:
        """Settle the open trades of `channel`, then evaluate it."""
        if trades is None:
            trades = self.store.get_active_trades(channel)
        settlement = self.settle(trades)
        results = self.evaluate(channel, rules)
        return EvaluationRun(channel=channel, results=results, settlement=settlement)
