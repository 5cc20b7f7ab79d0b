"""
Trade, order and evaluation record models.

These dataclasses mirror the rows of the `trades`, `orders` and
`evaluation_results` tables.  They are passed between the storage
layer, the settlement engine, the live monitor and the evaluator.
Keeping them in a separate module improves readability and makes
unit testing easier.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import pandas as pd

# Trade statuses
PENDING = "pending"
ACTIVE = "active"
CLOSED = "closed"
STOPPED = "stopped"
CANCELLED = "cancelled"

TERMINAL_STATUSES = (CLOSED, STOPPED, CANCELLED)
COMPLETED_STATUSES = (CLOSED, STOPPED)
OPEN_STATUSES = (PENDING, ACTIVE)

# Order types
ENTRY = "entry"
STOP_LOSS = "stop_loss"
TAKE_PROFIT = "take_profit"

# Order statuses
ORDER_PENDING = "pending"
ORDER_FILLED = "filled"

LONG = "long"
SHORT = "short"


@dataclass
class Trade:
    """Represents one position opened from a parsed signal."""
    channel: str
    trading_pair: str
    entry_price: float
    stop_loss: Optional[float]
    take_profits: List[float]
    created_at: pd.Timestamp
    expires_at: pd.Timestamp
    quantity: Optional[float] = None
    leverage: float = 1.0
    risk_percentage: float = 0.0
    status: str = PENDING
    direction: Optional[str] = None  # 'long' or 'short'
    id: Optional[int] = None
    message_id: Optional[int] = None
    exchange: str = "simulation"
    entry_filled_at: Optional[pd.Timestamp] = None
    entry_fill_price: Optional[float] = None
    exit_filled_at: Optional[pd.Timestamp] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_percentage: Optional[float] = None
    stop_loss_breakeven: bool = False

    @property
    def is_long(self) -> bool:
        if self.direction:
            return self.direction == LONG
        if self.stop_loss:
            return self.entry_price > self.stop_loss
        # No stop loss: infer from the first target
        if self.take_profits:
            return self.take_profits[0] > self.entry_price
        return True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES


@dataclass
class Order:
    """Represents one child order (entry, stop loss or take profit) of a trade."""
    trade_id: int
    order_type: str
    price: Optional[float]
    quantity: Optional[float] = None
    tp_index: Optional[int] = None
    status: str = ORDER_PENDING
    id: Optional[int] = None
    filled_at: Optional[pd.Timestamp] = None
    filled_price: Optional[float] = None

    @property
    def is_filled(self) -> bool:
        return self.status == ORDER_FILLED


@dataclass
class EvaluationResultRecord:
    """Persisted outcome of evaluating one channel against one prop firm."""
    channel: str
    prop_firm_name: str
    passed: bool
    violations: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[str] = None
