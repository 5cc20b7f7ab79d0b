"""
Prop firm rule definitions.

A `PropFirmRule` describes the risk rules of a funded account (not the
qualification phase).  A strategy "passes" a prop firm when replaying
its trades never breaks one of these rules.  A few well known firms
ship as presets; anything else can be described field by field in the
configuration file.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

DAY_START = "day_start"
SWING = "swing"


class UnknownPropFirmError(ValueError):
    """Raised when a configuration names a prop firm that does not exist."""


@dataclass(frozen=True)
class PropFirmRule:
    """Risk rules of one funded account.

    Every optional limit is skipped by the evaluator when left as ``None``.

    Attributes
    ----------
    initial_balance : float
        Starting account balance in USDT.
    profit_target : float, optional
        Required profit in percent of the initial balance.
    max_drawdown : float, optional
        Maximum peak‑to‑trough drawdown in percent of the initial balance.
    daily_drawdown : float, optional
        Maximum loss of a single day in percent.  With
        ``daily_drawdown_mode == "day_start"`` the percentage applies to
        the balance at the start of the day, with ``"swing"`` to the
        initial balance.
    min_trading_days : int, optional
        Minimum number of days with at least one closed trade.
    min_trades_per_day : int, optional
        Minimum closed trades on each trading day.
    max_risk_per_trade : float, optional
        Maximum loss at stop, in percent of the initial balance.
    stop_loss_required : bool
        Every trade must carry a stop loss.
    max_profit_per_day, max_profit_per_trade : float, optional
        Anti‑gambling ceilings in USDT.
    min_trade_duration : float, optional
        Trades shorter than this many seconds count as short trades.
    max_short_trades_percentage : float, optional
        Maximum share of short trades, in percent.
    reverse_trading_allowed : bool
        When false, opposite positions may not overlap for
        ``reverse_trading_time_limit`` seconds or more.
    reverse_trading_same_pair_only : bool
        Restrict the reverse trading rule to positions on the same pair.
    """

    name: str
    display_name: str
    initial_balance: float = 10_000.0
    profit_target: Optional[float] = None
    max_drawdown: Optional[float] = None
    daily_drawdown: Optional[float] = None
    daily_drawdown_mode: str = DAY_START
    min_trading_days: Optional[int] = None
    min_trades_per_day: Optional[int] = None
    max_risk_per_trade: Optional[float] = None
    stop_loss_required: bool = False
    max_profit_per_day: Optional[float] = None
    max_profit_per_trade: Optional[float] = None
    min_trade_duration: Optional[float] = None
    max_short_trades_percentage: Optional[float] = None
    reverse_trading_allowed: bool = True
    reverse_trading_time_limit: Optional[float] = None
    reverse_trading_same_pair_only: bool = False
    custom_rules: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.initial_balance <= 0:
            raise ValueError(f"{self.name}: initial_balance must be positive")
        if self.daily_drawdown_mode not in (DAY_START, SWING):
            raise ValueError(f"{self.name}: unknown daily_drawdown_mode {self.daily_drawdown_mode!r}")


PROP_FIRM_RULES: Dict[str, PropFirmRule] = {
    'crypto-fund-trader': PropFirmRule(
        name='crypto-fund-trader',
        display_name='Crypto Fund Trader',
        # No hedging of the same symbol for 60 seconds or more
        reverse_trading_allowed=False,
        reverse_trading_time_limit=60,
        reverse_trading_same_pair_only=True,
        # Trades under 30 seconds may not exceed 5% of all trades
        min_trade_duration=30,
        max_short_trades_percentage=5,
        max_profit_per_day=10_000,
        max_profit_per_trade=10_000,
    ),
    'hyrotrader': PropFirmRule(
        name='hyrotrader',
        display_name='Hyrotrader',
        profit_target=10,
        max_drawdown=10,
        daily_drawdown=5,
        daily_drawdown_mode=SWING,
        min_trading_days=10,
        max_risk_per_trade=3,
        stop_loss_required=True,
        custom_rules={'stop_loss_time_limit_minutes': 5},
    ),
    'mubite': PropFirmRule(
        name='mubite',
        display_name='Mubite',
        profit_target=10,
        max_drawdown=10,
        daily_drawdown=5,
        min_trading_days=4,
        min_trades_per_day=1,
    ),
}

_RULE_FIELDS = {f.name for f in fields(PropFirmRule)}


def get_prop_firm_rule(name: str, **overrides: Any) -> PropFirmRule:
    """Return a preset rule, optionally with some fields overridden.

    Raises
    ------
    UnknownPropFirmError
        If `name` is not a known preset.
    """
    rule = PROP_FIRM_RULES.get(name.lower())
    if rule is None:
        raise UnknownPropFirmError(
            f"Unknown prop firm {name!r}. Known presets: {sorted(PROP_FIRM_RULES)}"
        )
    return replace(rule, **overrides) if overrides else rule


def create_custom_prop_firm_rule(name: str, display_name: Optional[str] = None, **config: Any) -> PropFirmRule:
    """Build a rule from explicit fields."""
    unknown = set(config) - _RULE_FIELDS
    if unknown:
        raise ValueError(f"Unknown prop firm rule fields for {name}: {sorted(unknown)}")
    return PropFirmRule(name=name, display_name=display_name or name, **config)


def resolve_prop_firm_rules(
    entries: Iterable[Union[str, Mapping[str, Any]]],
    initial_balance: float,
) -> List[PropFirmRule]:
    """Turn configuration entries into rules.

    Strings name presets and get `initial_balance`; mappings describe
    custom firms and fall back to `initial_balance` when they do not set
    their own.
    """
    rules: List[PropFirmRule] = []
    for entry in entries:
        if isinstance(entry, str):
            rules.append(get_prop_firm_rule(entry, initial_balance=initial_balance))
            continue
        config = dict(entry)
        name = config.pop('name', None)
        if not name:
            raise UnknownPropFirmError(f"Custom prop firm configuration without a name: {entry!r}")
        display_name = config.pop('display_name', None)
        config.setdefault('initial_balance', initial_balance)
        if name.lower() in PROP_FIRM_RULES and not display_name:
            # Preset with overrides
            unknown = set(config) - _RULE_FIELDS
            if unknown:
                raise ValueError(f"Unknown prop firm rule fields for {name}: {sorted(unknown)}")
            rules.append(get_prop_firm_rule(name, **config))
        else:
            rules.append(create_custom_prop_firm_rule(name, display_name, **config))
    return rules
