"""
Report generation utilities.

This module turns an evaluation run into files: a CSV of the channel's
trades, a CSV of the realised balance curve and a JSON summary of every
prop firm evaluation.  Having a central place for report generation
makes it easy to extend the output formats in future.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Dict, List, Sequence
import pandas as pd

from ..execution.models import COMPLETED_STATUSES, Trade
from ..utils.timeutils import to_iso
from .metrics import balance_curve


logger = logging.getLogger(__name__)


def trades_frame(trades: Sequence[Trade]) -> pd.DataFrame:
    rows = [
        {
            'id': t.id,
            'channel': t.channel,
            'trading_pair': t.trading_pair,
            'direction': t.direction,
            'status': t.status,
            'entry_price': t.entry_price,
            'entry_fill_price': t.entry_fill_price,
            'stop_loss': t.stop_loss,
            'take_profits': json.dumps(list(t.take_profits)),
            'quantity': t.quantity,
            'leverage': t.leverage,
            'created_at': to_iso(t.created_at),
            'entry_filled_at': to_iso(t.entry_filled_at),
            'exit_filled_at': to_iso(t.exit_filled_at),
            'exit_price': t.exit_price,
            'pnl': t.pnl,
            'pnl_percentage': t.pnl_percentage,
            'stop_loss_breakeven': t.stop_loss_breakeven,
        }
        for t in trades
    ]
    return pd.DataFrame(rows)


def generate_evaluation_report(
    run,
    trades: Sequence[Trade],
    initial_balance: float,
    out_dir: str = "results",
) -> Dict[str, str]:
    """Generate report files for an evaluation run.

    Creates the output directory if it does not exist and writes the
    following files:

    - `trades.csv` – every trade of the channel
    - `balance_curve.csv` – realised balance after each completed trade
    - `summary.json` – settlement outcome and prop firm results

    Returns
    -------
    dict
        Paths of the written files by name.
    """
    os.makedirs(out_dir, exist_ok=True)
    paths = {
        'trades': os.path.join(out_dir, 'trades.csv'),
        'balance_curve': os.path.join(out_dir, 'balance_curve.csv'),
        'summary': os.path.join(out_dir, 'summary.json'),
    }

    trades_frame(trades).to_csv(paths['trades'], index=False)

    completed = [t for t in trades if t.status in COMPLETED_STATUSES]
    curve = pd.DataFrame(
        [{'timestamp': to_iso(ts), 'balance': balance} for ts, balance in balance_curve(initial_balance, completed)]
    )
    curve.to_csv(paths['balance_curve'], index=False)

    summary: Dict[str, object] = {
        'channel': run.channel,
        'settlement': dict(run.settlement),
        'results': [r.to_dict() for r in run.results],
    }
    with open(paths['summary'], 'w', encoding='utf-8') as fh:
        json.dump(summary, fh, indent=2, ensure_ascii=False, default=str)

    logger.info("Report written to %s", out_dir)
    return paths


def format_results(results: Sequence) -> List[str]:
    """One line per prop firm, followed by its violations."""
    lines: List[str] = []
    for result in results:
        status = "PASSED" if result.passed else "FAILED"
        lines.append(
            f"{result.prop_firm_name}: {status} "
            f"(P&L {result.metrics['total_pnl']:.2f} USDT, {result.metrics['total_trades']} trades)"
        )
        for violation in result.violations:
            lines.append(f"  [{violation.severity}] {violation.message}")
    return lines
