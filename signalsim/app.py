"""
Application entry point.

This module defines a simple command‑line interface for running the
simulator in different modes:

- ``evaluate`` settles the open trades of a channel against historical
  prices and checks the channel against the configured prop firms;
- ``monitor`` follows open trades against live prices until stopped;
- ``pretrade`` checks whether a proposed trade would break a prop firm
  rule before it is created.
"""

from __future__ import annotations

import argparse
import logging
from typing import List, Optional

import pandas as pd

from .config.prop_firms import resolve_prop_firm_rules
from .config.schema import Config, load_config
from .data.csv_data import CSVPriceProvider
from .data.mt5_data import MT5PriceProvider
from .data.rate_limiter import TokenBucketRateLimiter
from .evaluation.coordinator import RunCoordinator
from .evaluation.pre_trade import build_ledger_snapshot, validate_pre_trade
from .execution.live_monitor import LiveTradeMonitor
from .execution.models import Trade
from .reporting.report import format_results, generate_evaluation_report
from .storage.database import TradeStore
from .utils.timeutils import now_utc


def _setup_logging(verbose: bool) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def build_price_provider(config: Config):
    """Create the price provider selected by ``price_source``."""
    if config.price_source == 'mt5':
        limiter = TokenBucketRateLimiter(config.rate_limit.max_requests, config.rate_limit.window_seconds)
        provider = MT5PriceProvider(config.mt5, rate_limiter=limiter)
        provider.connect()
        return provider
    return CSVPriceProvider(config.data.csv_dir, config.data.timezone)


def _run_evaluate(config: Config, channel: str, store: TradeStore, provider) -> None:
    rules = resolve_prop_firm_rules(config.evaluation.prop_firms, config.evaluation.initial_balance)
    if not rules:
        logging.warning("No prop firms configured; trades will be settled but not evaluated")
    coordinator = RunCoordinator(
        store,
        provider,
        max_workers=config.evaluation.max_workers,
        max_duration_days=config.evaluation.max_trade_duration_days,
        breakeven_after_tps=config.evaluation.breakeven_after_tps,
        fetch_retries=config.evaluation.fetch_retries,
        timezone=config.data.timezone,
    )
    run = coordinator.run(channel, rules)
    generate_evaluation_report(
        run,
        store.get_trades_by_channel(channel),
        config.evaluation.initial_balance,
        out_dir=config.report.out_dir,
    )
    for line in format_results(run.results):
        print(line)


def _run_pretrade(config: Config, channel: str, store: TradeStore, args: argparse.Namespace) -> bool:
    rules = resolve_prop_firm_rules(config.evaluation.prop_firms, config.evaluation.initial_balance)
    created_at = now_utc()
    proposed = Trade(
        channel=channel,
        trading_pair=args.pair,
        entry_price=args.entry,
        stop_loss=args.stop,
        take_profits=[],
        created_at=created_at,
        expires_at=created_at + pd.Timedelta(days=1),
        quantity=args.quantity,
        leverage=args.leverage,
    )
    snapshot = build_ledger_snapshot(store, channel, config.data.timezone)
    results = validate_pre_trade(proposed, rules, snapshot, day_start_balance=args.day_start_balance)
    for result in results:
        print(f"{result.prop_firm_name}: {'ALLOWED' if result.allowed else 'REJECTED'}")
        for violation in result.violations:
            print(f"  {violation}")
    return all(r.allowed for r in results)


def main(argv: Optional[List[str]] = None) -> None:
    """Parse command‑line arguments and dispatch to the appropriate mode."""
    parser = argparse.ArgumentParser(description="Trade settlement simulator and prop firm evaluator")
    parser.add_argument('mode', choices=['evaluate', 'monitor', 'pretrade'], help="Operating mode")
    parser.add_argument('--config', default='config.yaml', help="Path to configuration YAML file")
    parser.add_argument('--channel', help="Signal channel (defaults to evaluation.channel)")
    parser.add_argument('--pair', help="pretrade: trading pair")
    parser.add_argument('--entry', type=float, help="pretrade: entry price")
    parser.add_argument('--stop', type=float, help="pretrade: stop loss")
    parser.add_argument('--quantity', type=float, help="pretrade: quantity")
    parser.add_argument('--leverage', type=float, default=1.0, help="pretrade: leverage")
    parser.add_argument('--day-start-balance', type=float, help="pretrade: balance at the start of the day")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    args = parser.parse_args(argv)

    _setup_logging(args.verbose)

    config = load_config(args.config)
    channel = args.channel or config.evaluation.channel
    store = TradeStore(config.database.path)

    try:
        if args.mode == 'pretrade':
            if args.pair is None or args.entry is None or args.quantity is None:
                parser.error("pretrade requires --pair, --entry and --quantity")
            if not _run_pretrade(config, channel, store, args):
                raise SystemExit(1)
            return

        provider = build_price_provider(config)
        try:
            if args.mode == 'evaluate':
                if not channel:
                    parser.error("evaluate requires --channel or evaluation.channel in the config")
                logging.info("Evaluating channel %s...", channel)
                _run_evaluate(config, channel, store, provider)
                logging.info("Evaluation complete. Results saved to the '%s' directory.", config.report.out_dir)
            else:
                monitor = LiveTradeMonitor(
                    store,
                    provider,
                    breakeven_after_tps=config.monitor.breakeven_after_tps,
                    poll_interval=config.monitor.poll_interval,
                    channel=args.channel,
                )
                monitor.run()
        finally:
            if isinstance(provider, MT5PriceProvider):
                provider.shutdown()
    finally:
        store.close()


if __name__ == '__main__':
    main()
