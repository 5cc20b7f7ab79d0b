"""
MetaTrader 5 price data provider.

This module wraps the `MetaTrader5` Python package to fetch tick
history and current quotes for FX and CFD pairs.  If the package is
not installed or initialisation fails, the code raises a clear
exception.  Users can skip installing MetaTrader5 when evaluating
against CSV data.

Every call to the terminal goes through the injected rate limiter,
which is shared by all settlement workers of a run.
"""

from __future__ import annotations

import logging
from typing import List, Optional
import pandas as pd

from ..config.schema import MT5Config
from ..execution.price_source import PriceDataError, PricePoint, normalize_pair, prepare_series
from ..utils.timeutils import to_utc
from .rate_limiter import NoopRateLimiter

# Attempt to import MetaTrader5.  If unavailable, mt5 will be None.
try:
    import MetaTrader5 as mt5  # type: ignore
except ImportError:
    mt5 = None  # Will be checked at runtime


logger = logging.getLogger(__name__)


class MT5PriceProvider:
    """Handle connection to MetaTrader 5 and retrieval of prices."""

    def __init__(self, config: MT5Config, rate_limiter=None) -> None:
        self.config = config
        self.rate_limiter = rate_limiter or NoopRateLimiter()
        self._connected = False

    def connect(self) -> None:
        """Initialise the MetaTrader 5 terminal.

        Raises
        ------
        RuntimeError
            If the MetaTrader5 package is not installed or initialisation fails.
        """
        if mt5 is None:
            raise RuntimeError(
                "MetaTrader5 package is not installed.  Install it with 'pip install MetaTrader5' to use the mt5 price source."
            )
        if not mt5.initialize(path=self.config.path, login=self.config.login, password=self.config.password, server=self.config.server):
            raise RuntimeError(f"MT5 initialisation failed: {mt5.last_error()}")
        self._connected = True

    def shutdown(self) -> None:
        """Shutdown the MT5 connection if it was opened."""
        if mt5 and self._connected:
            mt5.shutdown()
            self._connected = False

    def _require_connection(self) -> None:
        if not self._connected:
            raise RuntimeError("MT5PriceProvider is not connected.  Call connect() before requesting data.")

    def get_price_history(self, pair: str, start, end) -> List[PricePoint]:
        """Retrieve bid ticks between `start` and `end` (UTC)."""
        self._require_connection()
        symbol = normalize_pair(pair)
        self.rate_limiter.acquire()
        utc_from = to_utc(start).to_pydatetime()
        utc_to = to_utc(end).to_pydatetime()
        ticks = mt5.copy_ticks_range(symbol, utc_from, utc_to, mt5.COPY_TICKS_ALL)
        if ticks is None:
            raise PriceDataError(f"MT5 tick request failed for {symbol}: {mt5.last_error()}")
        if len(ticks) == 0:
            return []
        df = pd.DataFrame(ticks)
        df["time"] = pd.to_datetime(df["time_msc"], unit="ms", utc=True)
        df = df[df["bid"] > 0]
        points = [
            PricePoint(timestamp=ts, price=float(price))
            for ts, price in zip(df["time"], df["bid"])
        ]
        logger.debug("Fetched %d MT5 ticks for %s", len(points), symbol)
        return prepare_series(points)

    def get_current_price(self, pair: str) -> Optional[float]:
        self._require_connection()
        symbol = normalize_pair(pair)
        self.rate_limiter.acquire()
        tick = mt5.symbol_info_tick(symbol)
        if tick is None or not tick.bid:
            logger.warning("No current MT5 quote for %s: %s", symbol, mt5.last_error())
            return None
        return float(tick.bid)
