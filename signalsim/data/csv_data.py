"""
CSV price data provider.

This module provides a price series provider backed by CSV files, one
file per trading pair named `{PAIR}.csv` (``BTC/USDT`` is looked up as
``BTCUSDT.csv``).  The expected schema is:

```
time,price
```

Candle exports with a `close` column instead of `price` are accepted,
as are MetaTrader 5 tab‑separated exports (`<DATE>`, `<TIME>`,
`<CLOSE>`, ...).  Timestamps are ISO strings or UNIX epochs in
milliseconds; naive timestamps are localised to the configured
timezone and everything is converted to UTC.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional
import pandas as pd

from ..execution.price_source import PriceDataError, PricePoint, normalize_pair
from ..utils.timeutils import to_utc


logger = logging.getLogger(__name__)


class CSVPriceProvider:
    """Serve price history and current prices from CSV files.

    Parameters
    ----------
    csv_dir : str
        Directory where the CSV files are located.
    timezone : str
        IANA timezone used to localise naive timestamps.
    """

    def __init__(self, csv_dir: str, timezone: str = "UTC") -> None:
        self.csv_dir = Path(csv_dir)
        self.timezone = timezone
        self._cache: Dict[str, pd.Series] = {}
        self._lock = threading.Lock()

    def _read_standard(self, file_path: Path) -> Optional[pd.Series]:
        df = pd.read_csv(file_path)
        if "time" not in df.columns:
            return None
        value_col = "price" if "price" in df.columns else "close"
        if value_col not in df.columns:
            raise PriceDataError(f"{file_path} has neither a 'price' nor a 'close' column")
        if pd.api.types.is_numeric_dtype(df["time"]):
            index = pd.to_datetime(df["time"], unit="ms", utc=True)
        else:
            index = pd.to_datetime(df["time"], errors="raise")
            if index.dt.tz is None:
                index = index.dt.tz_localize(self.timezone)
            index = index.dt.tz_convert("UTC")
        return pd.Series(df[value_col].astype(float).values, index=pd.DatetimeIndex(index))

    def _read_mt5_export(self, file_path: Path, pair: str) -> pd.Series:
        df = pd.read_csv(file_path, sep="\t", engine="python")
        df.columns = [c.strip() for c in df.columns]

        required = ["<DATE>", "<TIME>", "<CLOSE>"]
        missing = [c for c in required if c not in df.columns]
        if missing:
            raise PriceDataError(
                f"Unrecognized CSV format for {pair}. Missing columns: {missing}. "
                f"Found columns: {list(df.columns)}"
            )

        dt = df["<DATE>"].astype(str).str.strip() + " " + df["<TIME>"].astype(str).str.strip()
        ts = pd.to_datetime(dt, format="%Y.%m.%d %H:%M:%S", errors="coerce")
        if ts.isna().any():
            bad = dt[ts.isna()].head(5).tolist()
            raise PriceDataError(f"Could not parse MT5 DATE/TIME for {pair}. Examples: {bad}")
        index = pd.DatetimeIndex(ts).tz_localize(self.timezone).tz_convert("UTC")
        return pd.Series(df["<CLOSE>"].astype(float).values, index=index)

    def load(self, pair: str) -> pd.Series:
        """Return the full, sorted and deduplicated price series of `pair`.

        A missing file yields an empty series; an unreadable one raises
        `PriceDataError`.
        """
        symbol = normalize_pair(pair)
        with self._lock:
            if symbol in self._cache:
                return self._cache[symbol]

            file_path = self.csv_dir / f"{symbol}.csv"
            if not file_path.exists():
                logger.warning("No CSV price file for %s at %s", pair, file_path)
                series = pd.Series(dtype=float, index=pd.DatetimeIndex([], tz="UTC"))
            else:
                try:
                    series = self._read_standard(file_path)
                    if series is None:
                        series = self._read_mt5_export(file_path, pair)
                except (ValueError, pd.errors.ParserError) as exc:
                    raise PriceDataError(f"Failed to read price file {file_path}: {exc}") from exc
                series = series.sort_index(kind="mergesort")
                series = series[~series.index.duplicated(keep="first")]
                logger.debug("Loaded %d price points for %s", len(series), pair)
            self._cache[symbol] = series
            return series

    def get_price_history(self, pair: str, start, end) -> List[PricePoint]:
        series = self.load(pair)
        if series.empty:
            return []
        window = series.loc[to_utc(start):to_utc(end)]
        return [PricePoint(timestamp=ts, price=float(price)) for ts, price in window.items()]

    def get_current_price(self, pair: str) -> Optional[float]:
        series = self.load(pair)
        if series.empty:
            return None
        return float(series.iloc[-1])
