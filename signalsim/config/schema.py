"""
Configuration schema and loader.

This module defines dataclasses that mirror the expected structure of
the YAML configuration file (`config.yaml`).  A helper function
`load_config()` reads a YAML file from disk and returns an instance
of `Config` populated with reasonable defaults for any missing
fields.

Using dataclasses provides type hints and a clear contract for what
values are expected.  When extending the configuration, add new
fields to the appropriate dataclass; `load_config()` picks up their
defaults automatically.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Union
import yaml


@dataclass
class DatabaseConfig:
    """Location of the SQLite database holding trades and orders."""

    path: str = "data/signalsim.db"


@dataclass
class DataConfig:
    """Price data source configuration.

    Attributes
    ----------
    csv_dir : str
        Directory containing one CSV price file per trading pair.
    timezone : str
        IANA timezone name used for naive timestamps in the CSV files and
        for bucketing trades into calendar days.
    """

    csv_dir: str = "data/prices"
    timezone: str = "UTC"


@dataclass
class MT5Config:
    """Holds parameters required to connect to a MetaTrader 5 terminal.

    Attributes
    ----------
    login : int
        Account login number.
    password : str
        Password for the account.
    server : str
        Broker server name (e.g. ``Bidget-MT5-Live``).
    path : str
        File system path to the MetaTrader 5 terminal executable
        (`terminal64.exe`).
    """

    login: int = 0
    password: str = ""
    server: str = ""
    path: str = ""


@dataclass
class RateLimitConfig:
    """Request budget shared by all price fetches of a run."""

    max_requests: int = 100
    window_seconds: float = 60.0


@dataclass
class EvaluationConfig:
    """Settings of an evaluation run.

    Attributes
    ----------
    channel : str
        Signal channel whose trades are settled and evaluated.
    initial_balance : float
        Starting balance used for preset prop firms and custom ones that
        do not set their own.
    prop_firms : list
        Preset names (``"hyrotrader"``) or mappings describing custom
        prop firm rules.
    max_trade_duration_days : float
        Length of the price window replayed for each trade.
    breakeven_after_tps : int
        Number of take profits to fill before the stop loss moves to
        the entry fill price.
    max_workers : int
        Number of trades settled in parallel.
    fetch_retries : int
        How many times a failed price fetch is retried before the trade
        is left open for a later run.
    """

    channel: str = ""
    initial_balance: float = 10_000.0
    prop_firms: List[Union[str, Dict[str, Any]]] = field(default_factory=list)
    max_trade_duration_days: float = 7.0
    breakeven_after_tps: int = 1
    max_workers: int = 4
    fetch_retries: int = 2


@dataclass
class MonitorConfig:
    """Settings of the live monitor."""

    poll_interval: float = 60.0
    breakeven_after_tps: int = 1


@dataclass
class ReportConfig:
    out_dir: str = "results"


@dataclass
class Config:
    """Root configuration for the program.

    Attributes
    ----------
    price_source : str
        ``csv`` or ``mt5``.
    """

    price_source: str = "csv"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    data: DataConfig = field(default_factory=DataConfig)
    mt5: MT5Config = field(default_factory=MT5Config)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    evaluation: EvaluationConfig = field(default_factory=EvaluationConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    report: ReportConfig = field(default_factory=ReportConfig)


def _merge_dict(defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries.

    The values in `override` take precedence over those in `defaults`.
    This helper is used when loading YAML into nested dataclasses.
    """
    result: Dict[str, Any] = defaults.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def config_from_dict(raw: Dict[str, Any]) -> Config:
    """Build a `Config` from a (possibly partial) dictionary."""
    merged = _merge_dict(asdict(Config()), raw or {})

    price_source = str(merged.get('price_source', 'csv')).lower()
    if price_source not in ('csv', 'mt5'):
        raise ValueError(f"Unsupported price_source: {price_source}")

    evaluation = dict(merged['evaluation'])
    evaluation['prop_firms'] = list(evaluation.get('prop_firms') or [])

    return Config(
        price_source=price_source,
        database=DatabaseConfig(**merged['database']),
        data=DataConfig(**merged['data']),
        mt5=MT5Config(**merged['mt5']),
        rate_limit=RateLimitConfig(**merged['rate_limit']),
        evaluation=EvaluationConfig(**evaluation),
        monitor=MonitorConfig(**merged['monitor']),
        report=ReportConfig(**merged['report']),
    )


def load_config(path: str) -> Config:
    """Load a configuration file from the given YAML path.

    Parameters
    ----------
    path : str
        Path to the YAML file.

    Returns
    -------
    Config
        A populated configuration object.  Missing fields are filled with
        sensible defaults defined in the dataclasses.
    """
    with open(path, "r", encoding="utf-8") as fh:
        raw: Dict[str, Any] = yaml.safe_load(fh) or {}
    return config_from_dict(raw)
