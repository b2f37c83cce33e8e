"""Configuration loading utilities."""

import os
from dataclasses import dataclass, field, fields, replace, asdict
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from binance.client import Client
from dotenv import load_dotenv

DEFAULT_CONFIG_FILE = "config.txt"


def _load_kv_file(path: Path) -> Dict[str, str]:
    """Reads key=value pairs ignoring comments and blank lines."""
    data: Dict[str, str] = {}
    if not path.exists():
        return data

    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            data[key.strip()] = value.strip()
    return data


def _env(key: str) -> str:
    """Returns the first non-empty env var among KEY / PAPERTRADER_KEY."""
    for env_key in (key.upper(), f"PAPERTRADER_{key.upper()}"):
        val = os.getenv(env_key)
        if val is not None and str(val).strip() != "":
            return val
    return ""


@dataclass(frozen=True)
class EngineConfig:
    """
    Parameters of the trading engine. Built once and handed to every
    component constructor.

    Percentages (`stop_loss_pct`, `take_profit_pct`) are whole percents
    (5 = 5%); thresholds on returns and divergences are fractions
    (0.012 = 1.2%). Fees are basis points per side.
    """

    initial_balance: float = 10_000.0
    fee_bps: float = 8.0
    max_position_fraction: float = 1.0
    stop_loss_pct: float = 5.0
    take_profit_pct: float = 15.0

    # signal generation
    min_confidence: float = 0.6
    min_price_divergence: float = 0.012
    min_predicted_return: float = 0.012
    low_confidence_flag_below: float = 0.5
    low_confidence_flag_return: float = 0.005
    low_confidence_close_below: float = 0.4

    # intelligent closure
    close_min_confidence: float = 0.3
    min_profit_probability: float = 0.4
    negative_outlook_threshold: float = -0.015
    confidence_weight: float = 0.5
    return_weight: float = 0.3
    time_weight: float = 0.2
    time_decay_factor: float = 0.8
    return_factor_cap: float = 2.0
    neutral_probability: float = 0.5

    def __post_init__(self):
        if self.initial_balance <= 0:
            raise ValueError("initial_balance must be positive")
        if self.fee_bps < 0:
            raise ValueError("fee_bps must be non-negative")
        if not 0 < self.max_position_fraction <= 1:
            raise ValueError("max_position_fraction must be in (0, 1]")
        if self.stop_loss_pct <= 0 or self.take_profit_pct <= 0:
            raise ValueError("stop_loss_pct and take_profit_pct must be positive")
        if self.return_factor_cap < 0:
            raise ValueError("return_factor_cap must be non-negative")
        for name in (
            "min_confidence",
            "low_confidence_flag_below",
            "low_confidence_close_below",
            "close_min_confidence",
            "min_profit_probability",
            "confidence_weight",
            "return_weight",
            "time_weight",
            "time_decay_factor",
            "neutral_probability",
        ):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise ValueError(f"{name} must be within [0, 1], got {value}")

    def with_overrides(self, overrides: Optional[Mapping[str, object]]) -> "EngineConfig":
        """Returns a copy with known keys replaced; unknown keys are ignored."""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        changes = {k: float(v) for k, v in overrides.items() if k in known}
        return replace(self, **changes) if changes else self

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class AppConfig:
    """In-memory configuration used by the trading engine."""

    binance_api_key: str
    binance_api_secret: str
    telegram_token: str
    telegram_chat_id: str

    symbols: List[str] = field(default_factory=lambda: ["ETHUSDT"])
    mode: str = "cycle"  # cycle | monitor | report | serve
    db_path: str = "papertrader.db"
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    engine: EngineConfig = field(default_factory=EngineConfig)

    @classmethod
    def from_sources(cls, config_path: str | None = None) -> "AppConfig":
        """
        Loads configuration with the following precedence:
        1) Environment variables (.env is loaded automatically)
        2) key=value file (default: config.txt or path passed)

        Environment vars accepted: BINANCE_API_KEY, BINANCE_API_SECRET, TELEGRAM_TOKEN,
        TELEGRAM_CHAT_ID, SYMBOLS, MODE, DB_PATH, API_HOST, API_PORT and every
        EngineConfig field in upper case (INITIAL_BALANCE, FEE_BPS, STOP_LOSS_PCT, ...).
        Each may also be prefixed with PAPERTRADER_.
        """
        load_dotenv()

        cfg_path = (
            Path(config_path)
            if config_path
            else Path(os.getenv("PAPERTRADER_CONFIG") or DEFAULT_CONFIG_FILE)
        )
        file_data = _load_kv_file(cfg_path)

        def get_str(key: str, default: str = "") -> str:
            return _env(key) or file_data.get(key, default)

        def get_float(key: str, default: float) -> float:
            raw = get_str(key, "")
            if raw == "":
                return default
            try:
                return float(raw)
            except ValueError:
                raise ValueError(f"Invalid numeric value for {key}: {raw!r}")

        def get_int(key: str, default: int) -> int:
            try:
                raw = get_str(key, default)
                return int(raw)
            except Exception:
                return default

        symbols_str = get_str("symbols", "ETHUSDT")
        symbols = [s.strip().upper() for s in symbols_str.split(",") if s.strip()]

        defaults = EngineConfig()
        engine = EngineConfig(
            **{f.name: get_float(f.name, getattr(defaults, f.name)) for f in fields(EngineConfig)}
        )

        return cls(
            binance_api_key=get_str("binance_api_key"),
            binance_api_secret=get_str("binance_api_secret"),
            telegram_token=get_str("telegram_token"),
            telegram_chat_id=get_str("telegram_chat_id"),
            symbols=symbols,
            mode=get_str("mode", "cycle").lower(),
            db_path=get_str("db_path", "papertrader.db"),
            api_host=get_str("api_host", "127.0.0.1"),
            api_port=get_int("api_port", 8000),
            engine=engine,
        )

    def engine_config(self, overrides: Optional[Mapping[str, object]] = None) -> EngineConfig:
        """
        EngineConfig from env/file, with values stored in the `app_config`
        table layered on top.
        """
        return self.engine.with_overrides(overrides)

    def get_client(self) -> Client:
        """Binance client used for ticker lookups (public endpoints need no keys)."""
        return Client(self.binance_api_key or None, self.binance_api_secret or None)
