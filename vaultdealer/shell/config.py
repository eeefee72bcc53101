"""Configuration loading: merges settings.toml and .env."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"


@dataclass
class SchedulerConfig:
    tick_seconds: float = 10.0
    cooldown_seconds: float = 300.0
    stop_timeout_seconds: float = 30.0


@dataclass
class IndicatorSettings:
    """Per-indicator switch and parameters fed into each asset's context."""
    enabled: list[str] = field(default_factory=lambda: ["rsi", "macd", "atr", "ema"])
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    bollinger_period: int = 20
    bollinger_std: float = 2.0
    atr_period: int = 14
    adx_period: int = 14
    ema_period: int = 20
    sma_period: int = 20
    stoch_period: int = 14
    stoch_smooth: int = 3

    def params_for(self, indicator: str) -> dict:
        return {
            "rsi": {"period": self.rsi_period},
            "macd": {"fast": self.macd_fast, "slow": self.macd_slow, "signal": self.macd_signal},
            "bollinger": {"period": self.bollinger_period, "std": self.bollinger_std},
            "atr": {"period": self.atr_period},
            "adx": {"period": self.adx_period},
            "ema": {"period": self.ema_period},
            "sma": {"period": self.sma_period},
            "stoch": {"period": self.stoch_period, "smooth": self.stoch_smooth},
        }.get(indicator, {})


@dataclass
class DealerConfig:
    enabled: bool = False
    trading_pairs: list[str] = field(default_factory=lambda: ["BTC", "ETH", "SOL"])
    check_interval_seconds: float = 300.0
    sync_interval_seconds: float = 15.0
    analysis_timeframe: str = "60"
    history_candles: int = 30
    macro_enabled: bool = False
    macro_timeframe: str = "240"
    macro_indicators: list[str] = field(default_factory=lambda: ["rsi", "macd", "ema"])
    indicators: IndicatorSettings = field(default_factory=IndicatorSettings)
    strategy_prompt: str = ""
    aggressive_mode: bool = False
    max_leverage: float = 5.0
    max_position_size_usdc: float = 50.0
    max_open_positions: int = 3
    max_trades_per_cycle: int = 3
    stop_loss_enabled: bool = False
    stop_loss_percent: float = 5.0
    take_profit_enabled: bool = False
    take_profit_percent: float = 10.0
    chunk_size: int = 5
    confidence_threshold: float = 0.60
    aggressive_confidence_threshold: float = 0.50
    close_priority_boost: float = 0.5
    min_trade_usdc: float = 10.0
    default_trade_usdc: float = 20.0
    affordability_factor: float = 0.95
    execution_delay_seconds: float = 2.0
    chunk_delay_seconds: float = 0.5
    asset_delay_seconds: float = 0.2
    error_memory_seconds: float = 60.0
    history_size: int = 5
    maker_fee: float = 0.0002
    taker_fee: float = 0.0005

    @property
    def threshold(self) -> float:
        return self.aggressive_confidence_threshold if self.aggressive_mode else self.confidence_threshold


@dataclass
class ExecutionConfig:
    settle_attempts: int = 3
    settle_interval_seconds: float = 2.0
    market_slippage: float = 0.05


@dataclass
class MarketConfig:
    base_url: str = "https://api.hyperliquid.xyz"
    timeout: float = 10.0
    candle_limit: int = 200


@dataclass
class AIConfig:
    anthropic_api_key: str = ""
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4096
    temperature: float = 0.3
    daily_token_limit: int = 1500000


@dataclass
class SecretsConfig:
    vault_secret: str = ""
    venue_secret: str = ""
    vault_password: str = ""
    owner_address: Optional[str] = None


@dataclass
class Config:
    mode: str = "paper"
    log_level: str = "INFO"
    paper_balance_usd: float = 1000.0
    db_path: str = ""
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    dealer: DealerConfig = field(default_factory=DealerConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    market: MarketConfig = field(default_factory=MarketConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)

    def is_paper(self) -> bool:
        return self.mode == "paper"


def _apply(target, section: dict) -> None:
    """Copy known keys from a TOML table onto a config dataclass."""
    for key in vars(target):
        if key in section and not isinstance(section[key], dict):
            setattr(target, key, section[key])


def load_config(settings_path: Path | None = None) -> Config:
    """Load configuration from settings.toml and environment variables."""
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.db_path = str(PROJECT_ROOT / "data" / "vaultdealer.db")

    settings_path = settings_path or CONFIG_DIR / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.mode = general.get("mode", config.mode)
        config.log_level = general.get("log_level", config.log_level)
        config.paper_balance_usd = general.get("paper_balance_usd", config.paper_balance_usd)
        if general.get("db_path"):
            db_path = Path(general["db_path"])
            config.db_path = str(db_path if db_path.is_absolute() else PROJECT_ROOT / db_path)

        _apply(config.scheduler, settings.get("scheduler", {}))

        dealer = settings.get("dealer", {})
        _apply(config.dealer, dealer)
        macro = dealer.get("macro", {})
        config.dealer.macro_enabled = macro.get("enabled", config.dealer.macro_enabled)
        config.dealer.macro_timeframe = str(macro.get("timeframe", config.dealer.macro_timeframe))
        config.dealer.macro_indicators = macro.get("indicators", config.dealer.macro_indicators)
        _apply(config.dealer.indicators, dealer.get("indicators", {}))

        _apply(config.execution, settings.get("execution", {}))
        _apply(config.market, settings.get("market", {}))
        _apply(config.ai, settings.get("ai", {}))

    config.dealer.analysis_timeframe = str(config.dealer.analysis_timeframe)
    config.dealer.trading_pairs = [p.strip().upper() for p in config.dealer.trading_pairs]

    # Environment variables (secrets)
    config.ai.anthropic_api_key = os.getenv("ANTHROPIC_API_KEY", "")
    config.secrets.vault_secret = os.getenv("VAULT_SECRET", "")
    config.secrets.venue_secret = os.getenv("VENUE_SECRET", "")
    config.secrets.vault_password = os.getenv("VAULT_PASSWORD", "")
    config.secrets.owner_address = os.getenv("OWNER_ADDRESS") or None
    config.log_level = os.getenv("LOG_LEVEL", config.log_level)

    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    errors = []
    d = config.dealer

    if config.mode not in ("paper", "live"):
        errors.append(f"mode must be 'paper' or 'live', got '{config.mode}'")
    if config.paper_balance_usd <= 0:
        errors.append(f"paper_balance_usd must be > 0, got {config.paper_balance_usd}")
    if config.scheduler.tick_seconds <= 0:
        errors.append(f"scheduler.tick_seconds must be > 0, got {config.scheduler.tick_seconds}")
    if config.scheduler.cooldown_seconds < 0:
        errors.append(f"scheduler.cooldown_seconds must be >= 0, got {config.scheduler.cooldown_seconds}")

    if not d.trading_pairs:
        errors.append("At least one dealer trading pair must be configured")
    if d.check_interval_seconds <= 0:
        errors.append(f"dealer.check_interval_seconds must be > 0, got {d.check_interval_seconds}")
    if d.sync_interval_seconds <= 0:
        errors.append(f"dealer.sync_interval_seconds must be > 0, got {d.sync_interval_seconds}")
    if d.chunk_size < 1:
        errors.append(f"dealer.chunk_size must be >= 1, got {d.chunk_size}")
    for name in ("confidence_threshold", "aggressive_confidence_threshold"):
        value = getattr(d, name)
        if not (0 <= value <= 1):
            errors.append(f"dealer.{name} must be 0-1, got {value}")
    if d.max_leverage < 1:
        errors.append(f"dealer.max_leverage must be >= 1, got {d.max_leverage}")
    if d.max_position_size_usdc <= 0:
        errors.append(f"dealer.max_position_size_usdc must be > 0, got {d.max_position_size_usdc}")
    if d.max_open_positions < 1:
        errors.append(f"dealer.max_open_positions must be >= 1, got {d.max_open_positions}")
    if d.max_trades_per_cycle < 1:
        errors.append(f"dealer.max_trades_per_cycle must be >= 1, got {d.max_trades_per_cycle}")
    if not (0 < d.affordability_factor <= 1):
        errors.append(f"dealer.affordability_factor must be 0-1, got {d.affordability_factor}")
    if d.history_size < 1:
        errors.append(f"dealer.history_size must be >= 1, got {d.history_size}")
    if d.min_trade_usdc > d.max_position_size_usdc:
        errors.append(
            f"min_trade_usdc ({d.min_trade_usdc}) > max_position_size_usdc ({d.max_position_size_usdc})"
        )

    if config.execution.settle_attempts < 0:
        errors.append(f"execution.settle_attempts must be >= 0, got {config.execution.settle_attempts}")
    if not (0 < config.execution.market_slippage < 1):
        errors.append(f"execution.market_slippage must be 0-1, got {config.execution.market_slippage}")
    if config.market.candle_limit < 50:
        errors.append(f"market.candle_limit must be >= 50, got {config.market.candle_limit}")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
