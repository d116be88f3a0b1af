"""
Configuration management with Pydantic validation.

Loads settings from YAML config file and environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class BinanceConfig(BaseModel):
    """Binance spot margin API configuration."""

    base_url: str = "https://api.binance.com"
    testnet_base_url: str = "https://testnet.binance.vision"
    recv_window: int = Field(default=5000, ge=1000, le=60000)
    request_timeout_sec: float = Field(default=10.0, ge=1.0, le=60.0)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    time_sync_interval_sec: int = Field(default=60, ge=30, le=3600)


class RunConfig(BaseModel):
    """Runtime trading mode configuration."""

    mode: Literal["testnet", "live"] = Field(default="testnet", validation_alias="RUN_MODE")
    enable_trading: bool = Field(default=False, validation_alias="RUN_ENABLE_TRADING")
    live_confirm: str = Field(default="", validation_alias="RUN_LIVE_CONFIRM")

    model_config = {
        "populate_by_name": True,
    }


class MarginConfig(BaseModel):
    """Borrowing and leveraged sizing limits."""

    mode: Literal["cross", "isolated"] = "cross"
    settlement_asset: str = "USDT"
    stable_assets: list[str] = Field(default_factory=lambda: ["USDT", "USDC", "BUSD", "USD"])
    margin_safety_level: float = Field(default=1.5, ge=1.1, le=10.0)
    max_leverage: float = Field(default=5.0, ge=1.0, le=10.0)
    isolated_max_leverage: float = Field(default=3.0, ge=2.0, le=10.0)
    no_debt_borrow_multiplier: float = Field(default=2.0, ge=0.0, le=10.0)
    protective_buffer_max: float = Field(default=10.0, ge=0.0)
    protective_buffer_pct: float = Field(default=10.0, ge=0.0, le=50.0)
    liability_epsilon_btc: float = Field(default=0.00001, ge=0.0)
    borrow_settle_attempts: int = Field(default=5, ge=1, le=30)
    borrow_settle_interval_sec: float = Field(default=1.0, ge=0.0, le=30.0)
    trade_history_limit: int = Field(default=50, ge=1, le=1000)

    @field_validator("settlement_asset")
    @classmethod
    def validate_settlement_asset(cls, v: str) -> str:
        return v.upper()


class ProtectionConfig(BaseModel):
    """Take-profit / stop-loss placement parameters."""

    stop_limit_offset_pct: float = Field(default=1.0, ge=0.0, le=10.0)
    fallback_stop_limit_offset_pct: float = Field(default=5.0, ge=0.0, le=20.0)
    default_stop_loss_pct: float = Field(default=3.0, ge=0.1, le=50.0)
    default_take_profit_pct: float = Field(default=6.0, ge=0.1, le=200.0)
    fill_poll_attempts: int = Field(default=5, ge=1, le=60)
    fill_poll_interval_sec: float = Field(default=1.0, ge=0.0, le=30.0)


class ExitPlanConfig(BaseModel):
    """Invalidation indicator parameters."""

    indicator_timeframe: str = "4h"
    macd_fast: int = Field(default=12, ge=2, le=50)
    macd_slow: int = Field(default=26, ge=5, le=100)
    macd_signal: int = Field(default=9, ge=2, le=50)
    macd_candles: int = Field(default=50, ge=26, le=500)
    rsi_period: int = Field(default=14, ge=5, le=50)
    rsi_candles: int = Field(default=50, ge=15, le=500)
    default_macd_bars: int = Field(default=2, ge=2, le=10)

    @field_validator("macd_slow")
    @classmethod
    def validate_macd_slow(cls, v: int, info) -> int:
        fast = info.data.get("macd_fast", 12)
        if v <= fast:
            raise ValueError(f"macd_slow ({v}) must exceed macd_fast ({fast})")
        return v


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    state_path: str = "./data/state"
    logs_path: str = "./logs"
    persist_exit_plans: bool = False


class MonitoringConfig(BaseModel):
    """Monitoring configuration."""

    metrics_port: int = Field(default=9090, ge=1024, le=65535)
    api_port: int = Field(default=8000, ge=1024, le=65535)
    api_host: str = "127.0.0.1"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_http: bool = False
    log_http_responses: bool = False
    log_http_max_body_chars: int = Field(default=500, ge=0, le=5000)
    error_log_max_bytes: int = Field(default=5_000_000, ge=100_000, le=50_000_000)
    error_log_backup_count: int = Field(default=3, ge=1, le=20)


class WatchdogConfig(BaseModel):
    """Protective order watchdog configuration."""

    enabled: bool = Field(default=True)
    interval_sec: int = Field(default=300, ge=30, le=3600)
    auto_recover: bool = Field(default=True)
    check_exit_plans: bool = Field(default=True)


class Settings(BaseSettings):
    """Main application settings."""

    run: RunConfig = Field(default_factory=RunConfig)

    # API credentials from environment
    binance_api_key: str = Field(default="", alias="BINANCE_API_KEY")
    binance_secret_key: str = Field(default="", alias="BINANCE_SECRET_KEY")
    binance_testnet_api_key: str = Field(default="", alias="BINANCE_TESTNET_API_KEY")
    binance_testnet_secret_key: str = Field(default="", alias="BINANCE_TESTNET_SECRET_KEY")

    # Sub-configurations
    binance: BinanceConfig = Field(default_factory=BinanceConfig)
    margin: MarginConfig = Field(default_factory=MarginConfig)
    protection: ProtectionConfig = Field(default_factory=ProtectionConfig)
    exit_plans: ExitPlanConfig = Field(default_factory=ExitPlanConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_nested_delimiter": "__",
        "populate_by_name": True,
    }

    @property
    def binance_base_url(self) -> str:
        """Get the Binance base URL for the active run mode."""
        if self.run.mode == "live":
            return self.binance.base_url
        return self.binance.testnet_base_url

    @property
    def active_binance_api_key(self) -> str:
        """Return the API key for the active run mode."""
        if self.run.mode == "testnet" and self.binance_testnet_api_key:
            return self.binance_testnet_api_key
        return self.binance_api_key

    @property
    def active_binance_secret_key(self) -> str:
        """Return the API secret for the active run mode."""
        if self.run.mode == "testnet" and self.binance_testnet_secret_key:
            return self.binance_testnet_secret_key
        return self.binance_secret_key

    def trading_gate(self) -> tuple[bool, list[str]]:
        """Return whether order submission is allowed along with blocking reasons."""
        reasons: list[str] = []
        if not self.run.enable_trading:
            reasons.append("RUN_ENABLE_TRADING_FALSE")
        if self.run.mode == "testnet":
            if not self.binance_testnet_api_key:
                reasons.append("BINANCE_TESTNET_API_KEY not set")
            if not self.binance_testnet_secret_key:
                reasons.append("BINANCE_TESTNET_SECRET_KEY not set")
        if self.run.mode == "live":
            if not self.binance_api_key:
                reasons.append("BINANCE_API_KEY not set")
            if not self.binance_secret_key:
                reasons.append("BINANCE_SECRET_KEY not set")
            if self.run.live_confirm != "YES_I_UNDERSTAND":
                reasons.append("RUN_LIVE_CONFIRM missing/invalid")
        return (len(reasons) == 0, reasons)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings from YAML config file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file values
    3. Default values
    """
    config_data = {}

    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            config_data = yaml.safe_load(f) or {}

    run_overrides = {}
    env_run_mode = os.environ.get("RUN_MODE")
    env_run_enable = os.environ.get("RUN_ENABLE_TRADING")
    env_run_confirm = os.environ.get("RUN_LIVE_CONFIRM")
    if env_run_mode:
        run_overrides["mode"] = env_run_mode
    if env_run_enable is not None:
        run_overrides["enable_trading"] = env_run_enable
    if env_run_confirm is not None:
        run_overrides["live_confirm"] = env_run_confirm
    if run_overrides:
        config_data.setdefault("run", {}).update(run_overrides)

    env_path = config_file.parent / ".env"
    settings = Settings(**config_data, _env_file=env_path)

    return settings
