import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from market_alerts.client.binance import INTERVALS
from market_alerts.storage.database import INDICATOR_TYPES

OPERATORS = {">", ">=", "<", "<=", "=", "!="}
INDICATOR_NAMES = {name for name, _, _ in INDICATOR_TYPES}


class WebhookConfig(BaseModel):
    default_url: str = "https://example.com/webhook"
    hmac_secret: str
    timeout_ms: int = Field(default=5000, gt=0)
    max_retries: int = Field(default=3, ge=1)
    backoff_base_ms: int = Field(default=500, ge=0)

    @field_validator("hmac_secret")
    @classmethod
    def _check_secret(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("hmac_secret must be at least 8 characters")
        return value


class MarketDataConfig(BaseModel):
    provider: Literal["binance", "ccxt"] = "binance"
    base_url: str = "https://api.binance.com"
    exchange: str = "binance"  # ccxt exchange id
    timeout_ms: int = Field(default=5000, gt=0)
    candle_count: int = Field(default=25, ge=2)


class MonitorConfig(BaseModel):
    window_minutes: int = Field(default=5, gt=0)
    default_threshold_percent: float = 0.02
    default_cooldown_minutes: int = Field(default=10, ge=0)
    history_size: int | None = 12  # 用于均值/标准差的历史 K 线数
    max_concurrent_symbols: int = Field(default=1, ge=1)
    interval_minutes: int = Field(default=5, gt=0)


class IndicatorSeedConfig(BaseModel):
    type: str
    threshold: float
    operator: str = ">="
    enabled: bool = True
    cooldown_minutes: int | None = None
    webhook_url: str | None = None

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if value not in INDICATOR_NAMES:
            raise ValueError(f"unknown indicator type: {value}")
        return value

    @field_validator("operator")
    @classmethod
    def _check_operator(cls, value: str) -> str:
        if value not in OPERATORS:
            raise ValueError(f"invalid threshold operator: {value}")
        return value


class SymbolSeedConfig(BaseModel):
    symbol: str
    enabled: bool = True
    threshold_percent: float | None = None
    cooldown_minutes: int | None = None
    webhook_url: str | None = None
    indicators: list[IndicatorSeedConfig] = []

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("symbol must not be empty")
        return value


class DatabaseConfig(BaseModel):
    path: str = "data/alerts.db"


class Config(BaseModel):
    webhook: WebhookConfig
    market_data: MarketDataConfig = MarketDataConfig()
    monitor: MonitorConfig = MonitorConfig()
    database: DatabaseConfig = DatabaseConfig()
    symbols: list[SymbolSeedConfig] = []

    @model_validator(mode="after")
    def _check_window(self) -> "Config":
        if self.market_data.provider == "binance" and self.monitor.window_minutes not in INTERVALS:
            raise ValueError(
                f"window_minutes {self.monitor.window_minutes} has no Binance interval; "
                f"supported: {sorted(INTERVALS)}"
            )
        return self


def load_config(path: Path) -> Config:
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    # 密钥等敏感配置允许通过环境变量覆盖
    webhook = data.get("webhook") or {}
    if os.environ.get("WEBHOOK_HMAC_SECRET"):
        webhook["hmac_secret"] = os.environ["WEBHOOK_HMAC_SECRET"]
    if os.environ.get("WEBHOOK_DEFAULT_URL"):
        webhook["default_url"] = os.environ["WEBHOOK_DEFAULT_URL"]
    data["webhook"] = webhook

    return Config(**data)
