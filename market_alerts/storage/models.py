from dataclasses import dataclass
from enum import Enum
from typing import Any


class AlertStatus(Enum):
    SENT = "SENT"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    PENDING = "PENDING"  # 已占用幂等键，投递尚未完成


@dataclass
class Symbol:
    id: int | None
    symbol: str  # BTCUSDT
    enabled: bool
    threshold_percent: float | None  # 小数形式, 0.02 = 2%
    cooldown_minutes: int | None
    webhook_url: str | None


@dataclass
class IndicatorType:
    id: int | None
    name: str  # price_change_percent / volume_surge / ...
    display_name: str
    unit: str | None  # % / x / σ / boolean
    is_active: bool


@dataclass
class SymbolIndicatorConfig:
    id: int | None
    symbol: str
    indicator_type: str
    threshold_value: float
    threshold_operator: str  # > / >= / < / <= / = / !=
    enabled: bool
    cooldown_minutes: int | None  # None 时使用交易对或全局默认值
    webhook_url: str | None  # None 时使用交易对或全局默认 webhook


@dataclass
class AlertRecord:
    id: int | None
    symbol: str
    indicator_type: str
    indicator_value: float
    threshold_value: float
    threshold_operator: str
    change_percent: float | None
    direction: str | None
    window_start: int  # ms
    window_end: int  # ms
    window_minutes: int
    idempotency_key: str
    status: AlertStatus
    response_code: int | None
    response_body: str | None
    metadata: dict[str, Any] | None = None
    created_at: str | None = None
