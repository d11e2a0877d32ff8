import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from market_alerts.aggregator.window import MarketWindow, calculate_percent_change
from market_alerts.errors import ConfigurationError
from market_alerts.storage.models import SymbolIndicatorConfig

logger = logging.getLogger(__name__)

# 浮点数相等比较容差
EPSILON = 1e-4


class IndicatorKind(Enum):
    PRICE_CHANGE_PERCENT = "price_change_percent"
    VOLUME_CHANGE_PERCENT = "volume_change_percent"
    VOLUME_SURGE = "volume_surge"
    VOLUME_SPIKE = "volume_spike"
    ABNORMAL_VOLUME = "abnormal_volume"
    PRICE_VOLUME_DIVERGENCE = "price_volume_divergence"

    @classmethod
    def from_name(cls, name: str) -> "IndicatorKind | None":
        try:
            return cls(name)
        except ValueError:
            return None


class ThresholdOperator(Enum):
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "="
    NEQ = "!="

    @classmethod
    def parse(cls, value: str) -> "ThresholdOperator":
        try:
            return cls(value.strip())
        except (ValueError, AttributeError):
            raise ConfigurationError(f"Invalid threshold operator: {value!r}")

    def compare(self, value: float, threshold: float) -> bool:
        if self is ThresholdOperator.GT:
            return value > threshold
        if self is ThresholdOperator.GTE:
            return value >= threshold
        if self is ThresholdOperator.LT:
            return value < threshold
        if self is ThresholdOperator.LTE:
            return value <= threshold
        if self is ThresholdOperator.EQ:
            return abs(value - threshold) < EPSILON
        return abs(value - threshold) >= EPSILON


@dataclass
class IndicatorReading:
    value: float
    direction: str  # UP / DOWN / ABOVE / BELOW / CROSS_UP / CROSS_DOWN
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleEvaluation:
    config: SymbolIndicatorConfig
    kind: IndicatorKind | None
    value: float
    triggered: bool
    direction: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AlertTrigger:
    symbol: str
    indicator_type: IndicatorKind
    indicator_value: float
    threshold_value: float
    operator: ThresholdOperator
    direction: str
    metadata: dict[str, Any]
    config: SymbolIndicatorConfig


def should_trigger(change_percent: float, threshold: float) -> bool:
    return abs(change_percent) >= abs(threshold)


def volume_change_percent(window: MarketWindow) -> float:
    return calculate_percent_change(window.previous_volume, window.current_volume)


def volume_ratio(window: MarketWindow) -> float:
    if window.mean_volume == 0:
        return 0.0
    return window.current_volume / window.mean_volume


def volume_z_score(window: MarketWindow) -> float:
    if window.std_volume == 0:
        return 0.0
    return (window.current_volume - window.mean_volume) / window.std_volume


def _price_change_percent(window: MarketWindow) -> IndicatorReading:
    return IndicatorReading(
        value=abs(window.price_change_percent),
        direction=window.direction,
        metadata={
            "price": window.close,
            "previous_close": window.previous_close,
            "change": window.price_change,
            "direction": window.direction,
        },
    )


def _volume_change_percent(window: MarketWindow) -> IndicatorReading:
    change = volume_change_percent(window)
    return IndicatorReading(
        value=abs(change),
        direction="ABOVE" if change >= 0 else "BELOW",
        metadata={
            "current_volume": window.current_volume,
            "previous_volume": window.previous_volume,
            "average_volume": window.mean_volume,
            "volume_change_percent": change,
        },
    )


def _volume_ratio(window: MarketWindow) -> IndicatorReading:
    ratio = volume_ratio(window)
    return IndicatorReading(
        value=ratio,
        direction="ABOVE",
        metadata={
            "current_volume": window.current_volume,
            "average_volume": window.mean_volume,
            "volume_ratio": ratio,
        },
    )


def _abnormal_volume(window: MarketWindow) -> IndicatorReading:
    z_score = volume_z_score(window)
    return IndicatorReading(
        value=abs(z_score),
        direction="ABOVE",
        metadata={
            "current_volume": window.current_volume,
            "average_volume": window.mean_volume,
            "std_volume": window.std_volume,
            "z_score": z_score,
        },
    )


def _price_volume_divergence(window: MarketWindow) -> IndicatorReading:
    change = volume_change_percent(window)
    divergence = (window.direction == "UP" and change < 0) or (
        window.direction == "DOWN" and change > 0
    )
    return IndicatorReading(
        value=1.0 if divergence else 0.0,
        direction="CROSS_UP" if divergence else "CROSS_DOWN",
        metadata={
            "price_direction": window.direction,
            "volume_change_percent": change,
            "divergence": divergence,
        },
    )


CALCULATORS: dict[IndicatorKind, Callable[[MarketWindow], IndicatorReading]] = {
    IndicatorKind.PRICE_CHANGE_PERCENT: _price_change_percent,
    IndicatorKind.VOLUME_CHANGE_PERCENT: _volume_change_percent,
    # surge / spike 计算相同，只是运营配置的阈值不同
    IndicatorKind.VOLUME_SURGE: _volume_ratio,
    IndicatorKind.VOLUME_SPIKE: _volume_ratio,
    IndicatorKind.ABNORMAL_VOLUME: _abnormal_volume,
    IndicatorKind.PRICE_VOLUME_DIVERGENCE: _price_volume_divergence,
}


def validate_config(config: SymbolIndicatorConfig) -> ThresholdOperator:
    """校验阈值与运算符，失败抛出 ConfigurationError"""
    operator = ThresholdOperator.parse(config.threshold_operator)
    try:
        threshold = float(config.threshold_value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Invalid threshold for {config.symbol}/{config.indicator_type}: "
            f"{config.threshold_value!r}"
        )
    if not math.isfinite(threshold):
        raise ConfigurationError(
            f"Non-finite threshold for {config.symbol}/{config.indicator_type}: {threshold}"
        )
    return operator


def evaluate_rule(config: SymbolIndicatorConfig, window: MarketWindow) -> RuleEvaluation:
    kind = IndicatorKind.from_name(config.indicator_type)
    if kind is None:
        logger.warning(f"Unknown indicator type: {config.indicator_type} ({config.symbol})")
        return RuleEvaluation(
            config=config, kind=None, value=0.0, triggered=False, direction=None
        )

    operator = validate_config(config)
    reading = CALCULATORS[kind](window)
    if kind is IndicatorKind.PRICE_CHANGE_PERCENT and operator is ThresholdOperator.GTE:
        # 单一价格规则 (未配置指标的交易对默认规则): |change| >= |threshold|
        triggered = should_trigger(window.price_change_percent, config.threshold_value)
    else:
        triggered = operator.compare(reading.value, config.threshold_value)
    return RuleEvaluation(
        config=config,
        kind=kind,
        value=reading.value,
        triggered=triggered,
        direction=reading.direction,
        metadata=reading.metadata,
    )


def check_indicator_alerts(
    symbol: str,
    configs: list[SymbolIndicatorConfig],
    window: MarketWindow,
) -> list[AlertTrigger]:
    """
    对一个交易对的全部指标配置求值

    Returns:
        触发的告警列表，顺序与 configs 一致
    """
    triggers: list[AlertTrigger] = []
    for config in configs:
        evaluation = evaluate_rule(config, window)
        if not evaluation.triggered or evaluation.kind is None:
            continue
        triggers.append(
            AlertTrigger(
                symbol=symbol,
                indicator_type=evaluation.kind,
                indicator_value=evaluation.value,
                threshold_value=config.threshold_value,
                operator=ThresholdOperator.parse(config.threshold_operator),
                direction=evaluation.direction or "ABOVE",
                metadata=evaluation.metadata,
                config=config,
            )
        )

    logger.debug(
        f"Indicators checked: {symbol} {len(configs)} configs, {len(triggers)} triggered"
    )
    return triggers
