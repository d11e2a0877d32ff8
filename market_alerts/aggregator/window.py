import math
from dataclasses import dataclass

from market_alerts.client.models import Candle


@dataclass(frozen=True)
class MarketWindow:
    symbol: str
    open: float
    high: float  # 全部 K 线最高价
    low: float  # 全部 K 线最低价
    close: float
    volume: float  # 全部 K 线成交量之和
    previous_close: float
    price_change: float
    price_change_percent: float  # 小数形式, 0.025 = 2.5%
    direction: str  # UP / DOWN
    current_volume: float  # 当前窗口成交量
    previous_volume: float  # 当前窗口之前一根 K 线成交量
    volume_history: tuple[float, ...]
    mean_volume: float
    std_volume: float
    window_start: int
    window_end: int


def calculate_percent_change(previous: float, current: float) -> float:
    if previous == 0:
        return 0.0
    return (current - previous) / previous


def get_direction(change_percent: float) -> str:
    return "UP" if change_percent >= 0 else "DOWN"


def volume_stats(volumes: list[float]) -> tuple[float, float]:
    """返回 (均值, 总体标准差)"""
    if not volumes:
        return 0.0, 0.0
    mean = sum(volumes) / len(volumes)
    variance = sum((v - mean) ** 2 for v in volumes) / len(volumes)
    return mean, math.sqrt(variance)


def build_window(
    symbol: str,
    candles: list[Candle],
    window_candles: int = 1,
    history_size: int | None = None,
) -> MarketWindow | None:
    """
    将按时间升序排列的 K 线转换为分析窗口

    Args:
        symbol: 交易对
        candles: K 线列表 (至少 2 根)
        window_candles: 当前窗口包含的 K 线数量
        history_size: 历史成交量序列的最大长度

    Returns:
        MarketWindow，数据不足时返回 None
    """
    if len(candles) < 2:
        return None

    window_candles = max(1, min(window_candles, len(candles) - 1))
    previous = candles[-2]
    current = candles[-1]

    change_percent = calculate_percent_change(previous.close, current.close)

    current_slice = candles[-window_candles:]
    history = [c.volume for c in candles[:-window_candles]]
    previous_volume = history[-1] if history else 0.0
    if history_size is not None:
        history = history[-history_size:] if history_size > 0 else []
    mean, std = volume_stats(history)

    return MarketWindow(
        symbol=symbol,
        open=current.open,
        high=max(c.high for c in candles),
        low=min(c.low for c in candles),
        close=current.close,
        volume=sum(c.volume for c in candles),
        previous_close=previous.close,
        price_change=current.close - previous.close,
        price_change_percent=change_percent,
        direction=get_direction(change_percent),
        current_volume=sum(c.volume for c in current_slice),
        previous_volume=previous_volume,
        volume_history=tuple(history),
        mean_volume=mean,
        std_volume=std,
        window_start=current.timestamp,
        window_end=current.close_time if current.close_time is not None else current.timestamp,
    )
