"""行情数据模型"""

from dataclasses import dataclass
from typing import Protocol


@dataclass
class Candle:
    """K 线数据"""

    timestamp: int  # 开盘时间 (ms)
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int | None = None  # 收盘时间 (ms)


class CandleSource(Protocol):
    """K 线数据源"""

    async def fetch_candles(self, symbol: str, window_minutes: int, count: int) -> list[Candle]:
        ...
