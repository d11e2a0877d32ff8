"""Binance Spot API 客户端"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from market_alerts.client.models import Candle
from market_alerts.errors import CandleFetchError, ConfigurationError

# 窗口分钟数 -> Binance K 线周期
INTERVALS = {
    1: "1m",
    3: "3m",
    5: "5m",
    15: "15m",
    30: "30m",
    60: "1h",
    120: "2h",
    240: "4h",
    360: "6h",
    480: "8h",
    720: "12h",
    1440: "1d",
    4320: "3d",
    10080: "1w",
}


class BinanceAPIError(CandleFetchError):
    """Binance API 错误"""

    def __init__(self, code: int, message: str, status: int | None = None):
        self.code = code
        self.message = message
        self.status = status
        super().__init__(message, retryable=status is not None and status >= 500)


def window_to_interval(window_minutes: int) -> str:
    interval = INTERVALS.get(window_minutes)
    if interval is None:
        raise ConfigurationError(f"Unsupported Binance window: {window_minutes} minutes")
    return interval


@dataclass
class BinanceClient:
    """Binance Spot API 客户端"""

    base_url: str = "https://api.binance.com"
    timeout_ms: int = 5000
    _session: aiohttp.ClientSession | None = field(default=None, repr=False)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """发送 HTTP 请求"""
        if self._session is None:
            raise RuntimeError("Session not initialized. Use 'async with' context.")

        url = f"{self.base_url}{endpoint}"
        timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000)

        try:
            if method == "GET":
                response = await self._session.get(url, params=params, timeout=timeout)
            else:
                response = await self._session.post(url, data=params, timeout=timeout)

            if response.status != 200:
                error_text = await response.text()
                try:
                    error_data = json.loads(error_text)
                except json.JSONDecodeError:
                    raise BinanceAPIError(-1, error_text, response.status)
                raise BinanceAPIError(
                    error_data.get("code", -1),
                    error_data.get("msg", error_text),
                    response.status,
                )

            return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CandleFetchError(f"Binance request failed: {e!r}") from e

    async def init(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "BinanceClient":
        await self.init()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def get_klines(
        self,
        symbol: str,
        interval: str,
        limit: int = 500,
    ) -> list[Candle]:
        """获取 K 线数据"""
        data = await self._request(
            "GET",
            "/api/v3/klines",
            {"symbol": symbol.upper(), "interval": interval, "limit": limit},
        )
        if not isinstance(data, list):
            raise CandleFetchError("Unexpected Binance response shape", retryable=False)

        candles = []
        for k in data:
            if not isinstance(k, list) or len(k) < 7:
                raise CandleFetchError("Malformed kline entry", retryable=False)
            try:
                candle = Candle(
                    timestamp=int(k[0]),
                    open=float(k[1]),
                    high=float(k[2]),
                    low=float(k[3]),
                    close=float(k[4]),
                    volume=float(k[5]),
                    close_time=int(k[6]),
                )
            except (TypeError, ValueError) as e:
                raise CandleFetchError(f"Malformed kline value: {e}", retryable=False) from e
            candles.append(candle)
        return candles

    async def fetch_candles(self, symbol: str, window_minutes: int, count: int) -> list[Candle]:
        """按窗口大小获取最近 count 根 K 线"""
        return await self.get_klines(symbol, window_to_interval(window_minutes), limit=count)
