import logging

import ccxt.async_support as ccxt

from market_alerts.client.models import Candle
from market_alerts.errors import CandleFetchError

logger = logging.getLogger(__name__)

QUOTE_ASSETS = ("USDT", "USDC", "FDUSD", "BUSD", "USD", "EUR", "BTC", "ETH")


def to_ccxt_symbol(symbol: str) -> str:
    """BTCUSDT -> BTC/USDT"""
    symbol = symbol.upper()
    if "/" in symbol:
        return symbol
    for quote in QUOTE_ASSETS:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return f"{symbol[: -len(quote)]}/{quote}"
    return symbol


def to_timeframe(window_minutes: int) -> str:
    if window_minutes % 60 == 0:
        return f"{window_minutes // 60}h"
    return f"{window_minutes}m"


class CcxtCandleSource:
    def __init__(self, exchange_id: str = "binance", timeout_ms: int = 5000):
        self.exchange_id = exchange_id
        self.timeout_ms = timeout_ms
        self.exchange: ccxt.Exchange | None = None

    async def init(self) -> None:
        exchange_class = getattr(ccxt, self.exchange_id, None)
        if exchange_class is None:
            raise ValueError(f"Unknown ccxt exchange: {self.exchange_id}")
        self.exchange = exchange_class({"timeout": self.timeout_ms, "enableRateLimit": True})

    async def close(self) -> None:
        if self.exchange:
            await self.exchange.close()
            self.exchange = None

    async def fetch_candles(self, symbol: str, window_minutes: int, count: int) -> list[Candle]:
        if self.exchange is None:
            raise RuntimeError("Exchange not initialized. Call init() first.")

        window_ms = window_minutes * 60 * 1000
        try:
            rows = await self.exchange.fetch_ohlcv(
                to_ccxt_symbol(symbol), to_timeframe(window_minutes), limit=count
            )
        except ccxt.NetworkError as e:
            raise CandleFetchError(f"{self.exchange_id} network error: {e}") from e
        except ccxt.BaseError as e:
            raise CandleFetchError(f"{self.exchange_id} error: {e}", retryable=False) from e

        logger.debug(f"Fetched {len(rows)} candles from {self.exchange_id} for {symbol}")
        return [
            Candle(
                timestamp=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5] or 0),
                close_time=int(row[0]) + window_ms - 1,
            )
            for row in rows
        ]
