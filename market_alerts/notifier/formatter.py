import time
from typing import Any

from market_alerts.aggregator.window import MarketWindow
from market_alerts.alert.indicators import AlertTrigger

ALERT_SOURCE = "binance"


def build_links(symbol: str) -> dict[str, str]:
    return {
        "binance": f"https://www.binance.com/en/trade/{symbol}",
        "tradingview": f"https://www.tradingview.com/chart/?symbol=BINANCE:{symbol}",
    }


def build_alert_payload(
    trigger: AlertTrigger,
    window: MarketWindow,
    window_minutes: int,
    observed_at: int | None = None,
    source: str = ALERT_SOURCE,
) -> dict[str, Any]:
    """生成 webhook 告警 JSON"""
    if observed_at is None:
        observed_at = int(time.time() * 1000)

    return {
        "symbol": trigger.symbol,
        "indicator_type": trigger.indicator_type.value,
        "indicator_value": trigger.indicator_value,
        "threshold_value": trigger.threshold_value,
        "threshold_operator": trigger.operator.value,
        "direction": trigger.direction,
        "change_percent": window.price_change_percent,
        "window_minutes": window_minutes,
        "window_start": window.window_start,
        "window_end": window.window_end,
        "observed_at": observed_at,
        "source": source,
        "metadata": {
            **trigger.metadata,
            "price_data": {
                "open": window.open,
                "high": window.high,
                "low": window.low,
                "close": window.close,
                "volume": window.volume,
            },
        },
        "links": build_links(trigger.symbol),
    }
