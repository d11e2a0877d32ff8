# tests/notifier/test_payload.py
from market_alerts.aggregator.window import build_window
from market_alerts.alert.indicators import check_indicator_alerts
from market_alerts.client.models import Candle
from market_alerts.notifier.formatter import build_alert_payload, build_links
from market_alerts.storage.models import SymbolIndicatorConfig


def make_trigger_and_window():
    candles = [
        Candle(1704067200000, 99.0, 101.0, 98.0, 100.0, 10.0, 1704067499999),
        Candle(1704067500000, 100.0, 103.0, 99.5, 102.5, 30.0, 1704067799999),
    ]
    window = build_window("BTCUSDT", candles)
    config = SymbolIndicatorConfig(
        id=1,
        symbol="BTCUSDT",
        indicator_type="price_change_percent",
        threshold_value=0.02,
        threshold_operator=">=",
        enabled=True,
        cooldown_minutes=None,
        webhook_url=None,
    )
    triggers = check_indicator_alerts("BTCUSDT", [config], window)
    return triggers[0], window


def test_build_links():
    links = build_links("ETHUSDT")

    assert links["binance"] == "https://www.binance.com/en/trade/ETHUSDT"
    assert links["tradingview"] == "https://www.tradingview.com/chart/?symbol=BINANCE:ETHUSDT"


def test_build_alert_payload():
    trigger, window = make_trigger_and_window()

    payload = build_alert_payload(trigger, window, 5, observed_at=1704067800000)

    assert payload["symbol"] == "BTCUSDT"
    assert payload["indicator_type"] == "price_change_percent"
    assert payload["threshold_value"] == 0.02
    assert payload["threshold_operator"] == ">="
    assert payload["direction"] == "UP"
    assert payload["window_minutes"] == 5
    assert payload["window_start"] == 1704067500000
    assert payload["window_end"] == 1704067799999
    assert payload["observed_at"] == 1704067800000
    assert payload["source"] == "binance"
    assert payload["links"] == build_links("BTCUSDT")


def test_build_alert_payload_metadata():
    trigger, window = make_trigger_and_window()

    payload = build_alert_payload(trigger, window, 5, observed_at=0)

    metadata = payload["metadata"]
    assert metadata["previous_close"] == 100.0
    assert metadata["price_data"] == {
        "open": 100.0,
        "high": 103.0,
        "low": 98.0,
        "close": 102.5,
        "volume": 40.0,
    }


def test_build_alert_payload_defaults_observed_at():
    trigger, window = make_trigger_and_window()

    payload = build_alert_payload(trigger, window, 5)

    assert payload["observed_at"] > window.window_end
