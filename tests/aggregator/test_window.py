# tests/aggregator/test_window.py
import math

import pytest

from market_alerts.aggregator.window import (
    build_window,
    calculate_percent_change,
    get_direction,
    volume_stats,
)
from market_alerts.client.models import Candle

FIVE_MIN = 5 * 60 * 1000


def make_candles(closes, volumes=None, start=1704067200000):
    volumes = volumes or [100.0] * len(closes)
    candles = []
    for i, (close, volume) in enumerate(zip(closes, volumes)):
        ts = start + i * FIVE_MIN
        candles.append(
            Candle(
                timestamp=ts,
                open=close - 1,
                high=close + 2,
                low=close - 2,
                close=close,
                volume=volume,
                close_time=ts + FIVE_MIN - 1,
            )
        )
    return candles


def test_calculate_percent_change():
    assert calculate_percent_change(100, 102.5) == pytest.approx(0.025)
    assert calculate_percent_change(100, 97) == pytest.approx(-0.03)


def test_calculate_percent_change_zero_previous():
    assert calculate_percent_change(0, 50) == 0.0


def test_get_direction():
    assert get_direction(0.01) == "UP"
    assert get_direction(0.0) == "UP"
    assert get_direction(-0.01) == "DOWN"


def test_volume_stats_population_std():
    mean, std = volume_stats([10.0, 20.0, 30.0])
    assert mean == 20.0
    assert std == pytest.approx(math.sqrt(200 / 3))


def test_volume_stats_empty():
    assert volume_stats([]) == (0.0, 0.0)


def test_build_window_requires_two_candles():
    assert build_window("BTCUSDT", []) is None
    assert build_window("BTCUSDT", make_candles([100.0])) is None


def test_build_window_price_change():
    candles = make_candles([100.0, 102.5])

    window = build_window("BTCUSDT", candles)

    assert window is not None
    assert window.previous_close == 100.0
    assert window.close == 102.5
    assert window.price_change == pytest.approx(2.5)
    assert window.price_change_percent == pytest.approx(0.025)
    assert window.direction == "UP"
    assert window.window_start == candles[-1].timestamp
    assert window.window_end == candles[-1].close_time


def test_build_window_zero_previous_close():
    window = build_window("BTCUSDT", make_candles([0.0, 10.0]))

    assert window.price_change_percent == 0.0
    assert window.direction == "UP"


def test_build_window_aggregates_all_candles():
    candles = make_candles([100.0, 110.0, 90.0], volumes=[1.0, 2.0, 3.0])

    window = build_window("BTCUSDT", candles)

    assert window.high == 112.0
    assert window.low == 88.0
    assert window.volume == 6.0
    assert window.open == 89.0
    assert window.direction == "DOWN"


def test_build_window_volume_history():
    candles = make_candles([100.0] * 4, volumes=[10.0, 20.0, 30.0, 40.0])

    window = build_window("BTCUSDT", candles)

    assert window.current_volume == 40.0
    assert window.previous_volume == 30.0
    assert window.volume_history == (10.0, 20.0, 30.0)
    assert window.mean_volume == pytest.approx(20.0)
    assert window.std_volume == pytest.approx(math.sqrt(200 / 3))


def test_build_window_history_size_truncates():
    candles = make_candles([100.0] * 5, volumes=[1.0, 10.0, 20.0, 30.0, 40.0])

    window = build_window("BTCUSDT", candles, history_size=2)

    assert window.volume_history == (20.0, 30.0)
    assert window.previous_volume == 30.0
    assert window.mean_volume == 25.0


def test_build_window_multi_candle_current_window():
    candles = make_candles([100.0] * 4, volumes=[10.0, 20.0, 30.0, 40.0])

    window = build_window("BTCUSDT", candles, window_candles=2)

    assert window.current_volume == 70.0
    assert window.previous_volume == 20.0
    assert window.volume_history == (10.0, 20.0)


def test_build_window_end_falls_back_to_open_time():
    candles = make_candles([100.0, 101.0])
    candles[-1].close_time = None

    window = build_window("BTCUSDT", candles)

    assert window.window_end == candles[-1].timestamp
