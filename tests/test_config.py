# tests/test_config.py
from pathlib import Path

import pytest
from pydantic import ValidationError

from market_alerts.config import load_config


def test_load_config_from_yaml(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("WEBHOOK_HMAC_SECRET", raising=False)
    monkeypatch.delenv("WEBHOOK_DEFAULT_URL", raising=False)
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
webhook:
  default_url: https://hooks.example.com/alerts
  hmac_secret: super-secret
  max_retries: 5

market_data:
  provider: ccxt
  exchange: okx

monitor:
  window_minutes: 15
  default_cooldown_minutes: 30
  max_concurrent_symbols: 4

database:
  path: /tmp/alerts.db

symbols:
  - symbol: btcusdt
    threshold_percent: 0.03
  - symbol: ETHUSDT
    indicators:
      - type: volume_surge
        threshold: 2.5
      - type: abnormal_volume
        threshold: 3
        operator: ">"
        cooldown_minutes: 60
""")

    config = load_config(config_file)

    assert config.webhook.default_url == "https://hooks.example.com/alerts"
    assert config.webhook.hmac_secret == "super-secret"
    assert config.webhook.max_retries == 5
    assert config.webhook.timeout_ms == 5000
    assert config.market_data.provider == "ccxt"
    assert config.market_data.exchange == "okx"
    assert config.monitor.window_minutes == 15
    assert config.monitor.default_cooldown_minutes == 30
    assert config.monitor.max_concurrent_symbols == 4
    assert config.database.path == "/tmp/alerts.db"

    assert [s.symbol for s in config.symbols] == ["BTCUSDT", "ETHUSDT"]
    assert config.symbols[0].indicators == []
    indicators = config.symbols[1].indicators
    assert indicators[0].type == "volume_surge"
    assert indicators[0].operator == ">="
    assert indicators[1].cooldown_minutes == 60


def test_defaults(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("WEBHOOK_DEFAULT_URL", raising=False)
    monkeypatch.setenv("WEBHOOK_HMAC_SECRET", "from-environment")
    config_file = tmp_path / "config.yaml"
    config_file.write_text("")

    config = load_config(config_file)

    assert config.webhook.hmac_secret == "from-environment"
    assert config.market_data.provider == "binance"
    assert config.monitor.window_minutes == 5
    assert config.monitor.default_threshold_percent == 0.02
    assert config.monitor.default_cooldown_minutes == 10
    assert config.monitor.max_concurrent_symbols == 1
    assert config.symbols == []


def test_env_overrides_yaml(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("WEBHOOK_HMAC_SECRET", "env-secret-value")
    monkeypatch.setenv("WEBHOOK_DEFAULT_URL", "https://env.example.com/hook")
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
webhook:
  hmac_secret: yaml-secret
""")

    config = load_config(config_file)

    assert config.webhook.hmac_secret == "env-secret-value"
    assert config.webhook.default_url == "https://env.example.com/hook"


def test_short_secret_rejected(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("WEBHOOK_HMAC_SECRET", raising=False)
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
webhook:
  hmac_secret: short
""")

    with pytest.raises(ValidationError):
        load_config(config_file)


def test_missing_secret_rejected(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("WEBHOOK_HMAC_SECRET", raising=False)
    config_file = tmp_path / "config.yaml"
    config_file.write_text("monitor:\n  window_minutes: 5\n")

    with pytest.raises(ValidationError):
        load_config(config_file)


@pytest.mark.parametrize(
    "indicator",
    [
        "{type: funding_rate, threshold: 1}",
        "{type: volume_surge, threshold: 1, operator: '=>'}",
    ],
)
def test_invalid_indicator_rejected(tmp_path: Path, monkeypatch, indicator):
    monkeypatch.setenv("WEBHOOK_HMAC_SECRET", "env-secret-value")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(f"""
symbols:
  - symbol: BTCUSDT
    indicators:
      - {indicator}
""")

    with pytest.raises(ValidationError):
        load_config(config_file)


def test_binance_window_must_have_interval(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("WEBHOOK_HMAC_SECRET", "env-secret-value")
    config_file = tmp_path / "config.yaml"
    config_file.write_text("monitor:\n  window_minutes: 7\n")

    with pytest.raises(ValidationError):
        load_config(config_file)

    config_file.write_text("monitor:\n  window_minutes: 240\n")
    assert load_config(config_file).monitor.window_minutes == 240
