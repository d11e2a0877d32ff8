"""
行情指标告警服务

用法:
    python -m market_alerts.main --config config.yaml
    python -m market_alerts.main --once --symbols BTCUSDT ETHUSDT
"""

import argparse
import asyncio
import json
import logging
import signal
from collections.abc import Sequence
from pathlib import Path

from market_alerts.alert.monitor import AlertMonitor, MonitorResult
from market_alerts.client.binance import BinanceClient
from market_alerts.client.ccxt_source import CcxtCandleSource
from market_alerts.config import Config, IndicatorSeedConfig, load_config
from market_alerts.notifier.webhook import WebhookSender
from market_alerts.storage.database import Database
from market_alerts.storage.models import Symbol, SymbolIndicatorConfig

logger = logging.getLogger(__name__)


def build_candle_source(config: Config) -> BinanceClient | CcxtCandleSource:
    market_data = config.market_data
    if market_data.provider == "ccxt":
        return CcxtCandleSource(market_data.exchange, timeout_ms=market_data.timeout_ms)
    return BinanceClient(base_url=market_data.base_url, timeout_ms=market_data.timeout_ms)


class AlertService:
    def __init__(self, config: Config):
        self.config = config
        self.db = Database(config.database.path)
        self.candle_source = build_candle_source(config)
        self.sender = WebhookSender(
            timeout_ms=config.webhook.timeout_ms,
            max_retries=config.webhook.max_retries,
            backoff_base_ms=config.webhook.backoff_base_ms,
        )
        self.monitor = AlertMonitor(self.db, self.candle_source, self.sender, config)
        self.running = False

    async def init(self) -> None:
        # Ensure data directory exists
        Path(self.config.database.path).parent.mkdir(parents=True, exist_ok=True)

        await self.db.init()
        await self.candle_source.init()
        await self.sender.init()
        await self.seed_symbols()

    async def close(self) -> None:
        await self.sender.close()
        await self.candle_source.close()
        await self.db.close()

    async def seed_symbols(self) -> None:
        """将配置文件中的交易对与指标写入配置库"""
        default_threshold = self.config.monitor.default_threshold_percent
        for entry in self.config.symbols:
            await self.db.upsert_symbol(
                Symbol(
                    id=None,
                    symbol=entry.symbol,
                    enabled=entry.enabled,
                    threshold_percent=entry.threshold_percent,
                    cooldown_minutes=entry.cooldown_minutes,
                    webhook_url=entry.webhook_url,
                )
            )

            # 未配置指标的交易对等价于单一价格变化规则
            indicators = entry.indicators or [
                IndicatorSeedConfig(
                    type="price_change_percent",
                    threshold=(
                        entry.threshold_percent
                        if entry.threshold_percent is not None
                        else default_threshold
                    ),
                    operator=">=",
                )
            ]
            for indicator in indicators:
                await self.db.upsert_indicator_config(
                    SymbolIndicatorConfig(
                        id=None,
                        symbol=entry.symbol,
                        indicator_type=indicator.type,
                        threshold_value=indicator.threshold,
                        threshold_operator=indicator.operator,
                        enabled=indicator.enabled,
                        cooldown_minutes=indicator.cooldown_minutes,
                        webhook_url=indicator.webhook_url,
                    )
                )
            logger.debug(f"Seeded {entry.symbol} with {len(indicators)} indicators")

    async def run_once(self, symbols: list[str] | None = None) -> list[MonitorResult]:
        return await self.monitor.run(symbols)

    async def _monitor_loop(self) -> None:
        interval = self.config.monitor.interval_minutes * 60
        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Monitor run failed: {e!r}")
            await asyncio.sleep(interval)

    async def run(self) -> None:
        await self.init()
        self.running = True
        task = asyncio.create_task(self._monitor_loop())

        logger.info("Market alerts started")

        # Wait for shutdown signal
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await stop_event.wait()

        # Cleanup
        self.running = False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await self.close()

        logger.info("Market alerts stopped")


def parse_args(args: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="行情指标告警服务")
    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="配置文件路径 (默认: config.yaml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="只执行一次监控并输出结果",
    )
    parser.add_argument(
        "--symbols",
        nargs="*",
        default=None,
        help="只处理指定交易对 (默认: 全部启用的交易对)",
    )
    return parser.parse_args(args)


async def main(argv: Sequence[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)
    config = load_config(Path(args.config))
    service = AlertService(config)

    if not args.once:
        await service.run()
        return

    await service.init()
    try:
        results = await service.run_once(args.symbols)
    finally:
        await service.close()
    print(json.dumps([r.to_dict() for r in results], indent=2))


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
