import asyncio
import hashlib
import logging
from dataclasses import asdict, dataclass, replace
from typing import Any

from market_alerts.aggregator.window import MarketWindow, build_window
from market_alerts.alert.indicators import AlertTrigger, check_indicator_alerts, validate_config
from market_alerts.client.models import CandleSource
from market_alerts.config import Config
from market_alerts.errors import CandleFetchError, ConfigurationError, LedgerError
from market_alerts.notifier.formatter import build_alert_payload
from market_alerts.notifier.webhook import WebhookSender
from market_alerts.storage.database import Database
from market_alerts.storage.models import AlertRecord, AlertStatus, Symbol

logger = logging.getLogger(__name__)


@dataclass
class MonitorResult:
    symbol: str
    status: AlertStatus
    triggered: bool
    indicator_type: str | None = None
    indicator_value: float | None = None
    threshold_value: float | None = None
    change_percent: float | None = None
    window_end: int | None = None
    reason: str | None = None
    retryable: bool | None = None  # 仅 fetch_failed 时有值

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def normalize_symbol(value: str) -> str:
    return value.strip().upper()


def generate_idempotency_key(
    symbol: str,
    indicator_type: str,
    window_end: int,
    threshold_value: float,
    operator: str,
) -> str:
    """相同 (交易对, 指标, 窗口结束时间, 阈值, 运算符) 总是得到相同的键"""
    raw = f"{symbol.upper()}:{indicator_type}:{window_end}:{float(threshold_value)!r}:{operator}"
    return hashlib.sha256(raw.encode()).hexdigest()


def is_within_cooldown(
    last_window_end: int | None,
    next_window_end: int,
    cooldown_minutes: int | None,
) -> bool:
    if last_window_end is None or not cooldown_minutes:
        return False
    return next_window_end - last_window_end < cooldown_minutes * 60 * 1000


class AlertMonitor:
    """拉取 K 线 -> 构建窗口 -> 指标求值 -> 冷却/幂等过滤 -> 投递 -> 记账"""

    def __init__(
        self,
        db: Database,
        candle_source: CandleSource,
        sender: WebhookSender,
        config: Config,
    ):
        self.db = db
        self.candle_source = candle_source
        self.sender = sender
        self.config = config

    async def run(self, symbols: list[str] | None = None) -> list[MonitorResult]:
        """
        执行一次监控

        Args:
            symbols: 仅处理指定交易对；为空时处理全部启用且配置了指标的交易对

        Returns:
            每个交易对 (及每个触发指标) 的结果，顺序与处理顺序一致
        """
        targets = await self._resolve_symbols(symbols)
        semaphore = asyncio.Semaphore(self.config.monitor.max_concurrent_symbols)

        async def process(target: Symbol | MonitorResult) -> list[MonitorResult]:
            if isinstance(target, MonitorResult):
                return [target]
            async with semaphore:
                return await self._process_symbol_safely(target)

        batches = await asyncio.gather(*(process(t) for t in targets))
        results = [result for batch in batches for result in batch]

        sent = sum(1 for r in results if r.status == AlertStatus.SENT and r.reason is None)
        logger.info(f"Monitor run finished: {len(targets)} symbols, {sent} alerts sent")
        return results

    async def _resolve_symbols(self, requested: list[str] | None) -> list[Symbol | MonitorResult]:
        if not requested:
            return list(await self.db.list_enabled_symbols())

        names: list[str] = []
        for raw in requested:
            name = normalize_symbol(raw) if isinstance(raw, str) else ""
            if not name:
                raise ConfigurationError(f"Invalid symbol: {raw!r}")
            if name not in names:
                names.append(name)

        targets: list[Symbol | MonitorResult] = []
        for name in names:
            record = await self.db.get_symbol(name)
            if record is None:
                targets.append(
                    MonitorResult(name, AlertStatus.SKIPPED, False, reason="symbol_not_found")
                )
            elif not record.enabled:
                targets.append(
                    MonitorResult(name, AlertStatus.SKIPPED, False, reason="symbol_disabled")
                )
            else:
                targets.append(record)
        return targets

    async def _process_symbol_safely(self, symbol: Symbol) -> list[MonitorResult]:
        try:
            return await self.process_symbol(symbol)
        except Exception as e:
            logger.error(f"Failed to process {symbol.symbol}: {e!r}")
            return [
                MonitorResult(
                    symbol.symbol, AlertStatus.FAILED, False, reason="unexpected_error"
                )
            ]

    async def process_symbol(self, symbol: Symbol) -> list[MonitorResult]:
        name = symbol.symbol
        configs = await self.db.list_indicator_configs(name)
        if not configs:
            return [MonitorResult(name, AlertStatus.SKIPPED, False, reason="no_indicators")]

        try:
            for config in configs:
                validate_config(config)
        except ConfigurationError as e:
            logger.error(f"Invalid indicator config for {name}: {e}")
            return [MonitorResult(name, AlertStatus.FAILED, False, reason="invalid_config")]

        monitor_config = self.config.monitor
        try:
            candles = await self.candle_source.fetch_candles(
                name,
                monitor_config.window_minutes,
                self.config.market_data.candle_count,
            )
        except CandleFetchError as e:
            logger.error(f"Failed to fetch candles for {name}: {e} (retryable={e.retryable})")
            return [
                MonitorResult(
                    name,
                    AlertStatus.FAILED,
                    False,
                    reason="fetch_failed",
                    retryable=e.retryable,
                )
            ]
        except ConfigurationError as e:
            logger.error(f"Invalid market data config for {name}: {e}")
            return [MonitorResult(name, AlertStatus.FAILED, False, reason="invalid_config")]

        window = build_window(name, candles, history_size=monitor_config.history_size)
        if window is None:
            return [MonitorResult(name, AlertStatus.SKIPPED, False, reason="insufficient_data")]

        triggers = check_indicator_alerts(name, configs, window)
        if not triggers:
            return [
                MonitorResult(
                    name,
                    AlertStatus.SKIPPED,
                    False,
                    change_percent=window.price_change_percent,
                    window_end=window.window_end,
                    reason="no_triggers",
                )
            ]

        results: list[MonitorResult] = []
        for trigger in triggers:
            try:
                results.append(await self.handle_trigger(symbol, trigger, window))
            except LedgerError as e:
                logger.error(f"Ledger error for {name}/{trigger.indicator_type.value}: {e}")
                results.append(
                    self._result(trigger, window, AlertStatus.FAILED, False, "ledger_error")
                )
        return results

    async def handle_trigger(
        self,
        symbol: Symbol,
        trigger: AlertTrigger,
        window: MarketWindow,
    ) -> MonitorResult:
        indicator = trigger.indicator_type.value
        key = generate_idempotency_key(
            trigger.symbol,
            indicator,
            window.window_end,
            trigger.threshold_value,
            trigger.operator.value,
        )

        existing = await self.db.find_alert_by_idempotency_key(key)
        if existing:
            return self._duplicate(trigger, window, existing)

        record = self._build_record(trigger, window, key)

        # 冷却期只以成功投递的告警为准
        cooldown = self._cooldown_minutes(symbol, trigger)
        latest = await self.db.get_latest_alert(trigger.symbol, indicator, AlertStatus.SENT)
        if latest and is_within_cooldown(latest.window_end, window.window_end, cooldown):
            skipped = replace(record, status=AlertStatus.SKIPPED, response_body="cooldown_active")
            if not await self.db.claim_alert(skipped):
                return await self._claimed_elsewhere(trigger, window, key)
            logger.info(f"Cooldown active: {trigger.symbol} {indicator}")
            return self._result(trigger, window, AlertStatus.SKIPPED, False, "cooldown_active")

        if not await self.db.claim_alert(record):
            return await self._claimed_elsewhere(trigger, window, key)

        # 占用之后，任何结局都要把 PENDING 落为终态
        url = self._webhook_url(symbol, trigger)
        try:
            payload = build_alert_payload(trigger, window, self.config.monitor.window_minutes)
            delivery = await self.sender.send(url, payload, self.config.webhook.hmac_secret)
        except asyncio.CancelledError:
            await asyncio.shield(
                self.db.insert_or_replace_alert(
                    replace(record, status=AlertStatus.FAILED, response_body="delivery_cancelled")
                )
            )
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"Alert delivery error: {trigger.symbol} {indicator} {error}")
            await self.db.insert_or_replace_alert(
                replace(record, status=AlertStatus.FAILED, response_body=error)
            )
            return self._result(trigger, window, AlertStatus.FAILED, False, "webhook_failed")

        status = AlertStatus.SENT if delivery.success else AlertStatus.FAILED
        await self.db.insert_or_replace_alert(
            replace(
                record,
                status=status,
                response_code=delivery.status,
                response_body=delivery.body if delivery.success else delivery.error,
            )
        )

        if delivery.success:
            logger.info(
                f"Alert sent: {trigger.symbol} {indicator} "
                f"value={trigger.indicator_value:.4f} attempts={delivery.attempts}"
            )
            return self._result(trigger, window, status, True)

        logger.error(
            f"Alert delivery failed: {trigger.symbol} {indicator} "
            f"attempts={delivery.attempts} error={delivery.error}"
        )
        return self._result(trigger, window, status, False, "webhook_failed")

    def _cooldown_minutes(self, symbol: Symbol, trigger: AlertTrigger) -> int:
        if trigger.config.cooldown_minutes is not None:
            return trigger.config.cooldown_minutes
        if symbol.cooldown_minutes is not None:
            return symbol.cooldown_minutes
        return self.config.monitor.default_cooldown_minutes

    def _webhook_url(self, symbol: Symbol, trigger: AlertTrigger) -> str:
        return trigger.config.webhook_url or symbol.webhook_url or self.config.webhook.default_url

    def _build_record(self, trigger: AlertTrigger, window: MarketWindow, key: str) -> AlertRecord:
        return AlertRecord(
            id=None,
            symbol=trigger.symbol,
            indicator_type=trigger.indicator_type.value,
            indicator_value=trigger.indicator_value,
            threshold_value=trigger.threshold_value,
            threshold_operator=trigger.operator.value,
            change_percent=window.price_change_percent,
            direction=trigger.direction,
            window_start=window.window_start,
            window_end=window.window_end,
            window_minutes=self.config.monitor.window_minutes,
            idempotency_key=key,
            status=AlertStatus.PENDING,
            response_code=None,
            response_body=None,
            metadata=trigger.metadata,
        )

    def _result(
        self,
        trigger: AlertTrigger,
        window: MarketWindow,
        status: AlertStatus,
        triggered: bool,
        reason: str | None = None,
    ) -> MonitorResult:
        return MonitorResult(
            symbol=trigger.symbol,
            status=status,
            triggered=triggered,
            indicator_type=trigger.indicator_type.value,
            indicator_value=trigger.indicator_value,
            threshold_value=trigger.threshold_value,
            change_percent=window.price_change_percent,
            window_end=window.window_end,
            reason=reason,
        )

    async def _claimed_elsewhere(
        self, trigger: AlertTrigger, window: MarketWindow, key: str
    ) -> MonitorResult:
        winner = await self.db.find_alert_by_idempotency_key(key)
        if winner is None:
            raise LedgerError(f"Alert {key} claimed but not found")
        return self._duplicate(trigger, window, winner)

    def _duplicate(
        self, trigger: AlertTrigger, window: MarketWindow, existing: AlertRecord
    ) -> MonitorResult:
        logger.info(
            f"Duplicate alert: {trigger.symbol} {existing.indicator_type} "
            f"window_end={existing.window_end} status={existing.status.value}"
        )
        return self._result(
            trigger,
            window,
            existing.status,
            existing.status == AlertStatus.SENT,
            "duplicate",
        )
