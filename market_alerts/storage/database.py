import json
from typing import Any

import aiosqlite

from market_alerts.errors import LedgerError

from .models import AlertRecord, AlertStatus, IndicatorType, Symbol, SymbolIndicatorConfig

# (name, display_name, unit)
INDICATOR_TYPES = [
    ("price_change_percent", "Price change percent", "%"),
    ("volume_change_percent", "Volume change percent", "%"),
    ("volume_surge", "Volume surge", "x"),
    ("volume_spike", "Volume spike", "x"),
    ("abnormal_volume", "Abnormal volume", "σ"),
    ("price_volume_divergence", "Price/volume divergence", "boolean"),
]

MAX_LIST_LIMIT = 200

_ALERT_COLUMNS = """id, symbol, indicator_type, indicator_value, threshold_value,
    threshold_operator, change_percent, direction, window_start, window_end,
    window_minutes, idempotency_key, status, response_code, response_body,
    metadata, created_at"""

_CONFIG_COLUMNS = """si.id, si.symbol, it.name, si.threshold_value, si.threshold_operator,
    si.enabled, si.cooldown_minutes, si.webhook_url"""


def _row_to_symbol(row: Any) -> Symbol:
    return Symbol(
        id=row[0],
        symbol=row[1],
        enabled=bool(row[2]),
        threshold_percent=row[3],
        cooldown_minutes=row[4],
        webhook_url=row[5],
    )


def _row_to_config(row: Any) -> SymbolIndicatorConfig:
    return SymbolIndicatorConfig(
        id=row[0],
        symbol=row[1],
        indicator_type=row[2],
        threshold_value=row[3],
        threshold_operator=row[4],
        enabled=bool(row[5]),
        cooldown_minutes=row[6],
        webhook_url=row[7],
    )


def _row_to_alert(row: Any) -> AlertRecord:
    return AlertRecord(
        id=row[0],
        symbol=row[1],
        indicator_type=row[2],
        indicator_value=row[3],
        threshold_value=row[4],
        threshold_operator=row[5],
        change_percent=row[6],
        direction=row[7],
        window_start=row[8],
        window_end=row[9],
        window_minutes=row[10],
        idempotency_key=row[11],
        status=AlertStatus(row[12]),
        response_code=row[13],
        response_body=row[14],
        metadata=json.loads(row[15]) if row[15] else None,
        created_at=row[16],
    )


def _alert_params(record: AlertRecord) -> tuple[Any, ...]:
    return (
        record.symbol.upper(),
        record.indicator_type,
        record.indicator_value,
        record.threshold_value,
        record.threshold_operator,
        record.change_percent,
        record.direction,
        record.window_start,
        record.window_end,
        record.window_minutes,
        record.idempotency_key,
        record.status.value,
        record.response_code,
        record.response_body,
        json.dumps(record.metadata, sort_keys=True) if record.metadata is not None else None,
    )


class Database:
    def __init__(self, path: str):
        self.path = path
        self.conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        await self._create_tables()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def _create_tables(self) -> None:
        assert self.conn is not None
        await self.conn.executescript("""
            PRAGMA foreign_keys = ON;

            CREATE TABLE IF NOT EXISTS symbols (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT NOT NULL UNIQUE,
                enabled INTEGER NOT NULL DEFAULT 1,
                threshold_percent REAL,
                cooldown_minutes INTEGER,
                webhook_url TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS indicator_types (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                display_name TEXT NOT NULL,
                unit TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS symbol_indicators (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT NOT NULL,
                indicator_type_id INTEGER NOT NULL REFERENCES indicator_types (id),
                threshold_value REAL NOT NULL,
                threshold_operator TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                cooldown_minutes INTEGER,
                webhook_url TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (symbol, indicator_type_id)
            );
            CREATE INDEX IF NOT EXISTS idx_symbol_indicators_enabled
                ON symbol_indicators(enabled, symbol);

            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT NOT NULL,
                indicator_type TEXT NOT NULL,
                indicator_value REAL NOT NULL,
                threshold_value REAL NOT NULL,
                threshold_operator TEXT NOT NULL,
                change_percent REAL,
                direction TEXT,
                window_start INTEGER NOT NULL,
                window_end INTEGER NOT NULL,
                window_minutes INTEGER NOT NULL,
                idempotency_key TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL
                    CHECK (status IN ('SENT', 'SKIPPED', 'FAILED', 'PENDING')),
                response_code INTEGER,
                response_body TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
            );
            CREATE INDEX IF NOT EXISTS idx_alerts_symbol_indicator
                ON alerts(symbol, indicator_type, window_end);
        """)
        await self.conn.executemany(
            "INSERT OR IGNORE INTO indicator_types (name, display_name, unit) VALUES (?, ?, ?)",
            INDICATOR_TYPES,
        )
        await self.conn.commit()

    # ---- 配置 (交易对 / 指标) ----

    async def upsert_symbol(self, symbol: Symbol) -> int:
        assert self.conn is not None
        await self.conn.execute(
            """INSERT INTO symbols (symbol, enabled, threshold_percent, cooldown_minutes, webhook_url)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(symbol) DO UPDATE SET
                   enabled = excluded.enabled,
                   threshold_percent = excluded.threshold_percent,
                   cooldown_minutes = excluded.cooldown_minutes,
                   webhook_url = excluded.webhook_url,
                   updated_at = CURRENT_TIMESTAMP""",
            (
                symbol.symbol.upper(),
                int(symbol.enabled),
                symbol.threshold_percent,
                symbol.cooldown_minutes,
                symbol.webhook_url,
            ),
        )
        await self.conn.commit()
        cursor = await self.conn.execute(
            "SELECT id FROM symbols WHERE symbol = ?", (symbol.symbol.upper(),)
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_symbol(self, name: str) -> Symbol | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            """SELECT id, symbol, enabled, threshold_percent, cooldown_minutes, webhook_url
               FROM symbols WHERE symbol = ?""",
            (name.upper(),),
        )
        row = await cursor.fetchone()
        return _row_to_symbol(row) if row else None

    async def list_enabled_symbols(self) -> list[Symbol]:
        """启用且至少有一个生效指标配置的交易对"""
        assert self.conn is not None
        cursor = await self.conn.execute(
            """SELECT s.id, s.symbol, s.enabled, s.threshold_percent, s.cooldown_minutes,
                      s.webhook_url
               FROM symbols s
               WHERE s.enabled = 1 AND EXISTS (
                   SELECT 1 FROM symbol_indicators si
                   JOIN indicator_types it ON si.indicator_type_id = it.id
                   WHERE si.symbol = s.symbol AND si.enabled = 1 AND it.is_active = 1
               )
               ORDER BY s.symbol"""
        )
        rows = await cursor.fetchall()
        return [_row_to_symbol(row) for row in rows]

    async def get_indicator_types(self, active_only: bool = True) -> list[IndicatorType]:
        assert self.conn is not None
        query = "SELECT id, name, display_name, unit, is_active FROM indicator_types"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY id"
        cursor = await self.conn.execute(query)
        rows = await cursor.fetchall()
        return [IndicatorType(row[0], row[1], row[2], row[3], bool(row[4])) for row in rows]

    async def set_indicator_type_active(self, name: str, active: bool) -> None:
        assert self.conn is not None
        await self.conn.execute(
            "UPDATE indicator_types SET is_active = ? WHERE name = ?", (int(active), name)
        )
        await self.conn.commit()

    async def upsert_indicator_config(self, config: SymbolIndicatorConfig) -> int:
        assert self.conn is not None
        cursor = await self.conn.execute(
            "SELECT id FROM indicator_types WHERE name = ?", (config.indicator_type,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise ValueError(f"Unknown indicator type: {config.indicator_type}")

        await self.conn.execute(
            """INSERT INTO symbol_indicators
               (symbol, indicator_type_id, threshold_value, threshold_operator, enabled,
                cooldown_minutes, webhook_url)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(symbol, indicator_type_id) DO UPDATE SET
                   threshold_value = excluded.threshold_value,
                   threshold_operator = excluded.threshold_operator,
                   enabled = excluded.enabled,
                   cooldown_minutes = excluded.cooldown_minutes,
                   webhook_url = excluded.webhook_url,
                   updated_at = CURRENT_TIMESTAMP""",
            (
                config.symbol.upper(),
                row[0],
                config.threshold_value,
                config.threshold_operator,
                int(config.enabled),
                config.cooldown_minutes,
                config.webhook_url,
            ),
        )
        await self.conn.commit()
        cursor = await self.conn.execute(
            "SELECT id FROM symbol_indicators WHERE symbol = ? AND indicator_type_id = ?",
            (config.symbol.upper(), row[0]),
        )
        inserted = await cursor.fetchone()
        return inserted[0] if inserted else 0

    async def list_indicator_configs(
        self, symbol: str | None = None, enabled_only: bool = True
    ) -> list[SymbolIndicatorConfig]:
        """按读取顺序 (id 升序) 返回指标配置"""
        assert self.conn is not None
        query = f"""SELECT {_CONFIG_COLUMNS}
                    FROM symbol_indicators si
                    JOIN indicator_types it ON si.indicator_type_id = it.id"""
        where: list[str] = []
        params: list[Any] = []
        if symbol is not None:
            where.append("si.symbol = ?")
            params.append(symbol.upper())
        if enabled_only:
            where.append("si.enabled = 1 AND it.is_active = 1")
        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY si.id"
        cursor = await self.conn.execute(query, params)
        rows = await cursor.fetchall()
        return [_row_to_config(row) for row in rows]

    # ---- 告警账本 ----

    async def find_alert_by_idempotency_key(self, key: str) -> AlertRecord | None:
        assert self.conn is not None
        try:
            cursor = await self.conn.execute(
                f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE idempotency_key = ?", (key,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise LedgerError(f"Failed to look up alert {key}: {e}") from e
        return _row_to_alert(row) if row else None

    async def get_latest_alert(
        self,
        symbol: str,
        indicator_type: str,
        status: AlertStatus | None = None,
    ) -> AlertRecord | None:
        """获取交易对/指标最近一条告警 (按 window_end)"""
        assert self.conn is not None
        query = f"""SELECT {_ALERT_COLUMNS} FROM alerts
                    WHERE symbol = ? AND indicator_type = ?"""
        params: list[Any] = [symbol.upper(), indicator_type]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY window_end DESC, id DESC LIMIT 1"
        try:
            cursor = await self.conn.execute(query, params)
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise LedgerError(f"Failed to read latest alert for {symbol}: {e}") from e
        return _row_to_alert(row) if row else None

    async def claim_alert(self, record: AlertRecord) -> bool:
        """
        原子占用幂等键

        Returns:
            True 表示本次插入成功；False 表示该键已存在
        """
        assert self.conn is not None
        try:
            cursor = await self.conn.execute(
                """INSERT INTO alerts
                   (symbol, indicator_type, indicator_value, threshold_value, threshold_operator,
                    change_percent, direction, window_start, window_end, window_minutes,
                    idempotency_key, status, response_code, response_body, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(idempotency_key) DO NOTHING""",
                _alert_params(record),
            )
            await self.conn.commit()
        except aiosqlite.Error as e:
            raise LedgerError(f"Failed to claim alert {record.idempotency_key}: {e}") from e
        return cursor.rowcount == 1

    async def insert_or_replace_alert(self, record: AlertRecord) -> AlertRecord:
        """写入告警记录；幂等键冲突时更新终态并保留原 created_at"""
        assert self.conn is not None
        try:
            await self.conn.execute(
                """INSERT INTO alerts
                   (symbol, indicator_type, indicator_value, threshold_value, threshold_operator,
                    change_percent, direction, window_start, window_end, window_minutes,
                    idempotency_key, status, response_code, response_body, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(idempotency_key) DO UPDATE SET
                       indicator_value = excluded.indicator_value,
                       change_percent = excluded.change_percent,
                       direction = excluded.direction,
                       status = excluded.status,
                       response_code = excluded.response_code,
                       response_body = excluded.response_body,
                       metadata = excluded.metadata""",
                _alert_params(record),
            )
            await self.conn.commit()
        except aiosqlite.Error as e:
            raise LedgerError(f"Failed to record alert {record.idempotency_key}: {e}") from e

        stored = await self.find_alert_by_idempotency_key(record.idempotency_key)
        if stored is None:
            raise LedgerError(f"Alert {record.idempotency_key} missing after write")
        return stored

    async def list_alerts(
        self,
        symbol: str | None = None,
        indicator_type: str | None = None,
        since_window_end: int | None = None,
        status: AlertStatus | None = None,
        limit: int = 50,
    ) -> list[AlertRecord]:
        assert self.conn is not None
        where: list[str] = []
        params: list[Any] = []
        if symbol:
            where.append("symbol = ?")
            params.append(symbol.upper())
        if indicator_type:
            where.append("indicator_type = ?")
            params.append(indicator_type)
        if since_window_end is not None:
            where.append("window_end >= ?")
            params.append(since_window_end)
        if status is not None:
            where.append("status = ?")
            params.append(status.value)

        query = f"SELECT {_ALERT_COLUMNS} FROM alerts"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY window_end DESC, id DESC LIMIT ?"
        params.append(min(max(limit, 1), MAX_LIST_LIMIT))

        try:
            cursor = await self.conn.execute(query, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise LedgerError(f"Failed to list alerts: {e}") from e
        return [_row_to_alert(row) for row in rows]
