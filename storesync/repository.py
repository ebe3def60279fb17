"""
Durable store for aggregate statistics (DuckDB).

Tables:
- daily_stats     one row per calendar day
- product_stats   one row per product id (current_stock is owned elsewhere)
- customer_stats  one row per customer id
- coupon_stats    one row per coupon code, with the bleeding-money flag
- sync_logs       append-only history of sync runs

Every upsert is keyed by the table's unique key, so re-running a sync
overwrites values instead of accumulating them. Batches are registered as
pandas DataFrames and merged with `INSERT ... ON CONFLICT DO UPDATE`.

Usage:
    repo = StatsRepository(Path("data/storesync.duckdb"))
    await repo.connect()
    result = await repo.upsert_daily_stats(stats)
    print(result.created, result.updated)
"""
import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import duckdb
import pandas as pd

from storesync.config import config
from storesync.exceptions import PersistenceError
from storesync.models import CENTS, CouponStat, CustomerStat, DailyStat, ProductStat, SyncLog, SyncStatus
from storesync.observability import get_logger

logger = get_logger(__name__)

AGGREGATE_TABLES = ("daily_stats", "product_stats", "customer_stats", "coupon_stats")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS daily_stats (
    date DATE PRIMARY KEY,
    total_sales DECIMAL(14, 2) NOT NULL DEFAULT 0,
    order_count INTEGER NOT NULL DEFAULT 0,
    avg_order_value DECIMAL(14, 2) NOT NULL DEFAULT 0,
    updated_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS product_stats (
    product_id VARCHAR PRIMARY KEY,
    title VARCHAR,
    total_quantity_sold INTEGER NOT NULL DEFAULT 0,
    total_revenue DECIMAL(14, 2) NOT NULL DEFAULT 0,
    order_count INTEGER NOT NULL DEFAULT 0,
    current_stock INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS customer_stats (
    customer_id VARCHAR PRIMARY KEY,
    email VARCHAR,
    first_name VARCHAR,
    last_name VARCHAR,
    total_orders INTEGER NOT NULL DEFAULT 0,
    total_spent DECIMAL(14, 2) NOT NULL DEFAULT 0,
    last_order_at TIMESTAMP,
    updated_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS coupon_stats (
    coupon_code VARCHAR PRIMARY KEY,
    coupon_type VARCHAR,
    discount_value DECIMAL(14, 2) NOT NULL DEFAULT 0,
    times_used INTEGER NOT NULL DEFAULT 0,
    total_discount_given DECIMAL(14, 2) NOT NULL DEFAULT 0,
    total_revenue_generated DECIMAL(14, 2) NOT NULL DEFAULT 0,
    is_active BOOLEAN NOT NULL DEFAULT FALSE,
    status VARCHAR,
    is_bleeding_money BOOLEAN NOT NULL DEFAULT FALSE,
    bleeding_changed_at TIMESTAMP,
    updated_at TIMESTAMP
);

CREATE SEQUENCE IF NOT EXISTS sync_logs_id_seq START 1;

CREATE TABLE IF NOT EXISTS sync_logs (
    id BIGINT PRIMARY KEY DEFAULT nextval('sync_logs_id_seq'),
    sync_type VARCHAR NOT NULL,
    status VARCHAR NOT NULL,
    records_processed INTEGER NOT NULL DEFAULT 0,
    error_message VARCHAR,
    details VARCHAR,
    duration_ms BIGINT NOT NULL DEFAULT 0,
    started_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_coupon_stats_bleeding ON coupon_stats(is_bleeding_money);
CREATE INDEX IF NOT EXISTS idx_sync_logs_status ON sync_logs(status, started_at);
"""


@dataclass
class UpsertResult:
    """Outcome of one batch upsert."""

    created: int = 0
    updated: int = 0
    newly_bleeding: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated

    def to_dict(self) -> Dict[str, Any]:
        return {"created": self.created, "updated": self.updated}


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Naive-UTC ISO string for TIMESTAMP columns."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat()


def _dec(value: Decimal) -> str:
    return str(Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP))


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class StatsRepository:
    """
    DuckDB-backed repository for aggregate stats and sync logs.

    All access is serialized through an asyncio.Lock; DuckDB calls are
    synchronous and short.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.db_path = Path(db_path or config.store.db_path)
        self._clock = clock
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open the database file and create the schema."""
        async with self._lock:
            self._connect_unlocked()

    def _connect_unlocked(self) -> None:
        if self._connection is not None:
            return
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._connection = duckdb.connect(str(self.db_path))
            self._connection.execute(SCHEMA_SQL)
        except duckdb.Error as e:
            raise PersistenceError("connect", str(e)) from e
        logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        async with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    @asynccontextmanager
    async def connection(self, operation: str):
        """
        Exclusive connection for one operation.

        Raises:
            PersistenceError: any DuckDB failure inside the block
        """
        async with self._lock:
            self._connect_unlocked()
            try:
                yield self._connection
            except duckdb.Error as e:
                logger.error(f"DuckDB {operation} failed: {e}", extra={"operation": operation})
                raise PersistenceError(operation, str(e)) from e

    @staticmethod
    def _existing_keys(conn, table: str, key: str, keys: Sequence[Any], cast: str = "VARCHAR") -> set:
        if not keys:
            return set()
        frame = pd.DataFrame({"k": [str(k) for k in keys]})
        conn.register("lookup_keys", frame)
        try:
            rows = conn.execute(
                f"SELECT {key} FROM {table} WHERE {key} IN (SELECT CAST(k AS {cast}) FROM lookup_keys)"
            ).fetchall()
        finally:
            conn.unregister("lookup_keys")
        return {str(row[0]) for row in rows}

    # ═══════════════════════════════════════════════════════════════════════
    # UPSERTS
    # ═══════════════════════════════════════════════════════════════════════

    async def upsert_daily_stats(self, stats: Sequence[DailyStat]) -> UpsertResult:
        """Create or overwrite one row per day."""
        if not stats:
            return UpsertResult()

        now = _ts(self._clock())
        frame = pd.DataFrame([
            {
                "day": s.date.isoformat(),
                "total_sales": _dec(s.total_sales),
                "order_count": s.order_count,
                "avg_order_value": _dec(s.avg_order_value),
                "updated_at": now,
            }
            for s in stats
        ])

        async with self.connection("upsert daily_stats") as conn:
            existing = self._existing_keys(conn, "daily_stats", "date", [s.date.isoformat() for s in stats], "DATE")
            conn.register("daily_batch", frame)
            try:
                conn.execute("""
                    INSERT INTO daily_stats
                    SELECT
                        CAST(day AS DATE),
                        CAST(total_sales AS DECIMAL(14, 2)),
                        order_count,
                        CAST(avg_order_value AS DECIMAL(14, 2)),
                        CAST(updated_at AS TIMESTAMP)
                    FROM daily_batch
                    ON CONFLICT (date) DO UPDATE SET
                        total_sales = excluded.total_sales,
                        order_count = excluded.order_count,
                        avg_order_value = excluded.avg_order_value,
                        updated_at = excluded.updated_at
                """)
            finally:
                conn.unregister("daily_batch")

        result = UpsertResult(created=len(stats) - len(existing), updated=len(existing))
        logger.info(f"Daily stats: {result.created} created, {result.updated} updated")
        return result

    async def upsert_product_stats(self, stats: Sequence[ProductStat]) -> UpsertResult:
        """Create or overwrite product rows; current_stock is never touched on update."""
        if not stats:
            return UpsertResult()

        now = _ts(self._clock())
        frame = pd.DataFrame([
            {
                "product_id": s.product_id,
                "title": s.title,
                "total_quantity_sold": s.total_quantity_sold,
                "total_revenue": _dec(s.total_revenue),
                "order_count": s.order_count,
                "updated_at": now,
            }
            for s in stats
        ])

        async with self.connection("upsert product_stats") as conn:
            existing = self._existing_keys(conn, "product_stats", "product_id", [s.product_id for s in stats])
            conn.register("product_batch", frame)
            try:
                conn.execute("""
                    INSERT INTO product_stats
                    SELECT
                        product_id,
                        title,
                        total_quantity_sold,
                        CAST(total_revenue AS DECIMAL(14, 2)),
                        order_count,
                        0,
                        CAST(updated_at AS TIMESTAMP)
                    FROM product_batch
                    ON CONFLICT (product_id) DO UPDATE SET
                        title = excluded.title,
                        total_quantity_sold = excluded.total_quantity_sold,
                        total_revenue = excluded.total_revenue,
                        order_count = excluded.order_count,
                        updated_at = excluded.updated_at
                """)
            finally:
                conn.unregister("product_batch")

        result = UpsertResult(created=len(stats) - len(existing), updated=len(existing))
        logger.info(f"Product stats: {result.created} created, {result.updated} updated")
        return result

    async def upsert_customer_stats(self, stats: Sequence[CustomerStat]) -> UpsertResult:
        """Create or overwrite one row per customer."""
        if not stats:
            return UpsertResult()

        now = _ts(self._clock())
        frame = pd.DataFrame([
            {
                "customer_id": s.customer_id,
                "email": s.email,
                "first_name": s.first_name,
                "last_name": s.last_name,
                "total_orders": s.total_orders,
                "total_spent": _dec(s.total_spent),
                "last_order_at": _ts(s.last_order_at),
                "updated_at": now,
            }
            for s in stats
        ])

        async with self.connection("upsert customer_stats") as conn:
            existing = self._existing_keys(conn, "customer_stats", "customer_id", [s.customer_id for s in stats])
            conn.register("customer_batch", frame)
            try:
                conn.execute("""
                    INSERT INTO customer_stats
                    SELECT
                        customer_id,
                        email,
                        first_name,
                        last_name,
                        total_orders,
                        CAST(total_spent AS DECIMAL(14, 2)),
                        CAST(last_order_at AS TIMESTAMP),
                        CAST(updated_at AS TIMESTAMP)
                    FROM customer_batch
                    ON CONFLICT (customer_id) DO UPDATE SET
                        email = excluded.email,
                        first_name = excluded.first_name,
                        last_name = excluded.last_name,
                        total_orders = excluded.total_orders,
                        total_spent = excluded.total_spent,
                        last_order_at = excluded.last_order_at,
                        updated_at = excluded.updated_at
                """)
            finally:
                conn.unregister("customer_batch")

        result = UpsertResult(created=len(stats) - len(existing), updated=len(existing))
        logger.info(f"Customer stats: {result.created} created, {result.updated} updated")
        return result

    async def upsert_coupon_stats(self, stats: Sequence[CouponStat]) -> UpsertResult:
        """
        Create or overwrite coupon rows.

        `bleeding_changed_at` moves only when `is_bleeding_money` flips (or a
        new coupon starts out bleeding). Codes that flipped to bleeding are
        returned in `newly_bleeding`.
        """
        if not stats:
            return UpsertResult()

        now = self._clock()

        async with self.connection("upsert coupon_stats") as conn:
            frame = pd.DataFrame({"k": [s.coupon_code for s in stats]})
            conn.register("lookup_codes", frame)
            try:
                previous = {
                    row[0]: (row[1], row[2])
                    for row in conn.execute("""
                        SELECT coupon_code, is_bleeding_money, bleeding_changed_at
                        FROM coupon_stats
                        WHERE coupon_code IN (SELECT k FROM lookup_codes)
                    """).fetchall()
                }
            finally:
                conn.unregister("lookup_codes")

            rows = []
            newly_bleeding = []
            for s in stats:
                if s.coupon_code in previous:
                    was_bleeding, changed_at = previous[s.coupon_code]
                    flipped = bool(was_bleeding) != s.is_bleeding_money
                else:
                    changed_at = None
                    flipped = s.is_bleeding_money

                if flipped:
                    changed_at = now
                    if s.is_bleeding_money:
                        newly_bleeding.append(s.coupon_code)

                rows.append({
                    "coupon_code": s.coupon_code,
                    "coupon_type": s.coupon_type,
                    "discount_value": _dec(s.discount_value),
                    "times_used": s.times_used,
                    "total_discount_given": _dec(s.total_discount_given),
                    "total_revenue_generated": _dec(s.total_revenue_generated),
                    "is_active": s.is_active,
                    "status": s.status,
                    "is_bleeding_money": s.is_bleeding_money,
                    "bleeding_changed_at": _ts(changed_at),
                    "updated_at": _ts(now),
                })

            conn.register("coupon_batch", pd.DataFrame(rows))
            try:
                conn.execute("""
                    INSERT INTO coupon_stats
                    SELECT
                        coupon_code,
                        coupon_type,
                        CAST(discount_value AS DECIMAL(14, 2)),
                        times_used,
                        CAST(total_discount_given AS DECIMAL(14, 2)),
                        CAST(total_revenue_generated AS DECIMAL(14, 2)),
                        is_active,
                        status,
                        is_bleeding_money,
                        CAST(bleeding_changed_at AS TIMESTAMP),
                        CAST(updated_at AS TIMESTAMP)
                    FROM coupon_batch
                    ON CONFLICT (coupon_code) DO UPDATE SET
                        coupon_type = excluded.coupon_type,
                        discount_value = excluded.discount_value,
                        times_used = excluded.times_used,
                        total_discount_given = excluded.total_discount_given,
                        total_revenue_generated = excluded.total_revenue_generated,
                        is_active = excluded.is_active,
                        status = excluded.status,
                        bleeding_changed_at = CASE
                            WHEN coupon_stats.is_bleeding_money IS DISTINCT FROM excluded.is_bleeding_money
                            THEN excluded.updated_at
                            ELSE coupon_stats.bleeding_changed_at
                        END,
                        is_bleeding_money = excluded.is_bleeding_money,
                        updated_at = excluded.updated_at
                """)
            finally:
                conn.unregister("coupon_batch")

        updated = sum(1 for s in stats if s.coupon_code in previous)
        result = UpsertResult(created=len(stats) - updated, updated=updated, newly_bleeding=newly_bleeding)
        logger.info(
            f"Coupon stats: {result.created} created, {result.updated} updated",
            extra={"newly_bleeding": newly_bleeding},
        )
        return result

    async def insert_sync_log(self, log: SyncLog) -> int:
        """Append a sync log row and return its id."""
        async with self.connection("insert sync_log") as conn:
            row = conn.execute(
                """
                INSERT INTO sync_logs
                    (sync_type, status, records_processed, error_message, details, duration_ms, started_at)
                VALUES (?, ?, ?, ?, ?, ?, CAST(? AS TIMESTAMP))
                RETURNING id
                """,
                [
                    log.sync_type,
                    log.status.value,
                    log.records_processed,
                    log.error_message,
                    json.dumps(log.details, default=str),
                    log.duration_ms,
                    _ts(log.started_at),
                ],
            ).fetchone()
        return row[0]

    # ═══════════════════════════════════════════════════════════════════════
    # READ HELPERS
    # ═══════════════════════════════════════════════════════════════════════

    @staticmethod
    def _coupon_from_row(row: tuple) -> CouponStat:
        return CouponStat(
            coupon_code=row[0],
            coupon_type=row[1],
            discount_value=row[2],
            times_used=row[3],
            total_discount_given=row[4],
            total_revenue_generated=row[5],
            is_active=row[6],
            status=row[7],
            is_bleeding_money=row[8],
            bleeding_changed_at=_utc(row[9]),
        )

    _COUPON_COLUMNS = """
        coupon_code, coupon_type, discount_value, times_used, total_discount_given,
        total_revenue_generated, is_active, status, is_bleeding_money, bleeding_changed_at
    """

    async def get_coupon_stat(self, coupon_code: str) -> Optional[CouponStat]:
        async with self.connection("read coupon_stats") as conn:
            row = conn.execute(
                f"SELECT {self._COUPON_COLUMNS} FROM coupon_stats WHERE coupon_code = ?",
                [coupon_code],
            ).fetchone()
        return self._coupon_from_row(row) if row else None

    async def get_bleeding_coupons(self) -> List[CouponStat]:
        """Coupons currently flagged as bleeding money, biggest discount first."""
        async with self.connection("read coupon_stats") as conn:
            rows = conn.execute(f"""
                SELECT {self._COUPON_COLUMNS}
                FROM coupon_stats
                WHERE is_bleeding_money
                ORDER BY total_discount_given DESC, coupon_code
            """).fetchall()
        return [self._coupon_from_row(row) for row in rows]

    async def get_top_coupons(self, limit: int = 10) -> List[CouponStat]:
        """Most used coupons."""
        async with self.connection("read coupon_stats") as conn:
            rows = conn.execute(f"""
                SELECT {self._COUPON_COLUMNS}
                FROM coupon_stats
                ORDER BY times_used DESC, total_revenue_generated DESC, coupon_code
                LIMIT ?
            """, [limit]).fetchall()
        return [self._coupon_from_row(row) for row in rows]

    async def get_daily_stats(self, start: date, end: date) -> List[DailyStat]:
        """Stored daily rows between two dates (inclusive), oldest first."""
        async with self.connection("read daily_stats") as conn:
            rows = conn.execute("""
                SELECT date, total_sales, order_count, avg_order_value
                FROM daily_stats
                WHERE date BETWEEN CAST(? AS DATE) AND CAST(? AS DATE)
                ORDER BY date
            """, [start.isoformat(), end.isoformat()]).fetchall()
        return [
            DailyStat(date=row[0], total_sales=row[1], order_count=row[2], avg_order_value=row[3])
            for row in rows
        ]

    async def get_product_stat(self, product_id: str) -> Optional[ProductStat]:
        async with self.connection("read product_stats") as conn:
            row = conn.execute("""
                SELECT product_id, title, total_quantity_sold, total_revenue, order_count, current_stock
                FROM product_stats WHERE product_id = ?
            """, [product_id]).fetchone()
        if not row:
            return None
        return ProductStat(
            product_id=row[0],
            title=row[1],
            total_quantity_sold=row[2],
            total_revenue=row[3],
            order_count=row[4],
            current_stock=row[5],
        )

    async def get_sync_logs(self, limit: int = 20, status: Optional[SyncStatus] = None) -> List[SyncLog]:
        """Most recent sync runs first."""
        sql = """
            SELECT id, sync_type, status, records_processed, error_message, details, duration_ms, started_at
            FROM sync_logs
        """
        params: list = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(SyncStatus(status).value)
        sql += " ORDER BY started_at DESC, id DESC LIMIT ?"
        params.append(limit)

        async with self.connection("read sync_logs") as conn:
            rows = conn.execute(sql, params).fetchall()

        return [
            SyncLog(
                id=row[0],
                sync_type=row[1],
                status=SyncStatus(row[2]),
                records_processed=row[3],
                error_message=row[4],
                details=json.loads(row[5]) if row[5] else {},
                duration_ms=row[6],
                started_at=_utc(row[7]),
            )
            for row in rows
        ]

    async def get_last_sync_log(self, status: SyncStatus) -> Optional[SyncLog]:
        logs = await self.get_sync_logs(limit=1, status=status)
        return logs[0] if logs else None

    async def get_record_counts(self) -> Dict[str, int]:
        """Row count per aggregate table."""
        async with self.connection("count records") as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in AGGREGATE_TABLES
            }
