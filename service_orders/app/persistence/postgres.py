"""
PostgreSQL persistence layer for Orders Service.
"""

from datetime import timezone, datetime
from typing import Any, Dict, List, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import OrdersServiceException, OrderNotFoundError, StoreUnavailableError
from shared.retry import RetryConfig, RetryError, retry_on_exception
from ..models import Order
from .store import OrderStore


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        order_uid TEXT PRIMARY KEY,
        track_number TEXT NOT NULL DEFAULT '',
        entry TEXT NOT NULL DEFAULT '',
        locale TEXT NOT NULL DEFAULT '',
        internal_signature TEXT NOT NULL DEFAULT '',
        customer_id TEXT NOT NULL DEFAULT '',
        delivery_service TEXT NOT NULL DEFAULT '',
        shardkey TEXT NOT NULL DEFAULT '',
        sm_id BIGINT NOT NULL DEFAULT 0,
        date_created TIMESTAMP WITH TIME ZONE NOT NULL,
        oof_shard TEXT NOT NULL DEFAULT ''
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS deliveries (
        order_uid TEXT PRIMARY KEY REFERENCES orders(order_uid) ON DELETE CASCADE,
        name TEXT NOT NULL DEFAULT '',
        phone TEXT NOT NULL DEFAULT '',
        zip TEXT NOT NULL DEFAULT '',
        city TEXT NOT NULL DEFAULT '',
        address TEXT NOT NULL DEFAULT '',
        region TEXT NOT NULL DEFAULT '',
        email TEXT NOT NULL DEFAULT ''
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        order_uid TEXT PRIMARY KEY REFERENCES orders(order_uid) ON DELETE CASCADE,
        transaction TEXT NOT NULL DEFAULT '',
        request_id TEXT NOT NULL DEFAULT '',
        currency TEXT NOT NULL DEFAULT '',
        provider TEXT NOT NULL DEFAULT '',
        amount BIGINT NOT NULL DEFAULT 0,
        payment_dt BIGINT NOT NULL DEFAULT 0,
        bank TEXT NOT NULL DEFAULT '',
        delivery_cost BIGINT NOT NULL DEFAULT 0,
        goods_total BIGINT NOT NULL DEFAULT 0,
        custom_fee BIGINT NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS items (
        id BIGSERIAL PRIMARY KEY,
        order_uid TEXT NOT NULL REFERENCES orders(order_uid) ON DELETE CASCADE,
        chrt_id BIGINT NOT NULL DEFAULT 0,
        track_number TEXT NOT NULL DEFAULT '',
        price BIGINT NOT NULL DEFAULT 0,
        rid TEXT NOT NULL DEFAULT '',
        name TEXT NOT NULL DEFAULT '',
        sale BIGINT NOT NULL DEFAULT 0,
        size TEXT NOT NULL DEFAULT '',
        total_price BIGINT NOT NULL DEFAULT 0,
        nm_id BIGINT NOT NULL DEFAULT 0,
        brand TEXT NOT NULL DEFAULT '',
        status BIGINT NOT NULL DEFAULT 0
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_date_created ON orders(date_created DESC);",
    "CREATE INDEX IF NOT EXISTS idx_items_order_uid ON items(order_uid);",
)

ORDER_COLUMNS = """
    o.order_uid, o.track_number, o.entry, o.locale, o.internal_signature,
    o.customer_id, o.delivery_service, o.shardkey, o.sm_id, o.date_created, o.oof_shard,
    d.name AS d_name, d.phone AS d_phone, d.zip AS d_zip, d.city AS d_city,
    d.address AS d_address, d.region AS d_region, d.email AS d_email,
    p.transaction AS p_transaction, p.request_id AS p_request_id, p.currency AS p_currency,
    p.provider AS p_provider, p.amount AS p_amount, p.payment_dt AS p_payment_dt,
    p.bank AS p_bank, p.delivery_cost AS p_delivery_cost, p.goods_total AS p_goods_total,
    p.custom_fee AS p_custom_fee
FROM orders o
LEFT JOIN deliveries d ON o.order_uid = d.order_uid
LEFT JOIN payments p ON o.order_uid = p.order_uid
"""

DELIVERY_FIELDS = ("name", "phone", "zip", "city", "address", "region", "email")
PAYMENT_FIELDS = (
    "transaction", "request_id", "currency", "provider", "amount", "payment_dt",
    "bank", "delivery_cost", "goods_total", "custom_fee",
)
ITEM_FIELDS = (
    "chrt_id", "track_number", "price", "rid", "name", "sale", "size",
    "total_price", "nm_id", "brand", "status",
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresOrderStore(OrderStore):
    """asyncpg-backed order store."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10,
                 command_timeout: float = 30.0, connect_attempts: int = 3):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.connect_attempts = connect_attempts
        self.logger = get_logger("orders.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create tables. Failure here is fatal for the service."""
        connect = retry_on_exception(
            (OSError, asyncpg.PostgresError, asyncpg.InterfaceError),
            RetryConfig.fixed(1.0, max_attempts=self.connect_attempts),
        )(self._create_pool)

        try:
            self.pool = await connect()
            await self._create_tables()
        except (RetryError, OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise OrdersServiceException("POSTGRES_START_FAILED", str(e))

        self.logger.info("PostgreSQL persistence started", min_size=self.min_size, max_size=self.max_size)

    async def _create_pool(self) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout
        )

    async def stop(self):
        """Close the pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StoreUnavailableError("PostgreSQL pool not started")
        return self.pool

    async def save_order(self, order: Order) -> None:
        """Upsert the order row and replace delivery, payment and items in one transaction."""
        pool = self._require_pool()
        delivery = order.delivery
        payment = order.payment

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("""
                        INSERT INTO orders (
                            order_uid, track_number, entry, locale, internal_signature, customer_id,
                            delivery_service, shardkey, sm_id, date_created, oof_shard
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                        ON CONFLICT (order_uid) DO UPDATE SET
                            track_number = EXCLUDED.track_number,
                            entry = EXCLUDED.entry,
                            locale = EXCLUDED.locale,
                            internal_signature = EXCLUDED.internal_signature,
                            customer_id = EXCLUDED.customer_id,
                            delivery_service = EXCLUDED.delivery_service,
                            shardkey = EXCLUDED.shardkey,
                            sm_id = EXCLUDED.sm_id,
                            date_created = EXCLUDED.date_created,
                            oof_shard = EXCLUDED.oof_shard
                    """,
                        order.order_uid, order.track_number, order.entry, order.locale,
                        order.internal_signature, order.customer_id, order.delivery_service,
                        order.shardkey, order.sm_id, _as_utc(order.date_created), order.oof_shard
                    )

                    await conn.execute("DELETE FROM deliveries WHERE order_uid = $1", order.order_uid)
                    await conn.execute("""
                        INSERT INTO deliveries (order_uid, name, phone, zip, city, address, region, email)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                        order.order_uid, delivery.name, delivery.phone, delivery.zip, delivery.city,
                        delivery.address, delivery.region, delivery.email
                    )

                    await conn.execute("DELETE FROM payments WHERE order_uid = $1", order.order_uid)
                    await conn.execute("""
                        INSERT INTO payments (
                            order_uid, transaction, request_id, currency, provider, amount,
                            payment_dt, bank, delivery_cost, goods_total, custom_fee
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    """,
                        order.order_uid, payment.transaction, payment.request_id, payment.currency,
                        payment.provider, payment.amount, payment.payment_dt, payment.bank,
                        payment.delivery_cost, payment.goods_total, payment.custom_fee
                    )

                    await conn.execute("DELETE FROM items WHERE order_uid = $1", order.order_uid)
                    if order.items:
                        await conn.executemany("""
                            INSERT INTO items (
                                order_uid, chrt_id, track_number, price, rid, name, sale,
                                size, total_price, nm_id, brand, status
                            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                        """, [
                            (order.order_uid, *(getattr(item, f) for f in ITEM_FIELDS))
                            for item in order.items
                        ])
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StoreUnavailableError("Failed to save order", {"order_uid": order.order_uid, "error": str(e)}) from e

        self.logger.debug("Order saved", order_uid=order.order_uid, items=len(order.items))

    async def load_by_key(self, order_uid: str) -> Order:
        """Load a single order with its nested records."""
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(f"SELECT {ORDER_COLUMNS} WHERE o.order_uid = $1", order_uid)
                if row is None:
                    raise OrderNotFoundError(order_uid)
                items = await self._load_items(conn, [order_uid])
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StoreUnavailableError("Failed to load order", {"order_uid": order_uid, "error": str(e)}) from e

        return self._row_to_order(row, items.get(order_uid, []))

    async def load_recent(self, limit: int) -> List[Order]:
        """Load the ``limit`` most recently created orders."""
        if limit <= 0:
            return []
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT {ORDER_COLUMNS} ORDER BY o.date_created DESC LIMIT $1", limit
                )
                items = await self._load_items(conn, [row["order_uid"] for row in rows])
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StoreUnavailableError("Failed to load recent orders", {"error": str(e)}) from e

        return [self._row_to_order(row, items.get(row["order_uid"], [])) for row in rows]

    async def _load_items(self, conn, order_uids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        if not order_uids:
            return {}
        rows = await conn.fetch("""
            SELECT order_uid, chrt_id, track_number, price, rid, name, sale, size,
                   total_price, nm_id, brand, status
            FROM items
            WHERE order_uid = ANY($1::text[])
            ORDER BY order_uid, id
        """, order_uids)

        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            grouped.setdefault(row["order_uid"], []).append({f: row[f] for f in ITEM_FIELDS})
        return grouped

    def _row_to_order(self, row, items: List[Dict[str, Any]]) -> Order:
        """Convert a joined row plus item rows to an Order."""
        # LEFT JOIN columns are NULL when the nested row is missing; model defaults apply
        delivery = {f: row[f"d_{f}"] for f in DELIVERY_FIELDS if row[f"d_{f}"] is not None}
        payment = {f: row[f"p_{f}"] for f in PAYMENT_FIELDS if row[f"p_{f}"] is not None}

        return Order.model_validate({
            "order_uid": row["order_uid"],
            "track_number": row["track_number"],
            "entry": row["entry"],
            "locale": row["locale"],
            "internal_signature": row["internal_signature"],
            "customer_id": row["customer_id"],
            "delivery_service": row["delivery_service"],
            "shardkey": row["shardkey"],
            "sm_id": row["sm_id"],
            "date_created": row["date_created"],
            "oof_shard": row["oof_shard"],
            "delivery": delivery,
            "payment": payment,
            "items": items,
        })

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
