"""
Shop Service — テーブル定義

PostgreSQL と SQLite の両方で動く DDL のみを使う。
タイムスタンプは ISO-8601 文字列、配送先住所は JSON 文字列で保存する。
orders.user_id / product_id は参照用の ID で、外部キーは張らない。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id          TEXT PRIMARY KEY,
        email       TEXT NOT NULL UNIQUE,
        first_name  TEXT NOT NULL,
        last_name   TEXT NOT NULL,
        role        TEXT NOT NULL DEFAULT 'user',
        is_active   BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted  BOOLEAN NOT NULL DEFAULT FALSE,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id            TEXT PRIMARY KEY,
        name          TEXT NOT NULL,
        description   TEXT NOT NULL DEFAULT '',
        category      TEXT NOT NULL DEFAULT '',
        price         NUMERIC(10, 2) NOT NULL CHECK (price >= 0),
        stock         INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        is_available  BOOLEAN NOT NULL DEFAULT TRUE,
        created_at    TEXT NOT NULL,
        updated_at    TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                TEXT PRIMARY KEY,
        user_id           TEXT NOT NULL,
        product_id        TEXT NOT NULL,
        quantity          INTEGER NOT NULL CHECK (quantity >= 1),
        total_price       NUMERIC(10, 2) NOT NULL,
        status            TEXT NOT NULL DEFAULT 'pending',
        notes             TEXT,
        shipping_address  TEXT,
        created_at        TEXT NOT NULL,
        updated_at        TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user_id ON orders (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_status ON orders (status)",
]


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
