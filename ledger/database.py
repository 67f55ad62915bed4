from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
import redis.asyncio as redis

from .logging_config import get_logger

logger = get_logger("ledger.database")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id BIGSERIAL PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    email VARCHAR(255) NOT NULL UNIQUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS accounts (
    id BIGSERIAL PRIMARY KEY,
    user_id BIGINT NOT NULL REFERENCES users (id),
    account_number VARCHAR(50) NOT NULL UNIQUE,
    balance NUMERIC(18, 2) NOT NULL DEFAULT 0 CHECK (balance >= 0),
    currency VARCHAR(3) NOT NULL DEFAULT 'USD',
    status VARCHAR(20) NOT NULL DEFAULT 'active',
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS transactions (
    id BIGSERIAL PRIMARY KEY,
    from_account_id BIGINT NOT NULL,
    to_account_id BIGINT NOT NULL,
    amount NUMERIC(18, 2) NOT NULL CHECK (amount > 0),
    currency VARCHAR(3) NOT NULL,
    type VARCHAR(20) NOT NULL DEFAULT 'transfer',
    status VARCHAR(20) NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
);

CREATE INDEX IF NOT EXISTS ix_accounts_user_id ON accounts (user_id);
CREATE INDEX IF NOT EXISTS ix_transactions_from ON transactions (from_account_id);
CREATE INDEX IF NOT EXISTS ix_transactions_to ON transactions (to_account_id);
"""


class Database:
    def __init__(self, db_url: str, min_size: int = 1, max_size: int = 10):
        self.db_url = db_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None
        self._initialized = False

    async def init_pool(self):
        """Create the connection pool."""
        if self.pool is None:
            self.pool = await asyncpg.create_pool(
                self.db_url,
                min_size=self.min_size,
                max_size=self.max_size,
            )

    async def close_pool(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def get_connection(self):
        if not self.pool:
            await self.init_pool()
        async with self.pool.acquire() as conn:
            yield conn

    async def initialize_db(self):
        """Create tables and indexes if they do not exist yet."""
        if self._initialized:
            return

        async with self.get_connection() as conn:
            await conn.execute(SCHEMA)

        self._initialized = True
        logger.info("Database schema ready")

    # Autocommit helpers with the same signatures as an asyncpg connection,
    # so stores can run against either the pool or a transaction's connection.

    async def fetchrow(self, query: str, *args):
        async with self.get_connection() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch(self, query: str, *args):
        async with self.get_connection() as conn:
            return await conn.fetch(query, *args)

    async def fetchval(self, query: str, *args):
        async with self.get_connection() as conn:
            return await conn.fetchval(query, *args)

    async def execute(self, query: str, *args):
        async with self.get_connection() as conn:
            return await conn.execute(query, *args)


class RedisClient:
    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.client: Optional[redis.Redis] = None

    async def init_client(self):
        if self.client is None:
            self.client = redis.from_url(self.redis_url, decode_responses=True)

    async def close_client(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def get_client(self):
        if not self.client:
            await self.init_client()
        return self.client
