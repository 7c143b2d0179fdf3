import asyncpg
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

SYNC_QUEUE_TABLE = "sync_queue"
DEAD_LETTER_TABLE = "dead_letter_queue"
RECORDS_TABLE = "records"

# Ключ advisory lock в PostgreSQL: не больше одного прохода синхронизации на базу
SYNC_PASS_LOCK_KEY = 7_431_001

SCHEMA_SQL = f"""
    CREATE TABLE IF NOT EXISTS {RECORDS_TABLE} (
        id TEXT PRIMARY KEY,
        data JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        sync_status TEXT NOT NULL DEFAULT 'pending',
        server_id TEXT,
        last_synced_at TIMESTAMPTZ
    );

    CREATE TABLE IF NOT EXISTS {SYNC_QUEUE_TABLE} (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        record_id TEXT NOT NULL,
        operation TEXT NOT NULL CHECK (operation IN ('create', 'update', 'delete')),
        data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
        error_message TEXT
    );

    CREATE INDEX IF NOT EXISTS {SYNC_QUEUE_TABLE}_created_at_idx
        ON {SYNC_QUEUE_TABLE} (created_at, seq);

    CREATE TABLE IF NOT EXISTS {DEAD_LETTER_TABLE} (
        id TEXT PRIMARY KEY,
        record_id TEXT NOT NULL,
        operation TEXT NOT NULL,
        data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        retry_count INTEGER NOT NULL,
        error_message TEXT,
        moved_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
"""


async def init_db_pool(dsn: str, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    """Создаёт пул соединений asyncpg.

    Пул не хранится глобально: вызывающий код передаёт его в хранилища явно.
    """
    if not dsn:
        logger.error("DATABASE_URL is not set. Cannot initialize DB Pool.")
        raise ConnectionError("DATABASE_URL is not set")
    pool = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)
    logger.info("Database connection pool initialized.")
    return pool


async def close_db_pool(pool: asyncpg.Pool | None) -> None:
    if pool is not None:
        await pool.close()
        logger.info("Database connection pool closed.")


async def init_schema(pool) -> None:
    """Создаёт таблицы очереди, dead letter и записей, если их ещё нет."""
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Sync schema is ready.")


@asynccontextmanager
async def advisory_lock(pool, key: int = SYNC_PASS_LOCK_KEY):
    """Неблокирующий advisory lock. Отдаёт True, если блокировку удалось взять.

    Блокировка сессионная, поэтому держим одно соединение до выхода из блока.
    """
    async with pool.acquire() as conn:
        acquired = await conn.fetchval("SELECT pg_try_advisory_lock($1)", key)
        if not acquired:
            logger.warning(f"Sync pass lock {key} is held by another process.")
        try:
            yield bool(acquired)
        finally:
            if acquired:
                await conn.execute("SELECT pg_advisory_unlock($1)", key)
