# Очередь изменений (sync_queue) и хранилище dead letter (dead_letter_queue) в PostgreSQL.
# Пишут в них только оркестратор и RetryHandler во время прохода синхронизации.

import json
import logging
from datetime import datetime

from sync_engine.db import DEAD_LETTER_TABLE, SYNC_QUEUE_TABLE
from sync_engine.models import DeadLetterEntry, Operation, QueueItem, Record, utcnow

logger = logging.getLogger(__name__)

_QUEUE_COLUMNS = "id, record_id, operation, data, created_at, retry_count, error_message"


def _row_to_item(row, model=QueueItem):
    values = dict(row)
    data = values.get("data")
    if isinstance(data, str):
        values["data"] = json.loads(data)
    return model(**values)


class MutationQueue:
    """Упорядоченная очередь неподтверждённых локальных изменений."""

    def __init__(self, pool):
        self._pool = pool

    async def enqueue(self, item: QueueItem) -> QueueItem:
        async with self._pool.acquire() as conn:
            await conn.execute(f"""
                INSERT INTO {SYNC_QUEUE_TABLE} (id, record_id, operation, data, created_at, retry_count, error_message)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
            """, item.id, item.record_id, item.operation.value, json.dumps(item.data),
                item.created_at, item.retry_count, item.error_message)
        logger.info(f"Queued {item.operation.value} for record {item.record_id} (item {item.id})")
        return item

    async def enqueue_mutation(self, record: Record, operation: Operation) -> QueueItem:
        """Вызывается хранилищем записей после каждого create/update/delete."""
        return await self.enqueue(QueueItem.from_record(record, operation))

    async def list_pending(self) -> list[QueueItem]:
        """Все элементы, сначала старые. При равном created_at в порядке вставки."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {_QUEUE_COLUMNS}
                FROM {SYNC_QUEUE_TABLE}
                ORDER BY created_at ASC, seq ASC
            """)
        return [_row_to_item(row) for row in rows]

    async def remove(self, item_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(f"DELETE FROM {SYNC_QUEUE_TABLE} WHERE id = $1", item_id)

    async def update_retry_state(self, item_id: str, retry_count: int, error_message: str | None) -> bool:
        """Меняет только метаданные ретраев. Уменьшить счётчик нельзя."""
        async with self._pool.acquire() as conn:
            status = await conn.execute(f"""
                UPDATE {SYNC_QUEUE_TABLE}
                SET retry_count = $2,
                    error_message = $3
                WHERE id = $1 AND retry_count <= $2
            """, item_id, retry_count, error_message)
        updated = status.endswith(" 1")
        if not updated:
            logger.warning(f"Retry state for item {item_id} was not updated (missing item or lower count {retry_count}).")
        return updated

    async def count(self) -> int:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(f"SELECT COUNT(*) FROM {SYNC_QUEUE_TABLE}")

    async def move_to_dead_letter(self, item: QueueItem, moved_at: datetime | None = None) -> DeadLetterEntry:
        """Переносит элемент из sync_queue в dead_letter_queue одной транзакцией."""
        entry = DeadLetterEntry(**item.model_dump(), moved_at=moved_at or utcnow())
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(f"""
                    INSERT INTO {DEAD_LETTER_TABLE} (id, record_id, operation, data, created_at, retry_count, error_message, moved_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """, entry.id, entry.record_id, entry.operation.value, json.dumps(entry.data),
                    entry.created_at, entry.retry_count, entry.error_message, entry.moved_at)
                await conn.execute(f"DELETE FROM {SYNC_QUEUE_TABLE} WHERE id = $1", entry.id)
        logger.info(f"Item {entry.id} (record {entry.record_id}) moved to {DEAD_LETTER_TABLE}.")
        return entry


class DeadLetterStore:
    """Только чтение: записи сюда попадают через MutationQueue.move_to_dead_letter."""

    def __init__(self, pool):
        self._pool = pool

    async def list_entries(self) -> list[DeadLetterEntry]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {_QUEUE_COLUMNS}, moved_at
                FROM {DEAD_LETTER_TABLE}
                ORDER BY moved_at DESC
            """)
        return [_row_to_item(row, DeadLetterEntry) for row in rows]

    async def get_entry(self, item_id: str) -> DeadLetterEntry | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {_QUEUE_COLUMNS}, moved_at
                FROM {DEAD_LETTER_TABLE}
                WHERE id = $1
            """, item_id)
        return _row_to_item(row, DeadLetterEntry) if row else None

    async def count(self) -> int:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(f"SELECT COUNT(*) FROM {DEAD_LETTER_TABLE}")
