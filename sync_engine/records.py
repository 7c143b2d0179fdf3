# Адаптер внешнего хранилища записей. CRUD живёт вне движка,
# движку нужны только чтение записи, запись итогового состояния и время последней синхронизации.

import json
import logging
from datetime import datetime
from typing import Protocol

from sync_engine.db import RECORDS_TABLE
from sync_engine.models import Record

logger = logging.getLogger(__name__)

# Колонки таблицы; всё остальное из Record хранится в data (JSONB)
_RECORD_COLUMNS = ("id", "updated_at", "is_deleted", "sync_status", "server_id", "last_synced_at")


class RecordStore(Protocol):
    async def get_record(self, record_id: str) -> Record | None: ...

    async def update_record(self, record: Record) -> None: ...

    async def get_last_sync_timestamp(self) -> datetime | None: ...


class PgRecordStore:
    def __init__(self, pool):
        self._pool = pool

    async def get_record(self, record_id: str) -> Record | None:
        """Возвращает запись, в том числе помеченную удалённой."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT id, data, updated_at, is_deleted, sync_status, server_id, last_synced_at
                FROM {RECORDS_TABLE}
                WHERE id = $1
            """, record_id)
        if not row:
            return None
        values = dict(row)
        data = values.pop("data") or {}
        if isinstance(data, str):
            data = json.loads(data)
        return Record(**{**data, **values})

    async def update_record(self, record: Record) -> None:
        """Сохраняет запись целиком (upsert: сервер мог прислать запись, которой у нас нет)."""
        dumped = record.model_dump(mode="json")
        extra = {k: v for k, v in dumped.items() if k not in _RECORD_COLUMNS}
        async with self._pool.acquire() as conn:
            await conn.execute(f"""
                INSERT INTO {RECORDS_TABLE} (id, data, updated_at, is_deleted, sync_status, server_id, last_synced_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at,
                    is_deleted = EXCLUDED.is_deleted,
                    sync_status = EXCLUDED.sync_status,
                    server_id = COALESCE(EXCLUDED.server_id, {RECORDS_TABLE}.server_id),
                    last_synced_at = EXCLUDED.last_synced_at
            """, record.id, json.dumps(extra), record.updated_at, record.is_deleted,
                record.sync_status.value, record.server_id, record.last_synced_at)
        logger.debug(f"Record {record.id} saved with sync_status={record.sync_status.value}")

    async def get_last_sync_timestamp(self) -> datetime | None:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(f"SELECT MAX(last_synced_at) FROM {RECORDS_TABLE}")
