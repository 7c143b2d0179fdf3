import asyncio
import logging

from sync_engine.config import SyncSettings
from sync_engine.db import advisory_lock, close_db_pool, init_db_pool, init_schema
from sync_engine.engine import SyncEngine
from sync_engine.models import PassStatus, SyncResult
from sync_engine.queue import DeadLetterStore, MutationQueue
from sync_engine.records import PgRecordStore
from sync_engine.retry import RetryHandler
from sync_engine.utils.remote import RemoteTransport
from sync_engine.worker import celery_app

logger = logging.getLogger(__name__)


def build_engine(pool, settings: SyncSettings, transport: RemoteTransport | None = None) -> SyncEngine:
    """Собирает движок на одном пуле соединений. Создаётся на процесс/запуск и передаётся явно."""
    queue = MutationQueue(pool)
    return SyncEngine(
        queue=queue,
        dead_letters=DeadLetterStore(pool),
        record_store=PgRecordStore(pool),
        transport=transport or RemoteTransport(
            settings.api_base_url,
            probe_timeout=settings.connectivity_timeout,
            request_timeout=settings.request_timeout,
        ),
        batch_size=settings.batch_size,
        retry_handler=RetryHandler(queue, threshold=settings.retry_threshold),
        conflict_policy=settings.conflict_policy,
    )


async def _run_sync_pass(settings: SyncSettings | None = None) -> dict:
    settings = settings or SyncSettings.from_env()
    pool = await init_db_pool(settings.database_url)
    try:
        await init_schema(pool)
        # Между процессами воркера advisory lock, внутри процесса lock движка
        async with advisory_lock(pool) as acquired:
            if not acquired:
                result = SyncResult(success=False, status=PassStatus.ALREADY_RUNNING,
                                    detail="Sync pass already in progress")
                return result.model_dump(mode="json")
            engine = build_engine(pool, settings)
            result = await engine.run_sync_pass()
            return result.model_dump(mode="json")
    finally:
        await close_db_pool(pool)


async def _sync_status(settings: SyncSettings | None = None) -> dict:
    settings = settings or SyncSettings.from_env()
    pool = await init_db_pool(settings.database_url)
    try:
        engine = build_engine(pool, settings)
        last_sync = await engine.get_last_sync_timestamp()
        return {
            "pending": await engine.get_queue_depth(),
            "last_sync": last_sync.isoformat() if last_sync else None,
            "dead_letter": await engine.dead_letters.count(),
            "connected": await engine.transport.check_connectivity(),
        }
    finally:
        await close_db_pool(pool)


@celery_app.task(name="run_sync_pass")
def run_sync_pass_task():
    """Задача Celery: один проход синхронизации (по расписанию или вручную)."""
    logger.info("Running run_sync_pass task")
    result = asyncio.run(_run_sync_pass())
    logger.info(f"run_sync_pass finished: status={result['status']}, synced={result['synced_items']}, failed={result['failed_items']}")
    return result


@celery_app.task(name="sync_status")
def sync_status_task():
    """Задача Celery: состояние очереди (глубина, последняя синхронизация, dead letter, связь)."""
    return asyncio.run(_sync_status())
