# Оркестратор прохода синхронизации:
# проверка связи -> очередь -> пачки -> отправка -> применение результатов -> итог.
#
# Пачки обрабатываются строго по одной и по возрастанию created_at: следующая пачка
# не уходит на сервер, пока результаты предыдущей не применены локально.

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sync_engine.batching import build_batches
from sync_engine.config import DEFAULT_BATCH_SIZE, ConflictPolicy
from sync_engine.conflict import resolve_conflict
from sync_engine.errors import ErrorKind, PerItemError, SyncEngineError
from sync_engine.models import (
    DeadLetterEntry,
    ItemOutcome,
    Operation,
    OutcomeStatus,
    PassStatus,
    QueueItem,
    Record,
    SyncError,
    SyncResult,
    SyncStatus,
    utcnow,
)
from sync_engine.retry import RetryHandler
from sync_engine.utils.checksum import compute_checksum

logger = logging.getLogger(__name__)


@dataclass
class _PassTally:
    synced: int = 0
    failed: int = 0
    dead_lettered: int = 0
    errors: list[SyncError] = field(default_factory=list)

    def result(
        self,
        status: PassStatus = PassStatus.COMPLETED,
        detail: str | None = None,
        error_kind: ErrorKind | None = None,
    ) -> SyncResult:
        return SyncResult(
            success=status == PassStatus.COMPLETED and self.failed == 0,
            synced_items=self.synced,
            failed_items=self.failed,
            errors=self.errors,
            status=status,
            dead_lettered_items=self.dead_lettered,
            detail=detail,
            error_kind=error_kind,
        )


class SyncEngine:
    """Движок синхронизации. Все зависимости передаются явно, глобального состояния нет."""

    def __init__(
        self,
        queue,
        dead_letters,
        record_store,
        transport,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry_handler: RetryHandler | None = None,
        conflict_policy: ConflictPolicy = ConflictPolicy.TRUST_REMOTE,
        clock=utcnow,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.queue = queue
        self.dead_letters = dead_letters
        self.records = record_store
        self.transport = transport
        self.batch_size = batch_size
        self.retry_handler = retry_handler or RetryHandler(queue, clock=clock)
        self.conflict_policy = conflict_policy
        self._clock = clock
        self._pass_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._pass_lock.locked()

    async def get_queue_depth(self) -> int:
        return await self.queue.count()

    async def get_last_sync_timestamp(self) -> datetime | None:
        return await self.records.get_last_sync_timestamp()

    async def get_dead_letter_entries(self) -> list[DeadLetterEntry]:
        return await self.dead_letters.list_entries()

    async def run_sync_pass(self, cancel_event: asyncio.Event | None = None) -> SyncResult:
        """Один полный проход. Всегда возвращает SyncResult, исключения наружу не выходят.

        Если проход уже идёт, новый запуск отклоняется (status=already_running).
        cancel_event проверяется перед каждой пачкой; уже применённые пачки не откатываются.
        """
        if self._pass_lock.locked():
            logger.warning("Sync pass requested while another pass is running. Rejected.")
            return SyncResult(success=False, status=PassStatus.ALREADY_RUNNING,
                              detail="Sync pass already in progress")

        async with self._pass_lock:
            tally = _PassTally()
            try:
                return await self._run_pass(tally, cancel_event)
            except Exception as e:
                logger.exception(f"Sync pass failed: {e}")
                return tally.result(PassStatus.FAILED, detail=str(e))

    async def _run_pass(self, tally: _PassTally, cancel_event: asyncio.Event | None) -> SyncResult:
        logger.info("Starting sync pass...")
        if not await self.transport.check_connectivity():
            logger.warning("Remote authority unreachable. Sync pass aborted.")
            return tally.result(PassStatus.UNREACHABLE, detail="Server not reachable",
                                error_kind=ErrorKind.CONNECTIVITY)

        pending = await self.queue.list_pending()
        if not pending:
            logger.info("No pending items to sync.")
            return tally.result()

        batches = build_batches(pending, self.batch_size)
        logger.info(f"Found {len(pending)} pending items in {len(batches)} batches.")

        for index, batch in enumerate(batches, start=1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Sync pass cancelled before batch {index}/{len(batches)}.")
                return tally.result(PassStatus.CANCELLED, detail="Sync pass cancelled")
            await self._process_batch(batch, tally)

        logger.info(
            f"Finished sync pass. Synced {tally.synced}, failed {tally.failed}, "
            f"dead-lettered {tally.dead_lettered}."
        )
        return tally.result()

    async def _process_batch(self, batch: list[QueueItem], tally: _PassTally) -> None:
        checksum = compute_checksum(batch)
        submission = await self.transport.submit_batch(batch, checksum)

        if not submission.ok:
            # Ошибка всей пачки (сеть, checksum): каждый элемент идёт в RetryHandler отдельно
            for item in batch:
                await self._fail(item, submission.error_kind, submission.error, tally)
            return

        outcomes: dict[str, ItemOutcome] = {}
        for outcome in submission.outcomes:
            if outcome.client_id in outcomes:
                logger.warning(f"Server returned duplicate outcome for client_id {outcome.client_id}. Keeping the first one.")
                continue
            outcomes[outcome.client_id] = outcome
        # Применяем в порядке пачки, а не в порядке ответа сервера
        for item in batch:
            outcome = outcomes.pop(item.id, None)
            if outcome is None:
                await self._fail(item, ErrorKind.ITEM_ERROR, "No outcome returned for item", tally)
                continue
            try:
                await self._apply_outcome(item, outcome)
            except SyncEngineError as e:
                await self._fail(item, e.kind, e.message, tally)
                continue
            except Exception as e:
                logger.exception(f"Failed to apply outcome for item {item.id} (record {item.record_id}): {e}")
                await self._fail(item, ErrorKind.ITEM_ERROR, f"Local apply failed: {e}", tally)
                continue
            tally.synced += 1

        for client_id in outcomes:
            logger.warning(f"Server returned outcome for unknown client_id {client_id}. Ignored.")

    async def _apply_outcome(self, item: QueueItem, outcome: ItemOutcome) -> None:
        if outcome.status == OutcomeStatus.ERROR:
            raise PerItemError(outcome.error_text)

        if outcome.status == OutcomeStatus.CONFLICT:
            remote = outcome.resolved_data
            if remote is None:
                raise PerItemError("Conflict reported without resolved data")
            resolved = await self._resolve(item, remote)
            if resolved is not remote and resolved.updated_at > remote.updated_at:
                await self._resubmit_local(item, resolved, outcome)
                return
        else:
            resolved = outcome.resolved_data or await self.records.get_record(item.record_id)

        if resolved is not None:
            update = {"sync_status": SyncStatus.SYNCED, "last_synced_at": self._clock()}
            if outcome.server_id:
                update["server_id"] = outcome.server_id
            await self.records.update_record(resolved.model_copy(update=update))
        else:
            logger.warning(f"Record {item.record_id} not found locally; nothing to mark as synced.")

        await self.queue.remove(item.id)
        logger.info(f"Item {item.id} ({item.operation.value} {item.record_id}) synced: {outcome.status.value}")

    async def _resolve(self, item: QueueItem, remote: Record) -> Record:
        if self.conflict_policy == ConflictPolicy.TRUST_REMOTE:
            return remote
        local = await self.records.get_record(item.record_id)
        if local is None:
            return remote
        winner = resolve_conflict(local, remote)
        logger.info(f"Conflict on record {item.record_id} resolved in favour of {'local' if winner is local else 'remote'} version")
        return winner

    async def _resubmit_local(self, item: QueueItem, local: Record, outcome: ItemOutcome) -> None:
        """Локальная версия новее серверной: запись остаётся pending, на сервер уходит новый update."""
        update = {"sync_status": SyncStatus.PENDING}
        if outcome.server_id:
            update["server_id"] = outcome.server_id
        local = local.model_copy(update=update)
        await self.records.update_record(local)
        # Новый элемент ставится до удаления старого
        requeued = await self.queue.enqueue_mutation(local, Operation.UPDATE)
        await self.queue.remove(item.id)
        logger.info(f"Local version of record {item.record_id} is newer; re-queued as item {requeued.id}")

    async def _mark_record_error(self, item: QueueItem) -> None:
        try:
            record = await self.records.get_record(item.record_id)
            if record is None:
                return
            await self.records.update_record(record.model_copy(update={"sync_status": SyncStatus.ERROR}))
        except Exception as e:
            logger.exception(f"Failed to mark record {item.record_id} as error after dead-lettering: {e}")

    async def _fail(self, item: QueueItem, kind: ErrorKind, error: str, tally: _PassTally) -> None:
        outcome = await self.retry_handler.record_failure(item, error)
        tally.failed += 1
        if outcome.dead_lettered:
            tally.dead_lettered += 1
            await self._mark_record_error(item)
        tally.errors.append(SyncError(
            record_id=item.record_id,
            operation=item.operation,
            error=error,
            kind=kind,
            timestamp=self._clock(),
            dead_lettered=outcome.dead_lettered,
        ))
