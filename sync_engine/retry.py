import logging
from typing import NamedTuple

from sync_engine.config import DEFAULT_RETRY_THRESHOLD
from sync_engine.models import QueueItem, utcnow

logger = logging.getLogger(__name__)


class RetryOutcome(NamedTuple):
    item: QueueItem
    dead_lettered: bool


class RetryHandler:
    """Считает неудачные попытки и переносит исчерпавшие лимит элементы в dead letter.

    Из dead letter элементы обратно в очередь автоматически не возвращаются.
    """

    def __init__(self, queue, threshold: int = DEFAULT_RETRY_THRESHOLD, clock=utcnow):
        if threshold < 1:
            raise ValueError(f"retry threshold must be >= 1, got {threshold}")
        self.queue = queue
        self.threshold = threshold
        self._clock = clock

    async def record_failure(self, item: QueueItem, error: str) -> RetryOutcome:
        updated = item.model_copy(update={
            "retry_count": item.retry_count + 1,
            "error_message": error,
        })

        if updated.retry_count >= self.threshold:
            logger.warning(
                f"Item {item.id} (record {item.record_id}) reached max retries ({self.threshold}). "
                f"Moving to dead letter queue. Last error: {error}"
            )
            await self.queue.move_to_dead_letter(updated, moved_at=self._clock())
            return RetryOutcome(updated, True)

        await self.queue.update_retry_state(item.id, updated.retry_count, error)
        logger.info(f"Item {item.id} failed (attempt {updated.retry_count}/{self.threshold}): {error}")
        return RetryOutcome(updated, False)
