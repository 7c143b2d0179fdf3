from sync_engine.models import QueueItem


def build_batches(items: list[QueueItem], batch_size: int = 10) -> list[list[QueueItem]]:
    """Режет очередь на последовательные пачки не больше batch_size элементов.

    Порядок очереди (старые первыми) сохраняется: изменения одной записи,
    попавшие в разные пачки, уйдут на сервер в том же порядке.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]
