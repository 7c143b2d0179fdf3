from sync_engine.models import Record


def resolve_conflict(local: Record, remote: Record) -> Record:
    """Last-writer-wins по updated_at.

    При точном совпадении времени delete старше update и create:
    удалённая на сервере версия выигрывает, иначе остаётся локальная.
    Ни одна из версий не изменяется, возвращается победитель как есть.
    """
    if local.updated_at > remote.updated_at:
        return local
    if remote.updated_at > local.updated_at:
        return remote
    if remote.is_deleted:
        return remote
    return local
