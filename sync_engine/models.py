# Модели данных движка синхронизации (Pydantic).
# Все данные, которые пересекают границы (БД, сеть), проходят через эти модели.

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sync_engine.errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    """Наивные даты считаем UTC, остальные приводим к UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Operation(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class OutcomeStatus(str, enum.Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


class PassStatus(str, enum.Enum):
    COMPLETED = "completed"
    UNREACHABLE = "unreachable"
    CANCELLED = "cancelled"
    ALREADY_RUNNING = "already_running"
    FAILED = "failed"


class Record(BaseModel):
    """Запись внешнего хранилища. Поля предметной области (title и т.д.) хранятся как extra."""

    model_config = ConfigDict(extra="allow")

    id: str
    updated_at: datetime
    is_deleted: bool = False
    sync_status: SyncStatus = SyncStatus.PENDING
    server_id: str | None = None
    last_synced_at: datetime | None = None

    @field_validator("updated_at", "last_synced_at")
    @classmethod
    def _normalize_timestamps(cls, value):
        return _as_utc(value)


class QueueItem(BaseModel):
    """Изменение, ещё не подтверждённое сервером.

    Модель неизменяемая: после постановки в очередь меняются только
    retry_count и error_message, и только через model_copy.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    record_id: str
    operation: Operation
    data: dict[str, Any]
    created_at: datetime = Field(default_factory=utcnow)
    retry_count: int = Field(default=0, ge=0)
    error_message: str | None = None

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value):
        return _as_utc(value)

    @classmethod
    def from_record(cls, record: Record, operation: Operation) -> "QueueItem":
        """Снимок записи на момент изменения."""
        return cls(
            record_id=record.id,
            operation=operation,
            data=record.model_dump(mode="json"),
        )


class DeadLetterEntry(QueueItem):
    moved_at: datetime = Field(default_factory=utcnow)

    @field_validator("moved_at")
    @classmethod
    def _normalize_moved_at(cls, value):
        return _as_utc(value)


class ItemOutcome(BaseModel):
    """Результат обработки одного элемента пачки на сервере."""

    client_id: str
    server_id: str | None = None
    status: OutcomeStatus
    resolved_data: Record | None = None
    error: str | None = None

    @property
    def error_text(self) -> str:
        return self.error or "Unknown error"


class BatchSyncRequest(BaseModel):
    items: list[QueueItem] = Field(min_length=1)
    checksum: str
    client_timestamp: datetime = Field(default_factory=utcnow)


class BatchSyncResponse(BaseModel):
    """Ответ /batch. Элементы разбираются в ItemOutcome по одному, см. RemoteTransport."""

    processed_items: list[dict[str, Any]]


class HealthStatus(BaseModel):
    status: str
    timestamp: datetime | None = None


class BatchSubmission(BaseModel):
    """Итог отправки пачки: либо статусы элементов, либо ошибка всей пачки."""

    outcomes: list[ItemOutcome] = Field(default_factory=list)
    error_kind: ErrorKind | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def failed(cls, kind: ErrorKind, error: str) -> "BatchSubmission":
        return cls(error_kind=kind, error=error)


class SyncError(BaseModel):
    record_id: str
    operation: Operation
    error: str
    kind: ErrorKind
    timestamp: datetime = Field(default_factory=utcnow)
    dead_lettered: bool = False


class SyncResult(BaseModel):
    success: bool
    synced_items: int = 0
    failed_items: int = 0
    errors: list[SyncError] = Field(default_factory=list)
    status: PassStatus = PassStatus.COMPLETED
    dead_lettered_items: int = 0
    detail: str | None = None
    error_kind: ErrorKind | None = None
