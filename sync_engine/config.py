import os
import enum
import logging

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# --- Константы и конфигурация ---
DEFAULT_API_BASE_URL = "http://localhost:3000/api"

DEFAULT_BATCH_SIZE = 10
DEFAULT_RETRY_THRESHOLD = 3
# Таймаут проверки связи с сервером (сек)
DEFAULT_CONNECTIVITY_TIMEOUT = 5.0
# Таймаут отправки пачки (сек)
DEFAULT_REQUEST_TIMEOUT = 15.0
DEFAULT_SYNC_INTERVAL = 300.0  # каждые 5 минут


class ConflictPolicy(str, enum.Enum):
    """Как применять данные, пришедшие со статусом conflict."""

    TRUST_REMOTE = "trust_remote"  # данные сервера окончательные
    LAST_WRITER_WINS = "last_writer_wins"  # сначала сравниваем с локальной версией


class SyncSettings(BaseModel):
    database_url: str | None = None
    api_base_url: str = DEFAULT_API_BASE_URL
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    retry_threshold: int = Field(default=DEFAULT_RETRY_THRESHOLD, ge=1)
    connectivity_timeout: float = Field(default=DEFAULT_CONNECTIVITY_TIMEOUT, gt=0)
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    conflict_policy: ConflictPolicy = ConflictPolicy.TRUST_REMOTE
    sync_interval: float = Field(default=DEFAULT_SYNC_INTERVAL, gt=0)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "SyncSettings":
        """Собирает настройки из переменных окружения.

        Некорректные значения (batch size 0, порог меньше 1) дают ValidationError.
        """
        env = os.environ if environ is None else environ
        values = {
            "database_url": env.get("DATABASE_URL"),
            "api_base_url": env.get("SYNC_API_BASE_URL", DEFAULT_API_BASE_URL),
            "batch_size": env.get("SYNC_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            "retry_threshold": env.get("SYNC_RETRY_THRESHOLD", DEFAULT_RETRY_THRESHOLD),
            "connectivity_timeout": env.get("SYNC_CONNECTIVITY_TIMEOUT", DEFAULT_CONNECTIVITY_TIMEOUT),
            "request_timeout": env.get("SYNC_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            "conflict_policy": env.get("SYNC_CONFLICT_POLICY", ConflictPolicy.TRUST_REMOTE.value),
            "sync_interval": env.get("SYNC_INTERVAL_SECONDS", DEFAULT_SYNC_INTERVAL),
        }
        settings = cls(**values)
        if not settings.database_url:
            logger.warning("DATABASE_URL is not set. Durable queue will be unavailable.")
        return settings
