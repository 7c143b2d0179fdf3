# Контрольная сумма пачки. Отправитель и получатель обязаны сериализовать
# элементы одинаково, иначе сумма законно не совпадёт.

import hashlib
import hmac
import json
import logging
from typing import Any

from pydantic import ValidationError

from sync_engine.errors import ChecksumMismatchError
from sync_engine.models import BatchSyncRequest, QueueItem

logger = logging.getLogger(__name__)

# retry_count и error_message не входят: повторная отправка тех же данных даёт ту же сумму
CHECKSUM_FIELDS = ("id", "record_id", "operation", "data", "created_at")


def canonical_payload(items: list[QueueItem]) -> bytes:
    """Каноническая форма: JSON с отсортированными ключами, без пробелов, даты в ISO-8601 UTC."""
    rows = [item.model_dump(mode="json", include=set(CHECKSUM_FIELDS)) for item in items]
    return json.dumps(rows, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_checksum(items: list[QueueItem]) -> str:
    return hashlib.sha256(canonical_payload(items)).hexdigest()


def verify_checksum(items: list[QueueItem], checksum: str) -> bool:
    return hmac.compare_digest(compute_checksum(items), checksum or "")


def verify_batch_request(body: dict[str, Any]) -> BatchSyncRequest:
    """Сторона получателя: валидирует тело запроса и пересчитывает сумму.

    Несовпадение суммы означает отказ для всей пачки (ChecksumMismatchError).
    """
    try:
        request = BatchSyncRequest.model_validate(body)
    except ValidationError as e:
        raise ValueError(f"Invalid batch request: {e}") from e

    if not verify_checksum(request.items, request.checksum):
        logger.error(f"Checksum mismatch for batch of {len(request.items)} items.")
        raise ChecksumMismatchError("Checksum mismatch")
    return request
