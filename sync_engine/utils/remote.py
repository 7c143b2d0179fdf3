import asyncio
import httpx
import logging

from pydantic import ValidationError

from sync_engine.config import DEFAULT_CONNECTIVITY_TIMEOUT, DEFAULT_REQUEST_TIMEOUT
from sync_engine.errors import (
    ChecksumMismatchError,
    ConnectivityError,
    SyncEngineError,
    TransportError,
)
from sync_engine.models import (
    BatchSubmission,
    BatchSyncRequest,
    BatchSyncResponse,
    HealthStatus,
    ItemOutcome,
    OutcomeStatus,
    QueueItem,
)

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
BATCH_PATH = "/batch"


class RemoteTransport:
    """Клиент удалённого сервера: проверка связи и отправка пачек.

    Локальное хранилище не трогает. Клиент httpx создаётся на каждый вызов;
    transport можно подменить (httpx.MockTransport в тестах).
    """

    def __init__(
        self,
        base_url: str,
        probe_timeout: float = DEFAULT_CONNECTIVITY_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.probe_timeout = probe_timeout
        self.request_timeout = request_timeout
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    async def _probe(self) -> HealthStatus:
        async with self._client(self.probe_timeout) as client:
            response = await client.get(HEALTH_PATH)
            response.raise_for_status()
        health = HealthStatus.model_validate_json(response.content)
        if health.status != "ok":
            raise ConnectivityError(f"Health endpoint reported status '{health.status}'")
        return health

    async def check_connectivity(self) -> bool:
        """True, только если /health ответил 'ok' за probe_timeout. Исключения наружу не выходят."""
        try:
            await asyncio.wait_for(self._probe(), timeout=self.probe_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Connectivity probe to {self.base_url} timed out after {self.probe_timeout}s")
        except httpx.HTTPStatusError as e:
            logger.warning(f"Connectivity probe failed: {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Connectivity probe failed: {e!r}")
        except (ConnectivityError, ValueError) as e:
            logger.warning(f"Connectivity probe returned an unexpected response: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error during connectivity probe to {self.base_url}: {e}")
        return False

    async def _post_batch(self, request: BatchSyncRequest) -> list[ItemOutcome]:
        try:
            async with self._client(self.request_timeout) as client:
                response = await client.post(
                    BATCH_PATH,
                    content=request.model_dump_json(),
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if _is_checksum_rejection(e.response):
                raise ChecksumMismatchError("Checksum mismatch") from e
            raise TransportError(f"HTTP Error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise TransportError(f"Network Error: {e!r}") from e

        try:
            body = BatchSyncResponse.model_validate_json(response.content)
        except ValidationError as e:
            logger.error(f"Invalid response format from {self.base_url}{BATCH_PATH}: {e}")
            raise TransportError("Invalid API response format") from e

        # Статусы разбираются по одному, битый элемент не роняет остальные
        outcomes = (_parse_outcome(entry) for entry in body.processed_items)
        return [outcome for outcome in outcomes if outcome is not None]

    async def submit_batch(self, batch: list[QueueItem], checksum: str) -> BatchSubmission:
        """Отправляет пачку. Ошибка всей пачки возвращается значением, а не исключением."""
        request = BatchSyncRequest(items=batch, checksum=checksum)
        logger.info(f"Sending batch of {len(batch)} items to {self.base_url}{BATCH_PATH}...")
        try:
            outcomes = await self._post_batch(request)
        except SyncEngineError as e:
            logger.error(f"Batch submission failed ({e.kind.value}): {e.message}")
            return BatchSubmission.failed(e.kind, e.message)
        return BatchSubmission(outcomes=outcomes)


def _parse_outcome(entry: dict) -> ItemOutcome | None:
    """Невалидный статус превращается в ошибку своего элемента. Без client_id его не к чему привязать."""
    try:
        return ItemOutcome.model_validate(entry)
    except ValidationError as e:
        client_id = entry.get("client_id")
        if not isinstance(client_id, str):
            logger.warning(f"Dropping outcome without client_id: {entry}")
            return None
        logger.error(f"Invalid outcome for item {client_id}: {e}")
        return ItemOutcome(client_id=client_id, status=OutcomeStatus.ERROR, error="Invalid outcome format")


def _is_checksum_rejection(response: httpx.Response) -> bool:
    if response.status_code != 400:
        return False
    try:
        body = response.json()
    except ValueError:
        return False
    error = body.get("error") if isinstance(body, dict) else None
    return isinstance(error, str) and "checksum" in error.lower()
