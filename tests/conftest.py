"""Фикстуры: хранилища в памяти и фейковый сервер на httpx.MockTransport."""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from sync_engine.errors import ChecksumMismatchError
from sync_engine.models import DeadLetterEntry, Operation, QueueItem, Record, utcnow
from sync_engine.utils.checksum import verify_batch_request
from sync_engine.utils.remote import RemoteTransport

BASE_URL = "http://sync.test/api"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryQueue:
    def __init__(self):
        self.items: list[QueueItem] = []
        self.dead: list[DeadLetterEntry] = []

    async def enqueue(self, item):
        if any(i.id == item.id for i in self.items) or any(d.id == item.id for d in self.dead):
            raise ValueError(f"duplicate id {item.id}")
        self.items.append(item)
        return item

    async def enqueue_mutation(self, record, operation):
        return await self.enqueue(QueueItem.from_record(record, operation))

    async def list_pending(self):
        return sorted(self.items, key=lambda i: i.created_at)

    async def remove(self, item_id):
        self.items = [i for i in self.items if i.id != item_id]

    async def update_retry_state(self, item_id, retry_count, error_message):
        for index, item in enumerate(self.items):
            if item.id == item_id and item.retry_count <= retry_count:
                self.items[index] = item.model_copy(update={"retry_count": retry_count, "error_message": error_message})
                return True
        return False

    async def count(self):
        return len(self.items)

    async def move_to_dead_letter(self, item, moved_at=None):
        entry = DeadLetterEntry(**item.model_dump(), moved_at=moved_at or utcnow())
        self.items = [i for i in self.items if i.id != item.id]
        self.dead.append(entry)
        return entry

    def get(self, item_id):
        return next((i for i in self.items if i.id == item_id), None)


class InMemoryDeadLetters:
    def __init__(self, queue: InMemoryQueue):
        self._queue = queue

    async def list_entries(self):
        return sorted(self._queue.dead, key=lambda e: e.moved_at, reverse=True)

    async def get_entry(self, item_id):
        return next((e for e in self._queue.dead if e.id == item_id), None)

    async def count(self):
        return len(self._queue.dead)


class InMemoryRecordStore:
    def __init__(self):
        self.records: dict[str, Record] = {}
        self.updates: list[Record] = []

    def add(self, record):
        self.records[record.id] = record
        return record

    async def get_record(self, record_id):
        return self.records.get(record_id)

    async def update_record(self, record):
        self.records[record.id] = record
        self.updates.append(record)

    async def get_last_sync_timestamp(self):
        stamps = [r.last_synced_at for r in self.records.values() if r.last_synced_at]
        return max(stamps) if stamps else None


class FakeRemote:
    """Удалённый сервер. По умолчанию отвечает success на каждый элемент."""

    def __init__(self):
        self.reachable = True
        self.health_status = "ok"
        self.errors: dict[str, str] = {}  # record_id -> текст ошибки
        self.conflicts: dict[str, dict] = {}  # record_id -> resolved_data
        self.dropped: set[str] = set()  # record_id без статуса в ответе
        self.fail_batches = 0  # сколько следующих пачек ответить 500
        self.corrupt_in_transit = False
        self.reverse_response = False
        self.batches: list[list[str]] = []
        self.applied: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not self.reachable:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path.endswith("/health"):
            return httpx.Response(200, json={"status": self.health_status, "timestamp": utcnow().isoformat()})
        if request.url.path.endswith("/batch"):
            return self._batch(request)
        return httpx.Response(404, json={"error": "Not found"})

    def _batch(self, request):
        body = json.loads(request.content)
        if self.corrupt_in_transit:
            body["items"][0]["data"]["title"] = "corrupted"
        if self.fail_batches:
            self.fail_batches -= 1
            return httpx.Response(500, json={"error": "Internal error"})
        try:
            batch = verify_batch_request(body)
        except ChecksumMismatchError:
            return httpx.Response(400, json={"error": "Checksum mismatch"})

        self.batches.append([item.record_id for item in batch.items])
        processed = []
        for item in batch.items:
            if item.record_id in self.dropped:
                continue
            if item.record_id in self.errors:
                processed.append({"client_id": item.id, "status": "error", "error": self.errors[item.record_id]})
                continue
            if item.record_id in self.conflicts:
                processed.append({"client_id": item.id, "status": "conflict",
                                  "resolved_data": self.conflicts[item.record_id]})
                continue
            self.applied.append(item.id)
            processed.append({
                "client_id": item.id,
                "server_id": f"srv_{item.record_id}",
                "status": "success",
                "resolved_data": {**item.data, "server_id": f"srv_{item.record_id}"},
            })
        if self.reverse_response:
            processed.reverse()
        return httpx.Response(200, json={"processed_items": processed})


@pytest.fixture
def queue():
    return InMemoryQueue()


@pytest.fixture
def dead_letters(queue):
    return InMemoryDeadLetters(queue)


@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def transport(remote):
    return RemoteTransport(BASE_URL, probe_timeout=1.0, request_timeout=1.0,
                           transport=httpx.MockTransport(remote.handler))


@pytest.fixture
def make_record():
    def _make(record_id, minutes=0, **fields):
        fields.setdefault("title", f"Task {record_id}")
        fields.setdefault("updated_at", T0 + timedelta(minutes=minutes))
        return Record(id=record_id, **fields)
    return _make


@pytest.fixture
def make_item():
    def _make(record_id, minutes=0, operation=Operation.CREATE, **data):
        created_at = T0 + timedelta(minutes=minutes)
        payload = {"id": record_id, "title": f"Task {record_id}",
                   "updated_at": created_at.isoformat(), **data}
        return QueueItem(record_id=record_id, operation=operation, data=payload, created_at=created_at)
    return _make
