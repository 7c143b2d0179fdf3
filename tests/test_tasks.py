from contextlib import asynccontextmanager
from unittest.mock import MagicMock

import pytest

from sync_engine.config import ConflictPolicy, SyncSettings
from sync_engine.models import SyncResult
from sync_engine.queue import DeadLetterStore, MutationQueue
from sync_engine.records import PgRecordStore
from sync_engine.tasks import sync_pass
from sync_engine.tasks.sync_pass import build_engine, run_sync_pass_task, sync_status_task
from sync_engine.utils.remote import RemoteTransport
from sync_engine.worker import celery_app


def test_build_engine_wires_settings():
    settings = SyncSettings(
        api_base_url="https://api.example.com/",
        batch_size=7,
        retry_threshold=4,
        connectivity_timeout=2.0,
        conflict_policy=ConflictPolicy.LAST_WRITER_WINS,
    )

    engine = build_engine(MagicMock(), settings)

    assert isinstance(engine.queue, MutationQueue)
    assert isinstance(engine.dead_letters, DeadLetterStore)
    assert isinstance(engine.records, PgRecordStore)
    assert isinstance(engine.transport, RemoteTransport)
    assert engine.transport.base_url == "https://api.example.com"
    assert engine.transport.probe_timeout == 2.0
    assert engine.batch_size == 7
    assert engine.retry_handler.threshold == 4
    assert engine.retry_handler.queue is engine.queue
    assert engine.conflict_policy == ConflictPolicy.LAST_WRITER_WINS


def test_tasks_registered_and_scheduled():
    assert run_sync_pass_task.name == "run_sync_pass"
    assert sync_status_task.name == "sync_status"
    schedule = celery_app.conf.beat_schedule["run-sync-pass"]
    assert schedule["task"] == "run_sync_pass"
    assert schedule["schedule"] > 0
    assert celery_app.conf.task_serializer == "json"


def _patch_db(monkeypatch, lock_acquired):
    calls = []

    async def fake_init_db_pool(dsn):
        calls.append(("init", dsn))
        return "pool"

    async def fake_close_db_pool(pool):
        calls.append(("close", pool))

    async def fake_init_schema(pool):
        calls.append(("schema", pool))

    @asynccontextmanager
    async def fake_lock(pool):
        yield lock_acquired

    monkeypatch.setattr(sync_pass, "init_db_pool", fake_init_db_pool)
    monkeypatch.setattr(sync_pass, "close_db_pool", fake_close_db_pool)
    monkeypatch.setattr(sync_pass, "init_schema", fake_init_schema)
    monkeypatch.setattr(sync_pass, "advisory_lock", fake_lock)
    return calls


@pytest.mark.asyncio
async def test_run_sync_pass_skips_when_lock_is_held(monkeypatch):
    calls = _patch_db(monkeypatch, lock_acquired=False)

    result = await sync_pass._run_sync_pass(SyncSettings(database_url="postgresql://db"))

    assert result["status"] == "already_running"
    assert result["success"] is False
    assert calls[-1] == ("close", "pool")


@pytest.mark.asyncio
async def test_run_sync_pass_runs_engine(monkeypatch):
    calls = _patch_db(monkeypatch, lock_acquired=True)

    class StubEngine:
        async def run_sync_pass(self):
            return SyncResult(success=True, synced_items=2)

    monkeypatch.setattr(sync_pass, "build_engine", lambda pool, settings: StubEngine())

    result = await sync_pass._run_sync_pass(SyncSettings(database_url="postgresql://db"))

    assert result["synced_items"] == 2
    assert result["status"] == "completed"
    assert calls == [("init", "postgresql://db"), ("schema", "pool"), ("close", "pool")]
