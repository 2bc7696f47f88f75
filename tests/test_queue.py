"""Upload queue coordinator tests.

Covers:
  - submit/enqueue validation and pending_list filtering
  - At most one attempt per record id under concurrent retry()
  - drain() concurrency bound and eviction on completion
  - resume() startup policy (recovery plus auto-retry below max_attempts)
  - retry_failed() whole-pipeline rounds with tenacity backoff
  - cancel() refusing in-flight records
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from formsync.config import SyncConfig
from formsync.database import LocalRecordStore
from formsync.exceptions import (
    AttemptInFlightError,
    RecordNotFoundError,
    RecordValidationError,
    TransientError,
)
from formsync.models import UploadStatus
from formsync.upload.backend import FilesystemBackend
from formsync.upload.broadcaster import StatusBroadcaster
from formsync.upload.document_builder import document_id_for
from formsync.upload.orchestrator import UploadOrchestrator
from formsync.upload.queue import UploadQueueCoordinator


def _gated(backend: FilesystemBackend) -> asyncio.Event:
    """Make put_blob wait until the returned event is set."""
    gate = asyncio.Event()
    original = backend.put_blob

    async def put_blob(*args, **kwargs):
        await gate.wait()
        return await original(*args, **kwargs)

    backend.put_blob = AsyncMock(side_effect=put_blob)
    return gate


# ======================================================================
# Enqueue and views
# ======================================================================


def test_submit_stores_and_queues(coordinator: UploadQueueCoordinator, store, make_record) -> None:
    stored = coordinator.submit(make_record("form-a"))

    assert stored.upload_status == UploadStatus.PENDING
    assert store.get("form-a").document is not None
    assert coordinator.snapshot().queued == ["form-a"]


def test_submit_rejects_invalid_record(
    coordinator: UploadQueueCoordinator, store: LocalRecordStore, make_record
) -> None:
    record = make_record("form-a", thumbnails=1)  # signature field sits on page 2

    with pytest.raises(RecordValidationError, match="page 2"):
        coordinator.submit(record)
    assert store.find("form-a") is None
    assert coordinator.snapshot().queued == []


def test_submit_refuses_completed_record(
    coordinator: UploadQueueCoordinator, store: LocalRecordStore, make_record
) -> None:
    store.put(make_record("form-a"))
    store.begin_attempt("form-a")
    store.set_status("form-a", UploadStatus.COMPLETED)
    before = store.get("form-a", with_blobs=False).payload

    with pytest.raises(RecordValidationError, match="already completed"):
        coordinator.submit(make_record("form-a", title="Edited after upload"))

    assert store.get("form-a", with_blobs=False).payload == before
    assert coordinator.snapshot().queued == []


async def test_drain_reports_completed_record_with_document_id(
    coordinator: UploadQueueCoordinator, store: LocalRecordStore, make_record
) -> None:
    store.put(make_record("form-a"))
    store.begin_attempt("form-a")
    store.set_status("form-a", UploadStatus.COMPLETED)
    coordinator._push("form-a")

    results = await coordinator.drain()

    assert [(r.ok, r.document_id, r.error) for r in results] == [
        (True, document_id_for("form-a"), None)
    ]


def test_enqueue_skips_completed_and_duplicates(
    coordinator: UploadQueueCoordinator, store: LocalRecordStore, make_record
) -> None:
    store.put(make_record("form-a"))
    store.put(make_record("form-b"))
    store.begin_attempt("form-b")
    store.set_status("form-b", UploadStatus.COMPLETED)

    assert coordinator.enqueue("form-a") is True
    assert coordinator.enqueue("form-a") is False
    assert coordinator.enqueue("form-b") is False
    with pytest.raises(RecordNotFoundError):
        coordinator.enqueue("missing")


def test_enqueue_rejects_undeclared_variant_language(
    coordinator: UploadQueueCoordinator, store: LocalRecordStore, make_record
) -> None:
    record = make_record("form-a", variants=("si",), languages=["en"])
    store.put(record)

    with pytest.raises(RecordValidationError, match="not declared"):
        coordinator.enqueue("form-a")


def test_pending_list_excludes_completed(
    coordinator: UploadQueueCoordinator, store: LocalRecordStore, make_record
) -> None:
    for record_id in ("form-a", "form-b", "form-c"):
        store.put(make_record(record_id))
    store.begin_attempt("form-b")
    store.set_status("form-b", UploadStatus.COMPLETED)
    store.begin_attempt("form-c")
    store.set_status("form-c", UploadStatus.ERROR, "timeout")

    assert [r.id for r in coordinator.pending_list()] == ["form-a", "form-c"]


# ======================================================================
# Single attempt per id
# ======================================================================


async def test_concurrent_retries_share_one_attempt(
    coordinator: UploadQueueCoordinator,
    store: LocalRecordStore,
    backend: FilesystemBackend,
    make_record,
) -> None:
    store.put(make_record("form-a"))
    gate = _gated(backend)

    calls = [asyncio.create_task(coordinator.retry("form-a")) for _ in range(3)]
    await asyncio.sleep(0.01)
    assert coordinator.is_in_flight("form-a")
    assert coordinator.snapshot().in_flight == ["form-a"]
    gate.set()
    results = await asyncio.gather(*calls)

    assert results == [document_id_for("form-a")] * 3
    assert backend.put_blob.await_count == 1
    assert store.get("form-a", with_blobs=False).attempt_count == 1
    assert not coordinator.is_in_flight("form-a")


async def test_retry_returns_none_on_failure(
    coordinator: UploadQueueCoordinator,
    store: LocalRecordStore,
    backend: FilesystemBackend,
    make_record,
) -> None:
    store.put(make_record("form-a"))
    backend.create_document = AsyncMock(side_effect=TransientError("unavailable"))

    assert await coordinator.retry("form-a") is None
    record = store.get("form-a", with_blobs=False)
    assert record.upload_status == UploadStatus.ERROR
    assert record.upload_error == "unavailable"


async def test_retry_of_completed_record_returns_document_id(
    coordinator: UploadQueueCoordinator,
    store: LocalRecordStore,
    backend: FilesystemBackend,
    make_record,
) -> None:
    store.put(make_record("form-a"))
    await coordinator.retry("form-a")
    backend.put_blob = AsyncMock(wraps=backend.put_blob)

    assert await coordinator.retry("form-a") == document_id_for("form-a")
    backend.put_blob.assert_not_awaited()


async def test_retry_recovers_stale_uploading_record(
    coordinator: UploadQueueCoordinator, store: LocalRecordStore, make_record
) -> None:
    store.put(make_record("form-a"))
    store.begin_attempt("form-a")  # simulated crash mid-attempt

    assert await coordinator.retry("form-a") == document_id_for("form-a")
    record = store.get("form-a", with_blobs=False)
    assert record.upload_status == UploadStatus.COMPLETED
    assert record.attempt_count == 2


async def test_retry_recovers_only_the_requested_record(
    coordinator: UploadQueueCoordinator, store: LocalRecordStore, make_record
) -> None:
    for record_id in ("form-a", "form-b"):
        store.put(make_record(record_id))
        store.begin_attempt(record_id)

    assert await coordinator.retry("form-a") == document_id_for("form-a")

    other = store.get("form-b", with_blobs=False)
    assert other.upload_status == UploadStatus.UPLOADING
    assert other.upload_error is None


async def test_retry_unknown_record(coordinator: UploadQueueCoordinator) -> None:
    with pytest.raises(RecordNotFoundError):
        await coordinator.retry("missing")


async def test_cancel_refuses_in_flight_record(
    coordinator: UploadQueueCoordinator,
    store: LocalRecordStore,
    backend: FilesystemBackend,
    make_record,
) -> None:
    store.put(make_record("form-a"))
    gate = _gated(backend)
    task = asyncio.create_task(coordinator.retry("form-a"))
    await asyncio.sleep(0.01)

    with pytest.raises(AttemptInFlightError):
        coordinator.cancel("form-a")

    gate.set()
    await task
    assert coordinator.cancel("form-a") is True
    assert store.find("form-a") is None


def test_cancel_drops_queued_record(
    coordinator: UploadQueueCoordinator, store: LocalRecordStore, make_record
) -> None:
    coordinator.submit(make_record("form-a"))
    assert coordinator.cancel("form-a") is True
    assert coordinator.snapshot().queued == []
    assert coordinator.cancel("form-a") is False


# ======================================================================
# Drain
# ======================================================================


async def test_drain_uploads_everything_queued(
    coordinator: UploadQueueCoordinator,
    store: LocalRecordStore,
    backend: FilesystemBackend,
    make_record,
) -> None:
    for record_id in ("form-a", "form-b"):
        coordinator.submit(make_record(record_id))

    results = await coordinator.drain()

    assert sorted(r.record_id for r in results) == ["form-a", "form-b"]
    assert all(r.ok for r in results)
    assert len(backend.list_documents()) == 2
    assert coordinator.snapshot().queued == []
    assert coordinator.snapshot().completed == 2


async def test_drain_respects_concurrency_limit(
    store: LocalRecordStore,
    backend: FilesystemBackend,
    broadcaster: StatusBroadcaster,
    sync_config: SyncConfig,
    make_record,
) -> None:
    sync_config.max_concurrent_uploads = 2
    active = 0
    peak = 0
    original = backend.put_blob

    async def tracked(*args, **kwargs):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return await original(*args, **kwargs)

    backend.put_blob = tracked
    coordinator = UploadQueueCoordinator(
        store, UploadOrchestrator(store, backend, broadcaster), broadcaster, sync_config
    )
    for i in range(5):
        coordinator.submit(make_record(f"form-{i}"))

    results = await coordinator.drain()

    assert len(results) == 5
    assert peak == 2
    coordinator.close()


async def test_drain_evicts_completed_records(
    store: LocalRecordStore,
    backend: FilesystemBackend,
    orchestrator: UploadOrchestrator,
    broadcaster: StatusBroadcaster,
    sync_config: SyncConfig,
    make_record,
) -> None:
    sync_config.evict_on_complete = True
    coordinator = UploadQueueCoordinator(store, orchestrator, broadcaster, sync_config)
    coordinator.submit(make_record("form-a"))
    coordinator.submit(make_record("form-b"))
    original = backend.create_document

    async def reject_b(document_id, fields):
        if document_id == document_id_for("form-b"):
            raise TransientError("down")
        return await original(document_id, fields)

    backend.create_document = reject_b

    results = await coordinator.drain()

    assert {r.record_id: r.ok for r in results} == {"form-a": True, "form-b": False}
    assert store.find("form-a") is None
    assert store.find("form-b") is not None
    assert store.status_history("form-a")[-1]["new_status"] == "completed"
    assert "form-a" not in coordinator.snapshot().last_progress
    coordinator.close()


async def test_snapshot_tracks_last_progress(
    coordinator: UploadQueueCoordinator, make_record
) -> None:
    coordinator.submit(make_record("form-a"))
    await coordinator.drain()

    snapshot = coordinator.snapshot()
    assert snapshot.last_progress["form-a"].percent == 100
    assert snapshot.in_flight == []


# ======================================================================
# Startup and automatic retry
# ======================================================================


def test_resume_queues_pending_and_retriable_errors(
    coordinator: UploadQueueCoordinator,
    store: LocalRecordStore,
    sync_config: SyncConfig,
    make_record,
) -> None:
    for record_id in ("form-a", "form-b", "form-c", "form-d"):
        store.put(make_record(record_id))
    # form-b failed once, form-c exhausted its attempts, form-d crashed mid-upload
    store.begin_attempt("form-b")
    store.set_status("form-b", UploadStatus.ERROR, "timeout")
    for _ in range(sync_config.max_attempts):
        store.begin_attempt("form-c")
        store.set_status("form-c", UploadStatus.ERROR, "rejected")
    store.begin_attempt("form-d")

    recovery = coordinator.resume()

    assert recovery.interrupted == ["form-d"]
    assert coordinator.snapshot().queued == ["form-a", "form-b", "form-d"]


def test_resume_without_auto_retry_only_queues_pending(
    coordinator: UploadQueueCoordinator,
    store: LocalRecordStore,
    sync_config: SyncConfig,
    make_record,
) -> None:
    sync_config.auto_retry_on_start = False
    store.put(make_record("form-a"))
    store.put(make_record("form-b"))
    store.begin_attempt("form-b")
    store.set_status("form-b", UploadStatus.ERROR, "timeout")

    coordinator.resume()

    assert coordinator.snapshot().queued == ["form-a"]


async def test_retry_failed_runs_rounds_until_success(
    coordinator: UploadQueueCoordinator,
    store: LocalRecordStore,
    backend: FilesystemBackend,
    make_record,
) -> None:
    store.put(make_record("form-a"))
    original = backend.create_document
    failures = [TransientError("down"), TransientError("still down")]

    async def flaky(document_id, fields):
        if failures:
            raise failures.pop(0)
        return await original(document_id, fields)

    backend.create_document = AsyncMock(side_effect=flaky)
    await coordinator.retry("form-a")

    results = await coordinator.retry_failed(max_rounds=3)

    assert [r.ok for r in results] == [True]
    record = store.get("form-a", with_blobs=False)
    assert record.upload_status == UploadStatus.COMPLETED
    assert record.attempt_count == 3


async def test_retry_failed_gives_up_after_max_rounds(
    coordinator: UploadQueueCoordinator,
    store: LocalRecordStore,
    backend: FilesystemBackend,
    make_record,
) -> None:
    store.put(make_record("form-a"))
    backend.create_document = AsyncMock(side_effect=TransientError("down"))
    await coordinator.retry("form-a")

    results = await coordinator.retry_failed(max_rounds=2)

    assert [r.ok for r in results] == [False]
    assert store.get("form-a", with_blobs=False).attempt_count == 3
