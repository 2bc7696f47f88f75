"""Upload queue coordinator: decides which local records get uploaded, and when.

The coordinator owns scheduling and retry policy; the orchestrator owns the
pipeline for a single attempt.  The one correctness rule enforced here is
that no record id ever has two attempts in flight: attempts are tracked in
a map of ``asyncio.Task`` objects, and anyone asking to upload an id that is
already running joins the existing task instead of starting a new one.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from formsync.config import SyncConfig
from formsync.exceptions import AttemptInFlightError, RecordValidationError
from formsync.models import (
    LocalRecord,
    UploadProgress,
    UploadResult,
    UploadStatus,
    validate_record,
)
from formsync.upload.broadcaster import StatusBroadcaster
from formsync.upload.document_builder import document_id_for
from formsync.upload.orchestrator import UploadOrchestrator
from formsync.upload.recovery import RecoveryManager, RecoveryResult

if TYPE_CHECKING:
    from formsync.database import LocalRecordStore

logger = logging.getLogger(__name__)


@dataclass
class QueueSnapshot:
    """Point-in-time view of the queue for observers.

    Attributes:
        pending: Records not yet attempted (``pending`` status).
        uploading: Records persisted as ``uploading``.
        failed: Records whose last attempt failed (``error`` status).
        completed: Completed records still held locally.
        queued: Ids waiting for the next :meth:`UploadQueueCoordinator.drain`.
        in_flight: Ids with a running attempt in this process.
        last_progress: Most recent progress event per record id.
    """

    pending: int = 0
    uploading: int = 0
    failed: int = 0
    completed: int = 0
    queued: list[str] = field(default_factory=list)
    in_flight: list[str] = field(default_factory=list)
    last_progress: dict[str, UploadProgress] = field(default_factory=dict)


class UploadQueueCoordinator:
    """Tracks pending, in-flight and failed records and drives the orchestrator.

    Usage::

        coordinator = UploadQueueCoordinator(store, orchestrator, broadcaster, config)
        coordinator.resume()
        results = await coordinator.drain()

    Args:
        store: Local record store.
        orchestrator: Runs one attempt per call.
        broadcaster: Progress stream; the coordinator keeps the latest event
            per record for :meth:`snapshot`.
        config: Concurrency, eviction and retry policy.
    """

    def __init__(
        self,
        store: LocalRecordStore,
        orchestrator: UploadOrchestrator,
        broadcaster: StatusBroadcaster,
        config: SyncConfig | None = None,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._config = config or SyncConfig()
        self._recovery = RecoveryManager(store)

        self._queue: deque[str] = deque()
        self._in_flight: dict[str, asyncio.Task[UploadResult]] = {}
        self._last_progress: dict[str, UploadProgress] = {}
        self._unsubscribe = broadcaster.subscribe(self._on_progress)

    # ------------------------------------------------------------------
    # Producer entry points
    # ------------------------------------------------------------------

    def submit(self, record: LocalRecord) -> LocalRecord:
        """Validate, persist and enqueue a newly digitized record.

        Raises:
            RecordValidationError: If the record fails producer-side checks
                or its id is already ``completed``; nothing is stored in
                that case.
        """
        validate_record(record)
        existing = self._store.find(record.id, with_blobs=False)
        if existing is not None and existing.upload_status == UploadStatus.COMPLETED:
            raise RecordValidationError(f"Record {record.id} is already completed")
        stored = self._store.put(record)
        self._push(stored.id)
        logger.info("Submitted %s (%s)", stored.id, stored.payload.title)
        return stored

    def enqueue(self, record_id: str) -> bool:
        """Queue an already-stored record for upload.

        Returns:
            False if the record is already completed, queued or in flight.

        Raises:
            RecordNotFoundError: If *record_id* is unknown.
            RecordValidationError: If the stored record fails producer-side
                checks; it is not queued.
        """
        record = self._store.get(record_id)
        if record.upload_status == UploadStatus.COMPLETED:
            logger.debug("Not enqueuing %s: already completed", record_id)
            return False
        validate_record(record)
        return self._push(record_id)

    def _push(self, record_id: str) -> bool:
        if record_id in self._queue or record_id in self._in_flight:
            return False
        self._queue.append(record_id)
        return True

    # ------------------------------------------------------------------
    # Observer views
    # ------------------------------------------------------------------

    def pending_list(self) -> list[LocalRecord]:
        """Every local record that is not yet ``completed``, oldest first."""
        return [r for r in self._store.list() if r.upload_status != UploadStatus.COMPLETED]

    def is_in_flight(self, record_id: str) -> bool:
        return record_id in self._in_flight

    def snapshot(self) -> QueueSnapshot:
        counts = self._store.status_counts()
        return QueueSnapshot(
            pending=counts.get(UploadStatus.PENDING.value, 0),
            uploading=counts.get(UploadStatus.UPLOADING.value, 0),
            failed=counts.get(UploadStatus.ERROR.value, 0),
            completed=counts.get(UploadStatus.COMPLETED.value, 0),
            queued=list(self._queue),
            in_flight=sorted(self._in_flight),
            last_progress=dict(self._last_progress),
        )

    def _on_progress(self, progress: UploadProgress) -> None:
        self._last_progress[progress.record_id] = progress

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def retry(self, record_id: str) -> str | None:
        """Run (or join) an attempt for *record_id* now.

        Concurrent calls for the same id share one attempt.  A record left
        ``uploading`` by a crashed process is failed first so the retry edge
        applies.

        Returns:
            The remote document id on success, or None if the attempt failed
            (the reason is persisted as ``upload_error``).

        Raises:
            RecordNotFoundError: If *record_id* is unknown.
        """
        if record_id not in self._in_flight:
            record = self._store.get(record_id, with_blobs=False)
            if record.upload_status == UploadStatus.COMPLETED:
                logger.info("Record %s already completed; nothing to retry", record_id)
                return document_id_for(record_id)
            if record.upload_status == UploadStatus.UPLOADING:
                self._recovery.run(in_flight=self._in_flight.keys(), only=record_id)

        self._discard_queued(record_id)
        result = await self._attempt(record_id)
        return result.document_id if result.ok else None

    def cancel(self, record_id: str) -> bool:
        """Abandon a record: drop it from the queue and the local store.

        Returns:
            True if a stored record was removed.

        Raises:
            AttemptInFlightError: If an attempt for *record_id* is running.
        """
        if record_id in self._in_flight:
            raise AttemptInFlightError(f"Cannot remove {record_id}: upload in progress")
        self._discard_queued(record_id)
        self._last_progress.pop(record_id, None)
        return self._store.remove(record_id)

    def _discard_queued(self, record_id: str) -> None:
        try:
            self._queue.remove(record_id)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def resume(self) -> RecoveryResult:
        """Startup policy: recover interrupted uploads, then queue outstanding work.

        Every ``pending`` record is queued.  ``error`` records are queued when
        ``auto_retry_on_start`` is set and they have fewer than
        ``max_attempts`` attempts.
        """
        recovery = self._recovery.run(in_flight=self._in_flight.keys())
        queued = 0
        for record in self._store.list():
            if record.upload_status == UploadStatus.PENDING or self._auto_retriable(record):
                queued += self._push(record.id)
        logger.info("Resumed queue: %d record(s) queued", queued)
        return recovery

    def _auto_retriable(self, record: LocalRecord) -> bool:
        return (
            self._config.auto_retry_on_start
            and record.upload_status == UploadStatus.ERROR
            and record.attempt_count < self._config.max_attempts
        )

    async def drain(self) -> list[UploadResult]:
        """Process queued ids until the queue is empty.

        Up to ``max_concurrent_uploads`` distinct records upload at once;
        each record's own pipeline stays strictly sequential.
        """
        semaphore = asyncio.Semaphore(self._config.max_concurrent_uploads)

        async def _bounded(record_id: str) -> UploadResult:
            async with semaphore:
                return await self._attempt(record_id)

        results: list[UploadResult] = []
        while self._queue:
            batch = list(self._queue)
            self._queue.clear()
            logger.info("Draining %d queued record(s)", len(batch))
            results.extend(await asyncio.gather(*(_bounded(rid) for rid in batch)))

        if results:
            failed = sum(1 for r in results if not r.ok)
            logger.info("Drain complete: %d succeeded, %d failed", len(results) - failed, failed)
        return results

    async def retry_failed(self, max_rounds: int | None = None) -> list[UploadResult]:
        """Retry ``error`` records in whole-pipeline rounds with exponential backoff.

        Each round queues every failed record below ``max_attempts`` and
        drains the queue; rounds repeat while failures remain, up to
        *max_rounds* (default ``max_attempts``).

        Returns:
            The latest result per record attempted.
        """
        latest: dict[str, UploadResult] = {}

        async def _round() -> list[str]:
            for record in self._store.list():
                if (
                    record.upload_status == UploadStatus.ERROR
                    and record.attempt_count < self._config.max_attempts
                ):
                    self._push(record.id)
            for result in await self.drain():
                latest[result.record_id] = result
            return [rid for rid, result in latest.items() if not result.ok and self._retriable(rid)]

        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential(
                    min=self._config.retry_min_wait, max=self._config.retry_max_wait
                ),
                stop=stop_after_attempt(max_rounds or self._config.max_attempts),
                retry=retry_if_result(bool),
                before_sleep=before_sleep_log(logger, logging.INFO),
            ):
                with attempt:
                    remaining = await _round()
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(remaining)
        except RetryError as exc:
            remaining = exc.last_attempt.result()
            logger.warning("Giving up on %d record(s) after retry rounds", len(remaining))

        return list(latest.values())

    def _retriable(self, record_id: str) -> bool:
        record = self._store.find(record_id, with_blobs=False)
        return (
            record is not None
            and record.upload_status == UploadStatus.ERROR
            and record.attempt_count < self._config.max_attempts
        )

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    async def _attempt(self, record_id: str) -> UploadResult:
        """Start an attempt for *record_id*, or join the one already running."""
        task = self._in_flight.get(record_id)
        if task is None:
            task = asyncio.create_task(self._run(record_id), name=f"upload:{record_id}")
            self._in_flight[record_id] = task
            task.add_done_callback(lambda t: self._forget(record_id, t))
        else:
            logger.info("Upload of %s already in flight; joining it", record_id)
        # Shielded so one cancelled waiter does not cancel a shared attempt.
        return await asyncio.shield(task)

    def _forget(self, record_id: str, task: asyncio.Task[UploadResult]) -> None:
        if self._in_flight.get(record_id) is task:
            del self._in_flight[record_id]

    async def _run(self, record_id: str) -> UploadResult:
        result = await self._orchestrator.run(record_id)
        if result.ok and self._config.evict_on_complete:
            self._store.remove(record_id)
            self._last_progress.pop(record_id, None)
            logger.info("Evicted completed record %s", record_id)
        return result

    async def wait_idle(self) -> None:
        """Wait for every running attempt to settle."""
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    def close(self) -> None:
        """Stop listening to the broadcaster."""
        self._unsubscribe()
