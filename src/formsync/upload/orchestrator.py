"""Upload orchestrator: drives one local record through the remote-commit stages.

Stages run strictly in order because each one consumes what the previous
one produced:

1. ``uploading_pdf`` -- primary-language document blob, then every variant
2. ``uploading_thumbnails`` -- page thumbnails, primary first, then variants
3. ``saving_to_firestore`` -- one sanitized document built from the payload
   plus the accumulated variant descriptors
4. ``saving_fields`` -- one child record per field spec, in array order
5. ``completed`` -- local status set to ``completed``

Any failure ends the attempt: the record is set to ``error`` with the
message and remote state from earlier stages is left in place.  A retry
re-runs the whole pipeline; remote identities are derived from the local
record id, and writing the document clears children from earlier attempts,
so the retry replaces rather than duplicates.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from formsync.exceptions import InvalidTransitionError, RecordNotFoundError
from formsync.models import (
    LocalRecord,
    PipelineStage,
    RemoteVariantDescriptor,
    UploadResult,
    UploadStatus,
)
from formsync.upload.backend import RemoteBackend
from formsync.upload.broadcaster import StatusBroadcaster
from formsync.upload.document_builder import (
    build_document_fields,
    build_field_record,
    check_field_pages,
    document_id_for,
    sanitize_document,
)
from formsync.upload.stages import ProgressReporter

if TYPE_CHECKING:
    from formsync.database import LocalRecordStore

logger = logging.getLogger(__name__)


class UploadOrchestrator:
    """Runs single upload attempts against a remote backend.

    The orchestrator trusts local status exclusively and never reads remote
    state to decide what to do next.  It does not validate payloads; records
    reach it only after producer-side validation.

    Usage::

        orchestrator = UploadOrchestrator(store, backend, broadcaster)
        result = await orchestrator.run("form-1718000000000-abc123xyz")

    Args:
        store: Local record store (the only writer of ``upload_status``).
        backend: Remote object store + document database client.
        broadcaster: Receives an :class:`UploadProgress` at every boundary.
    """

    def __init__(
        self,
        store: LocalRecordStore,
        backend: RemoteBackend,
        broadcaster: StatusBroadcaster,
    ) -> None:
        self._store = store
        self._backend = backend
        self._broadcaster = broadcaster

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run(self, record_id: str) -> UploadResult:
        """Execute one full attempt for *record_id*.

        Never raises for pipeline failures: they are recorded on the local
        record and returned in the :class:`UploadResult`.  Cancellation
        propagates and leaves the record ``uploading`` for crash recovery.
        """
        try:
            record = self._store.begin_attempt(record_id)
        except (RecordNotFoundError, InvalidTransitionError) as exc:
            existing = self._store.find(record_id, with_blobs=False)
            if existing is not None and existing.upload_status == UploadStatus.COMPLETED:
                logger.info("Record %s already completed; not re-uploading", record_id)
                return UploadResult(
                    record_id, UploadStatus.COMPLETED, document_id=document_id_for(record_id)
                )
            logger.warning("Cannot start upload for %s: %s", record_id, exc)
            status = existing.upload_status if existing else UploadStatus.ERROR
            return UploadResult(record_id, status, error=str(exc))

        reporter = ProgressReporter(
            record.id, self._broadcaster, retry_count=max(record.attempt_count - 1, 0)
        )
        logger.info(
            "Uploading %s (attempt %d, %d field(s), %d variant(s))",
            record.id,
            record.attempt_count,
            len(record.payload.fields),
            len(record.variants),
        )

        try:
            descriptors = await self._upload_documents(record, reporter)
            thumbnails = await self._upload_thumbnails(record, reporter)
            document_id = await self._save_document(record, descriptors, thumbnails, reporter)
            await self._save_fields(record, document_id, reporter)
            self._store.set_status(record.id, UploadStatus.COMPLETED)
        except asyncio.CancelledError:
            logger.warning("Upload of %s cancelled during %s", record.id, reporter.stage.value)
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error(
                "Upload of %s failed during %s: %s", record.id, reporter.stage.value, message
            )
            self._mark_failed(record.id, message)
            reporter.fail(message)
            return UploadResult(record.id, UploadStatus.ERROR, error=message)

        reporter.enter(PipelineStage.COMPLETED)
        logger.info("Upload of %s complete (document %s)", record.id, document_id)
        return UploadResult(record.id, UploadStatus.COMPLETED, document_id=document_id)

    def _mark_failed(self, record_id: str, message: str) -> None:
        try:
            self._store.set_status(record_id, UploadStatus.ERROR, message)
        except (RecordNotFoundError, InvalidTransitionError) as exc:
            # Record removed or already moved on; nothing left to mark.
            logger.warning("Could not mark %s as failed: %s", record_id, exc)

    def _enter(self, record: LocalRecord, reporter: ProgressReporter, stage: PipelineStage,
               step: str | None = None) -> None:
        self._store.record_stage(record.id, stage.value)
        reporter.enter(stage, step)

    # ------------------------------------------------------------------
    # Stage 1: document blobs
    # ------------------------------------------------------------------

    async def _upload_documents(
        self, record: LocalRecord, reporter: ProgressReporter
    ) -> list[RemoteVariantDescriptor]:
        """Commit the primary document, then each variant in a different language."""
        self._enter(record, reporter, PipelineStage.UPLOADING_PDF)

        jobs: list[tuple[str, bytes, int]] = []
        if record.document is not None:
            jobs.append((record.default_language, record.document, record.primary_page_count))
        for variant in record.variants:
            if variant.document is not None and variant.language != record.default_language:
                jobs.append((variant.language, variant.document, variant.page_count))

        descriptors: list[RemoteVariantDescriptor] = []
        total = len(jobs)
        for index, (language, data, page_count) in enumerate(jobs):
            step = f"Uploading {language.upper()} PDF..."

            def on_progress(fraction: float, _index: int = index, _step: str = step) -> None:
                reporter.advance((_index + fraction) / total, f"{_step} {fraction * 100:.0f}%")

            reporter.advance(index / total, step)
            storage_path = await self._backend.put_blob(record.id, language, data, on_progress)
            descriptors.append(
                RemoteVariantDescriptor(
                    language=language,
                    storage_path=storage_path,
                    page_count=page_count,
                    file_size=len(data),
                )
            )
            logger.debug("%s: committed %s document to %s", record.id, language, storage_path)

        if total:
            reporter.advance(1.0)
        return descriptors

    # ------------------------------------------------------------------
    # Stage 2: thumbnails
    # ------------------------------------------------------------------

    async def _upload_thumbnails(
        self, record: LocalRecord, reporter: ProgressReporter
    ) -> dict[str, list[str]]:
        """Commit page thumbnails for the primary language, then each variant."""
        self._enter(record, reporter, PipelineStage.UPLOADING_THUMBNAILS)

        jobs: list[tuple[str, list[bytes]]] = []
        if record.thumbnails:
            jobs.append((record.default_language, record.thumbnails))
        for variant in record.variants:
            if variant.thumbnails and variant.language != record.default_language:
                jobs.append((variant.language, variant.thumbnails))

        committed: dict[str, list[str]] = {}
        total = sum(len(images) for _, images in jobs)
        done = 0
        for language, images in jobs:

            def on_progress(fraction: float, _done: int = done, _count: int = len(images)) -> None:
                reporter.advance(
                    (_done + fraction * _count) / total,
                    f"Uploading thumbnails... {fraction * 100:.0f}%",
                )

            committed[language] = await self._backend.put_thumbnails(
                record.id, language, images, on_progress
            )
            done += len(images)

        if total:
            reporter.advance(1.0)
        return committed

    # ------------------------------------------------------------------
    # Stage 3: document record
    # ------------------------------------------------------------------

    async def _save_document(
        self,
        record: LocalRecord,
        descriptors: list[RemoteVariantDescriptor],
        thumbnails: dict[str, list[str]],
        reporter: ProgressReporter,
    ) -> str:
        """Create the remote document from the payload and committed blobs."""
        self._enter(record, reporter, PipelineStage.SAVING_TO_FIRESTORE)

        primary = next(
            (d for d in descriptors if d.language == record.default_language), None
        )
        page_count = primary.page_count if primary else record.primary_page_count
        check_field_pages(record.payload.fields, page_count)

        fields = sanitize_document(build_document_fields(record, descriptors, thumbnails))
        return await self._backend.create_document(document_id_for(record.id), fields)

    # ------------------------------------------------------------------
    # Stage 4: field children
    # ------------------------------------------------------------------

    async def _save_fields(
        self, record: LocalRecord, document_id: str, reporter: ProgressReporter
    ) -> list[str]:
        """Append one child per field spec, sequentially, in array order."""
        specs = record.payload.fields
        if not specs:
            return []

        self._enter(record, reporter, PipelineStage.SAVING_FIELDS)
        child_ids: list[str] = []
        for order, spec in enumerate(specs):
            child_ids.append(
                await self._backend.append_child(
                    document_id, build_field_record(spec, order), order
                )
            )
            reporter.advance(
                (order + 1) / len(specs),
                f"Saving form fields... {order + 1}/{len(specs)}",
            )
        return child_ids
