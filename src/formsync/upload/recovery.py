"""Crash recovery for the upload pipeline.

A record persisted as ``uploading`` when no attempt for it is running in
this process was interrupted: the host exited (or the task was cancelled)
between ``begin_attempt`` and the final status write.  There is no
``uploading -> pending`` edge, so recovery fails the attempt instead
(``uploading -> error``), after which the regular ``error -> uploading``
retry edge re-drives the record from stage 1.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Collection

from formsync.exceptions import InvalidTransitionError, RecordNotFoundError
from formsync.models import UploadStatus

if TYPE_CHECKING:
    from formsync.database import LocalRecordStore

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Upload interrupted"


@dataclass
class RecoveryResult:
    """Summary of a recovery run.

    Attributes:
        interrupted: Ids moved from ``uploading`` to ``error``.
        errors: Human-readable descriptions of records that could not be
            recovered.
    """

    interrupted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class RecoveryManager:
    """Fails stale ``uploading`` records so they become retriable.

    Args:
        store: Local record store.
    """

    def __init__(self, store: LocalRecordStore) -> None:
        self._store = store

    def run(
        self, in_flight: Collection[str] = (), only: str | None = None
    ) -> RecoveryResult:
        """Recover every interrupted record not listed in *in_flight*.

        Args:
            in_flight: Ids with a live attempt in this process.
            only: Restrict recovery to this record id.
        """
        result = RecoveryResult()
        if only is not None:
            found = self._store.find(only, with_blobs=False)
            candidates = [found] if found is not None else []
        else:
            candidates = self._store.list()
        for record in candidates:
            if record.upload_status != UploadStatus.UPLOADING or record.id in in_flight:
                continue

            stage = record.last_stage
            message = f"{INTERRUPTED_MESSAGE} during {stage}" if stage else INTERRUPTED_MESSAGE
            try:
                self._store.set_status(record.id, UploadStatus.ERROR, message)
            except (RecordNotFoundError, InvalidTransitionError) as exc:
                result.errors.append(f"{record.id}: {exc}")
                logger.warning("Could not recover %s: %s", record.id, exc)
                continue

            result.interrupted.append(record.id)
            logger.warning("Recovered interrupted upload %s (last stage: %s)", record.id, stage)

        if result.interrupted or result.errors:
            logger.info(
                "Recovery complete: %d interrupted, %d errors",
                len(result.interrupted),
                len(result.errors),
            )
        return result
