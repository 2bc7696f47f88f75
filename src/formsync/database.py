"""SQLite-backed Local Record Store for the form record sync pipeline.

The store is the sole source of truth for a record until its remote commit
succeeds.  Every write commits before returning (WAL + ``synchronous=FULL``),
so a record is durable the moment ``put`` or ``set_status`` returns.

Status changes are validated against the lifecycle FSM and applied with a
compare-and-set on the current status, which is the only mutual-exclusion
discipline the pipeline needs.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from formsync.exceptions import InvalidTransitionError, RecordNotFoundError
from formsync.models import LanguageVariant, LocalRecord, UploadStatus, now_iso
from formsync.schemas import FormPayload
from formsync.upload.fsm import transition_event

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- One row per digitized form awaiting (or done with) remote commit
CREATE TABLE IF NOT EXISTS local_records (
    id TEXT PRIMARY KEY,
    payload_json TEXT NOT NULL,
    default_language TEXT NOT NULL,

    -- State management
    upload_status TEXT NOT NULL DEFAULT 'pending'
        CHECK(upload_status IN ('pending', 'uploading', 'completed', 'error')),
    upload_error TEXT,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    last_stage TEXT,

    -- Timestamps (ISO 8601, UTC)
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_status ON local_records(upload_status);

-- Binary payloads: document bytes and page thumbnails per language
CREATE TABLE IF NOT EXISTS record_blobs (
    record_id TEXT NOT NULL,
    language TEXT NOT NULL,
    kind TEXT NOT NULL CHECK(kind IN ('document', 'thumbnail')),
    page_index INTEGER NOT NULL DEFAULT 0,
    data BLOB NOT NULL,
    PRIMARY KEY (record_id, language, kind, page_index),
    FOREIGN KEY (record_id) REFERENCES local_records(id) ON DELETE CASCADE
);

-- Status transition audit log
CREATE TABLE IF NOT EXISTS _status_log (
    log_id INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id TEXT NOT NULL,
    old_status TEXT,
    new_status TEXT,
    error_details TEXT,
    timestamp TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

-- Auto-log status transitions
CREATE TRIGGER IF NOT EXISTS log_status_change
    AFTER UPDATE OF upload_status ON local_records
    FOR EACH ROW
    WHEN OLD.upload_status != NEW.upload_status
    BEGIN
        INSERT INTO _status_log(record_id, old_status, new_status, error_details)
        VALUES (NEW.id, OLD.upload_status, NEW.upload_status, NEW.upload_error);
    END;
"""

# Existing rows keep their status: a re-put edits the payload only, so a
# completed record can never be downgraded by the producer.
UPSERT_SQL = """
INSERT INTO local_records(id, payload_json, default_language, upload_status,
                          upload_error, attempt_count, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    payload_json = excluded.payload_json,
    default_language = excluded.default_language,
    updated_at = excluded.updated_at
"""


class LocalRecordStore:
    """Durable, synchronous store for local records and their blobs.

    Usage:
        with LocalRecordStore("data/formsync.db") as store:
            store.put(record)
            store.set_status(record.id, UploadStatus.UPLOADING)
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(
            self.db_path,
            autocommit=sqlite3.LEGACY_TRANSACTION_CONTROL,
        )
        self.conn.row_factory = sqlite3.Row
        self._setup_pragmas()
        self._setup_schema()

    def _setup_pragmas(self) -> None:
        """Configure SQLite pragmas for durability."""
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=FULL")
        self.conn.execute("PRAGMA foreign_keys=ON")

        result = self.conn.execute("PRAGMA journal_mode").fetchone()[0]
        if result != "wal" and self.db_path != ":memory:":
            logger.warning("WAL mode not enabled, got: %s", result)

    def _setup_schema(self) -> None:
        """Create tables, indexes, and triggers if they don't exist."""
        self.conn.executescript(SCHEMA_SQL)
        self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, record: LocalRecord) -> LocalRecord:
        """Insert or replace a record and its blobs (last writer wins).

        A new record is stored with its own status; an existing record keeps
        its persisted status and attempt count.  ``updated_at`` is rewritten.

        Returns:
            The record as stored.
        """
        record.updated_at = now_iso()
        with self.conn:
            self.conn.execute(
                UPSERT_SQL,
                (
                    record.id,
                    record.payload.model_dump_json(),
                    record.default_language,
                    UploadStatus(record.upload_status).value,
                    record.upload_error,
                    record.attempt_count,
                    record.created_at,
                    record.updated_at,
                ),
            )
            self.conn.execute("DELETE FROM record_blobs WHERE record_id = ?", (record.id,))
            self.conn.executemany(
                """INSERT INTO record_blobs(record_id, language, kind, page_index, data)
                   VALUES (?, ?, ?, ?, ?)""",
                list(self._blob_rows(record)),
            )
        logger.debug("Stored record %s", record.id)
        return self.get(record.id)

    @staticmethod
    def _blob_rows(record: LocalRecord):
        renditions = [(record.default_language, record.document, record.thumbnails)]
        renditions.extend(
            (v.language, v.document, v.thumbnails)
            for v in record.variants
            if v.language != record.default_language
        )
        for language, document, thumbnails in renditions:
            if document is not None:
                yield (record.id, language, "document", 0, document)
            for index, image in enumerate(thumbnails):
                yield (record.id, language, "thumbnail", index, image)

    def set_status(
        self,
        record_id: str,
        status: UploadStatus | str,
        error: str | None = None,
    ) -> LocalRecord:
        """Apply a lifecycle transition and persist it.

        ``upload_error`` is stored only with ``error`` status and cleared
        otherwise.

        Raises:
            RecordNotFoundError: If *record_id* is unknown.
            InvalidTransitionError: If the transition is not a lifecycle edge,
                or the status changed underneath the caller.
        """
        target = UploadStatus(status).value
        current = self._current_status(record_id)
        transition_event(record_id, current, target)

        with self.conn:
            cursor = self.conn.execute(
                """UPDATE local_records
                   SET upload_status = ?, upload_error = ?, updated_at = ?
                   WHERE id = ? AND upload_status = ?""",
                (
                    target,
                    error if target == UploadStatus.ERROR.value else None,
                    now_iso(),
                    record_id,
                    current,
                ),
            )
        if cursor.rowcount != 1:
            raise InvalidTransitionError(record_id, current, target)

        logger.debug("Record %s: %s -> %s", record_id, current, target)
        return self.get(record_id, with_blobs=False)

    def record_stage(self, record_id: str, stage: str) -> None:
        """Persist the pipeline stage an ``uploading`` record has reached.

        The stage is informational (crash diagnostics); it never drives what
        the pipeline does next.
        """
        with self.conn:
            cursor = self.conn.execute(
                """UPDATE local_records SET last_stage = ?, updated_at = ?
                   WHERE id = ? AND upload_status = 'uploading'""",
                (stage, now_iso(), record_id),
            )
        if cursor.rowcount != 1:
            logger.warning("Stage %s not recorded for %s (not uploading)", stage, record_id)

    def begin_attempt(self, record_id: str) -> LocalRecord:
        """Atomically move ``pending|error -> uploading`` and count the attempt.

        Returns:
            The record with blobs, positioned at ``uploading``.

        Raises:
            RecordNotFoundError: If *record_id* is unknown.
            InvalidTransitionError: If the record is already ``uploading`` or
                ``completed``.
        """
        current = self._current_status(record_id)
        transition_event(record_id, current, UploadStatus.UPLOADING.value)

        with self.conn:
            cursor = self.conn.execute(
                """UPDATE local_records
                   SET upload_status = 'uploading', upload_error = NULL, last_stage = NULL,
                       attempt_count = attempt_count + 1, updated_at = ?
                   WHERE id = ? AND upload_status IN ('pending', 'error')""",
                (now_iso(), record_id),
            )
        if cursor.rowcount != 1:
            raise InvalidTransitionError(record_id, current, UploadStatus.UPLOADING.value)
        return self.get(record_id)

    def remove(self, record_id: str) -> bool:
        """Delete a record and its blobs.

        Returns:
            True if a record was deleted.
        """
        with self.conn:
            cursor = self.conn.execute("DELETE FROM local_records WHERE id = ?", (record_id,))
        removed = cursor.rowcount > 0
        if removed:
            logger.info("Removed record %s from local store", record_id)
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, record_id: str, with_blobs: bool = True) -> LocalRecord:
        """Load one record.

        Raises:
            RecordNotFoundError: If *record_id* is unknown.
        """
        row = self.conn.execute(
            "SELECT * FROM local_records WHERE id = ?", (record_id,)
        ).fetchone()
        if row is None:
            raise RecordNotFoundError(record_id)
        record = self._row_to_record(row)
        if with_blobs:
            self._attach_blobs(record)
        return record

    def find(self, record_id: str, with_blobs: bool = True) -> LocalRecord | None:
        """Like :meth:`get` but returns None for unknown ids."""
        try:
            return self.get(record_id, with_blobs=with_blobs)
        except RecordNotFoundError:
            return None

    def list(self, with_blobs: bool = False) -> list[LocalRecord]:
        """Return every record, oldest first.

        This is the only enumeration primitive; callers filter in memory.
        """
        rows = self.conn.execute(
            "SELECT * FROM local_records ORDER BY created_at, id"
        ).fetchall()
        records = [self._row_to_record(row) for row in rows]
        if with_blobs:
            for record in records:
                self._attach_blobs(record)
        return records

    def status_counts(self) -> dict[str, int]:
        """Return a dict mapping upload status to record count."""
        rows = self.conn.execute(
            "SELECT upload_status, COUNT(*) as count FROM local_records GROUP BY upload_status"
        ).fetchall()
        return {row["upload_status"]: row["count"] for row in rows}

    def status_history(self, record_id: str) -> list[dict]:
        """Return the audit trail of status transitions for a record."""
        rows = self.conn.execute(
            """SELECT old_status, new_status, error_details, timestamp
               FROM _status_log WHERE record_id = ? ORDER BY log_id""",
            (record_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _current_status(self, record_id: str) -> str:
        row = self.conn.execute(
            "SELECT upload_status FROM local_records WHERE id = ?", (record_id,)
        ).fetchone()
        if row is None:
            raise RecordNotFoundError(record_id)
        return row["upload_status"]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> LocalRecord:
        return LocalRecord(
            id=row["id"],
            payload=FormPayload.model_validate_json(row["payload_json"]),
            upload_status=UploadStatus(row["upload_status"]),
            upload_error=row["upload_error"],
            attempt_count=row["attempt_count"],
            last_stage=row["last_stage"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _attach_blobs(self, record: LocalRecord) -> None:
        rows = self.conn.execute(
            """SELECT language, kind, page_index, data FROM record_blobs
               WHERE record_id = ? ORDER BY language, kind, page_index""",
            (record.id,),
        ).fetchall()

        variants: dict[str, LanguageVariant] = {}
        for row in rows:
            data = bytes(row["data"])
            if row["language"] == record.default_language:
                if row["kind"] == "document":
                    record.document = data
                else:
                    record.thumbnails.append(data)
                continue
            variant = variants.setdefault(row["language"], LanguageVariant(row["language"]))
            if row["kind"] == "document":
                variant.document = data
            else:
                variant.thumbnails.append(data)

        # Keep variants in the payload's declared language order
        order = {lang: i for i, lang in enumerate(record.payload.languages)}
        record.variants = sorted(variants.values(), key=lambda v: order.get(v.language, len(order)))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> LocalRecordStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
