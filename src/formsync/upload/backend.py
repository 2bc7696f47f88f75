"""Remote backend client: object store plus document database.

:class:`RemoteBackend` is the interface the upload orchestrator depends on.
Every call is atomic on its own; there are no multi-call transactions.

Identities are caller-controlled so re-running a pipeline is idempotent:
blobs overwrite by path, ``create_document`` replaces the document (dropping
any children from an earlier attempt), and ``append_child`` keys each child
by ``(document_id, order)``.

:class:`FilesystemBackend` is a concrete implementation that keeps objects
in a directory tree and documents as JSON files.
"""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

from formsync.exceptions import (
    PermanentError,
    RejectedFieldError,
    TransientError,
)
from formsync.upload.document_builder import document_path, thumbnail_path

logger = logging.getLogger(__name__)

# Receives the completed fraction (0..1) of the current call.
ProgressCallback = Callable[[float], None]


@runtime_checkable
class RemoteBackend(Protocol):
    """Interface of the remote system of record."""

    async def put_blob(
        self,
        container_id: str,
        language: str,
        data: bytes,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Store a document blob and return its storage path."""
        ...

    async def put_thumbnails(
        self,
        container_id: str,
        language: str,
        images: Sequence[bytes],
        on_progress: ProgressCallback | None = None,
    ) -> list[str]:
        """Store page thumbnails in page order and return their storage paths."""
        ...

    async def create_document(self, document_id: str, fields: Mapping[str, Any]) -> str:
        """Create or replace a document and drop its children; rejects ``None``-valued keys."""
        ...

    async def append_child(
        self, document_id: str, field_record: Mapping[str, Any], order: int
    ) -> str:
        """Write the child record at *order* under *document_id*; returns the child id."""
        ...


def find_none_path(value: Any, prefix: str = "") -> str | None:
    """Return the dotted path of the first ``None`` inside *value*, if any."""
    if value is None:
        return prefix or "<root>"
    if isinstance(value, Mapping):
        for key, item in value.items():
            found = find_none_path(item, f"{prefix}.{key}" if prefix else str(key))
            if found:
                return found
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            found = find_none_path(item, f"{prefix}[{index}]")
            if found:
                return found
    return None


class FilesystemBackend:
    """Directory-tree object store plus JSON-file document database.

    Layout under *root*::

        objects/forms/<record-id>/pdf_<lang>.pdf
        objects/forms/<record-id>/thumbnails/<lang>_page_<n>.jpg
        documents/<document-id>/document.json
        documents/<document-id>/children/<order>.json

    Args:
        root: Base directory; created if missing.
        max_blob_bytes: Blobs larger than this are rejected permanently.
        chunk_size: Bytes written between progress callbacks.
    """

    def __init__(
        self,
        root: str | Path,
        max_blob_bytes: int | None = None,
        chunk_size: int = 256 * 1024,
    ) -> None:
        self.root = Path(root)
        self.max_blob_bytes = max_blob_bytes
        self.chunk_size = chunk_size
        self.objects_dir = self.root / "objects"
        self.documents_dir = self.root / "documents"
        self.objects_dir.mkdir(parents=True, exist_ok=True)
        self.documents_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Object store
    # ------------------------------------------------------------------

    async def put_blob(
        self,
        container_id: str,
        language: str,
        data: bytes,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        self._check_size(data, f"{language} document for {container_id}")
        storage_path = document_path(self._safe_segment(container_id), language)
        self._write_atomic(self.objects_dir / storage_path, data, on_progress)
        logger.debug("Stored blob %s (%d bytes)", storage_path, len(data))
        return storage_path

    async def put_thumbnails(
        self,
        container_id: str,
        language: str,
        images: Sequence[bytes],
        on_progress: ProgressCallback | None = None,
    ) -> list[str]:
        container = self._safe_segment(container_id)
        paths: list[str] = []
        total = len(images)
        for index, image in enumerate(images):
            self._check_size(image, f"{language} thumbnail {index + 1} for {container_id}")
            storage_path = thumbnail_path(container, language, index + 1)
            self._write_atomic(self.objects_dir / storage_path, image)
            paths.append(storage_path)
            if on_progress is not None:
                on_progress((index + 1) / total)
        logger.debug("Stored %d thumbnails for %s/%s", total, container_id, language)
        return paths

    def blob_exists(self, storage_path: str) -> bool:
        """Return True if an object exists at *storage_path*."""
        return (self.objects_dir / storage_path).is_file()

    # ------------------------------------------------------------------
    # Document database
    # ------------------------------------------------------------------

    async def create_document(self, document_id: str, fields: Mapping[str, Any]) -> str:
        bad = find_none_path(fields)
        if bad is not None:
            raise RejectedFieldError(f"Undefined value for field '{bad}'")
        doc_dir = self.documents_dir / self._safe_segment(document_id)
        body = json.dumps({"id": document_id, **fields}, indent=2, sort_keys=True)
        # Children belong to one version of the document
        children_dir = doc_dir / "children"
        if children_dir.is_dir():
            try:
                shutil.rmtree(children_dir)
            except OSError as exc:
                raise TransientError(f"Could not clear children of {document_id}: {exc}") from exc
        self._write_atomic(doc_dir / "document.json", body.encode("utf-8"))
        logger.debug("Wrote document %s", document_id)
        return document_id

    async def append_child(
        self, document_id: str, field_record: Mapping[str, Any], order: int
    ) -> str:
        bad = find_none_path(field_record)
        if bad is not None:
            raise RejectedFieldError(f"Undefined value for child field '{bad}'")
        doc_dir = self.documents_dir / self._safe_segment(document_id)
        if not (doc_dir / "document.json").is_file():
            raise PermanentError(f"Document not found: {document_id}")
        child_id = f"{document_id}-{order:04d}"
        body = json.dumps({"id": child_id, **field_record, "order": order}, sort_keys=True)
        self._write_atomic(doc_dir / "children" / f"{order:04d}.json", body.encode("utf-8"))
        return child_id

    def read_document(self, document_id: str) -> dict | None:
        """Load a committed document, or None if it does not exist."""
        path = self.documents_dir / self._safe_segment(document_id) / "document.json"
        if not path.is_file():
            return None
        return json.loads(path.read_text())

    def list_documents(self) -> list[str]:
        """Return the ids of all committed documents."""
        return sorted(
            p.parent.name for p in self.documents_dir.glob("*/document.json")
        )

    def list_children(self, document_id: str) -> list[dict]:
        """Return a document's child records in ``order`` order."""
        children_dir = self.documents_dir / self._safe_segment(document_id) / "children"
        if not children_dir.is_dir():
            return []
        return [
            json.loads(p.read_text()) for p in sorted(children_dir.glob("*.json"))
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_size(self, data: bytes, what: str) -> None:
        if self.max_blob_bytes is not None and len(data) > self.max_blob_bytes:
            raise PermanentError(
                f"{what} is {len(data)} bytes, over the {self.max_blob_bytes} byte limit"
            )

    @staticmethod
    def _safe_segment(segment: str) -> str:
        """Reject ids that would escape their directory."""
        if not segment or "/" in segment or "\\" in segment or segment in (".", ".."):
            raise PermanentError(f"Invalid identifier: {segment!r}")
        return segment

    def _write_atomic(
        self,
        target: Path,
        data: bytes,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Write to a temp file then rename, so readers never see partial objects."""
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=target.parent)
        except OSError as exc:
            raise TransientError(f"Could not prepare {target}: {exc}") from exc

        total = len(data)
        try:
            with open(fd, "wb") as f:
                for offset in range(0, total, self.chunk_size):
                    f.write(data[offset : offset + self.chunk_size])
                    if on_progress is not None:
                        on_progress(min(offset + self.chunk_size, total) / total)
            Path(tmp_path).replace(target)
        except OSError as exc:
            Path(tmp_path).unlink(missing_ok=True)
            raise TransientError(f"Could not write {target}: {exc}") from exc
        except Exception:
            Path(tmp_path).unlink(missing_ok=True)
            raise

        if on_progress is not None and total == 0:
            on_progress(1.0)
